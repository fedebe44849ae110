"""Server interface for Parley: connects to a running llama-server over HTTP.

Uses the OpenAI-compatible /v1/chat/completions endpoint, with server-sent
events when streaming. Both the OpenAI delta shape and the native llama.cpp
"content" shape are accepted in stream events.
"""

import json

from core.history import ImageSegment, TextSegment, ToolCallSegment
from core.provider_base import BaseProvider, ChatResponse, ProviderError, TokenUsage


class ServerInterface(BaseProvider):
    """Interface to a local LLM via llama-server HTTP API."""

    name = "llama.cpp"

    def __init__(
        self,
        endpoint: str = "http://127.0.0.1:8080",
        model: str | None = None,
        temperature: float = 0.7,
        top_p: float = 0.9,
        top_k: int = 40,
        max_tokens: int = 2048,
        timeout_seconds: int = 60,
    ):
        super().__init__(timeout_seconds=timeout_seconds)
        self.base_url = endpoint.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.top_p = top_p
        self.top_k = top_k
        self.max_tokens = max_tokens

    def describe(self) -> str:
        return f"llama.cpp ({self.base_url})"

    # ------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------

    def format_messages(self, turns: list, system_prompt: str | None = None) -> list[dict]:
        """Convert turns into OpenAI chat messages (system prompt first)."""
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for turn in turns:
            parts = []
            has_image = False
            for seg in turn.segments:
                if isinstance(seg, TextSegment):
                    parts.append({"type": "text", "text": seg.text})
                elif isinstance(seg, ImageSegment):
                    has_image = True
                    parts.append({
                        "type": "image_url",
                        "image_url": {"url": f"data:{seg.mime_type};base64,{seg.data}"},
                    })
                elif isinstance(seg, ToolCallSegment):
                    call = f"[tool_call {seg.name} {json.dumps(seg.arguments, ensure_ascii=False)}]"
                    if seg.result is not None:
                        call += f"\n[tool_result {seg.name}]\n{seg.result}"
                    parts.append({"type": "text", "text": call})
                else:
                    raise TypeError(f"Unknown segment type: {type(seg).__name__}")
            if has_image:
                messages.append({"role": turn.role, "content": parts})
            else:
                messages.append({"role": turn.role, "content": "\n".join(p["text"] for p in parts)})
        return messages

    def _payload(self, turns: list, system_prompt: str | None, stream: bool) -> dict:
        payload = {
            "messages": self.format_messages(turns, system_prompt),
            "temperature": self.temperature,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "max_tokens": self.max_tokens,
            "stream": stream,
        }
        if self.model:
            payload["model"] = self.model
        return payload

    # ------------------------------------------------------------
    # Adapter hooks
    # ------------------------------------------------------------

    def _chat(self, turns: list, system_prompt: str | None) -> ChatResponse:
        data = self._request_json(
            f"{self.base_url}/v1/chat/completions",
            self._payload(turns, system_prompt, stream=False),
        )
        choices = data.get("choices") or []
        if choices:
            text = (choices[0].get("message") or {}).get("content") or ""
        elif "content" in data:
            text = data.get("content") or ""
        else:
            raise ProviderError(self.name, "Malformed response: no choices or content")
        return ChatResponse(text=text, tokens_used=_usage_from(data))

    def _stream_pieces(self, turns: list, system_prompt: str | None, cancel):
        resp = self._open(
            f"{self.base_url}/v1/chat/completions",
            self._payload(turns, system_prompt, stream=True),
            headers={"Accept": "text/event-stream"},
        )
        for event in self._iter_sse(resp, cancel):
            if "error" in event:
                err = event["error"]
                message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
                raise ProviderError(self.name, f"Server error during stream: {message}")
            choices = event.get("choices") or []
            if choices:
                delta = choices[0].get("delta") or {}
                piece = delta.get("content") or ""
            else:
                piece = event.get("content") or ""
            if piece:
                yield piece
            if event.get("stop") is True:
                return

    def _probe_health(self) -> bool:
        data = self._request_json(f"{self.base_url}/health", timeout=5)
        return data.get("status") == "ok"

    def count_tokens(self, text: str) -> int:
        """Use the server's /tokenize endpoint, falling back to the heuristic."""
        if not text:
            return 0
        try:
            data = self._request_json(f"{self.base_url}/tokenize", {"content": text}, timeout=5)
            tokens = data.get("tokens")
            if isinstance(tokens, list):
                return len(tokens)
        except ProviderError:
            pass
        return super().count_tokens(text)

    def get_model_info(self) -> dict | None:
        """Query the server for model information. Returns None on failure."""
        for endpoint in ("/props", "/v1/models"):
            try:
                data = self._request_json(f"{self.base_url}{endpoint}", timeout=5)
            except ProviderError:
                continue
            if endpoint == "/props":
                settings = data.get("default_generation_settings", {})
                return {
                    "model": settings.get("model", "unknown"),
                    "ctx_size": settings.get("n_ctx", 0),
                }
            models = data.get("data", [])
            if models:
                return {"model": models[0].get("id", "unknown")}
        return None


def _usage_from(data: dict) -> TokenUsage | None:
    """Extract token usage from an OpenAI "usage" block or llama.cpp "timings"."""
    usage = data.get("usage")
    if usage:
        return TokenUsage(
            prompt=usage.get("prompt_tokens", 0),
            completion=usage.get("completion_tokens", 0),
            total=usage.get("total_tokens", 0),
        )
    timings = data.get("timings")
    if timings:
        prompt = timings.get("prompt_n", 0)
        completion = timings.get("predicted_n", 0)
        return TokenUsage(prompt=prompt, completion=completion, total=prompt + completion)
    return None
