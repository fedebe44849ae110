"""Gemini REST adapter.

Talks to the Generative Language API directly over HTTP. Streaming uses
streamGenerateContent with alt=sse, which sends one GenerateContentResponse
JSON object per "data:" line.
"""

import json
import os

from core.history import ASSISTANT, SYSTEM, ImageSegment, TextSegment, ToolCallSegment
from core.provider_base import BaseProvider, ChatResponse, ProviderError, TokenUsage


API_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.0-flash"
API_KEY_ENV = "GEMINI_API_KEY"


class GeminiInterface(BaseProvider):
    """Interface to Google's Gemini models."""

    name = "gemini"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        top_p: float = 0.9,
        top_k: int = 40,
        max_tokens: int = 2048,
        timeout_seconds: int = 60,
        api_base: str = API_BASE,
    ):
        super().__init__(timeout_seconds=timeout_seconds)
        self.api_key = api_key or os.environ.get(API_KEY_ENV)
        if not self.api_key:
            raise ProviderError(
                self.name,
                f"No API key configured. Set {API_KEY_ENV} or api_key in .parley.toml",
            )
        self.model = model or DEFAULT_MODEL
        self.temperature = temperature
        self.top_p = top_p
        self.top_k = top_k
        self.max_tokens = max_tokens
        self.api_base = api_base.rstrip("/")

    def describe(self) -> str:
        return f"gemini ({self.model})"

    def _headers(self) -> dict:
        return {"x-goog-api-key": self.api_key}

    def _model_url(self, method: str) -> str:
        return f"{self.api_base}/models/{self.model}:{method}"

    # ------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------

    def format_contents(self, turns: list) -> list[dict]:
        """Convert turns to Gemini contents. System turns are folded into user turns."""
        contents = []
        for turn in turns:
            role = "model" if turn.role == ASSISTANT else "user"
            parts = []
            for seg in turn.segments:
                if isinstance(seg, TextSegment):
                    text = seg.text
                    if turn.role == SYSTEM:
                        text = f"[system] {text}"
                    parts.append({"text": text})
                elif isinstance(seg, ImageSegment):
                    parts.append({"inlineData": {"mimeType": seg.mime_type, "data": seg.data}})
                elif isinstance(seg, ToolCallSegment):
                    parts.append({"functionCall": {"name": seg.name, "args": seg.arguments}})
                    if seg.result is not None:
                        parts.append({
                            "functionResponse": {"name": seg.name, "response": {"result": seg.result}},
                        })
                else:
                    raise TypeError(f"Unknown segment type: {type(seg).__name__}")
            if not parts:
                parts.append({"text": ""})
            contents.append({"role": role, "parts": parts})
        return contents

    def _payload(self, turns: list, system_prompt: str | None) -> dict:
        payload = {
            "contents": self.format_contents(turns),
            "generationConfig": {
                "temperature": self.temperature,
                "topP": self.top_p,
                "topK": self.top_k,
                "maxOutputTokens": self.max_tokens,
            },
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        return payload

    # ------------------------------------------------------------
    # Adapter hooks
    # ------------------------------------------------------------

    def _chat(self, turns: list, system_prompt: str | None) -> ChatResponse:
        data = self._request_json(
            self._model_url("generateContent"),
            self._payload(turns, system_prompt),
            headers=self._headers(),
        )
        return ChatResponse(text=self._extract_text(data), tokens_used=_usage_from(data))

    def _stream_pieces(self, turns: list, system_prompt: str | None, cancel):
        resp = self._open(
            self._model_url("streamGenerateContent") + "?alt=sse",
            self._payload(turns, system_prompt),
            headers={**self._headers(), "Accept": "text/event-stream"},
        )
        for event in self._iter_sse(resp, cancel):
            piece = self._extract_text(event)
            if piece:
                yield piece

    def _probe_health(self) -> bool:
        data = self._request_json(f"{self.api_base}/models?pageSize=1", headers=self._headers(), timeout=10)
        return "models" in data

    def count_tokens(self, text: str) -> int:
        """Use the countTokens endpoint, falling back to the heuristic."""
        if not text:
            return 0
        try:
            data = self._request_json(
                self._model_url("countTokens"),
                {"contents": [{"role": "user", "parts": [{"text": text}]}]},
                headers=self._headers(),
                timeout=10,
            )
            total = data.get("totalTokens")
            if isinstance(total, int):
                return total
        except ProviderError:
            pass
        return super().count_tokens(text)

    def _extract_text(self, data: dict) -> str:
        if "error" in data:
            err = data["error"]
            message = err.get("message", json.dumps(err)) if isinstance(err, dict) else str(err)
            raise ProviderError(self.name, message)
        candidates = data.get("candidates")
        if candidates is None:
            feedback = data.get("promptFeedback") or {}
            if feedback.get("blockReason"):
                raise ProviderError(self.name, f"Prompt blocked: {feedback['blockReason']}")
            if "usageMetadata" in data:
                return ""
            raise ProviderError(self.name, "Malformed response: no candidates")
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts)


def _usage_from(data: dict) -> TokenUsage | None:
    meta = data.get("usageMetadata")
    if not meta:
        return None
    prompt = meta.get("promptTokenCount", 0)
    completion = meta.get("candidatesTokenCount", 0)
    return TokenUsage(prompt=prompt, completion=completion, total=meta.get("totalTokenCount", prompt + completion))
