"""Provider abstraction for Parley: one contract over every model backend.

Backends (llama.cpp server, Gemini) subclass BaseProvider and implement:
  - _chat(turns, system_prompt)          -> ChatResponse
  - _stream_pieces(turns, system_prompt, cancel) -> iterator of text pieces
  - _probe_health()                      -> bool (may raise)

BaseProvider.stream() owns the streaming contract so adapters cannot break it:
  - zero or more StreamChunk(text, done=False) in arrival order
  - exactly one StreamChunk("", done=True) on completion or cancellation
  - cancellation is not an error: the partial text is returned
  - any failure surfaces as ProviderError, with no terminal chunk

Per-call state machine:
  idle → requesting → streaming → completed | cancelled | errored
"""

import json
import math
import queue
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass


# Rough approximation when a backend has no token counting endpoint.
# Advisory only; never treat as exact.
CHARS_PER_TOKEN = 3

# Seconds between cancel checks while waiting on a stream
POLL_INTERVAL = 0.1

# Stream states
IDLE = "idle"
REQUESTING = "requesting"
STREAMING = "streaming"
COMPLETED = "completed"
CANCELLED = "cancelled"
ERRORED = "errored"

# Shared cancellation signal type: set() to cancel, is_set() to observe
CancelSignal = threading.Event


class ProviderError(Exception):
    """Backend failure: network, auth, rate limit, malformed response."""

    def __init__(self, provider: str, message: str, status: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.message = message
        self.status = status

    def __str__(self) -> str:
        return f"[{self.provider}] {self.message}"


@dataclass
class StreamChunk:
    """One unit of streamed output."""
    text: str
    done: bool = False


@dataclass
class TokenUsage:
    prompt: int
    completion: int
    total: int


@dataclass
class ChatResponse:
    """Result of chat() or stream()."""
    text: str
    tokens_used: TokenUsage | None = None
    cancelled: bool = False


class BaseProvider:
    """Base class for all model backends."""

    name = "provider"

    def __init__(self, timeout_seconds: int = 60):
        self.timeout_seconds = timeout_seconds
        self.state = IDLE

    # ------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------

    def chat(self, turns: list, system_prompt: str | None = None) -> ChatResponse:
        """Single request/response. Raises ProviderError on failure."""
        self.state = REQUESTING
        try:
            response = self._chat(turns, system_prompt)
        except ProviderError:
            self.state = ERRORED
            raise
        except Exception as e:
            self.state = ERRORED
            raise ProviderError(self.name, f"Chat request failed: {type(e).__name__}: {e}") from e
        self.state = COMPLETED
        return response

    def stream(
        self,
        turns: list,
        system_prompt: str | None,
        on_chunk,
        cancel: CancelSignal | None = None,
    ) -> ChatResponse:
        """Stream a response, forwarding chunks to on_chunk(StreamChunk).

        Args:
            turns: Conversation turns to submit, oldest first.
            system_prompt: Optional system prompt (context block already appended).
            on_chunk: Callable receiving each StreamChunk.
            cancel: Optional CancelSignal. Once set, no further text chunks are
                emitted; the terminal chunk follows and partial text is returned.

        Returns:
            ChatResponse with the assembled text (cancelled=True if cut short).

        Raises:
            ProviderError: on any backend failure.
        """
        self.state = REQUESTING
        pieces: list[str] = []
        cancelled = False
        iterator = None
        try:
            iterator = iter(self._stream_pieces(turns, system_prompt, cancel))
            self.state = STREAMING
            for piece in iterator:
                if cancel is not None and cancel.is_set():
                    cancelled = True
                    break
                if not piece:
                    continue
                pieces.append(piece)
                on_chunk(StreamChunk(text=piece, done=False))
            else:
                cancelled = cancel is not None and cancel.is_set()
        except KeyboardInterrupt:
            if cancel is not None:
                cancel.set()
            cancelled = True
        except Exception as e:
            if cancel is not None and cancel.is_set():
                # Failure caused by tearing down a cancelled request
                cancelled = True
            else:
                self.state = ERRORED
                if isinstance(e, ProviderError):
                    raise
                raise ProviderError(self.name, f"Streaming request failed: {type(e).__name__}: {e}") from e
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

        self.state = CANCELLED if cancelled else COMPLETED
        on_chunk(StreamChunk(text="", done=True))
        return ChatResponse(text="".join(pieces), cancelled=cancelled)

    def count_tokens(self, text: str) -> int:
        """Best-effort token estimate (character heuristic)."""
        if not text:
            return 0
        return math.ceil(len(text) / CHARS_PER_TOKEN)

    def check_health(self) -> bool:
        """Return True if the backend answers. Never raises."""
        try:
            return bool(self._probe_health())
        except Exception:
            return False

    def describe(self) -> str:
        """One-line description for banners and /config."""
        return self.name

    # ------------------------------------------------------------
    # Adapter hooks
    # ------------------------------------------------------------

    def _chat(self, turns: list, system_prompt: str | None) -> ChatResponse:
        raise NotImplementedError

    def _stream_pieces(self, turns: list, system_prompt: str | None, cancel: CancelSignal | None):
        raise NotImplementedError

    def _probe_health(self) -> bool:
        raise NotImplementedError

    # ------------------------------------------------------------
    # HTTP helpers shared by adapters
    # ------------------------------------------------------------

    def _open(self, url: str, payload: dict | None = None, headers: dict | None = None,
              timeout: float | None = None):
        """Open an HTTP request, converting transport failures into ProviderError."""
        data = None
        method = "GET"
        all_headers = {"Accept": "application/json"}
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            method = "POST"
            all_headers["Content-Type"] = "application/json"
        if headers:
            all_headers.update(headers)
        req = urllib.request.Request(url, data=data, headers=all_headers, method=method)
        try:
            return urllib.request.urlopen(req, timeout=timeout or self.timeout_seconds)
        except urllib.error.HTTPError as e:
            raise self._http_error(e) from e
        except urllib.error.URLError as e:
            raise ProviderError(self.name, f"Connection failed: {e.reason}") from e
        except TimeoutError as e:
            raise ProviderError(self.name, f"Request timed out after {timeout or self.timeout_seconds}s") from e

    def _request_json(self, url: str, payload: dict | None = None, headers: dict | None = None,
                      timeout: float | None = None) -> dict:
        resp = self._open(url, payload, headers, timeout)
        try:
            raw = resp.read()
        except TimeoutError as e:
            raise ProviderError(self.name, f"Request timed out after {timeout or self.timeout_seconds}s") from e
        finally:
            resp.close()
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProviderError(self.name, f"Malformed response: {e}") from e

    def _iter_sse(self, resp, cancel: CancelSignal | None = None):
        """Yield parsed JSON events from a server-sent-events response.

        Stops at "data: [DONE]", end of stream, or when cancel is set.
        Lines that are not valid JSON are skipped.

        Lines are read on a helper thread so a cancel is observed within
        POLL_INTERVAL even while the server sends nothing.
        """
        lines: queue.Queue = queue.Queue()
        stop = threading.Event()

        def pump():
            try:
                for raw in resp:
                    if stop.is_set():
                        break
                    lines.put(raw)
            except Exception as e:
                lines.put(e)
            finally:
                resp.close()
                lines.put(None)

        threading.Thread(target=pump, daemon=True).start()
        last_data = time.monotonic()
        try:
            while True:
                if cancel is not None and cancel.is_set():
                    return
                try:
                    raw = lines.get(timeout=POLL_INTERVAL)
                except queue.Empty:
                    if time.monotonic() - last_data > self.timeout_seconds:
                        raise ProviderError(self.name, f"Stream stalled for more than {self.timeout_seconds}s")
                    continue
                if raw is None:
                    return
                if isinstance(raw, TimeoutError):
                    raise ProviderError(self.name, f"Stream stalled for more than {self.timeout_seconds}s") from raw
                if isinstance(raw, Exception):
                    raise raw
                last_data = time.monotonic()
                if cancel is not None and cancel.is_set():
                    return
                line = raw.decode("utf-8", errors="replace").strip()
                if not line.startswith("data:"):
                    continue
                body = line[5:].strip()
                if body == "[DONE]":
                    return
                try:
                    yield json.loads(body)
                except json.JSONDecodeError:
                    continue
        finally:
            # The reader thread closes resp; closing here would block on its pending read
            stop.set()

    def _http_error(self, e: urllib.error.HTTPError) -> ProviderError:
        detail = ""
        try:
            body = json.loads(e.read() or b"{}")
            err = body.get("error")
            if isinstance(err, dict):
                detail = err.get("message", "")
            elif isinstance(err, str):
                detail = err
        except (ValueError, OSError, AttributeError):
            pass
        if e.code in (401, 403):
            message = f"Authentication failed (HTTP {e.code})"
        elif e.code == 429:
            message = "Rate limited (HTTP 429)"
        else:
            message = f"HTTP {e.code}: {e.reason}"
        if detail:
            message += f": {detail}"
        return ProviderError(self.name, message, status=e.code)
