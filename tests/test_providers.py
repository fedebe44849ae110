"""Tests for the provider layer: the streaming contract in BaseProvider, the
llama.cpp and Gemini adapters (against a local fake HTTP server) and the
provider factory.

Run with: python -m pytest tests/test_providers.py -v
Or: python tests/test_providers.py (standalone)
"""

import json
import os
import socket
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.gemini_interface import API_KEY_ENV, GeminiInterface
from core.history import ASSISTANT, SYSTEM, USER, ImageSegment, TextSegment, ToolCallSegment, Turn
from core.provider_base import (
    CANCELLED, COMPLETED, ERRORED, BaseProvider, CancelSignal, ProviderError,
)
from core.provider_factory import create_provider
from core.server_interface import ServerInterface


# ============================================================
# Fixtures
# ============================================================

class FakeProvider(BaseProvider):
    """Yields canned pieces; can fail or trip the cancel signal part way."""

    name = "fake"

    def __init__(self, pieces, error=None, fail_at=None, cancel_after=None):
        super().__init__()
        self.pieces = pieces
        self.error = error
        self.fail_at = fail_at
        self.cancel_after = cancel_after

    def _stream_pieces(self, turns, system_prompt, cancel):
        for i, piece in enumerate(self.pieces):
            if self.error is not None and i == self.fail_at:
                raise self.error
            yield piece
            if self.cancel_after is not None and i + 1 == self.cancel_after:
                cancel.set()

    def _chat(self, turns, system_prompt):
        raise ValueError("boom")

    def _probe_health(self):
        raise RuntimeError("backend down")


class FakeHandler(BaseHTTPRequestHandler):
    """Minimal llama-server / Gemini REST stand-in."""

    def log_message(self, *args):
        pass

    def _send_json(self, code, obj):
        body = json.dumps(obj).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_sse(self, events, done=True):
        self.send_response(200)
        self.send_header("Content-Type", "text/event-stream")
        self.end_headers()
        for event in events:
            self.wfile.write(f"data: {json.dumps(event)}\n\n".encode("utf-8"))
        if done:
            self.wfile.write(b"data: [DONE]\n\n")

    def do_GET(self):
        if self.server.status != 200:
            return self._send_json(self.server.status, {"error": {"message": "bad key"}})
        if self.path == "/health":
            self._send_json(200, {"status": "ok"})
        elif self.path == "/props":
            self._send_json(200, {"default_generation_settings": {"model": "tiny.gguf", "n_ctx": 4096}})
        elif self.path.startswith("/models?"):
            self._send_json(200, {"models": [{"name": "models/gemini-2.0-flash"}]})
        else:
            self._send_json(404, {"error": "not found"})

    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        body = json.loads(self.rfile.read(length) or b"{}")
        self.server.requests.append({
            "path": self.path,
            "api_key": self.headers.get("x-goog-api-key"),
            "body": body,
        })
        if self.server.status != 200:
            return self._send_json(self.server.status, {"error": {"message": "bad key"}})

        if self.path == "/v1/chat/completions":
            if body.get("stream") and self.server.stall:
                # One chunk, then silence until the test lets go
                self._send_sse([{"choices": [{"delta": {"content": "Hi"}}]}], done=False)
                self.server.release.wait(5)
            elif body.get("stream"):
                self._send_sse([
                    {"choices": [{"delta": {"content": "Hel"}}]},
                    {"choices": [{"delta": {"content": "lo"}}]},
                    {"choices": [{"delta": {}, "finish_reason": "stop"}]},
                ])
            else:
                self._send_json(200, {
                    "choices": [{"message": {"role": "assistant", "content": "Hello"}}],
                    "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
                })
        elif self.path == "/tokenize":
            self._send_json(200, {"tokens": [1, 2, 3, 4]})
        elif ":streamGenerateContent" in self.path:
            self._send_sse([
                {"candidates": [{"content": {"role": "model", "parts": [{"text": "Hi "}]}}]},
                {"candidates": [{"content": {"role": "model", "parts": [{"text": "there"}]}}]},
            ])
        elif ":generateContent" in self.path:
            self._send_json(200, {
                "candidates": [{"content": {"role": "model", "parts": [{"text": "Hi there"}]}}],
                "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 2, "totalTokenCount": 5},
            })
        elif ":countTokens" in self.path:
            self._send_json(200, {"totalTokens": 9})
        else:
            self._send_json(404, {"error": "not found"})


def start_server(status=200, stall=False):
    server = ThreadingHTTPServer(("127.0.0.1", 0), FakeHandler)
    server.status = status
    server.requests = []
    server.stall = stall
    server.release = threading.Event()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


def stop_server(server):
    server.release.set()
    server.shutdown()
    server.server_close()


def base_url(server):
    return f"http://127.0.0.1:{server.server_address[1]}"


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def sample_turns():
    return [Turn.text(USER, "hello")]


# ============================================================
# Streaming Contract Tests
# ============================================================

def test_stream_completes_with_one_terminal_chunk():
    provider = FakeProvider(["a", "b", "c"])
    chunks = []
    response = provider.stream(sample_turns(), None, chunks.append)
    assert [c.text for c in chunks if not c.done] == ["a", "b", "c"]
    assert sum(1 for c in chunks if c.done) == 1
    assert chunks[-1].done
    assert response.text == "abc"
    assert not response.cancelled
    assert provider.state == COMPLETED


def test_stream_cancel_returns_partial_text():
    provider = FakeProvider(["a", "b", "c", "d", "e"], cancel_after=2)
    cancel = CancelSignal()
    chunks = []
    response = provider.stream(sample_turns(), None, chunks.append, cancel=cancel)
    assert response.cancelled
    assert response.text == "ab"
    assert [c.text for c in chunks] == ["a", "b", ""]
    assert sum(1 for c in chunks if c.done) == 1
    assert provider.state == CANCELLED


def test_stream_cancel_before_first_chunk():
    provider = FakeProvider(["a", "b"])
    cancel = CancelSignal()
    cancel.set()
    chunks = []
    response = provider.stream(sample_turns(), None, chunks.append, cancel=cancel)
    assert response.cancelled
    assert response.text == ""
    assert len(chunks) == 1 and chunks[0].done


def test_stream_keyboard_interrupt_is_cancellation():
    provider = FakeProvider(["a", "b"], error=KeyboardInterrupt(), fail_at=1)
    cancel = CancelSignal()
    chunks = []
    response = provider.stream(sample_turns(), None, chunks.append, cancel=cancel)
    assert response.cancelled
    assert response.text == "a"
    assert cancel.is_set()
    assert chunks[-1].done


def test_stream_provider_error_has_no_terminal_chunk():
    provider = FakeProvider(["a", "b"], error=ProviderError("fake", "HTTP 500"), fail_at=1)
    chunks = []
    try:
        provider.stream(sample_turns(), None, chunks.append)
        assert False, "Should have raised ProviderError"
    except ProviderError as e:
        assert "HTTP 500" in str(e)
    assert [c.text for c in chunks] == ["a"]
    assert not any(c.done for c in chunks)
    assert provider.state == ERRORED


def test_stream_unexpected_exception_wrapped():
    provider = FakeProvider(["a"], error=ValueError("bad json"), fail_at=0)
    try:
        provider.stream(sample_turns(), None, lambda c: None)
        assert False, "Should have raised ProviderError"
    except ProviderError as e:
        assert e.provider == "fake"
        assert "ValueError" in e.message


def test_stream_skips_empty_pieces():
    provider = FakeProvider(["a", "", "b"])
    chunks = []
    provider.stream(sample_turns(), None, chunks.append)
    assert [c.text for c in chunks] == ["a", "b", ""]


def test_chat_exception_wrapped():
    provider = FakeProvider([])
    try:
        provider.chat(sample_turns())
        assert False, "Should have raised ProviderError"
    except ProviderError as e:
        assert str(e).startswith("[fake]")
    assert provider.state == ERRORED


def test_check_health_never_raises():
    assert FakeProvider([]).check_health() is False


def test_count_tokens_heuristic():
    provider = FakeProvider([])
    assert provider.count_tokens("") == 0
    assert provider.count_tokens("abc") == 1
    assert provider.count_tokens("abcd") == 2


# ============================================================
# llama.cpp Adapter Tests
# ============================================================

def test_format_messages_text_and_system():
    provider = ServerInterface()
    turns = [Turn.text(USER, "hi"), Turn.text(ASSISTANT, "hello")]
    messages = provider.format_messages(turns, "Be brief.")
    assert messages == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ]


def test_format_messages_image_parts():
    provider = ServerInterface()
    turn = Turn(role=USER, segments=[TextSegment("what is this"), ImageSegment("image/png", "AAAA")])
    content = provider.format_messages([turn])[0]["content"]
    assert content[0] == {"type": "text", "text": "what is this"}
    assert content[1]["image_url"]["url"] == "data:image/png;base64,AAAA"


def test_format_messages_tool_call_as_text():
    provider = ServerInterface()
    turn = Turn(role=ASSISTANT, segments=[ToolCallSegment("grep", {"pattern": "x"}, result="a.py:1")])
    content = provider.format_messages([turn])[0]["content"]
    assert content.startswith('[tool_call grep {"pattern": "x"}]')
    assert content.endswith("[tool_result grep]\na.py:1")


def test_llamacpp_stream():
    server = start_server()
    try:
        provider = ServerInterface(endpoint=base_url(server), timeout_seconds=5)
        chunks = []
        response = provider.stream(sample_turns(), "SYS", chunks.append)
        assert response.text == "Hello"
        assert [c.text for c in chunks] == ["Hel", "lo", ""]
        request = server.requests[0]
        assert request["body"]["stream"] is True
        assert request["body"]["messages"][0] == {"role": "system", "content": "SYS"}
    finally:
        stop_server(server)


def test_llamacpp_chat_with_usage():
    server = start_server()
    try:
        provider = ServerInterface(endpoint=base_url(server), timeout_seconds=5)
        response = provider.chat(sample_turns())
        assert response.text == "Hello"
        assert response.tokens_used.total == 7
        assert response.tokens_used.prompt == 5
    finally:
        stop_server(server)


def test_llamacpp_health_and_tokenize():
    server = start_server()
    try:
        provider = ServerInterface(endpoint=base_url(server) + "/", timeout_seconds=5)
        assert provider.check_health() is True
        assert provider.count_tokens("some text") == 4
        assert provider.get_model_info() == {"model": "tiny.gguf", "ctx_size": 4096}
    finally:
        stop_server(server)


def test_llamacpp_auth_error():
    server = start_server(status=401)
    try:
        provider = ServerInterface(endpoint=base_url(server), timeout_seconds=5)
        try:
            provider.chat(sample_turns())
            assert False, "Should have raised ProviderError"
        except ProviderError as e:
            assert e.status == 401
            assert "Authentication failed" in e.message
            assert "bad key" in e.message
        assert provider.check_health() is False
    finally:
        stop_server(server)


def test_llamacpp_rate_limited_stream():
    server = start_server(status=429)
    try:
        provider = ServerInterface(endpoint=base_url(server), timeout_seconds=5)
        chunks = []
        try:
            provider.stream(sample_turns(), None, chunks.append)
            assert False, "Should have raised ProviderError"
        except ProviderError as e:
            assert e.status == 429
        assert chunks == []
    finally:
        stop_server(server)


def test_llamacpp_cancel_while_server_silent():
    server = start_server(stall=True)
    try:
        provider = ServerInterface(endpoint=base_url(server), timeout_seconds=5)
        cancel = CancelSignal()
        chunks = []

        def on_chunk(chunk):
            chunks.append(chunk)
            if not chunk.done:
                threading.Timer(0.2, cancel.set).start()

        start = time.monotonic()
        response = provider.stream(sample_turns(), None, on_chunk, cancel=cancel)
        elapsed = time.monotonic() - start
        assert response.cancelled is True
        assert response.text == "Hi"
        assert [c.done for c in chunks] == [False, True]
        assert provider.state == CANCELLED
        assert elapsed < 2, f"cancel took {elapsed:.1f}s"
    finally:
        stop_server(server)


def test_llamacpp_silent_server_times_out():
    server = start_server(stall=True)
    try:
        provider = ServerInterface(endpoint=base_url(server), timeout_seconds=1)
        chunks = []
        try:
            provider.stream(sample_turns(), None, chunks.append)
            assert False, "Should have raised ProviderError"
        except ProviderError as e:
            assert "stalled" in e.message
        assert [c.text for c in chunks] == ["Hi"]
        assert not any(c.done for c in chunks)
        assert provider.state == ERRORED
    finally:
        stop_server(server)


def test_llamacpp_unreachable():
    provider = ServerInterface(endpoint=f"http://127.0.0.1:{free_port()}", timeout_seconds=2)
    assert provider.check_health() is False
    try:
        provider.chat(sample_turns())
        assert False, "Should have raised ProviderError"
    except ProviderError as e:
        assert "Connection failed" in e.message
    # Falls back to the heuristic when /tokenize is unreachable
    assert provider.count_tokens("abcdef") == 2


# ============================================================
# Gemini Adapter Tests
# ============================================================

def test_gemini_requires_api_key():
    saved = os.environ.pop(API_KEY_ENV, None)
    try:
        try:
            GeminiInterface()
            assert False, "Should have raised ProviderError"
        except ProviderError as e:
            assert API_KEY_ENV in e.message
    finally:
        if saved is not None:
            os.environ[API_KEY_ENV] = saved


def test_gemini_format_contents():
    provider = GeminiInterface(api_key="test-key")
    turns = [
        Turn.text(SYSTEM, "rules"),
        Turn.text(USER, "hi"),
        Turn(role=ASSISTANT, segments=[ToolCallSegment("ls", {"dir": "."}, result="a.py")]),
    ]
    contents = provider.format_contents(turns)
    assert contents[0] == {"role": "user", "parts": [{"text": "[system] rules"}]}
    assert contents[1] == {"role": "user", "parts": [{"text": "hi"}]}
    assert contents[2]["role"] == "model"
    assert contents[2]["parts"][0] == {"functionCall": {"name": "ls", "args": {"dir": "."}}}
    assert contents[2]["parts"][1]["functionResponse"]["response"] == {"result": "a.py"}


def test_gemini_stream_and_chat():
    server = start_server()
    try:
        provider = GeminiInterface(api_key="test-key", api_base=base_url(server), timeout_seconds=5)
        chunks = []
        response = provider.stream(sample_turns(), "SYS", chunks.append)
        assert response.text == "Hi there"
        assert chunks[-1].done
        request = server.requests[0]
        assert request["path"] == "/models/gemini-2.0-flash:streamGenerateContent?alt=sse"
        assert request["api_key"] == "test-key"
        assert request["body"]["systemInstruction"] == {"parts": [{"text": "SYS"}]}

        response = provider.chat(sample_turns())
        assert response.text == "Hi there"
        assert response.tokens_used.total == 5

        assert provider.check_health() is True
        assert provider.count_tokens("anything") == 9
    finally:
        stop_server(server)


def test_gemini_blocked_prompt():
    provider = GeminiInterface(api_key="test-key")
    try:
        provider._extract_text({"promptFeedback": {"blockReason": "SAFETY"}})
        assert False, "Should have raised ProviderError"
    except ProviderError as e:
        assert "SAFETY" in e.message
    assert provider._extract_text({"usageMetadata": {"totalTokenCount": 1}}) == ""


# ============================================================
# Factory Tests
# ============================================================

def test_factory_llamacpp():
    provider = create_provider({"provider": "llamacpp", "endpoint": "http://localhost:9999/", "timeout": 5})
    assert isinstance(provider, ServerInterface)
    assert provider.base_url == "http://localhost:9999"
    assert provider.timeout_seconds == 5


def test_factory_gemini():
    provider = create_provider({"provider": "gemini", "api_key": "k", "model": "gemini-1.5-pro"})
    assert isinstance(provider, GeminiInterface)
    assert provider.model == "gemini-1.5-pro"


def test_factory_unknown():
    try:
        create_provider({"provider": "openai"})
        assert False, "Should have raised ProviderError"
    except ProviderError as e:
        assert "Unknown provider" in e.message


# ============================================================
# Runner
# ============================================================

if __name__ == "__main__":
    test_functions = [v for k, v in sorted(globals().items()) if k.startswith("test_")]
    passed = 0
    failed = 0
    for fn in test_functions:
        try:
            fn()
            passed += 1
            print(f"  PASS  {fn.__name__}")
        except Exception as e:
            failed += 1
            print(f"  FAIL  {fn.__name__}: {e}")

    print(f"\n{passed} passed, {failed} failed, {passed + failed} total")
    sys.exit(1 if failed else 0)
