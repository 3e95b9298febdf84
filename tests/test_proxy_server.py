import os
import sys

import pytest
import requests

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from conftest import FakeResponse, FakeSession
from voicechat.error_handler import ValidationError, get_error_handler
from voicechat.proxy_server import MISSING_KEY_ERROR, create_app, parse_chat_request
from voicechat.upstream import NvidiaChatClient

SSE_CHUNKS = [
    b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n',
    b'data: {"choices":[{"delta":{"content":"lo"}}]}\n\n',
    b"data: [DONE]\n\n",
]


def _ok(text):
    return FakeResponse(200, {"choices": [{"message": {"content": text}}]})


def _make_client(*outcomes):
    session = FakeSession(*outcomes)
    clients = []

    def factory(key):
        client = NvidiaChatClient(key, url="https://nvidia.test/v1/chat/completions", model="test/model",
                                  timeout=30.0, stream_timeout=60.0, retry_attempts=2, session=session,
                                  sleep=lambda s: None, jitter=lambda lo, hi: lo)
        clients.append(client)
        return client

    return factory, session, clients


@pytest.fixture
def make_app():
    def factory(*outcomes, key="nvapi-abcdef123456wxyz"):
        client_factory, session, clients = _make_client(*outcomes)
        app = create_app(client_factory=client_factory, key_resolver=lambda: key)
        app.config['TESTING'] = True
        return app.test_client(), session, clients
    return factory


def test_health(make_app):
    client, _, _ = make_app()
    resp = client.get('/health')
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True}


def test_health_nvidia_reports_key_hint(make_app):
    client, _, _ = make_app()
    resp = client.get('/health/nvidia')
    assert resp.get_json() == {"ok": True, "hasKey": True, "keyHint": "nvapi-...wxyz"}


def test_health_nvidia_without_key(make_app):
    client, _, _ = make_app(key="")
    assert client.get('/health/nvidia').get_json() == {"ok": True, "hasKey": False, "keyHint": ""}


def test_buffered_prompt_returns_text(make_app):
    client, session, clients = make_app(_ok("  Hi there!  "))

    resp = client.post('/api/nvidia/chat', json={"prompt": " Hello ", "params": {"temperature": 0.2}})

    assert resp.status_code == 200
    assert resp.get_json() == {"text": "Hi there!"}
    assert clients[0].api_key == "nvapi-abcdef123456wxyz"
    sent = session.calls[0]["json"]
    assert sent["messages"] == [{"role": "user", "content": "Hello"}]
    assert sent["temperature"] == 0.2
    assert sent["model"] == "test/model"


def test_model_override_is_forwarded(make_app):
    client, session, _ = make_app(_ok("ok"))
    client.post('/api/nvidia/chat', json={"messages": [{"role": "user", "content": "Hi"}], "model": "other/model"})
    assert session.calls[0]["json"]["model"] == "other/model"


def test_missing_key_is_500_without_upstream_call(make_app):
    client, session, _ = make_app(key="")

    resp = client.post('/api/nvidia/chat', json={"prompt": "Hello"})

    assert resp.status_code == 500
    assert resp.get_json() == {"error": MISSING_KEY_ERROR}
    assert session.calls == []


@pytest.mark.parametrize("body", [
    {},
    {"prompt": "   "},
    {"prompt": "Hi", "messages": [{"role": "user", "content": "Hi"}]},
    {"messages": []},
    {"messages": [{"role": "tool", "content": "x"}]},
    {"messages": [{"role": "user", "content": 5}]},
    {"prompt": "Hi", "params": "hot"},
])
def test_invalid_bodies_are_400(make_app, body):
    client, session, _ = make_app()
    resp = client.post('/api/nvidia/chat', json=body)
    assert resp.status_code == 400
    assert "error" in resp.get_json()
    assert session.calls == []


def test_non_json_body_is_400(make_app):
    client, _, _ = make_app()
    resp = client.post('/api/nvidia/chat', data="not json", content_type="text/plain")
    assert resp.status_code == 400


def test_upstream_error_status_and_details_are_mirrored(make_app):
    client, _, _ = make_app(FakeResponse(401, {"error": {"message": "Invalid API key"}}))

    resp = client.post('/api/nvidia/chat', json={"prompt": "Hello"})

    assert resp.status_code == 401
    assert resp.get_json() == {"error": "Invalid API key", "details": {"error": {"message": "Invalid API key"}}}


def test_upstream_timeout_is_504(make_app):
    client, _, _ = make_app(requests.exceptions.Timeout("slow"), requests.exceptions.Timeout("slow"))

    resp = client.post('/api/nvidia/chat', json={"prompt": "Hello"})

    assert resp.status_code == 504
    assert "timed out" in resp.get_json()["error"]


def test_unexpected_error_is_500(make_app):
    client, _, _ = make_app(RuntimeError("boom"))

    resp = client.post('/api/nvidia/chat', json={"prompt": "Hello"})

    assert resp.status_code == 500
    assert resp.get_json() == {"error": "boom"}


def test_stream_passthrough(make_app):
    upstream = FakeResponse(200, chunks=SSE_CHUNKS, headers={"Content-Type": "text/event-stream"})
    client, session, _ = make_app(upstream)

    resp = client.post('/api/nvidia/chat', json={"prompt": "Hello", "stream": True})

    assert resp.status_code == 200
    assert resp.headers["Content-Type"].startswith("text/event-stream")
    assert resp.headers["Cache-Control"] == "no-cache, no-transform"
    assert resp.headers["X-Accel-Buffering"] == "no"
    assert resp.get_data() == b"".join(SSE_CHUNKS)
    assert session.calls[0]["stream"] is True
    assert upstream.closed


def test_client_disconnect_closes_upstream_stream(make_app):
    upstream = FakeResponse(200, chunks=SSE_CHUNKS, headers={"Content-Type": "text/event-stream"})
    client, _, _ = make_app(upstream)

    resp = client.post('/api/nvidia/chat', json={"prompt": "Hello", "stream": True}, buffered=False)
    assert next(iter(resp.response)) == SSE_CHUNKS[0]
    assert not upstream.closed

    resp.close()

    assert upstream.closed


def test_stream_rejection_is_buffered_json_error(make_app):
    client, _, _ = make_app(FakeResponse(429, {"error": {"message": "Too many requests"}}))

    resp = client.post('/api/nvidia/chat', json={"prompt": "Hello", "stream": True})

    assert resp.status_code == 429
    assert resp.get_json()["error"] == "Too many requests"


def test_stream_interrupted_mid_body_ends_response(make_app):
    class BrokenStream(FakeResponse):
        def iter_content(self, chunk_size=None):
            yield SSE_CHUNKS[0]
            raise requests.exceptions.ChunkedEncodingError("connection reset")

    upstream = BrokenStream(200, headers={"Content-Type": "text/event-stream"})
    client, _, _ = make_app(upstream)
    errors_before = get_error_handler().error_count

    resp = client.post('/api/nvidia/chat', json={"prompt": "Hello", "stream": True})

    assert resp.status_code == 200
    assert resp.get_data() == SSE_CHUNKS[0]
    assert upstream.closed
    assert get_error_handler().error_count == errors_before + 1


def test_login_requires_username(make_app):
    client, _, _ = make_app()

    ok = client.post('/login', json={"username": "  ada "})
    assert ok.status_code == 200
    assert ok.get_json() == {"success": True, "username": "ada"}

    missing = client.post('/login', json={})
    assert missing.status_code == 400
    assert missing.get_json()["success"] is False


def test_parse_chat_request_normalizes_prompt():
    messages, model, stream, params = parse_chat_request({"prompt": "  Hi  ", "stream": 1})
    assert messages == [{"role": "user", "content": "Hi"}]
    assert model is None
    assert stream is True
    assert params is None


def test_parse_chat_request_rejects_non_object():
    with pytest.raises(ValidationError):
        parse_chat_request(["prompt"])
