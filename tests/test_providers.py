import os
import sys

import pytest
import requests

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from conftest import FakeResponse, FakeSession
from voicechat import config as CFG
from voicechat.chat_api import ProxyChatClient
from voicechat.error_handler import ConfigurationError, ProviderError
from voicechat.providers import (GEMINI_GENERATE_URL, OPENAI_CHAT_URL, GeminiProvider, OpenAIChatProvider,
                                 get_provider)


def test_openai_request_shape():
    session = FakeSession(FakeResponse(200, {"choices": [{"message": {"content": " Paris. "}}]}))
    provider = OpenAIChatProvider(api_key="sk-test", model="gpt-4o-mini", session=session)

    assert provider.generate_text("Capital of France?") == "Paris."

    call = session.calls[0]
    assert call["url"] == OPENAI_CHAT_URL
    assert call["headers"]["Authorization"] == "Bearer sk-test"
    assert call["json"] == {
        "model": "gpt-4o-mini",
        "messages": [
            {"role": "system", "content": "You are a helpful assistant."},
            {"role": "user", "content": "Capital of France?"},
        ],
    }


def test_openai_error_status():
    session = FakeSession(FakeResponse(429, {"error": {"message": "Rate limit reached"}}))
    provider = OpenAIChatProvider(api_key="sk-test", session=session)

    with pytest.raises(ProviderError) as exc_info:
        provider.generate_text("Hi")
    assert exc_info.value.status == 429
    assert exc_info.value.message == "Rate limit reached"


def test_openai_network_error():
    provider = OpenAIChatProvider(api_key="sk-test", session=FakeSession(requests.exceptions.ConnectionError("dns")))
    with pytest.raises(ProviderError):
        provider.generate_text("Hi")


def test_missing_keys_raise_configuration_error():
    with pytest.raises(ConfigurationError) as exc_info:
        OpenAIChatProvider(api_key="")
    assert "OPENAI_API_KEY" in exc_info.value.message

    with pytest.raises(ConfigurationError) as exc_info:
        GeminiProvider(api_key="")
    assert "GEMINI_API_KEY" in exc_info.value.message


def test_provider_reads_key_from_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
    assert OpenAIChatProvider().api_key == "sk-from-env"


def test_gemini_wraps_string_prompt():
    session = FakeSession(FakeResponse(200, {
        "candidates": [{"content": {"parts": [{"text": "Bon"}, {"text": "jour"}]}}],
    }))
    provider = GeminiProvider(api_key="g-test", model="gemini-test", session=session)

    assert provider.generate_text("Say hello in French") == "Bonjour"

    call = session.calls[0]
    assert call["url"] == GEMINI_GENERATE_URL.format(model="gemini-test")
    assert call["headers"]["x-goog-api-key"] == "g-test"
    assert call["json"] == {"contents": [{"role": "user", "parts": [{"text": "Say hello in French"}]}]}


def test_gemini_passes_structured_contents_through():
    contents = [{"role": "user", "parts": [{"text": "Hi"}]}, {"role": "model", "parts": [{"text": "Hello"}]}]
    session = FakeSession(FakeResponse(200, {"candidates": []}))
    provider = GeminiProvider(api_key="g-test", session=session)

    assert provider.generate_text(contents) == ""
    assert session.calls[0]["json"] == {"contents": contents}


def test_gemini_error_status():
    session = FakeSession(FakeResponse(400, {"error": {"message": "API key not valid"}}))
    provider = GeminiProvider(api_key="g-test", session=session)

    with pytest.raises(ProviderError) as exc_info:
        provider.generate_text("Hi")
    assert exc_info.value.status == 400


def test_get_provider():
    assert isinstance(get_provider("OpenAI", api_key="sk"), OpenAIChatProvider)
    assert isinstance(get_provider("gemini", api_key="g"), GeminiProvider)
    nvidia = get_provider("nvidia", base_url="http://proxy.test")
    assert isinstance(nvidia, ProxyChatClient)
    assert nvidia.base_url == "http://proxy.test"

    with pytest.raises(ValueError):
        get_provider("anthropic")


def test_nvidia_provider_uses_configured_proxy_url(monkeypatch):
    monkeypatch.setenv("VOICECHAT_PROXY_URL", "http://example.test:9000/")
    assert get_provider("nvidia").base_url == CFG.get_proxy_url() == "http://example.test:9000"
