"""
Secondary LLM providers called directly, without the proxy.

OpenAI chat completions and Google Gemini generateContent. Both read their
credential from the environment (or the local .env) at construction time.
"""
from typing import Any, Dict, Optional, Union

import requests

from . import config as CFG
from .chat_api import ProxyChatClient
from .error_handler import ConfigurationError, ProviderError
from .logging_utils import setup_logger

logger = setup_logger("voicechat.providers", "voicechat.log")

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
GEMINI_GENERATE_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
OPENAI_SYSTEM_PROMPT = "You are a helpful assistant."
REQUEST_TIMEOUT = 60.0


def _json_or_empty(resp) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _provider_error_message(data: Dict[str, Any], default: str) -> str:
    err = data.get("error")
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    return str(data.get("message") or default)


class OpenAIChatProvider:
    """OpenAI chat completions with a fixed helpful-assistant system turn"""

    name = "openai"

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 session: Optional[requests.Session] = None, timeout: float = REQUEST_TIMEOUT):
        self.api_key = api_key if api_key is not None else CFG.get_openai_api_key()
        if not self.api_key:
            raise ConfigurationError(
                "Missing OPENAI_API_KEY. Add it (or VITE_OPENAI_API_KEY) to the project root .env",
                component="providers", operation="openai_init")
        self.model = model or CFG.get_openai_model()
        self.session = session or requests.Session()
        self.timeout = timeout

    def generate_text(self, prompt: Any) -> str:
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": OPENAI_SYSTEM_PROMPT},
                {"role": "user", "content": "" if prompt is None else str(prompt)},
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            resp = self.session.post(OPENAI_CHAT_URL, json=body, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"OpenAI request failed: {e}", operation="generate_text") from e

        data = _json_or_empty(resp)
        if not 200 <= resp.status_code < 300:
            msg = _provider_error_message(data, "OpenAI request failed")
            logger.error(f"OpenAI returned HTTP {resp.status_code}: {msg}")
            raise ProviderError(msg, status=resp.status_code, operation="generate_text")

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return ""
        return content.strip() if isinstance(content, str) else ""


class GeminiProvider:
    """Google Gemini generateContent over its REST endpoint"""

    name = "gemini"

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 session: Optional[requests.Session] = None, timeout: float = REQUEST_TIMEOUT):
        self.api_key = api_key if api_key is not None else CFG.get_gemini_api_key()
        if not self.api_key:
            raise ConfigurationError(
                "Missing GEMINI_API_KEY. Add it (or VITE_GEMINI_API_KEY) to the project root .env",
                component="providers", operation="gemini_init")
        self.model = model or CFG.get_gemini_model()
        self.session = session or requests.Session()
        self.timeout = timeout

    def generate_text(self, contents: Any) -> str:
        if isinstance(contents, list):
            body = {"contents": contents}
        else:
            body = {"contents": [{"role": "user", "parts": [{"text": "" if contents is None else str(contents)}]}]}
        url = GEMINI_GENERATE_URL.format(model=self.model)
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        try:
            resp = self.session.post(url, json=body, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"Gemini request failed: {e}", operation="generate_text") from e

        data = _json_or_empty(resp)
        if not 200 <= resp.status_code < 300:
            msg = _provider_error_message(data, "Gemini request failed")
            logger.error(f"Gemini returned HTTP {resp.status_code}: {msg}")
            raise ProviderError(msg, status=resp.status_code, operation="generate_text")

        return self.extract_text(data)

    @staticmethod
    def extract_text(data: Dict[str, Any]) -> str:
        """Join the text parts of the first candidate"""
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            return ""
        texts = [p.get("text", "") for p in parts if isinstance(p, dict)]
        return "".join(t for t in texts if isinstance(t, str))


Provider = Union[OpenAIChatProvider, GeminiProvider, ProxyChatClient]


def get_provider(name: str, **kwargs) -> Provider:
    """Build a provider by name: nvidia (through the proxy), openai or gemini"""
    key = (name or "").strip().lower()
    if key == "openai":
        return OpenAIChatProvider(**kwargs)
    if key == "gemini":
        return GeminiProvider(**kwargs)
    if key == "nvidia":
        return ProxyChatClient(**kwargs)
    raise ValueError(f"Unknown provider '{name}'. Expected one of: nvidia, openai, gemini")
