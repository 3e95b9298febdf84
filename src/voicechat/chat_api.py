"""
Client for the VoiceChat proxy's /api/nvidia/chat endpoint.

Buffered calls return the reply text; streaming calls parse the relayed SSE
frames and report each content delta as it arrives.
"""
import json
from typing import Any, Callable, Dict, List, Optional, Union

import requests

from . import config as CFG
from .cancellation import CancelToken, check
from .error_handler import ChatRequestError, RequestCancelled
from .logging_utils import setup_logger

logger = setup_logger("voicechat.chat_api", "voicechat.log")

DONE_SENTINEL = "[DONE]"
DETAILS_EXCERPT_LIMIT = 220

PromptOrMessages = Union[str, List[Dict[str, str]]]
DeltaCallback = Callable[[str, str], None]


def parse_sse_line(line: Union[str, bytes]) -> Optional[str]:
    """Payload of an SSE `data:` line, or None for anything else"""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    return payload or None


def extract_sse_delta(chunk: Dict[str, Any]) -> str:
    """Content carried by one streamed chat-completions chunk"""
    try:
        choice = chunk["choices"][0]
    except (KeyError, IndexError, TypeError):
        return ""
    if not isinstance(choice, dict):
        return ""
    delta = (choice.get("delta") or {}).get("content") if isinstance(choice.get("delta"), dict) else None
    if isinstance(delta, str):
        return delta
    # Some providers stream whole message chunks
    message = choice.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    return ""


def _details_message(details: Any) -> str:
    if isinstance(details, str):
        return details
    if not isinstance(details, dict):
        return ""
    err = details.get("error")
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    return str(details.get("message") or details.get("raw") or "")


class ProxyChatClient:
    """Client for the proxy chat endpoint, buffered or streaming"""

    def __init__(self, base_url: Optional[str] = None, model: Optional[str] = None,
                 timeout: Optional[float] = None, stream_timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or CFG.get_proxy_url()).rstrip("/")
        self.model = model or CFG.get_upstream_model()
        # The proxy may retry upstream, so allow for its retry timeout too
        self.timeout = timeout if timeout is not None else CFG.get_upstream_timeout() + 50.0
        self.stream_timeout = stream_timeout if stream_timeout is not None else CFG.get_stream_timeout()
        self.session = session or requests.Session()

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}/api/nvidia/chat"

    def _body(self, prompt_or_messages: PromptOrMessages, params: Optional[Dict[str, Any]],
              stream: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {"model": self.model, "stream": stream,
                                "params": {**CFG.get_generation_defaults(), **(params or {})}}
        if isinstance(prompt_or_messages, list):
            body["messages"] = prompt_or_messages
        else:
            body["prompt"] = str(prompt_or_messages or "")
        return body

    def _post(self, body: Dict[str, Any], timeout: float, stream: bool,
              cancel_token: Optional[CancelToken]):
        check(cancel_token)
        try:
            resp = self.session.post(self.chat_url, json=body, timeout=timeout, stream=stream)
        except requests.exceptions.RequestException as e:
            if cancel_token is not None and cancel_token.cancelled:
                raise RequestCancelled() from e
            raise ChatRequestError(
                f"Network error calling the chat proxy at {self.base_url}: {e}. "
                f"Start it with `voicechat proxy`.", status=0, operation="post") from e

        if cancel_token is not None and cancel_token.cancelled:
            resp.close()
            raise RequestCancelled()
        return resp

    @staticmethod
    def _json(resp) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _raise_for_error(self, resp) -> None:
        if 200 <= resp.status_code < 300:
            return
        data = self._json(resp)
        resp.close()
        msg = data.get("error") or data.get("message") or "Backend request failed"
        details_msg = _details_message(data.get("details"))
        extra = f" | {details_msg[:DETAILS_EXCERPT_LIMIT]}" if details_msg else ""
        raise ChatRequestError(f"{msg}{extra} (HTTP {resp.status_code})", status=resp.status_code,
                               operation="chat")

    def generate_text(self, prompt_or_messages: PromptOrMessages, params: Optional[Dict[str, Any]] = None,
                      cancel_token: Optional[CancelToken] = None) -> str:
        """Buffered reply text (stripped)"""
        resp = self._post(self._body(prompt_or_messages, params, stream=False), self.timeout, False, cancel_token)
        self._raise_for_error(resp)
        data = self._json(resp)
        check(cancel_token)
        text = data.get("text")
        if text is None:
            text = extract_sse_delta(data)
        return str(text or "").strip()

    def generate_text_stream(self, prompt_or_messages: PromptOrMessages,
                             on_delta: Optional[DeltaCallback] = None,
                             params: Optional[Dict[str, Any]] = None,
                             cancel_token: Optional[CancelToken] = None) -> str:
        """Stream the reply, calling on_delta(delta, full_so_far) per chunk.

        Returns the full stripped text. Raises RequestCancelled when the token
        fires; on_delta is never called after that.
        """
        resp = self._post(self._body(prompt_or_messages, params, stream=True), self.stream_timeout, True,
                          cancel_token)
        self._raise_for_error(resp)

        content_type = (resp.headers.get("content-type") or "").lower()
        if "application/json" in content_type:
            # Proxy answered with a buffered body
            data = self._json(resp)
            check(cancel_token)
            text = str(data.get("text") or extract_sse_delta(data) or "").strip()
            if text:
                self._emit(on_delta, text, text)
            return text

        if cancel_token is not None:
            cancel_token.add_callback(resp.close)

        full = ""
        try:
            for line in resp.iter_lines():
                check(cancel_token)
                payload = parse_sse_line(line)
                if payload is None:
                    continue
                if payload == DONE_SENTINEL:
                    break
                try:
                    chunk = json.loads(payload)
                except ValueError:
                    continue
                delta = extract_sse_delta(chunk) if isinstance(chunk, dict) else ""
                if not delta:
                    continue
                full += delta
                check(cancel_token)
                self._emit(on_delta, delta, full)
        except RequestCancelled:
            raise
        except Exception as e:
            if cancel_token is not None and cancel_token.cancelled:
                raise RequestCancelled() from e
            if isinstance(e, requests.exceptions.RequestException):
                raise ChatRequestError(f"Stream interrupted: {e}", status=0, operation="stream") from e
            raise
        finally:
            if cancel_token is not None:
                cancel_token.remove_callback(resp.close)
            resp.close()

        check(cancel_token)
        return full.strip()

    @staticmethod
    def _emit(on_delta: Optional[DeltaCallback], delta: str, full: str) -> None:
        if on_delta is None:
            return
        try:
            on_delta(delta, full)
        except Exception as e:
            logger.warning(f"on_delta callback error: {e}")

    def check_health(self) -> bool:
        try:
            resp = self.session.get(f"{self.base_url}/health", timeout=2)
        except requests.exceptions.RequestException:
            return False
        return resp.status_code == 200 and bool(self._json(resp).get("ok"))
