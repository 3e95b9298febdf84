#!/usr/bin/env python3
"""
VoiceChat Upstream LLM Client

Talks to NVIDIA's hosted OpenAI-compatible chat-completions endpoint.
Buffered calls retry on timeouts, transport failures and retryable HTTP
statuses; streaming calls never retry and hand raw SSE bytes to the caller.
"""
import json
import random
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from . import config as CFG
from .cancellation import CancelToken, check
from .error_handler import UpstreamError
from .logging_utils import setup_logger

logger = setup_logger("voicechat.upstream", "upstream.log")

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
RETRY_TIMEOUT_FLOOR = 45.0  # seconds, timeout used by every attempt after the first
RETRY_MAX_TOKENS_CAP = 64
BACKOFF_RANGE = (0.4, 0.9)  # seconds
RAW_BODY_LIMIT = 1000

Message = Dict[str, str]


def build_params(params: Optional[Dict[str, Any]], defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Fill missing generation parameters from defaults; None counts as missing"""
    merged = dict(defaults if defaults is not None else CFG.DEFAULT_GENERATION_PARAMS)
    for key, value in (params or {}).items():
        if key in merged and value is not None:
            merged[key] = value
    return merged


def parse_body(response) -> Dict[str, Any]:
    """Decode a JSON response body, falling back to a truncated raw excerpt"""
    try:
        raw = response.text or ""
    except Exception:
        raw = ""
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        return {"raw": raw[:RAW_BODY_LIMIT]}
    return data if isinstance(data, dict) else {"data": data}


def error_message(data: Dict[str, Any], status: int) -> str:
    """Message from a provider error envelope"""
    err = data.get("error")
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    if isinstance(err, str) and err:
        return err
    if data.get("message"):
        return str(data["message"])
    return f"NVIDIA request failed (HTTP {status})"


def extract_reply_text(data: Dict[str, Any]) -> str:
    """choices[0].message.content of a chat-completions payload, '' if absent"""
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return ""
    return content if isinstance(content, str) else ""


def _is_success(status: int) -> bool:
    return 200 <= status < 300


class UpstreamStream:
    """Live upstream SSE response; close() aborts the HTTP request"""

    def __init__(self, response, cancel_token: Optional[CancelToken] = None):
        self._response = response
        self._cancel_token = cancel_token
        self._closed = False
        self.status_code = response.status_code
        if cancel_token is not None:
            cancel_token.add_callback(self.close)

    @property
    def closed(self) -> bool:
        return self._closed

    def iter_bytes(self) -> Iterator[bytes]:
        """Yield raw upstream bytes as they arrive, verbatim"""
        try:
            for chunk in self._response.iter_content(chunk_size=None):
                if self._closed or (self._cancel_token is not None and self._cancel_token.cancelled):
                    break
                if chunk:
                    yield chunk
        except Exception as e:
            if self._closed:
                logger.info("Upstream stream closed while reading")
                return
            if isinstance(e, requests.exceptions.RequestException):
                raise UpstreamError(f"NVIDIA stream interrupted: {e}", status=502,
                                    operation="stream") from e
            raise
        finally:
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._cancel_token is not None:
            self._cancel_token.remove_callback(self.close)
        try:
            self._response.close()
        except Exception as e:
            logger.debug(f"Error closing upstream response: {e}")


class NvidiaChatClient:
    """Upstream chat-completions client owning retry and timeout policy"""

    def __init__(self, api_key: str, url: Optional[str] = None, model: Optional[str] = None,
                 timeout: Optional[float] = None, stream_timeout: Optional[float] = None,
                 retry_attempts: Optional[int] = None, defaults: Optional[Dict[str, Any]] = None,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 jitter: Callable[[float, float], float] = random.uniform):
        self.api_key = api_key
        self.url = url or CFG.get_upstream_url()
        self.model = model or CFG.get_upstream_model()
        self.timeout = timeout if timeout is not None else CFG.get_upstream_timeout()
        self.stream_timeout = stream_timeout if stream_timeout is not None else CFG.get_stream_timeout()
        attempts = retry_attempts if retry_attempts is not None else CFG.get_retry_attempts()
        self.retry_attempts = max(1, int(attempts))
        self.defaults = defaults if defaults is not None else CFG.get_generation_defaults()
        self.session = session or requests.Session()
        self._sleep = sleep
        self._jitter = jitter

    def _headers(self, accept: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": accept,
            "Content-Type": "application/json",
        }

    def _build_body(self, messages: List[Message], model: Optional[str], params: Optional[Dict[str, Any]],
                    stream: bool, attempt: int = 1) -> Dict[str, Any]:
        merged = build_params(params, self.defaults)
        max_tokens = merged["max_tokens"]
        if attempt > 1:
            max_tokens = min(max_tokens, RETRY_MAX_TOKENS_CAP)
        return {
            "model": model or self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": merged["temperature"],
            "top_p": merged["top_p"],
            "frequency_penalty": merged["frequency_penalty"],
            "presence_penalty": merged["presence_penalty"],
            "stream": stream,
        }

    def _backoff(self) -> None:
        delay = self._jitter(*BACKOFF_RANGE)
        logger.info(f"Retrying NVIDIA request in {delay:.2f}s")
        self._sleep(delay)

    def chat_completions(self, messages: List[Message], model: Optional[str] = None,
                         params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Buffered completion; returns the provider's JSON payload.

        Raises:
            UpstreamError: carrying the status to mirror (upstream status,
                502 for transport failures, 504 for timeouts)
        """
        attempts = self.retry_attempts
        for attempt in range(1, attempts + 1):
            timeout = self.timeout if attempt == 1 else max(self.timeout, RETRY_TIMEOUT_FLOOR)
            body = self._build_body(messages, model, params, stream=False, attempt=attempt)
            logger.info(f"NVIDIA request attempt {attempt}/{attempts} model={body['model']} "
                        f"max_tokens={body['max_tokens']} timeout={timeout:.0f}s")

            try:
                resp = self.session.post(self.url, json=body, headers=self._headers("application/json"),
                                         timeout=timeout)
            except requests.exceptions.Timeout:
                if attempt < attempts:
                    logger.warning(f"NVIDIA request timed out after {timeout:.0f}s; retrying")
                    continue
                raise UpstreamError(f"NVIDIA request timed out after {int(timeout * 1000)}ms",
                                    status=504, operation="chat_completions")
            except requests.exceptions.RequestException as e:
                if attempt < attempts:
                    logger.warning(f"NVIDIA transport error: {e}; retrying")
                    self._backoff()
                    continue
                raise UpstreamError(f"Upstream network error calling NVIDIA: {e}", status=502,
                                    details={"name": type(e).__name__, "message": str(e)},
                                    operation="chat_completions") from e

            data = parse_body(resp)
            if _is_success(resp.status_code):
                return data

            msg = error_message(data, resp.status_code)
            if attempt < attempts and resp.status_code in RETRYABLE_STATUSES:
                logger.warning(f"NVIDIA returned HTTP {resp.status_code}: {msg}")
                self._backoff()
                continue

            logger.error(f"NVIDIA request failed with HTTP {resp.status_code}: {msg}")
            raise UpstreamError(msg, status=resp.status_code, details=data, operation="chat_completions")

        raise UpstreamError("NVIDIA request failed after retries", status=502, operation="chat_completions")

    def complete_text(self, messages: List[Message], model: Optional[str] = None,
                      params: Optional[Dict[str, Any]] = None) -> str:
        return extract_reply_text(self.chat_completions(messages, model=model, params=params)).strip()

    def open_stream(self, messages: List[Message], model: Optional[str] = None,
                    params: Optional[Dict[str, Any]] = None,
                    cancel_token: Optional[CancelToken] = None) -> UpstreamStream:
        """Start a streaming completion. No retries; failures before the first
        byte raise UpstreamError, cancellation raises RequestCancelled."""
        check(cancel_token)
        body = self._build_body(messages, model, params, stream=True)
        logger.info(f"NVIDIA stream request model={body['model']} max_tokens={body['max_tokens']}")

        try:
            resp = self.session.post(self.url, json=body, headers=self._headers("text/event-stream"),
                                     timeout=self.stream_timeout, stream=True)
        except requests.exceptions.Timeout:
            raise UpstreamError(f"NVIDIA stream timed out after {int(self.stream_timeout * 1000)}ms",
                                status=504, operation="open_stream")
        except requests.exceptions.RequestException as e:
            raise UpstreamError(f"Upstream network error calling NVIDIA: {e}", status=502,
                                details={"name": type(e).__name__, "message": str(e)},
                                operation="open_stream") from e

        if not _is_success(resp.status_code):
            data = parse_body(resp)
            resp.close()
            msg = error_message(data, resp.status_code)
            logger.error(f"NVIDIA stream rejected with HTTP {resp.status_code}: {msg}")
            raise UpstreamError(msg, status=resp.status_code, details=data, operation="open_stream")

        stream = UpstreamStream(resp, cancel_token)
        if cancel_token is not None and cancel_token.cancelled:
            stream.close()
            check(cancel_token)
        return stream
