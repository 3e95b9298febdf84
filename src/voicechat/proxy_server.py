#!/usr/bin/env python3
"""
VoiceChat Proxy Service - holds the NVIDIA credential server-side and relays
chat requests as buffered JSON or as a verbatim server-sent-event stream.
"""
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from flask import Flask, Response, jsonify, request, stream_with_context

from . import config as CFG
from .error_handler import ErrorSeverity, UpstreamError, ValidationError, handle_error
from .flask_app import VoiceChatFlaskApp
from .logging_utils import log_with_context, setup_logger
from .upstream import NvidiaChatClient, extract_reply_text

logger = setup_logger("voicechat.proxy_server", "proxy_server.log", structured=True)

MISSING_KEY_ERROR = "Missing NVIDIA_API_KEY (or VITE_NVIDIA_API_KEY in .env)"
VALID_ROLES = frozenset({"system", "user", "assistant"})
STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}


def parse_chat_request(body: Any) -> Tuple[List[Dict[str, str]], Optional[str], bool, Optional[Dict[str, Any]]]:
    """Validate a chat request body.

    Returns:
        (messages, model, stream, params)

    Raises:
        ValidationError: when the body is not an object, when it carries
            neither or both of `prompt`/`messages`, or when a field has the
            wrong shape
    """
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object", component="proxy", operation="chat")

    raw_messages = body.get("messages")
    prompt = body.get("prompt")
    has_messages = raw_messages is not None
    has_prompt = isinstance(prompt, str) and bool(prompt.strip())

    if has_messages and has_prompt:
        raise ValidationError("Provide either messages[] or prompt, not both", component="proxy", operation="chat")
    if not has_messages and not has_prompt:
        raise ValidationError("Provide either messages[] or prompt", component="proxy", operation="chat")

    if has_prompt:
        messages = [{"role": "user", "content": prompt.strip()}]
    else:
        if not isinstance(raw_messages, list) or not raw_messages:
            raise ValidationError("messages must be a non-empty array", component="proxy", operation="chat")
        messages = []
        for idx, item in enumerate(raw_messages):
            if not isinstance(item, dict):
                raise ValidationError(f"messages[{idx}] must be an object", component="proxy", operation="chat")
            role, content = item.get("role"), item.get("content")
            if role not in VALID_ROLES:
                raise ValidationError(f"messages[{idx}].role must be one of system, user, assistant",
                                      component="proxy", operation="chat")
            if not isinstance(content, str):
                raise ValidationError(f"messages[{idx}].content must be a string",
                                      component="proxy", operation="chat")
            messages.append({"role": role, "content": content})

    model = body.get("model")
    if model is not None and not isinstance(model, str):
        raise ValidationError("model must be a string", component="proxy", operation="chat")

    params = body.get("params")
    if params is not None and not isinstance(params, dict):
        raise ValidationError("params must be an object", component="proxy", operation="chat")

    return messages, (model or None), bool(body.get("stream")), params


def _error_response(error: UpstreamError):
    payload: Dict[str, Any] = {"error": error.message or "NVIDIA request failed"}
    if error.details:
        payload["details"] = error.details
    return jsonify(payload), error.status or 502


def create_app(client_factory: Optional[Callable[[str], NvidiaChatClient]] = None,
               key_resolver: Optional[Callable[[], str]] = None) -> Flask:
    """Build the proxy Flask app (see build_service)"""
    return build_service(client_factory, key_resolver).app


def build_service(client_factory: Optional[Callable[[str], NvidiaChatClient]] = None,
                  key_resolver: Optional[Callable[[], str]] = None) -> VoiceChatFlaskApp:
    """Build the proxy service.

    Args:
        client_factory: builds an upstream client from an API key
        key_resolver: returns the current NVIDIA credential ('' if unset)
    """
    resolve_key = key_resolver or CFG.get_nvidia_api_key
    make_client = client_factory or (lambda key: NvidiaChatClient(key))

    service = VoiceChatFlaskApp("voicechat-proxy", cors_origins=CFG.get_cors_origins())

    @service.add_route('/health/nvidia', methods=['GET'])
    def health_nvidia():
        key = resolve_key()
        return jsonify({'ok': True, 'hasKey': bool(key), 'keyHint': CFG.key_hint(key)})

    @service.add_route('/login', methods=['POST'])
    def login():
        data = request.get_json(silent=True) or {}
        username = data.get('username') if isinstance(data, dict) else None
        if not isinstance(username, str) or not username.strip():
            return jsonify({'success': False, 'error': 'username required'}), 400
        username = username.strip()
        logger.info(f"Login accepted for {username}")
        return jsonify({'success': True, 'username': username})

    @service.add_route('/api/nvidia/chat', methods=['POST'])
    def nvidia_chat():
        api_key = resolve_key()
        if not api_key:
            logger.error("Chat request rejected: no NVIDIA credential configured")
            return jsonify({'error': MISSING_KEY_ERROR}), 500

        try:
            messages, model, stream, params = parse_chat_request(request.get_json(silent=True))
        except ValidationError as e:
            return jsonify({'error': e.message}), 400

        request_id = log_with_context(logger, logging.INFO, "Chat request", stream=stream,
                                      message_count=len(messages), model=model or "default")
        client = make_client(api_key)
        try:
            if stream:
                return _relay_stream(client, messages, model, params)

            data = client.chat_completions(messages, model=model, params=params)
            return jsonify({'text': extract_reply_text(data).strip()})
        except UpstreamError as e:
            handle_error(e, "proxy", "chat", ErrorSeverity.MEDIUM, request_id=request_id,
                         metadata={'stream': stream})
            return _error_response(e)
        except Exception as e:
            handle_error(e, "proxy", "chat", ErrorSeverity.HIGH, request_id=request_id)
            return jsonify({'error': str(e) or 'Server error'}), 500

    return service


def _relay_stream(client: NvidiaChatClient, messages, model, params):
    """Open the upstream stream and pipe its bytes through unchanged.

    Upstream failures raise before any byte is sent so the caller can answer
    with a buffered JSON error instead.
    """
    upstream = client.open_stream(messages, model=model, params=params)

    def generate():
        try:
            for chunk in upstream.iter_bytes():
                yield chunk
        except UpstreamError as e:
            handle_error(e, "proxy", "stream_relay", ErrorSeverity.MEDIUM)
        finally:
            # Runs on normal end and when the client disconnects (generator closed)
            upstream.close()

    logger.info("Relaying NVIDIA stream")
    return Response(stream_with_context(generate()), status=200,
                    mimetype='text/event-stream', headers=STREAM_HEADERS)


# WSGI entry point
app = create_app()


def main():
    host, port = CFG.get_proxy_host_port()
    build_service().run(host=host, port=port)


if __name__ == '__main__':
    main()
