"""
Centralized configuration loader and accessors for VoiceChat.

Loads YAML from `config/config.yaml` (or the file named by VOICECHAT_CONFIG)
and provides typed getters aligned with the documented schema
(upstream.*, services.*, voice.*, providers.*). Environment variables
override the file where the deployment needs them to.
"""
from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import yaml
from dotenv import dotenv_values

_PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
_CONFIG_PATH = os.environ.get("VOICECHAT_CONFIG") or os.path.join(_PROJECT_ROOT, "config", "config.yaml")
_ENV_FILE_PATH = os.environ.get("VOICECHAT_ENV_FILE") or os.path.join(_PROJECT_ROOT, ".env")
_CFG: Dict[str, Any] = {}
_LOADED = False

_BOOL_TRUE_VALUES = frozenset({"true", "1", "yes", "y", "on"})
_BOOL_FALSE_VALUES = frozenset({"false", "0", "no", "n", "off"})

DEFAULT_UPSTREAM_URL = "https://integrate.api.nvidia.com/v1/chat/completions"
DEFAULT_MODEL = "meta/llama-4-maverick-17b-128e-instruct"

DEFAULT_SYSTEM_PROMPT = (
    "You're a friendly human-like conversation partner. Talk naturally like a close friend: "
    "warm, casual, and supportive. Don't answer like a textbook or a Q&A bot; respond like "
    "you're chatting in real time. Use contractions, short paragraphs, and occasional gentle "
    "follow-up questions. Avoid bullet lists unless the user asks. Reply in 3 to 6 short "
    "sentences by default, but go shorter if the user asks for a quick answer."
)

DEFAULT_GENERATION_PARAMS: Dict[str, float] = {
    "max_tokens": 96,
    "temperature": 0.4,
    "top_p": 0.9,
    "frequency_penalty": 0.0,
    "presence_penalty": 0.0,
}

# Seconds. Names match the TurnTimings fields in turn_controller.
DEFAULT_TURN_TIMINGS: Dict[str, float] = {
    "submit_delay": 1.0,
    "submit_delay_thinking": 0.45,
    "barge_in_submit_delay": 0.25,
    "interrupt_submit_delay": 0.5,
    "dedupe_window": 1.2,
    "restart_delay": 0.15,
    "error_restart_delay": 0.8,
    "speaking_error_restart_delay": 0.12,
    "watchdog_interval": 0.7,
    "command_watchdog_interval": 0.55,
    "recognition_stale_after": 1.4,
    "kick_min_interval": 0.9,
    "kick_restart_delay": 0.08,
    "filler_delay": 0.65,
}

_VALID_GENDERS = {"female", "male", "any"}


def _load() -> None:
    global _CFG, _LOADED
    if _LOADED:
        return
    if os.path.exists(_CONFIG_PATH):
        with open(_CONFIG_PATH, "r") as f:
            _CFG = yaml.safe_load(f) or {}
    else:
        _CFG = {}

    _validate_config(_CFG)
    _LOADED = True


def _is_positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def _validate_config(config: Dict[str, Any]) -> None:
    """Validate configuration values and provide helpful error messages"""
    errors: List[str] = []
    warnings: List[str] = []

    upstream = config.get("upstream") or {}
    if not isinstance(upstream, dict):
        errors.append("upstream must be a mapping")
        upstream = {}

    if "url" in upstream and not isinstance(upstream["url"], str):
        errors.append("upstream.url must be a string")
    elif isinstance(upstream.get("url"), str) and not upstream["url"].startswith(("http://", "https://")):
        errors.append("upstream.url must be an http(s) URL")

    for key in ("timeout_ms", "stream_timeout_ms"):
        if key in upstream and not _is_positive_number(upstream[key]):
            errors.append(f"upstream.{key} must be a positive number")

    if "retry_attempts" in upstream:
        attempts = upstream["retry_attempts"]
        if not isinstance(attempts, int) or isinstance(attempts, bool) or attempts < 1:
            errors.append("upstream.retry_attempts must be an integer >= 1")
        elif attempts > 5:
            warnings.append("upstream.retry_attempts above 5 makes failed turns very slow")

    params = upstream.get("params") or {}
    if isinstance(params, dict):
        if "max_tokens" in params and not _is_positive_number(params["max_tokens"]):
            errors.append("upstream.params.max_tokens must be a positive number")
        if "temperature" in params:
            t = params["temperature"]
            if not isinstance(t, (int, float)) or t < 0 or t > 2:
                errors.append("upstream.params.temperature must be between 0 and 2")
        if "top_p" in params:
            p = params["top_p"]
            if not isinstance(p, (int, float)) or p <= 0 or p > 1:
                errors.append("upstream.params.top_p must be in (0, 1]")
        for key in ("frequency_penalty", "presence_penalty"):
            if key in params:
                v = params[key]
                if not isinstance(v, (int, float)) or v < -2 or v > 2:
                    errors.append(f"upstream.params.{key} must be between -2 and 2")
    else:
        errors.append("upstream.params must be a mapping")

    services = config.get("services") or {}
    proxy = services.get("proxy") if isinstance(services, dict) else None
    if isinstance(proxy, dict) and "port" in proxy:
        port = proxy["port"]
        if not isinstance(port, int) or port < 1 or port > 65535:
            errors.append("services.proxy.port must be between 1 and 65535")

    voice = config.get("voice") or {}
    if isinstance(voice, dict):
        for key in ("rate", "pitch"):
            if key in voice and not _is_positive_number(voice[key]):
                errors.append(f"voice.{key} must be a positive number")
        if "volume" in voice:
            vol = voice["volume"]
            if not isinstance(vol, (int, float)) or vol < 0 or vol > 1:
                errors.append("voice.volume must be between 0 and 1")
        if "max_turns" in voice:
            mt = voice["max_turns"]
            if not isinstance(mt, int) or isinstance(mt, bool) or mt < 1:
                errors.append("voice.max_turns must be an integer >= 1")
        if "gender" in voice and voice["gender"] not in _VALID_GENDERS:
            warnings.append(f"Unknown voice.gender '{voice['gender']}', expected one of {sorted(_VALID_GENDERS)}")
        timings = voice.get("timings") or {}
        if isinstance(timings, dict):
            for key, value in timings.items():
                if key not in DEFAULT_TURN_TIMINGS:
                    warnings.append(f"Unknown timing in voice.timings: {key}")
                elif not isinstance(value, (int, float)) or value < 0:
                    errors.append(f"voice.timings.{key} must be a non-negative number")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors)
        raise ValueError(error_msg)

    for warning in warnings:
        print(f"Config warning: {warning}")


def get(path: str, default: Any = None) -> Any:
    """Dot-path getter from loaded config.

    Example: get("upstream.params.temperature", 0.4)
    """
    _load()
    cur: Any = _CFG
    for part in path.split("."):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return default
    return cur


def get_typed(path: str, default: Any, cast_type: type) -> Any:
    """Get a configuration value with type casting and default fallback."""
    val = get(path, default)

    if cast_type is bool:
        if isinstance(val, bool):
            return val
        if isinstance(val, str):
            normalized = val.strip().lower()
            if normalized in _BOOL_TRUE_VALUES:
                return True
            if normalized in _BOOL_FALSE_VALUES:
                return False
            return default
        try:
            return bool(val)
        except (TypeError, ValueError):
            return default

    if isinstance(val, cast_type):
        return val

    try:
        return cast_type(val)
    except (TypeError, ValueError):
        return default


def _env_number(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# ---- Upstream ----

def get_upstream_url() -> str:
    return str(get("upstream.url", DEFAULT_UPSTREAM_URL))

def get_upstream_model() -> str:
    return str(get("upstream.model", DEFAULT_MODEL))

def get_upstream_timeout() -> float:
    """Buffered-call timeout in seconds (NVIDIA_TIMEOUT_MS wins over the file)"""
    ms = _env_number("NVIDIA_TIMEOUT_MS", get_typed("upstream.timeout_ms", 30000, float))
    return ms / 1000.0

def get_stream_timeout() -> float:
    ms = _env_number("NVIDIA_STREAM_TIMEOUT_MS", get_typed("upstream.stream_timeout_ms", 60000, float))
    return ms / 1000.0

def get_retry_attempts() -> int:
    attempts = _env_number("NVIDIA_RETRY_ATTEMPTS", get_typed("upstream.retry_attempts", 2, int))
    return max(1, int(attempts))

def get_generation_defaults() -> Dict[str, float]:
    params = dict(DEFAULT_GENERATION_PARAMS)
    configured = get("upstream.params", {}) or {}
    if isinstance(configured, dict):
        for key in DEFAULT_GENERATION_PARAMS:
            if key in configured:
                params[key] = configured[key]
    return params


# ---- Services ----

def get_proxy_host_port() -> tuple[str, int]:
    host = str(get("services.proxy.host", "0.0.0.0"))
    port = int(_env_number("PORT", get_typed("services.proxy.port", 8081, int)))
    return host, port

def get_proxy_url() -> str:
    """Base URL clients use to reach the proxy"""
    env_url = os.environ.get("VOICECHAT_PROXY_URL", "").strip()
    if env_url:
        return env_url.rstrip("/")
    _, port = get_proxy_host_port()
    return f"http://localhost:{port}"

def get_cors_origins() -> List[str]:
    origins = get("services.cors_origins", ["*"])
    if isinstance(origins, str):
        return [origins]
    return list(origins or ["*"])


# ---- Voice ----

def get_voice_language() -> str:
    return str(get("voice.language", "en-US"))

def get_voice_gender() -> str:
    return str(get("voice.gender", "female"))

def get_voice_rate() -> float:
    return get_typed("voice.rate", 0.9, float)

def get_voice_pitch() -> float:
    return get_typed("voice.pitch", 1.03, float)

def get_voice_volume() -> float:
    return get_typed("voice.volume", 0.85, float)

def get_system_prompt() -> str:
    return str(get("voice.system_prompt", DEFAULT_SYSTEM_PROMPT))

def get_max_turns() -> int:
    return get_typed("voice.max_turns", 4, int)

def get_turn_timings() -> Dict[str, float]:
    timings = dict(DEFAULT_TURN_TIMINGS)
    configured = get("voice.timings", {}) or {}
    if isinstance(configured, dict):
        for key, value in configured.items():
            if key in timings:
                try:
                    timings[key] = float(value)
                except (TypeError, ValueError):
                    pass
    return timings


# ---- Providers ----

def get_openai_model() -> str:
    return str(get("providers.openai.model", "gpt-4o-mini"))

def get_gemini_model() -> str:
    return str(get("providers.gemini.model", "gemini-3-flash-preview"))


# ---- Credentials ----

def _read_env_file_value(key: str, path: Optional[str] = None) -> str:
    """Value of `key` from a local .env file, '' when absent or unreadable"""
    env_path = path or _ENV_FILE_PATH
    if not os.path.exists(env_path):
        return ""
    try:
        values = dotenv_values(env_path)
    except OSError:
        return ""
    return (values.get(key) or "").strip()


def _resolve_secret(primary: str, alternate: str, path: Optional[str] = None) -> str:
    """Resolve a credential: primary env var, then alternate env var, then .env file"""
    return (
        os.environ.get(primary, "").strip()
        or os.environ.get(alternate, "").strip()
        or _read_env_file_value(alternate, path)
    )


def get_nvidia_api_key() -> str:
    return _resolve_secret("NVIDIA_API_KEY", "VITE_NVIDIA_API_KEY")

def get_openai_api_key() -> str:
    return _resolve_secret("OPENAI_API_KEY", "VITE_OPENAI_API_KEY")

def get_gemini_api_key() -> str:
    return _resolve_secret("GEMINI_API_KEY", "VITE_GEMINI_API_KEY")


def key_hint(key: str) -> str:
    """Masked form of a credential: first 6 and last 4 characters"""
    if not key:
        return ""
    return f"{key[:6]}...{key[-4:]}"


def validate_config_silent() -> tuple[bool, List[str]]:
    """Validate configuration without raising exceptions

    Returns:
        tuple: (is_valid, list_of_errors)
    """
    try:
        if not _LOADED:
            _load()
        _validate_config(_CFG)
        return True, []
    except ValueError as e:
        return False, [str(e)]
    except yaml.YAMLError as e:
        return False, [f"Invalid YAML: {e}"]


def get_all() -> Dict[str, Any]:
    """Get the entire configuration dictionary"""
    _load()
    return _CFG.copy()


def reload_config(path: Optional[str] = None) -> None:
    """Reload configuration from file, optionally switching to a new path"""
    global _CFG, _LOADED, _CONFIG_PATH
    if path:
        _CONFIG_PATH = os.path.abspath(path)
    _LOADED = False
    _CFG = {}
    _load()
