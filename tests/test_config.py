import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from voicechat import config as CFG


@pytest.fixture
def custom_config(tmp_path):
    """Load a config file written by the test; the project config is restored afterwards"""
    project_config = CFG._CONFIG_PATH

    def load(text):
        path = tmp_path / "config.yaml"
        path.write_text(text)
        CFG.reload_config(str(path))
        return path

    yield load
    CFG.reload_config(project_config)


@pytest.fixture
def no_key_env(monkeypatch, tmp_path):
    for name in ("NVIDIA_API_KEY", "VITE_NVIDIA_API_KEY", "OPENAI_API_KEY", "VITE_OPENAI_API_KEY",
                 "GEMINI_API_KEY", "VITE_GEMINI_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    env_file = tmp_path / ".env"
    monkeypatch.setattr(CFG, "_ENV_FILE_PATH", str(env_file))
    return env_file


def test_project_config_is_valid():
    CFG.reload_config()
    is_valid, errors = CFG.validate_config_silent()
    assert is_valid, errors
    assert CFG.get_upstream_model() == "meta/llama-4-maverick-17b-128e-instruct"
    assert CFG.get_upstream_url().startswith("https://")


def test_dot_path_get_with_default():
    assert CFG.get("upstream.params.top_p") == 0.9
    assert CFG.get("upstream.missing.key", "fallback") == "fallback"


def test_timeouts_are_seconds_and_env_wins(monkeypatch):
    monkeypatch.delenv("NVIDIA_TIMEOUT_MS", raising=False)
    monkeypatch.delenv("NVIDIA_STREAM_TIMEOUT_MS", raising=False)
    assert CFG.get_upstream_timeout() == 30.0
    assert CFG.get_stream_timeout() == 60.0

    monkeypatch.setenv("NVIDIA_TIMEOUT_MS", "12000")
    monkeypatch.setenv("NVIDIA_STREAM_TIMEOUT_MS", "garbage")
    assert CFG.get_upstream_timeout() == 12.0
    assert CFG.get_stream_timeout() == 60.0


def test_retry_attempts_env_override(monkeypatch):
    monkeypatch.setenv("NVIDIA_RETRY_ATTEMPTS", "0")
    assert CFG.get_retry_attempts() == 1
    monkeypatch.setenv("NVIDIA_RETRY_ATTEMPTS", "3")
    assert CFG.get_retry_attempts() == 3


def test_port_env_override(monkeypatch):
    monkeypatch.delenv("PORT", raising=False)
    monkeypatch.delenv("VOICECHAT_PROXY_URL", raising=False)
    assert CFG.get_proxy_host_port() == ("0.0.0.0", 8081)
    assert CFG.get_proxy_url() == "http://localhost:8081"

    monkeypatch.setenv("PORT", "9090")
    assert CFG.get_proxy_host_port()[1] == 9090
    assert CFG.get_proxy_url() == "http://localhost:9090"


def test_turn_timings_merge_defaults():
    timings = CFG.get_turn_timings()
    assert timings["submit_delay"] == 1.0
    assert timings["dedupe_window"] == 1.2
    assert timings["filler_delay"] == 0.65


def test_nvidia_key_prefers_environment(no_key_env, monkeypatch):
    no_key_env.write_text("VITE_NVIDIA_API_KEY=from-dotenv\n")
    monkeypatch.setenv("VITE_NVIDIA_API_KEY", "from-vite-env")
    monkeypatch.setenv("NVIDIA_API_KEY", "from-env")
    assert CFG.get_nvidia_api_key() == "from-env"

    monkeypatch.delenv("NVIDIA_API_KEY")
    assert CFG.get_nvidia_api_key() == "from-vite-env"


def test_nvidia_key_falls_back_to_dotenv_file(no_key_env):
    no_key_env.write_text('# local secrets\nVITE_NVIDIA_API_KEY="  nvapi-from-file  "\n')
    assert CFG.get_nvidia_api_key() == "nvapi-from-file"


def test_missing_keys_are_empty(no_key_env):
    assert CFG.get_nvidia_api_key() == ""
    assert CFG.get_openai_api_key() == ""
    assert CFG.get_gemini_api_key() == ""


def test_key_hint():
    assert CFG.key_hint("nvapi-1234567890abcd") == "nvapi-...abcd"
    assert CFG.key_hint("") == ""


def test_custom_config_file(custom_config):
    custom_config(
        "upstream:\n"
        "  model: custom/model\n"
        "  retry_attempts: 3\n"
        "  params:\n"
        "    temperature: 0.7\n"
        "voice:\n"
        "  system_prompt: Talk like a pirate.\n"
        "  max_turns: 2\n"
        "  timings:\n"
        "    submit_delay: 0.5\n"
    )
    assert CFG.get_upstream_model() == "custom/model"
    assert CFG.get_generation_defaults()["temperature"] == 0.7
    assert CFG.get_generation_defaults()["max_tokens"] == 96
    assert CFG.get_system_prompt() == "Talk like a pirate."
    assert CFG.get_max_turns() == 2
    assert CFG.get_turn_timings()["submit_delay"] == 0.5
    assert CFG.get_turn_timings()["submit_delay_thinking"] == 0.45


def test_invalid_config_is_rejected(custom_config):
    with pytest.raises(ValueError) as exc_info:
        custom_config(
            "upstream:\n"
            "  url: ftp://nvidia.test\n"
            "  retry_attempts: 0\n"
            "  params:\n"
            "    temperature: 3\n"
            "voice:\n"
            "  volume: 1.5\n"
        )
    message = str(exc_info.value)
    assert "upstream.url must be an http(s) URL" in message
    assert "upstream.retry_attempts must be an integer >= 1" in message
    assert "upstream.params.temperature must be between 0 and 2" in message
    assert "voice.volume must be between 0 and 1" in message


def test_unknown_timing_is_only_a_warning(custom_config, capsys):
    custom_config("voice:\n  timings:\n    nap_time: 3\n")
    assert "Unknown timing in voice.timings: nap_time" in capsys.readouterr().out


def test_get_typed_bool_parsing(custom_config):
    custom_config("flags:\n  a: 'yes'\n  b: 'off'\n  c: maybe\n  d: true\n")
    assert CFG.get_typed("flags.a", False, bool) is True
    assert CFG.get_typed("flags.b", True, bool) is False
    assert CFG.get_typed("flags.c", True, bool) is True
    assert CFG.get_typed("flags.d", False, bool) is True
    assert CFG.get_typed("flags.missing", 5, int) == 5
