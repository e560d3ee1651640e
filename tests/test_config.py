import pytest

from automode.config import load_settings


def _write(tmp_path, text):
    path = tmp_path / "automode.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    settings = load_settings(environ={})

    assert settings.max_concurrency == 3
    assert settings.default_model == "opus"
    assert settings.claude_profile is None
    assert (settings.server_host, settings.server_port) == ("127.0.0.1", 3008)
    assert settings.provider_config() == {}


def test_yaml_file_is_applied(tmp_path):
    path = _write(
        tmp_path,
        """
max_concurrency: 5
default_model: gpt-5.1-codex
providers:
  codex:
    cli_path: /opt/bin/codex
  gemini: {}
claude_profile:
  name: gateway
  baseUrl: https://gw.example
  apiKeySource: env
server:
  port: 9000
""",
    )

    settings = load_settings(path, environ={})

    assert settings.max_concurrency == 5
    assert settings.default_model == "gpt-5.1-codex"
    assert settings.provider_config() == {"codex": {"cli_path": "/opt/bin/codex"}}
    assert settings.claude_profile.base_url == "https://gw.example"
    assert settings.claude_profile.api_key_source == "env"
    assert settings.server_port == 9000
    assert settings.server_host == "127.0.0.1"


def test_precedence_file_then_env_then_overrides(tmp_path):
    path = _write(tmp_path, "max_concurrency: 5\ndefault_model: sonnet\n")
    environ = {"AUTOMODE_MAX_CONCURRENCY": "4", "AUTOMODE_DEFAULT_MODEL": "haiku"}

    from_env = load_settings(path, environ=environ)
    overridden = load_settings(path, {"max_concurrency": 2}, environ=environ)

    assert (from_env.max_concurrency, from_env.default_model) == (4, "haiku")
    assert (overridden.max_concurrency, overridden.default_model) == (2, "haiku")


def test_explicit_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_settings(tmp_path / "missing.yaml", environ={})


@pytest.mark.parametrize("text", ["max_concurrency: 0\n", "max_concurrency: lots\n", "- a\n- b\n"])
def test_invalid_files_are_rejected(tmp_path, text):
    with pytest.raises(ValueError):
        load_settings(_write(tmp_path, text), environ={})
