"""Tests for rest_composer.config_loader.

Tests cover:
- Loading YAML with defaults and ${ENV_VAR} substitution
- Error reporting for missing files, bad YAML and bad structure
- Building a Store from configuration
"""

from pathlib import Path

import pytest

from rest_composer.config_loader import ConfigError, build_store, load_config
from rest_composer.models import AuthPreset, AuthType, ComposerConfig, Header


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "composer.yaml"
    path.write_text(content, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_full_config(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("WSSE_SECRET", "from-env")
        path = _write(
            tmp_path,
            """
timeout_ms: 5000
log_level: info
default_headers:
  accept: application/json
auth:
  type: wsse
  params:
    key: my-key
    secret: ${WSSE_SECRET}
""",
        )

        config = load_config(path)

        assert config.timeout_ms == 5000
        assert config.log_level == "INFO"
        assert config.default_headers == {"accept": "application/json"}
        assert config.auth == AuthPreset(
            type=AuthType.WSSE, params={"key": "my-key", "secret": "from-env"}
        )

    def test_empty_file_uses_defaults(self, tmp_path: Path):
        config = load_config(_write(tmp_path, ""))
        assert config == ComposerConfig()
        assert config.timeout_ms == 60000

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Config file not found"):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(_write(tmp_path, "timeout_ms: [1, 2"))

    def test_not_a_mapping(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="must be a YAML mapping"):
            load_config(_write(tmp_path, "- a\n- b\n"))

    def test_unknown_key(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Invalid config structure"):
            load_config(_write(tmp_path, "retries: 3\n"))

    def test_non_positive_timeout(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Invalid config structure"):
            load_config(_write(tmp_path, "timeout_ms: 0\n"))

    def test_bad_log_level(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="log_level"):
            load_config(_write(tmp_path, "log_level: chatty\n"))

    def test_unknown_auth_type(self, tmp_path: Path):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, "auth:\n  type: kerberos\n"))

    def test_unset_env_var(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("REST_COMPOSER_UNSET", raising=False)
        with pytest.raises(ConfigError, match="REST_COMPOSER_UNSET"):
            load_config(_write(tmp_path, "default_headers:\n  x: ${REST_COMPOSER_UNSET}\n"))


class TestBuildStore:
    def test_without_config(self):
        store = build_store()
        assert store.state.auth.selected == AuthType.NONE
        assert len(store.state.request.headers) == 1

    def test_applies_headers_and_auth(self):
        config = ComposerConfig(
            default_headers={"accept": "text/plain"},
            auth=AuthPreset(type=AuthType.WSSE, params={"key": "k", "secret": "s"}),
        )

        store = build_store(config)

        assert store.state.request.headers[1] == Header(name="accept", value="text/plain")
        assert store.state.auth.selected == AuthType.WSSE
        assert store.state.auth.params == {"key": "k", "secret": "s"}
