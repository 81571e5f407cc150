"""Tests for configuration loading and the backend config store."""

import pytest
import yaml

from snaptext.daemon.config import BACKEND_IDS, BackendConfig, BackendConfigStore, Config
from snaptext.daemon.errors import ConfigurationError


def test_defaults_when_no_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))

    config = Config.load()

    assert config.ocr.default_backend == "local"
    assert config.history.cap == 100
    assert set(config.backends) == set(BACKEND_IDS)
    assert config.source_path == tmp_path / ".config" / "snaptext" / "config.yaml"


def test_load_yaml_fills_backend_ids(tmp_path):
    path = tmp_path / "snaptext.yaml"
    path.write_text(yaml.safe_dump({
        "ocr": {"default_backend": "openai", "remote_timeout_s": 12},
        "backends": {"openai": {"api_key": "sk-test", "model": "gpt-4o-mini"}},
        "bulk": {"remote_concurrency": 3},
    }))

    config = Config.load(path)

    assert config.ocr.default_backend == "openai"
    assert config.ocr.remote_timeout_s == 12
    assert config.bulk.remote_concurrency == 3
    assert config.backends["openai"].backend_id == "openai"
    assert config.backends["openai"].enabled
    # Backends missing from the file still get defaults
    assert "anthropic" in config.backends
    assert config.source_path == path


def test_explicit_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        Config.load(tmp_path / "nope.yaml")


@pytest.mark.parametrize("section", [
    {"backends": {"openai": {"temperature": 3.5}}},
    {"backends": {"openai": {"max_tokens": 0}}},
    {"ocr": {"local_timeout_s": 0}},
    {"bulk": {"local_concurrency": 0}},
])
def test_invalid_values_rejected(tmp_path, section):
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.safe_dump(section))

    with pytest.raises(ConfigurationError):
        Config.load(path)


def test_backend_config_hides_key_and_derives_enabled():
    remote = BackendConfig(backend_id="openai", api_key="sk-secret")
    assert "sk-secret" not in repr(remote)
    assert remote.enabled
    assert not BackendConfig(backend_id="openai", api_key="   ").enabled
    assert BackendConfig(backend_id="local").enabled
    assert remote.max_tokens == 1000
    assert remote.temperature == 0.1


class TestBackendConfigStore:
    def test_snapshot_is_immutable_and_replaced_whole(self, config):
        store = BackendConfigStore(config, persist=False)
        before = store.get_all()

        with pytest.raises(TypeError):
            before["openai"] = BackendConfig(backend_id="openai")

        store.update("openai", api_key="sk-new")
        after = store.get_all()

        assert after is not before
        assert not before["openai"].has_credential
        assert after["openai"].api_key == "sk-new"

    def test_update_persists_atomically(self, config, tmp_path):
        store = BackendConfigStore(config)
        store.update("anthropic", api_key="ak-123")

        saved = yaml.safe_load((tmp_path / "config.yaml").read_text())
        assert saved["backends"]["anthropic"]["api_key"] == "ak-123"
        assert not list(tmp_path.glob(".config-*"))

        reloaded = Config.load(tmp_path / "config.yaml")
        assert reloaded.backends["anthropic"].enabled

    def test_invalid_set_all_leaves_snapshot_alone(self, config):
        store = BackendConfigStore(config, persist=False)
        before = store.get_all()

        with pytest.raises(ValueError):
            store.update("openai", temperature=9)

        assert store.get_all() is before

    def test_unknown_backend(self, config):
        store = BackendConfigStore(config, persist=False)
        with pytest.raises(ConfigurationError):
            store.get("nope")


@pytest.mark.parametrize("content", ["ocr: [unclosed\n", "- a\n- b\n", "just a string\n"])
def test_malformed_file_is_configuration_error(tmp_path, content):
    path = tmp_path / "snaptext.yaml"
    path.write_text(content)

    with pytest.raises(ConfigurationError):
        Config.load(path)
