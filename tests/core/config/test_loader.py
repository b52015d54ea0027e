"""Tests for the YAML config loader."""

from pathlib import Path

import pytest

from src.core.config.loader import _substitute_env_vars, deep_merge, get_config


@pytest.fixture(autouse=True)
def _clear_config_cache() -> None:
    """Clear lru_cache before and after each test."""
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture()
def tmp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory with an orchestrator example file."""
    example = tmp_path / "orchestrator.example.yaml"
    example.write_text(
        "orchestrator:\n"
        "  execution:\n"
        "    default_concurrency: 5\n"
        "    max_concurrency: 20\n"
        "workers:\n"
        "  maintenance_worker:\n"
        "    interval_seconds: 3600\n"
        "    retention_days: 30\n"
    )
    return tmp_path


def test_orchestrator_config_loaded(tmp_config_dir: Path) -> None:
    """get_config should include the orchestrator and workers sections."""
    config = get_config(config_dir=str(tmp_config_dir))

    assert config["orchestrator"]["execution"]["default_concurrency"] == 5
    assert config["workers"]["maintenance_worker"]["interval_seconds"] == 3600


def test_local_yaml_overrides_example(tmp_config_dir: Path) -> None:
    """orchestrator.yaml should deep-merge over orchestrator.example.yaml."""
    (tmp_config_dir / "orchestrator.yaml").write_text(
        "orchestrator:\n"
        "  execution:\n"
        "    default_concurrency: 8\n"
    )

    config = get_config(config_dir=str(tmp_config_dir))

    execution = config["orchestrator"]["execution"]
    assert execution["default_concurrency"] == 8
    # Values from example that were NOT overridden should survive
    assert execution["max_concurrency"] == 20
    assert config["workers"]["maintenance_worker"]["retention_days"] == 30


def test_storage_and_orchestrator_files_merge(tmp_config_dir: Path) -> None:
    """Storage config lives beside orchestrator config in one dict."""
    (tmp_config_dir / "storage.example.yaml").write_text(
        "postgres:\n"
        "  host: db.internal\n"
    )

    config = get_config(config_dir=str(tmp_config_dir))

    assert config["postgres"]["host"] == "db.internal"
    assert "orchestrator" in config


def test_missing_directory_gives_empty_config(tmp_path: Path) -> None:
    """A directory with no config files yields an empty dict."""
    assert get_config(config_dir=str(tmp_path / "nowhere")) == {}


class TestEnvSubstitution:
    """Tests for ${VAR:-default} substitution."""

    def test_uses_environment(self, monkeypatch):
        """A set variable replaces the placeholder."""
        monkeypatch.setenv("ORCH_TEST_HOST", "db.example.com")
        assert _substitute_env_vars("${ORCH_TEST_HOST:-localhost}") == "db.example.com"

    def test_uses_default(self, monkeypatch):
        """An unset variable falls back to the default."""
        monkeypatch.delenv("ORCH_TEST_HOST", raising=False)
        assert _substitute_env_vars("${ORCH_TEST_HOST:-localhost}") == "localhost"

    def test_embedded_placeholders(self, monkeypatch):
        """Placeholders inside longer strings are all replaced."""
        monkeypatch.setenv("ORCH_TEST_HOST", "agent")
        monkeypatch.delenv("ORCH_TEST_PORT", raising=False)
        value = _substitute_env_vars("http://${ORCH_TEST_HOST}:${ORCH_TEST_PORT:-8080}")
        assert value == "http://agent:8080"

    def test_nested_structures(self, monkeypatch):
        """Dicts and lists are walked recursively."""
        monkeypatch.setenv("ORCH_TEST_KEY", "k")
        result = _substitute_env_vars({"a": ["${ORCH_TEST_KEY}", 3]})
        assert result == {"a": ["k", 3]}


def test_deep_merge_keeps_siblings() -> None:
    """deep_merge overrides leaves and keeps untouched siblings."""
    merged = deep_merge({"a": {"b": 1, "c": 2}}, {"a": {"b": 5}, "d": 1})
    assert merged == {"a": {"b": 5, "c": 2}, "d": 1}
