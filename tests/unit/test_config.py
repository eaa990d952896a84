"""Unit tests for layered configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from notebookrag.config.loader import DEFAULTS, _deep_merge, load_config
from notebookrag.config.settings import Settings


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        config_path=str(tmp_path / "missing.yaml"),
        database_path=str(tmp_path / "app.db"),
        openai_api_key="",
        anthropic_api_key="",
    )


class TestLoadConfig:
    def test_defaults_when_file_missing(self, settings: Settings) -> None:
        config = load_config(settings=settings)

        assert config["chunking"] == DEFAULTS["chunking"]
        assert config["storage"]["database_path"] == settings.database_path

    def test_yaml_overrides_single_key(self, settings: Settings, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("chunking:\n  chunk_size: 400\njobs:\n  worker_count: 1\n")

        config = load_config(str(path), settings=settings)

        assert config["chunking"]["chunk_size"] == 400
        assert config["chunking"]["overlap"] == DEFAULTS["chunking"]["overlap"]
        assert config["jobs"]["worker_count"] == 1

    def test_defaults_are_not_mutated(self, settings: Settings, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("retrieval:\n  top_k: 3\n")

        load_config(str(path), settings=settings)

        assert DEFAULTS["retrieval"]["top_k"] == 10

    def test_empty_yaml_file(self, settings: Settings, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_config(str(path), settings=settings)["retrieval"] == DEFAULTS["retrieval"]

    def test_environment_wins(self, settings: Settings) -> None:
        settings = settings.model_copy(update={"log_level": "DEBUG", "vector_backend": "chromadb"})
        config = load_config(settings=settings)

        assert config["logging"]["level"] == "DEBUG"
        assert config["storage"]["vector_backend"] == "chromadb"


class TestDeepMerge:
    def test_nested_merge(self) -> None:
        base = {"a": {"x": 1, "y": 2}, "b": 1}
        _deep_merge(base, {"a": {"y": 3}, "c": 4})
        assert base == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}

    def test_non_dict_replaces(self) -> None:
        base = {"a": {"x": 1}}
        _deep_merge(base, {"a": 5})
        assert base == {"a": 5}


class TestSettings:
    def test_available_providers_follow_credentials(self, settings: Settings) -> None:
        assert settings.get_available_llm_providers() == ["ollama"]

        configured = settings.model_copy(update={"openai_api_key": "sk-test", "anthropic_api_key": "k"})
        assert configured.get_available_llm_providers() == ["anthropic", "openai", "ollama"]

    def test_environment_variables(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("APP_PORT", "9001")
        monkeypatch.setenv("VECTOR_BACKEND", "chromadb")

        loaded = Settings(_env_file=None)

        assert loaded.app_port == 9001
        assert loaded.vector_backend == "chromadb"
