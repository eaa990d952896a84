"""YAML configuration loader with environment variable overrides.

Configuration is layered, later layers winning:

    1. DEFAULTS below                -- every tunable has a value
    2. config/config.yaml            -- checked-in project tunables
    3. Settings (.env / environment) -- deployment values

Nested dicts are deep-merged, so a YAML file may override a single key of
a section without restating the rest.
"""

import copy
from pathlib import Path
from typing import Any

import yaml

from notebookrag.config.settings import Settings

DEFAULTS: dict[str, Any] = {
    "chunking": {"chunk_size": 1000, "overlap": 0.15, "lookahead": 200},
    "metadata": {"max_chars": 8000, "temperature": 0.1, "max_concurrent": 5},
    "embedding": {"batch_size": 100, "max_attempts": 3, "backoff_base": 0.5},
    "retrieval": {"top_k": 10, "threshold": 0.7},
    "jobs": {
        "worker_count": 4,
        "poll_interval": 0.5,
        "liveness_timeout": 300.0,
        "heartbeat_interval": 30.0,
        "max_attempts": 3,
        "retry_backoff_base": 2.0,
    },
    "reports": {"section_top_k": 5, "max_tokens": 2000, "parallel": False},
    "chat": {"top_k": 5, "history_turns": 10, "max_tokens": 2000},
    "ingestion": {"dedupe_by_content_hash": False},
    "providers": {"max_concurrency": {"default": 4}},
}


def load_config(path: str | None = None, settings: Settings | None = None) -> dict[str, Any]:
    """Load YAML tunables and merge them with environment-based Settings.

    Args:
        path: YAML file path; defaults to ``settings.config_path``.
        settings: Settings instance; a fresh one is built when omitted.

    Returns:
        Fully resolved configuration dictionary.
    """
    settings = settings or Settings()
    config_path = Path(path or settings.config_path)

    config = copy.deepcopy(DEFAULTS)
    if config_path.exists():
        with open(config_path) as f:
            yaml_config = yaml.safe_load(f) or {}
        _deep_merge(config, yaml_config)

    env_overrides = {
        "app": {
            "host": settings.app_host,
            "port": settings.app_port,
            "env": settings.app_env,
        },
        "llm": {
            "provider": settings.llm_provider,
            "available_providers": settings.get_available_llm_providers(),
        },
        "storage": {
            "database_path": settings.database_path,
            "vector_backend": settings.vector_backend,
        },
        "logging": {"level": settings.log_level},
    }
    _deep_merge(config, env_overrides)
    return config


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge overrides into base dict, mutating base in place."""
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
