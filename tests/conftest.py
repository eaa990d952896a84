"""Shared pytest fixtures for the notebook-rag test suite."""

from __future__ import annotations

import asyncio
import copy
import hashlib
import re
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path
from typing import Any

import numpy as np
import pytest

from notebookrag.cli._factory import build_components, initialize_components
from notebookrag.config.loader import DEFAULTS
from notebookrag.config.settings import Settings
from notebookrag.interfaces.embedding_provider import IEmbeddingProvider
from notebookrag.interfaces.llm_provider import ILLMProvider
from notebookrag.providers.storage import (
    SQLiteChatStore,
    SQLiteDocumentStore,
    SQLiteJobStore,
    SQLiteReportStore,
)
from notebookrag.providers.vector_store import SQLiteVectorStore
from notebookrag.utils.concurrency import reset_throttles
from notebookrag.utils.errors import ProviderError

_EMBEDDING_DIM = 64
_TOKEN_RE = re.compile(r"[a-z0-9]+")

SAMPLE_PLANNING_TEXT = """\
# Site Overview

The site at 12 Harbour Road covers 2.4 hectares of former industrial land.
It sits within the Eastside regeneration area and is bounded by the river
to the north.

# Planning History

Planning application 21/0456 for 140 homes was refused in 2021 because of
flood risk. A revised scheme with raised ground floors was approved in 2023.

# Transport

The nearest railway station is 600 metres away. Bus routes 14 and 22 stop on
Harbour Road every ten minutes. Parking is limited to 0.5 spaces per home.
"""


# ---------------------------------------------------------------------------
# Fake providers
# ---------------------------------------------------------------------------


def bag_of_words_vector(text: str, dim: int = _EMBEDDING_DIM) -> list[float]:
    """Deterministic hashed bag-of-words vector, L2-normalized.

    Texts that share words score a higher cosine similarity, which is all
    retrieval tests need.
    """
    vec = np.zeros(dim, dtype=np.float64)
    for token in _TOKEN_RE.findall(text.lower()):
        digest = hashlib.md5(token.encode("utf-8")).digest()
        vec[int.from_bytes(digest[:4], "little") % dim] += 1.0
    norm = np.linalg.norm(vec)
    if norm > 0:
        vec /= norm
    return vec.tolist()


class FakeEmbeddingProvider(IEmbeddingProvider):
    """Bag-of-words embedder that counts calls and can fail on marker text."""

    def __init__(self, fail_marker: str | None = None, dim: int = _EMBEDDING_DIM) -> None:
        self.fail_marker = fail_marker
        self.dim = dim
        self.calls: list[list[str]] = []

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail_marker and any(self.fail_marker in t for t in texts):
            raise ProviderError(message="simulated embedding outage", provider_name="fake")
        return [bag_of_words_vector(t, self.dim) for t in texts]

    async def embed_single(self, text: str) -> list[float]:
        return (await self.embed([text]))[0]

    def get_dimension(self) -> int:
        return self.dim

    def get_provider_name(self) -> str:
        return "fake"

    def get_model_name(self) -> str:
        return f"bow-{self.dim}"

    def is_available(self) -> bool:
        return True

    @property
    def call_count(self) -> int:
        return len(self.calls)


class FakeLLM(ILLMProvider):
    """Scriptable LLM.

    ``responder`` maps a user prompt to a reply; ``failures`` maps a
    substring of the user prompt to an exception raised for matching calls.
    """

    def __init__(
        self,
        responder: Callable[[str], str] | None = None,
        failures: dict[str, Exception] | None = None,
        stream_error_after: int | None = None,
    ) -> None:
        self.responder = responder or (lambda prompt: "Generated text grounded in the context [1].")
        self.failures = failures or {}
        self.stream_error_after = stream_error_after
        self.prompts: list[str] = []
        self.histories: list[list[dict[str, str]] | None] = []
        self.stream_closed = False

    def _check_failures(self, user_prompt: str) -> None:
        for marker, exc in self.failures.items():
            if marker in user_prompt:
                raise exc

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.3,
        max_tokens: int = 4000,
    ) -> str:
        self.prompts.append(user_prompt)
        self._check_failures(user_prompt)
        return self.responder(user_prompt)

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.3,
        max_tokens: int = 4000,
        history: list[dict[str, str]] | None = None,
    ) -> AsyncIterator[str]:
        self.prompts.append(user_prompt)
        self.histories.append(history)
        self._check_failures(user_prompt)
        try:
            for i, word in enumerate(self.responder(user_prompt).split(" ")):
                if self.stream_error_after is not None and i >= self.stream_error_after:
                    raise ProviderError(message="stream dropped", provider_name="fake-llm")
                await asyncio.sleep(0)
                yield word if i == 0 else f" {word}"
        finally:
            self.stream_closed = True

    def get_provider_name(self) -> str:
        return "fake-llm"

    def get_model_name(self) -> str:
        return "scripted"

    def is_available(self) -> bool:
        return True

    async def validate_credentials(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _fresh_throttles() -> Iterator[None]:
    """Throttles are process-wide; give every test its own."""
    reset_throttles()
    yield
    reset_throttles()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "notebookrag.db"


@pytest.fixture
def sample_text() -> str:
    return SAMPLE_PLANNING_TEXT


@pytest.fixture
def fake_embedder() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
async def document_store(db_path: Path) -> SQLiteDocumentStore:
    store = SQLiteDocumentStore(db_path=db_path)
    await store.initialize()
    return store


@pytest.fixture
async def vector_store(db_path: Path, document_store: SQLiteDocumentStore) -> SQLiteVectorStore:
    store = SQLiteVectorStore(db_path=db_path)
    await store.initialize()
    return store


@pytest.fixture
async def job_store(db_path: Path) -> SQLiteJobStore:
    store = SQLiteJobStore(db_path=db_path)
    await store.initialize()
    return store


@pytest.fixture
async def report_store(db_path: Path) -> SQLiteReportStore:
    store = SQLiteReportStore(db_path=db_path)
    await store.initialize()
    return store


@pytest.fixture
async def chat_store(db_path: Path) -> SQLiteChatStore:
    store = SQLiteChatStore(db_path=db_path)
    await store.initialize()
    return store


@pytest.fixture
def test_config() -> dict[str, Any]:
    """Defaults tuned for fast tests: small chunks, no retry delays."""
    config = copy.deepcopy(DEFAULTS)
    config["chunking"].update(chunk_size=200, lookahead=40)
    config["embedding"].update(backoff_base=0.0)
    config["retrieval"].update(threshold=0.1)
    config["jobs"].update(
        worker_count=2,
        poll_interval=0.02,
        heartbeat_interval=0.05,
        retry_backoff_base=0.0,
    )
    return config


@pytest.fixture
def test_settings(db_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        database_path=str(db_path),
        vector_backend="sqlite",
        start_workers=False,
        app_env="test",
    )


@pytest.fixture
def components_factory(
    test_settings: Settings,
    test_config: dict[str, Any],
) -> Callable[..., dict[str, Any]]:
    """Build the full component graph around fake providers."""

    def _build(
        llm: ILLMProvider | None = None,
        embedder: IEmbeddingProvider | None = None,
        settings: Settings | None = None,
    ) -> dict[str, Any]:
        return build_components(
            settings or test_settings,
            test_config,
            llm=llm or FakeLLM(),
            embedding_provider=embedder or FakeEmbeddingProvider(),
        )

    return _build


@pytest.fixture
async def components(
    components_factory: Callable[..., dict[str, Any]],
    fake_llm: FakeLLM,
    fake_embedder: FakeEmbeddingProvider,
) -> dict[str, Any]:
    built = components_factory(llm=fake_llm, embedder=fake_embedder)
    await initialize_components(built)
    return built
