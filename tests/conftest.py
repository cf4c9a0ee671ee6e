"""Shared pytest fixtures and in-memory fakes for the populate pipeline."""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from cratedocs.core.config import Settings
from cratedocs.core.doc_loader import DocumentLoader
from cratedocs.core.embed import EmbeddingProvider, ProviderBinding, ProviderKind
from cratedocs.core.models import ChunkRow, CrateStats, Document, EmbeddedChunk, LoadResult
from cratedocs.core.populate import IngestionOrchestrator
from cratedocs.core.store import CrateStore
from cratedocs.core.tokenizer import Tokenizer


class FakeEncoding:
    """Whitespace "BPE": one token per word, reversible through a vocabulary."""

    def __init__(self) -> None:
        self._ids: Dict[str, int] = {}
        self._words: Dict[int, str] = {}

    def encode(self, text: str, allowed_special="all") -> List[int]:
        tokens = []
        for word in text.split():
            if word not in self._ids:
                token = len(self._ids)
                self._ids[word] = token
                self._words[token] = word
            tokens.append(self._ids[word])
        return tokens

    def decode(self, tokens: List[int]) -> str:
        return " ".join(self._words[t] for t in tokens)

    def decode_bytes(self, tokens: List[int]) -> bytes:
        return self.decode(tokens).encode("utf-8")


class FakeLoader(DocumentLoader):
    def __init__(self, result: Optional[LoadResult] = None, error: Optional[Exception] = None) -> None:
        self.result = result or LoadResult(documents=[], version=None)
        self.error = error
        self.calls: List[tuple] = []

    def load(self, crate_name, version_selector="*", features=None, max_pages=None) -> LoadResult:
        self.calls.append((crate_name, version_selector, features, max_pages))
        if self.error is not None:
            raise self.error
        return self.result


class FakeProvider(EmbeddingProvider):
    """Provider returning canned chunks, or one 4-dim vector per document."""

    kind = ProviderKind.OPENAI

    def __init__(
        self,
        chunks: Optional[List[EmbeddedChunk]] = None,
        total_tokens: Optional[int] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.chunks = chunks
        self.total_tokens = total_tokens
        self.error = error
        self.calls: List[Sequence[Document]] = []

    @property
    def model(self) -> str:
        return "fake-embedding"

    def embed(self, documents: Sequence[Document]) -> Tuple[List[EmbeddedChunk], int]:
        self.calls.append(list(documents))
        if self.error is not None:
            raise self.error
        chunks = self.chunks
        if chunks is None:
            chunks = [
                EmbeddedChunk(path=doc.path, content=doc.content, embedding=[0.1, 0.2, 0.3, float(i)])
                for i, doc in enumerate(documents)
            ]
        total = self.total_tokens
        if total is None:
            total = sum(len(chunk.content.split()) for chunk in chunks)
        return chunks, total


class InMemoryCrateStore(CrateStore):
    """Dict-backed store that records write calls."""

    def __init__(self) -> None:
        self.crates: Dict[str, dict] = {}
        self.chunks: Dict[int, List[ChunkRow]] = {}
        self.writes: List[str] = []
        self.fail_insert: Optional[Exception] = None
        self._next_id = 1

    def has_embeddings(self, crate_name: str) -> bool:
        crate = self.crates.get(crate_name)
        return bool(crate and self.chunks.get(crate["id"]))

    def upsert_crate(self, crate_name: str, version: Optional[str]) -> int:
        self.writes.append("upsert_crate")
        crate = self.crates.get(crate_name)
        if crate is None:
            crate = {"id": self._next_id, "total_docs": 0, "total_tokens": 0}
            self._next_id += 1
            self.crates[crate_name] = crate
        crate["version"] = version
        crate["last_updated"] = datetime.now(timezone.utc)
        return crate["id"]

    def insert_embeddings_batch(self, crate_id: int, crate_name: str, rows: Sequence[ChunkRow]) -> None:
        self.writes.append("insert_embeddings_batch")
        if self.fail_insert is not None:
            raise self.fail_insert
        self.chunks[crate_id] = list(rows)
        crate = self.crates[crate_name]
        crate["total_docs"] = len(rows)
        crate["total_tokens"] = sum(row.token_count for row in rows)

    def delete_crate_embeddings(self, crate_name: str) -> None:
        self.writes.append("delete_crate_embeddings")
        crate = self.crates.pop(crate_name, None)
        if crate is not None:
            self.chunks.pop(crate["id"], None)

    def get_crate_stats(self) -> List[CrateStats]:
        return [
            CrateStats(
                name=name,
                version=crate["version"],
                total_docs=crate["total_docs"],
                total_tokens=crate["total_tokens"],
                last_updated=crate["last_updated"],
            )
            for name, crate in sorted(self.crates.items())
        ]

    def rows_for(self, crate_name: str) -> List[ChunkRow]:
        return self.chunks.get(self.crates[crate_name]["id"], [])


@pytest.fixture()
def tokenizer() -> Tokenizer:
    return Tokenizer(encoding=FakeEncoding())


@pytest.fixture()
def settings() -> Settings:
    return Settings(embedding_provider="openai", cost_per_million=0.02)


@pytest.fixture()
def store() -> InMemoryCrateStore:
    return InMemoryCrateStore()


@pytest.fixture()
def demo_documents() -> List[Document]:
    return [
        Document(path="intro.md", content=("Intro text " * 5)[:50]),
        Document(path="api.md", content=("Api docs for fn run. " * 10)[:200]),
    ]


@pytest.fixture()
def make_orchestrator(store, settings, tokenizer):
    def _make(loader: FakeLoader, provider: Optional[FakeProvider] = None, binding: Optional[ProviderBinding] = None):
        provider = provider or FakeProvider()
        return IngestionOrchestrator(
            store=store,
            loader=loader,
            settings=settings,
            provider_binding=binding or ProviderBinding(),
            tokenizer=tokenizer,
            provider_factory=lambda: provider,
        )

    return _make
