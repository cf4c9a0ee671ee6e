"""Crate ingestion pipeline: gate -> load (docs.rs) -> embed -> store (PG).

Phases run strictly one after another and each is fully materialised before
the next starts. Nothing is written to the store unless loading and embedding
both succeeded.
"""

import time
from typing import Callable, List, Optional, Sequence

from .config import Settings
from .doc_loader import DocumentLoader
from .embed import EmbeddingProvider, ProviderBinding, create_provider
from .errors import CrateDocsError, EmbeddingError, LoadError, StorageError
from .logging_config import get_pipeline_logger, log_ingestion_event
from .models import ChunkRow, CrateStats, DocumentPreview, IngestOutcome, IngestStatus
from .store import CrateStore
from .tokenizer import Tokenizer, estimate_cost

PREVIEW_DOCUMENTS = 3
PREVIEW_CHARS = 100


class IngestionOrchestrator:
    """Runs the populate pipeline for one crate at a time."""

    def __init__(
        self,
        store: CrateStore,
        loader: DocumentLoader,
        settings: Settings,
        provider_binding: ProviderBinding,
        tokenizer: Optional[Tokenizer] = None,
        provider_factory: Optional[Callable[[], EmbeddingProvider]] = None,
    ):
        self.store = store
        self.loader = loader
        self.settings = settings
        self.provider_binding = provider_binding
        self.tokenizer = tokenizer or Tokenizer()
        self.provider_factory = provider_factory or (lambda: create_provider(self.settings, self.tokenizer))

    def ingest(
        self,
        crate_name: str,
        version_selector: str = "*",
        features: Optional[Sequence[str]] = None,
        max_pages: int = 10000,
        force: bool = False,
        test_mode: bool = False,
    ) -> IngestOutcome:
        """
        Populate the store with embeddings for one crate.

        Args:
            crate_name: Crate to ingest
            version_selector: Version to load, "*" for latest
            features: Feature flags forwarded to the loader
            max_pages: Crawl ceiling forwarded to the loader
            force: Regenerate even if embeddings already exist
            test_mode: Load only; no embedding and no storage

        Returns:
            IngestOutcome describing what happened

        Raises:
            CrateDocsError: a ConfigError, LoadError, EmbeddingError,
                StorageError or InternalError tagged with the crate name
        """
        log = get_pipeline_logger("populate").bind(crate_name=crate_name)

        # Idempotency gate
        if not force and self._run_phase(crate_name, StorageError, self.store.has_embeddings, crate_name):
            log.info("ingest_skipped", reason="embeddings_exist")
            return IngestOutcome(crate_name=crate_name, status=IngestStatus.SKIPPED)

        provider = self._run_phase(crate_name, None, self.provider_binding.get_or_bind, self.provider_factory)

        log.info("loading_documents", max_pages=max_pages, features=list(features or []))
        load_start = time.monotonic()
        load_result = self._run_phase(
            crate_name, LoadError, self.loader.load, crate_name, version_selector, features, max_pages
        )
        load_time = time.monotonic() - load_start

        documents = load_result.documents
        version = load_result.version
        if max_pages is not None and len(documents) > max_pages:
            raise LoadError(
                f"Loader returned {len(documents)} documents, more than max_pages={max_pages}",
                crate_name=crate_name,
            )

        total_bytes = sum(len(doc.content.encode("utf-8")) for doc in documents)
        log.info(
            "documents_loaded",
            documents=len(documents),
            total_kb=round(total_bytes / 1024, 1),
            seconds=round(load_time, 2),
            version=version,
        )

        if not documents:
            log.info("no_documents_found")
            return IngestOutcome(
                crate_name=crate_name,
                status=IngestStatus.NO_DOCUMENTS,
                version=version,
                timings={"load": load_time},
            )

        if test_mode:
            previews = [
                DocumentPreview(
                    path=doc.path,
                    size_bytes=len(doc.content.encode("utf-8")),
                    preview=doc.content[:PREVIEW_CHARS].replace("\n", " "),
                )
                for doc in documents[:PREVIEW_DOCUMENTS]
            ]
            return IngestOutcome(
                crate_name=crate_name,
                status=IngestStatus.DRY_RUN,
                version=version,
                document_count=len(documents),
                total_content_bytes=total_bytes,
                timings={"load": load_time},
                previews=previews,
            )

        embed_start = time.monotonic()
        chunks, total_tokens = self._run_phase(crate_name, EmbeddingError, provider.embed, documents)
        embed_time = time.monotonic() - embed_start

        rows = [
            ChunkRow(
                path=chunk.path,
                content=chunk.content,
                embedding=chunk.embedding,
                token_count=self.tokenizer.count_tokens(chunk.content),
            )
            for chunk in chunks
        ]
        stored_tokens = sum(row.token_count for row in rows)
        if stored_tokens != total_tokens:
            log.warning("token_count_mismatch", provider_tokens=total_tokens, tokenizer_tokens=stored_tokens)

        estimated_cost = estimate_cost(total_tokens, self.settings.cost_per_million)
        log.info(
            "embeddings_generated",
            embeddings=len(rows),
            total_tokens=total_tokens,
            seconds=round(embed_time, 2),
            estimated_cost=round(estimated_cost, 6),
        )

        if not rows:
            # Every document was blank; committing would record an empty crate.
            log.warning("no_embeddings_generated")
            return IngestOutcome(
                crate_name=crate_name,
                status=IngestStatus.NO_DOCUMENTS,
                version=version,
                document_count=len(documents),
                total_content_bytes=total_bytes,
                timings={"load": load_time, "embed": embed_time},
            )

        store_start = time.monotonic()
        crate_id = self._run_phase(crate_name, StorageError, self.store.upsert_crate, crate_name, version)
        self._run_phase(crate_name, StorageError, self.store.insert_embeddings_batch, crate_id, crate_name, rows)
        store_time = time.monotonic() - store_start

        timings = {"load": load_time, "embed": embed_time, "store": store_time}
        log_ingestion_event(
            log,
            crate_name=crate_name,
            crate_version=version or "unknown",
            documents=len(documents),
            embeddings=len(rows),
            total_tokens=total_tokens,
            estimated_cost=estimated_cost,
            timings={phase: round(seconds, 2) for phase, seconds in timings.items()},
        )

        return IngestOutcome(
            crate_name=crate_name,
            status=IngestStatus.COMPLETED,
            version=version,
            document_count=len(documents),
            embedding_count=len(rows),
            total_tokens=total_tokens,
            stored_tokens=stored_tokens,
            total_content_bytes=total_bytes,
            estimated_cost=estimated_cost,
            timings=timings,
        )

    def _run_phase(self, crate_name: str, wrap_as, func, *args):
        """Call ``func``, tagging pipeline errors with the crate and wrapping foreign ones."""
        try:
            return func(*args)
        except CrateDocsError as e:
            raise e.with_context(crate_name=crate_name)
        except Exception as e:
            if wrap_as is None:
                raise
            raise wrap_as(f"{type(e).__name__}: {e}", crate_name=crate_name) from e


def delete_crate(store: CrateStore, crate_name: str) -> None:
    """Remove all stored data for a crate."""
    try:
        store.delete_crate_embeddings(crate_name)
    except CrateDocsError as e:
        raise e.with_context(crate_name=crate_name)
    get_pipeline_logger("populate").info("crate_deleted", crate_name=crate_name)


def list_crates(store: CrateStore) -> List[CrateStats]:
    """Stored crates with their aggregate stats, ordered by name."""
    return store.get_crate_stats()
