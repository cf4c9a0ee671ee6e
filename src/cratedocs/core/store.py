"""PostgreSQL persistence for crates and their embedded documentation chunks.

Schema is managed by the alembic migrations under ``migrations/``.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np
import psycopg
from pgvector.psycopg import register_vector

from .errors import StorageError
from .models import ChunkRow, CrateStats

logger = logging.getLogger(__name__)


class CrateStore:
    """Interface the pipeline uses for persistence."""

    def has_embeddings(self, crate_name: str) -> bool:
        raise NotImplementedError

    def upsert_crate(self, crate_name: str, version: Optional[str]) -> int:
        raise NotImplementedError

    def insert_embeddings_batch(self, crate_id: int, crate_name: str, rows: Sequence[ChunkRow]) -> None:
        raise NotImplementedError

    def delete_crate_embeddings(self, crate_name: str) -> None:
        raise NotImplementedError

    def get_crate_stats(self) -> List[CrateStats]:
        raise NotImplementedError


class PostgresCrateStore(CrateStore):
    """Crate store backed by PostgreSQL with the pgvector extension."""

    def __init__(self, db_url: str, connection: Optional[psycopg.Connection] = None):
        self.db_url = db_url
        self._conn = connection

    def __enter__(self) -> "PostgresCrateStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def conn(self) -> psycopg.Connection:
        if self._conn is None:
            try:
                self._conn = psycopg.connect(self.db_url)
                register_vector(self._conn)
            except psycopg.Error as e:
                raise StorageError(f"Failed to connect to database: {e}") from e
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def has_embeddings(self, crate_name: str) -> bool:
        try:
            with self.conn.transaction():
                with self.conn.cursor() as cur:
                    cur.execute(
                        "SELECT EXISTS(SELECT 1 FROM doc_embeddings WHERE crate_name = %s)",
                        (crate_name,),
                    )
                    row = cur.fetchone()
        except psycopg.Error as e:
            raise StorageError(f"Failed to check embeddings: {e}", crate_name=crate_name) from e
        return bool(row and row[0])

    def upsert_crate(self, crate_name: str, version: Optional[str]) -> int:
        """Create the crate row or refresh its version; return its id."""
        try:
            with self.conn.transaction():
                with self.conn.cursor() as cur:
                    cur.execute("""
                        INSERT INTO crates (name, version)
                        VALUES (%s, %s)
                        ON CONFLICT (name) DO UPDATE SET
                            version = EXCLUDED.version,
                            last_updated = now()
                        RETURNING id
                    """, (crate_name, version))
                    crate_id = cur.fetchone()[0]
        except psycopg.Error as e:
            raise StorageError(f"Failed to upsert crate: {e}", crate_name=crate_name) from e

        logger.info(f"Upserted crate {crate_name} (id={crate_id}, version={version})")
        return crate_id

    def insert_embeddings_batch(self, crate_id: int, crate_name: str, rows: Sequence[ChunkRow]) -> None:
        """
        Replace all chunk rows of a crate in one transaction.

        Existing chunks for the crate are removed first so that embeddings
        from a previous model never sit next to new ones. Readers see either
        the old set or the new set.

        Args:
            crate_id: Id returned by ``upsert_crate``
            crate_name: Crate name, denormalised onto each chunk row
            rows: Chunks with embeddings and token counts
        """
        try:
            with self.conn.transaction():
                with self.conn.cursor() as cur:
                    # Serialises concurrent runs for the same crate.
                    cur.execute("SELECT id FROM crates WHERE id = %s FOR UPDATE", (crate_id,))
                    if cur.fetchone() is None:
                        raise StorageError(f"Crate id {crate_id} does not exist", crate_name=crate_name)

                    cur.execute("DELETE FROM doc_embeddings WHERE crate_id = %s", (crate_id,))

                    cur.executemany("""
                        INSERT INTO doc_embeddings (crate_id, crate_name, doc_path, content, embedding, token_count)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        ON CONFLICT (crate_id, doc_path) DO UPDATE SET
                            content = EXCLUDED.content,
                            embedding = EXCLUDED.embedding,
                            token_count = EXCLUDED.token_count
                    """, [
                        (
                            crate_id,
                            crate_name,
                            row.path,
                            row.content,
                            np.asarray(row.embedding, dtype=np.float32),
                            row.token_count,
                        )
                        for row in rows
                    ])

                    cur.execute("""
                        UPDATE crates SET
                            total_docs = stats.docs,
                            total_tokens = stats.tokens,
                            last_updated = now()
                        FROM (
                            SELECT COUNT(*) AS docs, COALESCE(SUM(token_count), 0) AS tokens
                            FROM doc_embeddings WHERE crate_id = %s
                        ) AS stats
                        WHERE crates.id = %s
                    """, (crate_id, crate_id))
        except psycopg.Error as e:
            raise StorageError(f"Failed to insert embeddings: {e}", crate_name=crate_name) from e

        logger.info(f"Stored {len(rows)} embeddings for {crate_name}")

    def delete_crate_embeddings(self, crate_name: str) -> None:
        """Delete a crate and all of its chunks. No-op if absent."""
        try:
            with self.conn.transaction():
                with self.conn.cursor() as cur:
                    cur.execute("DELETE FROM doc_embeddings WHERE crate_name = %s", (crate_name,))
                    cur.execute("DELETE FROM crates WHERE name = %s", (crate_name,))
                    deleted = cur.rowcount
        except psycopg.Error as e:
            raise StorageError(f"Failed to delete crate: {e}", crate_name=crate_name) from e

        if deleted:
            logger.info(f"Deleted crate {crate_name}")
        else:
            logger.info(f"Crate {crate_name} not present; nothing to delete")

    def get_crate_stats(self) -> List[CrateStats]:
        try:
            with self.conn.transaction():
                with self.conn.cursor() as cur:
                    cur.execute("""
                        SELECT name, version, total_docs, total_tokens, last_updated
                        FROM crates
                        ORDER BY name
                    """)
                    rows = cur.fetchall()
        except psycopg.Error as e:
            raise StorageError(f"Failed to read crate stats: {e}") from e

        return [
            CrateStats(
                name=name,
                version=version,
                total_docs=total_docs,
                total_tokens=total_tokens,
                last_updated=last_updated,
            )
            for name, version, total_docs, total_tokens, last_updated in rows
        ]
