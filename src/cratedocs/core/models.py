"""Data shapes passed between loader, provider, store and orchestrator."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class Document(BaseModel):
    """A documentation page as returned by a loader."""
    path: str
    content: str


class LoadResult(BaseModel):
    """Documents from a single load, plus the version the loader resolved."""
    documents: List[Document] = Field(default_factory=list)
    version: Optional[str] = None


class EmbeddedChunk(BaseModel):
    """A chunk of a document with its embedding vector."""
    path: str
    content: str
    embedding: List[float]


class ChunkRow(BaseModel):
    """A chunk ready for storage, with its exact token count."""
    path: str
    content: str
    embedding: List[float]
    token_count: int


class CrateStats(BaseModel):
    """Aggregate row for one stored crate."""
    name: str
    version: Optional[str] = None
    total_docs: int = 0
    total_tokens: int = 0
    last_updated: datetime


class IngestStatus(str, Enum):
    SKIPPED = "skipped"
    NO_DOCUMENTS = "no_documents"
    DRY_RUN = "dry_run"
    COMPLETED = "completed"


class DocumentPreview(BaseModel):
    path: str
    size_bytes: int
    preview: str


class IngestOutcome(BaseModel):
    """What a populate run did."""
    crate_name: str
    status: IngestStatus
    version: Optional[str] = None
    document_count: int = 0
    embedding_count: int = 0
    total_tokens: int = 0
    stored_tokens: int = 0
    total_content_bytes: int = 0
    estimated_cost: float = 0.0
    timings: Dict[str, float] = Field(default_factory=dict)
    previews: List[DocumentPreview] = Field(default_factory=list)
