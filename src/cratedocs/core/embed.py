"""Embedding providers: OpenAI and VoyageAI.

Both providers take whole documents, split any document that exceeds the
provider's per-input token ceiling, batch the pieces, and return one
``EmbeddedChunk`` per piece plus the aggregate token count for the run.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

import openai
import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings
from .errors import (
    EmbeddingAuthError,
    EmbeddingError,
    EmbeddingNetworkError,
    EmbeddingRateLimitError,
    EmbeddingResponseError,
    InternalError,
    MissingEnvVarError,
    UnsupportedProviderError,
)
from .models import Document, EmbeddedChunk
from .tokenizer import Tokenizer

logger = logging.getLogger(__name__)

VOYAGE_API_URL = "https://api.voyageai.com/v1/embeddings"

# Only transient failures are retried; auth and malformed responses surface at once.
_retry_transient = retry(
    retry=retry_if_exception_type((EmbeddingRateLimitError, EmbeddingNetworkError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=4, max=10),
    reraise=True,
)


class ProviderKind(str, Enum):
    OPENAI = "openai"
    VOYAGE = "voyage"


@dataclass
class EmbeddingConfig:
    """Configuration for embedding generation."""
    model: str
    batch_size: int
    max_batch_tokens: int
    max_chunk_tokens: int


DEFAULT_CONFIGS = {
    ProviderKind.OPENAI: EmbeddingConfig(
        model="text-embedding-3-large",
        batch_size=100,
        max_batch_tokens=250_000,
        max_chunk_tokens=8000,  # text-embedding-3-* accept 8191
    ),
    ProviderKind.VOYAGE: EmbeddingConfig(
        model="voyage-3.5",
        batch_size=128,
        max_batch_tokens=100_000,
        max_chunk_tokens=16000,
    ),
}


@dataclass
class _Piece:
    path: str
    content: str
    tokens: int


class EmbeddingProvider:
    """Common chunking, batching and validation for the provider variants.

    Subclasses implement ``_embed_batch`` only.
    """

    kind: ProviderKind

    def __init__(self, config: EmbeddingConfig, tokenizer: Tokenizer):
        self.config = config
        self.tokenizer = tokenizer

    @property
    def model(self) -> str:
        return self.config.model

    def embed(self, documents: Sequence[Document]) -> Tuple[List[EmbeddedChunk], int]:
        """
        Embed documents, splitting oversized ones.

        Args:
            documents: Documents to embed, in order

        Returns:
            Tuple of embedded chunks (in input order) and the total token count
            for the run. The total is the API-reported usage when every batch
            reported one, otherwise the tokenizer's count.
        """
        pieces = self._split_documents(documents)
        if not pieces:
            return [], 0

        chunks: List[EmbeddedChunk] = []
        reported_total = 0
        usage_complete = True
        dimensions: Optional[int] = None

        batches = self._batches(pieces)
        for number, batch in enumerate(batches, start=1):
            logger.info(f"Embedding batch {number}/{len(batches)}: {len(batch)} chunks with {self.model}")
            vectors, usage = self._embed_batch([piece.content for piece in batch])

            if len(vectors) != len(batch):
                raise EmbeddingResponseError(
                    f"{self.kind.value} returned {len(vectors)} embeddings for {len(batch)} inputs"
                )

            for piece, vector in zip(batch, vectors):
                if dimensions is None:
                    dimensions = len(vector)
                elif len(vector) != dimensions:
                    raise EmbeddingResponseError(
                        f"Inconsistent embedding dimensions: {len(vector)} != {dimensions}"
                    )
                chunks.append(EmbeddedChunk(path=piece.path, content=piece.content, embedding=vector))

            if usage is None:
                usage_complete = False
            else:
                reported_total += usage

        total_tokens = reported_total if usage_complete else sum(piece.tokens for piece in pieces)
        logger.info(f"Generated {len(chunks)} embeddings (dim={dimensions}) using {total_tokens} tokens")
        return chunks, total_tokens

    def _split_documents(self, documents: Sequence[Document]) -> List[_Piece]:
        pieces = []
        for doc in documents:
            if not doc.content.strip():
                logger.warning(f"Skipping empty document {doc.path}")
                continue

            windows = self.tokenizer.split(doc.content, self.config.max_chunk_tokens)
            if len(windows) == 1:
                pieces.append(_Piece(doc.path, windows[0], self.tokenizer.count_tokens(windows[0])))
                continue

            logger.info(f"Split {doc.path} into {len(windows)} chunks")
            for part, window in enumerate(windows, start=1):
                pieces.append(_Piece(f"{doc.path}#part{part}", window, self.tokenizer.count_tokens(window)))
        return pieces

    def _batches(self, pieces: List[_Piece]) -> List[List[_Piece]]:
        batches: List[List[_Piece]] = []
        current: List[_Piece] = []
        current_tokens = 0
        for piece in pieces:
            full = len(current) >= self.config.batch_size
            over_budget = current_tokens + piece.tokens > self.config.max_batch_tokens
            if current and (full or over_budget):
                batches.append(current)
                current, current_tokens = [], 0
            current.append(piece)
            current_tokens += piece.tokens
        if current:
            batches.append(current)
        return batches

    def _embed_batch(self, texts: List[str]) -> Tuple[List[List[float]], Optional[int]]:
        """Return one vector per text and the API-reported token usage, if any."""
        raise NotImplementedError


def _check_vector(vector, provider: str) -> List[float]:
    if not isinstance(vector, list) or not vector:
        raise EmbeddingResponseError(f"{provider} returned an empty or non-list embedding")
    if not all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in vector):
        raise EmbeddingResponseError(f"{provider} returned a non-numeric embedding")
    return [float(x) for x in vector]


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI (or OpenAI-compatible) embeddings endpoint."""

    kind = ProviderKind.OPENAI

    def __init__(
        self,
        config: EmbeddingConfig,
        tokenizer: Tokenizer,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        client: Optional[openai.OpenAI] = None,
    ):
        super().__init__(config, tokenizer)
        self.api_key = api_key
        self.api_base = api_base
        self._client = client

    @property
    def client(self) -> openai.OpenAI:
        # Built on first use so that a dry run needs no credentials. Retries are
        # left to _retry_transient alone.
        if self._client is None:
            try:
                self._client = openai.OpenAI(api_key=self.api_key, base_url=self.api_base, max_retries=0)
            except openai.OpenAIError:
                raise MissingEnvVarError("OPENAI_API_KEY")
        return self._client

    @_retry_transient
    def _embed_batch(self, texts: List[str]) -> Tuple[List[List[float]], Optional[int]]:
        try:
            response = self.client.embeddings.create(model=self.model, input=texts)
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise EmbeddingAuthError(f"OpenAI rejected credentials: {e}") from e
        except openai.RateLimitError as e:
            raise EmbeddingRateLimitError(f"OpenAI rate limit or quota exceeded: {e}") from e
        except openai.APIConnectionError as e:
            raise EmbeddingNetworkError(f"Could not reach OpenAI: {e}") from e
        except openai.APIStatusError as e:
            raise EmbeddingError(f"OpenAI request failed with status {e.status_code}: {e}") from e

        data = getattr(response, "data", None)
        if not isinstance(data, list):
            raise EmbeddingResponseError("OpenAI response has no data list")
        try:
            ordered = sorted(data, key=lambda item: item.index)
            vectors = [_check_vector(item.embedding, "OpenAI") for item in ordered]
        except AttributeError as e:
            raise EmbeddingResponseError(f"Malformed OpenAI embedding item: {e}") from e

        usage = getattr(response, "usage", None)
        prompt_tokens = getattr(usage, "prompt_tokens", None) if usage is not None else None
        return vectors, prompt_tokens if isinstance(prompt_tokens, int) else None


class VoyageEmbeddingProvider(EmbeddingProvider):
    """VoyageAI embeddings REST API."""

    kind = ProviderKind.VOYAGE

    def __init__(
        self,
        config: EmbeddingConfig,
        tokenizer: Tokenizer,
        api_key: Optional[str],
        session: Optional[requests.Session] = None,
        timeout: float = 120.0,
    ):
        if not api_key:
            raise MissingEnvVarError("VOYAGE_API_KEY")
        super().__init__(config, tokenizer)
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    @_retry_transient
    def _embed_batch(self, texts: List[str]) -> Tuple[List[List[float]], Optional[int]]:
        try:
            response = self.session.post(
                VOYAGE_API_URL,
                json={"input": texts, "model": self.model, "input_type": "document"},
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise EmbeddingNetworkError(f"Could not reach VoyageAI: {e}") from e
        except requests.RequestException as e:
            raise EmbeddingError(f"VoyageAI request failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise EmbeddingAuthError(f"VoyageAI rejected credentials (HTTP {status})")
        if status == 429:
            raise EmbeddingRateLimitError("VoyageAI rate limit or quota exceeded (HTTP 429)")
        if status >= 400:
            raise EmbeddingError(f"VoyageAI request failed with HTTP {status}: {response.text[:200]}")

        try:
            payload = response.json()
            items = sorted(payload["data"], key=lambda item: item["index"])
            vectors = [_check_vector(item["embedding"], "VoyageAI") for item in items]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingResponseError(f"Malformed VoyageAI response: {e}") from e

        usage = payload.get("usage") or {}
        total_tokens = usage.get("total_tokens") if isinstance(usage, dict) else None
        return vectors, total_tokens if isinstance(total_tokens, int) else None


def create_provider(settings: Settings, tokenizer: Tokenizer) -> EmbeddingProvider:
    """Build the provider variant named by ``settings.embedding_provider``."""
    try:
        kind = ProviderKind(settings.embedding_provider.lower())
    except ValueError:
        raise UnsupportedProviderError(settings.embedding_provider)

    defaults = DEFAULT_CONFIGS[kind]
    config = EmbeddingConfig(
        model=settings.embedding_model or defaults.model,
        batch_size=settings.embed_batch_size or defaults.batch_size,
        max_batch_tokens=defaults.max_batch_tokens,
        max_chunk_tokens=defaults.max_chunk_tokens,
    )

    if kind is ProviderKind.OPENAI:
        return OpenAIEmbeddingProvider(
            config, tokenizer, api_key=settings.openai_api_key, api_base=settings.openai_api_base
        )
    if kind is ProviderKind.VOYAGE:
        return VoyageEmbeddingProvider(config, tokenizer, api_key=settings.voyage_api_key)
    raise InternalError(f"No provider implementation for {kind.value}")


class ProviderBinding:
    """Holds the one embedding provider a process may use.

    Binding twice is a programming error.
    """

    def __init__(self):
        self._provider: Optional[EmbeddingProvider] = None
        self._lock = threading.Lock()

    @property
    def is_bound(self) -> bool:
        return self._provider is not None

    def bind(self, provider: EmbeddingProvider) -> EmbeddingProvider:
        with self._lock:
            if self._provider is not None:
                raise InternalError("Failed to set embedding provider: already bound")
            self._provider = provider
            logger.info(f"Bound embedding provider {provider.kind.value} ({provider.model})")
            return provider

    def get(self) -> EmbeddingProvider:
        if self._provider is None:
            raise InternalError("Embedding provider has not been bound")
        return self._provider

    def get_or_bind(self, factory: Callable[[], EmbeddingProvider]) -> EmbeddingProvider:
        """Return the bound provider, building and binding it on first call."""
        with self._lock:
            if self._provider is None:
                self._provider = factory()
                logger.info(f"Bound embedding provider {self._provider.kind.value} ({self._provider.model})")
            return self._provider
