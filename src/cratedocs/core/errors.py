"""Error taxonomy for the ingestion pipeline.

Every error that leaves the pipeline is a ``CrateDocsError`` carrying the
crate it concerned and the phase it failed in, so an operator can re-run the
right thing.
"""

from typing import Optional


class CrateDocsError(Exception):
    """Base class for all pipeline errors."""

    phase: str = "unknown"

    def __init__(self, message: str, crate_name: Optional[str] = None, phase: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.crate_name = crate_name
        if phase is not None:
            self.phase = phase

    def with_context(self, crate_name: Optional[str] = None, phase: Optional[str] = None) -> "CrateDocsError":
        """Attach crate/phase context without overwriting what is already set."""
        if self.crate_name is None:
            self.crate_name = crate_name
        if phase is not None and self.phase == type(self).phase:
            self.phase = phase
        return self

    def __str__(self) -> str:
        if self.crate_name:
            return f"[{self.phase}] {self.crate_name}: {self.message}"
        return f"[{self.phase}] {self.message}"


# Configuration

class ConfigError(CrateDocsError):
    phase = "config"


class MissingEnvVarError(ConfigError):
    def __init__(self, var_name: str, **kwargs):
        super().__init__(f"Missing required environment variable: {var_name}", **kwargs)
        self.var_name = var_name


class UnsupportedProviderError(ConfigError):
    def __init__(self, provider: str, **kwargs):
        super().__init__(
            f"Unsupported embedding provider: {provider}. Use 'openai' or 'voyage'", **kwargs
        )
        self.provider = provider


# Document loading

class LoadError(CrateDocsError):
    phase = "load"


class CrateNotFoundError(LoadError):
    pass


class FetchError(LoadError):
    pass


class ParseError(LoadError):
    pass


# Embedding generation

class EmbeddingError(CrateDocsError):
    phase = "embed"


class EmbeddingAuthError(EmbeddingError):
    pass


class EmbeddingRateLimitError(EmbeddingError):
    pass


class EmbeddingResponseError(EmbeddingError):
    """The provider answered, but the payload was not usable."""


class EmbeddingNetworkError(EmbeddingError):
    pass


# Persistence

class StorageError(CrateDocsError):
    phase = "store"


class InternalError(CrateDocsError):
    """A programming defect rather than an environmental condition."""

    phase = "internal"
