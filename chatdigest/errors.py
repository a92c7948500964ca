"""Exception types raised across the pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline failures."""


class OracleError(PipelineError):
    """An LLM call failed or returned something unusable."""


class OracleTimeoutError(OracleError):
    """An LLM call exceeded its deadline."""


class OracleResponseError(OracleError):
    """The LLM answered, but the payload could not be parsed."""


class EmbeddingError(PipelineError):
    """The embedding backend failed."""
