"""Deduplicator registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

from chatdigest.models import utcnow

if TYPE_CHECKING:
    from chatdigest.process.base import BaseDeduplicator

DEDUPLICATORS: dict[str, type[BaseDeduplicator]] = {}


def register_deduplicator(name: str):
    """Decorator to register a deduplicator under a dedup_mode value."""

    def decorator(cls):
        DEDUPLICATORS[name] = cls
        return cls

    return decorator


def get_deduplicator(mode: str, store, settings, clock=utcnow) -> BaseDeduplicator:
    """Instantiate the deduplicator for ``mode``, falling back to semantic."""
    cls = DEDUPLICATORS.get(mode) or DEDUPLICATORS["semantic"]
    return cls(store, settings, clock)


from chatdigest.process.dedup import SemanticDeduplicator, StrictDeduplicator  # noqa: E402, F401
