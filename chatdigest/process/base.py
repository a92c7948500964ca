"""Abstract base class for deduplicators."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable

from chatdigest.models import Candidate, utcnow
from chatdigest.settings import PipelineSettings
from chatdigest.store import BaseStore


class BaseDeduplicator(ABC):
    """Decides whether a candidate repeats something already seen."""

    def __init__(
        self,
        store: BaseStore,
        settings: PipelineSettings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock

    @abstractmethod
    async def check(
        self, candidate: Candidate, accepted: list[Candidate]
    ) -> tuple[str, str] | None:
        """Return (drop_reason, duplicate_id) or None if the candidate is new.

        ``accepted`` holds candidates already kept earlier in the same batch.
        """
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Deduplicator name."""
        ...
