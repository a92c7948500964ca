"""Embedding clients: local Model2Vec or an OpenAI-compatible endpoint."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx
import numpy as np

from chatdigest.config import get_embedding_config
from chatdigest.errors import EmbeddingError
from chatdigest.retry import retry_async

logger = logging.getLogger(__name__)

_models: dict[str, object] = {}


def get_model(model_name: str = "minishlab/potion-base-8M"):
    """Lazy-load a Model2Vec static model."""
    if model_name not in _models:
        from model2vec import StaticModel

        logger.info("Loading embedding model: %s", model_name)
        _models[model_name] = StaticModel.from_pretrained(model_name)
    return _models[model_name]


def cosine_similarity(a, b) -> float:
    """Cosine similarity; 0.0 for empty, zero or mismatched vectors."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.size == 0 or a.shape != b.shape:
        return 0.0
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def fit_dimensions(vector, dimensions: int) -> list[float]:
    """Zero-pad or truncate to the stored vector width."""
    vec = np.asarray(vector, dtype=np.float32).ravel()
    if dimensions <= 0 or vec.size == dimensions:
        return vec.tolist()
    if vec.size > dimensions:
        return vec[:dimensions].tolist()
    return np.pad(vec, (0, dimensions - vec.size)).tolist()


class BaseEmbeddingClient(ABC):
    """Turns text into a fixed-width vector."""

    def __init__(self, model: str, dimensions: int = 1536):
        self.model = model
        self.dimensions = dimensions

    @abstractmethod
    async def get_embedding(self, text: str) -> list[float]:
        """Embed ``text``. Empty input yields an empty vector."""
        ...

    @property
    @abstractmethod
    def name(self) -> str: ...


class Model2VecEmbeddingClient(BaseEmbeddingClient):
    """CPU-only static embeddings, padded to the configured width."""

    @property
    def name(self) -> str:
        return "model2vec"

    async def get_embedding(self, text: str) -> list[float]:
        if not text.strip():
            return []
        try:
            vectors = get_model(self.model).encode([text])
        except Exception as exc:
            raise EmbeddingError(f"model2vec encode failed: {exc}") from exc
        return fit_dimensions(vectors[0], self.dimensions)


class OpenAICompatibleEmbeddingClient(BaseEmbeddingClient):
    """Embeddings from any server exposing POST /embeddings."""

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str = "",
        dimensions: int = 1536,
        timeout: float = 30,
        max_retries: int = 3,
    ):
        super().__init__(model, dimensions)
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries

    @property
    def name(self) -> str:
        return "openai_compatible"

    async def get_embedding(self, text: str) -> list[float]:
        if not text.strip():
            return []
        try:
            vector = await retry_async(
                self._do_embed, text, max_retries=self.max_retries,
            )
        except (httpx.HTTPError, OSError, KeyError, IndexError, ValueError) as exc:
            raise EmbeddingError(f"embedding request failed: {exc}") from exc
        return fit_dimensions(vector, self.dimensions)

    async def _do_embed(self, text: str) -> list[float]:
        url = f"{self.base_url.rstrip('/')}/embeddings"
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {"model": self.model, "input": text}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()

        return data["data"][0]["embedding"]


def get_embedding_client(config: dict) -> BaseEmbeddingClient:
    cfg = get_embedding_config(config)
    if cfg["provider"] == "openai_compatible":
        return OpenAICompatibleEmbeddingClient(
            model=cfg["model"],
            base_url=cfg["base_url"],
            api_key=cfg["api_key"],
            dimensions=cfg["dimensions"],
            timeout=cfg["timeout"],
            max_retries=cfg["max_retries"],
        )
    if cfg["provider"] == "model2vec":
        return Model2VecEmbeddingClient(model=cfg["model"], dimensions=cfg["dimensions"])
    raise ValueError(f"Unknown embedding provider: {cfg['provider']}")
