# docwatch Embeddings Module
# Optional semantic signal: HTTP embedding providers plus vector helpers

import json
import logging
import threading
from collections import OrderedDict
from typing import Any, List, Optional, Sequence

import numpy as np
import requests

from config.settings import EmbeddingSettings, EmbeddingsProvider
from observability.metrics import record_embedding_request

logger = logging.getLogger(__name__)

Vector = List[float]


def normalize_vector(values: Sequence[Any]) -> Optional[Vector]:
    """Scale a vector to unit length, dropping non-finite entries.

    Returns None for an empty or zero vector.
    """
    try:
        array = np.asarray(values, dtype=np.float64).ravel()
    except (TypeError, ValueError):
        return None
    array = array[np.isfinite(array)]
    if array.size == 0:
        return None
    magnitude = float(np.linalg.norm(array))
    if magnitude <= 0:
        return None
    return (array / magnitude).tolist()


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    """Dot product of two unit vectors, clamped to [-1, 1]; 0 on shape mismatch."""
    if len(left) == 0 or len(right) == 0 or len(left) != len(right):
        return 0.0
    dot = float(np.dot(np.asarray(left, dtype=np.float64), np.asarray(right, dtype=np.float64)))
    return max(-1.0, min(1.0, dot))


def parse_stored_embedding(value: Any) -> Optional[Vector]:
    """Decode a stored vector (JSON list or JSON string) and renormalize it."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if isinstance(value, (list, tuple)):
        return normalize_vector(value)
    return None


def trim_input(value: str, max_chars: int) -> str:
    return value.strip()[:max_chars]


class QueryEmbeddingCache:
    """Thread-safe bounded LRU cache for query vectors.

    A hit moves the entry to the most-recent end; inserting past ``max_size``
    evicts the oldest entries.
    """

    def __init__(self, max_size: int = 200):
        self.max_size = max(1, max_size)
        self._entries: 'OrderedDict[str, Vector]' = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Vector]:
        with self._lock:
            vector = self._entries.get(key)
            if vector is None:
                return None
            self._entries.move_to_end(key)
            return vector

    def set(self, key: str, vector: Vector) -> None:
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = vector
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries


class EmbeddingProvider:
    """Embeds chunk and query text through an OpenAI-compatible or Ollama endpoint.

    Failures never escape: ``embed_texts`` returns None for the whole batch and
    ``embed_query`` returns None.
    """

    def __init__(self, settings: Optional[EmbeddingSettings] = None,
                 session: Optional[requests.Session] = None,
                 cache: Optional[QueryEmbeddingCache] = None):
        """
        Args:
            settings: Provider configuration; disabled by default
            session: HTTP session (injectable for tests)
            cache: Query vector cache; one is created from settings if omitted
        """
        self.settings = settings or EmbeddingSettings()
        self.session = session or requests.Session()
        self.cache = cache or QueryEmbeddingCache(self.settings.query_cache_size)

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    @property
    def model_id(self) -> str:
        return f"{self.settings.provider.value}:{self.settings.model}"

    @property
    def _timeout(self) -> float:
        return self.settings.timeout_ms / 1000

    def _base_url(self) -> str:
        return self.settings.base_url.rstrip("/")

    def _openai_batch(self, inputs: List[str]) -> List[Optional[Vector]]:
        headers = {"Content-Type": "application/json"}
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"

        response = self.session.post(
            f"{self._base_url()}/embeddings",
            json={"model": self.settings.model, "input": inputs},
            headers=headers,
            timeout=self._timeout,
        )
        response.raise_for_status()
        data = response.json().get("data") or []

        vectors: List[Optional[Vector]] = [None] * len(inputs)
        for position, item in enumerate(data):
            index = item.get("index", position)
            if 0 <= index < len(inputs) and isinstance(item.get("embedding"), list):
                vectors[index] = normalize_vector(item["embedding"])
        return vectors

    def _ollama_single(self, text: str) -> Optional[Vector]:
        response = self.session.post(
            f"{self._base_url()}/api/embeddings",
            json={"model": self.settings.model, "prompt": text},
            timeout=self._timeout,
        )
        response.raise_for_status()
        embedding = response.json().get("embedding")
        if not isinstance(embedding, list):
            return None
        return normalize_vector(embedding)

    def _embed(self, inputs: List[str]) -> List[Optional[Vector]]:
        if self.settings.provider == EmbeddingsProvider.OLLAMA:
            return [self._ollama_single(text) if text else None for text in inputs]
        return self._openai_batch(inputs)

    def embed_texts(self, texts: Sequence[str]) -> Optional[List[Optional[Vector]]]:
        """Embed a batch of texts.

        Returns:
            One unit vector (or None) per input, or None when embeddings are
            disabled or the provider call failed
        """
        if not self.enabled:
            return None

        inputs = [trim_input(text, self.settings.max_chars_per_input) for text in texts]
        if not inputs:
            return []

        try:
            vectors = self._embed(inputs)
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"embeddings_failed provider={self.settings.provider.value} reason={e}")
            record_embedding_request(self.settings.provider.value, error=str(e))
            return None

        record_embedding_request(self.settings.provider.value)
        return vectors

    def embed_query(self, text: str) -> Optional[Vector]:
        """Embed a search query, served from the LRU cache when possible."""
        if not self.enabled:
            return None

        query = trim_input(text, self.settings.max_chars_per_input)
        if not query:
            return None

        cache_key = f"{self.model_id}:{query}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        vectors = self.embed_texts([query])
        vector = vectors[0] if vectors else None
        if vector:
            self.cache.set(cache_key, vector)
        return vector
