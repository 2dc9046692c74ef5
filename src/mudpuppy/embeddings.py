"""
mudpuppy embeddings — text → fixed-dimension vectors for semantic search.

Provides:
- EmbeddingProvider: the contract every backend implements
- LocalEmbedding: all-MiniLM-L6-v2 via ONNX Runtime, falling back to
  SentenceTransformers (PyTorch) when no ONNX model directory is present
- HashEmbedding: deterministic pseudo-embeddings, no model required
- LazyInit: single-flight, retryable lazy initialisation

The model is loaded on first use. Concurrent first calls share one load; a
failed load is not remembered, so the next call tries again.
"""

import asyncio
import hashlib
import logging
import math
import os
import random
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Generic, List, Optional, TypeVar

__all__ = [
    "EmbeddingProvider",
    "EmbeddingUnavailableError",
    "HashEmbedding",
    "LazyInit",
    "LocalEmbedding",
    "create_embedding_provider",
]

logger = logging.getLogger("mudpuppy.embeddings")

EMBEDDING_DIM = 384
MODEL_NAME = "all-MiniLM-L6-v2"
_ST_MODEL_ID = "sentence-transformers/all-MiniLM-L6-v2"
_ONNX_DEFAULT_DIR = "~/.cache/mudpuppy/models/all-MiniLM-L6-v2-onnx"
_EMBEDDING_CACHE_MAX = 512

T = TypeVar("T")


class EmbeddingUnavailableError(RuntimeError):
    """No embedding backend could be loaded."""


class LazyInit(Generic[T]):
    """Lazily-initialised cell.

    The first ``get()`` runs *factory* under a lock; callers arriving while
    it runs wait for that same load instead of starting another. If the
    factory raises, the cell stays empty and the exception reaches the
    caller; a later ``get()`` retries.
    """

    def __init__(self, factory: Callable[[], T]):
        self._factory = factory
        self._lock = threading.Lock()
        self._value: Optional[T] = None
        self.attempts = 0

    def get(self) -> T:
        value = self._value
        if value is not None:
            return value
        with self._lock:
            if self._value is None:
                self.attempts += 1
                self._value = self._factory()
            return self._value

    @property
    def loaded(self) -> bool:
        return self._value is not None

    def reset(self) -> None:
        with self._lock:
            self._value = None


class EmbeddingProvider(ABC):
    """Maps text to a vector of length :attr:`dimension`."""

    _executor: Optional[ThreadPoolExecutor] = None

    @property
    @abstractmethod
    def dimension(self) -> int:
        ...

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        """Return the embedding for *text*."""

    @property
    def is_loaded(self) -> bool:
        return True

    def preload(self) -> bool:
        """Warm up the backend. Returns False when it cannot be loaded."""
        try:
            self.embed("warmup")
            return True
        except EmbeddingUnavailableError as e:
            logger.warning("Embedding preload failed: %s", e)
            return False

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="embedding")
        return self._executor

    async def embed_async(self, text: str) -> List[float]:
        """Generate an embedding without blocking the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._get_executor(), self.embed, text)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None


class HashEmbedding(EmbeddingProvider):
    """Deterministic pseudo-embedding from a text hash.

    Identical text maps to identical vectors; anything else is unrelated
    noise. Useful offline and in tests, useless for semantic recall.
    """

    def __init__(self, dimension: int = EMBEDDING_DIM):
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> List[float]:
        digest = hashlib.md5(text.encode()).digest()
        rng = random.Random(int.from_bytes(digest[:4], byteorder="big"))
        vector = [rng.gauss(0, 1) for _ in range(self._dimension)]
        magnitude = math.sqrt(sum(x * x for x in vector))
        if magnitude == 0:
            return [1.0 / math.sqrt(self._dimension)] * self._dimension
        return [x / magnitude for x in vector]

    def __repr__(self) -> str:
        return f"HashEmbedding(dimension={self._dimension})"


class LocalEmbedding(EmbeddingProvider):
    """all-MiniLM-L6-v2 on the local machine.

    Priority: ONNX Runtime (~90MB) > SentenceTransformer (~1GB PyTorch).
    """

    def __init__(self, model_dir: Optional[Path] = None, cache_size: int = _EMBEDDING_CACHE_MAX):
        self.model_dir = Path(os.path.expanduser(str(model_dir or _ONNX_DEFAULT_DIR)))
        self.backend: Optional[str] = None
        self._model = LazyInit(self._load_model)
        self._cache: OrderedDict = OrderedDict()
        self._cache_size = cache_size
        self._cache_lock = threading.Lock()

    @property
    def dimension(self) -> int:
        return EMBEDDING_DIM

    @property
    def is_loaded(self) -> bool:
        return self._model.loaded

    def _load_model(self) -> Any:
        os.environ.setdefault("TQDM_DISABLE", "1")
        errors = []

        if (self.model_dir / "model.onnx").exists():
            try:
                import onnxruntime as ort
                from tokenizers import Tokenizer

                tokenizer = Tokenizer.from_file(str(self.model_dir / "tokenizer.json"))
                tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")
                tokenizer.enable_truncation(max_length=256)
                sess_opts = ort.SessionOptions()
                sess_opts.log_severity_level = 4
                sess_opts.enable_cpu_mem_arena = False
                session = ort.InferenceSession(
                    str(self.model_dir / "model.onnx"),
                    sess_options=sess_opts,
                    providers=["CPUExecutionProvider"],
                )
                self.backend = "onnx"
                logger.info("Loaded ONNX embedding model from %s", self.model_dir)
                return (tokenizer, session)
            except Exception as e:
                logger.warning("Failed to load ONNX model from %s: %s", self.model_dir, e)
                errors.append(f"onnx: {e}")
        else:
            errors.append(f"onnx: no model.onnx in {self.model_dir}")

        try:
            from sentence_transformers import SentenceTransformer

            model = SentenceTransformer(_ST_MODEL_ID)
            self.backend = "sentence-transformers"
            logger.info("Loaded sentence-transformers model (PyTorch fallback)")
            return model
        except Exception as e:
            logger.warning("Failed to load sentence-transformers: %s", e)
            errors.append(f"sentence-transformers: {e}")

        raise EmbeddingUnavailableError("No embedding model could be loaded (" + "; ".join(errors) + ")")

    def embed(self, text: str) -> List[float]:
        cache_key = hashlib.md5(text.encode()).hexdigest()
        with self._cache_lock:
            if cache_key in self._cache:
                self._cache.move_to_end(cache_key)
                return list(self._cache[cache_key])

        model = self._model.get()
        if self.backend == "onnx":
            tokenizer, session = model
            result = _onnx_encode(tokenizer, session, [text])[0].tolist()
        else:
            result = model.encode(text, normalize_embeddings=True).tolist()

        with self._cache_lock:
            self._cache[cache_key] = list(result)
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)
        return result

    def __repr__(self) -> str:
        return f"LocalEmbedding(model={MODEL_NAME!r}, backend={self.backend!r})"


def _onnx_encode(tokenizer, session, texts: List[str]):
    """Encode texts using ONNX Runtime. Returns mean-pooled, normalized embeddings."""
    import numpy as np

    batch = tokenizer.encode_batch(texts)
    ids = np.array([b.ids for b in batch], dtype=np.int64)
    mask = np.array([b.attention_mask for b in batch], dtype=np.int64)
    feed = {"input_ids": ids, "attention_mask": mask}
    input_names = {i.name for i in session.get_inputs()}
    if "token_type_ids" in input_names:
        feed["token_type_ids"] = np.zeros_like(ids)
    outputs = session.run(None, feed)
    embeddings = outputs[0]
    if embeddings.ndim == 3:
        mask_expanded = mask[:, :, np.newaxis].astype(np.float32)
        sum_emb = np.sum(embeddings * mask_expanded, axis=1)
        sum_mask = np.clip(np.sum(mask_expanded, axis=1), a_min=1e-9, a_max=None)
        embeddings = sum_emb / sum_mask
    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    return embeddings / np.clip(norms, a_min=1e-9, a_max=None)


def create_embedding_provider(name: str = "local", **kwargs) -> EmbeddingProvider:
    """Build a provider by name: ``local`` or ``hash``."""
    name = (name or "local").lower()
    if name == "local":
        return LocalEmbedding(**kwargs)
    if name == "hash":
        return HashEmbedding(**kwargs)
    raise ValueError(f"Unknown embedding provider: {name!r}")
