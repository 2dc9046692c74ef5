"""mudpuppy test configuration."""
import hashlib
import math
import re
import sys
from pathlib import Path

import pytest

# Ensure mudpuppy package is importable without an install
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mudpuppy.embeddings import EmbeddingProvider  # noqa: E402

TEST_DIM = 64

_WORD_RE = re.compile(r"\w+")

# Words that should land on the same axis so "semantic" recall is testable
_SYNONYMS = {
    "caffeine": "coffee",
    "espresso": "coffee",
    "latte": "coffee",
    "tea": "coffee",
    "pet": "dog",
    "puppy": "dog",
    "hound": "dog",
}


class WordBagEmbedding(EmbeddingProvider):
    """Bag-of-words vectors: shared (or synonymous) words mean nearby vectors."""

    def __init__(self, dimension: int = TEST_DIM):
        self._dimension = dimension
        self.calls = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    def _bucket(self, word: str) -> int:
        word = _SYNONYMS.get(word, word)
        # bucket 0 is reserved for text without words
        return 1 + int(hashlib.md5(word.encode()).hexdigest(), 16) % (self._dimension - 1)

    def embed(self, text: str):
        self.calls += 1
        vector = [0.0] * self._dimension
        for word in _WORD_RE.findall(text.lower()):
            vector[self._bucket(word)] += 1.0
        magnitude = math.sqrt(sum(x * x for x in vector))
        if magnitude == 0:
            vector[0] = 1.0
            return vector
        return [x / magnitude for x in vector]


@pytest.fixture
def tmp_home(tmp_path, monkeypatch):
    """Create a temporary MUDPUPPY_HOME with a workspace directory."""
    home = tmp_path / ".mudpuppy"
    (home / "workspace").mkdir(parents=True)
    monkeypatch.setenv("MUDPUPPY_HOME", str(home))
    for var in ("MUDPUPPY_WORKSPACE", "MUDPUPPY_DB_PATH", "MUDPUPPY_EMBEDDINGS", "MUDPUPPY_ONNX_MODEL_DIR"):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def workspace(tmp_home):
    return tmp_home / "workspace"


@pytest.fixture
def embedder():
    return WordBagEmbedding()


@pytest.fixture
def store(tmp_home):
    """Create a fresh MemoryStore for testing."""
    from mudpuppy.sqlite_store import MemoryStore
    s = MemoryStore(tmp_home / "data" / "memory.db", dimension=TEST_DIM)
    yield s
    s.close()


@pytest.fixture
def config(tmp_home):
    from mudpuppy.config import MemoryConfig
    cfg = MemoryConfig.load(tmp_home)
    cfg.debounce_s = 0.1
    cfg.poll_interval_s = 0.1
    return cfg


@pytest.fixture
def service(store, embedder, config):
    """MemoryService over the test store, with a daily log and indexer."""
    from mudpuppy.daily_log import DailyLog
    from mudpuppy.service import MemoryService
    svc = MemoryService(store, embedder, config=config, daily_log=DailyLog(config.daily_log_dir))
    yield svc
    svc.close()


@pytest.fixture
def indexer(store, embedder, workspace):
    """FileIndexer over the test workspace with short timings."""
    from mudpuppy.indexer import FileIndexer
    idx = FileIndexer(workspace, store, embedder, debounce=0.1, poll_interval=0.1)
    yield idx
    idx.stop()
