"""
mudpuppy memory configuration.

Resolution order: built-in defaults, then the ``memory`` section of
``$MUDPUPPY_HOME/config.json``, then environment variables:

    MUDPUPPY_HOME            base directory (default ~/.mudpuppy)
    MUDPUPPY_WORKSPACE       watched notes directory (default $MUDPUPPY_HOME/workspace)
    MUDPUPPY_DB_PATH         database file (default $MUDPUPPY_HOME/data/memory.db)
    MUDPUPPY_EMBEDDINGS      embedding provider: local | hash
    MUDPUPPY_ONNX_MODEL_DIR  directory holding model.onnx + tokenizer.json
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from mudpuppy.models import SearchMode

logger = logging.getLogger("mudpuppy.config")

DEFAULT_VECTOR_WEIGHT = 0.7
DEFAULT_KEYWORD_WEIGHT = 0.3
DEFAULT_MAX_FILE_SIZE = 100 * 1024
DEFAULT_DEBOUNCE_S = 0.5
DEFAULT_POLL_INTERVAL_S = 5.0


def mudpuppy_home() -> Path:
    """Resolve MUDPUPPY_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("MUDPUPPY_HOME", str(Path.home() / ".mudpuppy")))


@dataclass
class MemoryConfig:
    home: Path
    workspace: Path
    db_path: Path
    enabled: bool = True
    embedding_provider: str = "local"
    onnx_model_dir: Optional[Path] = None
    search_mode: SearchMode = SearchMode.HYBRID
    vector_weight: float = DEFAULT_VECTOR_WEIGHT
    keyword_weight: float = DEFAULT_KEYWORD_WEIGHT
    index_extensions: Tuple[str, ...] = (".md",)
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    debounce_s: float = DEFAULT_DEBOUNCE_S
    poll_interval_s: float = DEFAULT_POLL_INTERVAL_S
    force_polling: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def daily_log_dir(self) -> Path:
        return self.workspace / "memory"

    @classmethod
    def load(cls, home: Optional[Path] = None) -> "MemoryConfig":
        """Load configuration for *home* (default: MUDPUPPY_HOME)."""
        home = Path(home) if home else mudpuppy_home()
        section = _read_memory_section(home / "config.json")

        weights = section.get("hybridWeights") or {}
        workspace = Path(section.get("workspace") or (home / "workspace"))
        db_path = Path(section.get("dbPath") or (home / "data" / "memory.db"))

        cfg = cls(
            home=home,
            workspace=workspace,
            db_path=db_path,
            enabled=bool(section.get("enabled", True)),
            embedding_provider=section.get("embeddingProvider", "local"),
            vector_weight=float(weights.get("vector", DEFAULT_VECTOR_WEIGHT)),
            keyword_weight=float(weights.get("keyword", DEFAULT_KEYWORD_WEIGHT)),
            max_file_size=int(section.get("maxFileSize", DEFAULT_MAX_FILE_SIZE)),
            debounce_s=float(section.get("debounceMs", DEFAULT_DEBOUNCE_S * 1000)) / 1000,
            poll_interval_s=float(section.get("pollIntervalMs", DEFAULT_POLL_INTERVAL_S * 1000)) / 1000,
            force_polling=bool(section.get("forcePolling", False)),
        )
        try:
            cfg.search_mode = SearchMode(section.get("searchMode", "hybrid"))
        except ValueError:
            logger.warning("Unknown searchMode %r in config, using hybrid", section.get("searchMode"))
        if section.get("indexExtensions"):
            cfg.index_extensions = tuple(section["indexExtensions"])

        # Environment overrides
        if os.environ.get("MUDPUPPY_WORKSPACE"):
            cfg.workspace = Path(os.environ["MUDPUPPY_WORKSPACE"])
        if os.environ.get("MUDPUPPY_DB_PATH"):
            cfg.db_path = Path(os.environ["MUDPUPPY_DB_PATH"])
        if os.environ.get("MUDPUPPY_EMBEDDINGS"):
            cfg.embedding_provider = os.environ["MUDPUPPY_EMBEDDINGS"].strip().lower()
        if os.environ.get("MUDPUPPY_ONNX_MODEL_DIR"):
            cfg.onnx_model_dir = Path(os.environ["MUDPUPPY_ONNX_MODEL_DIR"])
        return cfg


def _read_memory_section(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Failed to load config from %s, using defaults: %s", path, e)
        return {}
    section = data.get("memory") if isinstance(data, dict) else None
    return section if isinstance(section, dict) else {}
