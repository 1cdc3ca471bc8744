"""
Linevault Config — Persistent Settings
======================================

Settings live in one JSON document (``config.json`` by default) that also
holds the node registry and the list of indices offered to public search.
A handful of tuning values can be overridden from the environment:

    MASKING_RATIO, USERNAME_MASKING_RATIO, MIN_VISIBLE_CHARS, BATCH_SIZE

Relative ``data_dir`` and ``cache_file`` paths resolve against the directory
of the config file.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .exceptions import ValidationError
from .models import NodeConfig, SearchTarget
from .utils import write_json_atomic

logger = logging.getLogger("linevault.config")

DEFAULT_CONFIG_FILE = "config.json"
CONFIG_ENV_VAR = "LINEVAULT_CONFIG"

ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "MASKING_RATIO": ("masking_ratio", float),
    "USERNAME_MASKING_RATIO": ("username_masking_ratio", float),
    "MIN_VISIBLE_CHARS": ("min_visible_chars", int),
    "BATCH_SIZE": ("batch_size", int),
}


@dataclass
class Settings:
    """
    Runtime configuration.

    Example:
        settings = Settings.load("config.json")
        settings.search_indices.append(SearchTarget("node-1", "accounts"))
        settings.save()
    """

    nodes: List[NodeConfig] = field(default_factory=list)
    search_indices: List[SearchTarget] = field(default_factory=list)
    write_node: Optional[str] = None
    default_index: str = "accounts"
    batch_size: int = 1000
    delete_chunk_size: int = 1000
    min_visible_chars: int = 2
    masking_ratio: float = 0.2
    username_masking_ratio: float = 0.4
    data_dir: str = "data"
    cache_file: str = "cache/indices-cache.json"
    probe_timeout: float = 0.5
    request_timeout: float = 10.0
    path: Optional[Path] = field(default=None, repr=False, compare=False)

    @classmethod
    def load(
        cls,
        path: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        """
        Load settings from disk, falling back to defaults when the file is absent.

        Args:
            path: Config file (default: $LINEVAULT_CONFIG or ./config.json)
            environ: Environment used for overrides (default: os.environ)

        Returns:
            Settings bound to ``path`` for later ``save()`` calls
        """
        environ = os.environ if environ is None else environ
        config_path = Path(path or environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE)

        data: Dict[str, Any] = {}
        if config_path.exists():
            try:
                data = json.loads(config_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise ValidationError(f"Invalid config file {config_path}: {e}") from e
        else:
            logger.info("No config file at %s, using defaults", config_path)

        settings = cls.from_dict(data)
        settings.path = config_path
        settings.apply_env(environ)
        return settings

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        known = {
            k: v for k, v in data.items()
            if k in cls.__dataclass_fields__ and k not in ("nodes", "search_indices", "path")
        }
        try:
            return cls(
                nodes=[NodeConfig.from_dict(n) for n in data.get("nodes", [])],
                search_indices=[
                    SearchTarget.from_json(t) for t in data.get("search_indices", [])
                ],
                **known,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid configuration: {e}") from e

    def apply_env(self, environ: Mapping[str, str]) -> None:
        for var, (attr, convert) in ENV_OVERRIDES.items():
            raw = environ.get(var)
            if raw in (None, ""):
                continue
            try:
                setattr(self, attr, convert(raw))
            except ValueError as e:
                raise ValidationError(f"Invalid value for {var}: {raw!r}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "search_indices": [t.to_json() for t in self.search_indices],
            "write_node": self.write_node,
            "default_index": self.default_index,
            "batch_size": self.batch_size,
            "delete_chunk_size": self.delete_chunk_size,
            "min_visible_chars": self.min_visible_chars,
            "masking_ratio": self.masking_ratio,
            "username_masking_ratio": self.username_masking_ratio,
            "data_dir": self.data_dir,
            "cache_file": self.cache_file,
            "probe_timeout": self.probe_timeout,
            "request_timeout": self.request_timeout,
        }

    def save(self) -> None:
        """Rewrite the config file in full."""
        if self.path is None:
            return
        write_json_atomic(self.path, self.to_dict())
        logger.debug("Configuration saved to %s", self.path)

    def _resolve(self, value: str) -> Path:
        p = Path(value)
        if p.is_absolute() or self.path is None:
            return p
        return self.path.parent / p

    @property
    def data_path(self) -> Path:
        return self._resolve(self.data_dir)

    @property
    def cache_path(self) -> Path:
        return self._resolve(self.cache_file)
