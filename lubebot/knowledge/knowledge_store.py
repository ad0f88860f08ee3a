"""Named JSON knowledge store with mtime-aware, TTL-bounded caching."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger("lubebot.knowledge")


class KnowledgeStore:
    """Load named knowledge bundles and rule tables from a directory of JSON files."""

    def __init__(
        self,
        knowledge_dir: Optional[Path] = None,
        ttl_sec: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base_dir = Path(__file__).resolve().parents[1]
        self._knowledge_dir = knowledge_dir or (self._base_dir / "data" / "knowledge")
        self._ttl_sec = ttl_sec
        self._clock = clock
        # name -> (payload, file mtime, expires_at)
        self._cache: Dict[str, Tuple[Optional[Dict[str, Any]], float, float]] = {}

    def load_named(self, name: str) -> Optional[Dict[str, Any]]:
        """Purpose: Load one named knowledge bundle as a JSON object.
        Inputs/Outputs: Input is a bundle name such as "vehicle-specs" or
            "rules/special-scenarios"; output is the decoded dict or None.
        Side Effects / State: Reads the file on a cache miss and caches the result.
        Dependencies: Uses json and the filesystem under knowledge_dir.
        Failure Modes: Missing files, decode errors, and non-object payloads log a
            warning and return None; nothing is raised.
        If Removed: Every rule table and knowledge section disappears from prompts.
        Testing Notes: Ask for a missing name and a file with broken JSON.
        """
        path = self._path_for(name)
        if path is None:
            logger.warning("knowledge name rejected name=%s", name)
            return None

        mtime = _mtime(path)
        cached = self._cache.get(name)
        if cached and cached[1] == mtime and self._clock() < cached[2]:
            return cached[0]

        payload = self._read(path, name)
        self._cache[name] = (payload, mtime, self._clock() + self._ttl_sec)
        return payload

    def load_section(self, name: str, key: str) -> Any:
        """Return one top-level key of a named bundle, or None."""
        data = self.load_named(name)
        if not data:
            return None
        return data.get(key)

    def clear(self) -> None:
        self._cache.clear()

    def _path_for(self, name: str) -> Optional[Path]:
        if not name or ".." in Path(name).parts:
            return None
        filename = name if name.endswith(".json") else f"{name}.json"
        return self._knowledge_dir / filename

    def _read(self, path: Path, name: str) -> Optional[Dict[str, Any]]:
        if not path.exists():
            logger.warning("knowledge missing name=%s path=%s", name, path)
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8-sig"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("knowledge unreadable name=%s error=%s", name, exc)
            return None
        if not isinstance(data, dict):
            logger.warning("knowledge not an object name=%s", name)
            return None
        logger.debug("knowledge loaded name=%s keys=%s", name, len(data))
        return data


def _mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except OSError:
        return 0.0
