"""Document persistence for the Foresight services."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .exceptions import PersistenceError

logger = logging.getLogger(__name__)


class JSONStorage:
    """File-backed document store: one JSON list per collection, crash-safe writes."""

    def __init__(self, base_path: Path) -> None:
        self._base_path = Path(base_path)
        self._base_path.mkdir(parents=True, exist_ok=True)

    def load(self, resource: str) -> List[Dict[str, Any]]:
        path = self._base_path / resource
        if not path.exists():
            return []
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"Corrupted JSON data in {path}") from exc
        except OSError as exc:
            raise PersistenceError(f"Unable to read from {path}") from exc

        if not isinstance(payload, list):
            raise PersistenceError(f"Expected list payload in {path}")
        return payload

    def save(self, resource: str, records: Iterable[Dict[str, Any]]) -> None:
        path = self._base_path / resource
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                json.dump(list(records), handle, indent=2)
                handle.flush()
        except OSError as exc:
            raise PersistenceError(f"Unable to write to {temp_path}") from exc
        # Atomic on POSIX.
        temp_path.replace(path)
        logger.debug("Saved collection %s", resource)

    def find(self, resource: str, key: str, value: object) -> Optional[Dict[str, Any]]:
        """First document whose ``key`` equals ``value``."""
        for document in self.load(resource):
            if document.get(key) == value:
                return document
        return None

    def upsert(self, resource: str, document: Dict[str, Any], key: str = "id") -> None:
        """Replace the document sharing ``key`` with ``document``, or append it."""
        documents = [d for d in self.load(resource) if d.get(key) != document[key]]
        documents.append(document)
        self.save(resource, documents)

    def prune(self, resource: str, keep: Callable[[Dict[str, Any]], bool]) -> int:
        """Drop documents for which ``keep`` is false; returns how many were removed."""
        documents = self.load(resource)
        kept = [d for d in documents if keep(d)]
        removed = len(documents) - len(kept)
        if removed:
            self.save(resource, kept)
            logger.info("Pruned %d documents from %s", removed, resource)
        return removed

    @property
    def base_path(self) -> Path:
        return self._base_path
