"""
snapshot_cache.py - Last confirmed grid per account

Used only to draw something while the first canonical read is in flight.
The cache is never authoritative: the next successful replace_confirmed()
supersedes it, and a corrupt or missing file just means an empty cache.
"""

from __future__ import annotations
import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Union

from .core import Building, SyncError, ValidationError


logger = logging.getLogger(__name__)


class SnapshotCache:
    """
    Buildings keyed by (lower-cased) account address.

    Kept in memory; when `path` is given, every save is also written to that
    JSON file, replacing it atomically.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else None
        self._entries: Dict[str, List[dict]] = {}
        if self.path is not None and self.path.exists():
            self._entries = self._read_file(self.path)

    @staticmethod
    def _key(account: str) -> str:
        return account.lower()

    @staticmethod
    def _read_file(path: Path) -> Dict[str, List[dict]]:
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable snapshot cache %s: %s", path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed snapshot cache %s", path)
            return {}
        return {k: v for k, v in data.items() if isinstance(v, list)}

    def load(self, account: str) -> List[Building]:
        """Cached buildings of `account` (empty if none or unreadable)."""
        records = self._entries.get(self._key(account), [])
        buildings = []
        for record in records:
            try:
                buildings.append(Building.from_dict(record))
            except (KeyError, TypeError, ValueError, ValidationError) as exc:
                logger.warning("Skipping malformed cached building for %s: %s", account, exc)
        return buildings

    def save(self, account: str, buildings: List[Building]) -> None:
        self._entries[self._key(account)] = [b.to_dict() for b in buildings]
        self._flush()

    def forget(self, account: str) -> None:
        if self._entries.pop(self._key(account), None) is not None:
            self._flush()

    def __contains__(self, account: str) -> bool:
        return self._key(account) in self._entries

    def _flush(self) -> None:
        if self.path is None:
            return
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp.write_text(json.dumps(self._entries, sort_keys=True))
            os.replace(tmp, self.path)
        except OSError as exc:
            raise SyncError(f"Cannot write snapshot cache {self.path}: {exc}") from exc

    def __repr__(self):
        return f"SnapshotCache({len(self._entries)} accounts, path={self.path})"
