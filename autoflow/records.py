"""Boundary to the business-record store (contacts, deals, companies)."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple

import yaml


class RecordStore(Protocol):
    """Read access to record snapshots plus the writes actions may perform."""

    async def get(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Return a snapshot of the record or ``None`` when it no longer exists."""

    async def update_fields(
        self, entity_type: str, entity_id: str, fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Apply ``fields`` and return the updated snapshot."""

    async def add_tag(self, entity_type: str, entity_id: str, tag: str) -> None:
        """Attach ``tag`` to the record."""

    async def remove_tag(self, entity_type: str, entity_id: str, tag: str) -> None:
        """Detach ``tag`` from the record."""


class RecordNotFound(LookupError):
    pass


class InMemoryRecordStore(RecordStore):
    """Keep records in a dict keyed by ``(type, id)``.

    Used by tests and by the CLI when records are loaded from a fixture file.
    Snapshots are copies so callers cannot mutate stored state.
    """

    def __init__(self, records: Optional[Dict[Tuple[str, str], Dict[str, Any]]] = None) -> None:
        self._records: Dict[Tuple[str, str], Dict[str, Any]] = dict(records or {})

    @classmethod
    def from_file(cls, path: str | Path) -> "InMemoryRecordStore":
        """Load ``{entity_type: {entity_id: {field: value}}}`` from YAML or JSON."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        store = cls()
        for entity_type, records in data.items():
            for entity_id, fields in (records or {}).items():
                store.put(entity_type, str(entity_id), fields or {})
        return store

    def put(self, entity_type: str, entity_id: str, fields: Dict[str, Any]) -> None:
        record = {"id": entity_id, **copy.deepcopy(fields)}
        self._records[(entity_type, entity_id)] = record

    def delete(self, entity_type: str, entity_id: str) -> None:
        self._records.pop((entity_type, entity_id), None)

    def _require(self, entity_type: str, entity_id: str) -> Dict[str, Any]:
        record = self._records.get((entity_type, entity_id))
        if record is None:
            raise RecordNotFound(f"{entity_type} {entity_id} not found")
        return record

    # ------------------------------------------------------------------
    async def get(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        record = self._records.get((entity_type, entity_id))
        return copy.deepcopy(record) if record is not None else None

    async def update_fields(
        self, entity_type: str, entity_id: str, fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        record = self._require(entity_type, entity_id)
        record.update(copy.deepcopy(fields))
        return copy.deepcopy(record)

    async def add_tag(self, entity_type: str, entity_id: str, tag: str) -> None:
        record = self._require(entity_type, entity_id)
        tags = record.setdefault("tags", [])
        if tag not in tags:
            tags.append(tag)

    async def remove_tag(self, entity_type: str, entity_id: str, tag: str) -> None:
        record = self._require(entity_type, entity_id)
        tags = record.get("tags") or []
        if tag in tags:
            tags.remove(tag)
