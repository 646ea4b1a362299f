from __future__ import annotations

from copy import deepcopy
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List

from opportunityos.domain.opportunity import Opportunity, summarize, utc_now, validate_record, validate_update
from opportunityos.errors import (
    AlreadyExistsError,
    InvalidRecordError,
    NotFoundError,
    StoreNotInitializedError,
)
from opportunityos.persistence.json_io import atomic_read_json, atomic_write_json, quarantine_corrupt_file


SCHEMA_VERSION = 1


class OpportunityStore:
    """Durable id -> opportunity map backed by a single JSON file.

    The whole store lives in memory and every successful mutation rewrites the
    backing file atomically. At the expected scale (hundreds of records) a full
    rewrite is cheap; a one-file-per-record layout with an index would be the
    next step if that stops being true.
    """

    def __init__(self, path: Path, logger: logging.Logger | None = None):
        self._path = Path(path)
        self._logger = logger or logging.getLogger("opportunityos.store")
        self._items: Dict[str, Opportunity] = {}
        self._lock = threading.RLock()
        self._initialized = False

    @property
    def path(self) -> Path:
        return self._path

    def initialize(self) -> None:
        with self._lock:
            if self._initialized:
                return
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._items = self._load_items()
            self._initialized = True
            self._logger.info(
                "Opportunity store initialized",
                extra={"path": str(self._path), "count": len(self._items)},
            )

    def _extract_records(self, loaded: Any) -> List[Any]:
        if isinstance(loaded, list):
            # Pre-versioning layout: a bare array of records.
            return loaded
        if isinstance(loaded, dict) and isinstance(loaded.get("opportunities"), list):
            version = loaded.get("schema_version")
            if version != SCHEMA_VERSION:
                self._logger.warning(
                    "Unexpected opportunity store schema version",
                    extra={"path": str(self._path), "schema_version": version},
                )
            return loaded["opportunities"]
        quarantine_corrupt_file(self._path, ValueError("expected opportunity list"))
        return []

    def _load_items(self) -> Dict[str, Opportunity]:
        loaded = atomic_read_json(self._path, default=[])
        items: Dict[str, Opportunity] = {}
        for position, raw in enumerate(self._extract_records(loaded)):
            try:
                validate_record(raw)
            except InvalidRecordError as exc:
                self._logger.warning(
                    "Skipping invalid opportunity record",
                    extra={"path": str(self._path), "position": position, "reason": str(exc)},
                )
                continue
            if raw["id"] in items:
                self._logger.warning(
                    "Skipping duplicate opportunity record",
                    extra={"path": str(self._path), "position": position, "opportunity_id": raw["id"]},
                )
                continue
            items[raw["id"]] = dict(raw)
        return items

    def _save(self) -> None:
        atomic_write_json(
            self._path,
            {"schema_version": SCHEMA_VERSION, "opportunities": list(self._items.values())},
        )

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise StoreNotInitializedError("OpportunityStore.initialize() has not been called")

    def create(self, opportunity: Opportunity) -> Opportunity:
        with self._lock:
            self._ensure_initialized()
            opportunity_id = opportunity.get("id") if isinstance(opportunity, dict) else None
            if opportunity_id in self._items:
                raise AlreadyExistsError(f"opportunity with id {opportunity_id} already exists")
            validate_record(opportunity)

            item = deepcopy(opportunity)
            self._items[item["id"]] = item
            try:
                self._save()
            except Exception:
                del self._items[item["id"]]
                raise
            self._logger.info(
                "Created opportunity",
                extra={"opportunity_id": item["id"], "kind": item["kind"], "score": item["score"]},
            )
            return deepcopy(item)

    def update(self, opportunity_id: str, **fields: Any) -> Opportunity:
        with self._lock:
            self._ensure_initialized()
            existing = self._items.get(opportunity_id)
            if existing is None:
                raise NotFoundError(f"opportunity with id {opportunity_id} not found")

            merged = {**existing, **deepcopy(fields)}
            merged["id"] = opportunity_id
            merged["updated_at"] = utc_now()
            validate_update(existing, merged)

            self._items[opportunity_id] = merged
            try:
                self._save()
            except Exception:
                self._items[opportunity_id] = existing
                raise
            self._logger.info(
                "Updated opportunity",
                extra={"opportunity_id": opportunity_id, "fields": sorted(fields), "status": merged["status"]},
            )
            return deepcopy(merged)

    def get(self, opportunity_id: str) -> Opportunity | None:
        with self._lock:
            item = self._items.get(opportunity_id)
            return deepcopy(item) if item is not None else None

    def get_all(self) -> List[Opportunity]:
        with self._lock:
            return deepcopy(list(self._items.values()))

    def get_by_status(self, status: str) -> List[Opportunity]:
        return [item for item in self.get_all() if item.get("status") == status]

    def count_by_status(self) -> Dict[str, int]:
        return summarize(self.get_all())
