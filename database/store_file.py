"""
FileContactStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    contacts.json
    interactions.json
    messages.json

Features:
  - Survives process restarts (unlike InMemoryContactStore)
  - No external dependencies (no database server, no Redis)
  - Writes flush on every mutation, or batched with flush_interval_s > 0
  - Single-process only (no concurrent write safety across processes)

Best for: small deployments, demos, air-gapped environments.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from collections import defaultdict
from pathlib import Path
from typing import Any, Optional

from database.store_memory import InMemoryContactStore
from models.schemas import Contact, ConversationMessage, InteractionRecord

logger = structlog.get_logger()

_COLLECTIONS = ["contacts", "interactions", "messages"]


class FileContactStore(InMemoryContactStore):
    """
    Extends InMemoryContactStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        """Load all collections from disk."""
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                self._set_collection(collection, data)
                logger.debug("file_store_loaded", collection=collection, records=len(data))
            except (json.JSONDecodeError, OSError, TypeError) as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))

    def _set_collection(self, collection: str, data: Any):
        """Restore a collection from loaded JSON data."""
        if collection == "contacts":
            self._contacts = data if isinstance(data, dict) else {}
            self._referral_index.clear()
            for address, c in self._contacts.items():
                code = (c.get("referral") or {}).get("code")
                if code:
                    self._referral_index[code] = address
        elif collection == "interactions":
            self._interactions = data if isinstance(data, list) else []
        elif collection == "messages":
            self._messages = defaultdict(list, data if isinstance(data, dict) else {})

    def _get_collection_data(self, collection: str) -> Any:
        mapping = {
            "contacts": self._contacts,
            "interactions": self._interactions,
            "messages": dict(self._messages),
        }
        return mapping.get(collection, {})

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        data = self._get_collection_data(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str, ensure_ascii=False)
        tmp_path.replace(path)  # atomic on POSIX

    def _mark_dirty(self, *collections: str):
        if self._flush_interval <= 0:
            for c in collections:
                self._flush_collection(c)
        else:
            self._dirty.update(collections)
            if self._flush_task is None or self._flush_task.done():
                self._flush_task = asyncio.get_running_loop().create_task(self._deferred_flush())

    async def _deferred_flush(self):
        """Batch flush after interval."""
        await asyncio.sleep(self._flush_interval)
        dirty = self._dirty.copy()
        self._dirty.clear()
        for c in dirty:
            self._flush_collection(c)

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    async def close(self) -> None:
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
        self.flush_all()

    # ── Override write methods to trigger persistence ──────

    async def create_contact_if_absent(self, contact: Contact) -> tuple[Contact, bool]:
        result, created = await super().create_contact_if_absent(contact)
        if created:
            self._mark_dirty("contacts")
        return result, created

    async def save_contact(self, contact: Contact) -> Contact:
        result = await super().save_contact(contact)
        self._mark_dirty("contacts")
        return result

    async def append_interaction(self, record: InteractionRecord) -> None:
        await super().append_interaction(record)
        self._mark_dirty("interactions")

    async def add_message(self, message: ConversationMessage) -> None:
        await super().add_message(message)
        self._mark_dirty("messages")
