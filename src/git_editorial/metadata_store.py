"""
Metadata records for entries under editorial workflow, stored on a side branch.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Callable, Dict, Optional

from .config import WorkflowConfig
from .host_interface import HostApi
from .models import CacheEntry, ChangeKind, MetadataRecord, NotFound


logger = logging.getLogger(__name__)


METADATA_README = (
    "# Editorial workflow\n\n"
    "This branch is used by the editorial workflow to store metadata for specific "
    "files and branches. Do not touch it unless you know exactly what you are doing.\n"
)


class MetadataCache:
    """Short-lived local cache of metadata payloads, keyed by content key.

    The cache is a hint only; the metadata branch stays authoritative.
    """

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.time) -> None:
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[Dict]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self.clock():
            del self._entries[key]
            return None
        return entry.payload

    def set(self, key: str, payload: Dict) -> None:
        self._entries[key] = CacheEntry(key=key, expires_at=self.clock() + self.ttl, payload=payload)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


class MetadataStore:
    """Reads and writes ``{key}.json`` records on the metadata branch."""

    def __init__(
        self,
        host: HostApi,
        config: Optional[WorkflowConfig] = None,
        cache: Optional[MetadataCache] = None,
    ) -> None:
        self.host = host
        self.config = config or WorkflowConfig()
        self.cache = cache or MetadataCache(ttl=self.config.cache_ttl)

    @property
    def branch(self) -> str:
        return self.config.metadata_branch

    @staticmethod
    def record_path(key: str) -> str:
        return f"{key}.json"

    async def ensure_metadata_branch(self) -> None:
        """Create the metadata branch with a placeholder document if it is missing."""
        ref = await self.host.get_ref(f"heads/{self.branch}")
        if ref is not None:
            return
        logger.info(f"Metadata branch {self.branch} does not exist; creating it")
        await self.host.create_blob_commit(
            self.branch,
            "README.md",
            METADATA_README.encode("utf-8"),
            f"Initial create of {self.branch}",
            ChangeKind.ADD,
            author=self.config.author,
        )

    async def store(self, key: str, record: MetadataRecord) -> None:
        """Write the record for ``key`` and refresh the cache."""
        await self.ensure_metadata_branch()
        payload = record.to_dict()
        path = self.record_path(key)
        kind = ChangeKind.EDIT if await self._exists(path) else ChangeKind.ADD
        await self.host.create_blob_commit(
            self.branch,
            path,
            json.dumps(payload, indent=2, sort_keys=True).encode("utf-8"),
            f"Updating “{key}” metadata",
            kind,
            author=self.config.author,
        )
        self.cache.set(key, payload)
        logger.debug(f"Stored metadata for {key} ({record.status.value})")

    async def retrieve(self, key: str) -> Optional[MetadataRecord]:
        """Return the record for ``key``, or None if the entry is not under review."""
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Metadata cache hit for {key}")
            return MetadataRecord.from_dict(cached)

        try:
            raw = await self.host.read_file(self.record_path(key), self.branch)
        except NotFound:
            logger.debug(f"{key} does not have metadata")
            return None

        payload = json.loads(raw.decode("utf-8"))
        self.cache.set(key, payload)
        return MetadataRecord.from_dict(payload)

    async def delete(self, key: str) -> None:
        """Remove the record for ``key``; a missing record is not an error."""
        self.cache.invalidate(key)
        path = self.record_path(key)
        if not await self._exists(path):
            return
        await self.host.create_blob_commit(
            self.branch,
            path,
            None,
            f"Removing “{key}” metadata",
            ChangeKind.DELETE,
            author=self.config.author,
        )
        logger.debug(f"Deleted metadata for {key}")

    async def _exists(self, path: str) -> bool:
        try:
            await self.host.read_file(path, self.branch)
        except NotFound:
            return False
        return True
