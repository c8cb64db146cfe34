"""Asset repository interface and an in-memory implementation."""

from __future__ import annotations

import asyncio
import copy
from typing import Callable, Dict, List, Optional, Protocol

from .errors import ConflictError, InvalidError
from .types import TrackedAsset

AssetPredicate = Callable[[TrackedAsset], bool]


class AssetRepository(Protocol):
    """Minimal async persistence contract used by the tracking engine.

    ``save`` is atomic per record.  The caller passes the asset as it was
    loaded; the save succeeds only if ``asset.version`` still matches the
    stored version, and bumps it on success.
    """

    async def get(self, asset_id: str) -> Optional[TrackedAsset]:
        ...

    async def save(self, asset: TrackedAsset) -> TrackedAsset:
        ...

    async def create(self, asset: TrackedAsset) -> TrackedAsset:
        ...

    async def exists(self, asset_id: str) -> bool:
        ...

    async def find(self, predicate: AssetPredicate | None = None) -> List[TrackedAsset]:
        ...


class InMemoryAssetRepository(AssetRepository):
    """Dictionary backed repository for tests and local runs.

    Records are deep-copied in both directions so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._data: Dict[str, TrackedAsset] = {}
        self._lock = asyncio.Lock()

    async def get(self, asset_id: str) -> Optional[TrackedAsset]:
        async with self._lock:
            stored = self._data.get(asset_id)
            return copy.deepcopy(stored) if stored is not None else None

    async def create(self, asset: TrackedAsset) -> TrackedAsset:
        async with self._lock:
            if asset.id in self._data:
                raise InvalidError(f"asset already exists: {asset.id}")
            stored = copy.deepcopy(asset)
            stored.version = 1
            self._data[asset.id] = stored
            return copy.deepcopy(stored)

    async def save(self, asset: TrackedAsset) -> TrackedAsset:
        async with self._lock:
            current = self._data.get(asset.id)
            actual = current.version if current is not None else 0
            if actual != asset.version:
                raise ConflictError(asset.id, asset.version, actual)
            stored = copy.deepcopy(asset)
            stored.version = actual + 1
            self._data[asset.id] = stored
            asset.version = stored.version
            return copy.deepcopy(stored)

    async def exists(self, asset_id: str) -> bool:
        async with self._lock:
            return asset_id in self._data

    async def find(self, predicate: AssetPredicate | None = None) -> List[TrackedAsset]:
        async with self._lock:
            return [
                copy.deepcopy(asset)
                for asset in self._data.values()
                if predicate is None or predicate(asset)
            ]

    async def delete(self, asset_id: str) -> None:
        async with self._lock:
            self._data.pop(asset_id, None)

    def __len__(self) -> int:
        return len(self._data)


__all__ = ["AssetRepository", "InMemoryAssetRepository", "AssetPredicate"]
