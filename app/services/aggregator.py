# app/services/aggregator.py
"""Folder size aggregation.

A folder's size is recomputed from its children's stored sizes rather than
adjusted by deltas, so repeated or out-of-order runs converge on the right
total. Recomputations of the same folder are serialized by a per-folder
lock; different folders proceed in parallel.
"""

import asyncio
import logging
import weakref

from app.core.config import Settings
from app.core.errors import InvalidInput, NotFound, RepositoryUnavailable
from app.services.remote import call_remote
from app.storage.repository import MetadataRepository

logger = logging.getLogger(__name__)


class SizeAggregator:
    def __init__(self, repository: MetadataRepository, settings: Settings):
        self.repository = repository
        self.settings = settings
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, folder_id: int) -> asyncio.Lock:
        lock = self._locks.get(folder_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[folder_id] = lock
        return lock

    async def _repo(self, fn, *args, **kwargs):
        return await call_remote(
            fn,
            *args,
            timeout=self.settings.remote_call_timeout,
            unavailable=RepositoryUnavailable,
            **kwargs,
        )

    async def recompute_folder(self, folder_id: int) -> int:
        """Set one folder's size to the sum of its direct children."""
        async with self._lock_for(folder_id):
            total = await self._repo(self.repository.sum_child_sizes, folder_id)
            await self._repo(self.repository.update, folder_id, size=total)
        logger.debug("Folder %s size is now %s", folder_id, total)
        return total

    async def recompute_ancestors(self, node_id: int) -> None:
        """Recompute every folder from ``node_id`` up to the root.

        ``node_id`` itself is recomputed when it is a folder. Each ancestor
        is persisted before moving to the next; a failure part-way leaves the
        folders above it stale until the call is retried.
        """
        node = await self._repo(self.repository.find_by_id, node_id)
        if node is None:
            raise NotFound(f"Node {node_id} does not exist")

        visited: set[int] = set()
        while node is not None:
            if node.id in visited:
                raise InvalidInput(f"Parent chain of node {node_id} contains a cycle at {node.id}")
            visited.add(node.id)

            if node.is_folder:
                await self.recompute_folder(node.id)
            if node.parent_id is None:
                break

            parent_id = node.parent_id
            node = await self._repo(self.repository.find_by_id, parent_id)
            if node is None:
                raise NotFound(f"Parent {parent_id} of node {node_id} does not exist")
