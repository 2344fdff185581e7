# app/services/drive.py
"""Public operations of the drive, composed from the pipelines."""

import logging
from typing import AsyncIterator

from app.core.config import Settings
from app.core.errors import DriveError, InvalidInput, RepositoryUnavailable, StoreUnavailable
from app.models.node import Node
from app.services.access import load_owned_node, resolve_parent
from app.services.aggregator import SizeAggregator
from app.services.extraction import ExtractionPipeline
from app.services.ingestion import IngestionPipeline, clean_name
from app.services.remote import call_remote
from app.storage.blob_store import BlobStore
from app.storage.repository import MetadataRepository

logger = logging.getLogger(__name__)


class DriveService:
    def __init__(self, repository: MetadataRepository, blobs: BlobStore, settings: Settings):
        self.repository = repository
        self.blobs = blobs
        self.settings = settings
        self.aggregator = SizeAggregator(repository, settings)
        self.ingestion = IngestionPipeline(repository, blobs, self.aggregator, settings)
        self.extraction = ExtractionPipeline(repository, blobs, settings)

    async def _repo(self, fn, *args, **kwargs):
        return await call_remote(
            fn,
            *args,
            timeout=self.settings.remote_call_timeout,
            unavailable=RepositoryUnavailable,
            **kwargs,
        )

    async def upload_file(self, owner_id: int, name: str, data: bytes, parent_id: int | None = None) -> Node:
        node = await self.ingestion.ingest_file(owner_id, name, data, parent_id)
        logger.info("User %s uploaded %r (%d bytes) as node %s", owner_id, node.name, node.size, node.id)
        return node

    async def upload_folder(self, owner_id: int, archive: bytes, parent_id: int | None = None) -> list[Node]:
        return await self.ingestion.ingest_archive(owner_id, archive, parent_id)

    async def create_folder(self, owner_id: int, name: str, parent_id: int | None = None) -> Node:
        name = clean_name(name)
        await resolve_parent(self.repository, self.settings, owner_id, parent_id)
        folder = await self._repo(
            self.repository.create,
            owner_id=owner_id,
            name=name,
            parent_id=parent_id,
            is_folder=True,
            size=0,
            undo=lambda created: self.repository.delete_created([created]),
        )
        logger.info("User %s created folder %r as node %s", owner_id, name, folder.id)
        return folder

    async def list_user_files(self, owner_id: int) -> list[Node]:
        return await self._repo(self.repository.find_by_owner, owner_id)

    async def list_folder_contents(self, requester_id: int, folder_id: int | None = None) -> list[Node]:
        if folder_id is not None:
            folder = await load_owned_node(self.repository, self.settings, folder_id, requester_id)
            if not folder.is_folder:
                raise InvalidInput(f"Node {folder_id} is a file, not a folder")
        return await self._repo(self.repository.find_by_parent, folder_id, owner_id=requester_id)

    async def download_file(self, file_id: int, requester_id: int) -> tuple[Node, bytes, str]:
        """Return the file node, its content and the content type it was stored with."""
        node = await load_owned_node(self.repository, self.settings, file_id, requester_id)
        if node.is_folder:
            raise InvalidInput(f"Node {file_id} is a folder; download it as an archive")
        data, content_type = await call_remote(
            self.blobs.fetch,
            node.location,
            timeout=self.settings.remote_call_timeout,
            unavailable=StoreUnavailable,
        )
        return node, data, content_type

    async def download_folder(self, folder_id: int, requester_id: int) -> tuple[Node, AsyncIterator[bytes]]:
        folder = await load_owned_node(self.repository, self.settings, folder_id, requester_id)
        stream = await self.extraction.extract_folder(folder_id, requester_id)
        return folder, stream

    async def delete_node(self, node_id: int, requester_id: int) -> list[Node]:
        """Delete a file, or a folder together with everything below it."""
        node = await load_owned_node(self.repository, self.settings, node_id, requester_id)
        removed = await self._repo(self.repository.delete_subtree, node_id)

        for victim in removed:
            if victim.is_folder or not victim.location:
                continue
            try:
                await call_remote(
                    self.blobs.delete,
                    victim.location,
                    timeout=self.settings.remote_call_timeout,
                    unavailable=StoreUnavailable,
                )
            except DriveError:
                logger.error("Could not delete blob of node %s, orphaned blob: %s", victim.id, victim.location)

        logger.info("User %s deleted node %s (%d nodes removed)", requester_id, node_id, len(removed))
        if node.parent_id is not None:
            await self.aggregator.recompute_ancestors(node.parent_id)
        return removed

    async def refresh_sizes(self, node_id: int, requester_id: int) -> Node:
        """Re-run aggregation from ``node_id`` upward, e.g. after a failed pass."""
        await load_owned_node(self.repository, self.settings, node_id, requester_id)
        await self.aggregator.recompute_ancestors(node_id)
        return await self._repo(self.repository.find_by_id, node_id)
