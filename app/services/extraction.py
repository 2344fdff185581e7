# app/services/extraction.py
"""Bulk extraction: a folder's files streamed out as one ZIP archive.

Entries are written in path order so an unchanged folder always produces
the same bytes. Blobs are fetched a few entries ahead of the writer; the
writer consumes them strictly in order and hands compressed bytes to the
caller as soon as they are produced.
"""

import asyncio
import logging
import posixpath
import zipfile
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator, Iterable

from app.core.config import Settings
from app.core.errors import DriveError, EmptyFolder, InvalidInput, PartialFailure, RepositoryUnavailable, StoreUnavailable
from app.models.node import Node
from app.services.access import load_owned_node
from app.services.remote import call_remote
from app.storage.blob_store import BlobStore
from app.storage.repository import MetadataRepository

logger = logging.getLogger(__name__)

_WRITE_CHUNK = 64 * 1024
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


@dataclass(frozen=True)
class ArchiveEntry:
    path: str  # archive member name, relative to the extracted folder
    node: Node


class _ArchiveSink:
    """Write-only, unseekable target for ZipFile; output is drained in chunks."""

    def __init__(self):
        self._chunks: list[bytes] = []

    def write(self, data) -> int:
        self._chunks.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks.clear()
        return data


def _dedupe(path: str, taken: set[str]) -> str:
    if path not in taken:
        return path
    stem, ext = posixpath.splitext(path)
    n = 2
    while f"{stem} ({n}){ext}" in taken:
        n += 1
    return f"{stem} ({n}){ext}"


def build_entries(folder_id: int, descendants: Iterable[Node]) -> list[ArchiveEntry]:
    """Map every file below ``folder_id`` to its folder-relative path, in archive order."""
    by_id = {node.id: node for node in descendants}
    folder_paths: dict[int, str] = {folder_id: ""}

    def path_of(node_id: int) -> str:
        if node_id not in folder_paths:
            node = by_id[node_id]
            folder_paths[node_id] = posixpath.join(path_of(node.parent_id), node.name)
        return folder_paths[node_id]

    entries = []
    taken: set[str] = set()
    # siblings sharing a name get suffixes in id order, so the oldest keeps its name
    files = sorted(
        (node for node in by_id.values() if not node.is_folder),
        key=lambda node: (path_of(node.parent_id).split("/"), node.name, node.id),
    )
    for node in files:
        path = _dedupe(posixpath.join(path_of(node.parent_id), node.name), taken)
        taken.add(path)
        entries.append(ArchiveEntry(path, node))
    entries.sort(key=lambda entry: entry.path.split("/"))
    return entries


class ExtractionPipeline:
    def __init__(self, repository: MetadataRepository, blobs: BlobStore, settings: Settings):
        self.repository = repository
        self.blobs = blobs
        self.settings = settings

    async def extract_folder(self, folder_id: int, requester_id: int) -> AsyncIterator[bytes]:
        """Authorize and enumerate now; return the archive as a lazy byte stream.

        Raises Forbidden, NotFound or EmptyFolder before any byte is produced.
        """
        entries = await self.plan(folder_id, requester_id)
        logger.info("Extracting folder %s: %d files", folder_id, len(entries))
        return self.stream(entries)

    async def plan(self, folder_id: int, requester_id: int) -> list[ArchiveEntry]:
        folder = await load_owned_node(self.repository, self.settings, folder_id, requester_id)
        if not folder.is_folder:
            raise InvalidInput(f"Node {folder_id} is a file, not a folder")

        descendants = await call_remote(
            self.repository.collect_descendants,
            folder_id,
            timeout=self.settings.remote_call_timeout,
            unavailable=RepositoryUnavailable,
        )
        entries = build_entries(folder_id, descendants)
        if not entries:
            raise EmptyFolder(f"Folder {folder_id} contains no files")
        return entries

    async def stream(self, entries: list[ArchiveEntry]) -> AsyncIterator[bytes]:
        sink = _ArchiveSink()
        archive = zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED)
        fetches = self._fetch_in_order(entries)
        try:
            async for entry, data in fetches:
                with archive.open(self._zip_info(entry, len(data)), mode="w") as member:
                    for offset in range(0, len(data), _WRITE_CHUNK):
                        member.write(data[offset : offset + _WRITE_CHUNK])
                        chunk = sink.drain()
                        if chunk:
                            yield chunk
                chunk = sink.drain()
                if chunk:
                    yield chunk
        finally:
            await fetches.aclose()
        archive.close()
        yield sink.drain()

    @staticmethod
    def _zip_info(entry: ArchiveEntry, size: int) -> zipfile.ZipInfo:
        created = entry.node.created_at
        stamp = max(tuple(created.timetuple()[:6]), _ZIP_EPOCH) if created else _ZIP_EPOCH
        info = zipfile.ZipInfo(entry.path, date_time=stamp)
        info.compress_type = zipfile.ZIP_DEFLATED
        info.external_attr = 0o644 << 16
        info.file_size = size
        return info

    async def _fetch(self, entry: ArchiveEntry) -> bytes:
        try:
            return await call_remote(
                self.blobs.get,
                entry.node.location,
                timeout=self.settings.remote_call_timeout,
                unavailable=StoreUnavailable,
            )
        except DriveError as exc:
            logger.warning("Fetch of %s (%s) failed: %s", entry.path, entry.node.location, exc.kind)
            raise PartialFailure(f"Could not fetch '{entry.path}' ({exc.kind})") from exc

    async def _fetch_in_order(self, entries: list[ArchiveEntry]):
        """Yield ``(entry, bytes)`` in order, keeping a bounded window of fetches in flight."""
        window = max(1, self.settings.download_concurrency)
        remaining = iter(entries)
        pending: deque[tuple[ArchiveEntry, asyncio.Task]] = deque()

        def schedule_next() -> None:
            entry = next(remaining, None)
            if entry is not None:
                pending.append((entry, asyncio.ensure_future(self._fetch(entry))))

        try:
            for _ in range(window):
                schedule_next()
            while pending:
                entry, task = pending.popleft()
                data = await task
                schedule_next()
                yield entry, data
        finally:
            for _, task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*(task for _, task in pending), return_exceptions=True)
