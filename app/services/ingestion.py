# app/services/ingestion.py
"""Bulk ingestion: archive in, blobs uploaded, metadata subtree committed.

Ingestion is all-or-nothing. Uploads run concurrently under a semaphore;
if any of them fails (or the caller cancels), every blob started by this
request is deleted and no metadata is written. The staging directory the
archive is unpacked into belongs to one request and is removed on every
exit path.
"""

import asyncio
import io
import logging
import mimetypes
import os
import posixpath
import tempfile
import uuid
import zipfile
import zlib
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable

from app.core.config import Settings
from app.core.errors import (
    DriveError,
    InvalidArchive,
    InvalidInput,
    PartialFailure,
    RepositoryUnavailable,
    SizeLimitExceeded,
    StoreUnavailable,
)
from app.models.node import Node
from app.services.access import resolve_parent
from app.services.aggregator import SizeAggregator
from app.services.remote import call_remote
from app.storage.blob_store import BlobStore
from app.storage.repository import MetadataRepository

logger = logging.getLogger(__name__)

_COPY_CHUNK = 1024 * 1024
_SKIPPED_ROOTS = {"__MACOSX"}
_AGGREGATION_ATTEMPTS = 2


@dataclass
class PlannedFile:
    path: str  # relative POSIX path, e.g. "sub/b.txt"
    size: int
    read: Callable[[], bytes]

    @property
    def name(self) -> str:
        return posixpath.basename(self.path)


@dataclass
class IngestionPlan:
    folders: list[str] = field(default_factory=list)
    files: list[PlannedFile] = field(default_factory=list)


async def _in_thread(fn, *args):
    """Run ``fn`` off the event loop; a cancelled caller still waits for it.

    The staging area must outlive the thread writing into it.
    """
    work = asyncio.ensure_future(asyncio.to_thread(fn, *args))
    try:
        return await asyncio.shield(work)
    except asyncio.CancelledError:
        await asyncio.gather(work, return_exceptions=True)
        raise


def clean_name(name: str) -> str:
    """Strip any directory part a client sent along with a file name."""
    cleaned = posixpath.basename((name or "").replace("\\", "/")).strip()
    if cleaned in ("", ".", ".."):
        raise InvalidInput("A file name is required")
    return cleaned


class IngestionPipeline:
    def __init__(
        self,
        repository: MetadataRepository,
        blobs: BlobStore,
        aggregator: SizeAggregator,
        settings: Settings,
    ):
        self.repository = repository
        self.blobs = blobs
        self.aggregator = aggregator
        self.settings = settings

    async def ingest_archive(
        self,
        owner_id: int,
        archive: bytes,
        destination_parent_id: int | None,
    ) -> list[Node]:
        """Recreate the archive's tree under ``destination_parent_id``."""
        if not zipfile.is_zipfile(io.BytesIO(archive)):
            raise InvalidArchive("Upload is not a ZIP archive")
        await resolve_parent(self.repository, self.settings, owner_id, destination_parent_id)

        with self._staging_area() as staging:
            await _in_thread(self._unpack, archive, staging)
            plan = await _in_thread(self._plan_from_tree, staging)
            logger.info(
                "Ingesting archive for user %s: %d folders, %d files",
                owner_id,
                len(plan.folders),
                len(plan.files),
            )
            return await self._ingest(owner_id, plan, destination_parent_id)

    async def ingest_file(
        self,
        owner_id: int,
        name: str,
        data: bytes,
        destination_parent_id: int | None,
    ) -> Node:
        name = clean_name(name)
        if not data:
            raise InvalidInput("File must not be empty")
        if len(data) > self.settings.max_file_size:
            raise SizeLimitExceeded(len(data), self.settings.max_file_size, name)
        await resolve_parent(self.repository, self.settings, owner_id, destination_parent_id)

        plan = IngestionPlan(files=[PlannedFile(name, len(data), lambda: data)])
        nodes = await self._ingest(owner_id, plan, destination_parent_id)
        return nodes[0]

    # ------------------------------------------------------------------
    # staging
    # ------------------------------------------------------------------

    @contextmanager
    def _staging_area(self):
        parent = self.settings.staging_dir
        if parent:
            Path(parent).mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="ingest-", dir=parent) as path:
            yield Path(path)

    def _unpack(self, archive: bytes, staging: Path) -> None:
        limit = self.settings.max_file_size
        try:
            with zipfile.ZipFile(io.BytesIO(archive)) as zf:
                corrupt = zf.testzip()
                if corrupt is not None:
                    raise InvalidArchive(f"Archive entry {corrupt!r} is corrupt")
                for info in zf.infolist():
                    relative = self._entry_path(info.filename)
                    if relative is None:
                        continue
                    target = staging.joinpath(*relative.split("/"))
                    if info.is_dir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue
                    if info.file_size > limit:
                        raise SizeLimitExceeded(info.file_size, limit, relative)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(info) as src, open(target, "wb") as dst:
                        self._copy_limited(src, dst, relative)
        except (zipfile.BadZipFile, EOFError, zlib.error, NotImplementedError, RuntimeError) as exc:
            # RuntimeError: encrypted entries; NotImplementedError: unknown compression
            raise InvalidArchive(f"Archive could not be read: {exc}") from exc
        except (FileExistsError, NotADirectoryError, IsADirectoryError) as exc:
            raise InvalidArchive("Archive uses the same path for a file and a folder") from exc

    @staticmethod
    def _entry_path(name: str) -> str | None:
        name = name.replace("\\", "/")
        if name.startswith("/"):
            raise InvalidArchive(f"Archive entry {name!r} has an absolute path")
        parts = [part for part in name.split("/") if part not in ("", ".")]
        if ".." in parts:
            raise InvalidArchive(f"Archive entry {name!r} points outside the archive")
        if not parts or parts[0] in _SKIPPED_ROOTS:
            return None
        return "/".join(parts)

    def _copy_limited(self, src: BinaryIO, dst: BinaryIO, relative: str) -> None:
        limit = self.settings.max_file_size
        written = 0
        for chunk in iter(lambda: src.read(_COPY_CHUNK), b""):
            written += len(chunk)
            if written > limit:
                raise SizeLimitExceeded(written, limit, relative)
            dst.write(chunk)

    @staticmethod
    def _plan_from_tree(staging: Path) -> IngestionPlan:
        plan = IngestionPlan()
        for dirpath, dirnames, filenames in os.walk(staging):
            dirnames.sort()
            current = Path(dirpath)
            if current != staging:
                plan.folders.append(current.relative_to(staging).as_posix())
            for filename in sorted(filenames):
                full = current / filename
                if full.is_symlink() or not full.is_file():
                    continue
                plan.files.append(
                    PlannedFile(full.relative_to(staging).as_posix(), full.stat().st_size, full.read_bytes)
                )
        return plan

    # ------------------------------------------------------------------
    # upload + commit
    # ------------------------------------------------------------------

    async def _ingest(self, owner_id: int, plan: IngestionPlan, parent_id: int | None) -> list[Node]:
        if not plan.folders and not plan.files:
            return []

        started: dict[str, asyncio.Future] = {}
        try:
            locations = await self._upload_all(owner_id, plan.files, started)
            nodes = await call_remote(
                self.repository.create_subtree,
                owner_id,
                parent_id,
                plan.folders,
                [(planned.path, planned.size, location) for planned, location in zip(plan.files, locations)],
                timeout=self.settings.remote_call_timeout,
                unavailable=RepositoryUnavailable,
                undo=self.repository.delete_created,
            )
        except BaseException:
            await asyncio.shield(self._discard(started))
            raise

        logger.info("Committed %d nodes for user %s under %s", len(nodes), owner_id, parent_id)
        await self._aggregate(nodes, parent_id)
        return nodes

    async def _upload_all(
        self,
        owner_id: int,
        files: list[PlannedFile],
        started: dict[str, asyncio.Future],
    ) -> list[str]:
        semaphore = asyncio.Semaphore(self.settings.upload_concurrency)
        failed = asyncio.Event()

        async def upload(planned: PlannedFile) -> str | None:
            async with semaphore:
                if failed.is_set():
                    return None
                key = f"{owner_id}/{uuid.uuid4().hex}/{planned.name}"
                content_type = mimetypes.guess_type(planned.name)[0] or "application/octet-stream"
                put = asyncio.ensure_future(
                    call_remote(
                        self.blobs.put,
                        key,
                        planned.read(),
                        content_type,
                        timeout=self.settings.remote_call_timeout,
                        unavailable=StoreUnavailable,
                        undo=self.blobs.delete,
                    )
                )
                # recorded before awaiting so a rollback can wait for it to settle
                started[key] = put
                try:
                    return await asyncio.shield(put)
                except Exception:
                    failed.set()
                    logger.warning("Upload of %s as %s failed", planned.path, key)
                    raise

        results = await asyncio.gather(*(upload(planned) for planned in files), return_exceptions=True)
        errors = [result for result in results if isinstance(result, BaseException)]
        if errors:
            raise PartialFailure(f"{len(errors)} of {len(files)} uploads failed") from errors[0]
        return results

    async def _discard(self, started: dict[str, asyncio.Future]) -> None:
        """Delete every blob this request started; best-effort."""
        if not started:
            return
        await asyncio.gather(*started.values(), return_exceptions=True)
        logger.warning("Rolling back ingestion, deleting %d blobs", len(started))
        for key in started:
            try:
                await call_remote(
                    self.blobs.delete,
                    key,
                    timeout=self.settings.remote_call_timeout,
                    unavailable=StoreUnavailable,
                )
            except DriveError:
                logger.error("Failed to roll back upload, orphaned blob: %s", key)

    async def _aggregate(self, nodes: list[Node], parent_id: int | None) -> None:
        # parents are created before their children, so reverse order is bottom-up
        folders = [node for node in reversed(nodes) if node.is_folder]
        for attempt in range(1, _AGGREGATION_ATTEMPTS + 1):
            try:
                for folder in folders:
                    folder.size = await self.aggregator.recompute_folder(folder.id)
                if parent_id is not None:
                    await self.aggregator.recompute_ancestors(parent_id)
                return
            except DriveError:
                logger.warning(
                    "Size aggregation after ingestion under %s failed (attempt %d of %d)",
                    parent_id,
                    attempt,
                    _AGGREGATION_ATTEMPTS,
                    exc_info=True,
                )
        # the nodes are committed; refresh_sizes repairs the totals later
        logger.error("Folder sizes under %s are stale after ingestion", parent_id)
