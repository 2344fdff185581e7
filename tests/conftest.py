"""Shared fixtures: settings, a throwaway SQLite metadata store and blob stores."""

import io
import os
import threading
import time
import zipfile
from typing import Generator

TEST_DB_PATH = os.path.join(os.path.dirname(__file__), "test.db")

# app.main reads settings at import time; never let tests see real credentials
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
os.environ["AWS_SECURITY_TOKEN"] = "testing"
os.environ["AWS_SESSION_TOKEN"] = "testing"
os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
os.environ.setdefault("AWS_REGION", "us-east-1")
os.environ.setdefault("AWS_S3_BUCKET_NAME", "drive-test")
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"

import pytest  # noqa: E402

from app.core.config import Settings  # noqa: E402
from app.core.errors import NotFound, StoreUnavailable  # noqa: E402
from app.models.database import Base, make_engine, make_session_factory  # noqa: E402
from app.services.drive import DriveService  # noqa: E402
from app.storage.blob_store import BlobStore  # noqa: E402
from app.storage.repository import MetadataRepository  # noqa: E402


class MemoryBlobStore(BlobStore):
    """In-memory blob store with failure injection and concurrency tracking."""

    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.fail_put: set[str] = set()  # file names whose upload fails
        self.fail_get: set[str] = set()  # locations whose fetch fails
        self.delay = 0.0  # seconds each put takes
        self.get_delay = 0.0  # seconds each fetch takes
        self.gate: threading.Event | None = None
        self.started = 0
        self.active = 0
        self.max_active = 0
        self.deleted: list[str] = []
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes, content_type: str) -> str:
        with self._lock:
            self.started += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                self.gate.wait(timeout=10)
            if key.rsplit("/", 1)[-1] in self.fail_put:
                raise StoreUnavailable(f"injected failure for {key}")
            if self.delay:
                time.sleep(self.delay)
            with self._lock:
                self.objects[key] = (bytes(data), content_type)
            return key
        finally:
            with self._lock:
                self.active -= 1

    def fetch(self, location: str) -> tuple[bytes, str]:
        if self.get_delay:
            time.sleep(self.get_delay)
        if location in self.fail_get:
            raise StoreUnavailable(f"injected failure for {location}")
        try:
            return self.objects[location]
        except KeyError:
            raise NotFound("File content is missing from storage") from None

    def delete(self, location: str) -> None:
        with self._lock:
            self.objects.pop(location, None)
            self.deleted.append(location)


@pytest.fixture(scope="session", autouse=True)
def cleanup_test_database() -> Generator[None, None, None]:
    """The app module creates its tables in TEST_DB_PATH; remove it afterwards."""
    yield
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture
def staging_dir(tmp_path):
    path = tmp_path / "staging"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path, staging_dir) -> Settings:
    return Settings(
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
        aws_region="us-east-1",
        aws_s3_bucket_name="drive-test",
        database_url=f"sqlite:///{tmp_path / 'meta.db'}",
        max_file_size=1024,
        upload_concurrency=2,
        download_concurrency=2,
        remote_call_timeout=5.0,
        staging_dir=str(staging_dir),
    )


@pytest.fixture
def session_factory(settings):
    engine = make_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def repository(session_factory) -> MetadataRepository:
    return MetadataRepository(session_factory)


@pytest.fixture
def blobs() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def drive(repository, blobs, settings) -> DriveService:
    return DriveService(repository, blobs, settings)


@pytest.fixture
def make_zip():
    """Build a ZIP in memory; a ``None`` value makes a directory entry."""

    def build(entries: dict[str, bytes | None]) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for name, content in entries.items():
                if content is None:
                    zf.writestr(zipfile.ZipInfo(name.rstrip("/") + "/"), b"")
                else:
                    zf.writestr(name, content)
        return buffer.getvalue()

    return build


@pytest.fixture
def impatient_drive(repository, blobs, settings) -> DriveService:
    """A drive whose backend calls give up after 0.2 seconds."""
    return DriveService(repository, blobs, settings.model_copy(update={"remote_call_timeout": 0.2}))
