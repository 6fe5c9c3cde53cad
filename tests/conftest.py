"""
Pytest configuration and fixtures for Yearbook Backend tests.
"""

import os
import shutil
import tempfile
from collections import Counter
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

import fitz
import pytest
from fastapi.testclient import TestClient
from PIL import Image

# Set test environment variables before importing the app
_TEST_ROOT = tempfile.mkdtemp(prefix="yearbook_test_")
os.environ["YEARBOOK_DB_PATH"] = str(Path(_TEST_ROOT) / "app.db")
os.environ["UPLOAD_DIR"] = str(Path(_TEST_ROOT) / "uploads")
os.environ["S3_BUCKET_NAME"] = "test-bucket"
os.environ["IMAGE_HANDLER_URL"] = "https://images.example.test"
os.environ["IMAGE_HANDLER_SECRET"] = "test-secret"

from yearbook_backend.configuration import load_config  # noqa: E402
from yearbook_backend.errors import RemoteStoreUnavailable  # noqa: E402
from yearbook_backend.ingestion import Artifact  # noqa: E402
from yearbook_backend.main import app, get_service  # noqa: E402
from yearbook_backend.models import AccessMode, ActorRole, DocumentCreate  # noqa: E402
from yearbook_backend.object_store import (  # noqa: E402
    MultiPageUpload,
    ObjectStore,
    UploadedObject,
    UploadedPage,
    _inspect_pdf,
)
from yearbook_backend.service import YearbookService  # noqa: E402


class FakeObjectStore(ObjectStore):
    """In-memory object store that records every call."""

    def __init__(self):
        self.objects: Dict[str, AccessMode] = {}
        self.delete_calls: Counter = Counter()
        self.signed: List[dict] = []
        self.uploads = 0
        self.fail_on_upload: Optional[int] = None
        self.fail_deletes: set = set()

    async def upload(self, local_artifact, destination_folder, access_mode=AccessMode.AUTHENTICATED, content_type=None):
        self.uploads += 1
        if self.fail_on_upload is not None and self.uploads >= self.fail_on_upload:
            raise RemoteStoreUnavailable("Object store upload failed")
        key = f"{destination_folder}/{uuid4().hex[:8]}-{Path(local_artifact).name}"
        self.objects[key] = access_mode
        return UploadedObject(url=f"http://store.test/{key}", secure_url=f"https://store.test/{key}", object_id=key)

    async def upload_multi_page_document(self, local_artifact, destination_folder, public_indexes: Iterable[int] = ()):
        ratios = _inspect_pdf(Path(local_artifact))

        public = {index if index >= 0 else len(ratios) + index for index in public_indexes}
        created: List[str] = []
        try:
            source = await self.upload(local_artifact, f"{destination_folder}/temp_pdf")
            created.append(source.object_id)
            pages = []
            for index, ratio in enumerate(ratios):
                mode = AccessMode.PUBLIC if index in public else AccessMode.AUTHENTICATED
                uploaded = await self.upload(Path(f"page_{index + 1}.jpg"), destination_folder, access_mode=mode)
                created.append(uploaded.object_id)
                pages.append(UploadedPage(
                    url=uploaded.url,
                    secure_url=uploaded.secure_url,
                    object_id=uploaded.object_id,
                    page_index=index,
                    aspect_ratio=ratio,
                ))
        except RemoteStoreUnavailable:
            await self.delete_many(created)
            raise
        return MultiPageUpload(pages=pages, source_object_id=source.object_id)

    async def delete(self, object_id):
        self.delete_calls[object_id] += 1
        if object_id in self.fail_deletes:
            return False
        self.objects.pop(object_id, None)
        return True

    async def mint_signed_url(self, object_id, ttl_seconds, watermark=False, width=None, height=None):
        self.signed.append({"object_id": object_id, "ttl": ttl_seconds, "watermark": watermark})
        return f"https://signed.test/{object_id}?ttl={ttl_seconds}&wm={int(watermark)}"

    def public_url(self, object_id):
        return f"https://store.test/{object_id}"


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the app-level test directory after all tests."""
    yield _TEST_ROOT
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


@pytest.fixture
def config(tmp_path):
    return load_config({
        "database": {"path": str(tmp_path / "yearbooks.db")},
        "uploads": {"upload_dir": str(tmp_path / "uploads")},
    })


@pytest.fixture
def store():
    return FakeObjectStore()


@pytest.fixture
def service(config, store):
    return YearbookService(config, store=store)


@pytest.fixture
def document(service):
    return service.create_document(DocumentCreate(owner_id="SCH01", year=2024, title="Springfield High"))


@pytest.fixture
def registry(service):
    registry = service.oracle
    registry.register_actor("admin-1", ActorRole.PLATFORM_ADMIN)
    registry.register_actor("owner-1", ActorRole.OWNER_ADMIN, owner_id="SCH01")
    registry.register_actor("owner-2", ActorRole.OWNER_ADMIN, owner_id="SCH02")
    registry.register_actor("viewer-1", ActorRole.PURCHASING_VIEWER)
    registry.register_actor("viewer-2", ActorRole.PURCHASING_VIEWER)
    registry.record_purchase("viewer-1", "SCH01", 2024)
    return registry


@pytest.fixture
def client(service):
    """Create a test client whose app uses the per-test service."""
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_pdf(tmp_path):
    """Factory writing an N-page PDF (600x800 points per page)."""

    def _make(pages: int = 4, name: str = "yearbook.pdf") -> Path:
        path = tmp_path / name
        doc = fitz.open()
        for index in range(pages):
            page = doc.new_page(width=600, height=800)
            page.insert_text((72, 72), f"Page {index + 1}")
        doc.save(str(path))
        doc.close()
        return path

    return _make


@pytest.fixture
def make_image(tmp_path):
    """Factory writing a small JPEG (300x400 pixels by default)."""

    def _make(name: str = "page.jpg", size=(300, 400)) -> Path:
        path = tmp_path / name
        Image.new("RGB", size, color=(200, 120, 40)).save(path, "JPEG")
        return path

    return _make


@pytest.fixture
def pdf_artifact(make_pdf):
    def _make(pages: int = 4) -> Artifact:
        path = make_pdf(pages)
        return Artifact(path=path, filename=path.name, content_type="application/pdf")

    return _make


@pytest.fixture
def image_artifact(make_image):
    def _make(name: str = "page.jpg", size=(300, 400)) -> Artifact:
        path = make_image(name, size)
        return Artifact(path=path, filename=path.name, content_type="image/jpeg")

    return _make
