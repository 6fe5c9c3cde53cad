"""
Object store client for yearbook page assets.

This module provides functionality for:
- Uploading page images to S3 as public or access-restricted objects
- Rasterizing a multi-page PDF into one restricted object per page
- Deleting objects idempotently
- Minting time-limited delivery URLs, either plain S3 presigned URLs or
  signed requests to the image-transformation endpoint (resize, watermark)

The bucket and transformation endpoint are configured through the
``object_store`` section of the application config. Every remote call runs
in a worker thread, is bounded by a timeout and is retried a limited number
of times on transient failures before surfacing as RemoteStoreUnavailable.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional
from uuid import uuid4

import boto3
import fitz  # PyMuPDF
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)
from omegaconf import DictConfig, OmegaConf

from .errors import RemoteStoreUnavailable, SourceDocumentUnreadable
from .models import AccessMode
from .utils import aspect_ratio, sanitize_label

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = {
    "InternalError",
    "RequestTimeout",
    "ServiceUnavailable",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
}

MISSING_ERROR_CODES = {"404", "NoSuchKey", "NotFound"}

TRANSIENT_EXCEPTIONS = (
    asyncio.TimeoutError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


@dataclass
class UploadedObject:
    url: str
    secure_url: str
    object_id: str


@dataclass
class UploadedPage(UploadedObject):
    page_index: int = 0
    aspect_ratio: Optional[str] = None


@dataclass
class MultiPageUpload:
    pages: List[UploadedPage]
    source_object_id: str


class ObjectStore(ABC):
    """Contract the ingestion, draft and delivery layers rely on."""

    @abstractmethod
    async def upload(
        self,
        local_artifact: Path,
        destination_folder: str,
        access_mode: AccessMode = AccessMode.AUTHENTICATED,
        content_type: Optional[str] = None,
    ) -> UploadedObject:
        pass

    @abstractmethod
    async def upload_multi_page_document(
        self,
        local_artifact: Path,
        destination_folder: str,
        public_indexes: Iterable[int] = (),
    ) -> MultiPageUpload:
        pass

    @abstractmethod
    async def delete(self, object_id: str) -> bool:
        pass

    @abstractmethod
    async def mint_signed_url(
        self,
        object_id: str,
        ttl_seconds: int,
        watermark: bool = False,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> str:
        pass

    @abstractmethod
    def public_url(self, object_id: str) -> str:
        pass

    async def delete_many(self, object_ids: Iterable[Optional[str]]) -> List[str]:
        """
        Delete objects one after another, continuing past failures.

        Returns:
            The object ids that could not be deleted
        """
        failed: List[str] = []
        for object_id in object_ids:
            if not object_id:
                continue
            if not await self.delete(object_id):
                failed.append(object_id)
        if failed:
            logger.warning(f"Could not delete {len(failed)} object(s) during cleanup")
        return failed


def _inspect_pdf(source: Path) -> List[Optional[str]]:
    """Open a PDF and return the aspect ratio of each page."""
    try:
        doc = fitz.open(str(source))
    except Exception as exc:  # noqa: BLE001
        raise SourceDocumentUnreadable("Uploaded document could not be read as a PDF") from exc

    try:
        if doc.needs_pass:
            raise SourceDocumentUnreadable("Uploaded document is password protected")
        if len(doc) == 0:
            raise SourceDocumentUnreadable("Uploaded document has no pages")
        return [aspect_ratio(page.rect.width, page.rect.height) for page in doc]
    finally:
        doc.close()


def _rasterize_pages(source: Path, output_dir: Path, dpi: int) -> List[Path]:
    """Rasterize every page of a PDF to JPEG files in output_dir."""
    doc = fitz.open(str(source))
    try:
        scale = dpi / 72
        matrix = fitz.Matrix(scale, scale)
        image_paths = []
        for index, page in enumerate(doc):
            pix = page.get_pixmap(matrix=matrix)
            image_path = output_dir / f"page_{index + 1}.jpg"
            pix.save(str(image_path))
            image_paths.append(image_path)
            logger.debug(f"Rasterized page {index + 1} of {source.name}")
        return image_paths
    finally:
        doc.close()


class S3ObjectStore(ObjectStore):
    """
    S3-backed object store.

    Config keys (``object_store`` section):
        bucket (required): Bucket holding every yearbook asset
        region: Bucket region (default: us-east-1)
        public_base_url: Base for plain URLs; defaults to the virtual-hosted S3 URL
        retry_attempts: Attempts per remote call (default: 3)
        retry_delay: Seconds between attempts (default: 1)
        timeout_seconds: Bound on each remote call (default: 30)
        pdf_dpi: Rasterization resolution for PDF pages (default: 150)
        image_handler_url / image_handler_secret: Signed transformation endpoint
        watermark: Overlay parameters passed to the transformation endpoint
    """

    def __init__(self, config: DictConfig, client: Any = None):
        self._config = config
        self._client = client

    @property
    def bucket(self) -> str:
        return str(self._config.get("bucket") or "")

    @property
    def region(self) -> str:
        return str(self._config.get("region") or "us-east-1")

    @property
    def public_base_url(self) -> str:
        return str(self._config.get("public_base_url") or "")

    @property
    def retry_attempts(self) -> int:
        return max(1, int(self._config.get("retry_attempts", 3)))

    @property
    def retry_delay(self) -> float:
        return float(self._config.get("retry_delay", 1))

    @property
    def timeout(self) -> float:
        return float(self._config.get("timeout_seconds", 30))

    @property
    def pdf_dpi(self) -> int:
        return int(self._config.get("pdf_dpi", 150))

    @property
    def image_handler_url(self) -> str:
        return str(self._config.get("image_handler_url") or "")

    @property
    def image_handler_secret(self) -> str:
        return str(self._config.get("image_handler_secret") or "")

    @property
    def client(self) -> Any:
        """Lazy-initialized boto3 S3 client."""
        if self._client is None:
            if not self.bucket:
                logger.warning("S3_BUCKET_NAME not configured")
                raise RemoteStoreUnavailable("Object store is not configured")
            self._client = boto3.client("s3", region_name=self.region)
        return self._client

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any, missing_ok: bool = False, **kwargs: Any) -> Any:
        """
        Run a blocking S3 call with a timeout and bounded retries.

        Raises:
            RemoteStoreUnavailable: After the last failed attempt, or at once
                for errors that retrying cannot fix
        """
        last_exception: Exception | None = None

        for attempt in range(self.retry_attempts):
            try:
                return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=self.timeout)
            except TRANSIENT_EXCEPTIONS as e:
                last_exception = e
                logger.warning(f"S3 {operation} failed (attempt {attempt + 1}/{self.retry_attempts}): {e!r}")
            except ClientError as e:
                code = str(e.response.get("Error", {}).get("Code", ""))
                status = int(e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)
                if missing_ok and code in MISSING_ERROR_CODES:
                    return None
                if code not in TRANSIENT_ERROR_CODES and status < 500:
                    logger.error(f"S3 {operation} rejected: {e}")
                    raise RemoteStoreUnavailable(f"Object store rejected {operation}") from e
                last_exception = e
                logger.warning(f"S3 {operation} failed (attempt {attempt + 1}/{self.retry_attempts}): {e}")
            except NoCredentialsError as e:
                logger.error(f"S3 credentials not available for {operation}")
                raise RemoteStoreUnavailable("Object store credentials are not available") from e

            if attempt < self.retry_attempts - 1:
                await asyncio.sleep(self.retry_delay)

        raise RemoteStoreUnavailable(f"Object store {operation} failed after {self.retry_attempts} attempts") from last_exception

    def _object_url(self, object_id: str, secure: bool = True) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{object_id}"
        scheme = "https" if secure else "http"
        return f"{scheme}://{self.bucket}.s3.{self.region}.amazonaws.com/{object_id}"

    def public_url(self, object_id: str) -> str:
        return self._object_url(object_id, secure=True)

    @staticmethod
    def _object_key(destination_folder: str, filename: str) -> str:
        path = Path(filename)
        stem = sanitize_label(path.stem, fallback="upload")
        return f"{destination_folder.strip('/')}/{stem}_{uuid4().hex[:12]}{path.suffix.lower()}"

    async def upload(
        self,
        local_artifact: Path,
        destination_folder: str,
        access_mode: AccessMode = AccessMode.AUTHENTICATED,
        content_type: Optional[str] = None,
    ) -> UploadedObject:
        """
        Upload one local file.

        Args:
            local_artifact: Path to the local file
            destination_folder: Folder (key prefix) inside the bucket
            access_mode: PUBLIC objects are readable through their plain URL;
                AUTHENTICATED objects only through signed URLs
            content_type: Optional MIME type stored with the object

        Returns:
            UploadedObject with plain URLs and the object key as object_id
        """
        key = self._object_key(destination_folder, local_artifact.name)
        extra_args = {}
        if access_mode is AccessMode.PUBLIC:
            extra_args["ACL"] = "public-read"
        if content_type:
            extra_args["ContentType"] = content_type

        logger.info(f"Uploading {local_artifact.name} to s3://{self.bucket}/{key} ({access_mode.value})")
        await self._call("upload", self.client.upload_file, str(local_artifact), self.bucket, key, ExtraArgs=extra_args or None)
        logger.info(f"Upload successful: s3://{self.bucket}/{key}")

        return UploadedObject(
            url=self._object_url(key, secure=False),
            secure_url=self._object_url(key, secure=True),
            object_id=key,
        )

    async def upload_multi_page_document(
        self,
        local_artifact: Path,
        destination_folder: str,
        public_indexes: Iterable[int] = (),
    ) -> MultiPageUpload:
        """
        Upload a PDF and one restricted image object per page.

        The raw PDF is uploaded under ``<folder>/temp_pdf`` and kept; the
        caller tracks it through the returned source_object_id. On any
        failure every object created here is deleted again before the error
        propagates.

        Raises:
            SourceDocumentUnreadable: The PDF cannot be opened (nothing uploaded)
            RemoteStoreUnavailable: An upload failed after retries
        """
        page_ratios = await asyncio.to_thread(_inspect_pdf, local_artifact)
        page_count = len(page_ratios)
        public = {index if index >= 0 else page_count + index for index in public_indexes}
        logger.info(f"PDF {local_artifact.name} has {page_count} page(s)")

        source: Optional[UploadedObject] = None
        pages: List[UploadedPage] = []
        try:
            source = await self.upload(
                local_artifact,
                f"{destination_folder.strip('/')}/temp_pdf",
                content_type="application/pdf",
            )

            with tempfile.TemporaryDirectory(prefix="yearbook_pages_") as tmp_dir:
                image_paths = await asyncio.to_thread(_rasterize_pages, local_artifact, Path(tmp_dir), self.pdf_dpi)
                for index, image_path in enumerate(image_paths):
                    access_mode = AccessMode.PUBLIC if index in public else AccessMode.AUTHENTICATED
                    uploaded = await self.upload(image_path, destination_folder, access_mode=access_mode, content_type="image/jpeg")
                    pages.append(UploadedPage(
                        url=uploaded.url,
                        secure_url=uploaded.secure_url,
                        object_id=uploaded.object_id,
                        page_index=index,
                        aspect_ratio=page_ratios[index] if index < len(page_ratios) else None,
                    ))
                    logger.info(f"Page {index + 1}/{len(image_paths)} converted: {uploaded.object_id}")
        except Exception as exc:
            created = [page.object_id for page in pages]
            if source is not None:
                created.append(source.object_id)
            logger.error(f"PDF upload failed after {len(pages)} page(s); removing {len(created)} object(s)")
            await self.delete_many(created)
            if isinstance(exc, (RemoteStoreUnavailable, SourceDocumentUnreadable)):
                raise
            raise RemoteStoreUnavailable("Multi-page upload failed") from exc

        return MultiPageUpload(pages=pages, source_object_id=source.object_id)

    async def delete(self, object_id: str) -> bool:
        """
        Delete an object; deleting a missing object counts as success.

        Returns:
            True if the object is gone, False if the store kept failing
        """
        if not object_id:
            return True
        try:
            await self._call("delete", self.client.delete_object, missing_ok=True, Bucket=self.bucket, Key=object_id)
        except RemoteStoreUnavailable as e:
            logger.error(f"Failed to delete s3://{self.bucket}/{object_id}: {e}")
            return False
        logger.info(f"Deleted s3://{self.bucket}/{object_id}")
        return True

    async def mint_signed_url(
        self,
        object_id: str,
        ttl_seconds: int,
        watermark: bool = False,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> str:
        """
        Generate a time-limited URL for an object.

        Args:
            object_id: Object key
            ttl_seconds: Seconds until the URL stops working
            watermark: Burn the configured text overlay into the delivered image
            width / height: Resize bounds applied at delivery time

        Returns:
            Presigned S3 URL, or a signed transformation URL when any
            transformation is requested
        """
        if watermark or width or height:
            return self._transformation_url(object_id, ttl_seconds, watermark, width, height)

        url = await self._call(
            "sign",
            self.client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": object_id},
            ExpiresIn=ttl_seconds,
        )
        logger.debug(f"Generated presigned URL for {object_id} (expires in {ttl_seconds}s)")
        return url

    def _transformation_url(
        self,
        object_id: str,
        ttl_seconds: int,
        watermark: bool,
        width: Optional[int],
        height: Optional[int],
    ) -> str:
        if not self.image_handler_url or not self.image_handler_secret:
            logger.error("Image transformation endpoint not configured; refusing to sign a transformed URL")
            raise RemoteStoreUnavailable("Image transformation is not configured")

        edits: dict = {}
        if width or height:
            edits["resize"] = {"width": width, "height": height, "fit": "inside"}
        if watermark:
            edits["watermark"] = OmegaConf.to_container(self._config.watermark, resolve=True)

        request = {"bucket": self.bucket, "key": object_id, "edits": edits}
        payload = json.dumps(request, separators=(",", ":"), sort_keys=True).encode("utf-8")
        path = "/" + base64.urlsafe_b64encode(payload).decode("ascii")

        expires = (datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)).strftime("%Y%m%dT%H%M%SZ")
        signature = hmac.new(
            self.image_handler_secret.encode("utf-8"),
            f"{path}?expires={expires}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return f"{self.image_handler_url.rstrip('/')}{path}?expires={expires}&signature={signature}"
