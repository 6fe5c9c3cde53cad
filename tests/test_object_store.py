"""
Tests for the S3 object store client, using a mocked boto3 client.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import time
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
from botocore.exceptions import ClientError

from yearbook_backend.configuration import load_config
from yearbook_backend.errors import RemoteStoreUnavailable, SourceDocumentUnreadable
from yearbook_backend.models import AccessMode
from yearbook_backend.object_store import S3ObjectStore


def _client_error(code, status=400, operation="PutObject"):
    return ClientError({"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}}, operation)


def _store_config(**overrides):
    settings = {
        "bucket": "test-bucket",
        "region": "eu-west-1",
        "retry_attempts": 3,
        "retry_delay": 0,
        "image_handler_url": "https://images.example.test",
        "image_handler_secret": "test-secret",
    }
    settings.update(overrides)
    return load_config({"object_store": settings}).object_store


@pytest.fixture
def s3_client():
    return MagicMock()


@pytest.fixture
def s3_store(s3_client):
    return S3ObjectStore(_store_config(), client=s3_client)


class TestUpload:
    def test_upload_public_object(self, s3_store, s3_client, make_image):
        path = make_image("Cover Photo.jpg")

        uploaded = asyncio.run(s3_store.upload(path, "yearbuk_uploads/School_SCH01/yearbooks/2024", access_mode=AccessMode.PUBLIC, content_type="image/jpeg"))

        args, kwargs = s3_client.upload_file.call_args
        assert args[0] == str(path)
        assert args[1] == "test-bucket"
        assert args[2] == uploaded.object_id
        assert kwargs["ExtraArgs"] == {"ACL": "public-read", "ContentType": "image/jpeg"}
        assert uploaded.object_id.startswith("yearbuk_uploads/School_SCH01/yearbooks/2024/cover-photo_")
        assert uploaded.secure_url == f"https://test-bucket.s3.eu-west-1.amazonaws.com/{uploaded.object_id}"
        assert uploaded.url.startswith("http://")

    def test_upload_restricted_object_has_no_acl(self, s3_store, s3_client, make_image):
        asyncio.run(s3_store.upload(make_image(), "folder"))

        _, kwargs = s3_client.upload_file.call_args
        assert kwargs["ExtraArgs"] is None

    def test_transient_failure_is_retried(self, s3_store, s3_client, make_image):
        s3_client.upload_file.side_effect = [_client_error("SlowDown", status=503), None]

        asyncio.run(s3_store.upload(make_image(), "folder"))

        assert s3_client.upload_file.call_count == 2

    def test_persistent_failure_raises_after_retries(self, s3_store, s3_client, make_image):
        s3_client.upload_file.side_effect = _client_error("InternalError", status=500)

        with pytest.raises(RemoteStoreUnavailable):
            asyncio.run(s3_store.upload(make_image(), "folder"))

        assert s3_client.upload_file.call_count == 3

    def test_rejected_request_is_not_retried(self, s3_store, s3_client, make_image):
        s3_client.upload_file.side_effect = _client_error("AccessDenied", status=403)

        with pytest.raises(RemoteStoreUnavailable):
            asyncio.run(s3_store.upload(make_image(), "folder"))

        assert s3_client.upload_file.call_count == 1

    def test_timeout_is_retried(self, s3_client, make_image):
        store = S3ObjectStore(_store_config(timeout_seconds=0.05), client=s3_client)
        s3_client.upload_file.side_effect = lambda *args, **kwargs: time.sleep(0.2)

        with pytest.raises(RemoteStoreUnavailable):
            asyncio.run(store.upload(make_image(), "folder"))

        assert s3_client.upload_file.call_count == 3

    def test_missing_bucket_is_unavailable(self, make_image):
        store = S3ObjectStore(_store_config(bucket=""))

        with pytest.raises(RemoteStoreUnavailable):
            asyncio.run(store.upload(make_image(), "folder"))


class TestMultiPage:
    def test_pdf_is_rasterized_page_by_page(self, s3_store, s3_client, make_pdf):
        upload = asyncio.run(s3_store.upload_multi_page_document(make_pdf(3), "folder", public_indexes=(0,)))

        assert len(upload.pages) == 3
        assert [page.page_index for page in upload.pages] == [0, 1, 2]
        assert all(page.aspect_ratio == "3/4" for page in upload.pages)
        assert upload.source_object_id.startswith("folder/temp_pdf/")

        calls = s3_client.upload_file.call_args_list
        assert len(calls) == 4
        assert calls[0].kwargs["ExtraArgs"] == {"ContentType": "application/pdf"}
        assert calls[1].kwargs["ExtraArgs"] == {"ACL": "public-read", "ContentType": "image/jpeg"}
        assert calls[2].kwargs["ExtraArgs"] == {"ContentType": "image/jpeg"}

    def test_failure_removes_uploaded_objects(self, s3_store, s3_client, make_pdf):
        s3_client.upload_file.side_effect = [None, None, _client_error("AccessDenied", status=403)]

        with pytest.raises(RemoteStoreUnavailable):
            asyncio.run(s3_store.upload_multi_page_document(make_pdf(3), "folder"))

        uploaded_keys = [call.args[2] for call in s3_client.upload_file.call_args_list[:2]]
        deleted_keys = [call.kwargs["Key"] for call in s3_client.delete_object.call_args_list]
        assert sorted(deleted_keys) == sorted(uploaded_keys)

    def test_unreadable_pdf_uploads_nothing(self, s3_store, s3_client, tmp_path):
        path = tmp_path / "broken.pdf"
        path.write_bytes(b"not a pdf at all")

        with pytest.raises(SourceDocumentUnreadable):
            asyncio.run(s3_store.upload_multi_page_document(path, "folder"))

        s3_client.upload_file.assert_not_called()


class TestDelete:
    def test_delete_missing_object_succeeds(self, s3_store, s3_client):
        s3_client.delete_object.side_effect = _client_error("NoSuchKey", status=404, operation="DeleteObject")

        assert asyncio.run(s3_store.delete("folder/gone.jpg")) is True

    def test_delete_failure_returns_false(self, s3_store, s3_client):
        s3_client.delete_object.side_effect = _client_error("ServiceUnavailable", status=503, operation="DeleteObject")

        assert asyncio.run(s3_store.delete("folder/page.jpg")) is False
        assert s3_client.delete_object.call_count == 3


class TestSignedUrls:
    def test_plain_presigned_url(self, s3_store, s3_client):
        s3_client.generate_presigned_url.return_value = "https://test-bucket.s3.amazonaws.com/folder/page.jpg?X-Amz-Signature=abc"

        url = asyncio.run(s3_store.mint_signed_url("folder/page.jpg", 600))

        assert url.endswith("X-Amz-Signature=abc")
        s3_client.generate_presigned_url.assert_called_once_with(
            "get_object",
            Params={"Bucket": "test-bucket", "Key": "folder/page.jpg"},
            ExpiresIn=600,
        )

    def test_watermarked_url_is_signed_transformation(self, s3_store, s3_client):
        url = asyncio.run(s3_store.mint_signed_url("folder/page.jpg", 600, watermark=True))

        parsed = urlparse(url)
        assert f"{parsed.scheme}://{parsed.netloc}" == "https://images.example.test"
        request = json.loads(base64.urlsafe_b64decode(parsed.path.lstrip("/")))
        assert request["bucket"] == "test-bucket"
        assert request["key"] == "folder/page.jpg"
        assert request["edits"]["watermark"]["text"] == "© Yearbuk"
        assert request["edits"]["watermark"]["gravity"] == "south_east"
        assert request["edits"]["watermark"]["opacity"] == 40

        query = parse_qs(parsed.query)
        expires = query["expires"][0]
        expected = hmac.new(b"test-secret", f"{parsed.path}?expires={expires}".encode(), hashlib.sha256).hexdigest()
        assert query["signature"][0] == expected
        s3_client.generate_presigned_url.assert_not_called()

    def test_resize_without_watermark(self, s3_store):
        url = asyncio.run(s3_store.mint_signed_url("folder/page.jpg", 600, width=400))

        request = json.loads(base64.urlsafe_b64decode(urlparse(url).path.lstrip("/")))
        assert request["edits"] == {"resize": {"width": 400, "height": None, "fit": "inside"}}

    def test_watermark_without_endpoint_is_refused(self, s3_client):
        store = S3ObjectStore(_store_config(image_handler_url=""), client=s3_client)

        with pytest.raises(RemoteStoreUnavailable):
            asyncio.run(store.mint_signed_url("folder/page.jpg", 600, watermark=True))

    def test_public_url_uses_base_url(self, s3_client):
        store = S3ObjectStore(_store_config(public_base_url="https://cdn.example.test/"), client=s3_client)

        assert store.public_url("folder/page.jpg") == "https://cdn.example.test/folder/page.jpg"
