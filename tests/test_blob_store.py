"""Tests for the S3 blob store using a mocked boto3 client."""

from __future__ import annotations

import io
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from gmail_mirror.core.config import BlobSettings
from gmail_mirror.core.errors import StorageError
from gmail_mirror.storage import S3BlobStore, attachment_path, email_body_path


def _client_error(operation: str) -> ClientError:
    return ClientError({"Error": {"Code": "500", "Message": "boom"}}, operation)


def test_upload_puts_object_and_returns_locator() -> None:
    client = MagicMock()
    store = S3BlobStore(BlobSettings(bucket="mail", region="eu-west-1"), client=client)

    locator = store.upload(email_body_path("user-1", "g-1"), b"<p>Hi</p>", "text/html")

    client.put_object.assert_called_once_with(
        Bucket="mail",
        Key="emails/user-1/g-1.html",
        Body=b"<p>Hi</p>",
        ContentType="text/html",
    )
    assert locator == "https://mail.s3.eu-west-1.amazonaws.com/emails/user-1/g-1.html"
    assert store.key_for(locator) == "emails/user-1/g-1.html"


def test_download_reads_object_body() -> None:
    client = MagicMock()
    client.get_object.return_value = {"Body": io.BytesIO(b"payload")}
    store = S3BlobStore(BlobSettings(bucket="mail"), client=client)

    data = store.download("https://mail.s3.us-east-1.amazonaws.com/emails/u/g.html")

    assert data == b"payload"
    client.get_object.assert_called_once_with(Bucket="mail", Key="emails/u/g.html")


def test_upload_and_download_errors_become_storage_errors() -> None:
    client = MagicMock()
    client.put_object.side_effect = _client_error("PutObject")
    client.get_object.side_effect = _client_error("GetObject")
    store = S3BlobStore(BlobSettings(bucket="mail"), client=client)

    with pytest.raises(StorageError):
        store.upload("emails/u/g.html", b"x", "text/html")
    with pytest.raises(StorageError):
        store.download("https://mail.s3.us-east-1.amazonaws.com/emails/u/g.html")


def test_delete_is_best_effort() -> None:
    client = MagicMock()
    client.delete_object.side_effect = _client_error("DeleteObject")
    store = S3BlobStore(BlobSettings(bucket="mail"), client=client)

    store.delete("https://mail.s3.us-east-1.amazonaws.com/emails/u/g.html")

    client.delete_object.assert_called_once_with(Bucket="mail", Key="emails/u/g.html")


def test_custom_endpoint_locators_round_trip_quoted_keys() -> None:
    client = MagicMock()
    settings = BlobSettings(bucket="mail", endpoint_url="http://localhost:9000/")
    store = S3BlobStore(settings, client=client)
    path = attachment_path("user-1", "e-1", "my report.pdf")

    locator = store.upload(path, b"%PDF", "application/pdf")

    assert locator == "http://localhost:9000/mail/attachments/user-1/e-1/my%20report.pdf"
    assert store.key_for(locator) == "attachments/user-1/e-1/my report.pdf"


def test_missing_bucket_is_rejected() -> None:
    with pytest.raises(StorageError):
        S3BlobStore(BlobSettings(bucket=None), client=MagicMock())
