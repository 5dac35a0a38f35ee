"""Tests for transcription_engine.storage.object_store module."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import httpx
import pytest
from botocore.exceptions import ClientError

from transcription_engine.storage.object_store import ObjectStoreClient, WriteCredential
from transcription_engine.utils.errors import StorageError, TransientIOError

UPLOAD_URL = "https://bucket.r2.example.com/"


def _make_client():
    """Create a client with a mocked boto3 s3 client."""
    with patch("transcription_engine.storage.object_store.boto3") as mock_boto:
        mock_s3 = MagicMock()
        mock_boto.client.return_value = mock_s3
        client = ObjectStoreClient(
            endpoint_url="https://r2.example.com",
            bucket="audio",
            access_key_id="key-id",
            secret_access_key="secret-key",
        )
    return client, mock_s3


def _credential(expires_at: datetime | None = None) -> WriteCredential:
    return WriteCredential(
        url=UPLOAD_URL,
        fields={"key": "abc.wav", "Content-Type": "audio/wav", "policy": "p"},
        key="abc.wav",
        expires_at=expires_at or datetime.now(UTC) + timedelta(minutes=5),
    )


class TestInit:
    """Tests for ObjectStoreClient initialization."""

    def test_explicit_params(self):
        with patch("transcription_engine.storage.object_store.boto3") as mock_boto:
            client = ObjectStoreClient(
                endpoint_url="https://r2.example.com",
                bucket="audio",
                access_key_id="key-id",
                secret_access_key="secret-key",
            )
        assert client.bucket == "audio"
        mock_boto.client.assert_called_once_with(
            "s3",
            region_name="auto",
            endpoint_url="https://r2.example.com",
            aws_access_key_id="key-id",
            aws_secret_access_key="secret-key",
        )

    def test_plain_s3_uses_default_credentials(self, monkeypatch):
        for name in (
            "OBJECT_STORE_ENDPOINT",
            "OBJECT_STORE_ACCESS_KEY_ID",
            "OBJECT_STORE_SECRET_ACCESS_KEY",
        ):
            monkeypatch.delenv(name, raising=False)
        with patch("transcription_engine.storage.object_store.boto3") as mock_boto:
            ObjectStoreClient(bucket="audio", region="us-east-1")
        mock_boto.client.assert_called_once_with("s3", region_name="us-east-1")

    def test_missing_bucket_raises_storage_error(self, monkeypatch):
        monkeypatch.delenv("AUDIO_BUCKET", raising=False)
        with pytest.raises(StorageError, match="AUDIO_BUCKET is required"):
            ObjectStoreClient(bucket="")


class TestWriteCredential:
    """Tests for get_write_credential()."""

    def test_pins_key_type_size_and_metadata(self):
        client, mock_s3 = _make_client()
        mock_s3.generate_presigned_post.return_value = {
            "url": UPLOAD_URL,
            "fields": {"key": "abc.wav", "policy": "p"},
        }

        credential = client.get_write_credential(
            "abc.wav", "audio/wav", 1024, metadata={"OriginalFileName": "a%20b.wav"}
        )

        kwargs = mock_s3.generate_presigned_post.call_args.kwargs
        assert kwargs["Bucket"] == "audio"
        assert kwargs["Key"] == "abc.wav"
        assert kwargs["ExpiresIn"] == 300
        assert kwargs["Fields"] == {
            "Content-Type": "audio/wav",
            "x-amz-meta-originalfilename": "a%20b.wav",
        }
        assert ["content-length-range", 1, 1024] in kwargs["Conditions"]
        assert credential.key == "abc.wav"
        assert credential.url == UPLOAD_URL
        assert credential.expires_at > datetime.now(UTC)

    def test_error_raises_storage_error(self):
        client, mock_s3 = _make_client()
        mock_s3.generate_presigned_post.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "no"}}, "PostObject"
        )
        with pytest.raises(StorageError, match="AccessDenied"):
            client.get_write_credential("abc.wav", "audio/wav", 1024)


class TestUpload:
    """Tests for upload() through a presigned POST."""

    async def test_posts_form_fields_and_file(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=UPLOAD_URL, status_code=204)
        client, _ = _make_client()

        await client.upload(_credential(), b"RIFF....", filename="clip.wav")

        request = httpx_mock.get_request()
        body = request.content
        assert b'name="policy"' in body
        assert b'filename="clip.wav"' in body
        assert b"RIFF...." in body
        await client.close()

    async def test_rejected_upload_raises_storage_error(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=UPLOAD_URL, status_code=403)
        client, _ = _make_client()

        with pytest.raises(StorageError, match="HTTP 403"):
            await client.upload(_credential(), b"data")
        await client.close()

    async def test_network_error_is_transient(self, httpx_mock):
        httpx_mock.add_exception(httpx.ConnectError("reset"))
        client, _ = _make_client()

        with pytest.raises(TransientIOError):
            await client.upload(_credential(), b"data")
        await client.close()

    async def test_expired_credential_rejected(self):
        client, _ = _make_client()
        expired = _credential(datetime.now(UTC) - timedelta(seconds=1))

        with pytest.raises(StorageError, match="expired"):
            await client.upload(expired, b"data")
        await client.close()


class TestReads:
    """Tests for fetch_object(), fetch_uri() and head_metadata()."""

    def test_fetch_object_returns_bytes(self):
        client, mock_s3 = _make_client()
        body = MagicMock()
        body.read.return_value = b"bytes"
        mock_s3.get_object.return_value = {"Body": body}

        assert client.fetch_object("abc.wav") == b"bytes"
        mock_s3.get_object.assert_called_once_with(Bucket="audio", Key="abc.wav")

    def test_fetch_object_error(self):
        client, mock_s3 = _make_client()
        mock_s3.get_object.side_effect = ClientError(
            {"Error": {"Code": "NoSuchKey", "Message": "Not found"}}, "GetObject"
        )
        with pytest.raises(StorageError, match="NoSuchKey"):
            client.fetch_object("missing.wav")

    @pytest.mark.parametrize(
        "uri, bucket, key",
        [
            ("s3://transcripts/job.json", "transcripts", "job.json"),
            ("https://s3.us-east-1.amazonaws.com/managed/dir/job.json", "managed", "dir/job.json"),
        ],
    )
    def test_fetch_uri(self, uri, bucket, key):
        client, mock_s3 = _make_client()
        body = MagicMock()
        body.read.return_value = b"{}"
        mock_s3.get_object.return_value = {"Body": body}

        client.fetch_uri(uri)
        mock_s3.get_object.assert_called_once_with(Bucket=bucket, Key=key)

    def test_fetch_uri_unsupported(self):
        client, _ = _make_client()
        with pytest.raises(StorageError, match="Unsupported object URI"):
            client.fetch_uri("ftp://host/file")

    def test_head_metadata_lowercases_keys(self):
        client, mock_s3 = _make_client()
        mock_s3.head_object.return_value = {
            "Metadata": {"OriginalFileName": "clip.wav", "Source": "file"},
            "ContentType": "audio/wav",
        }

        assert client.head_metadata("abc.wav") == {
            "originalfilename": "clip.wav",
            "source": "file",
            "content-type": "audio/wav",
        }

    def test_media_location(self):
        client, mock_s3 = _make_client()
        mock_s3.generate_presigned_url.return_value = "https://signed/abc.m4a"

        media = client.media_location("abc.m4a")

        assert media.uri == "s3://audio/abc.m4a"
        assert media.media_format == "m4a"
        assert media.url == "https://signed/abc.m4a"
        mock_s3.generate_presigned_url.assert_called_once_with(
            "get_object", Params={"Bucket": "audio", "Key": "abc.m4a"}, ExpiresIn=3600
        )
