"""Object store clients.

The pipeline only needs ``get`` / ``put`` of byte blobs by bucket and key.
Whatever goes wrong underneath (credentials, network, missing object) is
raised as a single StorageError.

Backends:
- local: a directory per bucket under ``local_root`` (development, tests)
- gcs:   Google Cloud Storage via google-cloud-storage
- s3:    Amazon S3 or an S3-compatible endpoint via boto3
"""

import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from .errors import StorageError


class ObjectStore(ABC):
    """Get/put byte blobs by key; no logic."""

    @abstractmethod
    def get(self, bucket: str, key: str) -> bytes:
        """Download an object.

        Raises:
            StorageError: for any failure, not-found included
        """
        pass

    @abstractmethod
    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        """Upload an object, overwriting any existing one.

        Returns:
            Public URL of the stored object
        """
        pass

    @abstractmethod
    def ping(self, bucket: str) -> None:
        """Raise StorageError if the bucket is not reachable."""
        pass


def _check_key(key: str) -> str:
    parts = PurePosixPath(key).parts
    if not key or key.startswith("/") or ".." in parts:
        raise StorageError(f"Invalid object key: {key!r}")
    return key


class LocalObjectStore(ObjectStore):
    """Filesystem-backed store: ``<root>/<bucket>/<key>``."""

    def __init__(self, root: str, public_base_url: Optional[str] = None):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def _path(self, bucket: str, key: str) -> Path:
        return self.root / bucket / _check_key(key)

    def url_for(self, bucket: str, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{bucket}/{key}"
        return self._path(bucket, key).resolve().as_uri()

    def get(self, bucket: str, key: str) -> bytes:
        path = self._path(bucket, key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise StorageError(f"Object not found: {bucket}/{key}") from e
        except OSError as e:
            raise StorageError(f"Failed to read {bucket}/{key}: {e}") from e

    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        path = self._path(bucket, key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write to a temp file and rename so readers never see a partial object
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except OSError as e:
            raise StorageError(f"Failed to write {bucket}/{key}: {e}") from e
        return self.url_for(bucket, key)

    def ping(self, bucket: str) -> None:
        try:
            (self.root / bucket).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Bucket {bucket} not writable under {self.root}: {e}") from e


class GCSObjectStore(ObjectStore):
    """Google Cloud Storage backend.

    The client authenticates from the environment
    (e.g. GOOGLE_APPLICATION_CREDENTIALS) unless one is injected.
    """

    def __init__(
        self,
        client=None,
        public_base_url: str = "https://storage.googleapis.com",
        timeout_s: float = 30.0,
    ):
        if client is None:
            from google.cloud import storage as gcs

            client = gcs.Client()
        self.client = client
        self.public_base_url = public_base_url.rstrip("/")
        self.timeout_s = timeout_s

    def get(self, bucket: str, key: str) -> bytes:
        try:
            blob = self.client.bucket(bucket).blob(_check_key(key))
            return blob.download_as_bytes(timeout=self.timeout_s)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"GCS download failed for gs://{bucket}/{key}: {e}") from e

    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        try:
            blob = self.client.bucket(bucket).blob(_check_key(key))
            blob.upload_from_string(data, content_type=content_type, timeout=self.timeout_s)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"GCS upload failed for gs://{bucket}/{key}: {e}") from e
        return f"{self.public_base_url}/{bucket}/{key}"

    def ping(self, bucket: str) -> None:
        try:
            exists = self.client.bucket(bucket).exists(timeout=self.timeout_s)
        except Exception as e:
            raise StorageError(f"GCS bucket {bucket} unreachable: {e}") from e
        if not exists:
            raise StorageError(f"GCS bucket {bucket} does not exist")


class S3ObjectStore(ObjectStore):
    """Amazon S3 (or S3-compatible) backend.

    Credentials come from the boto3 default chain (environment, shared
    config, instance role) unless a client is injected. Returned URLs are
    virtual-hosted style, ``https://<bucket>.s3.amazonaws.com/<key>``,
    unless ``public_base_url`` is set.
    """

    def __init__(
        self,
        client=None,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        public_base_url: Optional[str] = None,
        timeout_s: float = 30.0,
    ):
        if client is None:
            import boto3
            from botocore.config import Config

            session_kwargs = {}
            if region:
                session_kwargs["region_name"] = region
            session = boto3.session.Session(**session_kwargs)
            client_kwargs = {
                "config": Config(connect_timeout=timeout_s, read_timeout=timeout_s),
            }
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            client = session.client("s3", **client_kwargs)
        self.client = client
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def url_for(self, bucket: str, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{bucket}/{key}"
        return f"https://{bucket}.s3.amazonaws.com/{key}"

    def get(self, bucket: str, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=bucket, Key=_check_key(key))
            return response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 download failed for s3://{bucket}/{key}: {e}") from e

    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        try:
            self.client.put_object(
                Bucket=bucket, Key=_check_key(key), Body=data, ContentType=content_type
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 upload failed for s3://{bucket}/{key}: {e}") from e
        return self.url_for(bucket, key)

    def ping(self, bucket: str) -> None:
        try:
            self.client.head_bucket(Bucket=bucket)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 bucket {bucket} unreachable: {e}") from e
