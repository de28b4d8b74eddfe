"""Archive storage abstraction.

The core only sees a narrow capability: store in the archival class, request a
restore, head the object, sign a download URL, delete. Two backends:

- ``S3ArchiveStorage``: boto3 against a private bucket, DEEP_ARCHIVE class, SSE-S3.
- ``InMemoryArchiveStorage``: tests and local development. Restores complete
  only when ``complete_restore`` is called.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from starlette.concurrency import run_in_threadpool

ARCHIVE_STORAGE_CLASS = "DEEP_ARCHIVE"
ARCHIVAL_STORAGE_CLASSES = frozenset({"DEEP_ARCHIVE", "GLACIER"})


class StorageError(Exception):
    """Any unexpected failure reported by the storage provider."""


class RestoreAlreadyInProgress(StorageError):
    """The provider already has a restore running for this object."""


class ObjectMissing(StorageError):
    """The provider has no object under the key."""


@dataclass(frozen=True)
class ObjectHead:
    storage_class: str | None
    restore: str | None = None


class ArchiveStorage(ABC):
    """Capability interface for the cold-storage provider."""

    @abstractmethod
    async def put_archival(self, key: str, data: bytes, content_type: str,
                           metadata: dict[str, str] | None = None) -> None:
        ...

    @abstractmethod
    async def request_restore(self, key: str, tier: str, days: int) -> None:
        """Raises RestoreAlreadyInProgress if a restore is already running."""
        ...

    @abstractmethod
    async def head_object(self, key: str) -> ObjectHead:
        """Raises ObjectMissing if there is no object under ``key``."""
        ...

    @abstractmethod
    async def signed_url(self, key: str, ttl_seconds: int) -> str:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """No-op if not found."""
        ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every object under ``prefix``. Returns the count deleted."""
        ...


class S3ArchiveStorage(ArchiveStorage):
    """S3 backend. boto3 is blocking, so every call runs on the threadpool."""

    def __init__(self, bucket: str, region: str, client=None):
        self._bucket = bucket
        self._client = client or boto3.client("s3", region_name=region)

    async def _call(self, method: str, **kwargs):
        try:
            return await run_in_threadpool(getattr(self._client, method), **kwargs)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code == "RestoreAlreadyInProgress":
                raise RestoreAlreadyInProgress(code) from e
            if code in ("NoSuchKey", "404", "NotFound"):
                raise ObjectMissing(code) from e
            raise StorageError(f"S3 {method} failed: {code or e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 {method} failed: {e}") from e

    async def put_archival(self, key: str, data: bytes, content_type: str,
                           metadata: dict[str, str] | None = None) -> None:
        await self._call(
            "put_object",
            Bucket=self._bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
            StorageClass=ARCHIVE_STORAGE_CLASS,
            ServerSideEncryption="AES256",
            Metadata=_header_safe(metadata or {}),
        )

    async def request_restore(self, key: str, tier: str, days: int) -> None:
        await self._call(
            "restore_object",
            Bucket=self._bucket,
            Key=key,
            RestoreRequest={"Days": days, "GlacierJobParameters": {"Tier": tier}},
        )

    async def head_object(self, key: str) -> ObjectHead:
        response = await self._call("head_object", Bucket=self._bucket, Key=key)
        return ObjectHead(
            storage_class=response.get("StorageClass"),
            restore=response.get("Restore"),
        )

    async def signed_url(self, key: str, ttl_seconds: int) -> str:
        return await self._call(
            "generate_presigned_url",
            ClientMethod="get_object",
            Params={"Bucket": self._bucket, "Key": key},
            ExpiresIn=ttl_seconds,
        )

    async def delete(self, key: str) -> None:
        await self._call("delete_object", Bucket=self._bucket, Key=key)

    async def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        token = None
        while True:
            kwargs = {"Bucket": self._bucket, "Prefix": prefix}
            if token:
                kwargs["ContinuationToken"] = token
            page = await self._call("list_objects_v2", **kwargs)
            keys = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
            if keys:
                await self._call(
                    "delete_objects",
                    Bucket=self._bucket,
                    Delete={"Objects": keys, "Quiet": True},
                )
                deleted += len(keys)
            if not page.get("IsTruncated"):
                return deleted
            token = page.get("NextContinuationToken")


@dataclass
class _StoredObject:
    data: bytes
    content_type: str
    metadata: dict[str, str]
    restore_days: int | None = None
    restore_expiry: datetime | None = None


class InMemoryArchiveStorage(ArchiveStorage):
    """In-memory archive for testing. No network I/O.

    ``request_restore`` marks the object as restoring; ``complete_restore``
    simulates the provider finishing the job. ``fail_next`` makes the next
    call of the named method raise ``StorageError``.
    """

    def __init__(self):
        self._store: dict[str, _StoredObject] = {}
        self._failures: dict[str, Exception] = {}
        self.restore_requests: list[tuple[str, str, int]] = []

    def fail_next(self, method: str, error: Exception | None = None) -> None:
        self._failures[method] = error or StorageError(f"{method} unavailable")

    def _maybe_fail(self, method: str) -> None:
        error = self._failures.pop(method, None)
        if error is not None:
            raise error

    def _get(self, key: str) -> _StoredObject:
        obj = self._store.get(key)
        if obj is None:
            raise ObjectMissing(key)
        return obj

    async def put_archival(self, key: str, data: bytes, content_type: str,
                           metadata: dict[str, str] | None = None) -> None:
        self._maybe_fail("put_archival")
        self._store[key] = _StoredObject(data, content_type, dict(metadata or {}))

    async def request_restore(self, key: str, tier: str, days: int) -> None:
        self._maybe_fail("request_restore")
        obj = self._get(key)
        if obj.restore_days is not None and obj.restore_expiry is None:
            raise RestoreAlreadyInProgress(key)
        self.restore_requests.append((key, tier, days))
        obj.restore_days = days
        obj.restore_expiry = None

    def complete_restore(self, key: str, now: datetime | None = None) -> datetime:
        """Finish a pending restore. Returns the expiry the provider reports."""
        obj = self._get(key)
        now = now or datetime.now(timezone.utc)
        obj.restore_expiry = now + timedelta(days=obj.restore_days or 1)
        return obj.restore_expiry

    def expire_restore(self, key: str) -> None:
        obj = self._get(key)
        obj.restore_days = None
        obj.restore_expiry = None

    async def head_object(self, key: str) -> ObjectHead:
        self._maybe_fail("head_object")
        obj = self._get(key)
        if obj.restore_days is None:
            return ObjectHead(storage_class=ARCHIVE_STORAGE_CLASS)
        if obj.restore_expiry is None:
            return ObjectHead(storage_class=ARCHIVE_STORAGE_CLASS, restore='ongoing-request="true"')
        expiry = format_datetime(obj.restore_expiry.astimezone(timezone.utc), usegmt=True)
        return ObjectHead(
            storage_class=ARCHIVE_STORAGE_CLASS,
            restore=f'ongoing-request="false", expiry-date="{expiry}"',
        )

    async def signed_url(self, key: str, ttl_seconds: int) -> str:
        self._maybe_fail("signed_url")
        self._get(key)
        return f"memory://{quote(key)}?expires_in={ttl_seconds}"

    async def delete(self, key: str) -> None:
        self._maybe_fail("delete")
        self._store.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        self._maybe_fail("delete_prefix")
        keys = [k for k in self._store if k.startswith(prefix)]
        for key in keys:
            del self._store[key]
        return len(keys)

    async def exists(self, key: str) -> bool:
        return key in self._store

    async def load(self, key: str) -> bytes:
        return self._get(key).data


def _header_safe(metadata: dict[str, str]) -> dict[str, str]:
    # S3 metadata travels as HTTP headers: strip control chars, percent-encode non-ASCII.
    cleaned = {}
    for k, v in metadata.items():
        text = "".join(" " if ord(c) < 32 or ord(c) == 127 else c for c in str(v)).strip()
        cleaned[k] = quote(text, safe=" ,.-_")
    return cleaned


def user_prefix(user_id: uuid.UUID) -> str:
    return f"{user_id}/"


def generate_storage_key(user_id: uuid.UUID, filename: str) -> str:
    """Generate a unique storage key for an uploaded file.

    Format: {user_id}/{uuid4 hex}_{sanitized_filename}
    """
    safe_name = "".join(
        c if c.isalnum() or c in (".", "-", "_") else "_"
        for c in filename
    )[:100]
    return f"{user_prefix(user_id)}{uuid.uuid4().hex}_{safe_name}"


def build_storage(backend: str, *, bucket: str, region: str) -> ArchiveStorage:
    if backend == "memory":
        return InMemoryArchiveStorage()
    if backend == "s3":
        return S3ArchiveStorage(bucket=bucket, region=region)
    raise ValueError(f"Unknown storage backend: {backend}")
