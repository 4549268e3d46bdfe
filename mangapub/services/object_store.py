"""Object store clients for the staging and permanent buckets.

Two backends share one interface:

* :class:`LocalObjectStore` keeps objects in a directory tree and stores the
  content type, cache directive and user metadata in a JSON sidecar. It backs
  development setups and the test-suite.
* :class:`S3ObjectStore` talks to any S3-compatible bucket (Cloudflare R2,
  Wasabi, MinIO) through ``boto3``.

Both report the same :class:`ObjectHead`, :class:`StoredObject` and
:class:`DeleteReport` types so the pipeline never needs to know which backend
it is using.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import unquote

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..config import StoreConfig
from .events import emit_store_event


LOGGER = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 1000
LIST_PAGE_SIZE = 1000

_META_DIR = ".meta"
_SCHEME_PATTERN = re.compile(r"^[a-z][a-z0-9+.-]*://[^/]*/?", re.IGNORECASE)


class ObjectStoreError(RuntimeError):
    """Raised when an object store operation fails."""

    def __init__(self, message: str, *, key: Optional[str] = None, store: Optional[str] = None) -> None:
        super().__init__(message)
        self.key = key
        self.store = store


class ObjectNotFound(ObjectStoreError):
    """Raised by :meth:`ObjectStore.get` when the key does not exist."""


@dataclass(frozen=True)
class StoredObject:
    key: str
    size: int
    etag: Optional[str] = None


@dataclass(frozen=True)
class ObjectHead:
    key: str
    size: int
    content_type: Optional[str] = None
    cache_control: Optional[str] = None
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass
class DeleteReport:
    """Outcome of a batch delete; ``errors`` maps key to the backend message."""

    deleted: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted)

    def merge(self, other: "DeleteReport") -> None:
        self.deleted.extend(other.deleted)
        self.errors.update(other.errors)


def normalize_key(raw: Optional[str], *, bucket: Optional[str] = None) -> str:
    """Turn a stored URL or key into a bare object key.

    Handles ``https://host/key``, ``r2://bucket/key``, path-style
    ``/bucket/key`` (when *bucket* is given) and plain keys with leading slashes.
    """

    value = (raw or "").strip()
    if not value:
        return ""
    had_scheme = bool(_SCHEME_PATTERN.match(value))
    if had_scheme:
        value = _SCHEME_PATTERN.sub("", value, count=1)
        value = value.split("?", 1)[0].split("#", 1)[0]
        value = unquote(value)
    value = value.lstrip("/")
    if bucket and value.startswith(f"{bucket}/"):
        value = value[len(bucket) + 1 :]
    return value


def _chunked(items: List[str], size: int) -> Iterator[List[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class ObjectStore:
    """Shared behaviour for both backends; subclasses implement the primitives."""

    def __init__(self, name: str, *, public_base_url: Optional[str] = None) -> None:
        self.name = name
        self._public_base_url = (public_base_url or "").rstrip("/") or None

    # -- primitives -------------------------------------------------------
    def _list_page(
        self, prefix: str, token: Optional[str], max_keys: int
    ) -> Tuple[List[StoredObject], Optional[str]]:
        raise NotImplementedError

    def _delete_batch(self, keys: List[str]) -> DeleteReport:
        raise NotImplementedError

    def head(self, key: str) -> Optional[ObjectHead]:
        raise NotImplementedError

    def get(self, key: str) -> bytes:
        raise NotImplementedError

    def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        cache_control: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> None:
        raise NotImplementedError

    def copy(self, source_key: str, dest_key: str) -> None:
        raise NotImplementedError

    # -- composed operations ---------------------------------------------
    def exists(self, key: str) -> bool:
        return self.head(key) is not None

    def list_prefix(self, prefix: str) -> List[StoredObject]:
        """Return every object under *prefix*, following pagination."""

        if not prefix:
            raise ObjectStoreError("Refusing to list an empty prefix", store=self.name)
        start = time.perf_counter()
        objects: List[StoredObject] = []
        token: Optional[str] = None
        pages = 0
        while True:
            page, token = self._list_page(prefix, token, LIST_PAGE_SIZE)
            objects.extend(page)
            pages += 1
            if not token:
                break
        emit_store_event(
            "list_prefix",
            payload={"store": self.name, "prefix": prefix, "count": len(objects), "pages": pages},
            duration_ms=(time.perf_counter() - start) * 1000.0,
            level=logging.DEBUG,
        )
        return objects

    def delete_many(self, keys: Iterable[str]) -> DeleteReport:
        """Delete *keys* in batches of at most :data:`DELETE_BATCH_SIZE`."""

        unique = list(dict.fromkeys(key for key in keys if key))
        report = DeleteReport()
        for batch in _chunked(unique, DELETE_BATCH_SIZE):
            report.merge(self._delete_batch(batch))
        if unique:
            emit_store_event(
                "delete_many",
                payload={
                    "store": self.name,
                    "requested": len(unique),
                    "deleted": report.deleted_count,
                    "errors": len(report.errors),
                },
                level=logging.WARNING if report.errors else logging.INFO,
            )
        return report

    def delete_prefix(self, prefix: str, *, include: Optional[Callable[[str], bool]] = None) -> DeleteReport:
        """Delete every object under *prefix* that *include* accepts (all when omitted)."""

        keys = [item.key for item in self.list_prefix(prefix) if include is None or include(item.key)]
        if not keys:
            LOGGER.debug("No objects under %s/%s", self.name, prefix)
            return DeleteReport()
        return self.delete_many(keys)

    def public_url(self, key: str) -> Optional[str]:
        if not self._public_base_url:
            return None
        return f"{self._public_base_url}/{key}"

    def key_for(self, reference: Optional[str]) -> str:
        """Map a stored URL or key back to a key in this store."""

        value = (reference or "").strip()
        base = self._public_base_url
        if base and value.startswith(base + "/"):
            return unquote(value[len(base) + 1 :].split("?", 1)[0])
        return normalize_key(value, bucket=getattr(self, "bucket", None))


class LocalObjectStore(ObjectStore):
    """Directory-backed store; metadata lives under ``<root>/.meta``."""

    def __init__(self, name: str, root: Path, *, public_base_url: Optional[str] = None) -> None:
        super().__init__(name, public_base_url=public_base_url)
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        cleaned = key.lstrip("/")
        if not cleaned or cleaned.startswith(_META_DIR + "/") or ".." in cleaned.split("/"):
            raise ObjectStoreError(f"Invalid object key: {key!r}", key=key, store=self.name)
        return self._root / cleaned

    def _meta_path(self, key: str) -> Path:
        return self._root / _META_DIR / f"{key.lstrip('/')}.json"

    def _iter_keys(self) -> Iterator[str]:
        for path in self._root.rglob("*"):
            if not path.is_file():
                continue
            relative = path.relative_to(self._root).as_posix()
            if relative.startswith(_META_DIR + "/") or path.name.startswith(".tmp-"):
                continue
            yield relative

    def _list_page(
        self, prefix: str, token: Optional[str], max_keys: int
    ) -> Tuple[List[StoredObject], Optional[str]]:
        keys = sorted(key for key in self._iter_keys() if key.startswith(prefix))
        if token:
            keys = [key for key in keys if key > token]
        page = keys[:max_keys]
        next_token = page[-1] if len(keys) > max_keys else None
        objects = [StoredObject(key=key, size=self._path(key).stat().st_size) for key in page]
        return objects, next_token

    def _write_atomic(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        handle, temp_name = tempfile.mkstemp(prefix=".tmp-", dir=path.parent)
        try:
            with os.fdopen(handle, "wb") as stream:
                stream.write(data)
            os.replace(temp_name, path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(temp_name)
            raise

    def _read_meta(self, key: str) -> Dict[str, Any]:
        meta_path = self._meta_path(key)
        try:
            return json.loads(meta_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as error:
            LOGGER.warning("Ignoring unreadable metadata for %s: %s", key, error)
            return {}

    def head(self, key: str) -> Optional[ObjectHead]:
        path = self._path(key)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return None
        except OSError as error:
            raise ObjectStoreError(f"head failed: {error}", key=key, store=self.name) from error
        meta = self._read_meta(key)
        return ObjectHead(
            key=key,
            size=size,
            content_type=meta.get("content_type"),
            cache_control=meta.get("cache_control"),
            metadata=dict(meta.get("metadata") or {}),
        )

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as error:
            raise ObjectNotFound(f"No such key: {key}", key=key, store=self.name) from error
        except OSError as error:
            raise ObjectStoreError(f"get failed: {error}", key=key, store=self.name) from error

    def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        cache_control: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> None:
        path = self._path(key)
        sidecar = {
            "content_type": content_type,
            "cache_control": cache_control,
            "metadata": {str(k).lower(): str(v) for k, v in (metadata or {}).items()},
        }
        try:
            self._write_atomic(path, data)
            self._write_atomic(self._meta_path(key), json.dumps(sidecar).encode("utf-8"))
        except OSError as error:
            raise ObjectStoreError(f"put failed: {error}", key=key, store=self.name) from error
        emit_store_event(
            "put",
            payload={"store": self.name, "key": key, "size": len(data)},
            level=logging.DEBUG,
        )

    def copy(self, source_key: str, dest_key: str) -> None:
        head = self.head(source_key)
        if head is None:
            raise ObjectNotFound(f"No such key: {source_key}", key=source_key, store=self.name)
        self.put(
            dest_key,
            self.get(source_key),
            content_type=head.content_type or "application/octet-stream",
            cache_control=head.cache_control,
            metadata=head.metadata,
        )

    def _delete_batch(self, keys: List[str]) -> DeleteReport:
        report = DeleteReport()
        for key in keys:
            try:
                path = self._path(key)
                with contextlib.suppress(FileNotFoundError):
                    path.unlink()
                with contextlib.suppress(FileNotFoundError):
                    self._meta_path(key).unlink()
            except (OSError, ObjectStoreError) as error:
                report.errors[key] = str(error)
                continue
            report.deleted.append(key)
        return report


class S3ObjectStore(ObjectStore):
    """S3-compatible bucket accessed through ``boto3``."""

    def __init__(
        self,
        name: str,
        bucket: str,
        *,
        client: Any = None,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        public_base_url: Optional[str] = None,
    ) -> None:
        super().__init__(name, public_base_url=public_base_url)
        if not bucket:
            raise ObjectStoreError(f"No bucket configured for {name} store", store=name)
        self.bucket = bucket
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region or "auto",
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=BotoConfig(
                s3={"addressing_style": "path"},
                retries={"max_attempts": 5, "mode": "standard"},
            ),
        )

    def _wrap(self, operation: str, key: Optional[str], error: Exception) -> ObjectStoreError:
        return ObjectStoreError(f"{operation} failed: {error}", key=key, store=self.name)

    @staticmethod
    def _is_missing(error: ClientError) -> bool:
        code = str(error.response.get("Error", {}).get("Code", ""))
        return code in {"404", "NoSuchKey", "NotFound"}

    def _list_page(
        self, prefix: str, token: Optional[str], max_keys: int
    ) -> Tuple[List[StoredObject], Optional[str]]:
        params: Dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": max_keys}
        if token:
            params["ContinuationToken"] = token
        try:
            response = self._client.list_objects_v2(**params)
        except (BotoCoreError, ClientError) as error:
            raise self._wrap("list", prefix, error) from error
        objects = [
            StoredObject(key=item["Key"], size=int(item.get("Size", 0)), etag=item.get("ETag"))
            for item in response.get("Contents", [])
            if item.get("Key")
        ]
        next_token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return objects, next_token

    def head(self, key: str) -> Optional[ObjectHead]:
        try:
            response = self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as error:
            if self._is_missing(error):
                return None
            raise self._wrap("head", key, error) from error
        except BotoCoreError as error:
            raise self._wrap("head", key, error) from error
        return ObjectHead(
            key=key,
            size=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType"),
            cache_control=response.get("CacheControl"),
            metadata=dict(response.get("Metadata") or {}),
        )

    def get(self, key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as error:
            if self._is_missing(error):
                raise ObjectNotFound(f"No such key: {key}", key=key, store=self.name) from error
            raise self._wrap("get", key, error) from error
        except BotoCoreError as error:
            raise self._wrap("get", key, error) from error

    def put(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        cache_control: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> None:
        params: Dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
            "Metadata": {str(k).lower(): str(v) for k, v in (metadata or {}).items()},
        }
        if cache_control:
            params["CacheControl"] = cache_control
        try:
            self._client.put_object(**params)
        except (BotoCoreError, ClientError) as error:
            raise self._wrap("put", key, error) from error

    def copy(self, source_key: str, dest_key: str) -> None:
        try:
            self._client.copy_object(
                Bucket=self.bucket,
                Key=dest_key,
                CopySource={"Bucket": self.bucket, "Key": source_key},
                MetadataDirective="COPY",
            )
        except (BotoCoreError, ClientError) as error:
            raise self._wrap("copy", source_key, error) from error

    def _delete_batch(self, keys: List[str]) -> DeleteReport:
        try:
            response = self._client.delete_objects(
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": key} for key in keys], "Quiet": False},
            )
        except (BotoCoreError, ClientError) as error:
            raise self._wrap("delete", None, error) from error
        report = DeleteReport(deleted=[item["Key"] for item in response.get("Deleted", [])])
        for item in response.get("Errors", []):
            report.errors[item.get("Key", "")] = f"{item.get('Code')}: {item.get('Message')}"
        return report


def build_object_store(config: StoreConfig) -> ObjectStore:
    """Instantiate the backend described by *config*."""

    if config.kind == "local":
        if config.root is None:
            raise ObjectStoreError(f"No root directory configured for {config.name} store")
        return LocalObjectStore(config.name, config.root, public_base_url=config.public_base_url)
    if config.kind == "s3":
        return S3ObjectStore(
            config.name,
            config.bucket or "",
            endpoint_url=config.endpoint_url,
            region=config.region,
            access_key_id=config.access_key_id,
            secret_access_key=config.secret_access_key,
            public_base_url=config.public_base_url,
        )
    raise ObjectStoreError(f"Unsupported object store kind: {config.kind}")


__all__ = [
    "DELETE_BATCH_SIZE",
    "DeleteReport",
    "LocalObjectStore",
    "ObjectHead",
    "ObjectNotFound",
    "ObjectStore",
    "ObjectStoreError",
    "S3ObjectStore",
    "StoredObject",
    "build_object_store",
    "normalize_key",
]
