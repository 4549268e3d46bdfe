from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import pytest
from botocore.exceptions import ClientError

from mangapub.config import StoreConfig
from mangapub.services import object_store
from mangapub.services.object_store import (
    DeleteReport,
    LocalObjectStore,
    ObjectNotFound,
    ObjectStoreError,
    S3ObjectStore,
    build_object_store,
    normalize_key,
)


@pytest.fixture()
def store(tmp_path: Path) -> LocalObjectStore:
    return LocalObjectStore("staging", tmp_path / "bucket", public_base_url="https://cdn.example.com/objects/")


def test_put_head_get_round_trip_keeps_metadata(store: LocalObjectStore) -> None:
    store.put(
        "staging/manga/1/chapters/2/001.webp",
        b"webp-bytes",
        content_type="image/webp",
        cache_control="no-cache",
        metadata={"WebP-Quality": 90},
    )

    head = store.head("staging/manga/1/chapters/2/001.webp")
    assert head is not None
    assert head.size == len(b"webp-bytes")
    assert head.content_type == "image/webp"
    assert head.cache_control == "no-cache"
    assert head.metadata == {"webp-quality": "90"}
    assert store.get("staging/manga/1/chapters/2/001.webp") == b"webp-bytes"
    assert store.exists("staging/manga/1/chapters/2/001.webp")
    assert store.head("staging/manga/1/chapters/2/404.webp") is None


def test_get_missing_key_raises_not_found(store: LocalObjectStore) -> None:
    with pytest.raises(ObjectNotFound):
        store.get("missing.webp")


@pytest.mark.parametrize("key", ["../escape.webp", ".meta/a.json", ""])
def test_invalid_keys_are_rejected(store: LocalObjectStore, key: str) -> None:
    with pytest.raises(ObjectStoreError):
        store.put(key, b"data")


def test_list_prefix_follows_pagination(store: LocalObjectStore, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(object_store, "LIST_PAGE_SIZE", 2)
    for index in range(5):
        store.put(f"chapters/9/{index}.jpg", b"x" * (index + 1))
    store.put("chapters/10/0.jpg", b"other")

    listed = store.list_prefix("chapters/9/")

    assert [item.key for item in listed] == [f"chapters/9/{index}.jpg" for index in range(5)]
    assert [item.size for item in listed] == [1, 2, 3, 4, 5]


def test_list_prefix_refuses_empty_prefix(store: LocalObjectStore) -> None:
    with pytest.raises(ObjectStoreError):
        store.list_prefix("")


def test_delete_many_batches_and_treats_missing_as_deleted(
    store: LocalObjectStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(object_store, "DELETE_BATCH_SIZE", 2)
    batches: List[List[str]] = []
    original = store._delete_batch

    def _record(keys: List[str]) -> DeleteReport:
        batches.append(list(keys))
        return original(keys)

    monkeypatch.setattr(store, "_delete_batch", _record)
    for name in ("a", "b", "c"):
        store.put(f"x/{name}.webp", b"1")

    report = store.delete_many(["x/a.webp", "x/b.webp", "x/c.webp", "x/ghost.webp", "x/a.webp", ""])

    assert batches == [["x/a.webp", "x/b.webp"], ["x/c.webp", "x/ghost.webp"]]
    assert report.deleted_count == 4
    assert report.errors == {}
    assert store.list_prefix("x/") == []


def test_delete_prefix_honours_include_filter(store: LocalObjectStore) -> None:
    store.put("staging/manga/3/001.jpg", b"1")
    store.put("staging/manga/3/chapters/7/001.jpg", b"2")

    report = store.delete_prefix("staging/manga/3/", include=lambda key: "/chapters/" not in key)

    assert report.deleted == ["staging/manga/3/001.jpg"]
    assert store.exists("staging/manga/3/chapters/7/001.jpg")


def test_copy_preserves_headers(store: LocalObjectStore) -> None:
    store.put("a.webp", b"data", content_type="image/webp", metadata={"webp-quality": "70"})

    store.copy("a.webp", "b/a.webp")

    head = store.head("b/a.webp")
    assert head is not None
    assert head.content_type == "image/webp"
    assert head.metadata["webp-quality"] == "70"
    with pytest.raises(ObjectNotFound):
        store.copy("missing.webp", "c.webp")


def test_public_url_and_key_for(store: LocalObjectStore) -> None:
    assert store.public_url("slug/vol-1/ch-1/p0001.webp") == "https://cdn.example.com/objects/slug/vol-1/ch-1/p0001.webp"
    assert store.key_for("https://cdn.example.com/objects/slug/p%200001.webp?v=2") == "slug/p 0001.webp"
    assert store.key_for("r2://bucket/slug/p0001.webp") == "slug/p0001.webp"
    assert store.key_for("/slug/p0001.webp") == "slug/p0001.webp"
    assert store.key_for(None) == ""
    assert LocalObjectStore("plain", store.root).public_url("x") is None


@pytest.mark.parametrize(
    "raw, bucket, expected",
    [
        ("https://pub.r2.dev/staging/a%20b.png?sig=1", None, "staging/a b.png"),
        ("/pages/staging/a.png", "pages", "staging/a.png"),
        ("pages/staging/a.png", "pages", "staging/a.png"),
        ("  staging/a.png ", None, "staging/a.png"),
        ("", None, ""),
    ],
)
def test_normalize_key(raw: str, bucket, expected: str) -> None:
    assert normalize_key(raw, bucket=bucket) == expected


class FakeS3Client:
    """Minimal stand-in for the boto3 S3 client surface the store uses."""

    def __init__(self) -> None:
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.fail_delete: set = set()

    def list_objects_v2(self, **params: Any) -> Dict[str, Any]:
        self.calls.append("list")
        keys = sorted(key for key in self.objects if key.startswith(params["Prefix"]))
        start = int(params.get("ContinuationToken") or 0)
        page = keys[start : start + params["MaxKeys"]]
        truncated = start + params["MaxKeys"] < len(keys)
        response: Dict[str, Any] = {
            "Contents": [{"Key": key, "Size": len(self.objects[key]["Body"])} for key in page],
            "IsTruncated": truncated,
        }
        if truncated:
            response["NextContinuationToken"] = str(start + params["MaxKeys"])
        return response

    def head_object(self, Bucket: str, Key: str) -> Dict[str, Any]:
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        item = self.objects[Key]
        return {
            "ContentLength": len(item["Body"]),
            "ContentType": item.get("ContentType"),
            "CacheControl": item.get("CacheControl"),
            "Metadata": item.get("Metadata", {}),
        }

    def put_object(self, **params: Any) -> None:
        self.objects[params["Key"]] = dict(params)

    def delete_objects(self, Bucket: str, Delete: Dict[str, Any]) -> Dict[str, Any]:
        deleted, errors = [], []
        for entry in Delete["Objects"]:
            key = entry["Key"]
            if key in self.fail_delete:
                errors.append({"Key": key, "Code": "AccessDenied", "Message": "denied"})
                continue
            self.objects.pop(key, None)
            deleted.append({"Key": key})
        return {"Deleted": deleted, "Errors": errors}


def test_s3_store_paginates_and_reports_delete_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(object_store, "LIST_PAGE_SIZE", 2)
    client = FakeS3Client()
    store = S3ObjectStore("permanent", "pages", client=client)
    for index in range(5):
        store.put(f"slug/vol-1/ch-1/p{index:04d}.webp", b"x", content_type="image/webp", cache_control="public")

    listed = store.list_prefix("slug/vol-1/ch-1/")
    assert len(listed) == 5
    assert client.calls.count("list") == 3

    head = store.head("slug/vol-1/ch-1/p0000.webp")
    assert head is not None and head.cache_control == "public"
    assert store.head("slug/vol-1/ch-1/missing.webp") is None

    client.fail_delete.add("slug/vol-1/ch-1/p0001.webp")
    report = store.delete_prefix("slug/vol-1/ch-1/")
    assert report.deleted_count == 4
    assert report.errors == {"slug/vol-1/ch-1/p0001.webp": "AccessDenied: denied"}


def test_s3_store_maps_bucket_paths_in_key_for() -> None:
    store = S3ObjectStore("staging", "uploads", client=FakeS3Client())

    assert store.key_for("https://account.r2.cloudflarestorage.com/uploads/staging/a.jpg") == "staging/a.jpg"


def test_build_object_store(tmp_path: Path) -> None:
    local = build_object_store(StoreConfig(name="staging", kind="local", root=tmp_path / "s"))
    assert isinstance(local, LocalObjectStore)
    assert (tmp_path / "s").is_dir()

    with pytest.raises(ObjectStoreError):
        build_object_store(StoreConfig(name="staging", kind="local"))
    with pytest.raises(ObjectStoreError):
        build_object_store(StoreConfig(name="staging", kind="s3"))
