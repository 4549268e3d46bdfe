"""Configuration loading utilities for the Manga Publisher service."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".mangapub_write_check"
_STORE_KINDS = ("local", "s3")
DEFAULT_PUBLISH_CONCURRENCY = 3


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins. When nothing can be prepared the
    original ``preferred`` path is returned so the bootstrapper can report it.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def _env(name: str) -> Optional[str]:
    value = (os.environ.get(name) or "").strip()
    return value or None


@dataclass(frozen=True)
class StoreConfig:
    """Connection details for one object store (staging or permanent)."""

    name: str
    kind: str = "local"
    root: Optional[Path] = None
    bucket: Optional[str] = None
    endpoint_url: Optional[str] = None
    region: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    public_base_url: Optional[str] = None

    @classmethod
    def from_mapping(
        cls,
        name: str,
        mapping: Mapping[str, Any],
        *,
        storage_root: Path,
    ) -> "StoreConfig":
        kind = str(mapping.get("kind") or "local").strip().lower()
        if kind not in _STORE_KINDS:
            raise ValueError(f"Unsupported object store kind for {name}: {kind!r}")

        root: Optional[Path] = None
        if kind == "local":
            raw_root = mapping.get("root") or name
            root = (storage_root / str(raw_root)).resolve()

        env_prefix = f"MANGAPUB_{name.upper()}"
        public_base = mapping.get("public_base_url") or _env(f"{env_prefix}_PUBLIC_BASE_URL")
        return cls(
            name=name,
            kind=kind,
            root=root,
            bucket=mapping.get("bucket") or _env(f"{env_prefix}_BUCKET"),
            endpoint_url=mapping.get("endpoint_url") or _env(f"{env_prefix}_ENDPOINT"),
            region=mapping.get("region") or _env(f"{env_prefix}_REGION"),
            access_key_id=mapping.get("access_key_id") or _env(f"{env_prefix}_ACCESS_KEY_ID"),
            secret_access_key=mapping.get("secret_access_key")
            or _env(f"{env_prefix}_SECRET_ACCESS_KEY"),
            public_base_url=str(public_base).rstrip("/") if public_base else None,
        )


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths, object store settings and pipeline tunables."""

    storage_root: Path
    database_file: Path
    staging_store: StoreConfig
    permanent_store: StoreConfig
    publish_concurrency: int = DEFAULT_PUBLISH_CONCURRENCY
    admin_api_key: Optional[str] = None

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".mangapub" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()
        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        stores = mapping.get("stores") or {}
        staging_store = StoreConfig.from_mapping(
            "staging", stores.get("staging") or {}, storage_root=storage_root
        )
        permanent_store = StoreConfig.from_mapping(
            "permanent", stores.get("permanent") or {}, storage_root=storage_root
        )

        try:
            concurrency = int(mapping.get("publish_concurrency", DEFAULT_PUBLISH_CONCURRENCY))
        except (TypeError, ValueError):
            concurrency = DEFAULT_PUBLISH_CONCURRENCY
        if concurrency < 1:
            LOGGER.warning("publish_concurrency=%s is invalid; using 1", concurrency)
            concurrency = 1

        admin_api_key = mapping.get("admin_api_key") or _env("MANGAPUB_ADMIN_API_KEY")

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            staging_store=staging_store,
            permanent_store=permanent_store,
            publish_concurrency=concurrency,
            admin_api_key=admin_api_key,
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "DEFAULT_PUBLISH_CONCURRENCY", "StoreConfig", "load_config"]
