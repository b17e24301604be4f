"""Object storage backends for product images.

Two backends share the same small surface (``upload``, ``public_url``,
``remove``):

* :class:`LocalObjectStore` writes files below a directory on disk. The
  application serves them back from ``/storage/<key>``.
* :class:`SupabaseObjectStore` stores objects in a hosted bucket through
  the storage REST API.

Uploads never overwrite: an existing key raises
:class:`DuplicateObjectError` instead of replacing the object.
"""

import os
from typing import Iterable, List, Optional
from urllib.parse import quote, urljoin

import requests
from flask import request
from werkzeug.security import safe_join


class StorageError(Exception):
    """The object store rejected or failed an operation."""


class DuplicateObjectError(StorageError):
    """An object already exists at the requested key."""


class ObjectStore:
    def __init__(self, cache_control: str = "3600"):
        self.cache_control = str(cache_control)

    def upload(self, key: str, data: bytes, content_type: Optional[str] = None):
        raise NotImplementedError

    def public_url(self, key: str) -> str:
        raise NotImplementedError

    def remove(self, keys: Iterable[str]) -> None:
        raise NotImplementedError


class LocalObjectStore(ObjectStore):
    def __init__(
        self,
        root: str,
        base_url: Optional[str] = None,
        cache_control: str = "3600",
    ):
        super().__init__(cache_control)
        self.root = root
        self.base_url = base_url
        os.makedirs(self.root, exist_ok=True)

    def resolve_path(self, key: str) -> str:
        destination = safe_join(self.root, key)
        if destination is None:
            raise StorageError(f"Invalid storage key: {key!r}")
        return destination

    def upload(self, key: str, data: bytes, content_type: Optional[str] = None):
        destination = self.resolve_path(key)
        try:
            os.makedirs(os.path.dirname(destination), exist_ok=True)
            # "x" mode fails when the file is already there.
            with open(destination, "xb") as handle:
                handle.write(data)
        except FileExistsError as exc:
            raise DuplicateObjectError(f"An object already exists at {key}") from exc
        except OSError as exc:
            raise StorageError(f"Could not write {key}: {exc}") from exc
        return key

    def public_url(self, key: str) -> str:
        base_url = self.base_url or request.host_url
        if not base_url.endswith("/"):
            base_url = f"{base_url}/"
        return urljoin(base_url, f"storage/{quote(key)}")

    def remove(self, keys: Iterable[str]) -> None:
        for key in keys:
            try:
                os.remove(self.resolve_path(key))
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise StorageError(f"Could not remove {key}: {exc}") from exc


class SupabaseObjectStore(ObjectStore):
    def __init__(
        self,
        url: str,
        service_key: str,
        bucket: str = "images",
        cache_control: str = "3600",
        timeout: float = 30.0,
    ):
        super().__init__(cache_control)
        if not url or not service_key:
            raise StorageError("SUPABASE_URL and SUPABASE_SERVICE_KEY are required.")
        self.url = url.rstrip("/")
        self.service_key = service_key
        self.bucket = bucket
        self.timeout = timeout

    def _headers(self, extra=None):
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
        }
        if extra:
            headers.update(extra)
        return headers

    def _object_url(self, key: str = "") -> str:
        base = f"{self.url}/storage/v1/object/{self.bucket}"
        return f"{base}/{quote(key)}" if key else base

    def upload(self, key: str, data: bytes, content_type: Optional[str] = None):
        headers = self._headers(
            {
                "x-upsert": "false",
                "cache-control": f"max-age={self.cache_control}",
                "Content-Type": content_type or "application/octet-stream",
            }
        )
        try:
            response = requests.post(
                self._object_url(key), data=data, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise StorageError(f"Object store unavailable: {exc}") from exc

        if response.ok:
            return key

        body = response.text or ""
        if response.status_code == 409 or "Duplicate" in body or "already exists" in body:
            raise DuplicateObjectError(f"An object already exists at {key}")
        raise StorageError(
            f"Object store returned {response.status_code}: {body[:200]}"
        )

    def public_url(self, key: str) -> str:
        return f"{self.url}/storage/v1/object/public/{self.bucket}/{quote(key)}"

    def remove(self, keys: Iterable[str]) -> None:
        prefixes: List[str] = [key for key in keys if key]
        if not prefixes:
            return
        try:
            response = requests.delete(
                self._object_url(),
                json={"prefixes": prefixes},
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise StorageError(f"Object store unavailable: {exc}") from exc
        if not response.ok:
            raise StorageError(
                f"Object store returned {response.status_code}: {response.text[:200]}"
            )


def build_object_store(config) -> ObjectStore:
    backend = str(config.get("STORAGE_BACKEND", "local")).strip().lower()
    cache_control = config.get("STORAGE_CACHE_CONTROL", "3600")

    if backend == "supabase":
        return SupabaseObjectStore(
            config.get("SUPABASE_URL", ""),
            config.get("SUPABASE_SERVICE_KEY", ""),
            bucket=config.get("SUPABASE_BUCKET", "images"),
            cache_control=cache_control,
            timeout=float(config.get("STORAGE_TIMEOUT_SECONDS", 30)),
        )
    if backend == "local":
        return LocalObjectStore(
            config["STORAGE_ROOT"],
            base_url=config.get("PUBLIC_BASE_URL") or None,
            cache_control=cache_control,
        )
    raise StorageError(f"Unknown storage backend: {backend!r}")
