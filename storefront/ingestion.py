"""Product upload pipeline.

A submission carries one main image, up to five secondary images and the
product metadata. Each image is stored under a unique key inside a folder
shared by the submission, then a single product document referencing the
public URLs is inserted.

The steps are not atomic. :class:`UploadSaga` remembers which objects were
stored so that a failure later in the pipeline can log them and, when
enabled, remove them again.
"""

import math
import os
import re
import time
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

from flask import current_app
from pymongo.errors import PyMongoError

from .errors import InputError, InsertError, UploadError
from .storage import StorageError

MAX_SECONDARY_IMAGES = 5
DEFAULT_ALLOWED_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "gif", "webp"})
PRODUCT_TEXT_FIELDS = (
    "title",
    "brand",
    "category",
    "condition",
    "description",
    "features",
    "location",
    "delivery",
)

_UNSAFE_CHARACTERS = re.compile(r"[^A-Za-z0-9.-]")


def sanitize_file_name(filename: Optional[str]) -> str:
    decomposed = unicodedata.normalize("NFD", str(filename or ""))
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return _UNSAFE_CHARACTERS.sub("_", stripped) or "file"


def current_millis() -> int:
    return int(time.time() * 1000)


def build_folder_key(prefix: str = "uploads") -> str:
    prefix = str(prefix or "").strip("/")
    timestamp = current_millis()
    return f"{prefix}/{timestamp}" if prefix else str(timestamp)


def build_storage_key(folder: str, filename: Optional[str]) -> str:
    return f"{folder}/{current_millis()}_{uuid4()}_{sanitize_file_name(filename)}"


def has_file(image_file) -> bool:
    return bool(image_file and getattr(image_file, "filename", ""))


def allowed_image_extension(filename: str, allowed_extensions: Iterable[str]) -> bool:
    extension = os.path.splitext(filename)[1].lower().lstrip(".")
    if not extension:
        return False
    return extension in allowed_extensions


@dataclass
class ProductSubmission:
    fields: Dict[str, object]
    main_image: object
    secondary_images: List[object] = field(default_factory=list)


def parse_price(raw_value) -> float:
    text = str(raw_value if raw_value is not None else "").strip()
    if not text:
        raise InputError("A price is required.")
    try:
        price_value = round(float(text), 2)
    except ValueError:
        raise InputError("Price must be a valid number.")
    if not math.isfinite(price_value):
        raise InputError("Price must be a valid number.")
    if price_value < 0:
        raise InputError("Price cannot be negative.")
    return price_value


def parse_quantity(raw_value) -> int:
    text = str(raw_value if raw_value is not None else "").strip()
    if not text:
        return 0
    try:
        quantity_value = int(text)
    except ValueError:
        raise InputError("Quantity must be a whole number.")
    if quantity_value < 0:
        raise InputError("Quantity cannot be negative.")
    return quantity_value


def parse_submission(form, files, allowed_extensions=DEFAULT_ALLOWED_EXTENSIONS):
    """Validate a multipart submission without touching any collaborator."""
    main_image = files.get("main_image")
    if not has_file(main_image):
        raise InputError("A main image is required.")

    # Extra secondary images past the limit are dropped, not rejected.
    secondary_images = [
        image_file
        for image_file in files.getlist("secondary_images")
        if has_file(image_file)
    ][:MAX_SECONDARY_IMAGES]

    for image_file in [main_image, *secondary_images]:
        if not allowed_image_extension(image_file.filename, allowed_extensions):
            raise InputError(
                f"Unsupported image format for {image_file.filename!r}. "
                "Upload PNG, JPG, JPEG, GIF, or WEBP files."
            )

    fields: Dict[str, object] = {
        name: str(form.get(name, "") or "").strip() for name in PRODUCT_TEXT_FIELDS
    }
    if not fields["title"]:
        raise InputError("A product title is required.")
    fields["price"] = parse_price(form.get("price"))
    fields["quantity"] = parse_quantity(form.get("quantity"))

    return ProductSubmission(
        fields=fields, main_image=main_image, secondary_images=secondary_images
    )


class UploadSaga:
    def __init__(self, store, folder: str):
        self.store = store
        self.folder = folder
        self.completed_keys: List[str] = []

    def store_image(self, image_file, step: str) -> str:
        key = build_storage_key(self.folder, image_file.filename)
        try:
            self.store.upload(
                key, image_file.read(), content_type=getattr(image_file, "mimetype", None)
            )
            self.completed_keys.append(key)
            return self.store.public_url(key)
        except StorageError as exc:
            raise UploadError(step, str(exc)) from exc

    def compensate(self, cleanup: bool) -> None:
        if not self.completed_keys:
            return
        current_app.logger.error(
            "Upload to %s aborted after storing %d object(s): %s",
            self.folder,
            len(self.completed_keys),
            ", ".join(self.completed_keys),
        )
        if not cleanup:
            return
        try:
            self.store.remove(self.completed_keys)
        except StorageError as exc:
            current_app.logger.error(
                "Orphaned objects left in storage (%s): %s",
                exc,
                ", ".join(self.completed_keys),
            )
            return
        current_app.logger.info(
            "Removed %d orphaned object(s) from %s", len(self.completed_keys), self.folder
        )


def ingest_product(
    collection,
    store,
    submission: ProductSubmission,
    user_id: str,
    folder_prefix: str = "uploads",
    cleanup_on_failure: bool = True,
) -> Dict:
    """Store the submitted images and insert the product document.

    Returns the inserted document including its ``_id``.
    Raises :class:`UploadError` or :class:`InsertError`; either way the
    objects stored so far are handed to :meth:`UploadSaga.compensate`.
    """
    saga = UploadSaga(store, build_folder_key(folder_prefix))

    try:
        main_image_url = saga.store_image(submission.main_image, "main image")

        secondary_image_urls = []
        for position, image_file in enumerate(submission.secondary_images, start=1):
            url = saga.store_image(image_file, f"secondary image {position}")
            secondary_image_urls.append({"url": url})

        timestamp = datetime.utcnow()
        product_document = {
            **submission.fields,
            "user_id": user_id,
            "main_image_url": main_image_url,
            "secondary_image_urls": secondary_image_urls,
            "storage_keys": list(saga.completed_keys),
            "is_available": True,
            "created_at": timestamp,
            "updated_at": timestamp,
        }

        try:
            result = collection.insert_one(product_document)
        except PyMongoError as exc:
            raise InsertError(str(exc)) from exc
    except (UploadError, InsertError):
        saga.compensate(cleanup_on_failure)
        raise

    product_document["_id"] = result.inserted_id
    current_app.logger.info(
        "Stored product %s with %d image(s) in %s",
        result.inserted_id,
        len(saga.completed_keys),
        saga.folder,
    )
    return product_document
