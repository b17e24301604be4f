from datetime import datetime
from typing import Dict, List
from urllib.parse import urljoin

from flask import current_app
from pymongo.errors import PyMongoError

STATIC_PAGES = ("", "products", "catalogue")


def collect_sitemap_entries(collection, base_url: str) -> List[Dict[str, str]]:
    if not base_url.endswith("/"):
        base_url = f"{base_url}/"

    entries = [{"loc": urljoin(base_url, path), "lastmod": ""} for path in STATIC_PAGES]

    try:
        documents = list(collection.find({}, {"_id": 1, "updated_at": 1, "created_at": 1}))
    except PyMongoError as exc:
        current_app.logger.warning("Sitemap lists static pages only: %s", exc)
        return entries

    for document in documents:
        modified = document.get("updated_at") or document.get("created_at")
        entries.append(
            {
                "loc": urljoin(base_url, f"product/{document['_id']}"),
                "lastmod": modified.strftime("%Y-%m-%d")
                if isinstance(modified, datetime)
                else "",
            }
        )
    return entries
