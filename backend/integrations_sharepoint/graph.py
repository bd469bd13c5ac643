"""
Microsoft Graph access to SharePoint list items.

Notifications only say *which* list changed (and sometimes which item), so
the dispatcher refetches the item with `$expand=fields` before anything else.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from collections.abc import Iterator
from typing import Any

import httpx

from integrations_uipath.auth import TokenCache, get_token_cache

from .config import SharePointConnection, get_sharepoint_connection
from .exceptions import InvalidResource, ItemUnavailable

logger = logging.getLogger(__name__)

_RESOURCE_RE = re.compile(
    r"^/?sites/(?P<site>.+?)/lists/(?P<list>[^/]+)(?:/items/(?P<item>[^/?]+))?/?$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ListResource:
    site_id: str
    list_id: str
    item_id: str | None = None

    @property
    def list_path(self) -> str:
        return f"sites/{self.site_id}/lists/{self.list_id}"

    @property
    def list_key(self) -> str:
        """Identity snapshots are stored under."""
        return self.list_path.lower()


def parse_resource(resource: str, resource_data: dict | None = None) -> ListResource:
    """
    Parse a notification resource locator.

    Accepts `sites/{site}/lists/{list}` with an optional `/items/{id}`; when
    the path names no item, `resourceData.id` is used if present.
    """
    match = _RESOURCE_RE.match((resource or "").strip())
    if not match:
        raise InvalidResource(f"Unrecognized resource locator: {resource!r}")

    item_id = match.group("item")
    if not item_id and isinstance(resource_data, dict):
        raw_id = resource_data.get("id")
        if raw_id not in (None, ""):
            item_id = str(raw_id)
    return ListResource(
        site_id=match.group("site").rstrip("/"),
        list_id=match.group("list"),
        item_id=item_id or None,
    )


@dataclass
class SharePointItem:
    item_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    web_url: str = ""
    created: str = ""
    last_modified: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> "SharePointItem":
        fields = data.get("fields") if isinstance(data.get("fields"), dict) else {}
        return cls(
            item_id=str(data.get("id") or fields.get("id") or ""),
            fields=dict(fields),
            web_url=str(data.get("webUrl") or ""),
            created=str(data.get("createdDateTime") or ""),
            last_modified=str(data.get("lastModifiedDateTime") or ""),
            raw=data,
        )

    def as_item(self) -> dict[str, Any]:
        """Item-level properties with the list fields merged over them."""
        merged: dict[str, Any] = {
            "id": self.item_id,
            "webUrl": self.web_url,
            "createdDateTime": self.created,
            "lastModifiedDateTime": self.last_modified,
        }
        merged.update(self.fields)
        return merged


class SharePointGraphClient:
    def __init__(
        self,
        connection: SharePointConnection | None = None,
        *,
        token_cache: TokenCache | None = None,
    ):
        self.connection = connection or get_sharepoint_connection()
        self.token_cache = token_cache or get_token_cache()

    def _get(self, url: str, params: dict[str, str] | None, *, extra_headers: dict[str, str] | None = None) -> dict:
        credentials = self.connection.credentials
        with httpx.Client(timeout=self.connection.timeout_seconds) as client:
            for attempt in (1, 2):
                headers = {
                    "Authorization": f"Bearer {self.token_cache.get_token(credentials)}",
                    "Accept": "application/json",
                }
                headers.update(extra_headers or {})
                try:
                    response = client.get(url, params=params, headers=headers)
                except httpx.TimeoutException as exc:
                    raise ItemUnavailable(f"Graph request timed out: {url}") from exc
                except httpx.RequestError as exc:
                    raise ItemUnavailable(f"Graph request failed: {exc}") from exc

                if response.status_code == 401 and attempt == 1:
                    self.token_cache.invalidate(credentials)
                    continue
                if response.status_code == 404:
                    raise ItemUnavailable("Item not found", status_code=404)
                if not 200 <= response.status_code < 300:
                    raise ItemUnavailable(
                        f"Graph returned HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                try:
                    data = response.json()
                except ValueError as exc:
                    raise ItemUnavailable("Graph returned a non-JSON body") from exc
                return data if isinstance(data, dict) else {}
        raise ItemUnavailable("Graph rejected a fresh token", status_code=401)

    def fetch_item(self, resource: ListResource) -> SharePointItem:
        """
        Fetch the notified item, or the most recently modified item when the
        notification did not identify one.
        """
        self.connection.require_complete()
        base = f"{self.connection.graph_base_url}/{resource.list_path}/items"

        if resource.item_id:
            data = self._get(f"{base}/{resource.item_id}", {"$expand": "fields"})
        else:
            listing = self._get(
                base,
                {"$expand": "fields", "$orderby": "lastModifiedDateTime desc", "$top": "1"},
                extra_headers={"Prefer": "HonorNonIndexedQueriesWarningMayFailRandomly"},
            )
            values = listing.get("value") or []
            if not values:
                raise ItemUnavailable(f"No items in {resource.list_path}")
            data = values[0]
            logger.info(
                "Notification for %s named no item; using most recent item %s",
                resource.list_path,
                data.get("id"),
            )

        item = SharePointItem.from_graph(data)
        if not item.item_id:
            raise ItemUnavailable("Graph item response had no id")
        logger.debug("Fetched item %s from %s (%d fields)", item.item_id, resource.list_path, len(item.fields))
        return item

    def iter_items(self, resource: ListResource, *, page_size: int = 200) -> Iterator[SharePointItem]:
        """Yield every item of the list, following `@odata.nextLink` pages."""
        self.connection.require_complete()
        url: str | None = f"{self.connection.graph_base_url}/{resource.list_path}/items"
        params: dict[str, str] | None = {"$expand": "fields", "$top": str(max(1, page_size))}
        pages = 0
        while url:
            page = self._get(url, params)
            pages += 1
            for data in page.get("value") or []:
                if not isinstance(data, dict):
                    continue
                item = SharePointItem.from_graph(data)
                if item.item_id:
                    yield item
            # nextLink already carries the query string.
            url = page.get("@odata.nextLink") or None
            params = None
        logger.debug("Listed %s in %d page(s)", resource.list_path, pages)
