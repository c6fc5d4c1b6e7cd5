"""Source item providers.

Article ingestion happens elsewhere; the conveyor only needs to look up
an article's title and body by ID.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path

import httpx

from .errors import SourceItemNotFoundError
from .models import SourceItem


class SourceProvider(ABC):
    """Looks up source items by ID."""

    @abstractmethod
    async def get_source_item(self, item_id: str) -> SourceItem:
        """Return the item.

        Raises:
            SourceItemNotFoundError: If the item does not exist.
        """


class InMemorySourceProvider(SourceProvider):
    """Serves items from a dict, mostly for tests and demos."""

    def __init__(self, items: list[SourceItem] | None = None):
        self._items = {item.id: item for item in items or []}

    def add(self, item: SourceItem) -> None:
        self._items[item.id] = item

    def list_ids(self) -> list[str]:
        return list(self._items)

    async def get_source_item(self, item_id: str) -> SourceItem:
        item = self._items.get(item_id)
        if item is None:
            raise SourceItemNotFoundError(item_id)
        return item


class JsonSourceProvider(InMemorySourceProvider):
    """Loads items from a JSON file or a directory of JSON files.

    Each file holds either a single ``{id, title, body}`` object or a list
    of them.
    """

    def __init__(self, path: Path | str):
        super().__init__()
        path = Path(path)
        files = sorted(path.glob("*.json")) if path.is_dir() else [path]
        for file in files:
            with open(file) as f:
                data = json.load(f)
            records = data if isinstance(data, list) else [data]
            for record in records:
                self.add(SourceItem.from_dict(record))


# Default timeout for article service requests (seconds)
DEFAULT_TIMEOUT = 30.0


class HttpSourceProvider(SourceProvider):
    """Fetches items from an article service at ``{base_url}/{item_id}``.

    The service answers with a ``{id, title, body}`` JSON object and a
    404 for unknown IDs.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def get_source_item(self, item_id: str) -> SourceItem:
        async with httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=True, transport=self._transport
        ) as client:
            response = await client.get(f"{self.base_url}/{item_id}")
            if response.status_code == 404:
                raise SourceItemNotFoundError(item_id)
            response.raise_for_status()
            data = response.json()

        data.setdefault("id", item_id)
        return SourceItem.from_dict(data)
