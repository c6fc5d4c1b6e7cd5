"""Tests for source item providers."""

import json
from pathlib import Path

import httpx
import pytest

from script_conveyor.errors import SourceItemNotFoundError
from script_conveyor.models import SourceItem
from script_conveyor.sources import (
    HttpSourceProvider,
    InMemorySourceProvider,
    JsonSourceProvider,
)


class TestInMemorySourceProvider:
    @pytest.mark.asyncio
    async def test_lookup(self):
        provider = InMemorySourceProvider([SourceItem(id="a1", title="T", body="B")])

        item = await provider.get_source_item("a1")
        assert item.title == "T"
        assert provider.list_ids() == ["a1"]

    @pytest.mark.asyncio
    async def test_unknown_item(self):
        with pytest.raises(SourceItemNotFoundError):
            await InMemorySourceProvider().get_source_item("missing")


class TestJsonSourceProvider:
    @pytest.mark.asyncio
    async def test_file_with_list(self, tmp_path: Path):
        path = tmp_path / "articles.json"
        path.write_text(json.dumps([
            {"id": "a1", "title": "One", "body": "First."},
            {"id": 2, "title": "Two", "content": "Second."},
        ]))

        provider = JsonSourceProvider(path)

        assert provider.list_ids() == ["a1", "2"]
        item = await provider.get_source_item("2")
        assert item.body == "Second."

    def test_directory_of_objects(self, tmp_path: Path):
        (tmp_path / "b.json").write_text(json.dumps({"id": "b", "title": "B", "body": "x"}))
        (tmp_path / "a.json").write_text(json.dumps({"id": "a", "title": "A", "body": "y"}))
        (tmp_path / "notes.txt").write_text("ignored")

        assert JsonSourceProvider(tmp_path).list_ids() == ["a", "b"]

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            JsonSourceProvider(tmp_path / "nope.json")


def article_service(request: httpx.Request) -> httpx.Response:
    """Fake article service with a single article."""
    if request.url.path == "/articles/a1":
        return httpx.Response(200, json={"title": "Solar record", "body": "Panels beat the record."})
    if request.url.path == "/articles/broken":
        return httpx.Response(500)
    return httpx.Response(404)


class TestHttpSourceProvider:
    """Tests for the article service provider."""

    @pytest.fixture
    def provider(self) -> HttpSourceProvider:
        return HttpSourceProvider(
            "http://articles.test/articles/", transport=httpx.MockTransport(article_service)
        )

    @pytest.mark.asyncio
    async def test_fetch(self, provider: HttpSourceProvider):
        item = await provider.get_source_item("a1")

        assert item.id == "a1"
        assert item.title == "Solar record"
        assert item.body == "Panels beat the record."

    @pytest.mark.asyncio
    async def test_not_found(self, provider: HttpSourceProvider):
        with pytest.raises(SourceItemNotFoundError):
            await provider.get_source_item("missing")

    @pytest.mark.asyncio
    async def test_server_error_propagates(self, provider: HttpSourceProvider):
        with pytest.raises(httpx.HTTPStatusError):
            await provider.get_source_item("broken")
