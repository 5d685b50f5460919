"""Unit tests for vaultsync.image_cache."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import aiosqlite
import httpx
import pytest
import respx

from vaultsync.config import ImageSettings
from vaultsync.image_cache import ImageCache, _timestamp

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
URL = "https://img.example.com/map.png"


def _png_response() -> httpx.Response:
    return httpx.Response(200, content=PNG, headers={"content-type": "image/png"})


@pytest.fixture()
async def image_db() -> AsyncGenerator[aiosqlite.Connection, None]:
    async with aiosqlite.connect(":memory:") as db:
        yield db


@pytest.fixture()
async def client() -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient() as client:
        yield client


async def _open(
    db: aiosqlite.Connection | None,
    client: httpx.AsyncClient,
    tmp_path: Path,
    **kwargs: Any,
) -> ImageCache:
    cache = ImageCache(db, client, tmp_path / "handles", **kwargs)
    await cache.init()
    return cache


async def _insert(db: aiosqlite.Connection, url: str, size: int, minutes_ago: int) -> None:
    when = _timestamp(datetime.now(UTC) - timedelta(minutes=minutes_ago))
    await db.execute(
        "INSERT INTO images (url, blob, size, content_type, cached_at, last_accessed) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (url, b"x" * size, size, "image/png", when, when),
    )
    await db.commit()


async def _urls(db: aiosqlite.Connection) -> set[str]:
    cursor = await db.execute("SELECT url FROM images")
    return {row[0] for row in await cursor.fetchall()}


# ---------------------------------------------------------------------------
# Cacheability
# ---------------------------------------------------------------------------


class TestIsCacheable:
    async def test_local_schemes_rejected(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path)
        for url in ("", "data:image/png;base64,AAAA", "blob:https://x/1", "file:///tmp/a.png"):
            assert cache.is_cacheable(url) is False
            assert await cache.get(url) is None

    async def test_no_cache_hosts_rejected(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(
            image_db, client, tmp_path, no_cache_hosts=["secure.notion-static.com"]
        )
        assert cache.is_cacheable("https://s3.secure.notion-static.com/a.png") is False
        assert cache.is_cacheable("https://secure.notion-static.com/a.png") is False
        assert cache.is_cacheable("https://notion-static.com/a.png") is True
        assert cache.is_cacheable(URL) is True

    async def test_malformed_urls_fall_back_to_original(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path)
        assert cache.is_cacheable("http://[broken/x.png") is False
        with respx.mock:
            assert await cache.get("http://[broken/x.png") is None
            assert await cache.get("http://exa\x00mple.com/x.png") is None
        assert await _urls(image_db) == set()


# ---------------------------------------------------------------------------
# get
# ---------------------------------------------------------------------------


class TestGet:
    async def test_download_materializes_handle(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path)
        with respx.mock:
            respx.get(URL).mock(return_value=_png_response())
            handle = await cache.get(URL)

        assert handle is not None
        assert handle.url == URL
        assert handle.content_type == "image/png"
        assert handle.size == len(PNG)
        assert handle.path.read_bytes() == PNG
        assert handle.path.suffix == ".png"
        assert handle.uri.startswith("file://")
        assert await _urls(image_db) == {URL}

    async def test_front_cache_hit_skips_network(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path)
        with respx.mock:
            route = respx.get(URL).mock(return_value=_png_response())
            first = await cache.get(URL)
            second = await cache.get(URL)

        assert route.call_count == 1
        assert first is second

    async def test_durable_hit_survives_new_session(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        with respx.mock:
            route = respx.get(URL).mock(return_value=_png_response())
            await (await _open(image_db, client, tmp_path)).get(URL)
            handle = await (await _open(image_db, client, tmp_path)).get(URL)

        assert route.call_count == 1
        assert handle is not None
        assert handle.path.read_bytes() == PNG

    async def test_concurrent_gets_share_one_download(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path)
        with respx.mock:
            route = respx.get(URL).mock(return_value=_png_response())
            handles = await asyncio.gather(*(cache.get(URL) for _ in range(5)))

        assert route.call_count == 1
        assert all(handle is not None for handle in handles)

    async def test_expired_entry_is_redownloaded(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path)
        with respx.mock:
            route = respx.get(URL).mock(return_value=_png_response())
            await cache.get(URL)
            await cache.get(URL, ttl=timedelta(0))

        assert route.call_count == 2

    async def test_skip_cache_forces_download(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path)
        with respx.mock:
            route = respx.get(URL).mock(return_value=_png_response())
            await cache.get(URL)
            await cache.get(URL, skip_cache=True)

        assert route.call_count == 2

    async def test_lenient_retry_after_strict_failure(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path)
        with respx.mock:
            strict = respx.get(URL, headers={"Accept": "image/*"}).mock(
                return_value=httpx.Response(406)
            )
            lenient = respx.get(URL).mock(return_value=_png_response())
            handle = await cache.get(URL)

        assert strict.call_count == 1
        assert lenient.call_count == 1
        assert handle is not None

    async def test_lenient_retry_follows_redirects(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path)
        target = "https://cdn.example.com/map.png"
        with respx.mock:
            respx.get(URL).mock(return_value=httpx.Response(302, headers={"location": target}))
            respx.get(target).mock(return_value=_png_response())
            handle = await cache.get(URL)

        assert handle is not None
        assert handle.path.read_bytes() == PNG

    async def test_failed_download_returns_none(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path)
        with respx.mock:
            respx.get(URL).mock(return_value=httpx.Response(404))
            assert await cache.get(URL) is None
        assert await _urls(image_db) == set()

    async def test_network_error_returns_none(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path)
        with respx.mock:
            respx.get(URL).mock(side_effect=httpx.ConnectError("Connection refused"))
            assert await cache.get(URL) is None

    async def test_front_cache_bounded(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path, max_memory_entries=2)
        urls = [f"https://img.example.com/{i}.png" for i in range(3)]
        with respx.mock:
            for url in urls:
                respx.get(url).mock(return_value=_png_response())
            handles = [await cache.get(url) for url in urls]

        assert handles[0] is not None
        assert not handles[0].path.exists()
        assert all(handle is not None and handle.path.exists() for handle in handles[1:])

    async def test_works_without_durable_store(
        self, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = ImageCache(None, client, tmp_path / "handles")
        assert await cache.init() is False
        with respx.mock:
            respx.get(URL).mock(return_value=_png_response())
            handle = await cache.get(URL)
        assert handle is not None


class TestPreload:
    async def test_preload_downloads_every_cacheable_url(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path)
        urls = [f"https://img.example.com/{i}.png" for i in range(7)]
        with respx.mock:
            routes = [respx.get(url).mock(return_value=_png_response()) for url in urls]
            await cache.preload([*urls, "data:image/png;base64,AAAA"])

        assert all(route.call_count == 1 for route in routes)
        assert await _urls(image_db) == set(urls)


# ---------------------------------------------------------------------------
# Maintenance and clearing
# ---------------------------------------------------------------------------


class TestMaintenance:
    async def test_count_bound_evicts_least_recently_accessed(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path, max_entries=3)
        for i in range(5):
            await _insert(image_db, f"u{i}", 10, minutes_ago=50 - i)

        assert await cache.run_maintenance() == 2
        assert await _urls(image_db) == {"u2", "u3", "u4"}

    async def test_byte_bound_frees_down_to_eighty_percent(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path, max_bytes=1000)
        for i in range(5):
            await _insert(image_db, f"u{i}", 300, minutes_ago=50 - i)

        # 1500 bytes -> at most 800 must remain
        assert await cache.run_maintenance() == 3
        assert await _urls(image_db) == {"u3", "u4"}

    async def test_count_and_byte_bounds_combine(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path, max_entries=4, max_bytes=1000)
        for i in range(5):
            await _insert(image_db, f"u{i}", 300, minutes_ago=50 - i)

        assert await cache.run_maintenance() == 3
        assert await _urls(image_db) == {"u3", "u4"}

    async def test_within_bounds_is_noop(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path, max_entries=10, max_bytes=10_000)
        for i in range(3):
            await _insert(image_db, f"u{i}", 100, minutes_ago=i)
        assert await cache.run_maintenance() == 0

    async def test_init_runs_maintenance(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        await _open(image_db, client, tmp_path)
        for i in range(4):
            await _insert(image_db, f"u{i}", 10, minutes_ago=10 - i)

        await _open(image_db, client, tmp_path, max_entries=2)

        assert await _urls(image_db) == {"u2", "u3"}


class TestClearAll:
    async def test_clear_all_releases_handles_and_empties_store(
        self, image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
    ) -> None:
        cache = await _open(image_db, client, tmp_path)
        with respx.mock:
            respx.get(URL).mock(return_value=_png_response())
            handle = await cache.get(URL)

        await cache.clear_all()

        assert handle is not None
        assert not handle.path.exists()
        assert await _urls(image_db) == set()


async def test_from_settings(
    image_db: aiosqlite.Connection, client: httpx.AsyncClient, tmp_path: Path
) -> None:
    settings = ImageSettings(
        handle_dir=str(tmp_path / "handles"), max_entries=2, no_cache_hosts=["example.org"]
    )
    cache = ImageCache.from_settings(image_db, client, settings)
    assert await cache.init() is True
    assert cache.is_cacheable("https://cdn.example.org/a.png") is False
    for i in range(3):
        await _insert(image_db, f"u{i}", 10, minutes_ago=10 - i)
    assert await cache.run_maintenance() == 1
