from __future__ import annotations

from types import SimpleNamespace
from typing import Any, cast
from unittest.mock import AsyncMock

import pytest

from bookscraper.core.exceptions import DuplicateKeyError, InvalidArgumentError, TransientRemoteError
from bookscraper.models import AuthorInfo, JobStatus, JobType
from bookscraper.scraper.detail_crawler import AuthorResolver, DetailCrawler
from bookscraper.scraper.tasks import Channel

from .conftest import SOURCE, make_config, make_detail, make_listing_item

JOB_ID = "00000000-0000-0000-0000-000000000001"


def make_crawler(mock_client, store, jobs, dispatcher, cache) -> DetailCrawler:
    config = make_config(crawler={"max_retry_attempts": 3, "retry_delay_seconds": 5.0})
    return DetailCrawler(
        client=cast("Any", mock_client),
        store=store,
        jobs=jobs,
        dispatcher=dispatcher,
        authors=AuthorResolver(store, cache, ttl=60),
        config=config,
    )


async def seed_book(store, item_id: int = 100):
    await store.upsert_books([make_listing_item(item_id).to_book_values(SOURCE)])
    return await store.get_book(1)


@pytest.mark.asyncio
async def test_successful_detail_crawl_updates_row_and_authors(mock_client, store, jobs, dispatcher, bus, cache):
    await seed_book(store)
    mock_client.get_product_detail = AsyncMock(
        return_value=make_detail(
            100,
            authors=[
                {"id": 501, "name": "Nguyen Nhat Anh", "slug": "nguyen-nhat-anh"},
                {"id": 502, "name": ""},
                {"name": "no id"},
            ],
        )
    )
    crawler = make_crawler(mock_client, store, jobs, dispatcher, cache)

    await crawler.run(100, JOB_ID, SOURCE, 0)

    book = await store.get_book(1)
    assert book is not None
    assert book.description == "<p>A long description</p>"
    assert book.promotional_price == 85000
    assert book.original_price == 100000
    assert book.quantity_sold == 12
    assert book.image == "https://img.example/detail.jpg"
    assert book.needs_detail_crawl is False
    assert book.detail_crawl_success is True
    assert book.detail_crawl_attempts == 1
    assert book.last_detail_crawl_at is not None

    author = await store.find_author("501", SOURCE)
    assert author is not None
    assert author.name == "Nguyen Nhat Anh"
    assert book.author_ids == [author.id]
    assert bus.delayed == []


@pytest.mark.asyncio
async def test_shared_author_is_created_once(mock_client, store, jobs, dispatcher, cache):
    await store.upsert_books([make_listing_item(i).to_book_values(SOURCE) for i in (100, 101)])
    mock_client.get_product_detail = AsyncMock(side_effect=[make_detail(100), make_detail(101)])
    crawler = make_crawler(mock_client, store, jobs, dispatcher, cache)

    await crawler.run(100, JOB_ID, SOURCE)
    await crawler.run(101, JOB_ID, SOURCE)

    first, second = await store.get_book(1), await store.get_book(2)
    assert first is not None and second is not None
    assert first.author_ids == second.author_ids == [1]


@pytest.mark.asyncio
async def test_failure_schedules_delayed_retry(mock_client, store, jobs, dispatcher, bus, cache):
    await seed_book(store)
    mock_client.get_product_detail = AsyncMock(side_effect=TransientRemoteError("timeout"))
    crawler = make_crawler(mock_client, store, jobs, dispatcher, cache)

    await crawler.run(100, JOB_ID, SOURCE, 0)

    book = await store.get_book(1)
    assert book is not None
    assert book.detail_crawl_attempts == 1
    assert book.detail_crawl_success is False
    assert book.last_detail_crawl_error == "timeout"
    assert book.needs_detail_crawl is True
    assert book.detail_crawl_permanently_failed is False

    [delayed] = bus.delayed
    assert delayed.channel == Channel.DETAIL_CRAWL
    assert delayed.delay_seconds == 5.0
    assert delayed.payload["retryCount"] == 1
    assert delayed.payload["itemId"] == 100
    assert bus.published[Channel.DETAIL_CRAWL] == []


@pytest.mark.asyncio
async def test_three_failures_mark_row_permanently_failed(mock_client, store, jobs, dispatcher, bus, cache):
    await seed_book(store)
    mock_client.get_product_detail = AsyncMock(return_value=None)
    crawler = make_crawler(mock_client, store, jobs, dispatcher, cache)

    for retry_count in range(3):
        await crawler.run(100, JOB_ID, SOURCE, retry_count)

    book = await store.get_book(1)
    assert book is not None
    assert book.detail_crawl_attempts == 3
    assert book.needs_detail_crawl is False
    assert book.detail_crawl_permanently_failed is True
    assert book.detail_crawl_success is False
    # 只有前两次失败安排了重试
    assert [d.delay_seconds for d in bus.delayed] == [5.0, 10.0]
    assert [d.payload["retryCount"] for d in bus.delayed] == [1, 2]


@pytest.mark.asyncio
async def test_missing_row_is_not_retried(mock_client, store, jobs, dispatcher, bus, cache):
    mock_client.get_product_detail = AsyncMock(return_value=make_detail(100, authors=[]))
    crawler = make_crawler(mock_client, store, jobs, dispatcher, cache)

    await crawler.run(100, JOB_ID, SOURCE)

    assert bus.delayed == []


@pytest.mark.asyncio
async def test_delayed_retry_is_released_to_channel(mock_client, store, jobs, dispatcher, bus, cache):
    await seed_book(store)
    mock_client.get_product_detail = AsyncMock(side_effect=TransientRemoteError("reset"))
    crawler = make_crawler(mock_client, store, jobs, dispatcher, cache)

    await crawler.run(100, JOB_ID, SOURCE)
    assert await bus.release_due(now=0) == 0
    assert await bus.release_due(now=float("inf")) == 1

    [payload] = bus.published[Channel.DETAIL_CRAWL]
    assert payload["retryCount"] == 1


@pytest.mark.asyncio
async def test_recrawl_missing_requeues_eligible_rows(mock_client, store, jobs, dispatcher, bus, cache):
    await store.add_book(external_id="1", source=SOURCE, needs_detail_crawl=True)
    await store.add_book(external_id="abc", source=SOURCE, needs_detail_crawl=True)
    await store.add_book(external_id="3", source=SOURCE, needs_detail_crawl=True, detail_crawl_attempts=1)
    await store.add_book(
        external_id="4", source=SOURCE, needs_detail_crawl=True, detail_crawl_permanently_failed=True
    )
    await store.add_book(external_id="5", source=SOURCE, needs_detail_crawl=True, detail_crawl_attempts=3)
    await store.add_book(external_id="6", source=SOURCE, needs_detail_crawl=False)
    crawler = make_crawler(mock_client, store, jobs, dispatcher, cache)

    job_id, emitted = await crawler.recrawl_missing(limit=10)

    assert emitted == 2
    tasks = bus.published[Channel.DETAIL_CRAWL]
    assert [(t["itemId"], t["retryCount"]) for t in tasks] == [(1, 0), (3, 1)]
    assert all(t["jobId"] == job_id for t in tasks)

    job = await jobs.get(job_id)
    assert job.type == JobType.DETAIL_RECRAWL
    assert job.status == JobStatus.COMPLETED
    assert (job.succeeded, job.errors) == (2, 1)


@pytest.mark.asyncio
@pytest.mark.parametrize("limit", [0, -1])
async def test_recrawl_missing_rejects_non_positive_limit(mock_client, store, jobs, dispatcher, bus, cache, limit):
    await store.add_book(external_id="1", source=SOURCE, needs_detail_crawl=True)
    crawler = make_crawler(mock_client, store, jobs, dispatcher, cache)

    with pytest.raises(InvalidArgumentError):
        await crawler.recrawl_missing(limit=limit)

    assert await jobs.list_jobs(job_type=JobType.DETAIL_RECRAWL) == []
    assert Channel.DETAIL_CRAWL not in bus.published


@pytest.mark.asyncio
async def test_author_duplicate_key_race_requeries(cache):
    store = SimpleNamespace(
        find_author=AsyncMock(side_effect=[None, SimpleNamespace(id=7)]),
        insert_author=AsyncMock(side_effect=DuplicateKeyError("dup")),
    )
    resolver = AuthorResolver(cast("Any", store), cache, ttl=60)
    author = AuthorInfo(id=501, name="A", slug="a")

    assert await resolver.resolve(author, SOURCE) == 7
    # 第二次命中缓存
    assert await resolver.resolve(author, SOURCE) == 7
    assert store.find_author.await_count == 2
    store.insert_author.assert_awaited_once()


@pytest.mark.asyncio
async def test_resolve_all_skips_failing_authors(cache):
    store = SimpleNamespace(
        find_author=AsyncMock(side_effect=[RuntimeError("db"), SimpleNamespace(id=3), SimpleNamespace(id=3)]),
        insert_author=AsyncMock(),
    )
    resolver = AuthorResolver(cast("Any", store), cache, ttl=60)
    authors = [AuthorInfo(id=1, name="X"), AuthorInfo(id=2, name="Y"), AuthorInfo(id=3, name="Z")]

    assert await resolver.resolve_all(authors, SOURCE) == [3]
