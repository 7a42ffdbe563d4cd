from __future__ import annotations

from typing import Any, cast
from unittest.mock import AsyncMock

import pytest

from bookscraper.core.client import ListingPage
from bookscraper.core.exceptions import TransientRemoteError
from bookscraper.models import JobStatus, JobType
from bookscraper.scraper.list_crawler import ListCrawler
from bookscraper.scraper.tasks import Channel, ListCrawlTask

from .conftest import SOURCE, make_config, make_listing_page


def make_crawler(mock_client, store, jobs, dispatcher, **crawler) -> ListCrawler:
    return ListCrawler(
        client=cast("Any", mock_client),
        store=store,
        jobs=jobs,
        dispatcher=dispatcher,
        config=make_config(crawler={"max_pages": 3, "page_size": 40, **crawler}),
    )


async def _started_job(jobs) -> str:
    return await jobs.create(JobType.LIST_CRAWL)


@pytest.mark.asyncio
async def test_trigger_crawl_publishes_list_task(mock_client, store, jobs, dispatcher, bus):
    crawler = make_crawler(mock_client, store, jobs, dispatcher)

    job_id = await crawler.trigger_crawl()

    assert (await jobs.get(job_id)).status == JobStatus.PENDING
    [payload] = bus.published[Channel.LIST_CRAWL]
    assert payload["jobId"] == job_id
    assert payload["type"] == "LIST_CRAWL"
    assert "timestamp" in payload


@pytest.mark.asyncio
async def test_two_full_pages_then_empty(mock_client, store, jobs, dispatcher, bus):
    mock_client.get_listing_page = AsyncMock(
        side_effect=[make_listing_page(1, 40), make_listing_page(41, 40), ListingPage()]
    )
    crawler = make_crawler(mock_client, store, jobs, dispatcher, bulk_batch_size=25)
    job_id = await _started_job(jobs)

    await crawler.run(job_id)

    job = await jobs.get(job_id)
    assert job.status == JobStatus.COMPLETED
    assert (job.succeeded, job.duplicates, job.errors) == (80, 0, 0)
    assert (job.crawled, job.total, job.percent) == (80, 80, 100)

    detail_tasks = bus.published[Channel.DETAIL_CRAWL]
    assert len(detail_tasks) == 80
    assert {t["itemId"] for t in detail_tasks} == set(range(1, 81))
    assert all(t["retryCount"] == 0 and t["jobId"] == job_id and t["source"] == SOURCE for t in detail_tasks)

    assert mock_client.get_listing_page.await_count == 3
    assert [c.args for c in mock_client.get_listing_page.await_args_list] == [(1, 40), (2, 40), (3, 40)]

    assert await store.count_price_eligible() == 80
    book = await store.get_book(1)
    assert book is not None
    assert book.needs_detail_crawl is True
    assert book.detail_crawl_attempts == 0
    assert book.original_price == 100000
    assert book.promotional_price == 90000


@pytest.mark.asyncio
async def test_recrawl_updates_in_place_and_keeps_crawl_state(mock_client, store, jobs, dispatcher):
    crawler = make_crawler(mock_client, store, jobs, dispatcher, max_pages=1)

    mock_client.get_listing_page = AsyncMock(return_value=make_listing_page(1, 10))
    await crawler.run(await _started_job(jobs))

    await store.update_book_by_key(
        "1", SOURCE, {"needs_detail_crawl": False, "detail_crawl_success": True}, increment_attempts=True
    )

    second = await _started_job(jobs)
    await crawler.run(second)

    job = await jobs.get(second)
    assert (job.succeeded, job.duplicates, job.errors) == (0, 10, 0)
    assert await store.count_price_eligible() == 10

    book = await store.get_book(1)
    assert book is not None
    assert book.needs_detail_crawl is False
    assert book.detail_crawl_attempts == 1
    assert book.detail_crawl_success is True


@pytest.mark.asyncio
async def test_page_error_is_counted_and_loop_continues(mock_client, store, jobs, dispatcher, bus):
    mock_client.get_listing_page = AsyncMock(
        side_effect=[TransientRemoteError("HTTP 503", status=503), make_listing_page(41, 40), ListingPage()]
    )
    crawler = make_crawler(mock_client, store, jobs, dispatcher)
    job_id = await _started_job(jobs)

    await crawler.run(job_id)

    job = await jobs.get(job_id)
    assert job.status == JobStatus.COMPLETED
    assert (job.succeeded, job.duplicates, job.errors) == (40, 0, 1)
    assert len(bus.published[Channel.DETAIL_CRAWL]) == 40


@pytest.mark.asyncio
async def test_malformed_items_count_as_errors(mock_client, store, jobs, dispatcher):
    mock_client.get_listing_page = AsyncMock(side_effect=[make_listing_page(1, 5, skipped=2), ListingPage()])
    crawler = make_crawler(mock_client, store, jobs, dispatcher)
    job_id = await _started_job(jobs)

    await crawler.run(job_id)

    job = await jobs.get(job_id)
    assert (job.succeeded, job.errors) == (5, 2)


@pytest.mark.asyncio
async def test_redelivered_task_for_finished_job_is_skipped(mock_client, store, jobs, dispatcher):
    mock_client.get_listing_page = AsyncMock(return_value=ListingPage())
    crawler = make_crawler(mock_client, store, jobs, dispatcher)
    job_id = await _started_job(jobs)

    await crawler.handle(ListCrawlTask(job_id=job_id))
    assert (await jobs.get(job_id)).status == JobStatus.COMPLETED
    calls = mock_client.get_listing_page.await_count

    await crawler.handle(ListCrawlTask(job_id=job_id))
    assert mock_client.get_listing_page.await_count == calls


@pytest.mark.asyncio
async def test_task_with_other_type_is_ignored(mock_client, store, jobs, dispatcher):
    crawler = make_crawler(mock_client, store, jobs, dispatcher)
    job_id = await _started_job(jobs)

    await crawler.handle(ListCrawlTask(job_id=job_id, type="SOMETHING_ELSE"))

    assert (await jobs.get(job_id)).status == JobStatus.PENDING
    mock_client.get_listing_page.assert_not_awaited()


@pytest.mark.asyncio
async def test_unhandled_error_marks_job_failed(mock_client, store, jobs, dispatcher, monkeypatch):
    mock_client.get_listing_page = AsyncMock(return_value=ListingPage())
    crawler = make_crawler(mock_client, store, jobs, dispatcher)
    job_id = await _started_job(jobs)
    monkeypatch.setattr(jobs, "complete", AsyncMock(side_effect=RuntimeError("db down")))

    await crawler.run(job_id)

    job = await jobs.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "db down"
