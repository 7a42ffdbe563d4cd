"""JobTracker 单元测试。"""

from __future__ import annotations

import uuid

import pytest

from bookscraper.core.exceptions import InvalidArgumentError, InvalidStateError, NotFoundError
from bookscraper.models import JobStatus, JobType
from bookscraper.scraper.jobs import CANCEL_MESSAGE, compute_percent, parse_job_id


def test_compute_percent_rounds_half_up_and_clamps():
    assert compute_percent(0, 0) == 0
    assert compute_percent(5, 0) == 0
    assert compute_percent(1, 3) == 33
    assert compute_percent(2, 3) == 67
    assert compute_percent(1, 8) == 13
    assert compute_percent(1, 200) == 1
    assert compute_percent(150, 100) == 100


def test_parse_job_id_rejects_malformed_ids():
    jid = uuid.uuid4()
    assert parse_job_id(str(jid)) == jid
    assert parse_job_id(jid) is jid
    with pytest.raises(InvalidArgumentError, match="Invalid ID format"):
        parse_job_id("not-a-uuid")


@pytest.mark.asyncio
async def test_create_starts_pending_with_zero_counters(jobs):
    job_id = await jobs.create(JobType.LIST_CRAWL)
    job = await jobs.get(job_id)

    assert job.status == JobStatus.PENDING
    assert job.type == JobType.LIST_CRAWL
    assert (job.crawled, job.total, job.succeeded, job.duplicates, job.errors, job.percent) == (0, 0, 0, 0, 0, 0)
    assert job.started_at is None


@pytest.mark.asyncio
async def test_get_unknown_and_malformed(jobs):
    with pytest.raises(NotFoundError):
        await jobs.get(str(uuid.uuid4()))
    with pytest.raises(InvalidArgumentError, match="Invalid ID format"):
        await jobs.get("123")


@pytest.mark.asyncio
async def test_start_only_from_pending(jobs):
    job_id = await jobs.create(JobType.LIST_CRAWL)
    job = await jobs.start(job_id)
    assert job.status == JobStatus.PROCESSING
    assert job.started_at is not None

    with pytest.raises(InvalidStateError, match="Current status: PROCESSING"):
        await jobs.start(job_id)


@pytest.mark.asyncio
async def test_update_progress_keeps_omitted_counters(jobs):
    job_id = await jobs.create(JobType.LIST_CRAWL)
    await jobs.start(job_id)

    await jobs.update_progress(job_id, 10, 120, succeeded=8, duplicates=2, errors=1)
    job = await jobs.update_progress(job_id, 40, 120)

    assert job is not None
    assert (job.crawled, job.total, job.percent) == (40, 120, 33)
    assert (job.succeeded, job.duplicates, job.errors) == (8, 2, 1)


@pytest.mark.asyncio
async def test_complete_sets_totals_from_counts(jobs):
    job_id = await jobs.create(JobType.LIST_CRAWL)
    await jobs.start(job_id)
    await jobs.update_progress(job_id, 50, 120)

    assert await jobs.complete(job_id, 70, 5, 3)
    job = await jobs.get(job_id)

    assert job.status == JobStatus.COMPLETED
    assert (job.crawled, job.total, job.percent) == (78, 78, 100)
    assert (job.succeeded, job.duplicates, job.errors) == (70, 5, 3)
    assert job.completed_at is not None


@pytest.mark.asyncio
async def test_complete_and_fail_do_not_regress_finished_jobs(jobs):
    job_id = await jobs.create(JobType.LIST_CRAWL)
    await jobs.start(job_id)
    assert await jobs.complete(job_id, 1, 0, 0)

    assert not await jobs.fail(job_id, "late failure")
    assert not await jobs.complete(job_id, 9, 9, 9)
    job = await jobs.get(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.succeeded == 1
    assert job.error_message is None


@pytest.mark.asyncio
async def test_fail_records_message(jobs):
    job_id = await jobs.create(JobType.PRICE_UPDATE)
    await jobs.start(job_id)

    assert await jobs.fail(job_id, "boom")
    job = await jobs.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "boom"


@pytest.mark.asyncio
async def test_cancel_running_and_finished_jobs(jobs):
    pending_id = await jobs.create(JobType.LIST_CRAWL)
    cancelled = await jobs.cancel(pending_id)
    assert cancelled.status == JobStatus.FAILED

    running_id = await jobs.create(JobType.LIST_CRAWL)
    await jobs.start(running_id)
    cancelled = await jobs.cancel(running_id)
    assert cancelled.status == JobStatus.FAILED
    assert cancelled.error_message == CANCEL_MESSAGE

    done_id = await jobs.create(JobType.LIST_CRAWL)
    await jobs.start(done_id)
    await jobs.complete(done_id, 0, 0, 0)
    with pytest.raises(InvalidStateError, match="cannot be cancelled"):
        await jobs.cancel(done_id)

    with pytest.raises(NotFoundError):
        await jobs.cancel(str(uuid.uuid4()))


@pytest.mark.asyncio
async def test_trigger_requires_pending(jobs):
    job_id = await jobs.create(JobType.LIST_CRAWL)
    job = await jobs.trigger(job_id)
    assert job.status == JobStatus.PROCESSING

    with pytest.raises(InvalidStateError, match="cannot be triggered"):
        await jobs.trigger(job_id)


@pytest.mark.asyncio
async def test_list_jobs_filters_and_validates_limit(jobs):
    a = await jobs.create(JobType.LIST_CRAWL)
    b = await jobs.create(JobType.PRICE_UPDATE)
    await jobs.start(b)

    assert {str(j.id) for j in await jobs.list_jobs()} == {a, b}
    assert [str(j.id) for j in await jobs.list_jobs(job_type=JobType.PRICE_UPDATE)] == [b]
    assert [str(j.id) for j in await jobs.list_jobs(status=JobStatus.PENDING)] == [a]
    assert len(await jobs.list_jobs(limit=1)) == 1

    for bad in (0, 101):
        with pytest.raises(InvalidArgumentError):
            await jobs.list_jobs(limit=bad)


@pytest.mark.asyncio
async def test_record_outcome_completes_when_drained(jobs):
    job_id = await jobs.create(JobType.PRICE_UPDATE)
    await jobs.start(job_id)
    await jobs.update_progress(job_id, 2, 2)

    job = await jobs.record_outcome(job_id, success=True)
    assert job is not None and job.status == JobStatus.PROCESSING

    job = await jobs.record_outcome(job_id, success=False)
    assert job is not None and job.status == JobStatus.COMPLETED
    assert (job.succeeded, job.errors, job.percent) == (1, 1, 100)


@pytest.mark.asyncio
async def test_complete_if_drained_waits_for_scheduling_phase(jobs):
    job_id = await jobs.create(JobType.PRICE_UPDATE)
    await jobs.start(job_id)
    # 投递阶段尚未结束：crawled < total
    await jobs.update_progress(job_id, 1, 3)
    await jobs.record_outcome(job_id, success=True)
    await jobs.record_outcome(job_id, success=True)
    await jobs.record_outcome(job_id, success=True)
    assert (await jobs.get(job_id)).status == JobStatus.PROCESSING

    await jobs.update_progress(job_id, 3, 3)
    job = await jobs.complete_if_drained(job_id)
    assert job is not None and job.status == JobStatus.COMPLETED
