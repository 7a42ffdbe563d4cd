from __future__ import annotations

import pytest

from bookscraper.models import PriceUpdateStatus
from bookscraper.scraper.router import channel_for, parse_task
from bookscraper.scraper.tasks import Channel, DetailCrawlTask, ListCrawlTask, PriceCrawlResult, PriceCrawlTask


def test_payloads_use_camel_case():
    payload = DetailCrawlTask(item_id=1, job_id="j", source="Tiki", retry_count=2).to_payload()

    assert payload["itemId"] == 1
    assert payload["jobId"] == "j"
    assert payload["retryCount"] == 2
    assert "timestamp" in payload


def test_failed_result_omits_missing_error_message():
    ok = PriceCrawlResult(
        item_id=1, external_id="1", source="Tiki", job_id="j", new_price=5, original_price=6, status="SUCCESS"
    ).to_payload()
    assert ok["status"] == "SUCCESS"
    assert "errorMessage" not in ok

    failed = PriceCrawlResult(
        item_id=1, external_id="1", source="Tiki", job_id="j", status="FAILED", error_message="HTTP 500"
    )
    assert failed.new_price == 0
    assert failed.status == PriceUpdateStatus.FAILED
    assert failed.to_payload()["errorMessage"] == "HTTP 500"


@pytest.mark.parametrize(
    ("task", "channel"),
    [
        (ListCrawlTask(job_id="j"), Channel.LIST_CRAWL),
        (DetailCrawlTask(item_id=1, job_id="j", source="Tiki"), Channel.DETAIL_CRAWL),
        (PriceCrawlTask(item_id=1, external_id="1", source="Tiki", job_id="j"), Channel.PRICE_CRAWL),
        (
            PriceCrawlResult(item_id=1, external_id="1", source="Tiki", job_id="j", status="FAILED"),
            Channel.PRICE_RESULT,
        ),
    ],
)
def test_channel_routing_round_trip(task, channel):
    assert channel_for(task) == channel
    parsed = parse_task(channel, task.to_payload())
    assert type(parsed) is type(task)
    assert parsed.job_id == task.job_id


def test_parse_task_rejects_unknown_channel_and_bad_payload():
    with pytest.raises(ValueError, match="Unknown channel"):
        parse_task("nope", {"jobId": "j"})
    with pytest.raises(ValueError):
        parse_task(Channel.PRICE_RESULT, {"jobId": "j", "status": "MAYBE"})


def test_list_task_defaults_and_unknown_fields_ignored():
    task = parse_task(Channel.LIST_CRAWL, {"jobId": "j", "foo": 1})

    assert isinstance(task, ListCrawlTask)
    assert task.type == "LIST_CRAWL"
