import os
import uuid

import pytest
import redis.asyncio as redis
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from bookscraper.core.bus import RedisStreamsBus
from bookscraper.core.config import BusConfig
from bookscraper.core.datastore import DataStore
from bookscraper.models import Base, Book, JobStatus, JobType, PriceHistory, PriceUpdateStatus, now_with_tz
from bookscraper.scraper.jobs import JobTracker
from bookscraper.scraper.price_consumer import PriceUpdateConsumer
from bookscraper.scraper.tasks import PriceCrawlResult

ON_CI = os.getenv("CI", "").lower() == "true" or os.getenv("GITHUB_ACTIONS") == "true"


@pytest.mark.skipif(not ON_CI, reason="Integration test only runs on CI")
@pytest.mark.asyncio
async def test_postgres_catalog_and_price_transaction():
    pg_user = os.getenv("PGUSER") or os.getenv("DB_USER", "postgres")
    pg_password = os.getenv("PGPASSWORD") or os.getenv("DB_PASSWORD", "postgres")
    pg_host = os.getenv("PGHOST") or os.getenv("DB_HOST", "127.0.0.1")
    pg_port = int(os.getenv("PGPORT") or os.getenv("DB_PORT", "5432"))
    pg_db = os.getenv("PGDATABASE") or os.getenv("DB_NAME", "bookscraper")

    dsn = f"postgresql+asyncpg://{pg_user}:{pg_password}@{pg_host}:{pg_port}/{pg_db}"
    engine = create_async_engine(dsn, echo=False)
    session_maker = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    store = DataStore(session_maker)
    source = f"ci-{uuid.uuid4().hex[:8]}"

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        row = {
            "external_id": "424242",
            "source": source,
            "title": "CI Book",
            "original_price": 120,
            "promotional_price": 100,
            "quantity_sold": 1,
            "image": None,
            "is_from_crawler": True,
        }

        first = await store.upsert_books([row])
        assert (first.inserted, first.updated) == (1, 0)
        second = await store.upsert_books([{**row, "title": "CI Book v2"}])
        assert (second.inserted, second.updated) == (0, 1)

        [ref] = [r for r in await store.find_books_needing_detail(limit=1000, max_attempts=3) if r.source == source]
        book = await store.get_book(ref.id)
        assert book is not None
        assert book.title == "CI Book v2"
        assert book.needs_detail_crawl is True

        async with store.price_transaction() as tx:
            locked = await tx.lock_book(book.id)
            assert locked is not None
            await tx.set_book_prices(locked, promotional_price=90, original_price=120)
            await tx.add_record(
                PriceHistory(
                    book_id=book.id,
                    external_id="424242",
                    source=source,
                    original_price=120,
                    promotional_price=90,
                    status=PriceUpdateStatus.SUCCESS,
                    recorded_at=now_with_tz(),
                )
            )

        latest = await store.latest_price(book.id)
        assert latest is not None
        assert latest.promotional_price == 90

        # 失败快照不参与价格变化计算
        await store.insert_price_record(
            PriceHistory(
                book_id=book.id,
                external_id="424242",
                source=source,
                original_price=120,
                promotional_price=90,
                status=PriceUpdateStatus.FAILED,
                error_message="HTTP 503",
                recorded_at=now_with_tz(),
            )
        )

        jobs = JobTracker(store)
        consumer = PriceUpdateConsumer(store=store, jobs=jobs)
        price_job = await jobs.create(JobType.PRICE_UPDATE)
        await jobs.start(price_job)
        await jobs.update_progress(price_job, 2, 2)
        result = PriceCrawlResult(
            item_id=book.id,
            external_id="424242",
            source=source,
            job_id=price_job,
            new_price=81,
            original_price=120,
            status=PriceUpdateStatus.SUCCESS,
        )

        assert await consumer.process(result) is True
        applied = await store.latest_price(book.id)
        assert applied is not None
        assert applied.promotional_price == 81
        assert applied.price_change == pytest.approx(-9)
        assert applied.price_change_percentage == -10.0

        # 重复投递同一结果不会写入第二条记录，也不会推进任务
        assert await consumer.process(result) is False
        async with session_maker() as sess:
            rows = await sess.scalars(
                select(PriceHistory).where(PriceHistory.book_id == book.id, PriceHistory.crawl_job_id == price_job)
            )
            assert len(rows.all()) == 1
        assert (await jobs.get(price_job)).status == JobStatus.PROCESSING

        job_id = await jobs.create(JobType.LIST_CRAWL)
        await jobs.start(job_id)
        await jobs.complete(job_id, 1, 0, 0)
        assert (await jobs.get(job_id)).status == JobStatus.COMPLETED
    finally:
        async with session_maker() as sess:
            await sess.execute(delete(PriceHistory).where(PriceHistory.source == source))
            await sess.execute(delete(Book).where(Book.source == source))
            await sess.commit()
        await engine.dispose()


@pytest.mark.skipif(not ON_CI, reason="Integration test only runs on CI")
@pytest.mark.asyncio
async def test_redis_streams_bus_roundtrip():
    rurl = f"redis://{os.getenv('REDIS_HOST', '127.0.0.1')}:{int(os.getenv('REDIS_PORT', '6379'))}/0"
    r = redis.from_url(rurl)
    prefix = f"ci:{uuid.uuid4().hex[:8]}"
    bus = RedisStreamsBus(r, bus_config=BusConfig(stream_prefix=prefix, delayed_key=f"{prefix}:delayed"))

    try:
        await bus.ensure_group("price.update")
        await bus.ensure_group("price.update")

        await bus.publish("price.update", {"itemId": 1, "jobId": "j"})
        await bus.publish_delayed("price.update", {"itemId": 2, "jobId": "j"}, 0)
        assert await bus.release_due() == 1

        deliveries = await bus.read("price.update", "ci-consumer", count=10, block_ms=500)
        assert [d.payload["itemId"] for d in deliveries] == [1, 2]

        # 未确认的消息可以作为待处理消息再次读取
        pending = await bus.read("price.update", "ci-consumer", count=10, block_ms=500, pending=True)
        assert [d.message_id for d in pending] == [d.message_id for d in deliveries]

        for delivery in deliveries:
            await bus.ack(delivery)
        assert await bus.read("price.update", "ci-consumer", count=10, block_ms=500, pending=True) == []
    finally:
        await r.delete(bus.stream_key("price.update"), f"{prefix}:delayed")
        await r.aclose()
