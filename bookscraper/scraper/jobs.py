"""任务生命周期追踪模块。

负责创建任务记录、推进状态机（PENDING→PROCESSING→COMPLETED/FAILED）
以及维护进度计数。所有状态迁移都是带当前状态条件的原子更新，
重复投递的消息不会让任务状态倒退。
"""

from __future__ import annotations

import math
import uuid
from typing import TYPE_CHECKING

from loguru import logger

from ..core.exceptions import InvalidArgumentError, InvalidStateError, NotFoundError
from ..models import JobStatus, now_with_tz

if TYPE_CHECKING:
    from ..core.datastore import Store
    from ..models import Job, JobType

CANCEL_MESSAGE = "Job cancelled by user"
ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


def compute_percent(crawled: int, total: int) -> int:
    """进度百分比：total>0 时为 crawled/total*100 四舍五入，结果限制在 0..100。"""
    if total <= 0:
        return 0
    return max(0, min(100, math.floor(crawled / total * 100 + 0.5)))


def parse_job_id(job_id: str | uuid.UUID) -> uuid.UUID:
    """校验并解析任务ID。

    Raises:
        InvalidArgumentError: ID 格式非法。
    """
    if isinstance(job_id, uuid.UUID):
        return job_id
    try:
        return uuid.UUID(str(job_id))
    except ValueError as e:
        raise InvalidArgumentError("Invalid ID format") from e


class JobTracker:
    """任务追踪器。

    Attributes:
        store: 存储层实例
    """

    def __init__(self, store: Store):
        self.store = store

    async def create(self, job_type: JobType) -> str:
        """创建一条 PENDING 状态、计数全部为 0 的任务记录。

        Returns:
            str: 新任务ID。
        """
        job = await self.store.insert_job(job_type)
        logger.info("[{}] Created {} job", job.id, job_type)
        return str(job.id)

    async def get(self, job_id: str | uuid.UUID) -> Job:
        """读取任务记录。

        Raises:
            InvalidArgumentError: ID 格式非法。
            NotFoundError: 任务不存在。
        """
        job = await self.store.get_job(parse_job_id(job_id))
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = 10,
    ) -> list[Job]:
        """按创建时间倒序列出任务。

        Raises:
            InvalidArgumentError: limit 不在 1..100 范围内。
        """
        if not 1 <= limit <= 100:
            raise InvalidArgumentError("limit must be between 1 and 100")
        return await self.store.list_jobs(status=status, job_type=job_type, limit=limit)

    async def start(self, job_id: str | uuid.UUID) -> Job:
        """PENDING → PROCESSING，并记录开始时间。

        Raises:
            InvalidStateError: 任务不处于 PENDING 状态。
            NotFoundError: 任务不存在。
        """
        jid = parse_job_id(job_id)
        job = await self.store.update_job(
            jid,
            {"status": JobStatus.PROCESSING, "started_at": now_with_tz()},
            statuses=(JobStatus.PENDING,),
        )
        if job is None:
            current = await self.get(jid)
            raise InvalidStateError(f"Job cannot be started. Current status: {current.status}")
        logger.info("[{}] Job started", jid)
        return job

    async def trigger(self, job_id: str | uuid.UUID) -> Job:
        """启动一个外部创建、仍处于 PENDING 的任务。"""
        job = await self.get(job_id)
        if job.status != JobStatus.PENDING:
            raise InvalidStateError(f"Job cannot be triggered. Current status: {job.status}")
        return await self.start(job.id)

    async def update_progress(
        self,
        job_id: str | uuid.UUID,
        crawled: int,
        total: int,
        succeeded: int | None = None,
        duplicates: int | None = None,
        errors: int | None = None,
    ) -> Job | None:
        """更新进度计数并重新计算百分比；未传入的计数保持不变。"""
        values: dict[str, object] = {
            "crawled": crawled,
            "total": total,
            "percent": compute_percent(crawled, total),
        }
        for name, value in (("succeeded", succeeded), ("duplicates", duplicates), ("errors", errors)):
            if value is not None:
                values[name] = value
        return await self.store.update_job(parse_job_id(job_id), values)

    async def complete(self, job_id: str | uuid.UUID, succeeded: int, duplicates: int, errors: int) -> bool:
        """PROCESSING → COMPLETED。

        完成时 crawled = total = succeeded + duplicates + errors，percent = 100。

        Returns:
            bool: 是否发生了状态迁移（任务已被取消或已结束时为 False）。
        """
        processed = succeeded + duplicates + errors
        jid = parse_job_id(job_id)
        job = await self.store.update_job(
            jid,
            {
                "status": JobStatus.COMPLETED,
                "completed_at": now_with_tz(),
                "succeeded": succeeded,
                "duplicates": duplicates,
                "errors": errors,
                "crawled": processed,
                "total": processed,
                "percent": 100,
            },
            statuses=(JobStatus.PROCESSING,),
        )
        if job is None:
            logger.warning("[{}] Job not completed: it is no longer PROCESSING", jid)
            return False
        logger.info("[{}] Job completed: {} new, {} updated, {} errors", jid, succeeded, duplicates, errors)
        return True

    async def fail(self, job_id: str | uuid.UUID, message: str) -> bool:
        """PENDING/PROCESSING → FAILED，并记录失败原因。

        Returns:
            bool: 是否发生了状态迁移。
        """
        jid = parse_job_id(job_id)
        job = await self.store.update_job(
            jid,
            {"status": JobStatus.FAILED, "completed_at": now_with_tz(), "error_message": message},
            statuses=ACTIVE_STATUSES,
        )
        if job is None:
            logger.warning("[{}] Job not marked failed: it has already finished", jid)
            return False
        logger.error("[{}] Job failed: {}", jid, message)
        return True

    async def cancel(self, job_id: str | uuid.UUID) -> Job:
        """取消一个未结束的任务。

        只修改状态，已在途的消息仍会被消费。

        Raises:
            InvalidStateError: 任务已结束。
            NotFoundError: 任务不存在。
        """
        jid = parse_job_id(job_id)
        job = await self.store.update_job(
            jid,
            {"status": JobStatus.FAILED, "completed_at": now_with_tz(), "error_message": CANCEL_MESSAGE},
            statuses=ACTIVE_STATUSES,
        )
        if job is None:
            await self.get(jid)
            raise InvalidStateError("Job cannot be cancelled (not running)")
        logger.info("[{}] Job cancelled", jid)
        return job

    async def record_outcome(self, job_id: str | uuid.UUID, *, success: bool) -> Job | None:
        """下游单条结果到达：原子地累加成功或失败计数，并检查任务是否可以结束。"""
        jid = parse_job_id(job_id)
        job = await self.store.increment_job(jid, **({"succeeded": 1} if success else {"errors": 1}))
        if job is None:
            logger.warning("[{}] Outcome for unknown job ignored", jid)
            return None
        return await self.complete_if_drained(jid) or job

    async def complete_if_drained(self, job_id: str | uuid.UUID) -> Job | None:
        """投递阶段已结束且结果全部到达时，将任务置为 COMPLETED。"""
        jid = parse_job_id(job_id)
        job = await self.store.complete_job_if_drained(jid)
        if job is not None:
            logger.info("[{}] Job completed: {} succeeded, {} errors", jid, job.succeeded, job.errors)
        return job
