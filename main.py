"""图书采集流水线主入口模块。

常驻模式：
1. worker: 为每个通道启动若干消费者
2. scheduler: 每日定时价格更新 + 延迟消息释放
3. all: 单进程内同时运行 scheduler 与全部 worker

一次性命令：crawl、price-update、update-prices、recrawl-details、
job、jobs、cancel、trigger。
"""

import asyncio
import platform
import sys

from loguru import logger
from prometheus_client import start_http_server

from bookscraper.core import initialize_application
from bookscraper.models import JobStatus, JobType
from bookscraper.scraper import Scheduler, Worker, build_handlers, build_services
from bookscraper.utils import setup_logging
from bookscraper.utils.serialization import dumps_payload, to_jsonable

# 统一日志配置（可用环境变量 LOG_LEVEL 覆盖级别）
setup_logging()
log = logger.bind(name="main")


def _print_json(obj) -> None:
    sys.stdout.write(dumps_payload(to_jsonable(obj)).decode() + "\n")


async def run_forever(mode: str):
    """常驻运行 worker / scheduler。

    - worker: 每个通道启动 ``bus.workers_per_channel`` 个消费者。
    - scheduler: 定时价格更新与延迟消息释放。
    - all: 以上两者。
    """
    container = await initialize_application()
    config = container.config
    services = build_services(container)

    if config.metrics_enabled:
        start_http_server(config.metrics_port)
        log.info("Prometheus exporter listening on :{}", config.metrics_port)

    tasks: list[asyncio.Task] = []
    try:
        log.info("Starting application in {} mode.", mode)

        if mode in ("scheduler", "all"):
            scheduler = Scheduler(bus=container.bus, price_scheduler=services.price_scheduler, config=config)
            tasks.append(asyncio.create_task(scheduler.run(), name="scheduler"))

        if mode in ("worker", "all"):
            handlers = build_handlers(services)
            hostname = platform.node() or "local"
            for channel, handler in handlers.items():
                for i in range(config.bus.workers_per_channel):
                    worker = Worker(f"{hostname}-{channel}-{i}", channel, container.bus, handler, config.bus)
                    tasks.append(asyncio.create_task(worker.run(), name=f"worker-{channel}-{i}"))

        await asyncio.gather(*tasks)

    except asyncio.CancelledError:
        log.info("Received cancellation in {} mode.", mode)
        raise

    except Exception as e:
        log.exception("Application failed to start or run: {}", e)

    finally:
        for t in tasks:
            if not t.done():
                t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        log.info("Shutting down application...")
        await services.price_scheduler.wait_background()
        await container.teardown()


async def run_command(args) -> int:
    """执行一次性命令，返回进程退出码。"""
    container = await initialize_application()
    services = build_services(container)
    try:
        match args.command:
            case "crawl":
                job_id = await services.list_crawler.trigger_crawl()
                _print_json({"jobId": job_id})
            case "price-update":
                job_id, total = await services.price_scheduler.trigger_price_update(background=False)
                _print_json({"jobId": job_id, "totalBooks": total})
            case "update-prices":
                job_id, published = await services.price_scheduler.update_prices_for_books(args.ids)
                _print_json({"jobId": job_id, "published": published})
            case "recrawl-details":
                job_id, emitted = await services.detail_crawler.recrawl_missing(args.limit)
                _print_json({"jobId": job_id, "emitted": emitted})
            case "job":
                _print_json((await services.jobs.get(args.job_id)).to_dict())
            case "jobs":
                jobs = await services.jobs.list_jobs(status=args.status, job_type=args.type, limit=args.limit)
                _print_json([job.to_dict() for job in jobs])
            case "cancel":
                _print_json((await services.jobs.cancel(args.job_id)).to_dict())
            case "trigger":
                _print_json((await services.jobs.trigger(args.job_id)).to_dict())
            case _:
                raise ValueError(f"Unknown command: {args.command}")
    except ValueError as e:
        # InvalidArgumentError / 未知命令
        log.error("{}", e)
        return 2
    except Exception as e:
        log.error("Command {} failed: {}", args.command, e)
        return 1
    finally:
        await container.teardown()
    return 0


def setup_event_loop():
    if platform.system() != "Windows":
        try:
            import uvloop  # type: ignore

            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())

        except ImportError:
            # 非关键依赖，降低为 warning，避免冗长堆栈
            log.warning("uvloop not installed; using default asyncio event loop.")

        except Exception as e:
            log.warning("Failed to set up uvloop; using default asyncio event loop. Error: {}", e)

    else:
        log.info("Running on Windows, using the default ProactorEventLoop.")


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(description="Book Scraper Pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("worker", help="Consume all task channels.")
    sub.add_parser("scheduler", help="Run the daily price update and the delayed message pump.")
    sub.add_parser("all", help="Run scheduler and workers in one process.")

    sub.add_parser("crawl", help="Queue a list crawl and print its job id.")
    sub.add_parser("price-update", help="Schedule a full price update.")
    update_prices = sub.add_parser("update-prices", help="Schedule a price update for specific books.")
    update_prices.add_argument("ids", nargs="+", type=int, help="Book ids.")
    recrawl = sub.add_parser("recrawl-details", help="Re-queue detail crawls for rows still missing details.")
    recrawl.add_argument("--limit", type=int, default=None)

    job = sub.add_parser("job", help="Show one job.")
    job.add_argument("job_id")
    jobs = sub.add_parser("jobs", help="List recent jobs.")
    jobs.add_argument("--status", choices=[s.value for s in JobStatus], default=None)
    jobs.add_argument("--type", choices=[t.value for t in JobType], default=None)
    jobs.add_argument("--limit", type=int, default=10)
    cancel = sub.add_parser("cancel", help="Cancel a running job.")
    cancel.add_argument("job_id")
    trigger = sub.add_parser("trigger", help="Start a PENDING job.")
    trigger.add_argument("job_id")
    return parser


if __name__ == "__main__":
    args = build_parser().parse_args()

    setup_event_loop()

    try:
        if args.command in ("worker", "scheduler", "all"):
            asyncio.run(run_forever(args.command))
        else:
            sys.exit(asyncio.run(run_command(args)))
    except KeyboardInterrupt:
        log.info("Application stopped by user.")
