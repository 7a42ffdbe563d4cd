from prometheus_client import Counter, Gauge, Histogram

# 目录行写入统计
BOOKS_UPSERTED = Counter(
    "bookscraper_books_upserted_total",
    "Total number of catalog rows written by the list crawler",
    ["result"],  # result: inserted, updated
)

# 列表页抓取统计
LIST_PAGES = Counter(
    "bookscraper_list_pages_total",
    "Total number of listing pages fetched",
    ["status"],  # status: success, empty, error
)

# 详情抓取结果统计
DETAIL_CRAWLS = Counter(
    "bookscraper_detail_crawls_total",
    "Total number of detail crawl outcomes",
    ["status"],  # status: success, retry_scheduled, permanently_failed, row_missing
)

# 价格更新结果统计
PRICE_UPDATES = Counter(
    "bookscraper_price_updates_total",
    "Total number of applied price-crawl results",
    ["status"],  # status: success, failed, duplicate, book_missing, transaction_error
)

# 已发布消息统计
MESSAGES_PUBLISHED = Counter(
    "bookscraper_messages_published_total",
    "Total number of task messages published",
    ["channel", "delayed"],
)

# 任务处理耗时分布
TASK_DURATION = Histogram(
    "bookscraper_task_duration_seconds",
    "Time spent handling a single task message",
    ["channel"],
)

# API 请求耗时分布
API_REQUEST_DURATION = Histogram(
    "bookscraper_api_request_duration_seconds",
    "Time spent on marketplace API requests",
    ["endpoint", "status"],  # endpoint: listing, detail; status: ok, <http code>, network_error
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

# 活跃 Worker 数量
ACTIVE_WORKERS = Gauge(
    "bookscraper_active_workers",
    "Number of currently active stream consumers",
    ["channel"],
)

# Worker 错误统计
WORKER_ERRORS = Counter(
    "bookscraper_worker_errors_total",
    "Total number of unhandled handler errors",
    ["channel"],
)

# 作者缓存命中统计
AUTHOR_CACHE_HITS = Counter(
    "bookscraper_author_cache_hits_total",
    "Total number of author natural-key lookups served from cache",
)
