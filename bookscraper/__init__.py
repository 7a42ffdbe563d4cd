"""bookscraper: 电商平台图书采集、详情补全与价格更新流水线。"""

__version__ = "0.1.0"
