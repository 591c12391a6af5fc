"""
日志初始化
控制台与滚动文件两路输出，级别和目录可由 LOG_LEVEL / LOG_DIR 环境变量覆盖。
"""
import logging
import logging.handlers
import os
import sys

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'

# 第三方库默认过于啰嗦
NOISY_LOGGERS = ("httpx", "httpcore", "openai", "anthropic", "sqlalchemy.engine", "uvicorn.access")


def setup_logging(level: str = None, log_dir: str = None, log_file: str = "app.log"):
    """
    配置根记录器。重复调用会替换之前的 handler，不会产生重复输出。

    Args:
        level: 日志级别，默认读取 LOG_LEVEL，再默认 INFO。
        log_dir: 日志目录，默认读取 LOG_DIR，再默认 logs。
        log_file: 目录下的文件名；为 None 时只输出到控制台。

    Returns:
        日志文件的路径，未写文件时为 None。
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_dir = log_dir or os.getenv("LOG_DIR", "logs")
    formatter = logging.Formatter(LOG_FORMAT)

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    root.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    log_path = None
    if log_file:
        os.makedirs(log_dir, exist_ok=True)
        log_path = os.path.join(log_dir, log_file)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=10 * 1024 * 1024, # 10 MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))

    logging.captureWarnings(True)
    return log_path
