import logging
import os
import uvicorn
from config import load_environment
from core import logger as logger_config

# --- 初始化 ---
load_environment()
logger_config.setup_logging()
app_logger = logging.getLogger(__name__)


def main():
    """以 uvicorn 启动 HTTP 服务。主机和端口可通过 HOST / PORT 环境变量覆盖。"""
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "8000"))
    app_logger.info(f"渐进式内容生成服务启动于 http://{host}:{port}")
    uvicorn.run("api.server:app", host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
