from dotenv import load_dotenv, find_dotenv
import logging

logger = logging.getLogger(__name__)

def load_environment(dotenv_path: str = None) -> bool:
    """
    从 .env 文件加载环境变量 (API 密钥、PROGRESSIVE_DATABASE_URL 等)。
    已存在的环境变量不会被覆盖。

    Returns:
        是否找到并加载了 .env 文件。
    """
    path = dotenv_path or find_dotenv(usecwd=True)
    if not path:
        logger.debug("未找到 .env 文件，仅使用进程环境变量。")
        return False
    loaded = load_dotenv(path, override=False)
    logger.debug(f"环境变量已从 {path} 加载。")
    return loaded
