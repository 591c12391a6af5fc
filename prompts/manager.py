"""
Prompt Manager
动态加载并管理 prompts/stage_prompts.yaml 中的所有 Prompt 模板。
支持运行时热重载。
"""
import yaml
import os
import logging
from langchain_core.prompts import PromptTemplate

from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

PROMPTS_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "stage_prompts.yaml")

DEFAULT_CONTENT_TYPE = "novel"

DEFAULT_AUDIENCES = {
    "novel": "general readers",
    "course": "learners",
    "documentary": "viewers",
    "podcast": "listeners",
}

# --- 热重载缓存层 ---
class PromptCache:
    def __init__(self, path: str = PROMPTS_PATH):
        self._path = path
        self._cache = {}
        self._last_modified_time = 0

    def get_prompts(self):
        """获取 Prompts，如果文件被修改则重新加载。"""
        try:
            current_mtime = os.path.getmtime(self._path)
            if current_mtime > self._last_modified_time:
                logger.info("检测到 stage_prompts.yaml 文件变更，正在热重载...")
                with open(self._path, 'r', encoding='utf-8') as f:
                    self._cache = yaml.safe_load(f) or {}
                self._last_modified_time = current_mtime
                logger.info("热重载完成！")
        except FileNotFoundError:
            logger.error(f"未找到 Prompts 文件: {self._path}")
            self._cache = {}
        except yaml.YAMLError as e:
            # 保留旧缓存
            logger.error(f"加载或重载 Prompts 失败: {e}")

        return self._cache

# 创建一个全局的缓存实例
_prompt_cache = PromptCache()


def get_prompt_template(section: str, key) -> PromptTemplate:
    """
    根据段名和 Key 获取一个 LangChain PromptTemplate 对象 (支持热重载)。

    Args:
        section (str): 内容类型 (novel / course ...) 或 "shared"。
        key: 阶段号或共享模板名。

    Returns:
        PromptTemplate: LangChain 模板对象。
    """
    prompts = _prompt_cache.get_prompts()
    template_str = (prompts.get(section) or {}).get(key)

    if not template_str:
        raise ConfigurationError(f"Prompt '{section}.{key}' not found in {PROMPTS_PATH}")

    return PromptTemplate.from_template(template_str)


def resolve_content_type(content_type: str) -> str:
    """没有专属模板的内容类型回退到 novel。"""
    prompts = _prompt_cache.get_prompts()
    if content_type in prompts and content_type != "shared":
        return content_type
    logger.debug(f"内容类型 '{content_type}' 没有专属模板，使用 {DEFAULT_CONTENT_TYPE}")
    return DEFAULT_CONTENT_TYPE


def build_stage_prompt(content_type: str, stage_number: int, topic: str,
                       audience: str = None, genre: str = None) -> str:
    """生成某内容类型某阶段的基础提示词 (不含跨阶段上下文)。"""
    resolved = resolve_content_type(content_type)
    stage_templates = _prompt_cache.get_prompts().get(resolved) or {}
    key = stage_number if stage_number in stage_templates else 1
    template = get_prompt_template(resolved, key)
    return template.format(
        topic=topic,
        audience=audience or DEFAULT_AUDIENCES.get(resolved, "general audience"),
        genre=genre or "unspecified",
    )


def render_shared(key: str, **variables) -> str:
    return get_prompt_template("shared", key).format(**variables)
