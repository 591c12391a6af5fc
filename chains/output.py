"""
阶段输出解析
模型返回的文本依次尝试：直接 JSON、代码块 / 内嵌的 JSON 对象，
都失败时降级为 {"content": 原文}，不视为错误。
"""
import json
import logging
import re
from typing import Any

from langchain_core.exceptions import OutputParserException
from langchain_core.utils.json import parse_json_markdown

logger = logging.getLogger(__name__)

_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def _as_object(value: Any) -> dict:
    return value if isinstance(value, dict) else {"content": value}


def parse_json_output(text: str) -> dict:
    if text is None:
        return {"content": ""}
    stripped = text.strip()

    try:
        return _as_object(json.loads(stripped))
    except json.JSONDecodeError:
        pass

    try:
        return _as_object(parse_json_markdown(stripped))
    except (json.JSONDecodeError, OutputParserException, ValueError):
        pass

    match = _OBJECT_RE.search(stripped)
    if match:
        try:
            return _as_object(json.loads(match.group()))
        except json.JSONDecodeError:
            pass

    logger.warning(f"模型输出不是有效的 JSON，已按原文包装 ({len(stripped)} 字符)")
    return {"content": text}
