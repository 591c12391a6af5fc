"""
配置加载器 (Config Loader)
负责读取内置的 config.yaml、用户覆盖的 user_config.yaml 以及 provider_templates.yaml。
"""
import yaml
import os
import sys
import logging
from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_DIR = os.path.dirname(os.path.abspath(__file__))

def get_resource_path(relative_path: str) -> str:
    """
    获取资源的正确路径
    """
    try:
        base_path = sys._MEIPASS
    except Exception:
        base_path = os.path.abspath(".")

    return os.path.join(base_path, relative_path)

CONFIG_PATH = os.path.join(CONFIG_DIR, "config.yaml")
PROVIDER_TEMPLATES_PATH = os.path.join(CONFIG_DIR, "provider_templates.yaml")

# 参与合并的配置段
MERGEABLE_SECTIONS = ("providers", "stages", "mentor", "context", "storage")

def get_user_config_path() -> str:
    return os.getenv("PROGRESSIVE_USER_CONFIG") or get_resource_path("user_config.yaml")

def _merge_configs(base_config: dict, user_config: dict) -> dict:
    """
    合并基础配置和用户配置。
    用户配置中的各个配置段会覆盖或扩展基础配置。
    """
    merged_config = base_config.copy()

    for section in MERGEABLE_SECTIONS:
        if section not in user_config:
            continue
        merged_config[section] = dict(merged_config.get(section) or {})
        for key, value in (user_config[section] or {}).items():
            # stages 按阶段号做二级合并，避免覆盖整段默认值
            if isinstance(value, dict) and isinstance(merged_config[section].get(key), dict):
                merged_config[section][key] = {**merged_config[section][key], **value}
            else:
                merged_config[section][key] = value

    return merged_config

def _read_yaml(path: str) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if data else {}
    except yaml.YAMLError as e:
        logger.error(f"解析 {path} 文件失败: {e}", exc_info=True)
        raise ConfigurationError(f"错误: 解析 {path} 文件失败: {e}")

def load_user_config() -> dict:
    """
    加载并解析 user_config.yaml 文件。
    """
    path = get_user_config_path()
    if not os.path.exists(path):
        return {}
    return _read_yaml(path)

def load_config() -> dict:
    """
    加载并解析 config.yaml 和 user_config.yaml 文件，并进行合并。
    """
    if not os.path.exists(CONFIG_PATH):
        logger.warning(f"配置文件 {CONFIG_PATH} 未找到，返回默认空配置。")
        return {section: {} for section in MERGEABLE_SECTIONS}

    base_config = _read_yaml(CONFIG_PATH)
    merged_config = _merge_configs(base_config, load_user_config())

    env_db_url = os.getenv("PROGRESSIVE_DATABASE_URL")
    if env_db_url:
        merged_config.setdefault("storage", {})["database_url"] = env_db_url

    return merged_config

def load_provider_templates() -> dict:
    """
    加载并解析 provider_templates.yaml 文件。
    """
    if not os.path.exists(PROVIDER_TEMPLATES_PATH):
        logger.warning(f"提供商模板文件 {PROVIDER_TEMPLATES_PATH} 未找到，返回空模板。")
        return {}
    return _read_yaml(PROVIDER_TEMPLATES_PATH)

def get_stage_defaults(config: dict, stage_number: int) -> dict:
    """返回某一阶段的生成默认参数 (max_tokens、temperature、system_prompt 等)。"""
    stages = config.get("stages", {})
    defaults = dict(stages.get("default", {}))
    defaults.update(stages.get(stage_number) or stages.get(str(stage_number)) or {})
    return defaults

def save_user_config(user_config_data: dict):
    """
    将用户配置字典写回到 user_config.yaml 文件。

    Args:
        user_config_data (dict): 要保存的用户配置数据（例如 providers 和 context）。
    """
    path = get_user_config_path()
    try:
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(user_config_data, f, allow_unicode=True, sort_keys=False)
        logger.info(f"用户配置已成功保存到 {path}。")
    except OSError as e:
        logger.error(f"写入 {path} 文件失败: {e}", exc_info=True)
        raise ConfigurationError(f"错误: 写入 {path} 文件失败: {e}")
