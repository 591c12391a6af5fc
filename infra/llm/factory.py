"""
管理和提供不同LLM（大语言模型）的实例。
这个模块完全由 config.yaml 的 providers 段和 provider_templates.yaml 文件驱动。
"""
import os
import importlib
from functools import lru_cache
from config.loader import load_config, load_provider_templates
from core.exceptions import ConfigurationError
import logging

logger = logging.getLogger(__name__)

@lru_cache(maxsize=1)
def get_provider_templates():
    """缓存提供商模板以避免重复读取文件。"""
    return load_provider_templates()

def _get_class_from_path(class_path: str):
    """根据字符串路径动态导入类。"""
    try:
        module_path, class_name = class_path.rsplit(".", 1)
        module = importlib.import_module(module_path)
        return getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        logger.error(f"无法从路径 '{class_path}' 动态导入类: {e}", exc_info=True)
        raise ConfigurationError(f"无法从路径 '{class_path}' 动态导入类: {e}")

def resolve_provider(provider: str = None, config: dict = None) -> tuple:
    """
    返回 (提供商标签, 提供商配置)。未指定时使用 providers.default。
    """
    config = config if config is not None else load_config()
    providers = config.get("providers", {})
    tag = provider or providers.get("default")
    if not tag:
        raise ConfigurationError("错误: config.yaml 的 'providers' 部分缺少 'default'。")
    provider_config = providers.get(tag)
    if not isinstance(provider_config, dict):
        logger.error(f"在 config.yaml 的 'providers' 部分找不到提供商 '{tag}'。")
        raise ConfigurationError(f"错误: 在 config.yaml 的 'providers' 部分找不到提供商 '{tag}'。")
    return tag, provider_config

def get_chat_model(provider: str = None, model: str = None, temperature: float = 0.8,
                   max_tokens: int = None, config: dict = None):
    """
    根据提供商标签从配置文件获取并实例化一个 LangChain 聊天模型。

    Args:
        provider (str): 提供商标签 (e.g., "openai", "claude", "openrouter")。
        model (str): 覆盖配置中的模型名。
        temperature (float): 控制模型创造力的参数。
        max_tokens (int): 生成的最大 token 数。

    Returns:
        A LangChain chat model instance.
    """
    config = config if config is not None else load_config()
    tag, provider_config = resolve_provider(provider, config)
    templates = get_provider_templates()

    template_id = provider_config.get("template", tag)
    provider_template = templates.get(template_id)
    if not provider_template:
        logger.error(f"在提供商模板中找不到模板ID '{template_id}'。")
        raise ConfigurationError(f"错误: 在 provider_templates.yaml 中找不到模板ID '{template_id}'。")

    class_path = provider_template.get("class")
    if not class_path:
        logger.error(f"提供商模板 '{template_id}' 中缺少 'class' 路径。")
        raise ConfigurationError(f"错误: 提供商模板 '{template_id}' 中缺少 'class' 路径。")

    LLMClass = _get_class_from_path(class_path)

    # 准备构造函数参数
    constructor_params = {}
    if provider_template.get("temperature", True):
        constructor_params["temperature"] = temperature
    token_param = provider_template.get("token_param")
    if token_param and max_tokens:
        constructor_params[token_param] = max_tokens
    timeout_param = provider_template.get("timeout_param")
    timeout = config.get("providers", {}).get("timeout_seconds")
    if timeout_param and timeout:
        constructor_params[timeout_param] = timeout

    user_values = dict(provider_config)
    if model:
        user_values["model"] = model

    for param_name, param_type in provider_template.get("params", {}).items():
        user_value = user_values.get(param_name)
        if user_value is None:
            continue
        if param_type == "string":
            constructor_params[param_name] = user_value
        elif param_type in ("secret_env", "url_env"):
            env_var_value = os.getenv(user_value)
            if not env_var_value:
                logger.error(f"提供商 '{tag}' 需要设置环境变量 '{user_value}'，但它未被设置。")
                raise ConfigurationError(f"错误: 需要为提供商 '{tag}' 设置环境变量 '{user_value}'，但它未被设置。")
            # 'api_key_env' -> 'api_key', 'base_url_env' -> 'base_url'
            constructor_params[param_name.replace("_env", "")] = env_var_value

    logger.info(f"正在实例化模型: {tag}/{user_values.get('model')} (类: {LLMClass.__name__})")

    try:
        return LLMClass(**constructor_params)
    except Exception as e:
        # 第三方构造函数的异常类型不统一，这里统一转换为配置错误
        safe_params = {k: v for k, v in constructor_params.items() if k != "api_key"}
        logger.error(f"实例化提供商 '{tag}' 失败: {e}\n使用的参数: {safe_params}", exc_info=True)
        raise ConfigurationError(f"实例化提供商 '{tag}' 失败: {e}")
