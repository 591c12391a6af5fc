"""
生成链 (Generation Chains)
把阶段默认参数和请求级覆盖合并为一次补全调用的参数。
"""
from typing import Optional

from core.schemas import AIConfig, CompletionOptions


def build_options(stage_defaults: dict, ai_config: Optional[AIConfig] = None, correction: bool = False) -> CompletionOptions:
    """
    合并阶段默认值与请求级覆盖。修正调用使用 correction_* 默认值。
    """
    ai_config = ai_config or AIConfig()
    if correction:
        temperature = stage_defaults.get("correction_temperature", 0.7)
        max_tokens = stage_defaults.get("correction_max_tokens", 16000)
    else:
        temperature = ai_config.temperature if ai_config.temperature is not None else stage_defaults.get("temperature", 0.8)
        max_tokens = ai_config.max_tokens or stage_defaults.get("max_tokens", 8000)
    return CompletionOptions(
        model=ai_config.model,
        temperature=temperature,
        max_tokens=max_tokens,
        system_prompt=stage_defaults.get("system_prompt"),
    )

