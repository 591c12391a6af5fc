"""
AI 提供商适配器 (AI Provider)
对外只暴露 generate_completion(prompt, options) -> Completion，
具体后端由提供商标签在调用时选择，由 factory 按模板实例化。
"""
import logging
from typing import Optional, Callable

from langchain_core.messages import SystemMessage, HumanMessage

from core.exceptions import AIInvocationError, ConfigurationError
from core.schemas import Completion, CompletionOptions, Usage
from infra.llm.factory import get_chat_model, resolve_provider

logger = logging.getLogger(__name__)


def _message_text(message) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, list):
        # Anthropic 等返回内容块列表
        return "".join(block.get("text", "") if isinstance(block, dict) else str(block) for block in content)
    return str(content)


def _usage_of(message) -> Usage:
    usage = getattr(message, "usage_metadata", None) or {}
    return Usage(
        prompt_tokens=int(usage.get("input_tokens", 0) or 0),
        completion_tokens=int(usage.get("output_tokens", 0) or 0),
    )


class AIProvider:
    """
    统一的补全调用接口。

    Args:
        provider: 提供商标签，None 表示使用 providers.default。
        config: 已加载的全局配置。
        llm: 预先构建好的聊天模型，设置后忽略提供商模板 (测试或离线场景)。
        llm_builder: 模型构建函数，默认是模板驱动的 get_chat_model。
    """

    def __init__(self, provider: Optional[str] = None, config: Optional[dict] = None,
                 llm=None, llm_builder: Callable = get_chat_model):
        self.config = config or {}
        self._llm = llm
        self._llm_builder = llm_builder
        if llm is not None:
            self.provider = provider or "custom"
            self.default_model = getattr(llm, "model_name", None) or getattr(llm, "model", None)
        else:
            self.provider, provider_config = resolve_provider(provider, self.config)
            self.default_model = provider_config.get("model")

    def _build_llm(self, options: CompletionOptions):
        if self._llm is not None:
            return self._llm
        return self._llm_builder(
            provider=self.provider,
            model=options.model,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            config=self.config,
        )

    def generate_completion(self, prompt: str, options: Optional[CompletionOptions] = None) -> Completion:
        options = options or CompletionOptions()
        messages = []
        if options.system_prompt:
            messages.append(SystemMessage(content=options.system_prompt))
        messages.append(HumanMessage(content=prompt))

        model_name = options.model or self.default_model
        try:
            llm = self._build_llm(options)
            response = llm.invoke(messages)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"调用提供商 {self.provider}/{model_name} 失败: {e}", exc_info=True)
            raise AIInvocationError(f"AI provider '{self.provider}' failed: {e}") from e

        completion = Completion(
            content=_message_text(response),
            usage=_usage_of(response),
            provider=self.provider,
            model=model_name,
        )
        logger.debug(f"提供商 {self.provider} 返回 {len(completion.content)} 字符, "
                     f"tokens {completion.usage.prompt_tokens}+{completion.usage.completion_tokens}")
        return completion
