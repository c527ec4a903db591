"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 流式分帧与 HTTP 公共处理 (streaming、http)。
- 各协议的具体实现 (openai_compat、claude_client、ollama_client、dynamic_client、mock_client)。
- 按配置 id 缓存适配器实例 (registry)。
"""

from chat_core.providers.base import CancellationToken, LLMProvider
from chat_core.providers.registry import AdapterRegistry, create_adapter

__all__ = ["AdapterRegistry", "CancellationToken", "LLMProvider", "create_adapter"]
