"""领域层模型与协议。

包含：
- models: ProviderConfig / CompletionRequest / StreamChunk 等统一模型。
- conversation: 会话与消息的持久化模型及仓储协议。
- context_builder: 请求上下文组装。
- emotion: 回复情绪识别。
- events: 流式事件与对外事件。
- exceptions: 业务异常类型定义。
"""
