"""Chat Core 顶层包。

该包提供聊天客户端与多家 LLM Provider 之间的统一接入层，
包括配置加载、领域模型、协议适配、适配器注册表、
补全编排与会话持久化等能力。
"""
