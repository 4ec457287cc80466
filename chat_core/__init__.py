"""Chat Core 顶层包。

该包提供多 Provider 对话客户端的核心实现，
包括配置加载、领域模型、Provider 适配、事件流解码与增量节流、
会话凭证管理、重试与工具续写编排以及本地持久化存储等能力。
"""

from chat_core.api.service import ChatClient, StatePersistingListener, create_client

__all__ = ["ChatClient", "StatePersistingListener", "create_client"]
