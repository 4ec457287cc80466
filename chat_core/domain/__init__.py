"""领域层模型与协议。

包含：
- models: Model / Message / StreamDelta / ToolCallResult 等共享数据结构。
- conversation: ConversationState 及其持久化协议。
- events: 对 UI 暴露的 ChatListener 回调协议。
- exceptions: 业务异常类型定义。
"""
