"""领域层模型与协议。

包含：
- models: 发给模型后端的 ChatMessage / ChatRequest / ChatResult 模型。
- conversation: 对话消息、会话键以及 MessageSink 持久化协议。
- exceptions: 业务异常类型定义。
"""
