"""Chat Core 顶层包。

该包实现对话编排层：会话注册表、单会话状态、可插拔的模型后端
（直接生成、检索增强、两阶段工具调用）、流式中继与 SSE 封装，
以及配置加载、结构化日志和消息持久化适配。
"""

from chat_core.agents.factory import ModelFactory
from chat_core.agents.session_registry import SessionRegistry
from chat_core.api.service import ChatService, response_code

__all__ = ["ChatService", "ModelFactory", "SessionRegistry", "response_code"]
