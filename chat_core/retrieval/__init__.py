"""检索增强协作方：Document、Retriever 协议与提示词拼装。"""

from chat_core.retrieval.base import Document, Retriever, RetrieverFactory, build_rag_prompt

__all__ = ["Document", "Retriever", "RetrieverFactory", "build_rag_prompt"]
