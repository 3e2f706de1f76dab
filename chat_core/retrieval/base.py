"""检索增强（RAG）协作方接口。

向量索引的构建与查询不在编排层内；这里只定义编排层消费检索能力所需的
最小接口，以及把检索结果拼进提示词的默认实现。
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Protocol, Sequence

from chat_core.prompts import render_prompt


@dataclass
class Document:
    """一段检索到的文档片段。"""

    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class Retriever(Protocol):
    """按用户构建的检索器。检索失败时抛出 BusinessError。"""

    def retrieve_documents(self, query: str) -> List[Document]:
        ...


# 根据用户名构建检索器；用户没有上传/索引文档时抛出 RetrievalUnavailableError
RetrieverFactory = Callable[[str], Retriever]

PromptBuilder = Callable[[str, Sequence[Document]], str]


def build_rag_prompt(query: str, docs: Sequence[Document]) -> str:
    """把检索到的片段编号后嵌入提示词。"""

    passages = []
    for i, doc in enumerate(docs, start=1):
        source = doc.metadata.get("source")
        header = f"[{i}]" if not source else f"[{i}] 来源: {source}"
        passages.append(f"{header}\n{doc.content.strip()}")
    return render_prompt("rag_answer", passages="\n\n".join(passages), query=query)
