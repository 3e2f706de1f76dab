"""流式输出中继。

后端按到达顺序产出增量，中继逐个取出、同步回调、累积成完整回答。
一次只持有一个增量，不缓冲、不重排。截止时间到达或被取消时立即停止，
抛出 StreamInterruptedError，而不是悄悄返回截断的内容。

HTTP 层用 sse_frames / format_sse 把回调收到的文本包装成 SSE 帧：
每段文本为 ``data: <chunk>\\n\\n``，结束时追加一次 ``data: [DONE]\\n\\n``。
"""

import threading
import time
from typing import Callable, Iterable, Iterator, List, Optional

from chat_core.domain.exceptions import StreamInterruptedError
from chat_core.domain.models import ChatStreamChunk


TokenCallback = Callable[[str], None]

SSE_DONE = "data: [DONE]\n\n"


def deadline_after(timeout: Optional[float]) -> Optional[float]:
    """把相对超时（秒）换算成 time.monotonic() 下的截止时间。"""

    if timeout is None:
        return None
    return time.monotonic() + timeout


class StreamRelay:
    def __init__(
        self,
        on_token: TokenCallback,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self._on_token = on_token
        self._deadline = deadline
        self._cancel = cancel
        self.emitted = 0

    def relay(self, chunks: Iterable[str]) -> str:
        """消费 chunks 直到结束，返回拼接后的完整文本。"""

        pieces: List[str] = []
        iterator = iter(chunks)
        try:
            for chunk in iterator:
                self._check()
                if not chunk:
                    continue
                pieces.append(chunk)
                self._on_token(chunk)
                self.emitted += 1
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                # 提前退出时让生成器释放底层 HTTP 连接
                close()
        return "".join(pieces)

    def _check(self) -> None:
        if self._cancel is not None and self._cancel.is_set():
            raise StreamInterruptedError(code="STREAM_CANCELLED", message="stream cancelled by caller")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise StreamInterruptedError(
                code="STREAM_DEADLINE_EXCEEDED",
                message=f"stream deadline exceeded after {self.emitted} chunks",
            )


def text_deltas(chunks: Iterable[ChatStreamChunk]) -> Iterator[str]:
    """从后端的 ChatStreamChunk 中取出第一个候选的文本增量。"""

    for chunk in chunks:
        if not chunk.choices:
            continue
        yield chunk.choices[0].delta.content or ""


def format_sse(data: str) -> str:
    return f"data: {data}\n\n"


def sse_frames(tokens: Iterable[str]) -> Iterator[str]:
    """把文本增量序列转换成 SSE 帧，结尾恰好一个 [DONE] 帧。"""

    for token in tokens:
        if token:
            yield format_sse(token)
    yield SSE_DONE
