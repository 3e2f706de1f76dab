"""基于 JSON Lines 文件的消息持久化（MessageSink 的参考实现）。

目录结构::

    <root>/sessions/<session_id>/messages.jsonl

QueuedMessageSink 把保存请求投递到后台线程异步落盘，
对应“先发消息队列、由消费者写库”的持久化策略。
"""

import json
import queue
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set

from chat_core.config.settings import settings
from chat_core.domain.conversation import Message, MessageSink
from chat_core.domain.exceptions import BusinessError, ValidationError
from chat_core.infrastructure.logging.logger import logger


class JsonlMessageStore:
    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._sessions_root = self._root / "sessions"
        self._sessions_root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._saved_ids: Dict[str, Set[str]] = {}

    def save(self, message: Message) -> Message:
        """追加一条消息；相同 id 的消息重复保存时直接返回。"""

        sdir = self._session_dir(message.session_id)
        with self._lock:
            ids = self._ids_for(message.session_id)
            if message.id in ids:
                return message
            try:
                sdir.mkdir(parents=True, exist_ok=True)
                line = json.dumps(self._to_payload(message), ensure_ascii=False)
                with (sdir / "messages.jsonl").open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as e:
                raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
            ids.add(message.id)
        return message

    def list_messages(self, session_id: str) -> List[Message]:
        msgs_path = self._session_dir(session_id) / "messages.jsonl"
        items: List[Message] = []
        if not msgs_path.exists():
            return items
        try:
            lines = msgs_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        for line in lines:
            if not line.strip():
                continue
            try:
                items.append(self._to_message(json.loads(line)))
            except (ValueError, KeyError) as e:
                logger.warning(
                    "json_store.bad_line",
                    extra={"extra": {"session_id": session_id, "error": str(e)}},
                )
        # 文件内即为保存顺序，按时间排序时保持稳定
        items.sort(key=lambda m: m.created_at)
        return items

    def list_session_ids(self) -> List[str]:
        return sorted(p.name for p in self._sessions_root.iterdir() if (p / "messages.jsonl").exists())

    def iter_all_messages(self) -> Iterator[Message]:
        """按会话依次产出全部已保存消息，用于进程启动时恢复内存状态。"""

        for session_id in self.list_session_ids():
            yield from self.list_messages(session_id)

    def _session_dir(self, session_id: str) -> Path:
        """会话目录必须是 sessions/ 下的直接子目录。"""

        if not session_id:
            raise ValidationError(message="message.session_id is required")
        if "/" in session_id or "\\" in session_id or session_id in (".", ".."):
            raise ValidationError(message=f"invalid session_id: {session_id!r}")
        sdir = (self._sessions_root / session_id).resolve()
        if sdir.parent != self._sessions_root:
            raise ValidationError(message=f"invalid session_id: {session_id!r}")
        return sdir

    def _ids_for(self, session_id: str) -> Set[str]:
        ids = self._saved_ids.get(session_id)
        if ids is None:
            ids = {m.id for m in self.list_messages(session_id)}
            self._saved_ids[session_id] = ids
        return ids

    @staticmethod
    def _to_payload(message: Message) -> Dict[str, Any]:
        payload = asdict(message)
        payload["created_at"] = message.created_at.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        return payload

    @staticmethod
    def _to_message(data: Dict[str, Any]) -> Message:
        return Message(
            id=data["id"],
            role=data["role"],
            content=data.get("content") or "",
            session_id=data["session_id"],
            user_id=data.get("user_id") or "",
            created_at=datetime.fromisoformat(str(data["created_at"]).replace("Z", "+00:00")),
        )


_STOP = object()


class QueuedMessageSink:
    """异步持久化：save 只入队，由后台线程调用 inner.save。

    落盘失败只记录日志，不会回传给已经返回的 save 调用方。
    """

    def __init__(self, inner: MessageSink, maxsize: int = 0):
        self._inner = inner
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._closed = False
        self.failed = 0
        self._worker = threading.Thread(target=self._run, name="chat-core-message-sink", daemon=True)
        self._worker.start()

    def save(self, message: Message) -> Message:
        if self._closed:
            raise BusinessError(code="SINK_CLOSED", message="message sink is closed")
        self._queue.put(message)
        return message

    def flush(self, timeout: Optional[float] = None) -> bool:
        """阻塞直到已入队的消息全部处理完毕；超时返回 False。"""

        done = self._queue.all_tasks_done
        with done:
            return done.wait_for(lambda: self._queue.unfinished_tasks == 0, timeout)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        self._worker.join()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._inner.save(item)
            except Exception as e:
                # 后台线程不能退出，失败只计数并记录
                self.failed += 1
                logger.error(
                    "queued_sink.save_failed",
                    extra={"extra": {"message_id": item.id, "code": getattr(e, "code", type(e).__name__), "error": str(e)}},
                )
            finally:
                self._queue.task_done()
