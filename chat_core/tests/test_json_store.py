import tempfile
import threading
from pathlib import Path

import pytest

from chat_core.domain.conversation import Message
from chat_core.domain.exceptions import BusinessError, ValidationError
from chat_core.infrastructure.storage.json_store import JsonlMessageStore, QueuedMessageSink


def test_json_store_save_and_list():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonlMessageStore(root=root)
        m1 = Message.user("s1", "北京天气怎么样？", user_id="alice")
        m2 = Message.assistant("s1", "北京今天晴。", user_id="alice")
        assert store.save(m1) is m1
        store.save(m2)
        assert (root / "sessions" / "s1" / "messages.jsonl").exists()
        msgs = store.list_messages("s1")
        assert [m.id for m in msgs] == [m1.id, m2.id]
        assert msgs[0] == m1
        assert store.list_messages("missing") == []


def test_json_store_save_is_idempotent():
    with tempfile.TemporaryDirectory() as d:
        store = JsonlMessageStore(root=d)
        m1 = Message.user("s1", "hi", user_id="alice")
        store.save(m1)
        store.save(m1)
        # 新实例从文件重建已保存的 id
        JsonlMessageStore(root=d).save(m1)
        assert len(store.list_messages("s1")) == 1


def test_json_store_iter_all_and_bad_lines():
    with tempfile.TemporaryDirectory() as d:
        store = JsonlMessageStore(root=d)
        store.save(Message.user("s1", "a", user_id="alice"))
        store.save(Message.user("s2", "b", user_id="bob"))
        with (Path(d) / "sessions" / "s2" / "messages.jsonl").open("a", encoding="utf-8") as f:
            f.write("{broken\n")
        assert store.list_session_ids() == ["s1", "s2"]
        assert [m.content for m in store.iter_all_messages()] == ["a", "b"]


def test_json_store_requires_session_id():
    with tempfile.TemporaryDirectory() as d:
        with pytest.raises(ValidationError):
            JsonlMessageStore(root=d).save(Message.user("", "x"))


def test_queued_sink_flush_and_close():
    with tempfile.TemporaryDirectory() as d:
        store = JsonlMessageStore(root=d)
        sink = QueuedMessageSink(store)
        for i in range(10):
            sink.save(Message.user("s1", f"m{i}", user_id="alice"))
        sink.flush()
        assert [m.content for m in store.list_messages("s1")] == [f"m{i}" for i in range(10)]
        sink.close()
        with pytest.raises(BusinessError) as ei:
            sink.save(Message.user("s1", "late"))
        assert ei.value.code == "SINK_CLOSED"


def test_queued_sink_counts_failures():
    class Failing:
        def save(self, message):
            raise BusinessError(code="STORE_WRITE_ERROR", message="disk full")

    sink = QueuedMessageSink(Failing())
    sink.save(Message.user("s1", "x"))
    sink.save(Message.user("s1", "y"))
    sink.flush()
    assert sink.failed == 2
    sink.close()


@pytest.mark.parametrize("session_id", ["../../escaped", "..", "a/b", "a\\b", "."])
def test_json_store_rejects_path_like_session_ids(session_id):
    with tempfile.TemporaryDirectory() as d:
        store = JsonlMessageStore(root=Path(d) / "store")
        with pytest.raises(ValidationError):
            store.save(Message.user(session_id, "hi", user_id="alice"))
        with pytest.raises(ValidationError):
            store.list_messages(session_id)
        assert not (Path(d) / "escaped").exists()
        assert list((Path(d) / "store" / "sessions").iterdir()) == []


def test_queued_sink_flush_timeout_returns_false():
    release = threading.Event()

    class Blocking:
        def save(self, message):
            release.wait(5)
            return message

    sink = QueuedMessageSink(Blocking())
    sink.save(Message.user("s1", "x"))
    before = threading.active_count()
    assert sink.flush(timeout=0.05) is False
    assert threading.active_count() == before
    release.set()
    assert sink.flush(timeout=5) is True
    sink.close()
