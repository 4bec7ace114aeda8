"""Tests for the chat store implementations."""

import json
from datetime import datetime

import pytest

from resumable_chat.errors import ConcurrentModification, PersistenceFailure
from resumable_chat.store import FileChatStore, InMemoryChatStore

from resumable_chat.models import USER, ChatMessage

from .conftest import assistant, user


@pytest.fixture(params=["memory", "file"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryChatStore()
    return FileChatStore(str(tmp_path / "chats"))


class TestChatStoreContract:

    def test_unknown_chat_reads_empty(self, any_store):
        state = any_store.read("c1")
        assert state.id == "c1"
        assert state.messages == []
        assert state.active_stream_id is None
        assert state.version == 0
        assert not any_store.exists("c1")

    def test_save_then_read(self, any_store):
        any_store.save("c1", messages=[user("u1", "hi")], active_stream_id=None)
        state = any_store.read("c1")
        assert [m.id for m in state.messages] == ["u1"]
        assert state.version == 1
        assert any_store.exists("c1")

    def test_omitted_fields_are_left_unchanged(self, any_store):
        any_store.save("c1", messages=[user("u1", "hi")])
        any_store.save("c1", active_stream_id="s1")
        state = any_store.read("c1")
        assert [m.id for m in state.messages] == ["u1"]
        assert state.active_stream_id == "s1"

    def test_none_clears_active_stream(self, any_store):
        any_store.save("c1", messages=[user("u1", "hi")], active_stream_id="s1")
        any_store.save("c1", active_stream_id=None)
        assert any_store.read("c1").active_stream_id is None

    def test_saving_same_state_twice_is_idempotent(self, any_store):
        messages = [user("u1", "hi"), assistant("a1", "hello")]
        first = any_store.save("c1", messages=messages, active_stream_id=None)
        second = any_store.save("c1", messages=messages, active_stream_id=None)
        assert second.version == first.version
        assert any_store.read("c1") == first

    def test_touch_bumps_version_without_changes(self, any_store):
        messages = [user("u1", "hi")]
        first = any_store.save("c1", messages=messages)
        touched = any_store.save("c1", messages=messages, expected_version=first.version, touch=True)
        assert touched.version == first.version + 1
        assert touched.messages == first.messages
        assert any_store.read("c1").version == touched.version

    def test_expected_version_mismatch_rejects_save(self, any_store):
        any_store.save("c1", messages=[user("u1", "hi")])
        any_store.save("c1", messages=[user("u1", "hi"), user("u2", "newer")])
        with pytest.raises(ConcurrentModification) as excinfo:
            any_store.save("c1", messages=[user("u1", "stale")], expected_version=1)
        assert excinfo.value.actual == 2
        assert [m.id for m in any_store.read("c1").messages] == ["u1", "u2"]

    def test_last_writer_wins_without_version(self, any_store):
        any_store.save("c1", messages=[user("u1", "first")])
        any_store.save("c1", messages=[user("u9", "second")])
        assert [m.text for m in any_store.read("c1").messages] == ["second"]

    def test_create_assigns_id_and_keeps_existing(self, any_store):
        created = any_store.create()
        assert created.id
        assert any_store.exists(created.id)

        any_store.save("c1", messages=[user("u1", "hi")])
        assert [m.id for m in any_store.create("c1").messages] == ["u1"]

    def test_read_returns_a_copy(self, any_store):
        any_store.save("c1", messages=[user("u1", "hi")])
        state = any_store.read("c1")
        state.messages.append(user("u2", "sneaky"))
        assert len(any_store.read("c1").messages) == 1


class TestFileChatStore:

    def test_writes_json_document(self, tmp_path):
        store = FileChatStore(str(tmp_path))
        store.save("c1", messages=[user("u1", "hi")], active_stream_id="s1")
        payload = json.loads((tmp_path / "c1.json").read_text(encoding="utf-8"))
        assert payload["activeStreamId"] == "s1"
        assert payload["messages"][0]["parts"] == [{"type": "text", "text": "hi"}]

    def test_survives_new_instance(self, tmp_path):
        FileChatStore(str(tmp_path)).save("c1", messages=[user("u1", "hi")])
        assert FileChatStore(str(tmp_path)).read("c1").messages[0].text == "hi"

    def test_rejects_path_like_ids(self, tmp_path):
        store = FileChatStore(str(tmp_path))
        with pytest.raises(ValueError):
            store.read("../escape")

    def test_corrupt_file_is_a_persistence_failure(self, tmp_path):
        (tmp_path / "c1.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(PersistenceFailure):
            FileChatStore(str(tmp_path)).read("c1")

    def test_unserialisable_metadata_is_a_persistence_failure(self, tmp_path):
        store = FileChatStore(str(tmp_path))
        message = ChatMessage(
            id="u1",
            role=USER,
            parts=[{"type": "text", "text": "hi"}],
            metadata={"createdAt": datetime(2024, 1, 1)},
        )
        with pytest.raises(PersistenceFailure):
            store.save("c1", messages=[message])

        assert list(tmp_path.iterdir()) == []
        assert not store.exists("c1")

    def test_failed_write_keeps_previous_document(self, tmp_path):
        store = FileChatStore(str(tmp_path))
        store.save("c1", messages=[user("u1", "hi")])
        broken = ChatMessage(id="u2", role=USER, metadata={"seen": {1, 2}})
        with pytest.raises(PersistenceFailure):
            store.save("c1", messages=[user("u1", "hi"), broken])

        assert [p.name for p in tmp_path.iterdir()] == ["c1.json"]
        assert [m.id for m in store.read("c1").messages] == ["u1"]
