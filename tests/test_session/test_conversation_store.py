import asyncio

import pytest

from watch_ai.exceptions import SessionNotFoundError
from watch_ai.session import ConversationStore, make_title


def test_make_title_clips_first_user_message():
    long_text = "Please refactor the authentication module to use tokens"
    assert make_title([{"role": "system", "content": "x"}, {"role": "user", "content": long_text}]) == (
        long_text[:40] + "..."
    )
    assert make_title([{"role": "user", "content": "short"}]) == "short"
    assert make_title([]) == "Untitled"


@pytest.mark.asyncio
async def test_store_uses_db_path_override(tmp_path):
    db_path = tmp_path / "custom.db"
    store = ConversationStore(db_path=db_path)
    try:
        await store.save("c1", [{"role": "user", "content": "hi"}])
        assert db_path.exists()
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_save_load_round_trip_keeps_created_at(tmp_path):
    store = ConversationStore(db_path=tmp_path / "c.db")
    try:
        first = await store.save("c1", [{"role": "user", "content": "hello"}])
        await asyncio.sleep(0.01)
        second = await store.save(
            "c1",
            [{"role": "user", "content": "hello"}, {"role": "assistant", "content": "hi"}],
        )

        loaded = await store.load("c1")
        assert loaded.title == "hello"
        assert len(loaded.messages) == 2
        assert loaded.created_at == first.created_at
        assert loaded.updated_at == second.updated_at
        assert loaded.to_dict(include_messages=False) == {
            "id": "c1",
            "title": "hello",
            "created_at": first.created_at,
            "updated_at": second.updated_at,
            "message_count": 2,
        }
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_list_orders_by_last_update_and_prunes(tmp_path):
    store = ConversationStore(db_path=tmp_path / "c.db", history_limit=2)
    try:
        for conversation_id in ("a", "b", "c"):
            await store.save(conversation_id, [{"role": "user", "content": conversation_id}])
            await asyncio.sleep(0.01)

        listed = await store.list()
        assert [c.id for c in listed] == ["c", "b"]
        with pytest.raises(SessionNotFoundError):
            await store.load("a")
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_delete_reports_whether_anything_was_removed(tmp_path):
    store = ConversationStore(db_path=tmp_path / "c.db")
    try:
        await store.save("c1", [{"role": "user", "content": "x"}])
        assert await store.delete("c1") is True
        assert await store.delete("c1") is False
        with pytest.raises(SessionNotFoundError):
            await store.load("c1")
    finally:
        await store.close()
