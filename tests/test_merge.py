import copy

import pytest

from taskwire.events import ConversationMessage
from taskwire.merge import merge_conversation, order_key
from taskwire.streaming import StreamingEntry


def _entry(message_id: str, content: str, **overrides: object) -> StreamingEntry:
    values: dict[str, object] = {
        "id": message_id,
        "task_id": "t1",
        "role": "assistant",
        "content": content,
        "reasoning": None,
        "tool_calls": None,
        "stream_index": 0,
        "is_complete": False,
    }
    values.update(overrides)
    return StreamingEntry(**values)  # type: ignore[arg-type]


def test_live_entry_replaces_persisted_message() -> None:
    persisted = [
        {"id": "m1", "role": "user", "content": "hi", "message_index": 0},
        {"id": "m2", "role": "assistant", "content": "old", "message_index": 1},
    ]
    live = [_entry("m2", "new", message_index=1), _entry("m3", "fresh", message_index=2)]

    merged = merge_conversation(persisted, live)

    assert len(merged) == len(persisted) + len(live) - 1
    assert [message.id for message in merged] == ["m1", "m2", "m3"]
    assert merged[1].content == "new"
    assert merged[1].is_streaming is True
    assert merged[0].is_streaming is False


def test_merge_drops_messages_without_id_and_duplicates() -> None:
    persisted = [
        {"role": "system", "content": "no id"},
        {"id": 1, "role": "user", "content": "first", "message_index": 0},
        {"id": 1, "role": "user", "content": "dup", "message_index": 0},
    ]

    merged = merge_conversation(persisted, [])

    assert [(message.id, message.content) for message in merged] == [(1, "first")]


def test_merge_orders_by_index_then_timestamp() -> None:
    persisted = [
        ConversationMessage(id="b", role="assistant", created_at="2025-01-01T00:00:02+00:00"),
        ConversationMessage(id="a", role="user", created_at="2025-01-01T00:00:01+00:00"),
    ]
    live = [_entry("c", "streaming", created_at="2025-01-01T00:00:03+00:00")]

    merged = merge_conversation(persisted, live)

    assert [message.id for message in merged] == ["a", "b", "c"]


def test_messages_without_order_sort_first_and_keep_position() -> None:
    persisted = [
        {"id": "x", "role": "user", "content": "unordered"},
        {"id": "y", "role": "user", "content": "bad date", "created_at": "yesterday"},
        {"id": "z", "role": "user", "content": "indexed", "message_index": 3},
    ]

    merged = merge_conversation(persisted, [])

    assert [message.id for message in merged] == ["x", "y", "z"]


def test_settled_entries_fill_only_missing_ids() -> None:
    persisted = [{"id": "m1", "role": "assistant", "content": "persisted", "message_index": 1}]
    settled = [_entry("m1", "settled copy", is_complete=True), _entry("m2", "settled", message_index=2)]

    merged = merge_conversation(persisted, [], settled)

    assert [(message.id, message.content) for message in merged] == [("m1", "persisted"), ("m2", "settled")]
    assert merged[1].is_streaming is False


def test_merge_does_not_modify_inputs() -> None:
    persisted = [{"id": "m1", "role": "assistant", "content": "old", "message_index": 0}]
    live = [_entry("m1", "new", message_index=0)]
    before = copy.deepcopy(persisted)

    merge_conversation(persisted, live)

    assert persisted == before
    assert live[0].content == "new"


def test_order_key_treats_naive_timestamps_as_utc() -> None:
    aware = ConversationMessage(role="user", created_at="2025-01-01T00:00:00+00:00")
    naive = ConversationMessage(role="user", created_at="2025-01-01T00:00:00")

    assert order_key(aware) == order_key(naive)
    assert order_key(ConversationMessage(role="user", message_index=4)) == 4.0


@pytest.mark.parametrize(
    ("persisted_ids", "live_ids"),
    [
        pytest.param([], ["a", "b"], id="empty-persisted"),
        pytest.param(["a", "b"], [], id="empty-live"),
        pytest.param(["a", "b", "c"], ["a", "b", "c"], id="full-overlap"),
        pytest.param(["a", "b"], ["c", "d"], id="no-overlap"),
        pytest.param(["a", "b", "c"], ["c", "d"], id="partial-overlap"),
        pytest.param(["a", "a", "b"], ["b", "e"], id="duplicate-persisted"),
        pytest.param([], [], id="both-empty"),
    ],
)
def test_merge_length_and_unique_ids(persisted_ids: list[str], live_ids: list[str]) -> None:
    persisted = [
        {"id": message_id, "role": "assistant", "content": "p", "message_index": index}
        for index, message_id in enumerate(persisted_ids)
    ]
    live = [_entry(message_id, "l", message_index=10 + index) for index, message_id in enumerate(live_ids)]
    unique_persisted = set(persisted_ids)
    overlap = unique_persisted & set(live_ids)

    merged = merge_conversation(persisted, live)

    ids = [message.id for message in merged]
    assert len(merged) == len(unique_persisted) + len(live_ids) - len(overlap)
    assert len(ids) == len(set(ids))
    assert {message.id for message in merged if message.is_streaming} == set(live_ids)
