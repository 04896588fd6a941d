from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from dm_automation.conversations import (
    ConversationService,
    InMemoryConversationRepository,
    MessagePatch,
    NewMessage,
    Participant,
    SqlAlchemyConversationRepository,
)
from dm_automation.errors import InvalidStateTransition, NotFoundError, ValidationError


@pytest.fixture(params=["inmemory", "sqlite"])
def service(request: pytest.FixtureRequest, tmp_path: Path) -> ConversationService:
    if request.param == "sqlite":
        repository = SqlAlchemyConversationRepository(f"sqlite:///{tmp_path / 'conversations.db'}")
    else:
        repository = InMemoryConversationRepository()
    return ConversationService(repository=repository)


def _inbound(content: str, **kwargs) -> NewMessage:
    return NewMessage(direction="INBOUND", content=content, **kwargs)


def test_find_or_create_is_idempotent_and_fills_participant(service: ConversationService) -> None:
    first, created = service.find_or_create("channel-1", "thread-1", Participant(external_id="user-1"))
    second, created_again = service.find_or_create(
        "channel-1",
        "thread-1",
        Participant(external_id="user-1", display_name="Lena", handle="@lena"),
    )

    assert created is True
    assert created_again is False
    assert second.conversation_id == first.conversation_id
    assert second.participant.display_name == "Lena"
    assert second.participant.handle == "@lena"
    assert second.is_active is True
    assert second.is_automated is True
    assert second.unread_count == 0


def test_same_thread_on_other_channel_is_a_separate_conversation(service: ConversationService) -> None:
    first, _ = service.find_or_create("channel-1", "thread-1", Participant(external_id="user-1"))
    other, created = service.find_or_create("channel-2", "thread-1", Participant(external_id="user-1"))

    assert created is True
    assert other.conversation_id != first.conversation_id


def test_blank_identifiers_are_rejected(service: ConversationService) -> None:
    with pytest.raises(ValidationError):
        service.find_or_create(" ", "thread-1", Participant(external_id="user-1"))
    with pytest.raises(ValidationError):
        service.find_or_create("channel-1", "thread-1", Participant(external_id=" "))


def test_append_tracks_unread_last_message_and_pending_status(service: ConversationService) -> None:
    conversation, _ = service.find_or_create("channel-1", "thread-1", Participant(external_id="user-1"))

    inbound, created = service.append(conversation.conversation_id, _inbound("Hallo"))
    outbound, _ = service.append(conversation.conversation_id, NewMessage(direction="OUTBOUND", content="Hi!"))

    assert created is True
    assert inbound.ai_status == "PENDING"
    assert inbound.delivery_status == "RECEIVED"
    assert outbound.ai_status is None
    assert outbound.sequence == inbound.sequence + 1
    refreshed = service.get(conversation.conversation_id)
    assert refreshed.unread_count == 1
    assert refreshed.last_message_at == outbound.sent_at


def test_duplicate_external_message_id_returns_existing(service: ConversationService) -> None:
    conversation, _ = service.find_or_create("channel-1", "thread-1", Participant(external_id="user-1"))
    other, _ = service.find_or_create("channel-1", "thread-2", Participant(external_id="user-2"))

    first, _ = service.append(conversation.conversation_id, _inbound("Hallo", external_message_id="ext-1"))
    again, created = service.append(conversation.conversation_id, _inbound("Hallo", external_message_id="ext-1"))

    assert created is False
    assert again.message_id == first.message_id
    assert service.get(conversation.conversation_id).unread_count == 1
    with pytest.raises(ValidationError):
        service.append(other.conversation_id, _inbound("Hallo", external_message_id="ext-1"))


def test_sent_at_never_moves_backwards(service: ConversationService) -> None:
    conversation, _ = service.find_or_create("channel-1", "thread-1", Participant(external_id="user-1"))
    late = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

    service.append(conversation.conversation_id, _inbound("zweite", sent_at=late))
    early, _ = service.append(conversation.conversation_id, _inbound("erste", sent_at=late - timedelta(hours=1)))

    assert early.sent_at == late


def test_append_to_unknown_conversation_is_not_found(service: ConversationService) -> None:
    with pytest.raises(NotFoundError):
        service.append("conv_missing", _inbound("Hallo"))


def test_read_transition_decrements_unread_with_floor(service: ConversationService) -> None:
    conversation, _ = service.find_or_create("channel-1", "thread-1", Participant(external_id="user-1"))
    message, _ = service.append(conversation.conversation_id, _inbound("Hallo"))

    read = service.update_status(message.message_id, MessagePatch(delivery_status="READ"))
    service.mark_read(conversation.conversation_id)
    service.update_status(message.message_id, MessagePatch(delivery_status="REPLIED"))
    service.update_status(message.message_id, MessagePatch(delivery_status="READ"))

    assert read.read_at is not None
    assert service.get(conversation.conversation_id).unread_count == 0


def test_mark_read_clears_unread(service: ConversationService) -> None:
    conversation, _ = service.find_or_create("channel-1", "thread-1", Participant(external_id="user-1"))
    first, _ = service.append(conversation.conversation_id, _inbound("eins"))
    service.append(conversation.conversation_id, _inbound("zwei"))

    updated = service.mark_read(conversation.conversation_id)

    assert updated.unread_count == 0
    assert service.get_message(first.message_id).delivery_status == "READ"


def test_ai_status_moves_forward_only(service: ConversationService) -> None:
    conversation, _ = service.find_or_create("channel-1", "thread-1", Participant(external_id="user-1"))
    message, _ = service.append(conversation.conversation_id, _inbound("Hallo"))

    generated = service.update_status(
        message.message_id,
        MessagePatch(ai_status="GENERATED", ai_response="Hi!", ai_confidence=0.7, ai_model="stub-model"),
    )
    assert generated.ai_status == "GENERATED"
    assert generated.ai_response == "Hi!"

    with pytest.raises(InvalidStateTransition):
        service.update_status(message.message_id, MessagePatch(ai_status="PENDING"))
    with pytest.raises(InvalidStateTransition):
        service.update_status(message.message_id, MessagePatch(ai_status="SKIPPED", expected_ai_status="PENDING"))
    assert service.get_message(message.message_id).ai_status == "GENERATED"


def test_outbound_messages_reject_ai_fields(service: ConversationService) -> None:
    conversation, _ = service.find_or_create("channel-1", "thread-1", Participant(external_id="user-1"))
    outbound, _ = service.append(conversation.conversation_id, NewMessage(direction="OUTBOUND", content="Hi!"))

    with pytest.raises(ValidationError):
        service.update_status(outbound.message_id, MessagePatch(ai_status="PENDING"))
    with pytest.raises(ValidationError):
        service.append(conversation.conversation_id, NewMessage(direction="OUTBOUND", content="x", ai_response="y"))


def test_list_messages_filters_and_pages_in_conversation_order(service: ConversationService) -> None:
    conversation, _ = service.find_or_create("channel-1", "thread-1", Participant(external_id="user-1"))
    for index in range(5):
        service.append(conversation.conversation_id, _inbound(f"nachricht {index}"))
    service.append(conversation.conversation_id, NewMessage(direction="OUTBOUND", content="antwort"))

    inbound, total = service.list_messages(conversation.conversation_id, direction="INBOUND", limit=2)
    assert total == 5
    assert [item.content for item in inbound] == ["nachricht 3", "nachricht 4"]

    pending, pending_total = service.list_messages(conversation.conversation_id, ai_status="PENDING")
    assert pending_total == 5
    assert all(item.direction == "INBOUND" for item in pending)

    with pytest.raises(ValidationError):
        service.list_messages(conversation.conversation_id, limit=0)


def test_context_window_stops_at_trigger_message(service: ConversationService) -> None:
    conversation, _ = service.find_or_create("channel-1", "thread-1", Participant(external_id="user-1"))
    ids = [service.append(conversation.conversation_id, _inbound(f"m{index}"))[0].message_id for index in range(6)]

    window = service.context_window(conversation.conversation_id, until_message_id=ids[3], limit=3)

    assert [item.content for item in window] == ["m1", "m2", "m3"]


def test_list_conversations_orders_by_latest_activity(service: ConversationService) -> None:
    quiet, _ = service.find_or_create("channel-1", "thread-quiet", Participant(external_id="user-1"))
    older, _ = service.find_or_create("channel-1", "thread-older", Participant(external_id="user-2"))
    newer, _ = service.find_or_create("channel-1", "thread-newer", Participant(external_id="user-3"))
    service.find_or_create("channel-2", "thread-elsewhere", Participant(external_id="user-4"))
    base = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    service.append(older.conversation_id, _inbound("a", sent_at=base))
    service.append(newer.conversation_id, _inbound("b", sent_at=base + timedelta(minutes=5)))
    service.set_flags(quiet.conversation_id, is_active=False)

    items, total = service.list_conversations(channel_ids=["channel-1"])
    assert total == 3
    assert [item.conversation_id for item in items] == [
        newer.conversation_id,
        older.conversation_id,
        quiet.conversation_id,
    ]

    active, active_total = service.list_conversations(channel_ids=["channel-1"], is_active=True)
    assert active_total == 2
    assert quiet.conversation_id not in {item.conversation_id for item in active}


def test_delete_removes_conversation_and_messages(service: ConversationService) -> None:
    conversation, _ = service.find_or_create("channel-1", "thread-1", Participant(external_id="user-1"))
    message, _ = service.append(conversation.conversation_id, _inbound("Hallo", external_message_id="ext-9"))

    service.delete(conversation.conversation_id)

    with pytest.raises(NotFoundError):
        service.get(conversation.conversation_id)
    with pytest.raises(NotFoundError):
        service.get_message(message.message_id)
    with pytest.raises(NotFoundError):
        service.delete(conversation.conversation_id)


def test_record_delivery_failure_keeps_ai_status(service: ConversationService) -> None:
    conversation, _ = service.find_or_create("channel-1", "thread-1", Participant(external_id="user-1"))
    message, _ = service.append(conversation.conversation_id, _inbound("Hallo"))
    service.update_status(message.message_id, MessagePatch(ai_status="GENERATED", ai_response="Hi!"))

    failed = service.record_delivery_failure(message.message_id, "http_503")

    assert failed.ai_status == "GENERATED"
    assert failed.delivery_error == "http_503"
    assert failed.delivery_failed_at is not None


def test_concurrent_find_or_create_yields_one_conversation() -> None:
    service = ConversationService(repository=InMemoryConversationRepository())
    barrier = threading.Barrier(10)
    results: list[str] = []
    lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        conversation, _ = service.find_or_create("channel-1", "thread-1", Participant(external_id="user-1"))
        with lock:
            results.append(conversation.conversation_id)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(set(results)) == 1
    _, total = service.list_conversations()
    assert total == 1
