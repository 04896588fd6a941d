from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime
from itertools import count
from threading import Lock
from typing import Any, Collection, Protocol
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    case,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .errors import InvalidStateTransition, NotFoundError, StorageError, ValidationError
from .message_state import ensure_transition
from .models import AiStatus, DeliveryStatus, MessageDirection, MessageType
from .persistence import build_session_factory, coerce_utc, now_utc, transaction

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200


@dataclass(frozen=True)
class Participant:
    external_id: str
    display_name: str | None = None
    handle: str | None = None
    avatar_url: str | None = None

    def merged_with(self, other: Participant) -> Participant:
        """Fill details missing here from ``other``; stored values win."""
        return Participant(
            external_id=self.external_id,
            display_name=self.display_name or other.display_name,
            handle=self.handle or other.handle,
            avatar_url=self.avatar_url or other.avatar_url,
        )


@dataclass(frozen=True)
class ConversationRecord:
    conversation_id: str
    channel_id: str
    external_thread_id: str
    participant: Participant
    is_active: bool
    is_automated: bool
    last_message_at: datetime | None
    unread_count: int
    message_count: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class DirectMessageRecord:
    message_id: str
    conversation_id: str
    external_message_id: str | None
    direction: MessageDirection
    type: MessageType
    content: str
    media_url: str | None
    delivery_status: DeliveryStatus
    ai_status: AiStatus | None
    ai_response: str | None
    ai_confidence: float | None
    ai_model: str | None
    sent_at: datetime
    read_at: datetime | None
    replied_at: datetime | None
    sequence: int
    delivery_error: str | None = None
    delivery_failed_at: datetime | None = None


@dataclass(frozen=True)
class NewMessage:
    direction: MessageDirection
    content: str
    type: MessageType = "TEXT"
    external_message_id: str | None = None
    media_url: str | None = None
    delivery_status: DeliveryStatus = "RECEIVED"
    sent_at: datetime | None = None
    ai_response: str | None = None
    ai_confidence: float | None = None
    ai_model: str | None = None


@dataclass(frozen=True)
class MessagePatch:
    delivery_status: DeliveryStatus | None = None
    ai_status: AiStatus | None = None
    ai_response: str | None = None
    ai_confidence: float | None = None
    ai_model: str | None = None
    read_at: datetime | None = None
    replied_at: datetime | None = None
    # Compare-and-set guard on the stored ai_status.
    expected_ai_status: AiStatus | None = None


def _check_new_message(message: NewMessage) -> None:
    if not message.content or not message.content.strip():
        raise ValidationError("content", "cannot be blank")
    if message.direction == "OUTBOUND" and any(
        value is not None for value in (message.ai_response, message.ai_confidence, message.ai_model)
    ):
        raise ValidationError("ai_status", "outbound messages carry no ai fields")
    if message.ai_confidence is not None and not 0.0 <= message.ai_confidence <= 1.0:
        raise ValidationError("ai_confidence", "must be between 0 and 1")


def plan_message_update(
    current: DirectMessageRecord,
    patch: MessagePatch,
    now: datetime,
) -> tuple[dict[str, Any], int]:
    """Compute the column changes for ``patch`` and the unread_count delta."""
    if patch.expected_ai_status is not None and current.ai_status != patch.expected_ai_status:
        raise InvalidStateTransition(current.ai_status, patch.ai_status or patch.expected_ai_status)

    ai_values = (patch.ai_status, patch.ai_response, patch.ai_confidence, patch.ai_model)
    if current.direction == "OUTBOUND" and any(value is not None for value in ai_values):
        raise ValidationError("ai_status", "outbound messages carry no ai fields")
    if patch.ai_confidence is not None and not 0.0 <= patch.ai_confidence <= 1.0:
        raise ValidationError("ai_confidence", "must be between 0 and 1")

    changes: dict[str, Any] = {}
    if patch.ai_status is not None and ensure_transition(current.ai_status, patch.ai_status):
        changes["ai_status"] = patch.ai_status
    if patch.ai_response is not None:
        changes["ai_response"] = patch.ai_response
    if patch.ai_confidence is not None:
        changes["ai_confidence"] = patch.ai_confidence
    if patch.ai_model is not None:
        changes["ai_model"] = patch.ai_model

    unread_delta = 0
    if patch.delivery_status is not None and patch.delivery_status != current.delivery_status:
        changes["delivery_status"] = patch.delivery_status
        if patch.delivery_status == "READ":
            if current.direction == "INBOUND":
                unread_delta = -1
            if current.read_at is None and patch.read_at is None:
                changes["read_at"] = now
        if patch.delivery_status == "REPLIED" and current.replied_at is None and patch.replied_at is None:
            changes["replied_at"] = now
    if patch.read_at is not None:
        changes["read_at"] = patch.read_at
    if patch.replied_at is not None:
        changes["replied_at"] = patch.replied_at
    return changes, unread_delta


class ConversationRepository(Protocol):
    def reset(self) -> None: ...

    def find_or_create(
        self,
        *,
        channel_id: str,
        external_thread_id: str,
        participant: Participant,
        is_automated: bool,
    ) -> tuple[ConversationRecord, bool]: ...

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None: ...

    def list_conversations(
        self,
        *,
        channel_ids: Collection[str] | None,
        is_active: bool | None,
        limit: int,
        offset: int,
    ) -> tuple[list[ConversationRecord], int]: ...

    def set_conversation_flags(
        self,
        conversation_id: str,
        *,
        is_active: bool | None,
        is_automated: bool | None,
    ) -> ConversationRecord | None: ...

    def mark_read(self, conversation_id: str) -> ConversationRecord | None: ...

    def delete_conversation(self, conversation_id: str) -> bool: ...

    def append_message(self, conversation_id: str, message: NewMessage) -> tuple[DirectMessageRecord, bool]: ...

    def get_message(self, message_id: str) -> DirectMessageRecord | None: ...

    def list_messages(
        self,
        conversation_id: str,
        *,
        direction: MessageDirection | None,
        ai_status: AiStatus | None,
        limit: int,
        offset: int,
    ) -> tuple[list[DirectMessageRecord], int]: ...

    def context_window(
        self,
        conversation_id: str,
        *,
        until_message_id: str | None,
        limit: int,
    ) -> list[DirectMessageRecord]: ...

    def update_message(self, message_id: str, patch: MessagePatch) -> DirectMessageRecord | None: ...

    def record_delivery_failure(self, message_id: str, error: str) -> DirectMessageRecord | None: ...


def _conversation_sort_key(record: ConversationRecord) -> tuple[bool, float, float]:
    last = record.last_message_at.timestamp() if record.last_message_at else 0.0
    return (record.last_message_at is None, -last, -record.created_at.timestamp())


class InMemoryConversationRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._conversation_counter = count(1)
        self._message_counter = count(1)
        self._conversations: dict[str, ConversationRecord] = {}
        self._conversation_by_thread: dict[tuple[str, str], str] = {}
        self._messages: dict[str, DirectMessageRecord] = {}
        self._message_ids_by_conversation: dict[str, list[str]] = defaultdict(list)
        self._message_by_external_id: dict[str, str] = {}

    def reset(self) -> None:
        with self._lock:
            self._conversation_counter = count(1)
            self._message_counter = count(1)
            self._conversations.clear()
            self._conversation_by_thread.clear()
            self._messages.clear()
            self._message_ids_by_conversation.clear()
            self._message_by_external_id.clear()

    def find_or_create(
        self,
        *,
        channel_id: str,
        external_thread_id: str,
        participant: Participant,
        is_automated: bool,
    ) -> tuple[ConversationRecord, bool]:
        key = (channel_id, external_thread_id)
        with self._lock:
            existing_id = self._conversation_by_thread.get(key)
            if existing_id is not None:
                existing = self._conversations[existing_id]
                merged = existing.participant.merged_with(participant)
                if merged != existing.participant:
                    existing = replace(existing, participant=merged, updated_at=now_utc())
                    self._conversations[existing_id] = existing
                return existing, False

            now = now_utc()
            created = ConversationRecord(
                conversation_id=f"conv_{next(self._conversation_counter):06d}",
                channel_id=channel_id,
                external_thread_id=external_thread_id,
                participant=participant,
                is_active=True,
                is_automated=is_automated,
                last_message_at=None,
                unread_count=0,
                message_count=0,
                created_at=now,
                updated_at=now,
            )
            self._conversations[created.conversation_id] = created
            self._conversation_by_thread[key] = created.conversation_id
            return created, True

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    def list_conversations(
        self,
        *,
        channel_ids: Collection[str] | None,
        is_active: bool | None,
        limit: int,
        offset: int,
    ) -> tuple[list[ConversationRecord], int]:
        with self._lock:
            matches = [
                item
                for item in self._conversations.values()
                if (channel_ids is None or item.channel_id in channel_ids)
                and (is_active is None or item.is_active == is_active)
            ]
        matches.sort(key=_conversation_sort_key)
        return matches[offset : offset + limit], len(matches)

    def set_conversation_flags(
        self,
        conversation_id: str,
        *,
        is_active: bool | None,
        is_automated: bool | None,
    ) -> ConversationRecord | None:
        with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None:
                return None
            updated = replace(
                current,
                is_active=current.is_active if is_active is None else is_active,
                is_automated=current.is_automated if is_automated is None else is_automated,
                updated_at=now_utc(),
            )
            self._conversations[conversation_id] = updated
            return updated

    def mark_read(self, conversation_id: str) -> ConversationRecord | None:
        with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None:
                return None
            now = now_utc()
            for message_id in self._message_ids_by_conversation.get(conversation_id, []):
                message = self._messages[message_id]
                if message.direction == "INBOUND" and message.delivery_status == "RECEIVED":
                    self._messages[message_id] = replace(message, delivery_status="READ", read_at=message.read_at or now)
            updated = replace(current, unread_count=0, updated_at=now)
            self._conversations[conversation_id] = updated
            return updated

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._lock:
            current = self._conversations.pop(conversation_id, None)
            if current is None:
                return False
            self._conversation_by_thread.pop((current.channel_id, current.external_thread_id), None)
            for message_id in self._message_ids_by_conversation.pop(conversation_id, []):
                message = self._messages.pop(message_id)
                if message.external_message_id:
                    self._message_by_external_id.pop(message.external_message_id, None)
            return True

    def append_message(self, conversation_id: str, message: NewMessage) -> tuple[DirectMessageRecord, bool]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise NotFoundError(f"conversation {conversation_id} not found")

            if message.external_message_id:
                existing_id = self._message_by_external_id.get(message.external_message_id)
                if existing_id is not None:
                    existing = self._messages[existing_id]
                    if existing.conversation_id != conversation_id:
                        raise ValidationError("external_message_id", "already used in another conversation")
                    return existing, False

            now = now_utc()
            sent_at = message.sent_at or now
            if conversation.last_message_at is not None and sent_at < conversation.last_message_at:
                sent_at = conversation.last_message_at

            sequence = conversation.message_count + 1
            record = DirectMessageRecord(
                message_id=f"dm_{next(self._message_counter):06d}",
                conversation_id=conversation_id,
                external_message_id=message.external_message_id,
                direction=message.direction,
                type=message.type,
                content=message.content,
                media_url=message.media_url,
                delivery_status=message.delivery_status,
                ai_status="PENDING" if message.direction == "INBOUND" else None,
                ai_response=message.ai_response,
                ai_confidence=message.ai_confidence,
                ai_model=message.ai_model,
                sent_at=sent_at,
                read_at=None,
                replied_at=None,
                sequence=sequence,
            )
            self._messages[record.message_id] = record
            self._message_ids_by_conversation[conversation_id].append(record.message_id)
            if record.external_message_id:
                self._message_by_external_id[record.external_message_id] = record.message_id

            self._conversations[conversation_id] = replace(
                conversation,
                last_message_at=sent_at,
                unread_count=conversation.unread_count + (1 if message.direction == "INBOUND" else 0),
                message_count=sequence,
                updated_at=now,
            )
            return record, True

    def get_message(self, message_id: str) -> DirectMessageRecord | None:
        with self._lock:
            return self._messages.get(message_id)

    def list_messages(
        self,
        conversation_id: str,
        *,
        direction: MessageDirection | None,
        ai_status: AiStatus | None,
        limit: int,
        offset: int,
    ) -> tuple[list[DirectMessageRecord], int]:
        with self._lock:
            matches = [
                self._messages[message_id]
                for message_id in self._message_ids_by_conversation.get(conversation_id, [])
                if (direction is None or self._messages[message_id].direction == direction)
                and (ai_status is None or self._messages[message_id].ai_status == ai_status)
            ]
        newest_first = list(reversed(matches))[offset : offset + limit]
        return list(reversed(newest_first)), len(matches)

    def context_window(
        self,
        conversation_id: str,
        *,
        until_message_id: str | None,
        limit: int,
    ) -> list[DirectMessageRecord]:
        with self._lock:
            messages = [self._messages[item] for item in self._message_ids_by_conversation.get(conversation_id, [])]
        if until_message_id is not None:
            cutoff = next((item.sequence for item in messages if item.message_id == until_message_id), None)
            if cutoff is None:
                return []
            messages = [item for item in messages if item.sequence <= cutoff]
        return messages[-limit:] if limit > 0 else []

    def update_message(self, message_id: str, patch: MessagePatch) -> DirectMessageRecord | None:
        with self._lock:
            current = self._messages.get(message_id)
            if current is None:
                return None
            now = now_utc()
            changes, unread_delta = plan_message_update(current, patch, now)
            if not changes:
                return current
            updated = replace(current, **changes)
            self._messages[message_id] = updated
            if unread_delta:
                conversation = self._conversations[current.conversation_id]
                self._conversations[current.conversation_id] = replace(
                    conversation,
                    unread_count=max(0, conversation.unread_count + unread_delta),
                    updated_at=now,
                )
            return updated

    def record_delivery_failure(self, message_id: str, error: str) -> DirectMessageRecord | None:
        with self._lock:
            current = self._messages.get(message_id)
            if current is None:
                return None
            updated = replace(current, delivery_error=error, delivery_failed_at=now_utc())
            self._messages[message_id] = updated
            return updated


class ConversationsBase(DeclarativeBase):
    pass


class _ConversationRow(ConversationsBase):
    __tablename__ = "dm_conversations"
    __table_args__ = (UniqueConstraint("channel_id", "external_thread_id", name="uq_dm_conversations_thread"),)

    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    channel_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    external_thread_id: Mapped[str] = mapped_column(String(256), nullable=False)
    participant_external_id: Mapped[str] = mapped_column(String(256), nullable=False)
    participant_display_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    participant_handle: Mapped[str | None] = mapped_column(String(256), nullable=True)
    participant_avatar_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_automated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _DirectMessageRow(ConversationsBase):
    __tablename__ = "direct_messages"

    message_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("dm_conversations.conversation_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="TEXT")
    content: Mapped[str] = mapped_column(Text, nullable=False)
    media_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    delivery_status: Mapped[str] = mapped_column(String(16), nullable=False, default="RECEIVED")
    ai_status: Mapped[str | None] = mapped_column(String(16), nullable=True, index=True)
    ai_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    ai_model: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    replied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    delivery_error: Mapped[str | None] = mapped_column(String(256), nullable=True)
    delivery_failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def _is_conflict(exc: StorageError) -> bool:
    return isinstance(exc.__cause__, IntegrityError)


class SqlAlchemyConversationRepository:
    def __init__(self, database_url: str) -> None:
        self._session_factory = build_session_factory(
            database_url,
            ConversationsBase.metadata,
            backend_env="AUTOMATION_STORE_BACKEND",
        )

    def reset(self) -> None:
        with transaction(self._session_factory) as session:
            session.execute(delete(_DirectMessageRow))
            session.execute(delete(_ConversationRow))

    def find_or_create(
        self,
        *,
        channel_id: str,
        external_thread_id: str,
        participant: Participant,
        is_automated: bool,
    ) -> tuple[ConversationRecord, bool]:
        existing = self._merge_existing(channel_id, external_thread_id, participant)
        if existing is not None:
            return existing, False

        now = now_utc()
        try:
            with transaction(self._session_factory) as session:
                row = _ConversationRow(
                    conversation_id=f"conv_{uuid4().hex[:20]}",
                    channel_id=channel_id,
                    external_thread_id=external_thread_id,
                    participant_external_id=participant.external_id,
                    participant_display_name=participant.display_name,
                    participant_handle=participant.handle,
                    participant_avatar_url=participant.avatar_url,
                    is_active=True,
                    is_automated=is_automated,
                    last_message_at=None,
                    unread_count=0,
                    message_count=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                return self._conversation_record(row), True
        except StorageError as exc:
            if not _is_conflict(exc):
                raise
        # Lost the race on the unique (channel_id, external_thread_id) key.
        existing = self._merge_existing(channel_id, external_thread_id, participant)
        if existing is None:
            raise StorageError("conversation vanished after a conflicting insert")
        return existing, False

    def _merge_existing(
        self,
        channel_id: str,
        external_thread_id: str,
        participant: Participant,
    ) -> ConversationRecord | None:
        with transaction(self._session_factory) as session:
            row = session.scalar(
                select(_ConversationRow)
                .where(_ConversationRow.channel_id == channel_id)
                .where(_ConversationRow.external_thread_id == external_thread_id)
            )
            if row is None:
                return None
            stored = self._participant(row)
            merged = stored.merged_with(participant)
            if merged != stored:
                row.participant_display_name = merged.display_name
                row.participant_handle = merged.handle
                row.participant_avatar_url = merged.avatar_url
                row.updated_at = now_utc()
                session.flush()
            return self._conversation_record(row)

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with transaction(self._session_factory) as session:
            row = session.get(_ConversationRow, conversation_id)
            return self._conversation_record(row) if row is not None else None

    def list_conversations(
        self,
        *,
        channel_ids: Collection[str] | None,
        is_active: bool | None,
        limit: int,
        offset: int,
    ) -> tuple[list[ConversationRecord], int]:
        conditions = []
        if channel_ids is not None:
            conditions.append(_ConversationRow.channel_id.in_(list(channel_ids)))
        if is_active is not None:
            conditions.append(_ConversationRow.is_active == is_active)
        with transaction(self._session_factory) as session:
            total = session.scalar(select(func.count()).select_from(_ConversationRow).where(*conditions))
            rows = session.scalars(
                select(_ConversationRow)
                .where(*conditions)
                .order_by(
                    _ConversationRow.last_message_at.is_(None),
                    _ConversationRow.last_message_at.desc(),
                    _ConversationRow.created_at.desc(),
                )
                .limit(limit)
                .offset(offset)
            ).all()
            return [self._conversation_record(row) for row in rows], int(total or 0)

    def set_conversation_flags(
        self,
        conversation_id: str,
        *,
        is_active: bool | None,
        is_automated: bool | None,
    ) -> ConversationRecord | None:
        with transaction(self._session_factory) as session:
            row = session.get(_ConversationRow, conversation_id)
            if row is None:
                return None
            if is_active is not None:
                row.is_active = is_active
            if is_automated is not None:
                row.is_automated = is_automated
            row.updated_at = now_utc()
            session.flush()
            return self._conversation_record(row)

    def mark_read(self, conversation_id: str) -> ConversationRecord | None:
        now = now_utc()
        with transaction(self._session_factory) as session:
            row = session.get(_ConversationRow, conversation_id, with_for_update=True)
            if row is None:
                return None
            session.execute(
                update(_DirectMessageRow)
                .where(_DirectMessageRow.conversation_id == conversation_id)
                .where(_DirectMessageRow.direction == "INBOUND")
                .where(_DirectMessageRow.delivery_status == "RECEIVED")
                .values(delivery_status="READ", read_at=func.coalesce(_DirectMessageRow.read_at, now))
            )
            row.unread_count = 0
            row.updated_at = now
            session.flush()
            return self._conversation_record(row)

    def delete_conversation(self, conversation_id: str) -> bool:
        with transaction(self._session_factory) as session:
            session.execute(delete(_DirectMessageRow).where(_DirectMessageRow.conversation_id == conversation_id))
            result = session.execute(delete(_ConversationRow).where(_ConversationRow.conversation_id == conversation_id))
            return bool(result.rowcount)

    def append_message(self, conversation_id: str, message: NewMessage) -> tuple[DirectMessageRecord, bool]:
        if message.external_message_id:
            existing = self._find_external(conversation_id, message.external_message_id)
            if existing is not None:
                return existing, False
        try:
            return self._insert_message(conversation_id, message), True
        except StorageError as exc:
            if not message.external_message_id or not _is_conflict(exc):
                raise
        # Concurrent redelivery of the same external message.
        existing = self._find_external(conversation_id, message.external_message_id)
        if existing is None:
            raise StorageError("message vanished after a conflicting insert")
        return existing, False

    def _find_external(self, conversation_id: str, external_message_id: str) -> DirectMessageRecord | None:
        with transaction(self._session_factory) as session:
            row = session.scalar(
                select(_DirectMessageRow).where(_DirectMessageRow.external_message_id == external_message_id)
            )
            if row is None:
                return None
            if row.conversation_id != conversation_id:
                raise ValidationError("external_message_id", "already used in another conversation")
            return self._message_record(row)

    def _insert_message(self, conversation_id: str, message: NewMessage) -> DirectMessageRecord:
        now = now_utc()
        with transaction(self._session_factory) as session:
            conversation = session.get(_ConversationRow, conversation_id, with_for_update=True)
            if conversation is None:
                raise NotFoundError(f"conversation {conversation_id} not found")
            sent_at = coerce_utc(message.sent_at) or now
            last_message_at = coerce_utc(conversation.last_message_at)
            if last_message_at is not None and sent_at < last_message_at:
                sent_at = last_message_at
            sequence = conversation.message_count + 1
            row = _DirectMessageRow(
                message_id=f"dm_{uuid4().hex}",
                conversation_id=conversation_id,
                external_message_id=message.external_message_id,
                direction=message.direction,
                type=message.type,
                content=message.content,
                media_url=message.media_url,
                delivery_status=message.delivery_status,
                ai_status="PENDING" if message.direction == "INBOUND" else None,
                ai_response=message.ai_response,
                ai_confidence=message.ai_confidence,
                ai_model=message.ai_model,
                sent_at=sent_at,
                read_at=None,
                replied_at=None,
                sequence=sequence,
            )
            session.add(row)
            conversation.last_message_at = sent_at
            conversation.message_count = sequence
            if message.direction == "INBOUND":
                conversation.unread_count = conversation.unread_count + 1
            conversation.updated_at = now
            session.flush()
            return self._message_record(row)

    def get_message(self, message_id: str) -> DirectMessageRecord | None:
        with transaction(self._session_factory) as session:
            row = session.get(_DirectMessageRow, message_id)
            return self._message_record(row) if row is not None else None

    def list_messages(
        self,
        conversation_id: str,
        *,
        direction: MessageDirection | None,
        ai_status: AiStatus | None,
        limit: int,
        offset: int,
    ) -> tuple[list[DirectMessageRecord], int]:
        conditions = [_DirectMessageRow.conversation_id == conversation_id]
        if direction is not None:
            conditions.append(_DirectMessageRow.direction == direction)
        if ai_status is not None:
            conditions.append(_DirectMessageRow.ai_status == ai_status)
        with transaction(self._session_factory) as session:
            total = session.scalar(select(func.count()).select_from(_DirectMessageRow).where(*conditions))
            rows = session.scalars(
                select(_DirectMessageRow)
                .where(*conditions)
                .order_by(_DirectMessageRow.sequence.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return [self._message_record(row) for row in reversed(rows)], int(total or 0)

    def context_window(
        self,
        conversation_id: str,
        *,
        until_message_id: str | None,
        limit: int,
    ) -> list[DirectMessageRecord]:
        if limit <= 0:
            return []
        with transaction(self._session_factory) as session:
            query = select(_DirectMessageRow).where(_DirectMessageRow.conversation_id == conversation_id)
            if until_message_id is not None:
                trigger = session.get(_DirectMessageRow, until_message_id)
                if trigger is None or trigger.conversation_id != conversation_id:
                    return []
                query = query.where(_DirectMessageRow.sequence <= trigger.sequence)
            rows = session.scalars(query.order_by(_DirectMessageRow.sequence.desc()).limit(limit)).all()
            return [self._message_record(row) for row in reversed(rows)]

    def update_message(self, message_id: str, patch: MessagePatch) -> DirectMessageRecord | None:
        now = now_utc()
        with transaction(self._session_factory) as session:
            row = session.get(_DirectMessageRow, message_id, with_for_update=True)
            if row is None:
                return None
            current = self._message_record(row)
            changes, unread_delta = plan_message_update(current, patch, now)
            if not changes:
                return current

            # Compare-and-set on the values the plan was computed from.
            observed_ai_status = (
                _DirectMessageRow.ai_status.is_(None)
                if current.ai_status is None
                else _DirectMessageRow.ai_status == current.ai_status
            )
            result = session.execute(
                update(_DirectMessageRow)
                .where(_DirectMessageRow.message_id == message_id)
                .where(observed_ai_status)
                .where(_DirectMessageRow.delivery_status == current.delivery_status)
                .values(**changes)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise InvalidStateTransition(current.ai_status, patch.ai_status or current.ai_status or "PENDING")
            if unread_delta:
                session.execute(
                    update(_ConversationRow)
                    .where(_ConversationRow.conversation_id == current.conversation_id)
                    .values(
                        unread_count=case(
                            (_ConversationRow.unread_count + unread_delta < 0, 0),
                            else_=_ConversationRow.unread_count + unread_delta,
                        ),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
            return replace(current, **changes)

    def record_delivery_failure(self, message_id: str, error: str) -> DirectMessageRecord | None:
        with transaction(self._session_factory) as session:
            row = session.get(_DirectMessageRow, message_id)
            if row is None:
                return None
            row.delivery_error = error[:256]
            row.delivery_failed_at = now_utc()
            session.flush()
            return self._message_record(row)

    @staticmethod
    def _participant(row: _ConversationRow) -> Participant:
        return Participant(
            external_id=row.participant_external_id,
            display_name=row.participant_display_name,
            handle=row.participant_handle,
            avatar_url=row.participant_avatar_url,
        )

    @classmethod
    def _conversation_record(cls, row: _ConversationRow) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=row.conversation_id,
            channel_id=row.channel_id,
            external_thread_id=row.external_thread_id,
            participant=cls._participant(row),
            is_active=bool(row.is_active),
            is_automated=bool(row.is_automated),
            last_message_at=coerce_utc(row.last_message_at),
            unread_count=row.unread_count,
            message_count=row.message_count,
            created_at=coerce_utc(row.created_at),  # type: ignore[arg-type]
            updated_at=coerce_utc(row.updated_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _message_record(row: _DirectMessageRow) -> DirectMessageRecord:
        return DirectMessageRecord(
            message_id=row.message_id,
            conversation_id=row.conversation_id,
            external_message_id=row.external_message_id,
            direction=row.direction,  # type: ignore[arg-type]
            type=row.type,  # type: ignore[arg-type]
            content=row.content,
            media_url=row.media_url,
            delivery_status=row.delivery_status,  # type: ignore[arg-type]
            ai_status=row.ai_status,  # type: ignore[arg-type]
            ai_response=row.ai_response,
            ai_confidence=row.ai_confidence,
            ai_model=row.ai_model,
            sent_at=coerce_utc(row.sent_at),  # type: ignore[arg-type]
            read_at=coerce_utc(row.read_at),
            replied_at=coerce_utc(row.replied_at),
            sequence=row.sequence,
            delivery_error=row.delivery_error,
            delivery_failed_at=coerce_utc(row.delivery_failed_at),
        )


def create_conversation_repository(*, backend: str, database_url: str) -> ConversationRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyConversationRepository(database_url)
    return InMemoryConversationRepository()


def _page(limit: int, offset: int) -> tuple[int, int]:
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError("limit", f"must be between 1 and {MAX_PAGE_SIZE}")
    if offset < 0:
        raise ValidationError("offset", "cannot be negative")
    return limit, offset


class ConversationService:
    """Conversation store and message log operations over one repository."""

    def __init__(self, *, repository: ConversationRepository) -> None:
        self._repository = repository

    def reset(self) -> None:
        self._repository.reset()

    # Conversations ---------------------------------------------------------

    def find_or_create(
        self,
        channel_id: str,
        external_thread_id: str,
        participant: Participant,
        *,
        is_automated: bool = True,
    ) -> tuple[ConversationRecord, bool]:
        channel_id = channel_id.strip()
        external_thread_id = external_thread_id.strip()
        if not channel_id:
            raise ValidationError("channel_id", "cannot be blank")
        if not external_thread_id:
            raise ValidationError("external_thread_id", "cannot be blank")
        if not participant.external_id.strip():
            raise ValidationError("participant.external_id", "cannot be blank")
        conversation, created = self._repository.find_or_create(
            channel_id=channel_id,
            external_thread_id=external_thread_id,
            participant=participant,
            is_automated=is_automated,
        )
        if created:
            logger.info(
                "conversation created conversation_id=%s channel_id=%s",
                conversation.conversation_id,
                channel_id,
            )
        return conversation, created

    def get(self, conversation_id: str) -> ConversationRecord:
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"conversation {conversation_id} not found")
        return conversation

    def list_conversations(
        self,
        *,
        channel_ids: Collection[str] | None = None,
        is_active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ConversationRecord], int]:
        limit, offset = _page(limit, offset)
        return self._repository.list_conversations(
            channel_ids=channel_ids,
            is_active=is_active,
            limit=limit,
            offset=offset,
        )

    def set_flags(
        self,
        conversation_id: str,
        *,
        is_active: bool | None = None,
        is_automated: bool | None = None,
    ) -> ConversationRecord:
        if is_active is None and is_automated is None:
            raise ValidationError("is_active", "at least one of is_active or is_automated is required")
        updated = self._repository.set_conversation_flags(
            conversation_id,
            is_active=is_active,
            is_automated=is_automated,
        )
        if updated is None:
            raise NotFoundError(f"conversation {conversation_id} not found")
        return updated

    def mark_read(self, conversation_id: str) -> ConversationRecord:
        updated = self._repository.mark_read(conversation_id)
        if updated is None:
            raise NotFoundError(f"conversation {conversation_id} not found")
        return updated

    def delete(self, conversation_id: str) -> None:
        if not self._repository.delete_conversation(conversation_id):
            raise NotFoundError(f"conversation {conversation_id} not found")
        logger.info("conversation deleted conversation_id=%s", conversation_id)

    # Messages --------------------------------------------------------------

    def append(self, conversation_id: str, message: NewMessage) -> tuple[DirectMessageRecord, bool]:
        _check_new_message(message)
        return self._repository.append_message(conversation_id, message)

    def get_message(self, message_id: str) -> DirectMessageRecord:
        message = self._repository.get_message(message_id)
        if message is None:
            raise NotFoundError(f"message {message_id} not found")
        return message

    def list_messages(
        self,
        conversation_id: str,
        *,
        direction: MessageDirection | None = None,
        ai_status: AiStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[DirectMessageRecord], int]:
        limit, offset = _page(limit, offset)
        return self._repository.list_messages(
            conversation_id,
            direction=direction,
            ai_status=ai_status,
            limit=limit,
            offset=offset,
        )

    def context_window(
        self,
        conversation_id: str,
        *,
        until_message_id: str | None = None,
        limit: int,
    ) -> list[DirectMessageRecord]:
        return self._repository.context_window(conversation_id, until_message_id=until_message_id, limit=limit)

    def update_status(self, message_id: str, patch: MessagePatch) -> DirectMessageRecord:
        updated = self._repository.update_message(message_id, patch)
        if updated is None:
            raise NotFoundError(f"message {message_id} not found")
        return updated

    def record_delivery_failure(self, message_id: str, error: str) -> DirectMessageRecord:
        updated = self._repository.record_delivery_failure(message_id, error)
        if updated is None:
            raise NotFoundError(f"message {message_id} not found")
        logger.warning("delivery failure recorded message_id=%s error=%s", message_id, error)
        return updated
