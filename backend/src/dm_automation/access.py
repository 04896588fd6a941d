from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, String, delete, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .errors import AuthorizationError, NotFoundError
from .persistence import build_session_factory, coerce_utc, now_utc, transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperatorPrincipal:
    operator_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class ChannelRecord:
    channel_id: str
    owner_id: str
    display_name: str | None
    created_at: datetime


class ChannelAccessRepository(Protocol):
    def reset(self) -> None: ...

    def register(self, *, channel_id: str, owner_id: str, display_name: str | None) -> ChannelRecord: ...

    def get(self, channel_id: str) -> ChannelRecord | None: ...

    def list_owned(self, owner_id: str) -> list[ChannelRecord]: ...


class InMemoryChannelAccessRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._channels: dict[str, ChannelRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._channels.clear()

    def register(self, *, channel_id: str, owner_id: str, display_name: str | None) -> ChannelRecord:
        with self._lock:
            existing = self._channels.get(channel_id)
            record = ChannelRecord(
                channel_id=channel_id,
                owner_id=owner_id,
                display_name=display_name,
                created_at=existing.created_at if existing is not None else now_utc(),
            )
            self._channels[channel_id] = record
            return record

    def get(self, channel_id: str) -> ChannelRecord | None:
        with self._lock:
            return self._channels.get(channel_id)

    def list_owned(self, owner_id: str) -> list[ChannelRecord]:
        with self._lock:
            return sorted(
                (item for item in self._channels.values() if item.owner_id == owner_id),
                key=lambda item: item.channel_id,
            )


class ChannelAccessBase(DeclarativeBase):
    pass


class _ChannelRow(ChannelAccessBase):
    __tablename__ = "channel_access"

    channel_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    display_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyChannelAccessRepository:
    def __init__(self, database_url: str) -> None:
        self._session_factory = build_session_factory(
            database_url,
            ChannelAccessBase.metadata,
            backend_env="AUTOMATION_STORE_BACKEND",
        )

    def reset(self) -> None:
        with transaction(self._session_factory) as session:
            session.execute(delete(_ChannelRow))

    def register(self, *, channel_id: str, owner_id: str, display_name: str | None) -> ChannelRecord:
        with transaction(self._session_factory) as session:
            row = session.get(_ChannelRow, channel_id)
            if row is None:
                row = _ChannelRow(channel_id=channel_id, owner_id=owner_id, display_name=display_name, created_at=now_utc())
                session.add(row)
            else:
                row.owner_id = owner_id
                row.display_name = display_name
            session.flush()
            return self._record(row)

    def get(self, channel_id: str) -> ChannelRecord | None:
        with transaction(self._session_factory) as session:
            row = session.get(_ChannelRow, channel_id)
            return self._record(row) if row is not None else None

    def list_owned(self, owner_id: str) -> list[ChannelRecord]:
        with transaction(self._session_factory) as session:
            rows = session.scalars(
                select(_ChannelRow).where(_ChannelRow.owner_id == owner_id).order_by(_ChannelRow.channel_id)
            ).all()
            return [self._record(row) for row in rows]

    @staticmethod
    def _record(row: _ChannelRow) -> ChannelRecord:
        return ChannelRecord(
            channel_id=row.channel_id,
            owner_id=row.owner_id,
            display_name=row.display_name,
            created_at=coerce_utc(row.created_at),  # type: ignore[arg-type]
        )


def create_channel_access_repository(*, backend: str, database_url: str) -> ChannelAccessRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyChannelAccessRepository(database_url)
    return InMemoryChannelAccessRepository()


class ChannelAccessService:
    def __init__(self, *, repository: ChannelAccessRepository) -> None:
        self._repository = repository

    def reset(self) -> None:
        self._repository.reset()

    def register(
        self,
        principal: OperatorPrincipal,
        *,
        channel_id: str,
        owner_id: str,
        display_name: str | None = None,
    ) -> ChannelRecord:
        if not principal.is_admin:
            raise AuthorizationError("only admins can register channels")
        record = self._repository.register(channel_id=channel_id, owner_id=owner_id, display_name=display_name)
        logger.info("channel registered channel_id=%s owner_id=%s", channel_id, owner_id)
        return record

    def ensure_access(self, principal: OperatorPrincipal, channel_id: str, *, write: bool = False) -> ChannelRecord:
        """Return the channel if ``principal`` may use it.

        Unknown and foreign channels look the same to the caller.
        """
        record = self._repository.get(channel_id)
        if record is None:
            raise NotFoundError(f"channel {channel_id} not found")
        if principal.is_admin:
            return record
        if record.owner_id != principal.operator_id:
            raise NotFoundError(f"channel {channel_id} not found")
        if write and principal.role == "viewer":
            raise AuthorizationError("viewers cannot modify channel data")
        return record

    def accessible_channel_ids(self, principal: OperatorPrincipal) -> list[str] | None:
        """Channel ids visible to ``principal``; None means no restriction."""
        if principal.is_admin:
            return None
        return [item.channel_id for item in self._repository.list_owned(principal.operator_id)]
