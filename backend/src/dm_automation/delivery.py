from __future__ import annotations

import json
import logging
import socket
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal, Protocol

logger = logging.getLogger(__name__)

DeliveryResultStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class DeliveryRequest:
    message_id: str
    conversation_id: str
    channel_id: str
    recipient: str
    thread_ref: str
    text: str


@dataclass(frozen=True)
class DeliveryResult:
    status: DeliveryResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class DeliverySender(Protocol):
    def send_reply(self, request: DeliveryRequest) -> DeliveryResult: ...


class StubDeliverySender:
    def __init__(self, *, enabled: bool) -> None:
        self._enabled = enabled
        self.sent: list[DeliveryRequest] = []

    def send_reply(self, request: DeliveryRequest) -> DeliveryResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return DeliveryResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="delivery_disabled",
                error_message="Live delivery is disabled",
            )

        if "fail" in request.recipient.lower():
            return DeliveryResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )

        self.sent.append(request)
        return DeliveryResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"stub-{request.message_id}",
        )


class _DeliveryHttpError(Exception):
    """Internal error raised when a delivery HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpDeliverySender:
    """Sends replies through the messaging gateway over HTTP."""

    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: float = 30) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def send_reply(self, request: DeliveryRequest) -> DeliveryResult:
        attempted_at = datetime.now(timezone.utc)
        payload = {
            "channel_id": request.channel_id,
            "recipient": request.recipient,
            "thread_ref": request.thread_ref,
            "message": request.text,
            # One delivery per inbound message, even across retries.
            "idempotency_key": f"dm-{request.message_id}",
        }
        try:
            response_data = self._post(payload)
        except _DeliveryHttpError as exc:
            return DeliveryResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_recipient(request.recipient)})",
            )
        return DeliveryResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=response_data.get("message_id"),
        )

    def _post(self, body: dict[str, str]) -> dict[str, Any]:
        url = f"{self._base_url}/v1/messages/send"
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                data = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise _DeliveryHttpError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _DeliveryHttpError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _DeliveryHttpError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise _DeliveryHttpError(
                error_code="invalid_response",
                message="Gateway returned an unreadable body",
            ) from exc
        if not isinstance(data, dict):
            raise _DeliveryHttpError(error_code="invalid_response", message="Gateway returned a non-object body")
        return data


def mask_recipient(recipient: str) -> str:
    normalized = recipient.strip()
    if not normalized:
        return "***"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"


def create_delivery_sender(settings) -> DeliverySender:
    sender_type = settings.delivery_sender_type.strip().lower()
    if sender_type == "http":
        return HttpDeliverySender(
            base_url=settings.delivery_api_base_url,
            api_key=settings.delivery_api_key,
            timeout_seconds=settings.delivery_timeout_seconds,
        )
    return StubDeliverySender(enabled=settings.delivery_enabled)


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeliveryJob:
    channel_id: str
    conversation_id: str
    message_id: str
    due_at: datetime


DeliveryHandler = Callable[[DeliveryJob], Any]


class DeliveryScheduler(Protocol):
    def schedule(self, job: DeliveryJob, handler: DeliveryHandler) -> None: ...

    def pending_count(self) -> int: ...


class TimerDeliveryScheduler:
    """Runs each job on a daemon timer thread once its delay has passed."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}

    def schedule(self, job: DeliveryJob, handler: DeliveryHandler) -> None:
        delay = max(0.0, (job.due_at - datetime.now(timezone.utc)).total_seconds())
        timer = threading.Timer(delay, self._run, args=(job, handler))
        timer.daemon = True
        with self._lock:
            self._timers[job.message_id] = timer
        timer.start()

    def _run(self, job: DeliveryJob, handler: DeliveryHandler) -> None:
        try:
            handler(job)
        except Exception:
            logger.exception("scheduled delivery failed message_id=%s", job.message_id)
        finally:
            with self._lock:
                self._timers.pop(job.message_id, None)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._timers)

    def shutdown(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()


class QueuedDeliveryScheduler:
    """Holds jobs until ``run_due`` is called, e.g. by a worker or a cron endpoint."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queue: list[tuple[DeliveryJob, DeliveryHandler]] = []

    def schedule(self, job: DeliveryJob, handler: DeliveryHandler) -> None:
        with self._lock:
            self._queue.append((job, handler))
            self._queue.sort(key=lambda item: item[0].due_at)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def run_due(self, now: datetime | None = None) -> list[DeliveryJob]:
        moment = now or datetime.now(timezone.utc)
        with self._lock:
            due = [item for item in self._queue if item[0].due_at <= moment]
            self._queue = [item for item in self._queue if item[0].due_at > moment]
        processed: list[DeliveryJob] = []
        for job, handler in due:
            try:
                handler(job)
            except Exception:
                logger.exception("queued delivery failed message_id=%s", job.message_id)
            processed.append(job)
        return processed

    def shutdown(self) -> None:
        with self._lock:
            self._queue.clear()


def create_delivery_scheduler(settings) -> TimerDeliveryScheduler | QueuedDeliveryScheduler:
    if settings.delivery_scheduler.strip().lower() == "queued":
        return QueuedDeliveryScheduler()
    return TimerDeliveryScheduler()


def due_at(now: datetime, delay_seconds: int) -> datetime:
    return now + timedelta(seconds=delay_seconds)
