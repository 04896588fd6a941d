from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator

from .automation_settings import AutomationConfig, AutomationSettingsService
from .classifier import ClassificationResult, MessageClassifier
from .composer import ComposedReply, ResponseComposer, turns_from_messages
from .conversations import (
    ConversationRecord,
    ConversationService,
    DirectMessageRecord,
    MessagePatch,
    NewMessage,
    Participant,
)
from .delivery import DeliveryJob, DeliveryRequest, DeliveryScheduler, DeliverySender, due_at
from .errors import InvalidStateTransition, NotFoundError
from .models import AiStatus, MessageType, OutcomeKind
from .persistence import now_utc

logger = logging.getLogger(__name__)


class KeyedLocks:
    """Re-entrant lock per key; entries are dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._entries[key] = entry
            entry[1] += 1
        lock: threading.RLock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


@dataclass(frozen=True)
class OrchestrationOutcome:
    outcome: OutcomeKind
    message_id: str
    reason: str | None = None
    reply_text: str | None = None
    confidence: float | None = None
    category: str | None = None
    used_fallback: bool = False
    deliver_at: datetime | None = None


@dataclass(frozen=True)
class InboundResult:
    conversation: ConversationRecord
    created_conversation: bool
    message: DirectMessageRecord
    outcome: OrchestrationOutcome


@dataclass(frozen=True)
class ManualGeneration:
    reply: ComposedReply
    suggestions: list[str]
    message: DirectMessageRecord | None


class AutomationOrchestrator:
    def __init__(
        self,
        *,
        settings: AutomationSettingsService,
        conversations: ConversationService,
        classifier: MessageClassifier,
        composer: ResponseComposer,
        sender: DeliverySender,
        scheduler: DeliveryScheduler,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._settings = settings
        self._conversations = conversations
        self._classifier = classifier
        self._composer = composer
        self._sender = sender
        self._scheduler = scheduler
        self._clock = clock
        self._locks = KeyedLocks()

    def ingest_inbound(
        self,
        *,
        channel_id: str,
        external_thread_id: str,
        participant: Participant,
        content: str,
        type: MessageType = "TEXT",
        external_message_id: str | None = None,
        media_url: str | None = None,
        sent_at: datetime | None = None,
    ) -> InboundResult:
        """Store an inbound message and run automation for it.

        The conversation lock spans append and processing, so messages of one
        conversation are handled in the order they were stored.
        """
        conversation, created = self._conversations.find_or_create(channel_id, external_thread_id, participant)
        with self._locks.hold(conversation.conversation_id):
            message, _ = self._conversations.append(
                conversation.conversation_id,
                NewMessage(
                    direction="INBOUND",
                    content=content,
                    type=type,
                    external_message_id=external_message_id,
                    media_url=media_url,
                    sent_at=sent_at,
                ),
            )
            outcome = self._process(channel_id, conversation.conversation_id, message.message_id)
            message = self._conversations.get_message(message.message_id)
            conversation = self._conversations.get(conversation.conversation_id)
        return InboundResult(
            conversation=conversation,
            created_conversation=created,
            message=message,
            outcome=outcome,
        )

    def record_message(
        self,
        conversation_id: str,
        message: NewMessage,
        *,
        ai_status: AiStatus | None = None,
    ) -> tuple[DirectMessageRecord, bool]:
        """Append a message to a known conversation; new inbound messages are processed under the same lock.

        A non-PENDING ``ai_status`` on an inbound message is stored as given and skips automation.
        """
        conversation = self._conversations.get(conversation_id)
        with self._locks.hold(conversation_id):
            stored, created = self._conversations.append(conversation_id, message)
            if not created or message.direction != "INBOUND":
                return stored, created
            if ai_status is not None and ai_status != "PENDING":
                stored = self._conversations.update_status(stored.message_id, MessagePatch(ai_status=ai_status))
                return stored, created
            self._process(conversation.channel_id, conversation_id, stored.message_id)
            return self._conversations.get_message(stored.message_id), created

    def on_inbound_message(self, channel_id: str, conversation_id: str, message_id: str) -> OrchestrationOutcome:
        with self._locks.hold(conversation_id):
            return self._process(channel_id, conversation_id, message_id)

    def _process(self, channel_id: str, conversation_id: str, message_id: str) -> OrchestrationOutcome:
        conversation = self._conversations.get(conversation_id)
        if conversation.channel_id != channel_id:
            raise NotFoundError(f"conversation {conversation_id} not found")
        message = self._conversations.get_message(message_id)
        if message.conversation_id != conversation_id:
            raise NotFoundError(f"message {message_id} not found")

        if message.direction != "INBOUND" or message.ai_status != "PENDING":
            return self._finish(OrchestrationOutcome(outcome="already_processed", message_id=message_id), channel_id)

        config = self._settings.get(channel_id)
        if not config.enabled:
            return self._finish(self._logged_only(message_id, "automation_disabled"), channel_id)
        if not config.auto_reply_enabled:
            return self._finish(self._logged_only(message_id, "auto_reply_disabled"), channel_id)
        if not conversation.is_automated:
            return self._finish(self._logged_only(message_id, "conversation_not_automated"), channel_id)

        classification = self._classifier.classify(message.content, config)
        reply = self._compose_for(conversation, message, config, classification)

        if reply.text is None:
            reason = "blacklist" if reply.source == "blacklist" else "no_safe_reply"
            try:
                self._conversations.update_status(
                    message_id,
                    MessagePatch(ai_status="SKIPPED", expected_ai_status="PENDING"),
                )
            except InvalidStateTransition:
                return self._finish(OrchestrationOutcome(outcome="already_processed", message_id=message_id), channel_id)
            self._settings.increment_counters(channel_id, processed=1)
            return self._finish(
                OrchestrationOutcome(
                    outcome="skipped",
                    message_id=message_id,
                    reason=reason,
                    confidence=reply.confidence,
                    category=reply.category,
                    used_fallback=reply.used_fallback,
                ),
                channel_id,
            )

        try:
            self._conversations.update_status(
                message_id,
                MessagePatch(
                    ai_status="GENERATED",
                    ai_response=reply.text,
                    ai_confidence=reply.confidence,
                    ai_model=reply.model,
                    delivery_status="PENDING_REPLY",
                    expected_ai_status="PENDING",
                ),
            )
        except InvalidStateTransition:
            return self._finish(OrchestrationOutcome(outcome="already_processed", message_id=message_id), channel_id)

        # Scheduled before the counters so a GENERATED reply always has a pending delivery.
        deliver_at = due_at(self._clock(), config.response_delay_seconds)
        self._scheduler.schedule(
            DeliveryJob(
                channel_id=channel_id,
                conversation_id=conversation_id,
                message_id=message_id,
                due_at=deliver_at,
            ),
            self.deliver,
        )
        self._settings.increment_counters(channel_id, processed=1, auto_replied=1)
        return self._finish(
            OrchestrationOutcome(
                outcome="generated",
                message_id=message_id,
                reason=reply.source,
                reply_text=reply.text,
                confidence=reply.confidence,
                category=reply.category,
                used_fallback=reply.used_fallback,
                deliver_at=deliver_at,
            ),
            channel_id,
        )

    def _compose_for(
        self,
        conversation: ConversationRecord,
        message: DirectMessageRecord,
        config: AutomationConfig,
        classification: ClassificationResult | None,
        *,
        model: str | None = None,
    ) -> ComposedReply:
        window = self._conversations.context_window(
            conversation.conversation_id,
            until_message_id=message.message_id,
            limit=config.context_window,
        )
        history = turns_from_messages(item for item in window if item.message_id != message.message_id)
        return self._composer.compose(
            message.content,
            history,
            config,
            classification=classification,
            now=self._clock(),
            model=model,
            participant_name=conversation.participant.display_name,
        )

    @staticmethod
    def _logged_only(message_id: str, reason: str) -> OrchestrationOutcome:
        return OrchestrationOutcome(outcome="logged_only", message_id=message_id, reason=reason)

    @staticmethod
    def _finish(outcome: OrchestrationOutcome, channel_id: str) -> OrchestrationOutcome:
        logger.info(
            "inbound processed channel_id=%s message_id=%s outcome=%s reason=%s",
            channel_id,
            outcome.message_id,
            outcome.outcome,
            outcome.reason,
        )
        return outcome

    # Delivery --------------------------------------------------------------

    def deliver(self, job: DeliveryJob) -> DirectMessageRecord | None:
        """Send a generated reply. The sender is called without holding the conversation lock."""
        message = self._conversations.get_message(job.message_id)
        if message.ai_status not in {"GENERATED", "APPROVED"} or not message.ai_response:
            logger.info("delivery skipped message_id=%s ai_status=%s", job.message_id, message.ai_status)
            return None

        conversation = self._conversations.get(job.conversation_id)
        if not conversation.is_active:
            return self.report_delivery(job.message_id, delivered=False, error_code="conversation_inactive")

        result = self._sender.send_reply(
            DeliveryRequest(
                message_id=message.message_id,
                conversation_id=conversation.conversation_id,
                channel_id=conversation.channel_id,
                recipient=conversation.participant.external_id,
                thread_ref=conversation.external_thread_id,
                text=message.ai_response,
            )
        )
        return self.report_delivery(
            job.message_id,
            delivered=result.status == "sent",
            provider_message_id=result.provider_message_id,
            error_code=result.error_code,
        )

    def report_delivery(
        self,
        message_id: str,
        *,
        delivered: bool,
        provider_message_id: str | None = None,
        error_code: str | None = None,
    ) -> DirectMessageRecord:
        message = self._conversations.get_message(message_id)
        with self._locks.hold(message.conversation_id):
            message = self._conversations.get_message(message_id)
            if not delivered:
                return self._conversations.record_delivery_failure(message_id, error_code or "delivery_failed")
            if message.ai_status == "SENT":
                return message
            if message.ai_status not in {"GENERATED", "APPROVED"} or not message.ai_response:
                raise InvalidStateTransition(message.ai_status, "SENT")

            self._conversations.append(
                message.conversation_id,
                NewMessage(
                    direction="OUTBOUND",
                    content=message.ai_response,
                    external_message_id=provider_message_id,
                    delivery_status="REPLIED",
                ),
            )
            updated = self._conversations.update_status(
                message_id,
                MessagePatch(ai_status="SENT", delivery_status="REPLIED"),
            )
        logger.info("reply delivered message_id=%s", message_id)
        return updated

    # Operator tools --------------------------------------------------------

    def generate_for_operator(
        self,
        *,
        conversation_id: str,
        message_text: str,
        message_id: str | None = None,
        model: str | None = None,
        with_suggestions: bool = False,
    ) -> ManualGeneration:
        """Draft a reply on request, regardless of the automation flags."""
        conversation = self._conversations.get(conversation_id)
        config = self._settings.get(conversation.channel_id)
        window = self._conversations.context_window(
            conversation_id,
            until_message_id=message_id,
            limit=config.context_window,
        )
        history = turns_from_messages(item for item in window if item.message_id != message_id)
        reply = self._composer.compose(
            message_text,
            history,
            config,
            now=self._clock(),
            model=model,
            participant_name=conversation.participant.display_name,
        )
        suggestions = self._composer.suggest(message_text, config, model=model) if with_suggestions else []

        stored: DirectMessageRecord | None = None
        if message_id is not None and reply.text is not None:
            with self._locks.hold(conversation_id):
                target = self._conversations.get_message(message_id)
                if target.conversation_id != conversation_id:
                    raise NotFoundError(f"message {message_id} not found")
                try:
                    stored = self._conversations.update_status(
                        message_id,
                        MessagePatch(
                            ai_status="GENERATED",
                            ai_response=reply.text,
                            ai_confidence=reply.confidence,
                            ai_model=reply.model,
                        ),
                    )
                except InvalidStateTransition:
                    logger.info("draft not stored, message already past GENERATED message_id=%s", message_id)
        if self._settings.find(conversation.channel_id) is not None:
            self._settings.increment_counters(conversation.channel_id, processed=1)
        return ManualGeneration(reply=reply, suggestions=suggestions, message=stored)

    def analyze(self, channel_id: str, message_text: str) -> ClassificationResult:
        return self._classifier.classify(message_text, self._settings.get(channel_id))
