from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request, Response, status

from .access import (
    ChannelAccessRepository,
    ChannelAccessService,
    ChannelRecord,
    OperatorPrincipal,
    create_channel_access_repository,
)
from .automation_settings import (
    AutomationConfig,
    AutomationSettingsRepository,
    AutomationSettingsService,
    create_automation_settings_repository,
)
from .classifier import ClassificationResult, MessageClassifier
from .composer import ResponseComposer
from .config import Settings, get_settings
from .conversations import (
    ConversationRecord,
    ConversationRepository,
    ConversationService,
    DirectMessageRecord,
    MessagePatch,
    NewMessage,
    Participant,
    create_conversation_repository,
)
from .delivery import (
    DeliveryScheduler,
    DeliverySender,
    QueuedDeliveryScheduler,
    create_delivery_scheduler,
    create_delivery_sender,
)
from .errors import (
    AuthorizationError,
    AutomationError,
    InvalidStateTransition,
    NotFoundError,
    ProviderError,
    StorageError,
    ValidationError,
)
from .generation import TextGenerationProvider, create_text_provider
from .models import (
    AiStatus,
    AnalyzeRequest,
    AnalyzeResponse,
    AutomationConfigItem,
    AutomationConfigResponse,
    AutomationConfigUpdateRequest,
    AutomationToggleRequest,
    AutomationToggleResponse,
    ChannelItem,
    ChannelRegisterRequest,
    ClassificationItem,
    ConversationCreateRequest,
    ConversationCreateResponse,
    ConversationItem,
    ConversationListResponse,
    ConversationUpdateRequest,
    DeliveryReportRequest,
    DeliveryRunResponse,
    GenerateRequest,
    GenerateResponse,
    HealthResponse,
    InboundMessageRequest,
    InboundMessageResponse,
    MessageCreateRequest,
    MessageCreateResponse,
    MessageDirection,
    MessageItem,
    MessageListResponse,
    MessageUpdateRequest,
    OperatingHoursItem,
    OrchestrationOutcomeItem,
    ParticipantItem,
    QuickReplyItem,
)
from .operating_hours import operating_hours_to_dict
from .operator_tokens import OperatorTokenError, decode_operator_token
from .orchestrator import AutomationOrchestrator, OrchestrationOutcome

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/dm", tags=["dm-automation"])

channel_repo: ChannelAccessRepository
settings_repo: AutomationSettingsRepository
conversation_repo: ConversationRepository
access_service: ChannelAccessService
settings_service: AutomationSettingsService
conversation_service: ConversationService
text_provider: TextGenerationProvider
delivery_sender: DeliverySender
delivery_scheduler: DeliveryScheduler
orchestrator: AutomationOrchestrator


def configure_runtime(
    settings: Settings,
    *,
    provider: TextGenerationProvider | None = None,
    sender: DeliverySender | None = None,
    scheduler: DeliveryScheduler | None = None,
) -> None:
    """(Re)build the module-level repositories and services from ``settings``."""
    global _settings, channel_repo, settings_repo, conversation_repo
    global access_service, settings_service, conversation_service
    global text_provider, delivery_sender, delivery_scheduler, orchestrator

    _settings = settings
    channel_repo = create_channel_access_repository(
        backend=settings.automation_store_backend,
        database_url=settings.database_url,
    )
    settings_repo = create_automation_settings_repository(
        backend=settings.automation_store_backend,
        database_url=settings.database_url,
    )
    conversation_repo = create_conversation_repository(
        backend=settings.automation_store_backend,
        database_url=settings.database_url,
    )
    access_service = ChannelAccessService(repository=channel_repo)
    settings_service = AutomationSettingsService(repository=settings_repo)
    conversation_service = ConversationService(repository=conversation_repo)

    text_provider = provider or create_text_provider(settings)
    classifier = MessageClassifier(provider=text_provider)
    composer = ResponseComposer(provider=text_provider, classifier=classifier)
    delivery_sender = sender or create_delivery_sender(settings)
    delivery_scheduler = scheduler or create_delivery_scheduler(settings)
    orchestrator = AutomationOrchestrator(
        settings=settings_service,
        conversations=conversation_service,
        classifier=classifier,
        composer=composer,
        sender=delivery_sender,
        scheduler=delivery_scheduler,
    )


configure_runtime(_settings)


def reset_runtime_state_for_tests() -> None:
    access_service.reset()
    settings_service.reset()
    conversation_service.reset()
    shutdown = getattr(delivery_scheduler, "shutdown", None)
    if shutdown is not None:
        shutdown()


def _http_error(exc: AutomationError) -> HTTPException:
    if isinstance(exc, ValidationError):
        status_code = 400
    elif isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, AuthorizationError):
        status_code = 403
    elif isinstance(exc, InvalidStateTransition):
        status_code = 409
    elif isinstance(exc, ProviderError):
        status_code = 502
    else:
        status_code = 500
    if isinstance(exc, StorageError) or status_code == 500:
        logger.error("request failed code=%s: %s", exc.code, exc.message)
        return HTTPException(status_code, {"code": exc.code, "message": "internal storage error"})
    if isinstance(exc, ProviderError):
        return HTTPException(status_code, {"code": exc.code, "message": "text generation unavailable"})
    return HTTPException(status_code, {"code": exc.code, "message": exc.message})


def _require_operator(request: Request) -> OperatorPrincipal:
    token = request.headers.get("Authorization", "").removeprefix("Bearer ")
    if not token:
        raise HTTPException(401, {"code": "unauthorized", "message": "operator session required"})
    try:
        payload = decode_operator_token(token, secret=_settings.operator_session_secret)
    except OperatorTokenError as exc:
        raise HTTPException(401, {"code": "unauthorized", "message": str(exc)}) from exc
    return OperatorPrincipal(operator_id=payload.operator_id, role=payload.role)


def _require_admin(request: Request) -> OperatorPrincipal:
    principal = _require_operator(request)
    if not principal.is_admin:
        raise HTTPException(403, {"code": "forbidden", "message": "admin role required"})
    return principal


def _conversation_for(principal: OperatorPrincipal, conversation_id: str, *, write: bool = False) -> ConversationRecord:
    conversation = conversation_service.get(conversation_id)
    try:
        access_service.ensure_access(principal, conversation.channel_id, write=write)
    except NotFoundError as exc:
        raise NotFoundError(f"conversation {conversation_id} not found") from exc
    return conversation


def _message_for(principal: OperatorPrincipal, message_id: str, *, write: bool = False) -> DirectMessageRecord:
    message = conversation_service.get_message(message_id)
    try:
        _conversation_for(principal, message.conversation_id, write=write)
    except NotFoundError as exc:
        raise NotFoundError(f"message {message_id} not found") from exc
    return message


def _check_model(model: str | None) -> None:
    if model is not None and model not in _settings.generation_allowed_models:
        raise ValidationError("model", f"must be one of {', '.join(_settings.generation_allowed_models)}")


# ---------------------------------------------------------------------------
# Response mapping
# ---------------------------------------------------------------------------


def _config_item(config: AutomationConfig) -> AutomationConfigItem:
    return AutomationConfigItem(
        channel_id=config.channel_id,
        enabled=config.enabled,
        auto_reply_enabled=config.auto_reply_enabled,
        language=config.language,  # type: ignore[arg-type]
        tone=config.tone,  # type: ignore[arg-type]
        response_delay_seconds=config.response_delay_seconds,
        system_prompt=config.system_prompt,
        brand_name=config.brand_name,
        context_window=config.context_window,
        max_response_length=config.max_response_length,
        category_responses=dict(config.category_responses),
        keyword_rules=dict(config.keyword_rules),
        blacklisted_phrases=list(config.blacklisted_phrases),
        quick_replies=[QuickReplyItem(id=item.id, label=item.label, text=item.text) for item in config.quick_replies],
        operating_hours=OperatingHoursItem.model_validate(operating_hours_to_dict(config.operating_hours)),
        out_of_office_message=config.out_of_office_message,
        total_processed=config.total_processed,
        total_auto_replied=config.total_auto_replied,
        updated_at=config.updated_at,
    )


def _channel_item(record: ChannelRecord) -> ChannelItem:
    return ChannelItem(
        channel_id=record.channel_id,
        owner_id=record.owner_id,
        display_name=record.display_name,
        created_at=record.created_at,
    )


def _conversation_item(record: ConversationRecord) -> ConversationItem:
    return ConversationItem(
        conversation_id=record.conversation_id,
        channel_id=record.channel_id,
        external_thread_id=record.external_thread_id,
        participant=ParticipantItem(
            external_id=record.participant.external_id,
            display_name=record.participant.display_name,
            handle=record.participant.handle,
            avatar_url=record.participant.avatar_url,
        ),
        is_active=record.is_active,
        is_automated=record.is_automated,
        last_message_at=record.last_message_at,
        unread_count=record.unread_count,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _message_item(record: DirectMessageRecord) -> MessageItem:
    return MessageItem(
        message_id=record.message_id,
        conversation_id=record.conversation_id,
        external_message_id=record.external_message_id,
        direction=record.direction,
        type=record.type,
        content=record.content,
        media_url=record.media_url,
        delivery_status=record.delivery_status,
        ai_status=record.ai_status,
        ai_response=record.ai_response,
        ai_confidence=record.ai_confidence,
        ai_model=record.ai_model,
        sent_at=record.sent_at,
        read_at=record.read_at,
        replied_at=record.replied_at,
        delivery_error=record.delivery_error,
        delivery_failed_at=record.delivery_failed_at,
    )


def _outcome_item(outcome: OrchestrationOutcome) -> OrchestrationOutcomeItem:
    return OrchestrationOutcomeItem(
        outcome=outcome.outcome,
        message_id=outcome.message_id,
        reason=outcome.reason,
        reply_text=outcome.reply_text,
        confidence=outcome.confidence,
        category=outcome.category,
        used_fallback=outcome.used_fallback,
        deliver_at=outcome.deliver_at,
    )


def _classification_item(result: ClassificationResult) -> ClassificationItem:
    return ClassificationItem(
        category=result.category,
        sentiment=result.sentiment,  # type: ignore[arg-type]
        confidence=result.confidence,
        intent=result.intent,
        needs_human_review=result.needs_human_review,
        priority=result.priority,  # type: ignore[arg-type]
        matched_keyword=result.matched_keyword,
        source=result.source,  # type: ignore[arg-type]
    )


def _participant(item: ParticipantItem) -> Participant:
    return Participant(
        external_id=item.external_id,
        display_name=item.display_name,
        handle=item.handle,
        avatar_url=item.avatar_url,
    )


# ---------------------------------------------------------------------------
# Channels and automation settings
# ---------------------------------------------------------------------------


@router.post("/channels", response_model=ChannelItem, status_code=status.HTTP_201_CREATED)
def register_channel(payload: ChannelRegisterRequest, request: Request) -> ChannelItem:
    principal = _require_admin(request)
    try:
        record = access_service.register(
            principal,
            channel_id=payload.channel_id,
            owner_id=payload.owner_id,
            display_name=payload.display_name,
        )
    except AutomationError as exc:
        raise _http_error(exc) from exc
    return _channel_item(record)


@router.get("/automation", response_model=AutomationConfigResponse)
def get_automation(request: Request, channel_id: str = Query(min_length=1, max_length=128)) -> AutomationConfigResponse:
    principal = _require_operator(request)
    try:
        access_service.ensure_access(principal, channel_id)
        stored = settings_service.find(channel_id)
        config = stored or settings_service.get(channel_id)
    except AutomationError as exc:
        raise _http_error(exc) from exc
    return AutomationConfigResponse(automation=_config_item(config), exists=stored is not None)


@router.put("/automation", response_model=AutomationConfigResponse)
def put_automation(payload: AutomationConfigUpdateRequest, request: Request) -> AutomationConfigResponse:
    principal = _require_operator(request)
    try:
        access_service.ensure_access(principal, payload.channel_id, write=True)
        config = settings_service.upsert(payload.channel_id, payload.settings_patch())
    except AutomationError as exc:
        raise _http_error(exc) from exc
    return AutomationConfigResponse(automation=_config_item(config), exists=True)


@router.patch("/automation", response_model=AutomationToggleResponse)
def toggle_automation(payload: AutomationToggleRequest, request: Request) -> AutomationToggleResponse:
    principal = _require_operator(request)
    try:
        access_service.ensure_access(principal, payload.channel_id, write=True)
        config = settings_service.set_enabled(
            payload.channel_id,
            enabled=payload.enabled,
            auto_reply_enabled=payload.auto_reply_enabled,
        )
    except AutomationError as exc:
        raise _http_error(exc) from exc
    return AutomationToggleResponse(
        channel_id=config.channel_id,
        enabled=config.enabled,
        auto_reply_enabled=config.auto_reply_enabled,
    )


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@router.get("/conversations", response_model=ConversationListResponse)
def list_conversations(
    request: Request,
    channel_id: str | None = Query(default=None, min_length=1, max_length=128),
    is_active: bool | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> ConversationListResponse:
    principal = _require_operator(request)
    try:
        if channel_id is not None:
            access_service.ensure_access(principal, channel_id)
            channel_ids: list[str] | None = [channel_id]
        else:
            channel_ids = access_service.accessible_channel_ids(principal)
        items, total = conversation_service.list_conversations(
            channel_ids=channel_ids,
            is_active=is_active,
            limit=limit,
            offset=offset,
        )
    except AutomationError as exc:
        raise _http_error(exc) from exc
    return ConversationListResponse(
        items=[_conversation_item(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/conversations", response_model=ConversationCreateResponse, status_code=status.HTTP_201_CREATED)
def create_conversation(
    payload: ConversationCreateRequest,
    request: Request,
    response: Response,
) -> ConversationCreateResponse:
    principal = _require_operator(request)
    try:
        access_service.ensure_access(principal, payload.channel_id, write=True)
        conversation, created = conversation_service.find_or_create(
            payload.channel_id,
            payload.external_thread_id,
            _participant(payload.participant),
            is_automated=payload.is_automated,
        )
    except AutomationError as exc:
        raise _http_error(exc) from exc
    if not created:
        response.status_code = status.HTTP_200_OK
    return ConversationCreateResponse(conversation=_conversation_item(conversation), created=created)


@router.post("/conversations/{conversation_id}/read", response_model=ConversationItem)
def mark_conversation_read(conversation_id: str, request: Request) -> ConversationItem:
    principal = _require_operator(request)
    try:
        _conversation_for(principal, conversation_id, write=True)
        conversation = conversation_service.mark_read(conversation_id)
    except AutomationError as exc:
        raise _http_error(exc) from exc
    return _conversation_item(conversation)


@router.patch("/conversations/{conversation_id}", response_model=ConversationItem)
def update_conversation(conversation_id: str, payload: ConversationUpdateRequest, request: Request) -> ConversationItem:
    principal = _require_operator(request)
    try:
        _conversation_for(principal, conversation_id, write=True)
        conversation = conversation_service.set_flags(
            conversation_id,
            is_active=payload.is_active,
            is_automated=payload.is_automated,
        )
    except AutomationError as exc:
        raise _http_error(exc) from exc
    return _conversation_item(conversation)


@router.delete("/conversations/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_conversation(conversation_id: str, request: Request) -> Response:
    principal = _require_operator(request)
    try:
        _conversation_for(principal, conversation_id, write=True)
        conversation_service.delete(conversation_id)
    except AutomationError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@router.get("/messages", response_model=MessageListResponse)
def list_messages(
    request: Request,
    conversation_id: str = Query(min_length=1, max_length=64),
    direction: MessageDirection | None = None,
    ai_status: AiStatus | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> MessageListResponse:
    principal = _require_operator(request)
    try:
        _conversation_for(principal, conversation_id)
        items, total = conversation_service.list_messages(
            conversation_id,
            direction=direction,
            ai_status=ai_status,
            limit=limit,
            offset=offset,
        )
    except AutomationError as exc:
        raise _http_error(exc) from exc
    return MessageListResponse(items=[_message_item(item) for item in items], total=total, limit=limit, offset=offset)


@router.post("/messages", response_model=MessageCreateResponse, status_code=status.HTTP_201_CREATED)
def create_message(payload: MessageCreateRequest, request: Request, response: Response) -> MessageCreateResponse:
    principal = _require_operator(request)
    try:
        _conversation_for(principal, payload.conversation_id, write=True)
        message, created = orchestrator.record_message(
            payload.conversation_id,
            NewMessage(
                direction=payload.direction,
                content=payload.content,
                type=payload.type,
                external_message_id=payload.external_message_id,
                media_url=payload.media_url,
                delivery_status=payload.delivery_status,
                ai_response=payload.ai_response,
                ai_confidence=payload.ai_confidence,
                ai_model=payload.ai_model,
            ),
            ai_status=payload.ai_status,
        )
    except AutomationError as exc:
        raise _http_error(exc) from exc
    if not created:
        response.status_code = status.HTTP_200_OK
    return MessageCreateResponse(message=_message_item(message))


@router.patch("/messages/{message_id}", response_model=MessageItem)
def update_message(message_id: str, payload: MessageUpdateRequest, request: Request) -> MessageItem:
    principal = _require_operator(request)
    try:
        _message_for(principal, message_id, write=True)
        message = conversation_service.update_status(
            message_id,
            MessagePatch(
                delivery_status=payload.delivery_status,
                ai_status=payload.ai_status,
                ai_response=payload.ai_response,
                ai_confidence=payload.ai_confidence,
                ai_model=payload.ai_model,
                read_at=payload.read_at,
                replied_at=payload.replied_at,
            ),
        )
    except AutomationError as exc:
        raise _http_error(exc) from exc
    return _message_item(message)


@router.post("/messages/{message_id}/delivery-report", response_model=MessageItem)
def report_delivery(message_id: str, payload: DeliveryReportRequest, request: Request) -> MessageItem:
    principal = _require_operator(request)
    try:
        _message_for(principal, message_id, write=True)
        message = orchestrator.report_delivery(
            message_id,
            delivered=payload.delivered,
            provider_message_id=payload.provider_message_id,
            error_code=payload.error_code,
        )
    except AutomationError as exc:
        raise _http_error(exc) from exc
    return _message_item(message)


# ---------------------------------------------------------------------------
# Automation runs
# ---------------------------------------------------------------------------


@router.post("/inbound", response_model=InboundMessageResponse)
def receive_inbound(payload: InboundMessageRequest, request: Request) -> InboundMessageResponse:
    principal = _require_operator(request)
    try:
        access_service.ensure_access(principal, payload.channel_id, write=True)
        result = orchestrator.ingest_inbound(
            channel_id=payload.channel_id,
            external_thread_id=payload.external_thread_id,
            participant=_participant(payload.participant),
            content=payload.content,
            type=payload.type,
            external_message_id=payload.external_message_id,
            media_url=payload.media_url,
        )
    except AutomationError as exc:
        raise _http_error(exc) from exc
    return InboundMessageResponse(
        conversation=_conversation_item(result.conversation),
        created_conversation=result.created_conversation,
        message=_message_item(result.message),
        outcome=_outcome_item(result.outcome),
    )


@router.post("/generate", response_model=GenerateResponse)
def generate_reply(payload: GenerateRequest, request: Request) -> GenerateResponse:
    principal = _require_operator(request)
    try:
        _check_model(payload.model)
        _conversation_for(principal, payload.conversation_id, write=True)
        if payload.message_id is not None:
            _message_for(principal, payload.message_id, write=True)
        generated = orchestrator.generate_for_operator(
            conversation_id=payload.conversation_id,
            message_text=payload.message,
            message_id=payload.message_id,
            model=payload.model,
            with_suggestions=payload.generate_suggestions,
        )
    except AutomationError as exc:
        raise _http_error(exc) from exc
    reply = generated.reply
    return GenerateResponse(
        response=reply.text,
        confidence=reply.confidence,
        detected_category=reply.category,
        used_fallback=reply.used_fallback,
        source=reply.source,
        suggestions=generated.suggestions,
        model=reply.model,
    )


@router.put("/analyze", response_model=AnalyzeResponse)
def analyze_message(payload: AnalyzeRequest, request: Request) -> AnalyzeResponse:
    principal = _require_operator(request)
    try:
        access_service.ensure_access(principal, payload.channel_id)
        result = orchestrator.analyze(payload.channel_id, payload.message)
    except AutomationError as exc:
        raise _http_error(exc) from exc
    return AnalyzeResponse(analysis=_classification_item(result))


@router.post("/deliveries/run-once", response_model=DeliveryRunResponse)
def run_due_deliveries(request: Request) -> DeliveryRunResponse:
    _require_admin(request)
    if not isinstance(delivery_scheduler, QueuedDeliveryScheduler):
        raise HTTPException(409, {"code": "scheduler_not_queued", "message": "DELIVERY_SCHEDULER is not queued"})
    jobs = delivery_scheduler.run_due()
    return DeliveryRunResponse(processed_count=len(jobs), message_ids=[job.message_id for job in jobs])


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        store_backend=_settings.automation_store_backend,
        generation_provider=_settings.generation_provider,
    )
