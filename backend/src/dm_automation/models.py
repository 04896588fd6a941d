from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Language = Literal["de", "en", "tr"]
Tone = Literal["friendly", "professional", "casual"]
MessageDirection = Literal["INBOUND", "OUTBOUND"]
MessageType = Literal["TEXT", "IMAGE", "VIDEO", "STORY_REPLY", "REEL_SHARE"]
DeliveryStatus = Literal["RECEIVED", "READ", "REPLIED", "PENDING_REPLY"]
AiStatus = Literal["PENDING", "GENERATED", "APPROVED", "SENT", "SKIPPED"]
Sentiment = Literal["positive", "neutral", "negative"]
Priority = Literal["high", "medium", "low"]
OperatorRole = Literal["admin", "operator", "viewer"]
ClassificationSource = Literal["keyword", "model", "default"]
ReplySource = Literal[
    "blacklist",
    "out_of_office",
    "keyword",
    "category",
    "generated",
    "fallback",
    "suppressed",
]
OutcomeKind = Literal["logged_only", "skipped", "generated", "already_processed"]

LANGUAGES: frozenset[str] = frozenset({"de", "en", "tr"})
TONES: frozenset[str] = frozenset({"friendly", "professional", "casual"})


def _strip_required(value: str) -> str:
    normalized = str(value).strip()
    if not normalized:
        raise ValueError("value cannot be blank")
    return normalized


# ---------------------------------------------------------------------------
# Automation settings
# ---------------------------------------------------------------------------


class DayWindowItem(BaseModel):
    start: str
    end: str


class OperatingHoursItem(BaseModel):
    enabled: bool = False
    timezone: str = "UTC"
    hours: dict[str, DayWindowItem] = Field(default_factory=dict)


class QuickReplyItem(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    label: str = Field(min_length=1, max_length=128)
    text: str = Field(min_length=1, max_length=2000)


class AutomationConfigUpdateRequest(BaseModel):
    """Partial settings update. Range checks happen in the settings service."""

    model_config = ConfigDict(extra="forbid")

    channel_id: str = Field(min_length=1, max_length=128)
    enabled: bool | None = None
    auto_reply_enabled: bool | None = None
    language: str | None = None
    tone: str | None = None
    response_delay_seconds: int | None = None
    system_prompt: str | None = None
    brand_name: str | None = None
    context_window: int | None = None
    max_response_length: int | None = None
    category_responses: dict[str, str] | None = None
    keyword_rules: dict[str, str] | None = None
    blacklisted_phrases: list[str] | None = None
    quick_replies: list[QuickReplyItem] | None = None
    operating_hours: OperatingHoursItem | None = None
    out_of_office_message: str | None = None

    @field_validator("channel_id")
    @classmethod
    def _normalize_channel(cls, value: str) -> str:
        return _strip_required(value)

    def settings_patch(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude={"channel_id"})


class AutomationToggleRequest(BaseModel):
    channel_id: str = Field(min_length=1, max_length=128)
    enabled: bool | None = None
    auto_reply_enabled: bool | None = None

    @field_validator("channel_id")
    @classmethod
    def _normalize_channel(cls, value: str) -> str:
        return _strip_required(value)


class AutomationConfigItem(BaseModel):
    channel_id: str
    enabled: bool
    auto_reply_enabled: bool
    language: Language
    tone: Tone
    response_delay_seconds: int
    system_prompt: str | None
    brand_name: str | None
    context_window: int
    max_response_length: int
    category_responses: dict[str, str]
    keyword_rules: dict[str, str]
    blacklisted_phrases: list[str]
    quick_replies: list[QuickReplyItem]
    operating_hours: OperatingHoursItem
    out_of_office_message: str | None
    total_processed: int
    total_auto_replied: int
    updated_at: datetime | None = None


class AutomationConfigResponse(BaseModel):
    automation: AutomationConfigItem
    exists: bool


class AutomationToggleResponse(BaseModel):
    channel_id: str
    enabled: bool
    auto_reply_enabled: bool


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class ChannelRegisterRequest(BaseModel):
    channel_id: str = Field(min_length=1, max_length=128)
    owner_id: str = Field(min_length=1, max_length=128)
    display_name: str | None = Field(default=None, max_length=256)

    @field_validator("channel_id", "owner_id")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        return _strip_required(value)


class ChannelItem(BaseModel):
    channel_id: str
    owner_id: str
    display_name: str | None
    created_at: datetime


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


class ParticipantItem(BaseModel):
    external_id: str = Field(min_length=1, max_length=256)
    display_name: str | None = Field(default=None, max_length=256)
    handle: str | None = Field(default=None, max_length=256)
    avatar_url: str | None = Field(default=None, max_length=2048)

    @field_validator("external_id")
    @classmethod
    def _normalize_external_id(cls, value: str) -> str:
        return _strip_required(value)


class ConversationCreateRequest(BaseModel):
    channel_id: str = Field(min_length=1, max_length=128)
    external_thread_id: str = Field(min_length=1, max_length=256)
    participant: ParticipantItem
    is_automated: bool = True

    @field_validator("channel_id", "external_thread_id")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        return _strip_required(value)


class ConversationUpdateRequest(BaseModel):
    is_active: bool | None = None
    is_automated: bool | None = None

    @model_validator(mode="after")
    def _require_change(self) -> ConversationUpdateRequest:
        if self.is_active is None and self.is_automated is None:
            raise ValueError("at least one of is_active or is_automated is required")
        return self


class ConversationItem(BaseModel):
    conversation_id: str
    channel_id: str
    external_thread_id: str
    participant: ParticipantItem
    is_active: bool
    is_automated: bool
    last_message_at: datetime | None
    unread_count: int
    created_at: datetime
    updated_at: datetime


class ConversationCreateResponse(BaseModel):
    conversation: ConversationItem
    created: bool


class ConversationListResponse(BaseModel):
    items: list[ConversationItem]
    total: int
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class MessageCreateRequest(BaseModel):
    conversation_id: str = Field(min_length=1, max_length=64)
    external_message_id: str | None = Field(default=None, min_length=1, max_length=256)
    direction: MessageDirection
    type: MessageType = "TEXT"
    content: str = Field(min_length=1, max_length=10000)
    media_url: str | None = Field(default=None, max_length=2048)
    delivery_status: DeliveryStatus = "RECEIVED"
    ai_status: AiStatus | None = None
    ai_response: str | None = None
    ai_confidence: float | None = Field(default=None, ge=0, le=1)
    ai_model: str | None = Field(default=None, max_length=64)

    @field_validator("media_url")
    @classmethod
    def _validate_media_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized.startswith(("http://", "https://")):
            raise ValueError("media_url must be an http(s) URL")
        return normalized

    @model_validator(mode="after")
    def _validate_ai_fields(self) -> MessageCreateRequest:
        has_ai_fields = any(
            value is not None for value in (self.ai_status, self.ai_response, self.ai_confidence, self.ai_model)
        )
        if self.direction == "OUTBOUND" and has_ai_fields:
            raise ValueError("ai fields are only allowed on INBOUND messages")
        return self


class MessageUpdateRequest(BaseModel):
    delivery_status: DeliveryStatus | None = None
    ai_status: AiStatus | None = None
    ai_response: str | None = None
    ai_confidence: float | None = Field(default=None, ge=0, le=1)
    ai_model: str | None = Field(default=None, max_length=64)
    read_at: datetime | None = None
    replied_at: datetime | None = None


class DeliveryReportRequest(BaseModel):
    delivered: bool
    provider_message_id: str | None = Field(default=None, max_length=256)
    error_code: str | None = Field(default=None, max_length=64)
    error_message: str | None = Field(default=None, max_length=1000)


class MessageItem(BaseModel):
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
    delivery_error: str | None
    delivery_failed_at: datetime | None


class MessageCreateResponse(BaseModel):
    message: MessageItem


class MessageListResponse(BaseModel):
    items: list[MessageItem]
    total: int
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Automation runs
# ---------------------------------------------------------------------------


class InboundMessageRequest(BaseModel):
    channel_id: str = Field(min_length=1, max_length=128)
    external_thread_id: str = Field(min_length=1, max_length=256)
    participant: ParticipantItem
    external_message_id: str | None = Field(default=None, min_length=1, max_length=256)
    type: MessageType = "TEXT"
    content: str = Field(min_length=1, max_length=10000)
    media_url: str | None = Field(default=None, max_length=2048)

    @field_validator("channel_id", "external_thread_id")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        return _strip_required(value)


class OrchestrationOutcomeItem(BaseModel):
    outcome: OutcomeKind
    message_id: str
    reason: str | None = None
    reply_text: str | None = None
    confidence: float | None = None
    category: str | None = None
    used_fallback: bool = False
    deliver_at: datetime | None = None


class InboundMessageResponse(BaseModel):
    conversation: ConversationItem
    created_conversation: bool
    message: MessageItem
    outcome: OrchestrationOutcomeItem


class GenerateRequest(BaseModel):
    conversation_id: str = Field(min_length=1, max_length=64)
    message_id: str | None = Field(default=None, min_length=1, max_length=64)
    message: str = Field(min_length=1, max_length=10000)
    model: str | None = Field(default=None, max_length=64)
    generate_suggestions: bool = False


class GenerateResponse(BaseModel):
    response: str | None
    confidence: float
    detected_category: str
    used_fallback: bool
    source: ReplySource
    suggestions: list[str]
    model: str | None


class AnalyzeRequest(BaseModel):
    channel_id: str = Field(min_length=1, max_length=128)
    message: str = Field(min_length=1, max_length=10000)

    @field_validator("channel_id")
    @classmethod
    def _normalize_channel(cls, value: str) -> str:
        return _strip_required(value)


class ClassificationItem(BaseModel):
    category: str
    sentiment: Sentiment
    confidence: float
    intent: str
    needs_human_review: bool
    priority: Priority
    matched_keyword: str | None
    source: ClassificationSource


class AnalyzeResponse(BaseModel):
    analysis: ClassificationItem


class DeliveryRunResponse(BaseModel):
    processed_count: int
    message_ids: list[str]


class HealthResponse(BaseModel):
    status: Literal["ok"]
    store_backend: str
    generation_provider: str
