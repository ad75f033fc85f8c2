"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
- Helpers turning ORM rows into JSON-ready dicts

Request models accept both snake_case and the camelCase names used by
existing clients (fromPhone, toPhone, ...).
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


MessageType = Literal["sms", "whatsapp", "email", "push", "other"]
MessageStatus = Literal["pending", "sent", "delivered", "read", "failed", "cancelled"]
Priority = Literal["low", "normal", "high", "urgent"]
LogLevel = Literal["trace", "debug", "info", "warn", "error", "fatal"]


def _either(name: str, camel: str) -> AliasChoices:
    return AliasChoices(name, camel)


# =============================================================================
# Message Models
# =============================================================================

class MessageCreate(BaseModel):
    """
    Inbound message payload for POST /messages.

    Validates:
    - content: non-empty, max 1000 characters
    - from_phone/to_phone: required
    - type/status/priority: closed sets
    """
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        json_schema_extra={
            "examples": [
                {
                    "project": "9f1c2e6b4a3d4b6f8e2a1c0d9b8a7f6e",
                    "fromPhone": "5521999999999",
                    "toPhone": "5521987654321",
                    "content": "Hi! Is my order ready?",
                    "type": "whatsapp",
                }
            ]
        },
    )

    project: Optional[str] = Field(None, validation_alias=_either("project", "project_id"))
    content: str = Field(..., min_length=1, max_length=1000)
    from_phone: str = Field(..., min_length=1, validation_alias=_either("from_phone", "fromPhone"))
    to_phone: str = Field(..., min_length=1, validation_alias=_either("to_phone", "toPhone"))
    type: MessageType = "sms"
    status: MessageStatus = "pending"
    priority: Priority = "normal"
    provider: str = "other"
    cost: float = Field(0.0, ge=0)
    currency: str = "BRL"
    scheduled_at: Optional[datetime] = Field(None, validation_alias=_either("scheduled_at", "scheduledAt"))
    metadata: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    template: Optional[str] = None
    template_variables: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=_either("template_variables", "templateVariables"),
    )

    def to_fields(self) -> dict:
        """Column values for storage.create_message."""
        fields = self.model_dump(exclude={"project"})
        fields["project_id"] = self.project
        return fields


class MessageUpdate(BaseModel):
    """Partial update for PUT /messages/{id}; only provided fields are applied."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    content: Optional[str] = Field(None, min_length=1, max_length=1000)
    type: Optional[MessageType] = None
    status: Optional[MessageStatus] = None
    priority: Optional[Priority] = None
    external_id: Optional[str] = Field(None, validation_alias=_either("external_id", "externalId"))
    provider: Optional[str] = None
    cost: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = None
    attempts: Optional[int] = Field(None, ge=0)
    scheduled_at: Optional[datetime] = Field(None, validation_alias=_either("scheduled_at", "scheduledAt"))
    delivered_at: Optional[datetime] = Field(None, validation_alias=_either("delivered_at", "deliveredAt"))
    read_at: Optional[datetime] = Field(None, validation_alias=_either("read_at", "readAt"))
    metadata: Optional[dict[str, Any]] = None
    tags: Optional[list[str]] = None
    template: Optional[str] = None
    template_variables: Optional[dict[str, Any]] = Field(
        None,
        validation_alias=_either("template_variables", "templateVariables"),
    )


class MessageResponse(BaseModel):
    """Response model for a single stored message."""
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    project: Optional[str] = Field(None, validation_alias=_either("project_id", "project"))
    content: str
    from_phone: str
    to_phone: str
    type: str
    status: str
    external_id: Optional[str] = None
    provider: str
    cost: float
    currency: str
    attempts: int
    last_attempt_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=_either("message_metadata", "metadata"),
    )
    tags: list[str] = Field(default_factory=list)
    priority: str
    template: Optional[str] = None
    template_variables: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class MessagesListResponse(BaseModel):
    """
    Response model for GET /messages.

    Contains:
    - count: number of messages in this page
    - total: total count of messages matching filters (ignoring pagination)
    - data: the page of messages, newest first
    """
    success: bool = True
    count: int = Field(..., ge=0)
    total: int = Field(..., ge=0)
    data: list[MessageResponse] = Field(default_factory=list)


class PaginationResponse(BaseModel):
    count: int
    total: int
    limit: int
    skip: int


class PhoneMessagesResponse(BaseModel):
    """
    Response model for GET /messages/phone/{phone}.

    data holds stored messages, or role/content turns when formatForAI=true.
    """
    success: bool = True
    count: int
    total: int
    data: list[dict[str, Any]]
    pagination: PaginationResponse


class MessageStatsResponse(BaseModel):
    """Message counts per status plus the summed cost."""
    success: bool = True
    total: int = Field(..., ge=0)
    pending: int = 0
    sent: int = 0
    delivered: int = 0
    read: int = 0
    failed: int = 0
    cancelled: int = 0
    total_cost: float = 0.0


class PipelineData(BaseModel):
    user_message: dict[str, Any]
    ai_message: Optional[dict[str, Any]] = None
    ai_response: dict[str, Any]
    whatsapp_result: Optional[dict[str, Any]] = None
    errors: list[dict[str, Any]] = Field(default_factory=list)


class PipelineResponse(BaseModel):
    """
    Composite result of POST /messages.

    success is true whenever the inbound message was stored; callers must
    inspect ai_response and whatsapp_result for partial failures.
    """
    success: bool = True
    data: PipelineData
    history: dict[str, Any]


class WhatsAppTestRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phone_number: str = Field(..., min_length=1, validation_alias=_either("phone_number", "phoneNumber"))
    message: str = Field("WhatsApp API connection test", min_length=1, max_length=1000)


class WhatsAppTestResponse(BaseModel):
    success: bool
    config: dict[str, Any]
    connection_test: dict[str, Any]
    send_result: Optional[dict[str, Any]] = None
    phone_number: Optional[str] = None


# =============================================================================
# Project Models
# =============================================================================

class ProjectCreate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    avatar: Optional[str] = None
    api_key: Optional[str] = Field(None, validation_alias=_either("api_key", "apiKey"))


class ProjectUpdate(ProjectCreate):
    pass


class ProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    avatar: Optional[str] = None
    api_key: str
    created_at: datetime
    updated_at: datetime


class ProjectsListResponse(BaseModel):
    success: bool = True
    count: int
    data: list[ProjectResponse]


# =============================================================================
# Log Models
# =============================================================================

class LogCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    project: str = Field(..., min_length=1, validation_alias=_either("project", "project_id"))
    message: str = Field(..., min_length=1)
    source: Optional[str] = None
    environment: str = "prod"
    level: LogLevel = "info"
    context: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    request: Optional[dict[str, Any]] = None
    tags: list[str] = Field(default_factory=list)
    occurred_at: Optional[datetime] = Field(None, validation_alias=_either("occurred_at", "occurredAt"))

    def to_fields(self) -> dict:
        fields = self.model_dump(exclude={"project", "metadata"}, exclude_none=True)
        fields["project_id"] = self.project
        fields["log_metadata"] = self.metadata
        return fields


class LogUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message: Optional[str] = Field(None, min_length=1)
    source: Optional[str] = None
    environment: Optional[str] = None
    level: Optional[LogLevel] = None
    context: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    tags: Optional[list[str]] = None

    def to_fields(self) -> dict:
        fields = self.model_dump(exclude_unset=True, exclude={"metadata"})
        if self.metadata is not None:
            fields["log_metadata"] = self.metadata
        return fields


class LogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project: str = Field(..., validation_alias=_either("project_id", "project"))
    source: Optional[str] = None
    environment: str
    level: str
    message: str
    context: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias=_either("log_metadata", "metadata"))
    request: Optional[dict[str, Any]] = None
    tags: list[str] = Field(default_factory=list)
    occurred_at: datetime
    created_at: datetime


class LogsListResponse(BaseModel):
    success: bool = True
    count: int
    data: list[LogResponse]


# =============================================================================
# Generic Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


def serialize_message(message: Any) -> dict:
    """ORM Message -> JSON-ready dict."""
    return MessageResponse.model_validate(message).model_dump(mode="json")
