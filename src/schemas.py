"""Pydantic models for the storefront, chats and escalations."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class ApiModel(BaseModel):
    """Base model serialised with camelCase keys for the browser client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_api(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class MessageRole(str, Enum):
    USER = "user"
    BOT = "bot"


class UserRole(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class EscalationStatus(str, Enum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    RESOLVED = "resolved"


class ChatMessage(ApiModel):
    role: MessageRole
    text: str
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=_utcnow)


def average_confidence(messages: List[ChatMessage]) -> Optional[float]:
    """Mean confidence over bot messages, or None when no bot message carries one."""
    values = [
        message.confidence
        for message in messages
        if message.role == MessageRole.BOT and message.confidence is not None
    ]
    if not values:
        return None
    return sum(values) / len(values)


class Chat(ApiModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    messages: List[ChatMessage] = Field(default_factory=list)
    is_escalated: bool = False
    escalated_at: Optional[datetime] = None
    avg_confidence: Optional[float] = None
    created_at: datetime = Field(default_factory=_utcnow)
    version: int = 0

    def with_appended(self, messages: List[ChatMessage]) -> "Chat":
        """Return a copy with messages appended, the average recomputed and the version bumped."""
        combined = [*self.messages, *messages]
        return self.model_copy(
            update={
                "messages": combined,
                "avg_confidence": average_confidence(combined),
                "version": self.version + 1,
            }
        )


class Escalation(ApiModel):
    id: str = Field(default_factory=_new_id)
    chat_id: str
    user_id: str
    user_email: str
    last_message: str
    confidence: float
    status: EscalationStatus = EscalationStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow)


class User(ApiModel):
    id: str = Field(default_factory=_new_id)
    email: str
    password: str
    role: UserRole = UserRole.CUSTOMER
    created_at: datetime = Field(default_factory=_utcnow)

    def public(self) -> dict:
        return {"id": self.id, "email": self.email, "role": self.role.value}


class Product(ApiModel):
    id: str = Field(default_factory=_new_id)
    name: str
    description: str
    price: float
    image_url: str
    category: str


class ChatMetrics(ApiModel):
    total_chats: int
    total_escalations: int
    avg_confidence: float


class GeneratedAnswer(BaseModel):
    """Reply text plus the heuristic confidence attached to it."""

    reply: str
    confidence: float
    rule: str = "delegate"


def _require_email(value: str) -> str:
    value = value.strip()
    if "@" not in value or value.startswith("@") or value.endswith("@"):
        raise ValueError("a valid email address is required")
    return value.lower()


class LoginRequest(ApiModel):
    email: str
    password: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def _valid_email(cls, value: str) -> str:
        return _require_email(value)


class RegisterRequest(ApiModel):
    email: str
    password: str = Field(min_length=1)
    role: UserRole = UserRole.CUSTOMER

    @field_validator("email")
    @classmethod
    def _valid_email(cls, value: str) -> str:
        return _require_email(value)


class ChatMessageRequest(ApiModel):
    message: str = Field(min_length=1)
    chat_id: Optional[str] = None

    @field_validator("message")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be blank")
        return value


class EscalationRequest(ApiModel):
    chat_id: str
    last_message: str
    confidence: float = Field(ge=0.0, le=1.0)


class EscalationStatusRequest(ApiModel):
    status: EscalationStatus
