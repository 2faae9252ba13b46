"""Support-chat operations shared by every entry point."""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import guard
import nlu
from model_client import ReplyGenerator
from schemas import (
    Chat,
    ChatMessage,
    ChatMetrics,
    Escalation,
    EscalationStatus,
    GeneratedAnswer,
    MessageRole,
    Product,
    User,
    UserRole,
)
from state import BaseStore, DuplicateRecord

logger = logging.getLogger(__name__)


class SupportError(Exception):
    """Base class for errors reported back to the HTTP caller."""

    status_code = 500


class NotFoundError(SupportError):
    status_code = 404


class AuthenticationError(SupportError):
    status_code = 401


class ConflictError(SupportError):
    status_code = 409


class SupportService:
    """Auth, catalog, chat and escalation operations over an injected store."""

    def __init__(self, store: BaseStore, generator: ReplyGenerator):
        self.store = store
        self.generator = generator

    # Accounts and catalog

    def login(self, email: str, password: str) -> User:
        user = self.store.get_user_by_email(email)
        if user is None or user.password != password:
            logger.info("login_rejected", extra={"email_hash": hash(email)})
            raise AuthenticationError("Invalid credentials")
        return user

    def register(self, email: str, password: str, role: UserRole = UserRole.CUSTOMER) -> User:
        if self.store.get_user_by_email(email) is not None:
            raise ConflictError("User already exists")
        try:
            user = self.store.create_user(User(email=email, password=password, role=role))
        except DuplicateRecord as exc:
            raise ConflictError("User already exists") from exc
        logger.info("user_registered", extra={"user_hash": hash(user.id), "role": user.role.value})
        return user

    def list_products(self) -> List[Product]:
        return self.store.list_products()

    # Chats

    def get_chat(self, chat_id: str) -> Chat:
        chat = self.store.get_chat(chat_id)
        if chat is None:
            raise NotFoundError("Chat not found")
        return chat

    def list_user_chats(self, user_id: str) -> List[Chat]:
        return self.store.list_chats_by_user(user_id)

    def post_message(
        self, user_id: str, message: str, chat_id: Optional[str] = None
    ) -> Tuple[Chat, GeneratedAnswer]:
        """Classify one user message and append it with the bot reply to the chat."""
        chat = self.get_chat(chat_id) if chat_id else self.store.create_chat(user_id)

        user_message = ChatMessage(role=MessageRole.USER, text=message)
        answer = nlu.classify(message, user_id, self.generator)
        bot_message = ChatMessage(role=MessageRole.BOT, text=answer.reply, confidence=answer.confidence)

        updated = self.store.append_messages(chat.id, [user_message, bot_message])
        logger.info(
            "chat_message_handled",
            extra={
                "chat_id": updated.id,
                "rule": answer.rule,
                "confidence": answer.confidence,
                "can_escalate": guard.needs_escalation(answer.confidence),
                "avg_confidence": updated.avg_confidence,
            },
        )
        return updated, answer

    # Escalations

    def escalate(self, user_id: str, chat_id: str, last_message: str, confidence: float) -> Escalation:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")

        chat = self.get_chat(chat_id)

        # A chat is only flagged once its escalation record exists.
        escalation = self.store.create_escalation(
            Escalation(
                chat_id=chat.id,
                user_id=user.id,
                user_email=user.email,
                last_message=last_message,
                confidence=confidence,
            )
        )
        if self.store.mark_escalated(chat.id, escalation.created_at) is None:
            raise NotFoundError("Chat not found")
        logger.info(
            "chat_escalated",
            extra={"chat_id": chat.id, "escalation_id": escalation.id, "confidence": confidence},
        )
        return escalation

    def list_escalations(self) -> List[Escalation]:
        return self.store.list_escalations()

    def get_escalation(self, escalation_id: str) -> Tuple[Escalation, Optional[Chat]]:
        escalation = self.store.get_escalation(escalation_id)
        if escalation is None:
            raise NotFoundError("Escalation not found")
        return escalation, self.store.get_chat(escalation.chat_id)

    def update_escalation_status(self, escalation_id: str, status: EscalationStatus) -> Escalation:
        escalation = self.store.update_escalation_status(escalation_id, status)
        if escalation is None:
            raise NotFoundError("Escalation not found")
        logger.info(
            "escalation_status_changed",
            extra={"escalation_id": escalation_id, "status": status.value},
        )
        return escalation

    def metrics(self) -> ChatMetrics:
        return self.store.metrics()
