"""Persistence for users, products, chats and escalations."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterator, List, Optional

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

import config
from schemas import (
    Chat,
    ChatMessage,
    ChatMetrics,
    Escalation,
    EscalationStatus,
    Product,
    User,
    UserRole,
)

logger = logging.getLogger(__name__)

APPEND_MAX_ATTEMPTS = 3

DEMO_USERS = (
    {"email": "customer@demo.com", "password": "password", "role": UserRole.CUSTOMER},
    {"email": "admin@demo.com", "password": "password", "role": UserRole.ADMIN},
)

_IMAGE_BASE = "https://images.unsplash.com"
_IMAGE_QUERY = "?ixlib=rb-4.0.3&auto=format&fit=crop&w=400&h=300"

DEMO_PRODUCTS = (
    {
        "name": "Premium Wireless Headphones",
        "description": "Active noise cancellation, 30hr battery",
        "price": 199.99,
        "image_url": f"{_IMAGE_BASE}/photo-1505740420928-5e560c06d30e{_IMAGE_QUERY}",
        "category": "Electronics",
    },
    {
        "name": "Ultra-thin Laptop",
        "description": "Intel i7, 16GB RAM, 512GB SSD",
        "price": 1299.99,
        "image_url": f"{_IMAGE_BASE}/photo-1496181133206-80ce9b88a853{_IMAGE_QUERY}",
        "category": "Computers",
    },
    {
        "name": "Smart Fitness Watch",
        "description": "Heart rate monitor, GPS, waterproof",
        "price": 299.99,
        "image_url": f"{_IMAGE_BASE}/photo-1523275335684-37898b6baf30{_IMAGE_QUERY}",
        "category": "Wearables",
    },
    {
        "name": "Professional Camera",
        "description": "24MP, 4K video, weather sealed",
        "price": 899.99,
        "image_url": f"{_IMAGE_BASE}/photo-1526170375885-4d8ecf77b99f{_IMAGE_QUERY}",
        "category": "Photography",
    },
    {
        "name": "Gaming Mouse Pro",
        "description": "RGB lighting, 12000 DPI, wireless",
        "price": 89.99,
        "image_url": f"{_IMAGE_BASE}/photo-1527864550417-7fd91fc51a46{_IMAGE_QUERY}",
        "category": "Gaming",
    },
    {
        "name": "Flagship Smartphone",
        "description": "128GB, Triple camera, 5G ready",
        "price": 799.99,
        "image_url": f"{_IMAGE_BASE}/photo-1511707171634-5f897ff02aa9{_IMAGE_QUERY}",
        "category": "Mobile",
    },
)


class StoreError(RuntimeError):
    """Base class for storage failures the caller is expected to handle."""


class RecordNotFound(StoreError):
    """Raised when a write targets a record that does not exist."""


class DuplicateRecord(StoreError):
    """Raised when a unique key (user email) is already taken."""


class ConcurrentUpdateError(StoreError):
    """Raised when a chat append keeps losing the version race."""


def round_confidence(value: float) -> float:
    """Round half-up to two decimals, tolerant of binary float noise."""
    return float(Decimal(str(round(value, 6))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class BaseStore:
    """Behaviour shared by every backend; subclasses supply the CRUD primitives."""

    def metrics(self) -> ChatMetrics:
        chats = self.list_chats()
        averages = [chat.avg_confidence for chat in chats if chat.avg_confidence is not None]
        mean = sum(averages) / len(averages) if averages else 0.0
        return ChatMetrics(
            total_chats=len(chats),
            total_escalations=len(self.list_escalations()),
            avg_confidence=round_confidence(mean),
        )

    def seed_demo_data(self) -> None:
        """Insert the demo accounts and catalog unless they are already present."""
        for user in DEMO_USERS:
            if self.get_user_by_email(user["email"]) is None:
                self.create_user(User(**user))
                logger.info("demo_user_created", extra={"email": user["email"]})
        if not self.list_products():
            for product in DEMO_PRODUCTS:
                self.create_product(Product(**product))
            logger.info("demo_products_created", extra={"count": len(DEMO_PRODUCTS)})

    # Subclass interface
    def get_user(self, user_id: str) -> Optional[User]:
        raise NotImplementedError

    def get_user_by_email(self, email: str) -> Optional[User]:
        raise NotImplementedError

    def create_user(self, user: User) -> User:
        raise NotImplementedError

    def list_products(self) -> List[Product]:
        raise NotImplementedError

    def create_product(self, product: Product) -> Product:
        raise NotImplementedError

    def create_chat(self, user_id: str) -> Chat:
        raise NotImplementedError

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        raise NotImplementedError

    def list_chats(self) -> List[Chat]:
        raise NotImplementedError

    def list_chats_by_user(self, user_id: str) -> List[Chat]:
        raise NotImplementedError

    def append_messages(self, chat_id: str, messages: List[ChatMessage]) -> Chat:
        raise NotImplementedError

    def mark_escalated(self, chat_id: str, escalated_at: datetime) -> Optional[Chat]:
        raise NotImplementedError

    def create_escalation(self, escalation: Escalation) -> Escalation:
        raise NotImplementedError

    def list_escalations(self) -> List[Escalation]:
        raise NotImplementedError

    def get_escalation(self, escalation_id: str) -> Optional[Escalation]:
        raise NotImplementedError

    def update_escalation_status(
        self, escalation_id: str, status: EscalationStatus
    ) -> Optional[Escalation]:
        raise NotImplementedError


class MemoryStore(BaseStore):
    """Process-local store; every read and mutation runs under one lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._users: Dict[str, User] = {}
        self._products: Dict[str, Product] = {}
        self._chats: Dict[str, Chat] = {}
        self._escalations: Dict[str, Escalation] = {}

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
        return user.model_copy() if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.lower()
        with self._lock:
            for user in self._users.values():
                if user.email.lower() == email:
                    return user.model_copy()
        return None

    def create_user(self, user: User) -> User:
        with self._lock:
            if any(existing.email.lower() == user.email.lower() for existing in self._users.values()):
                raise DuplicateRecord(f"user {user.email} already exists")
            self._users[user.id] = user.model_copy()
        return user

    def list_products(self) -> List[Product]:
        with self._lock:
            return [product.model_copy() for product in self._products.values()]

    def create_product(self, product: Product) -> Product:
        with self._lock:
            self._products[product.id] = product.model_copy()
        return product

    def create_chat(self, user_id: str) -> Chat:
        chat = Chat(user_id=user_id)
        with self._lock:
            self._chats[chat.id] = chat
        return chat.model_copy(deep=True)

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        with self._lock:
            chat = self._chats.get(chat_id)
            return chat.model_copy(deep=True) if chat else None

    def list_chats(self) -> List[Chat]:
        with self._lock:
            return [chat.model_copy(deep=True) for chat in self._chats.values()]

    def list_chats_by_user(self, user_id: str) -> List[Chat]:
        return [chat for chat in self.list_chats() if chat.user_id == user_id]

    def append_messages(self, chat_id: str, messages: List[ChatMessage]) -> Chat:
        with self._lock:
            chat = self._chats.get(chat_id)
            if chat is None:
                raise RecordNotFound(f"chat {chat_id} not found")
            updated = chat.with_appended([message.model_copy() for message in messages])
            self._chats[chat_id] = updated
        return updated.model_copy(deep=True)

    def mark_escalated(self, chat_id: str, escalated_at: datetime) -> Optional[Chat]:
        with self._lock:
            chat = self._chats.get(chat_id)
            if chat is None:
                return None
            updated = chat.model_copy(
                update={"is_escalated": True, "escalated_at": escalated_at, "version": chat.version + 1}
            )
            self._chats[chat_id] = updated
        return updated.model_copy(deep=True)

    def create_escalation(self, escalation: Escalation) -> Escalation:
        with self._lock:
            self._escalations[escalation.id] = escalation.model_copy()
        return escalation

    def list_escalations(self) -> List[Escalation]:
        with self._lock:
            items = [escalation.model_copy() for escalation in self._escalations.values()]
        return sorted(items, key=lambda item: item.created_at, reverse=True)

    def get_escalation(self, escalation_id: str) -> Optional[Escalation]:
        with self._lock:
            escalation = self._escalations.get(escalation_id)
            return escalation.model_copy() if escalation else None

    def update_escalation_status(
        self, escalation_id: str, status: EscalationStatus
    ) -> Optional[Escalation]:
        with self._lock:
            escalation = self._escalations.get(escalation_id)
            if escalation is None:
                return None
            updated = escalation.model_copy(update={"status": status})
            self._escalations[escalation_id] = updated
        return updated.model_copy()


def _to_dynamodb(value: Any) -> Any:
    """Convert Python values to DynamoDB compatible formats."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {key: _to_dynamodb(val) for key, val in value.items()}
    if isinstance(value, list):
        return [_to_dynamodb(item) for item in value]
    return value


def _from_dynamodb(value: Any) -> Any:
    """Convert DynamoDB types back to native Python types."""
    if isinstance(value, Decimal):
        return float(value) if value % 1 else int(value)
    if isinstance(value, dict):
        return {key: _from_dynamodb(val) for key, val in value.items()}
    if isinstance(value, list):
        return [_from_dynamodb(item) for item in value]
    return value


def _key(kind: str, record_id: str) -> Dict[str, str]:
    """Construct the DynamoDB key for a record of the given kind."""
    return {"pk": f"{kind}#{record_id}", "sk": kind}


def _strip_key(item: Dict[str, Any]) -> Dict[str, Any]:
    return {key: val for key, val in _from_dynamodb(item).items() if key not in {"pk", "sk"}}


def _conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class DynamoStore(BaseStore):
    """Single-table DynamoDB store keyed by ``<kind>#<id>`` / ``<kind>``."""

    def __init__(self, table=None):
        if table is None:
            settings = config.get_settings()
            if not settings.dynamodb_table:
                raise config.ConfigurationError("DDB_TABLE must be set for the dynamodb backend")
            table = config.get_dynamodb_resource().Table(settings.dynamodb_table)
        self._table = table

    # Low-level helpers

    def _get(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self._table.get_item(Key=_key(kind, record_id))
        except ClientError as exc:
            logger.error("dynamodb_get_item_error", extra={"error": str(exc), "kind": kind})
            raise
        item = response.get("Item")
        return _strip_key(item) if item else None

    def _put(self, kind: str, record_id: str, data: Dict[str, Any], *, unique: bool = False) -> None:
        item = {**_key(kind, record_id), **_to_dynamodb(data)}
        kwargs: Dict[str, Any] = {"Item": item}
        if unique:
            kwargs["ConditionExpression"] = "attribute_not_exists(pk)"
        try:
            self._table.put_item(**kwargs)
        except ClientError as exc:
            if unique and _conditional_failure(exc):
                raise DuplicateRecord(f"{kind} {record_id} already exists") from exc
            logger.error("dynamodb_put_item_error", extra={"error": str(exc), "kind": kind})
            raise

    def _scan(self, kind: str) -> Iterator[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {"FilterExpression": Attr("sk").eq(kind)}
        while True:
            try:
                response = self._table.scan(**kwargs)
            except ClientError as exc:
                logger.error("dynamodb_scan_error", extra={"error": str(exc), "kind": kind})
                raise
            for item in response.get("Items", []):
                yield _strip_key(item)
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return
            kwargs["ExclusiveStartKey"] = last_key

    def _update(self, kind: str, record_id: str, **kwargs) -> Optional[Dict[str, Any]]:
        try:
            response = self._table.update_item(
                Key=_key(kind, record_id), ReturnValues="ALL_NEW", **kwargs
            )
        except ClientError as exc:
            if not _conditional_failure(exc):
                logger.error("dynamodb_update_item_error", extra={"error": str(exc), "kind": kind})
            raise
        attributes = response.get("Attributes")
        return _strip_key(attributes) if attributes else None

    # Users and products

    def get_user(self, user_id: str) -> Optional[User]:
        data = self._get("user", user_id)
        return User.model_validate(data) if data else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        data = self._get("email", email.lower())
        if not data:
            return None
        return self.get_user(data["user_id"])

    def create_user(self, user: User) -> User:
        # The email item is written first so a duplicate never leaves an orphaned user.
        self._put("email", user.email.lower(), {"user_id": user.id}, unique=True)
        self._put("user", user.id, user.model_dump(mode="json"))
        return user

    def list_products(self) -> List[Product]:
        return [Product.model_validate(item) for item in self._scan("product")]

    def create_product(self, product: Product) -> Product:
        self._put("product", product.id, product.model_dump(mode="json"))
        return product

    # Chats

    def create_chat(self, user_id: str) -> Chat:
        chat = Chat(user_id=user_id)
        self._put("chat", chat.id, chat.model_dump(mode="json"), unique=True)
        return chat

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        data = self._get("chat", chat_id)
        return Chat.model_validate(data) if data else None

    def list_chats(self) -> List[Chat]:
        return [Chat.model_validate(item) for item in self._scan("chat")]

    def list_chats_by_user(self, user_id: str) -> List[Chat]:
        return [chat for chat in self.list_chats() if chat.user_id == user_id]

    def append_messages(self, chat_id: str, messages: List[ChatMessage]) -> Chat:
        """
        Append messages with an optimistic version check.

        The new average depends on the full message list, so the write is
        conditional on the version that was read; a lost race re-reads and
        tries again.
        """
        new_messages = [message.model_dump(mode="json") for message in messages]
        for attempt in range(1, APPEND_MAX_ATTEMPTS + 1):
            chat = self.get_chat(chat_id)
            if chat is None:
                raise RecordNotFound(f"chat {chat_id} not found")
            updated = chat.with_appended(messages)
            try:
                data = self._update(
                    "chat",
                    chat_id,
                    UpdateExpression=(
                        "SET #messages = list_append(#messages, :new), "
                        "#avg = :avg, #version = :next"
                    ),
                    ConditionExpression="#version = :expected",
                    ExpressionAttributeNames={
                        "#messages": "messages",
                        "#avg": "avg_confidence",
                        "#version": "version",
                    },
                    ExpressionAttributeValues=_to_dynamodb(
                        {
                            ":new": new_messages,
                            ":avg": updated.avg_confidence,
                            ":next": updated.version,
                            ":expected": chat.version,
                        }
                    ),
                )
            except ClientError as exc:
                if not _conditional_failure(exc):
                    raise
                logger.warning(
                    "chat_version_conflict",
                    extra={"chat_id": chat_id, "attempt": attempt, "version": chat.version},
                )
                continue
            return Chat.model_validate(data)

        raise ConcurrentUpdateError(f"chat {chat_id} changed during {APPEND_MAX_ATTEMPTS} append attempts")

    def mark_escalated(self, chat_id: str, escalated_at: datetime) -> Optional[Chat]:
        try:
            data = self._update(
                "chat",
                chat_id,
                UpdateExpression=(
                    "SET is_escalated = :true, escalated_at = :at, #version = #version + :one"
                ),
                ConditionExpression="attribute_exists(pk)",
                ExpressionAttributeNames={"#version": "version"},
                ExpressionAttributeValues={
                    ":true": True,
                    ":at": escalated_at.astimezone(timezone.utc).isoformat(),
                    ":one": 1,
                },
            )
        except ClientError as exc:
            if not _conditional_failure(exc):
                raise
            return None
        return Chat.model_validate(data) if data else None

    # Escalations

    def create_escalation(self, escalation: Escalation) -> Escalation:
        self._put("escalation", escalation.id, escalation.model_dump(mode="json"), unique=True)
        return escalation

    def list_escalations(self) -> List[Escalation]:
        items = [Escalation.model_validate(item) for item in self._scan("escalation")]
        return sorted(items, key=lambda item: item.created_at, reverse=True)

    def get_escalation(self, escalation_id: str) -> Optional[Escalation]:
        data = self._get("escalation", escalation_id)
        return Escalation.model_validate(data) if data else None

    def update_escalation_status(
        self, escalation_id: str, status: EscalationStatus
    ) -> Optional[Escalation]:
        try:
            data = self._update(
                "escalation",
                escalation_id,
                UpdateExpression="SET #status = :status",
                ConditionExpression="attribute_exists(pk)",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={":status": status.value},
            )
        except ClientError as exc:
            if not _conditional_failure(exc):
                raise
            return None
        return Escalation.model_validate(data) if data else None


def build_store() -> BaseStore:
    """Construct the store selected by STORE_BACKEND."""
    settings = config.get_settings()
    if settings.dynamodb_enabled:
        store: BaseStore = DynamoStore()
    else:
        store = MemoryStore()
        if settings.seed_demo_data:
            store.seed_demo_data()
    logger.info("store_ready", extra={"backend": settings.store_backend})
    return store
