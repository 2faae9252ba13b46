"""AWS Lambda entry point for the storefront support-chat API."""

from __future__ import annotations

import base64
import json
import logging
import re
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

import config, guard, state
from model_client import ChatCompletionsClient
from schemas import (
    ChatMessageRequest,
    EscalationRequest,
    EscalationStatusRequest,
    LoginRequest,
    RegisterRequest,
)
from service import SupportError, SupportService

config.configure_logging()
logger = logging.getLogger(__name__)

USER_ID_HEADERS = ("user-id", "x-user-id")
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type,user-id,x-user-id",
    "Access-Control-Allow-Methods": "GET,POST,PATCH,OPTIONS",
}


def _method_from_event(event: Dict[str, Any]) -> str:
    """Extract HTTP method from API Gateway event."""
    if "requestContext" in event:
        http = event["requestContext"].get("http", {})
        if "method" in http:
            return http["method"].upper()
    return (event.get("httpMethod") or "").upper()


def _path_from_event(event: Dict[str, Any]) -> str:
    path = (
        event.get("requestContext", {}).get("http", {}).get("path")
        or event.get("rawPath")
        or event.get("path")
        or "/"
    )
    if path.startswith("/api/") or path == "/api":
        path = path[len("/api"):] or "/"
    if len(path) > 1:
        path = path.rstrip("/")
    return path


def _json_response_cors(body: Any, status: int = 200) -> Dict[str, Any]:
    return {
        "statusCode": status,
        "headers": {"Content-Type": "application/json", **CORS_HEADERS},
        "body": json.dumps(body),
    }


def _error(message: str, status: int) -> Dict[str, Any]:
    return _json_response_cors({"message": message}, status=status)


def _decode_body(event: Dict[str, Any]) -> str:
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        body = base64.b64decode(body).decode("utf-8")
    return body


def _parse_json(event: Dict[str, Any]) -> Dict[str, Any]:
    raw = _decode_body(event)
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("request_body_not_json")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _user_id_from_event(event: Dict[str, Any]) -> Optional[str]:
    headers = {key.lower(): value for key, value in (event.get("headers") or {}).items()}
    for name in USER_ID_HEADERS:
        value = (headers.get(name) or "").strip()
        if value:
            return value
    return None


Handler = Callable[["SupportApi", Dict[str, Any], Dict[str, str]], Dict[str, Any]]


class SupportApi:
    """Routes API Gateway proxy events to a SupportService."""

    def __init__(self, service: SupportService):
        self.service = service
        self._routes: List[Tuple[str, re.Pattern, Handler, str]] = [
            ("POST", re.compile(r"^/auth/login$"), SupportApi._login, "Login failed"),
            ("POST", re.compile(r"^/auth/register$"), SupportApi._register, "Registration failed"),
            ("GET", re.compile(r"^/products$"), SupportApi._products, "Failed to fetch products"),
            ("POST", re.compile(r"^/chat/message$"), SupportApi._chat_message, "Failed to process message"),
            ("GET", re.compile(r"^/chat/(?P<chat_id>[^/]+)$"), SupportApi._chat, "Failed to fetch chat"),
            ("GET", re.compile(r"^/chats$"), SupportApi._user_chats, "Failed to fetch chats"),
            ("POST", re.compile(r"^/escalations$"), SupportApi._escalate, "Failed to create escalation"),
            ("GET", re.compile(r"^/escalations$"), SupportApi._escalations, "Failed to fetch escalations"),
            (
                "GET",
                re.compile(r"^/escalations/(?P<escalation_id>[^/]+)$"),
                SupportApi._escalation,
                "Failed to fetch escalation",
            ),
            (
                "PATCH",
                re.compile(r"^/escalations/(?P<escalation_id>[^/]+)$"),
                SupportApi._escalation_status,
                "Failed to update escalation",
            ),
            ("GET", re.compile(r"^/metrics$"), SupportApi._metrics, "Failed to fetch metrics"),
            ("GET", re.compile(r"^/health$"), SupportApi._health, "Health check failed"),
        ]

    def handle(self, event: Dict[str, Any]) -> Dict[str, Any]:
        method = _method_from_event(event)
        path = _path_from_event(event)
        logger.debug("incoming_event", extra={"method": method, "path": path})

        if method == "OPTIONS":
            return {"statusCode": 204, "headers": dict(CORS_HEADERS), "body": ""}

        path_matched = False
        for route_method, pattern, handler, failure_message in self._routes:
            match = pattern.match(path)
            if not match:
                continue
            path_matched = True
            if route_method != method:
                continue
            return self._dispatch(handler, event, match.groupdict(), failure_message)

        if path_matched:
            return _error("Method Not Allowed", 405)
        return _error("Not Found", 404)

    def _dispatch(
        self, handler: Handler, event: Dict[str, Any], params: Dict[str, str], failure_message: str
    ) -> Dict[str, Any]:
        try:
            return handler(self, event, params)
        except ValidationError as exc:
            logger.info("request_validation_error", extra={"errors": exc.error_count()})
            return _error("Invalid request data", 400)
        except SupportError as exc:
            return _error(str(exc), exc.status_code)
        except state.RecordNotFound as exc:
            return _error(str(exc), 404)
        except state.ConcurrentUpdateError as exc:
            logger.warning("chat_append_conflict", extra={"error": str(exc)})
            return _error("Chat was updated concurrently, please retry", 409)
        except Exception as exc:
            logger.exception("request_failed", extra={"error": str(exc)})
            return _error(failure_message, 500)

    # Route handlers

    def _login(self, event: Dict[str, Any], _: Dict[str, str]) -> Dict[str, Any]:
        request = LoginRequest.model_validate(_parse_json(event))
        user = self.service.login(request.email, request.password)
        return _json_response_cors({"user": user.public()})

    def _register(self, event: Dict[str, Any], _: Dict[str, str]) -> Dict[str, Any]:
        request = RegisterRequest.model_validate(_parse_json(event))
        user = self.service.register(request.email, request.password, request.role)
        return _json_response_cors({"user": user.public()})

    def _products(self, _event: Dict[str, Any], _: Dict[str, str]) -> Dict[str, Any]:
        return _json_response_cors([product.to_api() for product in self.service.list_products()])

    def _chat_message(self, event: Dict[str, Any], _: Dict[str, str]) -> Dict[str, Any]:
        request = ChatMessageRequest.model_validate(_parse_json(event))
        user_id = _user_id_from_event(event)
        if not user_id:
            return _error("User not authenticated", 401)

        chat, answer = self.service.post_message(user_id, request.message, request.chat_id)
        return _json_response_cors(
            {
                "chatId": chat.id,
                "message": answer.reply,
                "confidence": answer.confidence,
                "canEscalate": guard.needs_escalation(answer.confidence),
            }
        )

    def _chat(self, _event: Dict[str, Any], params: Dict[str, str]) -> Dict[str, Any]:
        return _json_response_cors(self.service.get_chat(params["chat_id"]).to_api())

    def _user_chats(self, event: Dict[str, Any], _: Dict[str, str]) -> Dict[str, Any]:
        user_id = _user_id_from_event(event)
        if not user_id:
            return _error("User not authenticated", 401)
        return _json_response_cors([chat.to_api() for chat in self.service.list_user_chats(user_id)])

    def _escalate(self, event: Dict[str, Any], _: Dict[str, str]) -> Dict[str, Any]:
        request = EscalationRequest.model_validate(_parse_json(event))
        user_id = _user_id_from_event(event)
        if not user_id:
            return _error("User not authenticated", 401)

        escalation = self.service.escalate(
            user_id, request.chat_id, request.last_message, request.confidence
        )
        return _json_response_cors(escalation.to_api())

    def _escalations(self, _event: Dict[str, Any], _: Dict[str, str]) -> Dict[str, Any]:
        return _json_response_cors([item.to_api() for item in self.service.list_escalations()])

    def _escalation(self, _event: Dict[str, Any], params: Dict[str, str]) -> Dict[str, Any]:
        escalation, chat = self.service.get_escalation(params["escalation_id"])
        return _json_response_cors({**escalation.to_api(), "chat": chat.to_api() if chat else None})

    def _escalation_status(self, event: Dict[str, Any], params: Dict[str, str]) -> Dict[str, Any]:
        request = EscalationStatusRequest.model_validate(_parse_json(event))
        escalation = self.service.update_escalation_status(params["escalation_id"], request.status)
        return _json_response_cors(escalation.to_api())

    def _metrics(self, _event: Dict[str, Any], _: Dict[str, str]) -> Dict[str, Any]:
        return _json_response_cors(self.service.metrics().to_api())

    def _health(self, _event: Dict[str, Any], _: Dict[str, str]) -> Dict[str, Any]:
        return _json_response_cors({"status": "ok"})


@lru_cache(maxsize=1)
def get_api() -> SupportApi:
    """Build the API once per Lambda container from environment settings."""
    service = SupportService(state.build_store(), ChatCompletionsClient.from_settings())
    return SupportApi(service)


def lambda_handler(event: Dict[str, Any], _: Any) -> Dict[str, Any]:
    """Entrypoint for AWS Lambda."""
    return get_api().handle(event)
