import base64
import json
from typing import Any, Dict, Optional

import pytest

import app as app_module


def make_event(
    method: str,
    path: str,
    body: Optional[Any] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    return {
        "requestContext": {"http": {"method": method, "path": path}},
        "headers": {"host": "example.com", **(headers or {})},
        "body": json.dumps(body) if body is not None else "",
        "isBase64Encoded": False,
    }


def call(api, *args, **kwargs):
    response = api.handle(make_event(*args, **kwargs))
    body = json.loads(response["body"]) if response["body"] else None
    return response, body


def test_login_returns_public_user(api):
    response, body = call(api, "POST", "/auth/login", {"email": "customer@demo.com", "password": "password"})

    assert response["statusCode"] == 200
    assert body["user"]["email"] == "customer@demo.com"
    assert body["user"]["role"] == "customer"
    assert "password" not in body["user"]
    assert response["headers"]["Access-Control-Allow-Origin"] == "*"


def test_login_errors(api):
    bad_password, body = call(api, "POST", "/auth/login", {"email": "customer@demo.com", "password": "x"})
    invalid, invalid_body = call(api, "POST", "/auth/login", {"email": "not-an-email", "password": "x"})

    assert bad_password["statusCode"] == 401
    assert body == {"message": "Invalid credentials"}
    assert invalid["statusCode"] == 400
    assert invalid_body == {"message": "Invalid request data"}


def test_register_conflict(api):
    created, body = call(api, "POST", "/api/auth/register", {"email": "new@demo.com", "password": "pw"})
    duplicate, _ = call(api, "POST", "/api/auth/register", {"email": "new@demo.com", "password": "pw"})

    assert created["statusCode"] == 200
    assert body["user"]["role"] == "customer"
    assert duplicate["statusCode"] == 409


def test_products_list(api):
    response, body = call(api, "GET", "/products")

    assert response["statusCode"] == 200
    assert len(body) == 6
    assert {"id", "name", "description", "price", "imageUrl", "category"} <= set(body[0])


def test_chat_message_flow(api, customer):
    headers = {"user-id": customer.id}
    first, body = call(api, "POST", "/chat/message", {"message": "Where is my order?"}, headers)

    assert first["statusCode"] == 200
    assert body["confidence"] == 0.85
    assert body["canEscalate"] is False
    assert "#12345" in body["message"]

    second, body2 = call(
        api, "POST", "/chat/message", {"message": "refund please", "chatId": body["chatId"]}, headers
    )
    assert second["statusCode"] == 200
    assert body2["chatId"] == body["chatId"]

    fetched, chat = call(api, "GET", f"/chat/{body['chatId']}")
    assert fetched["statusCode"] == 200
    assert [m["role"] for m in chat["messages"]] == ["user", "bot", "user", "bot"]
    assert chat["messages"][1]["confidence"] == 0.85
    assert chat["avgConfidence"] == pytest.approx(0.785)
    assert chat["isEscalated"] is False

    _, metrics = call(api, "GET", "/metrics")
    assert metrics == {"totalChats": 1, "totalEscalations": 0, "avgConfidence": 0.79}


def test_chat_message_requires_user_and_body(api, customer):
    no_user, body = call(api, "POST", "/chat/message", {"message": "hello"})
    empty, _ = call(api, "POST", "/chat/message", {"message": "   "}, {"user-id": customer.id})
    missing_chat, _ = call(
        api, "POST", "/chat/message", {"message": "hello", "chatId": "nope"}, {"user-id": customer.id}
    )

    assert no_user["statusCode"] == 401
    assert body == {"message": "User not authenticated"}
    assert empty["statusCode"] == 400
    assert missing_chat["statusCode"] == 404


def test_low_confidence_reply_can_be_escalated(api, generator, customer):
    generator.reply = "Sorry, I don't know that."
    headers = {"User-Id": customer.id}
    _, reply = call(api, "POST", "/chat/message", {"message": "Do you price match?"}, headers)

    assert reply["confidence"] == 0.4
    assert reply["canEscalate"] is True

    response, escalation = call(
        api,
        "POST",
        "/escalations",
        {"chatId": reply["chatId"], "lastMessage": "Do you price match?", "confidence": reply["confidence"]},
        headers,
    )
    assert response["statusCode"] == 200
    assert escalation["chatId"] == reply["chatId"]
    assert escalation["status"] == "pending"
    assert escalation["userEmail"] == "customer@demo.com"

    _, listed = call(api, "GET", "/escalations")
    assert [item["id"] for item in listed] == [escalation["id"]]

    _, detail = call(api, "GET", f"/escalations/{escalation['id']}")
    assert detail["chat"]["isEscalated"] is True

    patched, updated = call(api, "PATCH", f"/escalations/{escalation['id']}", {"status": "in_review"})
    assert patched["statusCode"] == 200
    assert updated["status"] == "in_review"

    bad_status, _ = call(api, "PATCH", f"/escalations/{escalation['id']}", {"status": "closed"})
    assert bad_status["statusCode"] == 400


def test_escalation_errors(api, customer):
    unknown_user, _ = call(
        api, "POST", "/escalations", {"chatId": "c", "lastMessage": "m", "confidence": 0.3}, {"user-id": "ghost"}
    )
    unknown_chat, _ = call(
        api, "POST", "/escalations", {"chatId": "c", "lastMessage": "m", "confidence": 0.3}, {"user-id": customer.id}
    )
    missing, _ = call(api, "GET", "/escalations/missing")

    assert unknown_user["statusCode"] == 404
    assert unknown_chat["statusCode"] == 404
    assert missing["statusCode"] == 404


def test_user_chats(api, customer):
    call(api, "POST", "/chat/message", {"message": "hello"}, {"user-id": customer.id})

    response, chats = call(api, "GET", "/chats", headers={"user-id": customer.id})
    anonymous, _ = call(api, "GET", "/chats")

    assert response["statusCode"] == 200
    assert len(chats) == 1
    assert anonymous["statusCode"] == 401


def test_routing_edges(api):
    not_found, _ = call(api, "GET", "/nowhere")
    wrong_method, _ = call(api, "DELETE", "/products")
    health, body = call(api, "GET", "/api/health/")
    preflight = api.handle(make_event("OPTIONS", "/chat/message"))

    assert not_found["statusCode"] == 404
    assert wrong_method["statusCode"] == 405
    assert health["statusCode"] == 200
    assert body == {"status": "ok"}
    assert preflight["statusCode"] == 204
    assert "user-id" in preflight["headers"]["Access-Control-Allow-Headers"]


def test_base64_body_is_decoded(api):
    event = make_event("POST", "/auth/login")
    event["body"] = base64.b64encode(
        json.dumps({"email": "admin@demo.com", "password": "password"}).encode("utf-8")
    ).decode("ascii")
    event["isBase64Encoded"] = True

    response = api.handle(event)

    assert response["statusCode"] == 200
    assert json.loads(response["body"])["user"]["role"] == "admin"


def test_unexpected_error_becomes_500(api, monkeypatch):
    def explode():
        raise RuntimeError("boom")

    monkeypatch.setattr(api.service, "list_products", explode)

    response, body = call(api, "GET", "/products")

    assert response["statusCode"] == 500
    assert body == {"message": "Failed to fetch products"}


def test_lambda_handler_without_credential_degrades():
    app_module.get_api.cache_clear()
    try:
        login = app_module.lambda_handler(
            make_event("POST", "/api/auth/login", {"email": "customer@demo.com", "password": "password"}),
            None,
        )
        user_id = json.loads(login["body"])["user"]["id"]

        response = app_module.lambda_handler(
            make_event("POST", "/api/chat/message", {"message": "Do you sell gift cards?"}, {"user-id": user_id}),
            None,
        )
    finally:
        app_module.get_api.cache_clear()

    body = json.loads(response["body"])
    assert response["statusCode"] == 200
    assert body["confidence"] == 0.25
    assert body["canEscalate"] is True
    assert "human agent" in body["message"]
