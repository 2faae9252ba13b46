"""Rule-based response classifier with a model delegate fallback."""

from __future__ import annotations

import logging
from typing import Dict, Optional

import guard
from model_client import DelegateUnavailable, MissingCredential, ReplyGenerator
from schemas import GeneratedAnswer

logger = logging.getLogger(__name__)

DEFAULT_ORDER_ID = "12345"

ORDER_RECORDS: Dict[str, Dict[str, str]] = {
    "12345": {"status": "In Transit", "eta": "2-3 business days"},
    "12346": {"status": "Delivered", "eta": "Completed"},
    "12347": {"status": "Processing", "eta": "1-2 business days"},
}
REFUND_RECORDS: Dict[str, Dict[str, str]] = {
    "12345": {"status": "Processing"},
    "12346": {"status": "Completed"},
    "12347": {"status": "Pending"},
}

RETURN_POLICY_RESPONSE = (
    "Our return policy allows returns within 30 days of purchase. Items must be in "
    "original condition with tags attached. Free return shipping is provided for "
    "defective items."
)
ADDRESS_CHANGE_RESPONSE = (
    "You can change your delivery address before your order ships. Please contact us "
    "with your order number and new address details."
)

ORDER_STATUS_CONFIDENCE = 0.85
REFUND_STATUS_CONFIDENCE = 0.72
RETURN_POLICY_CONFIDENCE = 0.92
ADDRESS_CHANGE_CONFIDENCE = 0.88


def check_order_status(_user_id: str, order_id: Optional[str] = None) -> Dict[str, str]:
    """Simulated order lookup; unknown ids come back as Not Found."""
    order_id = order_id or DEFAULT_ORDER_ID
    record = ORDER_RECORDS.get(order_id, {"status": "Not Found", "eta": "N/A"})
    return {**record, "order_id": order_id}


def check_refund_status(_user_id: str, order_id: Optional[str] = None) -> Dict[str, str]:
    """Simulated refund lookup keyed by the same order ids."""
    order_id = order_id or DEFAULT_ORDER_ID
    record = REFUND_RECORDS.get(order_id, {"status": "Not Found"})
    return {**record, "order_id": order_id}


def _is_order_tracking(normalized: str) -> bool:
    return (
        ("order" in normalized and "status" in normalized)
        or "track" in normalized
        or "where is my order" in normalized
    )


def match_rule(text: str, user_id: str) -> Optional[GeneratedAnswer]:
    """Answer from the fixed rule table, in priority order, or return None."""
    normalized = text.lower()

    if _is_order_tracking(normalized):
        order = check_order_status(user_id)
        return GeneratedAnswer(
            reply=(
                f"I found your order #{order['order_id']}. Status: {order['status']}. "
                f"Expected delivery: {order['eta']}."
            ),
            confidence=ORDER_STATUS_CONFIDENCE,
            rule="order_status",
        )

    if "refund" in normalized:
        refund = check_refund_status(user_id)
        return GeneratedAnswer(
            reply=f"Your refund for order #{refund['order_id']} is currently {refund['status']}.",
            confidence=REFUND_STATUS_CONFIDENCE,
            rule="refund_status",
        )

    if "return policy" in normalized:
        return GeneratedAnswer(
            reply=RETURN_POLICY_RESPONSE,
            confidence=RETURN_POLICY_CONFIDENCE,
            rule="return_policy",
        )

    if "delivery address" in normalized or "change address" in normalized:
        return GeneratedAnswer(
            reply=ADDRESS_CHANGE_RESPONSE,
            confidence=ADDRESS_CHANGE_CONFIDENCE,
            rule="address_change",
        )

    return None


def classify(text: str, user_id: str, generator: ReplyGenerator) -> GeneratedAnswer:
    """
    Produce a reply and a confidence for one inbound chat message.

    Rule matches never touch the generator. Everything else goes to the
    delegate once; a missing credential or a failed call turns into a fixed
    low-confidence reply instead of an error.
    """
    answer = match_rule(text, user_id)
    if answer is not None:
        logger.info(
            "message_classified",
            extra={"rule": answer.rule, "confidence": answer.confidence, "user_hash": hash(user_id)},
        )
        return answer

    try:
        reply = generator.generate_reply(text)
    except MissingCredential:
        logger.warning("delegate_not_configured")
        return GeneratedAnswer(
            reply=guard.NO_CREDENTIAL_RESPONSE,
            confidence=guard.DEGRADED_CONFIDENCE,
            rule="no_credential",
        )
    except DelegateUnavailable as exc:
        logger.error("delegate_unavailable", extra={"error": str(exc), "user_hash": hash(user_id)})
        return GeneratedAnswer(
            reply=guard.DELEGATE_FAILURE_RESPONSE,
            confidence=guard.DEGRADED_CONFIDENCE,
            rule="delegate_failure",
        )
    except Exception:
        logger.exception("delegate_unexpected_error", extra={"user_hash": hash(user_id)})
        return GeneratedAnswer(
            reply=guard.DELEGATE_FAILURE_RESPONSE,
            confidence=guard.DEGRADED_CONFIDENCE,
            rule="delegate_failure",
        )

    if not isinstance(reply, str):
        reply = ""
    reply = reply or guard.EMPTY_COMPLETION_RESPONSE
    answer = GeneratedAnswer(reply=reply, confidence=guard.delegate_confidence(reply))
    logger.info(
        "message_classified",
        extra={"rule": answer.rule, "confidence": answer.confidence, "user_hash": hash(user_id)},
    )
    return answer
