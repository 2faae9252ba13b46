"""Confidence heuristics and escalation signalling for bot replies."""

from __future__ import annotations

from typing import Iterable

ESCALATION_THRESHOLD = 0.6

DELEGATE_DEFAULT_CONFIDENCE = 0.75
UNCERTAIN_CONFIDENCE = 0.4
HANDOFF_CONFIDENCE = 0.5
DEGRADED_CONFIDENCE = 0.25

UNCERTAINTY_MARKERS = ("sorry", "don't know")
HANDOFF_MARKERS = ("contact", "agent")

EMPTY_COMPLETION_RESPONSE = "I'm sorry, I couldn't generate a response. Please try again."
NO_CREDENTIAL_RESPONSE = (
    "I understand your question. Unfortunately, I'm having trouble accessing my "
    "knowledge base right now. Would you like me to escalate this to a human agent?"
)
DELEGATE_FAILURE_RESPONSE = (
    "I'm experiencing some technical difficulties. "
    "Would you like me to escalate this to a human agent?"
)


def _contains_any(text: str, markers: Iterable[str]) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in markers)


def delegate_confidence(reply_text: str) -> float:
    """
    Score a delegate reply by the wording it uses.

    Apologies and admissions of ignorance score lowest, replies that point the
    user at a human score slightly higher, anything else gets the default.
    """
    if _contains_any(reply_text, UNCERTAINTY_MARKERS):
        return UNCERTAIN_CONFIDENCE
    if _contains_any(reply_text, HANDOFF_MARKERS):
        return HANDOFF_CONFIDENCE
    return DELEGATE_DEFAULT_CONFIDENCE


def needs_escalation(confidence: float) -> bool:
    return confidence < ESCALATION_THRESHOLD
