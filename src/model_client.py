"""Client for the external chat-completions endpoint used as the reply delegate."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Protocol

import requests

import config

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful customer support AI for an e-commerce platform. "
    "Provide concise, helpful responses. "
    "If you're not confident about order-specific information, "
    "suggest the user contact a human agent."
)


class DelegateUnavailable(RuntimeError):
    """Raised when the delegate endpoint cannot produce a reply."""


class MissingCredential(DelegateUnavailable):
    """Raised when no bearer credential is configured for the delegate."""


class ReplyGenerator(Protocol):
    def generate_reply(self, prompt: str) -> str:
        ...


class ChatCompletionsClient:
    """Single-turn chat-completions client with a fixed system prompt."""

    def __init__(
        self,
        api_url: str,
        model: str,
        api_key: Optional[str],
        *,
        temperature: float = 0.7,
        max_tokens: int = 150,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        key_source: Optional[Callable[[], Optional[str]]] = None,
    ):
        self.api_url = api_url
        self.model = model
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._session = session or requests.Session()
        self._key_source = key_source

    @classmethod
    def from_settings(cls, session: Optional[requests.Session] = None) -> "ChatCompletionsClient":
        settings = config.get_settings()
        try:
            api_key = config.get_model_api_key()
        except config.ConfigurationError:
            api_key = None
        return cls(
            api_url=settings.model_api_url,
            model=settings.model_name,
            api_key=api_key,
            temperature=settings.model_temperature,
            max_tokens=settings.model_max_tokens,
            timeout=settings.model_timeout_seconds,
            session=session,
            key_source=config.get_model_api_key,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _payload(self, prompt: str) -> Dict[str, Any]:
        return {
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    @staticmethod
    def _extract_text(data: Any) -> str:
        if not isinstance(data, dict):
            raise DelegateUnavailable("delegate returned a non-object body")
        choices = data.get("choices") or []
        if not isinstance(choices, list):
            raise DelegateUnavailable("delegate returned malformed choices")
        if not choices or not isinstance(choices[0], dict):
            return ""
        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        return content if isinstance(content, str) else ""

    def generate_reply(self, prompt: str) -> str:
        """POST the prompt and return the completion text (possibly empty)."""
        if not self.configured and self._key_source is not None:
            try:
                self.api_key = self._key_source()
            except config.ConfigurationError as exc:
                raise DelegateUnavailable(str(exc)) from exc
        if not self.configured:
            raise MissingCredential("no model API key configured")

        try:
            resp = self._session.post(
                self.api_url,
                json=self._payload(prompt),
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("delegate_request_error", extra={"error": str(exc)})
            raise DelegateUnavailable(str(exc)) from exc

        if resp.status_code >= 300:
            logger.error(
                "delegate_bad_status",
                extra={"status": resp.status_code, "body": resp.text[:200]},
            )
            raise DelegateUnavailable(f"delegate returned HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as exc:
            logger.error("delegate_invalid_json", extra={"error": str(exc)})
            raise DelegateUnavailable("delegate returned invalid JSON") from exc

        return self._extract_text(data).strip()
