"""Application configuration and secrets loading."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

DEFAULT_MODEL_API_URL = "https://models.inference.ai.azure.com/chat/completions"
STORE_BACKENDS = ("memory", "dynamodb")
MODEL_API_KEY_ENV_VARS = ("MODEL_API_KEY", "GITHUB_TOKEN", "GITHUB_API_KEY")


class ConfigurationError(RuntimeError):
    """Raised when required configuration is missing or invalid."""


def _require_env(name: str, *, default: Optional[str] = None) -> str:
    """Fetch an environment variable or raise if it is missing."""
    value = os.getenv(name, default)
    if value is None or value == "":
        raise ConfigurationError(f"Environment variable {name} is required")
    return value


def _bool_env(name: str, default: bool = True) -> bool:
    """Parse boolean environment variable values."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "y"}


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Settings:
    """In-memory representation of runtime settings."""

    app_env: str
    aws_region: str
    store_backend: str
    dynamodb_table: Optional[str]
    model_api_url: str
    model_name: str
    model_temperature: float
    model_max_tokens: int
    model_timeout_seconds: float
    model_secret_name: Optional[str]
    seed_demo_data: bool
    log_level: str

    @property
    def dynamodb_enabled(self) -> bool:
        return self.store_backend == "dynamodb"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache application settings from the environment."""
    store_backend = os.getenv("STORE_BACKEND", "memory").strip().lower()
    if store_backend not in STORE_BACKENDS:
        raise ConfigurationError(
            f"STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}, got {store_backend!r}"
        )

    settings = Settings(
        app_env=os.getenv("APP_ENV", "dev"),
        aws_region=os.getenv("AWS_REGION", "us-east-1"),
        store_backend=store_backend,
        dynamodb_table=os.getenv("DDB_TABLE") or None,
        model_api_url=os.getenv("MODEL_API_URL", DEFAULT_MODEL_API_URL),
        model_name=os.getenv("MODEL_NAME", "gpt-4o"),
        model_temperature=_float_env("MODEL_TEMPERATURE", 0.7),
        model_max_tokens=max(1, _int_env("MODEL_MAX_TOKENS", 150)),
        model_timeout_seconds=max(1.0, _float_env("MODEL_TIMEOUT_SECONDS", 10.0)),
        model_secret_name=os.getenv("MODEL_SECRET_NAME") or None,
        seed_demo_data=_bool_env("SEED_DEMO_DATA", default=True),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )

    if settings.dynamodb_enabled:
        _require_env("DDB_TABLE")

    return settings


@lru_cache(maxsize=1)
def _boto_session():
    """Create and cache a boto3 session bound to the configured region."""
    settings = get_settings()
    return boto3.session.Session(region_name=settings.aws_region)


def get_dynamodb_resource():
    """Return a boto3 DynamoDB resource."""
    return _boto_session().resource("dynamodb")


def get_secrets_manager_client():
    """Return a boto3 Secrets Manager client."""
    return _boto_session().client("secretsmanager")


@lru_cache(maxsize=1)
def get_model_api_key() -> Optional[str]:
    """
    Resolve the bearer credential for the external model endpoint.

    Environment variables take precedence; otherwise the key is read from the
    AWS Secrets Manager secret named by MODEL_SECRET_NAME. Returns None when no
    credential is configured, which callers treat as a normal state. A failed
    fetch raises ConfigurationError so it is retried on the next call.
    """
    for name in MODEL_API_KEY_ENV_VARS:
        value = os.getenv(name)
        if value:
            logger.debug("model_api_key_from_env", extra={"variable": name})
            return value

    settings = get_settings()
    if not settings.model_secret_name:
        return None

    client = get_secrets_manager_client()
    try:
        response = client.get_secret_value(SecretId=settings.model_secret_name)
    except ClientError as exc:
        if exc.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
            logger.warning("model_secret_not_found", extra={"secret": settings.model_secret_name})
            return None
        logger.error("model_secret_fetch_error", extra={"error": str(exc)})
        raise ConfigurationError("Unable to load model API key from Secrets Manager") from exc
    except BotoCoreError as exc:
        logger.error("model_secret_fetch_error", extra={"error": str(exc)})
        raise ConfigurationError("Unable to load model API key from Secrets Manager") from exc

    secret_string = response.get("SecretString")
    if not secret_string:
        logger.warning("model_secret_empty")
        return None

    # Plain string secrets and {"MODEL_API_KEY": "..."} payloads are both accepted.
    try:
        payload = json.loads(secret_string)
    except json.JSONDecodeError:
        return secret_string.strip() or None

    if isinstance(payload, dict):
        value = payload.get("MODEL_API_KEY")
        return str(value) if value else None
    return None


def configure_logging():
    """Configure the root logger once using settings from the environment."""
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
