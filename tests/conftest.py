from typing import Generator, List, Optional

import boto3
import pytest
from moto import mock_aws

import config
from app import SupportApi
from service import SupportService
from state import MemoryStore

REQUIRED_ENV = {
    "APP_ENV": "test",
    "AWS_REGION": "us-east-1",
    "AWS_ACCESS_KEY_ID": "testing",
    "AWS_SECRET_ACCESS_KEY": "testing",
    "AWS_SESSION_TOKEN": "testing",
    "STORE_BACKEND": "memory",
    "DDB_TABLE": "test-support-chat",
    "MODEL_API_URL": "https://models.example.test/chat/completions",
}

UNSET_ENV = ("MODEL_API_KEY", "GITHUB_TOKEN", "GITHUB_API_KEY", "MODEL_SECRET_NAME", "SEED_DEMO_DATA")


def _clear_caches() -> None:
    config.get_settings.cache_clear()
    config.get_model_api_key.cache_clear()
    config._boto_session.cache_clear()


class StubGenerator:
    """Stands in for the chat-completions delegate."""

    def __init__(self, reply: str = "Happy to help with that!", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.prompts: List[str] = []

    def generate_reply(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture(autouse=True)
def _env_vars(monkeypatch) -> Generator[None, None, None]:
    for key, value in REQUIRED_ENV.items():
        monkeypatch.setenv(key, value)
    for key in UNSET_ENV:
        monkeypatch.delenv(key, raising=False)
    _clear_caches()
    yield
    _clear_caches()


@pytest.fixture
def aws_mock() -> Generator[None, None, None]:
    with mock_aws():
        _clear_caches()
        yield
        _clear_caches()


@pytest.fixture
def dynamodb_table(aws_mock):
    session = boto3.session.Session(region_name=REQUIRED_ENV["AWS_REGION"])
    dynamodb = session.resource("dynamodb")
    return dynamodb.create_table(
        TableName=REQUIRED_ENV["DDB_TABLE"],
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def generator() -> StubGenerator:
    return StubGenerator()


@pytest.fixture
def memory_store() -> MemoryStore:
    store = MemoryStore()
    store.seed_demo_data()
    return store


@pytest.fixture
def service(memory_store, generator) -> SupportService:
    return SupportService(memory_store, generator)


@pytest.fixture
def api(service) -> SupportApi:
    return SupportApi(service)


@pytest.fixture
def customer(memory_store):
    return memory_store.get_user_by_email("customer@demo.com")
