import pytest
import requests

import config
from model_client import SYSTEM_PROMPT, ChatCompletionsClient, DelegateUnavailable, MissingCredential


class StubResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class StubSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.response


def _client(session, api_key="secret-key"):
    return ChatCompletionsClient(
        api_url="https://models.example.test/chat/completions",
        model="gpt-4o",
        api_key=api_key,
        temperature=0.7,
        max_tokens=150,
        timeout=10.0,
        session=session,
    )


def test_generate_reply_posts_single_turn_request():
    session = StubSession(
        StubResponse(payload={"choices": [{"message": {"content": "  We ship worldwide.  "}}]})
    )

    reply = _client(session).generate_reply("Do you ship abroad?")

    assert reply == "We ship worldwide."
    call = session.calls[0]
    assert call["url"] == "https://models.example.test/chat/completions"
    assert call["headers"]["Authorization"] == "Bearer secret-key"
    assert call["timeout"] == 10.0
    assert call["json"]["messages"] == [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": "Do you ship abroad?"},
    ]
    assert call["json"]["temperature"] == 0.7
    assert call["json"]["max_tokens"] == 150
    assert call["json"]["model"] == "gpt-4o"


def test_missing_choices_yield_empty_text():
    session = StubSession(StubResponse(payload={"choices": []}))

    assert _client(session).generate_reply("hi") == ""


def test_missing_key_raises_before_any_request():
    session = StubSession(StubResponse(payload={}))

    with pytest.raises(MissingCredential):
        _client(session, api_key=None).generate_reply("hi")
    assert session.calls == []


def test_non_success_status_raises():
    session = StubSession(StubResponse(status_code=429, payload={}, text="rate limited"))

    with pytest.raises(DelegateUnavailable):
        _client(session).generate_reply("hi")


def test_network_error_raises():
    session = StubSession(error=requests.ConnectionError("connection refused"))

    with pytest.raises(DelegateUnavailable):
        _client(session).generate_reply("hi")


def test_invalid_json_raises():
    session = StubSession(StubResponse(payload=ValueError("not json")))

    with pytest.raises(DelegateUnavailable):
        _client(session).generate_reply("hi")


def test_from_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("GITHUB_TOKEN", "gh-token")
    monkeypatch.setenv("MODEL_NAME", "gpt-4o-mini")
    monkeypatch.setenv("MODEL_TIMEOUT_SECONDS", "5")
    config.get_settings.cache_clear()
    config.get_model_api_key.cache_clear()

    client = ChatCompletionsClient.from_settings(session=StubSession())

    assert client.api_key == "gh-token"
    assert client.model == "gpt-4o-mini"
    assert client.timeout == 5.0
    assert client.api_url == "https://models.example.test/chat/completions"
    assert client.configured


@pytest.mark.parametrize("choices", [{"0x": 1}, 5, "text"])
def test_malformed_choices_raise_delegate_unavailable(choices):
    session = StubSession(StubResponse(payload={"choices": choices}))

    with pytest.raises(DelegateUnavailable):
        _client(session).generate_reply("hi")


def test_key_source_failure_is_retried_on_next_call():
    attempts = []

    def key_source():
        attempts.append(1)
        if len(attempts) == 1:
            raise config.ConfigurationError("throttled")
        return "late-key"

    session = StubSession(StubResponse(payload={"choices": [{"message": {"content": "ok"}}]}))
    client = ChatCompletionsClient(
        api_url="https://models.example.test/chat/completions",
        model="gpt-4o",
        api_key=None,
        session=session,
        key_source=key_source,
    )

    with pytest.raises(DelegateUnavailable):
        client.generate_reply("hi")
    assert session.calls == []

    assert client.generate_reply("hi") == "ok"
    assert session.calls[0]["headers"]["Authorization"] == "Bearer late-key"
