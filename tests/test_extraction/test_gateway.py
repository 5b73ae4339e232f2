from __future__ import annotations

from types import SimpleNamespace
from typing import Any, List

import pytest

from sidecar.errors import (
    ClientError,
    ExtractionFailed,
    InvalidProvider,
    MissingCredentials,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
    UnknownProviderError,
)
from sidecar.extraction.gateway import ModelGateway, classify_error, get_model_name


class _StatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class _Scripted:
    """Pops one outcome per call: an exception to raise or text to return."""

    def __init__(self, outcomes: List[Any]) -> None:
        self.outcomes = list(outcomes)
        self.calls: List[dict] = []

    def next(self, **kwargs: Any) -> str:
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class _FakeAnthropic:
    def __init__(self, outcomes: List[Any]) -> None:
        self.script = _Scripted(outcomes)
        self.messages = SimpleNamespace(create=self._create)

    def _create(self, **kwargs: Any) -> Any:
        text = self.script.next(**kwargs)
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text=text)],
            usage=SimpleNamespace(input_tokens=120, output_tokens=30),
            model="claude-test",
        )


class _FakeChat:
    def __init__(self, outcomes: List[Any]) -> None:
        self.script = _Scripted(outcomes)
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs: Any) -> Any:
        text = self.script.next(**kwargs)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
            usage=SimpleNamespace(prompt_tokens=80, completion_tokens=20),
            model=None,
        )


def _gateway(config, clients, sleeps=None, **llm) -> ModelGateway:
    for key, value in llm.items():
        setattr(config.llm, key, value)
    recorder = sleeps if sleeps is not None else []
    return ModelGateway(config, clients=clients, sleep_fn=recorder.append)


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (_StatusError(429), RateLimited),
        (_StatusError(500), ProviderUnavailable),
        (_StatusError(503), ProviderUnavailable),
        (_StatusError(401), ClientError),
        (_StatusError(404), ClientError),
        (TimeoutError("read timed out"), ProviderTimeout),
        (ConnectionError("reset"), ProviderTimeout),
        (ValueError("weird"), UnknownProviderError),
    ],
)
def test_classify_error(exc, expected) -> None:
    error = classify_error(exc, "claude")

    assert isinstance(error, expected)
    assert error.provider == "claude"


def test_should_retry_transient_only_under_ceiling(config) -> None:
    gateway = ModelGateway(config)

    for status in (429, 500, 503):
        assert gateway.should_retry(_StatusError(status), 1)
        assert gateway.should_retry(_StatusError(status), 2)
        assert not gateway.should_retry(_StatusError(status), 3)
    assert gateway.should_retry(TimeoutError(), 1)

    for status in (401, 404):
        for attempts in (0, 1, 2, 3):
            assert not gateway.should_retry(_StatusError(status), attempts)

    assert not gateway.should_retry(ValueError("unknown"), 1)


def test_backoff_delay_doubles_and_caps(config) -> None:
    gateway = ModelGateway(config)

    assert [gateway.backoff_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 8.0]


def test_backoff_delay_adds_jitter(config) -> None:
    config.llm.jitter = 0.5
    gateway = ModelGateway(config, random_fn=lambda low, high: high)

    assert gateway.backoff_delay(1) == 1.5


def test_invoke_claude_success(config) -> None:
    client = _FakeAnthropic(['{"entities": []}'])
    gateway = _gateway(config, {"claude": client})

    response = gateway.invoke_with_usage("prompt", "system", "claude")

    assert response.text == '{"entities": []}'
    assert response.provider == "claude"
    assert response.model == "claude-test"
    assert (response.input_tokens, response.output_tokens) == (120, 30)
    assert response.fallback_used is False

    call = client.script.calls[0]
    assert call["system"] == "system"
    assert call["messages"] == [{"role": "user", "content": "prompt"}]
    assert call["max_tokens"] == 4096


def test_invoke_chat_providers_request_json(config) -> None:
    openai_client = _FakeChat(["{}"])
    gemini_client = _FakeChat(["{}"])
    gateway = _gateway(config, {"openai": openai_client, "gemini": gemini_client})

    assert gateway.invoke("p", "s", "openai") == "{}"
    response = gateway.invoke_with_usage("p", "s", "gemini")

    call = openai_client.script.calls[0]
    assert call["response_format"] == {"type": "json_object"}
    assert call["messages"][0] == {"role": "system", "content": "s"}
    assert gemini_client.script.calls[0]["max_tokens"] == 8192
    assert response.model == get_model_name("gemini")
    assert response.input_tokens == 80


def test_transient_errors_are_retried_then_succeed(config) -> None:
    client = _FakeAnthropic([_StatusError(503), _StatusError(429), "{}"])
    sleeps: List[float] = []
    gateway = _gateway(config, {"claude": client}, sleeps)

    assert gateway.invoke("p", "s", "claude") == "{}"
    assert len(client.script.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_retries_stop_at_ceiling(config) -> None:
    client = _FakeAnthropic([_StatusError(500)] * 5)
    sleeps: List[float] = []
    gateway = _gateway(config, {"claude": client}, sleeps)

    with pytest.raises(ExtractionFailed) as excinfo:
        gateway.invoke("p", "s", "claude")

    assert excinfo.value.attempts == 3
    assert len(client.script.calls) == 3
    assert len(sleeps) == 2


def test_client_error_is_not_retried(config) -> None:
    client = _FakeAnthropic([_StatusError(401), "{}"])
    sleeps: List[float] = []
    gateway = _gateway(config, {"claude": client}, sleeps)

    with pytest.raises(ClientError):
        gateway.invoke("p", "s", "claude")

    assert len(client.script.calls) == 1
    assert sleeps == []


def test_unknown_error_is_not_retried(config) -> None:
    client = _FakeAnthropic([ValueError("bad payload"), "{}"])
    gateway = _gateway(config, {"claude": client})

    with pytest.raises(ExtractionFailed) as excinfo:
        gateway.invoke("p", "s", "claude")

    assert excinfo.value.attempts == 1


def test_fallback_after_primary_exhausted(config) -> None:
    primary = _FakeAnthropic([_StatusError(500)] * 3)
    fallback = _FakeChat(['{"entities": []}'])
    gateway = _gateway(config, {"claude": primary, "openai": fallback}, fallback_provider="openai")

    response = gateway.invoke_with_usage("p", "s", "claude")

    assert response.provider == "openai"
    assert response.fallback_used is True
    assert len(primary.script.calls) == 3


def test_fallback_after_client_error(config) -> None:
    primary = _FakeAnthropic([_StatusError(403)])
    fallback = _FakeChat(["{}"])
    gateway = _gateway(config, {"claude": primary, "openai": fallback}, fallback_provider="openai")

    assert gateway.invoke_with_usage("p", "s", "claude").fallback_used is True


def test_fallback_failure_reports_both_providers(config) -> None:
    primary = _FakeAnthropic([_StatusError(500)] * 3)
    fallback = _FakeChat([_StatusError(500)] * 3)
    gateway = _gateway(config, {"claude": primary, "openai": fallback}, fallback_provider="openai")

    with pytest.raises(ExtractionFailed, match="All providers failed"):
        gateway.invoke("p", "s", "claude")


def test_no_fallback_without_credentials(config) -> None:
    primary = _FakeAnthropic([_StatusError(500)] * 3)
    gateway = _gateway(config, {"claude": primary}, fallback_provider="openai")

    with pytest.raises(ExtractionFailed) as excinfo:
        gateway.invoke("p", "s", "claude")

    assert "All providers failed" not in str(excinfo.value)


def test_configuration_errors_surface_immediately(config) -> None:
    gateway = ModelGateway(config, sleep_fn=lambda _: pytest.fail("should not sleep"))

    with pytest.raises(MissingCredentials):
        gateway.invoke("p", "s", "claude")
    with pytest.raises(InvalidProvider):
        gateway.invoke("p", "s", "llama")


def test_get_model_name_echoes_unknown() -> None:
    assert get_model_name("claude").startswith("claude")
    assert get_model_name("mystery-model") == "mystery-model"
