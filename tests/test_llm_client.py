from __future__ import annotations

import io
import json
from urllib.error import HTTPError, URLError

import pytest

from dmagent.llm.client import (
    AskOptions,
    EmptyResponseError,
    LLMClient,
    ProviderConfigError,
    ProviderError,
    ProviderSettings,
    TransientProviderError,
)


class FakeResponse:
    def __init__(self, body: bytes = b"", lines: list[bytes] | None = None, status: int = 200) -> None:
        self._body = body
        self._lines = lines or []
        self.status = status

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def read(self) -> bytes:
        return self._body

    def __iter__(self):
        return iter(self._lines)


def _http_error(url: str, code: int, body: bytes = b"") -> HTTPError:
    return HTTPError(url, code, "error", hdrs=None, fp=io.BytesIO(body))


def _openai_body(text: str) -> bytes:
    return json.dumps({"choices": [{"message": {"content": text}}]}).encode("utf-8")


def _client(**kwargs) -> LLMClient:
    settings = ProviderSettings(openai_api_key="test-key")
    return LLMClient(settings=settings, sleep=lambda _seconds: None, **kwargs)


def test_openai_payload_includes_json_mode_and_limits() -> None:
    options = AskOptions(temperature=0.2, max_tokens=1024, json_mode=True, system_prompt="plan")

    payload = LLMClient.build_openai_payload("hi", options, model="gpt-4o-mini", stream=False)

    assert payload["messages"][0] == {"role": "system", "content": "plan"}
    assert payload["messages"][1] == {"role": "user", "content": "hi"}
    assert payload["temperature"] == 0.2
    assert payload["max_tokens"] == 1024
    assert payload["response_format"] == {"type": "json_object"}
    assert "stream" not in payload


def test_openai_payload_uses_default_system_message() -> None:
    payload = LLMClient.build_openai_payload("hi", AskOptions(), model="m", stream=True)

    assert payload["messages"][0]["content"] == "You are a pragmatic coding assistant."
    assert payload["stream"] is True
    assert "temperature" not in payload
    assert "response_format" not in payload


def test_ollama_payload_nests_generation_options() -> None:
    options = AskOptions(temperature=0.2, max_tokens=256, json_mode=True, system_prompt="plan")

    payload = LLMClient.build_ollama_payload("hi", options, model="llama", stream=False)

    assert payload["prompt"] == "hi"
    assert payload["system"] == "plan"
    assert payload["format"] == "json"
    assert payload["options"] == {"temperature": 0.2, "num_predict": 256}
    assert payload["stream"] is False


def test_complete_posts_to_chat_completions(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        captured["auth"] = req.get_header("Authorization")
        captured["payload"] = json.loads(req.data.decode("utf-8"))
        return FakeResponse(_openai_body('  {"action":"answer"}  '))

    monkeypatch.setattr("dmagent.llm.client.request.urlopen", fake_urlopen)

    result = _client().complete("hello", AskOptions(provider="openai", model="gpt-test"))

    assert result.text == '{"action":"answer"}'
    assert result.provider == "openai"
    assert result.model == "gpt-test"
    assert captured["url"] == "https://api.openai.com/v1/chat/completions"
    assert captured["auth"] == "Bearer test-key"
    assert captured["payload"]["model"] == "gpt-test"


def test_missing_api_key_is_config_error_without_request(monkeypatch: pytest.MonkeyPatch) -> None:
    def fail_urlopen(req, timeout):
        raise AssertionError("no request expected")

    monkeypatch.setattr("dmagent.llm.client.request.urlopen", fail_urlopen)
    client = LLMClient(settings=ProviderSettings(openai_api_key=None))

    with pytest.raises(ProviderConfigError, match="missing OpenAI API key"):
        client.complete("hello", AskOptions(provider="openai"))


def test_base_url_without_scheme_is_rejected() -> None:
    with pytest.raises(ProviderConfigError, match="no http"):
        _client().complete("hello", AskOptions(provider="openai", base_url="api.example.com"))


def test_empty_prompt_is_rejected() -> None:
    with pytest.raises(ValueError, match="prompt is required"):
        _client().complete("   ", AskOptions(provider="openai"))


def test_retries_server_errors_with_exponential_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}
    delays: list[float] = []

    def flaky_urlopen(req, timeout):
        calls["count"] += 1
        if calls["count"] < 3:
            raise _http_error(req.full_url, 503)
        return FakeResponse(_openai_body("ok"))

    monkeypatch.setattr("dmagent.llm.client.request.urlopen", flaky_urlopen)
    client = LLMClient(settings=ProviderSettings(openai_api_key="k"), sleep=delays.append)

    result = client.complete("hello", AskOptions(provider="openai"))

    assert result.text == "ok"
    assert calls["count"] == 3
    assert delays == [2.0, 4.0]


def test_rate_limit_exhausts_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def limited_urlopen(req, timeout):
        calls["count"] += 1
        raise _http_error(req.full_url, 429)

    monkeypatch.setattr("dmagent.llm.client.request.urlopen", limited_urlopen)

    with pytest.raises(TransientProviderError, match="429"):
        _client().complete("hello", AskOptions(provider="openai"))
    assert calls["count"] == 3


def test_transport_errors_are_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def offline_urlopen(req, timeout):
        calls["count"] += 1
        raise URLError("connection refused")

    monkeypatch.setattr("dmagent.llm.client.request.urlopen", offline_urlopen)

    with pytest.raises(TransientProviderError, match="transport error"):
        _client().complete("hello", AskOptions(provider="openai"))
    assert calls["count"] == 3


def test_client_errors_fail_immediately_with_body_excerpt(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def bad_request(req, timeout):
        calls["count"] += 1
        raise _http_error(req.full_url, 400, b'{"error":"bad model"}')

    monkeypatch.setattr("dmagent.llm.client.request.urlopen", bad_request)

    with pytest.raises(ProviderError) as exc_info:
        _client().complete("hello", AskOptions(provider="openai"))

    assert calls["count"] == 1
    assert exc_info.value.status == 400
    assert "bad model" in str(exc_info.value)
    assert not isinstance(exc_info.value, TransientProviderError)


def test_empty_completion_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "dmagent.llm.client.request.urlopen",
        lambda req, timeout: FakeResponse(_openai_body("   ")),
    )

    with pytest.raises(EmptyResponseError):
        _client().complete("hello", AskOptions(provider="openai"))


def test_openai_stream_decodes_sse_until_done(monkeypatch: pytest.MonkeyPatch) -> None:
    def chunk(text: str) -> bytes:
        return f"data: {json.dumps({'choices': [{'delta': {'content': text}}]})}\n".encode()

    lines = [b": keep-alive\n", chunk('{"action":'), b"\n", chunk('"answer"}'), b"data: [DONE]\n", chunk("ignored")]
    monkeypatch.setattr(
        "dmagent.llm.client.request.urlopen",
        lambda req, timeout: FakeResponse(lines=lines),
    )
    tokens: list[str] = []

    result = _client().complete_stream("hello", AskOptions(provider="openai"), tokens.append)

    assert tokens == ['{"action":', '"answer"}']
    assert result.text == '{"action":"answer"}'


def test_ollama_stream_decodes_ndjson_until_done(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}
    lines = [
        b'{"response":"hel","done":false}\n',
        b'{"response":"lo","done":false}\n',
        b'{"response":"","done":true}\n',
        b'{"response":"late","done":false}\n',
    ]

    def fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        return FakeResponse(lines=lines)

    monkeypatch.setattr("dmagent.llm.client.request.urlopen", fake_urlopen)
    tokens: list[str] = []

    result = _client().complete_stream("hi", AskOptions(provider="ollama", model="llama3"), tokens.append)

    assert captured["url"] == "http://127.0.0.1:11434/api/generate"
    assert tokens == ["hel", "lo"]
    assert result.text == "hello"
    assert result.provider == "ollama"
    assert result.model == "llama3"


def test_auto_uses_ollama_when_probe_succeeds(monkeypatch: pytest.MonkeyPatch) -> None:
    urls: list[str] = []

    def fake_urlopen(req, timeout):
        url = req if isinstance(req, str) else req.full_url
        urls.append(url)
        if url.endswith("/api/tags"):
            assert timeout == 3.0
            return FakeResponse(b"{}")
        return FakeResponse(json.dumps({"response": "local"}).encode("utf-8"))

    monkeypatch.setattr("dmagent.llm.client.request.urlopen", fake_urlopen)

    result = _client().complete("hi", AskOptions(provider="auto"))

    assert result.provider == "ollama"
    assert result.text == "local"
    assert urls[0].endswith("/api/tags")


def test_auto_falls_back_to_openai_when_probe_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, timeout):
        url = req if isinstance(req, str) else req.full_url
        if url.endswith("/api/tags"):
            raise URLError("refused")
        return FakeResponse(_openai_body("remote"))

    monkeypatch.setattr("dmagent.llm.client.request.urlopen", fake_urlopen)

    result = _client().complete("hi", AskOptions(provider="auto"))

    assert result.provider == "openai"
    assert result.text == "remote"


def test_auto_without_api_key_reports_both_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, timeout):
        raise URLError("refused")

    monkeypatch.setattr("dmagent.llm.client.request.urlopen", fake_urlopen)
    client = LLMClient(settings=ProviderSettings(openai_api_key=None))

    with pytest.raises(ProviderConfigError, match="ollama unavailable and OpenAI API key is missing"):
        client.complete("hi", AskOptions(provider="auto"))


def test_resolve_session_pins_openai_defaults() -> None:
    resolved = _client().resolve_session(AskOptions(provider="openai"))

    assert resolved.provider == "openai"
    assert resolved.model == "gpt-4o-mini"
    assert resolved.base_url == "https://api.openai.com/v1"
