"""HTTP client for the chat-completion and generate-style model backends."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING
from urllib import request
from urllib.error import HTTPError, URLError

from dmagent.config import (
    DEFAULT_OLLAMA_BASE_URL,
    DEFAULT_OLLAMA_MODEL,
    DEFAULT_OPENAI_BASE_URL,
    DEFAULT_OPENAI_MODEL,
    normalize_provider,
)

if TYPE_CHECKING:
    from dmagent.config import AppConfig

LOGGER = logging.getLogger(__name__)

TokenCallback = Callable[[str], None]
Sleep = Callable[[float], None]

DEFAULT_SYSTEM_MESSAGE = "You are a pragmatic coding assistant."
RETRYABLE_STATUS_FLOOR = 500


class ProviderError(Exception):
    """A model request failed."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ProviderConfigError(ProviderError):
    """Missing credentials or malformed endpoint settings; never retried."""


class TransientProviderError(ProviderError):
    """Connection failures or 429/5xx responses that outlasted every retry."""


class EmptyResponseError(ProviderError):
    """The backend answered with no content."""


@dataclass(frozen=True, slots=True)
class AskOptions:
    """Per-call model options; built once and never mutated."""

    provider: str = ""
    model: str = ""
    base_url: str = ""
    temperature: float | None = None
    max_tokens: int = 0
    json_mode: bool = False
    system_prompt: str = ""


@dataclass(frozen=True, slots=True)
class AskResult:
    text: str
    provider: str
    model: str


@dataclass(frozen=True, slots=True)
class ProviderSettings:
    """Backend endpoints, default models and credentials."""

    openai_api_key: str | None = None
    openai_base_url: str = DEFAULT_OPENAI_BASE_URL
    openai_model: str = DEFAULT_OPENAI_MODEL
    ollama_base_url: str = DEFAULT_OLLAMA_BASE_URL
    ollama_model: str = DEFAULT_OLLAMA_MODEL

    @classmethod
    def from_config(cls, config: AppConfig) -> ProviderSettings:
        return cls(
            openai_api_key=config.openai_api_key,
            openai_base_url=config.openai_base_url,
            openai_model=config.openai_model,
            ollama_base_url=config.ollama_base_url,
            ollama_model=config.ollama_model,
        )


def validate_base_url(url: str, label: str) -> None:
    if not url.strip():
        return
    if not url.startswith(("http://", "https://")):
        msg = f"{label} base_url {url!r} has no http(s) scheme"
        raise ProviderConfigError(msg)


class LLMClient:
    """Sends prompts to ``openai``/``ollama`` backends with shared retry handling."""

    def __init__(
        self,
        *,
        settings: ProviderSettings | None = None,
        timeout: float = 60.0,
        probe_timeout: float = 3.0,
        max_retries: int = 2,
        retry_delay: float = 2.0,
        sleep: Sleep = time.sleep,
    ) -> None:
        self.settings = settings or ProviderSettings()
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    def complete(self, prompt: str, options: AskOptions) -> AskResult:
        return self._dispatch(prompt, options, on_token=None)

    def complete_stream(
        self, prompt: str, options: AskOptions, on_token: TokenCallback | None
    ) -> AskResult:
        """Stream tokens to ``on_token`` as they arrive and return the full text."""
        return self._dispatch(prompt, options, on_token=on_token, stream=True)

    def resolve_session(self, options: AskOptions) -> AskOptions:
        """Pick a reachable backend once and pin its provider, model and base URL."""
        provider = self._provider_name(options)
        if provider == "ollama":
            base_url, model = self._ollama_endpoint(options)
            try:
                self.ping_ollama(base_url)
            except ProviderError as exc:
                msg = f"ollama unavailable: {exc}"
                raise ProviderError(msg) from exc
            return replace(options, provider="ollama", model=model, base_url=base_url)

        if provider == "openai":
            base_url, model, _ = self._openai_endpoint(options)
            return replace(options, provider="openai", model=model, base_url=base_url)

        ollama_base, ollama_model = self._ollama_endpoint(options)
        try:
            self.ping_ollama(ollama_base)
        except ProviderError:
            LOGGER.info("llm_auto_probe_failed", extra={"base_url": ollama_base})
        else:
            return replace(options, provider="ollama", model=ollama_model, base_url=ollama_base)
        try:
            base_url, model, _ = self._openai_endpoint(options)
        except ProviderConfigError as exc:
            msg = "ollama unavailable and OpenAI API key is missing"
            raise ProviderConfigError(msg) from exc
        return replace(options, provider="openai", model=model, base_url=base_url)

    def ping_ollama(self, base_url: str) -> None:
        """Fast liveness probe against the generate backend."""
        url = base_url.strip().rstrip("/") + "/api/tags"
        try:
            with request.urlopen(url, timeout=self.probe_timeout) as resp:  # noqa: S310
                status = getattr(resp, "status", 200)
        except HTTPError as exc:
            msg = f"status {exc.code}"
            raise ProviderError(msg, status=exc.code) from exc
        except (URLError, TimeoutError, ConnectionError) as exc:
            raise ProviderError(str(exc)) from exc
        if status < 200 or status >= 300:
            msg = f"status {status}"
            raise ProviderError(msg, status=status)

    def _dispatch(
        self,
        prompt: str,
        options: AskOptions,
        *,
        on_token: TokenCallback | None,
        stream: bool = False,
    ) -> AskResult:
        text = prompt.strip()
        if not text:
            msg = "prompt is required"
            raise ValueError(msg)

        provider = self._provider_name(options)
        if provider == "ollama":
            return self._ask_ollama(text, options, on_token=on_token, stream=stream)
        if provider == "openai":
            return self._ask_openai(text, options, on_token=on_token, stream=stream)

        base_url, _ = self._ollama_endpoint(options)
        try:
            self.ping_ollama(base_url)
            return self._ask_ollama(text, options, on_token=on_token, stream=stream)
        except ProviderError as exc:
            LOGGER.info(
                "llm_auto_fallback",
                extra={"from_provider": "ollama", "to_provider": "openai", "reason": str(exc)},
            )
        try:
            return self._ask_openai(text, options, on_token=on_token, stream=stream)
        except ProviderConfigError as exc:
            msg = "ollama unavailable and OpenAI API key is missing"
            raise ProviderConfigError(msg) from exc
        except ProviderError as exc:
            msg = f"ollama unavailable and openai fallback failed: {exc}"
            raise ProviderError(msg, status=exc.status) from exc

    @staticmethod
    def _provider_name(options: AskOptions) -> str:
        try:
            return normalize_provider(options.provider)
        except ValueError as exc:
            raise ProviderConfigError(str(exc)) from exc

    def _ollama_endpoint(self, options: AskOptions) -> tuple[str, str]:
        base_url = (options.base_url or self.settings.ollama_base_url).strip().rstrip("/")
        base_url = base_url or DEFAULT_OLLAMA_BASE_URL
        validate_base_url(base_url, "ollama")
        model = (options.model or self.settings.ollama_model).strip() or DEFAULT_OLLAMA_MODEL
        return base_url, model

    def _openai_endpoint(self, options: AskOptions) -> tuple[str, str, str]:
        base_url = (options.base_url or self.settings.openai_base_url).strip().rstrip("/")
        base_url = base_url or DEFAULT_OPENAI_BASE_URL
        validate_base_url(base_url, "openai")
        model = (options.model or self.settings.openai_model).strip() or DEFAULT_OPENAI_MODEL
        api_key = (self.settings.openai_api_key or "").strip()
        if not api_key:
            msg = "missing OpenAI API key (set DM_AGENT_OPENAI_API_KEY or OPENAI_API_KEY)"
            raise ProviderConfigError(msg)
        return base_url, model, api_key

    @staticmethod
    def build_openai_payload(
        prompt: str, options: AskOptions, *, model: str, stream: bool
    ) -> dict[str, object]:
        payload: dict[str, object] = {
            "model": model,
            "messages": [
                {"role": "system", "content": options.system_prompt or DEFAULT_SYSTEM_MESSAGE},
                {"role": "user", "content": prompt},
            ],
        }
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.max_tokens > 0:
            payload["max_tokens"] = options.max_tokens
        if options.json_mode:
            payload["response_format"] = {"type": "json_object"}
        if stream:
            payload["stream"] = True
        return payload

    @staticmethod
    def build_ollama_payload(
        prompt: str, options: AskOptions, *, model: str, stream: bool
    ) -> dict[str, object]:
        payload: dict[str, object] = {"model": model, "prompt": prompt, "stream": stream}
        if options.system_prompt.strip():
            payload["system"] = options.system_prompt
        if options.json_mode:
            payload["format"] = "json"
        backend_options: dict[str, object] = {}
        if options.temperature is not None:
            backend_options["temperature"] = options.temperature
        if options.max_tokens > 0:
            backend_options["num_predict"] = options.max_tokens
        if backend_options:
            payload["options"] = backend_options
        return payload

    def _ask_openai(
        self,
        prompt: str,
        options: AskOptions,
        *,
        on_token: TokenCallback | None,
        stream: bool,
    ) -> AskResult:
        base_url, model, api_key = self._openai_endpoint(options)
        payload = self.build_openai_payload(prompt, options, model=model, stream=stream)
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"}
        url = f"{base_url}/chat/completions"
        LOGGER.debug(
            "llm_request_prepared",
            extra={
                "provider": "openai",
                "model": model,
                "prompt_chars": len(prompt),
                "stream": stream,
                "json_mode": options.json_mode,
            },
        )

        with self._post_with_retry(url, payload, headers, provider="openai") as resp:
            if stream:
                text = _collect(_iter_sse_tokens(resp), on_token)
            else:
                parsed = _read_json(resp, provider="openai")
                text = _openai_message_content(parsed)

        answer = text.strip()
        if not answer:
            msg = "empty openai stream response" if stream else "empty openai response"
            raise EmptyResponseError(msg)
        return AskResult(text=answer, provider="openai", model=model)

    def _ask_ollama(
        self,
        prompt: str,
        options: AskOptions,
        *,
        on_token: TokenCallback | None,
        stream: bool,
    ) -> AskResult:
        base_url, model = self._ollama_endpoint(options)
        payload = self.build_ollama_payload(prompt, options, model=model, stream=stream)
        headers = {"Content-Type": "application/json"}
        url = f"{base_url}/api/generate"
        LOGGER.debug(
            "llm_request_prepared",
            extra={
                "provider": "ollama",
                "model": model,
                "prompt_chars": len(prompt),
                "stream": stream,
                "json_mode": options.json_mode,
            },
        )

        with self._post_with_retry(url, payload, headers, provider="ollama") as resp:
            if stream:
                text = _collect(_iter_ndjson_tokens(resp), on_token)
            else:
                parsed = _read_json(resp, provider="ollama")
                response_text = parsed.get("response")
                text = response_text if isinstance(response_text, str) else ""

        answer = text.strip()
        if not answer:
            msg = "empty ollama stream response" if stream else "empty ollama response"
            raise EmptyResponseError(msg)
        return AskResult(text=answer, provider="ollama", model=model)

    def _post_with_retry(
        self,
        url: str,
        payload: dict[str, object],
        headers: dict[str, str],
        *,
        provider: str,
    ):
        """POST ``payload`` and return the open response, retrying transient failures."""
        body = json.dumps(payload).encode("utf-8")
        last_error: str = "request failed"
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay = self.retry_delay * (2 ** (attempt - 1))
                LOGGER.warning(
                    "llm_request_retry",
                    extra={
                        "provider": provider,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "reason": last_error,
                    },
                )
                self._sleep(delay)

            req = request.Request(url, data=body, headers=headers, method="POST")
            try:
                return request.urlopen(req, timeout=self.timeout)  # noqa: S310
            except HTTPError as exc:
                if exc.code == 429 or exc.code >= RETRYABLE_STATUS_FLOOR:
                    last_error = f"server error: {exc.code} {exc.reason}"
                    exc.close()
                    continue
                excerpt = _read_error_body_excerpt(exc)
                LOGGER.error(
                    "llm_request_http_error",
                    extra={
                        "provider": provider,
                        "http_status": exc.code,
                        "reason": exc.reason,
                        "response_excerpt": excerpt,
                    },
                )
                details = f"{provider} status: {exc.code} {exc.reason}"
                if excerpt:
                    details = f"{details}. Response body: {excerpt}"
                raise ProviderError(details, status=exc.code) from exc
            except URLError as exc:
                last_error = f"transport error: {exc.reason}"
            except (TimeoutError, ConnectionError) as exc:
                last_error = f"transport error: {exc}"

        LOGGER.error(
            "llm_request_retries_exhausted",
            extra={"provider": provider, "attempts": self.max_retries + 1, "reason": last_error},
        )
        raise TransientProviderError(f"{provider} {last_error}")


def _collect(tokens: Iterable[str], on_token: TokenCallback | None) -> str:
    parts: list[str] = []
    for token in tokens:
        parts.append(token)
        if on_token is not None:
            on_token(token)
    return "".join(parts)


def _iter_sse_tokens(resp: Iterable[bytes]) -> Iterable[str]:
    """Yield content deltas from ``data:`` lines of a chat-completion stream."""
    for raw_line in resp:
        line = raw_line.decode("utf-8", errors="replace").strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:") :].strip()
        if data == "[DONE]":
            return
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            continue
        choices = chunk.get("choices") if isinstance(chunk, dict) else None
        if not isinstance(choices, list) or not choices:
            continue
        first = choices[0]
        delta = first.get("delta") if isinstance(first, dict) else None
        content = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(content, str) and content:
            yield content


def _iter_ndjson_tokens(resp: Iterable[bytes]) -> Iterable[str]:
    """Yield ``response`` fragments from a newline-delimited JSON stream."""
    for raw_line in resp:
        line = raw_line.decode("utf-8", errors="replace").strip()
        if not line:
            continue
        try:
            chunk = json.loads(line)
        except json.JSONDecodeError:
            return
        if not isinstance(chunk, dict):
            continue
        fragment = chunk.get("response")
        if isinstance(fragment, str) and fragment:
            yield fragment
        if chunk.get("done") is True:
            return


def _read_json(resp, *, provider: str) -> dict[str, object]:
    try:
        parsed = json.loads(resp.read().decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        msg = f"{provider} response parsing error: {exc}"
        raise ProviderError(msg) from exc
    if not isinstance(parsed, dict):
        msg = f"{provider} response parsing error: expected top-level object"
        raise ProviderError(msg)
    return parsed


def _openai_message_content(parsed: dict[str, object]) -> str:
    choices = parsed.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    message = first.get("message") if isinstance(first, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    return content if isinstance(content, str) else ""


def _read_error_body_excerpt(exc: HTTPError, *, max_chars: int = 500) -> str | None:
    if exc.fp is None:
        return None
    try:
        raw = exc.read()
    except OSError:
        return None

    if not raw:
        return None

    excerpt = raw.decode("utf-8", errors="replace").replace("\n", " ").strip()
    if len(excerpt) > max_chars:
        return f"{excerpt[:max_chars]}..."
    return excerpt
