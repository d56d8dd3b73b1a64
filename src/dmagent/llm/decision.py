"""Planner decisions: parsing, JSON repair and cached model round-trips."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Protocol

from dmagent.llm.cache import DecisionCache, decision_cache_key
from dmagent.llm.client import AskOptions, AskResult, ProviderError, TokenCallback
from dmagent.llm.prompts import build_repair_prompt, build_system_prompt, build_user_prompt

ACTION_ANSWER = "answer"
ACTION_RUN_UNIT = "run_unit"
ACTION_RUN_TOOL = "run_tool"
ACTION_PROPOSE_UNIT = "propose_unit"
VALID_ACTIONS: set[str] = {ACTION_ANSWER, ACTION_RUN_UNIT, ACTION_RUN_TOOL, ACTION_PROPOSE_UNIT}

DECISION_TEMPERATURE = 0.2
DECISION_MAX_TOKENS = 1024

LOGGER = logging.getLogger(__name__)


class DecisionParseError(ValueError):
    """The model reply did not contain a usable decision object."""


class CompletionClient(Protocol):
    def complete(self, prompt: str, options: AskOptions) -> AskResult: ...

    def complete_stream(
        self, prompt: str, options: AskOptions, on_token: TokenCallback | None
    ) -> AskResult: ...


@dataclass(frozen=True, slots=True)
class Decision:
    """Structured output of one planning call."""

    action: str = ACTION_ANSWER
    answer: str = ""
    unit: str = ""
    unit_args: dict[str, str] = field(default_factory=dict)
    args: tuple[str, ...] = ()
    tool: str = ""
    tool_args: dict[str, str] = field(default_factory=dict)
    description: str = ""
    reason: str = ""
    provider: str = ""
    model: str = ""

    @property
    def target(self) -> str:
        if self.action == ACTION_RUN_UNIT:
            return self.unit
        if self.action == ACTION_RUN_TOOL:
            return self.tool
        return ""

    def with_provider(self, provider: str, model: str) -> Decision:
        return replace(self, provider=provider, model=model)


def normalize_action(action: object) -> str:
    normalized = action.strip().lower() if isinstance(action, str) else ""
    return normalized if normalized in VALID_ACTIONS else ACTION_ANSWER


def find_first_json_object(text: str) -> str:
    """Return the first balanced ``{...}`` span, ignoring braces inside strings."""
    start = text.find("{")
    if start < 0:
        return ""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        ch = text[index]
        if escaped:
            escaped = False
            continue
        if ch == "\\" and in_string:
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return ""


def _stringify(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def sanitize_arg_map(raw: object) -> dict[str, str]:
    """Drop empty/null entries and trim keys and values of a model argument map."""
    if not isinstance(raw, Mapping):
        return {}
    sanitized: dict[str, str] = {}
    for key, value in raw.items():
        name = str(key).strip()
        if not name or value is None:
            continue
        text = _stringify(value).strip()
        if not text or text.lower() in {"null", "<nil>"}:
            continue
        sanitized[name] = text
    return sanitized


def _string_field(payload: Mapping[str, object], key: str) -> str:
    value = payload.get(key)
    return value.strip() if isinstance(value, str) else ""


def parse_decision(text: str) -> Decision:
    trimmed = text.strip()
    if not trimmed:
        msg = "empty decision"
        raise DecisionParseError(msg)
    payload = find_first_json_object(trimmed)
    if not payload:
        if not trimmed.startswith("{"):
            msg = "no json object found"
            raise DecisionParseError(msg)
        payload = trimmed
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise DecisionParseError(str(exc)) from exc
    if not isinstance(parsed, dict):
        msg = "decision is not a JSON object"
        raise DecisionParseError(msg)

    raw_args = parsed.get("args")
    args = (
        tuple(_stringify(item) for item in raw_args if item is not None)
        if isinstance(raw_args, list)
        else ()
    )
    return Decision(
        action=normalize_action(parsed.get("action")),
        answer=_string_field(parsed, "answer"),
        unit=_string_field(parsed, "unit"),
        unit_args=sanitize_arg_map(parsed.get("unit_args")),
        args=args,
        tool=_string_field(parsed, "tool"),
        tool_args=sanitize_arg_map(parsed.get("tool_args")),
        description=_string_field(parsed, "description"),
        reason=_string_field(parsed, "reason"),
    )


def decision_options(base: AskOptions, system_prompt: str) -> AskOptions:
    return AskOptions(
        provider=base.provider,
        model=base.model,
        base_url=base.base_url,
        temperature=DECISION_TEMPERATURE,
        max_tokens=DECISION_MAX_TOKENS,
        json_mode=True,
        system_prompt=system_prompt,
    )


class DecisionEngine:
    """Asks the model for the next action, repairing or degrading bad replies."""

    def __init__(self, client: CompletionClient, *, cache: DecisionCache | None = None) -> None:
        self.client = client
        self.cache = cache

    def decide(
        self,
        prompt: str,
        unit_catalog: str,
        tool_catalog: str,
        options: AskOptions,
        *,
        env_context: str = "",
        on_token: TokenCallback | None = None,
    ) -> Decision:
        request = prompt.strip()
        if not request:
            msg = "prompt is required"
            raise ValueError(msg)

        key = decision_cache_key(request, unit_catalog, tool_catalog, options, env_context)
        if self.cache is not None:
            cached, hit = self.cache.get(key)
            if hit and cached is not None:
                LOGGER.debug("decision_cache_hit", extra={"action": cached.action})
                return cached

        ask_options = decision_options(options, build_system_prompt(unit_catalog, tool_catalog))
        user_prompt = build_user_prompt(request, env_context)
        if on_token is not None:
            raw = self.client.complete_stream(user_prompt, ask_options, on_token)
        else:
            raw = self.client.complete(user_prompt, ask_options)

        decision = self._parse_or_repair(raw, ask_options)
        if self.cache is not None:
            self.cache.set(key, decision)
        return decision

    def _parse_or_repair(self, raw: AskResult, options: AskOptions) -> Decision:
        try:
            return parse_decision(raw.text).with_provider(raw.provider, raw.model)
        except DecisionParseError as exc:
            LOGGER.info("decision_parse_failed", extra={"error": str(exc), "raw_chars": len(raw.text)})

        try:
            repaired = self.client.complete(build_repair_prompt(raw.text), options)
            return parse_decision(repaired.text).with_provider(repaired.provider, repaired.model)
        except (DecisionParseError, ProviderError) as exc:
            LOGGER.info("decision_repair_failed", extra={"error": str(exc)})

        return Decision(
            action=ACTION_ANSWER,
            answer=raw.text,
            provider=raw.provider,
            model=raw.model,
        )
