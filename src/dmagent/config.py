"""Environment-backed application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, cast

RiskPolicy = Literal["strict", "normal", "off"]
ProviderName = Literal["auto", "ollama", "openai"]

VALID_RISK_POLICIES: set[str] = {"strict", "normal", "off"}
VALID_PROVIDERS: set[str] = {"auto", "ollama", "openai"}

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_OLLAMA_BASE_URL = "http://127.0.0.1:11434"
DEFAULT_OLLAMA_MODEL = "deepseek-coder-v2:latest"


def _to_bool(value: str | None, default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def normalize_risk_policy(raw: str | None) -> RiskPolicy:
    """Validate a risk policy name; an empty value means ``normal``."""
    normalized = (raw or "").strip().lower()
    if not normalized:
        return "normal"
    if normalized not in VALID_RISK_POLICIES:
        msg = f"invalid risk policy {raw!r} (use strict|normal|off)"
        raise ValueError(msg)
    return cast(RiskPolicy, normalized)


def normalize_provider(raw: str | None) -> ProviderName:
    normalized = (raw or "").strip().lower()
    if not normalized:
        return "openai"
    if normalized not in VALID_PROVIDERS:
        msg = f"invalid provider {raw!r} (use auto|ollama|openai)"
        raise ValueError(msg)
    return cast(ProviderName, normalized)


@dataclass(slots=True)
class AppConfig:
    """Runtime settings loaded from config files and environment variables."""

    provider: ProviderName
    model: str | None
    base_url: str | None
    openai_api_key: str | None
    openai_base_url: str
    openai_model: str
    ollama_base_url: str
    ollama_model: str
    base_dir: str
    risk_policy: RiskPolicy
    confirm_tools: bool
    max_steps: int
    unit_timeout: float
    decision_cache_ttl: float
    log_dir: str
    log_level: str

    @classmethod
    def from_env(cls) -> AppConfig:
        file_config = _load_preferred_file_config()
        openai_from_file = file_config.get("openai")
        openai_config = openai_from_file if isinstance(openai_from_file, dict) else {}
        ollama_from_file = file_config.get("ollama")
        ollama_config = ollama_from_file if isinstance(ollama_from_file, dict) else {}

        return cls(
            provider=normalize_provider(
                os.getenv("DM_AGENT_PROVIDER")
                or _to_optional_string(file_config.get("provider"))
            ),
            model=(
                os.getenv("DM_AGENT_MODEL")
                or _to_optional_string(file_config.get("model"))
            ),
            base_url=(
                os.getenv("DM_AGENT_BASE_URL")
                or _to_optional_string(file_config.get("base_url"))
            ),
            openai_api_key=(
                os.getenv("DM_AGENT_OPENAI_API_KEY")
                or os.getenv("OPENAI_API_KEY")
                or _to_optional_string(openai_config.get("api_key"))
                or _to_optional_string(file_config.get("api_key"))
            ),
            openai_base_url=(
                os.getenv("DM_AGENT_OPENAI_BASE_URL")
                or _to_optional_string(openai_config.get("base_url"))
                or DEFAULT_OPENAI_BASE_URL
            ),
            openai_model=(
                os.getenv("DM_AGENT_OPENAI_MODEL")
                or _to_optional_string(openai_config.get("model"))
                or DEFAULT_OPENAI_MODEL
            ),
            ollama_base_url=(
                os.getenv("DM_AGENT_OLLAMA_BASE_URL")
                or _to_optional_string(ollama_config.get("base_url"))
                or DEFAULT_OLLAMA_BASE_URL
            ),
            ollama_model=(
                os.getenv("DM_AGENT_OLLAMA_MODEL")
                or _to_optional_string(ollama_config.get("model"))
                or DEFAULT_OLLAMA_MODEL
            ),
            base_dir=(
                os.getenv("DM_AGENT_BASE_DIR")
                or _to_optional_string(file_config.get("base_dir"))
                or str(Path.cwd())
            ),
            risk_policy=normalize_risk_policy(
                os.getenv("DM_AGENT_RISK_POLICY")
                or _to_optional_string(file_config.get("risk_policy"))
            ),
            confirm_tools=_to_bool(
                os.getenv("DM_AGENT_CONFIRM_TOOLS"),
                default=bool(file_config.get("confirm_tools", False)),
            ),
            max_steps=_to_positive_int(
                os.getenv("DM_AGENT_MAX_STEPS") or file_config.get("max_steps"),
                default=4,
            ),
            unit_timeout=float(
                _to_positive_int(
                    os.getenv("DM_AGENT_UNIT_TIMEOUT") or file_config.get("unit_timeout"),
                    default=300,
                )
            ),
            decision_cache_ttl=float(
                _to_positive_int(
                    os.getenv("DM_AGENT_DECISION_CACHE_TTL")
                    or file_config.get("decision_cache_ttl"),
                    default=180,
                )
            ),
            log_dir=(
                os.getenv("DM_AGENT_LOG_DIR")
                or _to_optional_string(file_config.get("log_dir"))
                or "logs"
            ),
            log_level=(
                os.getenv("DM_AGENT_LOG_LEVEL")
                or _to_optional_string(file_config.get("log_level"))
                or "WARNING"
            ).upper(),
        )


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _load_file_config(path_value: str) -> dict[str, object]:
    path = Path(path_value)
    if not path.exists() or not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


def _load_preferred_file_config() -> dict[str, object]:
    explicit_path = os.getenv("DM_AGENT_CONFIG_FILE")
    if explicit_path:
        return _load_file_config(explicit_path)

    shared_config = _load_file_config("dmagent.config.json")
    local_override = _load_file_config("dmagent.config.local.json")
    return _merge_dicts(shared_config, local_override)


def _merge_dicts(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def _to_positive_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default
