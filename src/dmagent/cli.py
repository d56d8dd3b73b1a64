"""Command-line interface for dm-agent."""

from __future__ import annotations

import argparse
import logging
import os
import platform
import sys
from collections.abc import Sequence
from functools import partial
from pathlib import Path
from typing import cast

from .agent.loop import AgentLoop, AskSession
from .agent.models import RiskLevel
from .agent.output import JSONWriter, OutputWriter, TTYWriter
from .agent.spinner import Spinner
from .cleanup import CleanupRegistry, install_interrupt_handler
from .config import AppConfig, normalize_provider, normalize_risk_policy
from .llm.cache import DecisionCache
from .llm.client import AskOptions, LLMClient, ProviderError, ProviderSettings
from .llm.decision import DecisionEngine
from .tools import BuiltinTools
from .units import CatalogCache, FileSystemCatalog, UnitRunner

LOGGER = logging.getLogger(__name__)

FILE_CONTEXT_MAX_BYTES = 32 * 1024
PROMPT_LABEL = "ask> "
EXIT_COMMANDS = {"/exit", "exit", "quit"}


class CLIArgs(argparse.Namespace):
    prompt: str | None
    provider: str | None
    model: str | None
    base_url: str | None
    base_dir: str | None
    risk_policy: str | None
    confirm_tools: bool
    json_output: bool
    scope: str
    max_steps: int | None
    files: list[str]
    verbose: bool


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dm-agent", description="Agentic command-line assistant")
    parser.add_argument("--provider", help="Completion backend: openai, ollama or auto.")
    parser.add_argument("--model", help="Model name; overrides the provider default.")
    parser.add_argument("--base-url", dest="base_url", help="Backend base URL override.")
    parser.add_argument(
        "--base-dir",
        dest="base_dir",
        help="Directory holding the plugins/ unit folder. Defaults to the config value or cwd.",
    )
    parser.add_argument(
        "--risk-policy",
        dest="risk_policy",
        help="Confirmation policy: strict (always), normal (high risk) or off.",
    )
    parser.add_argument(
        "--confirm-tools",
        dest="confirm_tools",
        action="store_true",
        help="Confirm every unit and tool run regardless of risk.",
    )
    parser.add_argument(
        "--json",
        dest="json_output",
        action="store_true",
        help="Emit one JSON document per turn instead of human output.",
    )
    parser.add_argument("--scope", default="", help="Only offer units from matching toolkit groups.")
    parser.add_argument("--max-steps", dest="max_steps", type=int, help="Planning steps per request.")
    parser.add_argument(
        "--file",
        dest="files",
        action="append",
        default=[],
        metavar="PATH",
        help="Attach a file (up to 32 KiB) to the request context. Repeatable.",
    )
    parser.add_argument("--verbose", action="store_true", help="Log debug output to stderr.")
    parser.add_argument("prompt", nargs="?", help="Request to run once; omit for an interactive session.")
    return parser


def build_env_context(base_dir: str) -> str:
    """Describe the machine and working directory for the planner."""
    return "\n".join(
        [
            f"- Working directory: {Path.cwd()}",
            f"- Base directory: {base_dir}",
            f"- Operating system: {platform.system()} {platform.release()}",
            f"- os_name: {os.name}",
        ]
    )


def build_file_context(paths: Sequence[str]) -> str:
    """Read attached files into a context block; raises ``ValueError`` when one is unusable."""
    parts: list[str] = []
    for raw_path in paths:
        path = Path(raw_path).expanduser()
        if path.is_dir():
            msg = f"{raw_path!r} is a directory, not a file"
            raise ValueError(msg)
        try:
            size = path.stat().st_size
            if size > FILE_CONTEXT_MAX_BYTES:
                msg = f"file {raw_path!r} too large ({size} bytes, max {FILE_CONTEXT_MAX_BYTES})"
                raise ValueError(msg)
            data = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            msg = f"cannot read file {raw_path!r}: {exc}"
            raise ValueError(msg) from exc
        parts.append(f"--- file: {raw_path} ---\n{data}\n--- end ---")
    if not parts:
        return ""
    return "Attached file context:\n" + "\n".join(parts)


def _configure_logging(level_name: str, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def main() -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args())
    try:
        config = AppConfig.from_env()
        provider = normalize_provider(args.provider) if args.provider else config.provider
        risk_policy = normalize_risk_policy(args.risk_policy) if args.risk_policy else config.risk_policy
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    _configure_logging(config.log_level, args.verbose)

    base_dir_value = args.base_dir or config.base_dir
    base_dir = Path(base_dir_value).expanduser().resolve()
    if not base_dir.is_dir():
        print(f"Error: invalid base directory: {base_dir_value}", file=sys.stderr)
        return 1

    try:
        file_context = build_file_context(args.files)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    env_context = build_env_context(str(base_dir))
    if file_context:
        env_context = f"{env_context}\n{file_context}"

    if args.json_output and not (args.prompt or "").strip():
        print("Error: --json requires a prompt", file=sys.stderr)
        return 2

    registry = CleanupRegistry()
    install_interrupt_handler(registry)

    client = LLMClient(settings=ProviderSettings.from_config(config))
    options = AskOptions(
        provider=provider,
        model=args.model or config.model or "",
        base_url=args.base_url or config.base_url or "",
    )
    catalog = FileSystemCatalog(CatalogCache())
    loop = AgentLoop(
        decider=DecisionEngine(client, cache=DecisionCache(config.decision_cache_ttl)),
        units=catalog,
        runner=UnitRunner(catalog, timeout=config.unit_timeout),
        tools=BuiltinTools(),
        base_dir=str(base_dir),
        options=options,
        risk_policy=risk_policy,
        confirm_tools=args.confirm_tools or config.confirm_tools,
        max_steps=args.max_steps if args.max_steps and args.max_steps > 0 else config.max_steps,
        json_output=args.json_output,
        confirm_action=partial(_confirm_agent_action, json_output=args.json_output),
        continue_paging=_confirm_next_page,
        spinner_factory=lambda: Spinner("Thinking..."),
        env_context=env_context,
        scope=args.scope,
        log_dir=config.log_dir,
    )

    if args.prompt and args.prompt.strip():
        writer: OutputWriter = JSONWriter() if args.json_output else TTYWriter()
        result = loop.run(args.prompt, writer=writer)
        return result.exit_code

    return _run_interactive(loop, client)


def _run_interactive(loop: AgentLoop, client: LLMClient) -> int:
    try:
        loop.options = client.resolve_session(loop.options)
    except ProviderError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"dm-agent | {loop.options.provider}/{loop.options.model}")
    print("Type your question. Commands: /exit, exit, quit")
    session = AskSession(loop, TTYWriter)
    while True:
        try:
            line = input(PROMPT_LABEL)
        except EOFError:
            print()
            return 0
        prompt = line.strip()
        if not prompt:
            continue
        if prompt.lower() in EXIT_COMMANDS:
            return 0
        session.run_turn(prompt)


def _read_choice(prompt_text: str, *, json_output: bool = False) -> str:
    # stdout carries the single JSON document in --json mode.
    if json_output:
        sys.stderr.write(prompt_text)
        sys.stderr.flush()
        return input().strip().lower()
    return input(prompt_text).strip().lower()


def _confirm_agent_action(risk: RiskLevel, summary: str, *, json_output: bool = False) -> bool:
    if risk == "high":
        choice = _read_choice("Confirm HIGH risk action? [y/N]: ", json_output=json_output)
        return choice in {"y", "yes"}
    choice = _read_choice("Confirm agent action? [Y/n]: ", json_output=json_output)
    return choice not in {"n", "no"}


def _confirm_next_page(prompt_text: str) -> bool:
    choice = _read_choice(prompt_text)
    return choice not in {"n", "no"}


if __name__ == "__main__":
    raise SystemExit(main())
