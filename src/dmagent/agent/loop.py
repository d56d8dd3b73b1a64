"""Multi-step planning loop: decide, gate, execute, feed results back."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from dmagent.agent.models import (
    PREVIOUS_PROMPTS_MAX,
    ActionRecord,
    RiskLevel,
    StepRecord,
    TurnResult,
    condense_session_history,
    error_result,
    ok_result,
)
from dmagent.agent.output import OutputWriter
from dmagent.agent.risk import assess_risk, should_confirm
from dmagent.agent.streaming import AnswerStreamer
from dmagent.config import RiskPolicy
from dmagent.llm.client import AskOptions, ProviderError
from dmagent.llm.decision import (
    ACTION_ANSWER,
    ACTION_PROPOSE_UNIT,
    ACTION_RUN_TOOL,
    ACTION_RUN_UNIT,
    Decision,
    DecisionEngine,
)
from dmagent.llm.prompts import build_planner_prompt
from dmagent.tools import RunResult, ToolProvider
from dmagent.units import (
    UnitCatalog,
    UnitError,
    UnitNotFoundError,
    UnitRunner,
    format_unit_catalog,
    missing_mandatory_params,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 4
DESCRIPTION_MAX_CHARS = 80
DEFAULT_CONTINUE_PROMPT = "Show more results? [Y/n]: "

ConfirmAction = Callable[[RiskLevel, str], bool]
ContinuePaging = Callable[[str], bool]


class SpinnerLike(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...


class UnitAuthor(Protocol):
    """Writes a new unit for ``description`` and returns its name."""

    def __call__(self, description: str, *, base_dir: str, request: str) -> str: ...


SpinnerFactory = Callable[[], SpinnerLike]


def format_unit_args(unit_args: Mapping[str, str]) -> str:
    return " ".join(f"-{key} {unit_args[key]}" for key in sorted(unit_args))


def format_tool_args(tool_args: Mapping[str, str]) -> str:
    keys = [
        key
        for key in sorted(tool_args)
        if tool_args[key].strip() and tool_args[key].strip().lower() not in {"null", "<nil>"}
    ]
    return ", ".join(f"{key}={tool_args[key]}" for key in keys)


def unit_args_display(decision: Decision) -> str:
    return format_unit_args(decision.unit_args) or " ".join(decision.args)


def decision_signature(decision: Decision) -> str:
    """Identity of an action within a turn; empty for plain answers."""
    if decision.action == ACTION_RUN_UNIT:
        return f"{ACTION_RUN_UNIT}|{decision.unit.strip()}|{unit_args_display(decision)}"
    if decision.action == ACTION_RUN_TOOL:
        return f"{ACTION_RUN_TOOL}|{decision.tool.strip()}|{format_tool_args(decision.tool_args)}"
    if decision.action == ACTION_PROPOSE_UNIT:
        return f"{ACTION_PROPOSE_UNIT}|{decision.description.strip()}"
    return ""


def planned_action_summary(decision: Decision) -> str:
    if decision.action == ACTION_RUN_UNIT:
        args = unit_args_display(decision)
        return f"unit {decision.unit.strip()} {args}".rstrip()
    if decision.action == ACTION_RUN_TOOL:
        args = format_tool_args(decision.tool_args)
        return f"tool {decision.tool.strip()} ({args})" if args else f"tool {decision.tool.strip()}"
    if decision.action == ACTION_PROPOSE_UNIT:
        description = decision.description.strip()
        if len(description) > DESCRIPTION_MAX_CHARS:
            description = description[:DESCRIPTION_MAX_CHARS] + "..."
        return f"create unit: {description}"
    return "answer"


class AgentLoop:
    """Runs one user request through up to ``max_steps`` planning steps."""

    def __init__(
        self,
        *,
        decider: DecisionEngine,
        units: UnitCatalog,
        runner: UnitRunner,
        tools: ToolProvider,
        base_dir: str,
        options: AskOptions,
        risk_policy: RiskPolicy = "normal",
        confirm_tools: bool = False,
        max_steps: int = DEFAULT_MAX_STEPS,
        json_output: bool = False,
        confirm_action: ConfirmAction | None = None,
        continue_paging: ContinuePaging | None = None,
        unit_author: UnitAuthor | None = None,
        spinner_factory: SpinnerFactory | None = None,
        env_context: str = "",
        scope: str = "",
        log_dir: str | Path | None = None,
    ) -> None:
        self.decider = decider
        self.units = units
        self.runner = runner
        self.tools = tools
        self.base_dir = base_dir
        self.options = options
        self.risk_policy = risk_policy
        self.confirm_tools = confirm_tools
        self.max_steps = max_steps
        self.json_output = json_output
        self.confirm_action = confirm_action
        self.continue_paging = continue_paging
        self.unit_author = unit_author
        self.spinner_factory = spinner_factory
        self.env_context = env_context
        self.scope = scope
        self.log_dir = Path(log_dir) if log_dir else None
        self._unit_catalog: str | None = None
        self._tool_catalog: str | None = None

    @property
    def unit_catalog(self) -> str:
        if self._unit_catalog is None:
            self._unit_catalog = format_unit_catalog(self.units, self.base_dir, self.scope)
        return self._unit_catalog

    @property
    def tool_catalog(self) -> str:
        if self._tool_catalog is None:
            self._tool_catalog = self.tools.catalog()
        return self._tool_catalog

    def refresh_unit_catalog(self) -> None:
        self.units.invalidate(self.base_dir)
        self._unit_catalog = None

    def run(
        self,
        prompt: str,
        *,
        writer: OutputWriter,
        previous_prompts: Sequence[str] = (),
        session_history: Sequence[ActionRecord] = (),
    ) -> TurnResult:
        history: list[ActionRecord] = []
        result = self._run_steps(prompt, writer, history, previous_prompts, session_history)
        writer.finalize()
        LOGGER.info(
            "agent_turn_finished",
            extra={"status": result.status, "steps": len(history), "exit_code": result.exit_code},
        )
        self._append_log(prompt, result)
        return result

    def _run_steps(
        self,
        prompt: str,
        writer: OutputWriter,
        history: list[ActionRecord],
        previous_prompts: Sequence[str],
        session_history: Sequence[ActionRecord],
    ) -> TurnResult:
        seen_signatures: set[str] = set()
        last_answer = ""
        for step in range(1, self.max_steps + 1):
            planner_prompt = build_planner_prompt(prompt, history, previous_prompts, session_history)
            LOGGER.debug("agent_step_started", extra={"step": step, "prompt_chars": len(planner_prompt)})

            spinner = None
            if not self.json_output and self.spinner_factory is not None:
                spinner = self.spinner_factory()
                spinner.start()
            streamer = AnswerStreamer(writer, spinner, json_output=self.json_output)
            try:
                decision = self.decider.decide(
                    planner_prompt,
                    self.unit_catalog,
                    self.tool_catalog,
                    self.options,
                    env_context=self.env_context,
                    on_token=None if self.json_output else streamer.on_token,
                )
            except (ProviderError, ValueError) as exc:
                LOGGER.warning("agent_decision_failed", extra={"step": step, "error": str(exc)})
                writer.error(str(exc))
                return TurnResult(status="error", history=history, exit_code=1, error=str(exc))
            finally:
                if spinner is not None:
                    spinner.stop()

            LOGGER.debug(
                "agent_decision_received",
                extra={"step": step, "action": decision.action, "target": decision.target},
            )
            writer.provider_info(decision.provider, decision.model)

            if decision.action == ACTION_ANSWER:
                if streamer.did_stream():
                    streamer.finish()
                else:
                    writer.answer(decision.answer)
                return TurnResult(status="completed", answer=decision.answer, history=history)

            signature = decision_signature(decision)
            if signature in seen_signatures:
                LOGGER.info("agent_loop_detected", extra={"step": step, "signature": signature})
                writer.loop_detected(decision.answer)
                return TurnResult(status="loop_detected", answer=decision.answer, history=history)
            seen_signatures.add(signature)

            if decision.action == ACTION_RUN_UNIT:
                outcome = self._handle_unit(step, decision, history, writer, streamer)
            elif decision.action == ACTION_RUN_TOOL:
                outcome = self._handle_tool(step, decision, history, writer, streamer)
            else:
                outcome = self._handle_proposal(step, prompt, decision, history, writer)
            if outcome is not None:
                return outcome
            if decision.answer.strip():
                last_answer = decision.answer

        writer.max_steps_reached(last_answer)
        return TurnResult(status="max_steps", answer=last_answer, history=history)

    def _confirm(self, risk: RiskLevel, summary: str) -> bool:
        if not should_confirm(self.confirm_tools, self.risk_policy, risk):
            return True
        if self.confirm_action is None:
            return risk != "high"
        return self.confirm_action(risk, summary)

    def _record_failure(
        self,
        step: int,
        decision: Decision,
        args: str,
        message: str,
        history: list[ActionRecord],
        writer: OutputWriter,
        *,
        output: str = "",
    ) -> TurnResult | None:
        """Feed a recoverable failure back to the planner, or end the turn in JSON mode."""
        LOGGER.info("agent_step_failed", extra={"step": step, "target": decision.target, "error": message})
        if self.json_output:
            writer.error_with_answer(message, decision.answer)
            return TurnResult(status="error", answer=decision.answer, history=history, exit_code=1, error=message)
        history.append(
            ActionRecord(
                step=step,
                action=decision.action,
                target=decision.target,
                args=args,
                result=error_result(message, output),
            )
        )
        return None

    def _finish_step(
        self,
        step: int,
        decision: Decision,
        args: str,
        output: str,
        history: list[ActionRecord],
        writer: OutputWriter,
        streamer: AnswerStreamer,
    ) -> None:
        history.append(
            ActionRecord(step=step, action=decision.action, target=decision.target, args=args, result=ok_result(output))
        )
        if streamer.did_stream():
            streamer.finish()
        else:
            writer.partial_answer(decision.answer)

    def _handle_unit(
        self,
        step: int,
        decision: Decision,
        history: list[ActionRecord],
        writer: OutputWriter,
        streamer: AnswerStreamer,
    ) -> TurnResult | None:
        name = decision.unit.strip()
        if not name:
            message = "agent selected run_unit without unit name"
            writer.error(message)
            return TurnResult(status="error", history=history, exit_code=1, error=message)

        args = unit_args_display(decision)
        try:
            info = self.units.get_info(self.base_dir, name)
        except UnitNotFoundError:
            message = f"agent selected unknown unit: {name}"
            writer.add_step(StepRecord(step=step, action=ACTION_RUN_UNIT, status="error", target=name, args=args))
            return self._record_failure(step, decision, args, message, history, writer)

        missing = missing_mandatory_params(info, decision.unit_args)
        if missing:
            message = (
                f"unit {name} requires mandatory parameters: {', '.join(missing)}; include them in unit_args"
            )
            writer.add_step(StepRecord(step=step, action=ACTION_RUN_UNIT, status="error", target=name, args=args))
            return self._record_failure(step, decision, args, message, history, writer)

        risk, risk_reason = assess_risk(decision, units=self.units, tools=self.tools, base_dir=self.base_dir)
        summary = planned_action_summary(decision)
        writer.step_info(step, self.max_steps, summary, decision.reason, risk, risk_reason)
        record = StepRecord(
            step=step,
            action=ACTION_RUN_UNIT,
            status="pending",
            target=name,
            args=args,
            reason=decision.reason,
            risk=risk,
            risk_reason=risk_reason,
        )
        if not self._confirm(risk, summary):
            record.status = "canceled"
            writer.add_step(record)
            writer.canceled(decision.answer)
            return TurnResult(status="canceled", answer=decision.answer, history=history)

        try:
            output = self.runner.run_unit(
                self.base_dir,
                name,
                decision.unit_args,
                () if decision.unit_args else decision.args,
            )
        except UnitError as exc:
            record.status = "error"
            writer.add_step(record)
            if not self.json_output:
                writer.unit_output(exc.output)
                writer.error(str(exc))
            return self._record_failure(step, decision, args, str(exc), history, writer, output=exc.output)

        record.status = "ok"
        writer.add_step(record)
        writer.unit_output(output)
        self._finish_step(step, decision, args, output, history, writer, streamer)
        return None

    def _handle_tool(
        self,
        step: int,
        decision: Decision,
        history: list[ActionRecord],
        writer: OutputWriter,
        streamer: AnswerStreamer,
    ) -> TurnResult | None:
        name = decision.tool.strip()
        if not name:
            message = "agent selected run_tool without tool name"
            writer.error(message)
            return TurnResult(status="error", history=history, exit_code=1, error=message)

        args = format_tool_args(decision.tool_args)
        if not self.tools.is_known_tool(name):
            writer.add_step(StepRecord(step=step, action=ACTION_RUN_TOOL, status="error", target=name, args=args))
            return self._record_failure(step, decision, args, f"agent selected unknown tool: {name}", history, writer)

        risk, risk_reason = assess_risk(decision, units=self.units, tools=self.tools, base_dir=self.base_dir)
        summary = planned_action_summary(decision)
        writer.step_info(step, self.max_steps, summary, decision.reason, risk, risk_reason)
        record = StepRecord(
            step=step,
            action=ACTION_RUN_TOOL,
            status="pending",
            target=name,
            args=args,
            reason=decision.reason,
            risk=risk,
            risk_reason=risk_reason,
        )
        if not self._confirm(risk, summary):
            record.status = "canceled"
            writer.add_step(record)
            writer.canceled(decision.answer)
            return TurnResult(status="canceled", answer=decision.answer, history=history)

        run = self.tools.run_by_name(self.base_dir, name, decision.tool_args)
        if run.code != 0:
            record.status = "error"
            writer.add_step(record)
            writer.unit_output(run.output)
            message = f"tool execution failed: {name} (exit code {run.code})"
            return self._record_failure(step, decision, args, message, history, writer, output=run.output)

        writer.unit_output(run.output)
        continued, failed_code = self._continue_pages(name, run, writer)
        captured = run.output + continued
        if failed_code:
            record.status = "error"
            writer.add_step(record)
            message = f"tool continuation failed (exit code {failed_code})"
            return self._record_failure(step, decision, args, message, history, writer, output=captured)
        record.status = "ok"
        writer.add_step(record)
        self._finish_step(step, decision, args, captured, history, writer, streamer)
        return None

    def _continue_pages(self, name: str, run: RunResult, writer: OutputWriter) -> tuple[str, int]:
        """Fetch further pages while the user agrees; returns the text and a failing exit code."""
        if self.json_output or self.continue_paging is None:
            return "", 0
        captured: list[str] = []
        while run.can_continue:
            if not self.continue_paging(run.continue_prompt or DEFAULT_CONTINUE_PROMPT):
                break
            run = self.tools.run_by_name(self.base_dir, name, run.continue_params)
            writer.unit_output(run.output)
            captured.append(run.output)
            if run.code != 0:
                LOGGER.info("tool_continuation_failed", extra={"tool": name, "code": run.code})
                return "".join(captured), run.code
        return "".join(captured), 0

    def _handle_proposal(
        self,
        step: int,
        prompt: str,
        decision: Decision,
        history: list[ActionRecord],
        writer: OutputWriter,
    ) -> TurnResult | None:
        description = decision.description.strip()
        if not description:
            message = "agent proposed a new unit but provided no description"
            writer.error(message)
            return TurnResult(status="error", history=history, exit_code=1, error=message)

        risk, risk_reason = assess_risk(decision, units=self.units, tools=self.tools, base_dir=self.base_dir)
        summary = planned_action_summary(decision)
        writer.step_info(step, self.max_steps, summary, decision.reason, risk, risk_reason)
        record = StepRecord(
            step=step,
            action=ACTION_PROPOSE_UNIT,
            status="pending",
            target=description,
            reason=decision.reason,
            risk=risk,
            risk_reason=risk_reason,
        )

        if self.unit_author is None:
            record.status = "ok"
            writer.add_step(record)
            answer = decision.answer.strip() or f"No unit covers this yet. Proposed new unit: {description}"
            writer.answer(answer)
            return TurnResult(status="completed", answer=answer, history=history)

        if not self._confirm(risk, summary):
            record.status = "canceled"
            writer.add_step(record)
            writer.canceled(decision.answer)
            return TurnResult(status="canceled", answer=decision.answer, history=history)

        try:
            created = self.unit_author(description, base_dir=self.base_dir, request=prompt)
        except (UnitError, OSError, ValueError) as exc:
            record.status = "error"
            writer.add_step(record)
            return self._record_failure(step, decision, "", f"unit authoring failed: {exc}", history, writer)

        self.refresh_unit_catalog()
        LOGGER.info("unit_authored", extra={"unit": created})
        record.status = "ok"
        record.target = created
        writer.add_step(record)
        history.append(
            ActionRecord(step=step, action=ACTION_PROPOSE_UNIT, target=created, result="ok; unit created")
        )
        return None

    def _append_log(self, prompt: str, result: TurnResult) -> None:
        if self.log_dir is None:
            return
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            day_file = self.log_dir / f"session-{datetime.now(timezone.utc).date().isoformat()}.log"
            entry = {
                "log_version": 1,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "request": prompt,
                "provider": self.options.provider,
                "model": self.options.model,
                "base_dir": self.base_dir,
                "status": result.status,
                "exit_code": result.exit_code,
                "error": result.error,
                "answer": result.answer,
                "steps": [
                    {
                        "step": record.step,
                        "action": record.action,
                        "target": record.target,
                        "args": record.args,
                        "result": record.result,
                    }
                    for record in result.history
                ],
            }
            with day_file.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry) + "\n")
        except OSError as exc:
            LOGGER.warning("session_log_failed", extra={"log_dir": str(self.log_dir), "error": str(exc)})


class AskSession:
    """Interactive session state carried between turns."""

    def __init__(self, loop: AgentLoop, writer_factory: Callable[[], OutputWriter]) -> None:
        self.loop = loop
        self.writer_factory = writer_factory
        self.previous_prompts: list[str] = []
        self.session_history: list[ActionRecord] = []

    def run_turn(self, prompt: str) -> TurnResult:
        result = self.loop.run(
            prompt,
            writer=self.writer_factory(),
            previous_prompts=list(self.previous_prompts),
            session_history=list(self.session_history),
        )
        self.session_history = condense_session_history(self.session_history, result.history)
        self.previous_prompts = [*self.previous_prompts, prompt][-PREVIOUS_PROMPTS_MAX:]
        return result
