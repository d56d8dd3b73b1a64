"""Human and structured renderings of an agent turn."""

from __future__ import annotations

import abc
import json
import logging
import sys
from typing import TextIO

from dmagent.agent.models import StepRecord

LOGGER = logging.getLogger(__name__)

MAX_STEPS_FALLBACK = "Reached max agent steps; stopping."
LOOP_FALLBACK = "Agent repeated the same action; stopped to avoid loop."


class OutputWriter(abc.ABC):
    """Receives turn events from the agent loop."""

    @abc.abstractmethod
    def provider_info(self, provider: str, model: str) -> None: ...

    @abc.abstractmethod
    def step_info(
        self, step: int, max_steps: int, summary: str, reason: str, risk: str, risk_reason: str
    ) -> None: ...

    @abc.abstractmethod
    def answer(self, answer: str) -> None: ...

    @abc.abstractmethod
    def partial_answer(self, answer: str) -> None: ...

    @abc.abstractmethod
    def error(self, message: str) -> None: ...

    @abc.abstractmethod
    def error_with_answer(self, message: str, answer: str) -> None: ...

    @abc.abstractmethod
    def canceled(self, answer: str) -> None: ...

    @abc.abstractmethod
    def loop_detected(self, answer: str) -> None: ...

    @abc.abstractmethod
    def max_steps_reached(self, answer: str) -> None: ...

    def add_step(self, step: StepRecord) -> None:
        """Record a finished step; only structured writers keep these."""

    def unit_output(self, output: str) -> None:
        """Show raw output captured from a unit or tool."""

    def stream_text(self, text: str) -> None:
        """Print streamed answer text as it arrives."""

    def finalize(self) -> None:
        """Flush anything not yet emitted for the turn."""


def humanize_summary(summary: str) -> str:
    for prefix, label in (("unit ", "Running"), ("tool ", "Running tool")):
        if summary.startswith(prefix):
            name, _, rest = summary[len(prefix) :].partition(" ")
            return f"{label} {name} {rest}".rstrip()
    if summary.startswith("create unit: "):
        return "Creating new unit: " + summary.removeprefix("create unit: ")
    return summary


class TTYWriter(OutputWriter):
    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream or sys.stdout

    def _print(self, text: str = "") -> None:
        print(text, file=self.stream)

    def _print_block(self, heading: str, answer: str) -> None:
        self._print()
        self._print(heading)
        if answer.strip():
            self._print(answer.strip())

    def provider_info(self, provider: str, model: str) -> None:
        LOGGER.debug("provider", extra={"provider": provider, "model": model})

    def step_info(
        self, step: int, max_steps: int, summary: str, reason: str, risk: str, risk_reason: str
    ) -> None:
        LOGGER.debug(
            "agent_step",
            extra={"step": f"{step}/{max_steps}", "reason": reason, "risk": risk, "risk_reason": risk_reason},
        )
        self._print()
        self._print(f"  > {humanize_summary(summary)}")
        if risk.lower() != "low":
            self._print(f"  Risk: {risk.upper()}")

    def answer(self, answer: str) -> None:
        self._print()
        self._print(answer)

    def partial_answer(self, answer: str) -> None:
        if answer.strip():
            self._print()
            self._print(answer)

    def error(self, message: str) -> None:
        self._print()
        self._print(f"Error: {message}")

    def error_with_answer(self, message: str, answer: str) -> None:
        self._print_block(f"Error: {message}", answer)

    def canceled(self, answer: str) -> None:
        self._print_block("Canceled.", answer)

    def loop_detected(self, answer: str) -> None:
        self._print_block("Stopped to avoid repeated action.", answer)

    def max_steps_reached(self, answer: str) -> None:
        self._print()
        self._print("Reached max steps.")

    def unit_output(self, output: str) -> None:
        if output.strip():
            self._print(output.rstrip("\n"))

    def stream_text(self, text: str) -> None:
        self.stream.write(text)
        self.stream.flush()


class JSONWriter(OutputWriter):
    """Collects the turn and emits one indented JSON document."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream or sys.stdout
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] = {
            "provider": "",
            "model": "",
            "action": "answer",
            "answer": "",
            "steps": self.steps,
        }
        self._emitted = False

    def _emit(self) -> None:
        if self._emitted:
            return
        self._emitted = True
        self.stream.write(json.dumps(self.result, indent=2, ensure_ascii=False) + "\n")
        self.stream.flush()

    def provider_info(self, provider: str, model: str) -> None:
        self.result["provider"] = provider
        self.result["model"] = model

    def step_info(
        self, step: int, max_steps: int, summary: str, reason: str, risk: str, risk_reason: str
    ) -> None:
        return None

    def answer(self, answer: str) -> None:
        self.result["action"] = "answer"
        self.result["answer"] = answer
        self._emit()

    def partial_answer(self, answer: str) -> None:
        if answer.strip():
            self.result["answer"] = answer

    def error(self, message: str) -> None:
        self.result["action"] = "error"
        self.result["error"] = message
        self._emit()

    def error_with_answer(self, message: str, answer: str) -> None:
        self.result["action"] = "error"
        self.result["error"] = message
        self.result["answer"] = answer.strip()
        self._emit()

    def canceled(self, answer: str) -> None:
        self.result["action"] = "answer"
        self.result["answer"] = answer.strip()
        self._emit()

    def loop_detected(self, answer: str) -> None:
        self.result["action"] = "answer"
        self.result["answer"] = answer.strip() or LOOP_FALLBACK
        self._emit()

    def max_steps_reached(self, answer: str) -> None:
        self.result["action"] = "answer"
        if answer.strip():
            self.result["answer"] = answer
        if not str(self.result["answer"]).strip():
            self.result["answer"] = MAX_STEPS_FALLBACK
        self._emit()

    def add_step(self, step: StepRecord) -> None:
        self.steps.append(step.to_dict())

    def finalize(self) -> None:
        self._emit()
