"""Incremental extraction of the ``answer`` field from a streamed decision."""

from __future__ import annotations

import enum
import threading
from typing import Protocol

from dmagent.agent.output import OutputWriter

ANSWER_KEY = "answer"
_SIMPLE_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\", "/": "/", "b": "\b", "f": "\f"}


class _State(enum.Enum):
    SEEKING_KEY = "seeking_key"
    IN_KEY_STRING = "in_key_string"
    KEY_ESCAPE = "key_escape"
    AFTER_KEY = "after_key"
    BEFORE_VALUE = "before_value"
    IN_VALUE = "in_value"
    VALUE_ESCAPE = "value_escape"
    VALUE_UNICODE = "value_unicode"
    DONE = "done"


class AnswerFieldExtractor:
    """Character-level scanner for the string value of the ``answer`` key.

    Tokens may split keys, escapes or ``\\uXXXX`` sequences anywhere; the
    scanner keeps its position between calls to :meth:`feed`. Only the first
    ``answer`` string value is emitted, already unescaped.
    """

    def __init__(self) -> None:
        self._state = _State.SEEKING_KEY
        self._string: list[str] = []
        self._unicode: list[str] = []
        self._depth = 0

    @property
    def started(self) -> bool:
        return self._state in {_State.IN_VALUE, _State.VALUE_ESCAPE, _State.VALUE_UNICODE, _State.DONE}

    @property
    def done(self) -> bool:
        return self._state is _State.DONE

    def feed(self, chunk: str) -> str:
        emitted: list[str] = []
        for ch in chunk:
            if self._state is _State.DONE:
                break
            self._step(ch, emitted)
        return "".join(emitted)

    def _step(self, ch: str, emitted: list[str]) -> None:
        state = self._state
        if state is _State.SEEKING_KEY:
            if ch == "{":
                self._depth += 1
            elif ch == "}":
                self._depth -= 1
            elif ch == '"':
                self._string = []
                self._state = _State.IN_KEY_STRING
        elif state is _State.IN_KEY_STRING:
            if ch == "\\":
                self._state = _State.KEY_ESCAPE
            elif ch == '"':
                is_key = self._depth == 1 and "".join(self._string) == ANSWER_KEY
                self._state = _State.AFTER_KEY if is_key else _State.SEEKING_KEY
            else:
                self._string.append(ch)
        elif state is _State.KEY_ESCAPE:
            self._string.append(ch)
            self._state = _State.IN_KEY_STRING
        elif state is _State.AFTER_KEY:
            if ch == ":":
                self._state = _State.BEFORE_VALUE
            elif not ch.isspace():
                self._state = _State.SEEKING_KEY
                self._step(ch, emitted)
        elif state is _State.BEFORE_VALUE:
            if ch == '"':
                self._state = _State.IN_VALUE
            elif not ch.isspace():
                self._state = _State.SEEKING_KEY
                self._step(ch, emitted)
        elif state is _State.IN_VALUE:
            if ch == "\\":
                self._state = _State.VALUE_ESCAPE
            elif ch == '"':
                self._state = _State.DONE
            else:
                emitted.append(ch)
        elif state is _State.VALUE_ESCAPE:
            if ch == "u":
                self._unicode = []
                self._state = _State.VALUE_UNICODE
            else:
                emitted.append(_SIMPLE_ESCAPES.get(ch, ch))
                self._state = _State.IN_VALUE
        elif state is _State.VALUE_UNICODE:
            self._unicode.append(ch)
            if len(self._unicode) == 4:
                digits = "".join(self._unicode)
                try:
                    emitted.append(chr(int(digits, 16)))
                except ValueError:
                    emitted.append("\\u" + digits)
                self._state = _State.IN_VALUE


class SpinnerLike(Protocol):
    def stop(self) -> None: ...


class AnswerStreamer:
    """Prints the answer text of a streaming decision as soon as it appears."""

    def __init__(self, writer: OutputWriter, spinner: SpinnerLike | None = None, *, json_output: bool = False) -> None:
        self.writer = writer
        self.spinner = spinner
        self.json_output = json_output
        self._extractor = AnswerFieldExtractor()
        self._lock = threading.Lock()
        self._printed = False
        self._started_line = False

    def on_token(self, token: str) -> None:
        with self._lock:
            if self.json_output:
                return
            text = self._extractor.feed(token)
            if not self._extractor.started:
                return
            if not self._printed:
                self._printed = True
                if self.spinner is not None:
                    self.spinner.stop()
            if text:
                if not self._started_line:
                    self.writer.stream_text("\n")
                    self._started_line = True
                self.writer.stream_text(text)

    def did_stream(self) -> bool:
        with self._lock:
            return self._printed

    def finish(self) -> None:
        with self._lock:
            if self._printed and self._started_line:
                self.writer.stream_text("\n")
