from __future__ import annotations

import signal

import pytest

from dmagent import cleanup
from dmagent.cleanup import CleanupRegistry, install_interrupt_handler


@pytest.fixture(autouse=True)
def _no_sweep(monkeypatch: pytest.MonkeyPatch) -> list[int]:
    sweeps: list[int] = []

    def fake_sweep() -> int:
        sweeps.append(1)
        return 0

    monkeypatch.setattr(cleanup, "sweep_stale_scripts", fake_sweep)
    return sweeps


def test_registry_runs_callbacks_once_in_order(_no_sweep: list[int]) -> None:
    calls: list[str] = []
    registry = CleanupRegistry()
    registry.register(lambda: calls.append("first"))
    registry.register(lambda: calls.append("second"))

    registry.run()
    registry.run()

    assert calls == ["first", "second"]
    assert _no_sweep == [1]


def test_failing_callback_does_not_stop_others() -> None:
    calls: list[str] = []
    registry = CleanupRegistry()

    def boom() -> None:
        raise RuntimeError("boom")

    registry.register(boom)
    registry.register(lambda: calls.append("after"))

    registry.run()

    assert calls == ["after"]


def test_interrupt_handler_cleans_up_and_exits(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    handlers: dict[int, object] = {}
    exit_hooks: list[object] = []
    monkeypatch.setattr(cleanup.signal, "signal", lambda signum, handler: handlers.__setitem__(signum, handler))
    monkeypatch.setattr(cleanup.atexit, "register", exit_hooks.append)
    calls: list[str] = []
    registry = CleanupRegistry()
    registry.register(lambda: calls.append("cleaned"))

    install_interrupt_handler(registry)

    assert exit_hooks == [registry.run]
    with pytest.raises(SystemExit) as exc_info:
        handlers[signal.SIGINT](signal.SIGINT, None)
    assert exc_info.value.code == 130
    assert calls == ["cleaned"]
    assert "Interrupted. Cleaning up..." in capsys.readouterr().err
