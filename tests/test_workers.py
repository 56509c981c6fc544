import pytest
from click.testing import CliRunner

from courier.cli import main
from courier.workers.base import PollingWorker


class CountingWorker(PollingWorker):
    name = "counting"

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.tick_calls = 0

    async def tick(self) -> None:
        self.tick_calls += 1
        if self.tick_calls == 3:
            self.shutdown_requested = True


@pytest.mark.asyncio
async def test_run_once_reconciles_every_n_ticks(session_factory, monkeypatch) -> None:
    reconciled = []

    async def fake_reconcile(factory):
        reconciled.append(factory)

    monkeypatch.setattr("courier.workers.base.reconcile", fake_reconcile)
    worker = CountingWorker(interval_seconds=0, session_factory=session_factory, reconcile_every=2)

    for _ in range(3):
        await worker.run_once()

    assert worker.tick_calls == 3
    assert reconciled == [session_factory, session_factory]


@pytest.mark.asyncio
async def test_run_forever_stops_on_shutdown_request(session_factory, monkeypatch) -> None:
    monkeypatch.setattr(PollingWorker, "_install_signal_handlers", lambda self: None)
    worker = CountingWorker(interval_seconds=0, session_factory=session_factory, reconcile_every=0)

    await worker.run_forever()

    assert worker.tick_calls == 3
    assert worker.ticks == 3


def test_cli_db_info() -> None:
    result = CliRunner().invoke(main, ["db-info"])

    assert result.exit_code == 0
    assert "Database Configuration" in result.output


def test_cli_lists_commands() -> None:
    result = CliRunner().invoke(main, ["--help"])

    assert result.exit_code == 0
    for command in ("orchestrate", "dispatch", "reconcile", "status", "dead-letters"):
        assert command in result.output
