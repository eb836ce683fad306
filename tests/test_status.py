from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from ipspgw.state import status as status_module
from ipspgw.state.context import RuntimeState


def test_status_writer_persists_snapshot(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    status_path = tmp_path / "status.json"
    monkeypatch.setattr(status_module, "STATUS_FILE", status_path)

    async def run() -> None:
        state = RuntimeState(bluetooth_adapter="hci0")
        state.discovery.candidates_enqueued = 3
        state.connection.last_outcome = "succeeded"
        state.interfaces.tracked = ["bt0"]
        state.record_supervisor_failure("udp-relay", backoff=2.0, exc=RuntimeError("boom"))

        task = asyncio.create_task(status_module.status_writer(state, 1))
        for _ in range(100):
            if status_path.exists():
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())

    payload = json.loads(status_path.read_text())
    assert payload["bluetooth_adapter"] == "hci0"
    assert payload["discovery"]["candidates_enqueued"] == 3
    assert payload["connection"]["last_outcome"] == "succeeded"
    assert payload["interfaces"]["tracked"] == ["bt0"]
    assert payload["supervisors"]["udp-relay"]["restarts"] == 1
    assert "heartbeat_unix" in payload
    assert not list(tmp_path.glob(".ipspgw-*"))


def test_cleanup_status_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    status_path = tmp_path / "status.json"
    status_path.write_text("{}")
    monkeypatch.setattr(status_module, "STATUS_FILE", status_path)

    status_module.cleanup_status_file()
    assert not status_path.exists()
    # Missing file is not an error.
    status_module.cleanup_status_file()

