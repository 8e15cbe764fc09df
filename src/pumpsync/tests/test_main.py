"""Tests for application wiring across restarts."""

from __future__ import annotations

from pathlib import Path

import pytest

from src.config import Settings
from src.main import build_coordinator
from src.pumpsync.sinks import RecordingSink, TidepoolSink


def make_settings(tmp_path: Path, **overrides) -> Settings:
    return Settings(
        _env_file=None,
        monitor_dir=tmp_path,
        service_state_path=tmp_path / "service_state.json",
        **overrides,
    )


@pytest.fixture(autouse=True)
def no_tidepool_env(monkeypatch) -> None:
    for name in ("TIDEPOOL_API_URL", "TIDEPOOL_DATASET_ID", "TIDEPOOL_SESSION_TOKEN"):
        monkeypatch.delenv(name, raising=False)


class TestBuildCoordinator:
    def test_session_token_survives_restart(self, tmp_path: Path) -> None:
        settings = make_settings(
            tmp_path,
            sink_kind="tidepool",
            tidepool_session_token="secret-token",
            tidepool_dataset_id="ds1",
        )

        first = build_coordinator(settings)
        second = build_coordinator(settings)

        assert "secret-token" not in settings.service_state_path.read_text(encoding="utf-8")
        for coordinator in (first, second):
            assert isinstance(coordinator.sink, TidepoolSink)
            assert coordinator.sink._build_headers()["X-Tidepool-Session-Token"] == "secret-token"
            assert coordinator.sink.raw_state["dataset_id"] == "ds1"

    def test_changed_dataset_setting_wins_after_restart(self, tmp_path: Path) -> None:
        build_coordinator(make_settings(tmp_path, sink_kind="tidepool", tidepool_dataset_id="ds1"))

        restarted = build_coordinator(
            make_settings(tmp_path, sink_kind="tidepool", tidepool_dataset_id="ds2")
        )

        assert restarted.sink.raw_state["dataset_id"] == "ds2"

    def test_persisted_service_is_restored(self, tmp_path: Path) -> None:
        build_coordinator(make_settings(tmp_path, sink_kind="memory"))

        restarted = build_coordinator(make_settings(tmp_path, sink_kind="tidepool"))

        assert isinstance(restarted.sink, RecordingSink)
        assert restarted.service_state is not None
        assert restarted.service_state.service_id == "memory"
