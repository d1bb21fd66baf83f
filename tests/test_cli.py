"""Tests for the `stackhealth` command line."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from stackhealth.collaborators import CmdResult, Collaborators
from stackhealth.health import CycleReport, ProbeResult, Reporter, Status
from stackhealth.health.models import utcnow
from stackhealth.main import build_parser, main

from .conftest import FakeOrchestrator


@pytest.fixture(autouse=True)
def _isolated(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "stackhealth.yaml"
    path.write_text(
        "include_defaults: false\n"
        "probe_timeout: 1s\n"
        "probes:\n"
        "  - name: mosquitto-state\n"
        "    kind: process_state\n"
        "    target: mosquitto\n"
        "    critical: true\n"
        "  - name: zigbee2mqtt-logs\n"
        "    kind: log_scan\n"
        "    target: zigbee2mqtt\n"
    )
    return path


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc:
        main(argv)
    return exc.value.code


# ── healthcheck ──────────────────────────────────────────────────────────────


class TestHealthcheck:
    def test_healthy(
        self, config_file: Path, collab: Collaborators, capsys: pytest.CaptureFixture,
    ) -> None:
        with patch.object(Collaborators, "from_settings", return_value=collab):
            code = _run(["healthcheck", "--config", str(config_file)])
        out = capsys.readouterr().out
        assert code == 0
        assert "=== Container Status ===" in out
        assert "mosquitto-state: mosquitto is running" in out
        assert "Overall: OK (2 ok, 0 warn, 0 error)" in out

    def test_log_errors_warn(
        self, config_file: Path, collab: Collaborators, orchestrator: FakeOrchestrator,
        capsys: pytest.CaptureFixture,
    ) -> None:
        orchestrator.logs["zigbee2mqtt"] = ["error: adapter disconnected"]
        with patch.object(Collaborators, "from_settings", return_value=collab):
            code = _run(["healthcheck", "--config", str(config_file)])
        assert code == 1
        assert "1 recent error line(s)" in capsys.readouterr().out

    def test_critical_down(
        self, config_file: Path, collab: Collaborators, orchestrator: FakeOrchestrator,
    ) -> None:
        orchestrator.states["mosquitto"] = "exited"
        with patch.object(Collaborators, "from_settings", return_value=collab):
            assert _run(["healthcheck", "--config", str(config_file)]) == 2

    def test_structured(
        self, config_file: Path, collab: Collaborators, capsys: pytest.CaptureFixture,
    ) -> None:
        with patch.object(Collaborators, "from_settings", return_value=collab):
            code = _run(["healthcheck", "--config", str(config_file), "--format", "structured"])
        data = json.loads(capsys.readouterr().out)
        assert code == 0
        assert data["overall_status"] == "ok"
        assert [r["probe_name"] for r in data["results"]] == ["mosquitto-state", "zigbee2mqtt-logs"]

    def test_orchestrator_unavailable(
        self, config_file: Path, collab: Collaborators, orchestrator: FakeOrchestrator,
        capsys: pytest.CaptureFixture,
    ) -> None:
        orchestrator.available = False
        with patch.object(Collaborators, "from_settings", return_value=collab):
            code = _run(["healthcheck", "--config", str(config_file)])
        assert code == 3
        assert "orchestrator_unavailable" in capsys.readouterr().out

    def test_missing_config(self, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        code = _run(["healthcheck", "--config", str(tmp_path / "missing.yaml")])
        assert code == 2
        assert "Config file not found" in capsys.readouterr().out

    def test_invalid_config_structured(
        self, tmp_path: Path, capsys: pytest.CaptureFixture,
    ) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("colour: blue\n")
        code = _run(["healthcheck", "--config", str(path), "--format", "structured"])
        data = json.loads(capsys.readouterr().out)
        assert code == 2
        assert data["error_kind"] == "config_error"

    def test_invalid_interval(self, config_file: Path) -> None:
        assert _run(["healthcheck", "--config", str(config_file), "--interval", "soon"]) == 2

    def test_watch_returns_last_exit_code(
        self, config_file: Path, collab: Collaborators, capsys: pytest.CaptureFixture,
    ) -> None:
        now = utcnow()
        reports = [
            CycleReport((ProbeResult("a", Status.OK, "fine"),), Status.OK, now, now),
            CycleReport((ProbeResult("a", Status.WARN, "hmm"),), Status.WARN, now, now),
        ]
        with patch.object(Collaborators, "from_settings", return_value=collab), \
                patch.object(Reporter, "watch", return_value=iter(reports)) as mock_watch:
            code = _run(["healthcheck", "--config", str(config_file), "--watch", "--interval", "2s"])
        out = capsys.readouterr().out
        assert code == 1
        assert out.count("Last update:") == 2
        assert "Refreshing in 2 seconds..." in out
        mock_watch.assert_called_once()


# ── backup ───────────────────────────────────────────────────────────────────


@pytest.fixture
def stack(tmp_path: Path) -> Path:
    for rel in ("zigbee2mqtt/config/configuration.yaml", "zigbee2mqtt/data/database.db"):
        path = tmp_path / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("original\n")
    (tmp_path / "docker-compose.yml").write_text("services: {}\n")
    config = tmp_path / "stackhealth.yaml"
    config.write_text(f"project_dir: {tmp_path}\n")
    return tmp_path


class TestBackupCommands:
    def test_create_list_verify(self, stack: Path, capsys: pytest.CaptureFixture) -> None:
        cfg = str(stack / "stackhealth.yaml")
        assert _run(["backup", "create", "--config", cfg]) == 0
        assert "Backup completed" in capsys.readouterr().out

        archives = list((stack / "backups").glob("z2m_backup_*.tar.gz"))
        assert len(archives) == 1

        assert _run(["backup", "list", "--config", cfg]) == 0
        assert archives[0].name in capsys.readouterr().out

        assert _run(["backup", "verify", str(archives[0]), "--config", cfg]) == 0
        assert "Verified" in capsys.readouterr().out

    def test_list_empty(self, stack: Path, capsys: pytest.CaptureFixture) -> None:
        assert _run(["backup", "list", "--config", str(stack / "stackhealth.yaml")]) == 0
        assert "No backups found" in capsys.readouterr().out

    def test_verify_corrupted(self, stack: Path, capsys: pytest.CaptureFixture) -> None:
        bad = stack / "z2m_backup_bad.tar.gz"
        bad.write_bytes(b"garbage")
        assert _run(["backup", "verify", str(bad), "--config", str(stack / "stackhealth.yaml")]) == 1
        assert "corrupted" in capsys.readouterr().out

    def test_cleanup(self, stack: Path, capsys: pytest.CaptureFixture) -> None:
        assert _run(["backup", "cleanup", "3", "--config", str(stack / "stackhealth.yaml")]) == 0
        assert "Cleanup completed (0 deleted)" in capsys.readouterr().out

    @patch("stackhealth.backup.archive.ComposeOrchestrator")
    def test_restore_yes(self, mock_orch_cls, stack: Path, capsys: pytest.CaptureFixture) -> None:
        mock_orch = MagicMock()
        mock_orch.down.return_value = CmdResult(0, "", "", 1)
        mock_orch.up.return_value = CmdResult(0, "", "", 1)
        mock_orch_cls.return_value = mock_orch
        cfg = str(stack / "stackhealth.yaml")

        assert _run(["backup", "create", "--config", cfg]) == 0
        archive = next((stack / "backups").glob("z2m_backup_*.tar.gz"))
        (stack / "zigbee2mqtt/config/configuration.yaml").write_text("changed\n")

        assert _run(["backup", "restore", str(archive), "--yes", "--config", cfg]) == 0
        assert (stack / "zigbee2mqtt/config/configuration.yaml").read_text() == "original\n"
        assert "Restore completed" in capsys.readouterr().out
        mock_orch.up.assert_called_once()

    @patch("stackhealth.main.Confirm.ask", return_value=False)
    @patch("stackhealth.backup.archive.ComposeOrchestrator")
    def test_restore_declined(
        self, mock_orch_cls, mock_ask, stack: Path, capsys: pytest.CaptureFixture,
    ) -> None:
        cfg = str(stack / "stackhealth.yaml")
        assert _run(["backup", "create", "--config", cfg]) == 0
        archive = next((stack / "backups").glob("z2m_backup_*.tar.gz"))

        assert _run(["backup", "restore", str(archive), "--config", cfg]) == 1
        assert "Restore cancelled" in capsys.readouterr().out
        mock_ask.assert_called_once()
        mock_orch_cls.return_value.down.assert_not_called()


# ── Parser ───────────────────────────────────────────────────────────────────


class TestParser:
    def test_no_command(self, capsys: pytest.CaptureFixture) -> None:
        assert _run([]) == 1
        assert "healthcheck" in capsys.readouterr().out

    def test_version(self) -> None:
        assert _run(["--version"]) == 0

    def test_defaults(self) -> None:
        args = build_parser().parse_args(["healthcheck"])
        assert args.format == "human"
        assert args.watch is False
        assert args.interval is None
        assert args.config is None

    def test_unknown_format_rejected(self) -> None:
        assert _run(["healthcheck", "--format", "xml"]) == 2

    def test_backup_options_after_action(self) -> None:
        args = build_parser().parse_args(["backup", "list", "--config", "x.yaml", "-v"])
        assert args.action == "list"
        assert args.config == "x.yaml"
        assert args.verbose is True

    def test_restore_options(self) -> None:
        args = build_parser().parse_args(["backup", "restore", "a.tar.gz", "--yes", "--config", "x.yaml"])
        assert args.file == "a.tar.gz"
        assert args.yes is True
        assert args.config == "x.yaml"
