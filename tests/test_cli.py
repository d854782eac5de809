"""Tests for the jobledger CLI — proves commands dispatch and persist state."""

import json
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path

from jobledger.cli import _make_service, build_parser, cmd_run_auto_confirm, main
from jobledger.persistence.event_log import EventKind


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
NOW = "2026-03-02T09:00:00+00:00"


def _awaiting_job(data_dir: Path) -> str:
    service, snapshots = _make_service(CONFIG_DIR, data_dir)
    now = datetime.fromisoformat(NOW)
    service.register_contractor("contractor_1", now=now)
    service.approve_contractor("contractor_1", "admin_1", bypass_kyc=True, now=now)
    job_id = service.post_job(
        "customer_1", "Fit kitchen", lead_price=Decimal("12.00"), now=now
    ).data["job_id"]
    service.purchase_access_with_credits(job_id, "contractor_1", now=now)
    service.assign_contractor(job_id, "customer_1", "contractor_1", now=now)
    service.propose_final_price(job_id, "contractor_1", Decimal("500.00"), now=now)
    snapshots.save_store(service.store, now)
    return job_id


def _run(tmp_path: Path, *argv: str) -> int:
    return main(["--config", str(CONFIG_DIR), "--data-dir", str(tmp_path), "--now", NOW, *argv])


class TestCLIParsing:
    def test_status_command(self) -> None:
        args = build_parser().parse_args(["status"])
        assert args.command == "status"

    def test_auto_confirm_workers(self) -> None:
        args = build_parser().parse_args(["run-auto-confirm", "--workers", "4"])
        assert args.command == "run-auto-confirm"
        assert args.workers == 4

    def test_approve_contractor_command(self) -> None:
        args = build_parser().parse_args([
            "approve-contractor", "--id", "contractor_1", "--admin", "admin_1", "--bypass-kyc",
        ])
        assert args.id == "contractor_1"
        assert args.admin == "admin_1"
        assert args.bypass_kyc


class TestCLIExecution:
    def test_no_command_shows_help(self, capsys) -> None:
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out

    def test_status_runs(self, tmp_path, capsys) -> None:
        assert _run(tmp_path, "status") == 0
        status = json.loads(capsys.readouterr().out)
        assert status["contractors"] == 0
        assert (tmp_path / "state.json").exists()

    def test_register_and_approve_persist(self, tmp_path, capsys) -> None:
        assert _run(tmp_path, "register-contractor", "--id", "contractor_1") == 0
        registered = json.loads(capsys.readouterr().out)
        assert registered["credits_balance"] == 3

        assert _run(tmp_path, "approve-contractor", "--id", "contractor_1", "--admin", "admin_1") == 0
        approved = json.loads(capsys.readouterr().out)
        assert approved["status"] == "ACTIVE"
        assert approved["kyc_status"] == "PENDING"

        assert _run(tmp_path, "status") == 0
        assert json.loads(capsys.readouterr().out)["contractors"] == 1
        assert (tmp_path / "events.jsonl").read_text().strip()

    def test_rejected_operation_exits_nonzero(self, tmp_path, capsys) -> None:
        _run(tmp_path, "register-contractor", "--id", "contractor_1")
        capsys.readouterr()
        assert _run(tmp_path, "register-contractor", "--id", "contractor_1") == 1
        assert "already registered" in capsys.readouterr().err

    def test_tick_runs_every_pass_once(self, tmp_path, capsys) -> None:
        assert _run(tmp_path, "tick") == 0
        passes = json.loads(capsys.readouterr().out)["passes"]
        assert len(passes) == 5
        assert _run(tmp_path, "tick") == 0
        assert json.loads(capsys.readouterr().out)["passes"] == []

    def test_run_kyc_deadlines(self, tmp_path, capsys) -> None:
        assert _run(tmp_path, "run-kyc-deadlines") == 0
        report = json.loads(capsys.readouterr().out)
        assert report["name"] == "kyc_deadlines"

    def test_overlapping_runs_share_one_state(self, tmp_path, capsys) -> None:
        job_id = _awaiting_job(tmp_path)
        later = (datetime.fromisoformat(NOW) + timedelta(hours=49)).isoformat()
        args = build_parser().parse_args([
            "--config", str(CONFIG_DIR), "--data-dir", str(tmp_path), "--now", later,
            "run-auto-confirm",
        ])
        codes = []
        threads = [
            threading.Thread(target=lambda: codes.append(cmd_run_auto_confirm(args)))
            for _ in range(2)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert codes == [0, 0]
        assert (tmp_path / "state.lock").exists()
        service, _ = _make_service(CONFIG_DIR, tmp_path)
        assert service.jobs.get(job_id).status.value == "COMPLETED"
        assert len(service.store.find("commissions")) == 1
        created = service.store.event_log.events(EventKind.COMMISSION_CREATED)
        assert len(created) == 1
