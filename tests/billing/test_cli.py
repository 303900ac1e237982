"""Tests for the billing command-line tools."""

import json

import pytest

from agents.billing.deduplication import DeduplicationEngine
from agents.billing.dispatch import BillingDispatcher
from backend.core.config import settings
from tests.billing.fakes import VALID_IBAN
from tools.billing import bic_backfill as backfill_cli
from tools.billing import bic_blacklist as blacklist_cli
from tools.billing import dispatch as dispatch_cli


@pytest.fixture(autouse=True)
def _offline(monkeypatch, engine):
    """Point the CLIs at the test database and keep logging untouched."""
    for module in (dispatch_cli, blacklist_cli, backfill_cli):
        monkeypatch.setattr(module, "init_observability", lambda **kwargs: None)
    monkeypatch.setattr(settings, "database_url", engine.url.render_as_string(hide_password=False))
    monkeypatch.setattr(settings, "IBAN_API_KEY", "")


class TestDispatchCli:
    def test_dry_run_prints_report(self, monkeypatch, capsys, repo, engine, locks, job_queue, make_debtor):
        make_debtor()
        dispatcher = BillingDispatcher(repo, DeduplicationEngine(engine), locks, job_queue)
        monkeypatch.setattr(dispatch_cli, "build_dispatcher", lambda: dispatcher)

        code = dispatch_cli.main(["--model", "flywheel", "--phase", "validation", "--dry-run"])

        assert code == 0
        report = json.loads(capsys.readouterr().out)
        assert report["total_dispatched"] == 1
        assert report["phases"][0]["batch_name"] == "Recurring Validation (flywheel)"
        assert job_queue.batches == []

    def test_build_failure_exits_nonzero(self, monkeypatch, capsys):
        def broken():
            raise RuntimeError("redis unreachable")

        monkeypatch.setattr(dispatch_cli, "build_dispatcher", broken)

        assert dispatch_cli.main([]) == 1
        assert "redis unreachable" in capsys.readouterr().err

    def test_rejects_unknown_phase(self):
        with pytest.raises(SystemExit):
            dispatch_cli.main(["--phase", "reporting"])


class TestBicBlacklistCli:
    def test_add_then_duplicate(self, capsys):
        assert blacklist_cli.main(["add", "cobadeff", "--prefix", "--reason", "fraud ring", "--by", "ops"]) == 0
        added = json.loads(capsys.readouterr().out)
        assert added["bic"] == "COBADEFF"
        assert added["is_prefix"] is True

        assert blacklist_cli.main(["add", "COBADEFF", "--prefix"]) == 2
        assert "already blacklisted" in capsys.readouterr().err

    def test_list(self, capsys):
        blacklist_cli.main(["add", "DEUTDEFF", "--source", "import"])
        capsys.readouterr()

        assert blacklist_cli.main(["list", "--source", "import"]) == 0
        entries = json.loads(capsys.readouterr().out)
        assert [e["bic"] for e in entries] == ["DEUTDEFF"]

    def test_auto_dry_run(self, capsys):
        assert blacklist_cli.main(["auto", "--days", "14", "--dry-run"]) == 0
        report = json.loads(capsys.readouterr().out)
        assert report["window_days"] == 14
        assert report["dry_run"] is True

    def test_invalid_bic_exits_nonzero(self, capsys):
        assert blacklist_cli.main(["add", "WAYTOOLONGBIC1"]) == 1


class TestBackfillCli:
    def test_structural_lookup_has_no_bics(self, capsys, make_debtor):
        make_debtor(iban=VALID_IBAN)

        assert backfill_cli.main(["--target", "debtors", "--dry-run"]) == 0
        reports = json.loads(capsys.readouterr().out)
        assert reports == [
            {
                "target": "debtors",
                "dry_run": True,
                "missing": 1,
                "updated": 0,
                "cached": 0,
                "skipped": 1,
                "failed": 0,
            }
        ]
