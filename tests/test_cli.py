"""Tests for the Meterwise command line."""

import json

import pytest

import cli


@pytest.fixture
def run(service, monkeypatch, capsys):
    monkeypatch.setattr(cli, "get_billing_service", lambda: service)

    def _run(*argv):
        cli.main(list(argv))
        return capsys.readouterr().out

    return _run


class TestCli:
    def test_init_and_status(self, run):
        out = run("init", "acme", "--cap", "500")
        assert "Company acme: trial" in out

        out = run("status", "acme")
        assert "Status:     trial" in out
        assert "/ 500.0000" in out
        assert "Card:       none" in out

    def test_status_json(self, run, company):
        data = json.loads(run("status", company, "--json"))
        assert data["company_id"] == company
        assert data["blocked"] is False

    def test_record_and_replay(self, run, company):
        out = run("record", company, "video_interview", "10", "--key", "k1")
        assert "cost 3.6000" in out
        out = run("record", company, "video_interview", "10", "--key", "k1")
        assert "(replayed)" in out

    def test_settings_unlimited(self, run, company):
        run("settings", company, "--cap", "100")
        out = run("settings", company, "--cap", "none", "--auto", "off")
        assert "cap=unlimited" in out
        assert "auto=off" in out

    def test_wallet_history(self, run, company):
        run("record", company, "cv_parsing", "100")
        out = run("wallet", company)
        assert "balance -0.3000" in out
        assert "cv_parsing usage" in out

    def test_invoice_csv(self, run, company):
        run("record", company, "video_interview", "10")
        out = run("invoice", company, "--start", "2026-03-01", "--end", "2026-04-01", "--csv")
        assert out.startswith("Invoice,INV-000001")
        assert "video_interview" in out

    def test_usage_by_job(self, run, company):
        run("record", company, "cv_parsing", "100", "--job-id", "job-7")
        out = run("usage", company, "--by", "job", "--start", "2026-03-01", "--end", "2026-04-01")
        assert "job-7" in out

    def test_pricing_and_margin(self, run):
        run("set-price", "video_interview", "0.40")
        run("set-margin", "25")
        out = run("pricing")
        assert "video_interview" in out and "0.40 per minute" in out
        assert "margin 25% (global)" in out

    def test_set_margin_clear_needs_company(self, run):
        with pytest.raises(SystemExit):
            run("set-margin", "--clear")

    def test_reconcile_with_nothing_stale(self, run, company):
        assert "Reconciled 0" in run("reconcile")

    def test_billing_error_exits_2(self, run, capsys):
        with pytest.raises(SystemExit) as exc:
            run("status", "ghost")
        assert exc.value.code == 2
        assert "company_not_found" in capsys.readouterr().err

    def test_no_command_prints_help(self, run):
        with pytest.raises(SystemExit) as exc:
            run()
        assert exc.value.code == 1
