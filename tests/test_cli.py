"""
Tests for the CLI
"""

import pytest

from cli import build_parser, cmd_serve, cmd_simulate


class TestServeCommand:
    """The ledger lives in one process."""

    def test_workers_option_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["serve", "--workers", "4"])

    def test_serve_runs_single_worker(self, monkeypatch):
        import uvicorn

        calls = []
        monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

        cmd_serve(build_parser().parse_args(["serve", "--port", "9000"]))

        app, kwargs = calls[0]
        assert app == "api.server:app"
        assert kwargs["workers"] == 1
        assert kwargs["port"] == 9000


class TestSimulateCommand:

    def test_simulate_reports_withdrawals(self, capsys):
        cmd_simulate(build_parser().parse_args(["simulate", "--fee", "100", "--deposit", "600"]))

        out = capsys.readouterr().out
        assert "Provider 1 withdrew 100" in out
        assert "Custody balance: 300" in out
