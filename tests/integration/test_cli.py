"""CLI smoke tests against a throwaway SQLite database."""

from __future__ import annotations

import logging

import pytest
from typer.testing import CliRunner

from pricetrail.cli import app
from pricetrail.config import reset_config

runner = CliRunner()


@pytest.fixture
def cli_db(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("LOG_FORMAT", "console")
    reset_config()

    # The CLI callback reconfigures the root logger
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level

    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0, result.output
    yield tmp_path

    root.handlers[:] = handlers
    root.setLevel(level)


class TestCli:
    def test_init(self, cli_db):
        assert (cli_db / "cli.db").exists()

    def test_runs_empty(self, cli_db):
        result = runner.invoke(app, ["runs"])

        assert result.exit_code == 0
        assert "No runs found" in result.output

    def test_rates_shows_fallback_table(self, cli_db):
        result = runner.invoke(app, ["rates"])

        assert result.exit_code == 0
        assert "USD" in result.output
        assert "fallback" in result.output

    def test_link_unknown_product(self, cli_db):
        result = runner.invoke(app, ["link", "42", "7"])

        assert result.exit_code == 1
        assert "Product 42 not found" in result.output

    def test_reconcile_dry_run(self, cli_db):
        result = runner.invoke(app, ["reconcile", "6", "--dry-run"])

        assert result.exit_code == 0
        assert "DRY RUN" in result.output
        assert "Duplicate groups" in result.output

    def test_scrape_from_file_feed(self, cli_db):
        feed = cli_db / "voli.csv"
        feed.write_text(
            "url,name,price\n"
            "https://voli.me/proizvod/1,Milk 1L,1.19\n"
            "https://voli.me/proizvod/2,Rice 1kg,2.10\n",
            encoding="utf-8",
        )
        retailers = cli_db / "retailers.yaml"
        retailers.write_text(
            "retailers:\n"
            "  - id: 6\n"
            "    name: Voli\n"
            "    type: file\n"
            f"    config: {{file_path: '{feed}'}}\n",
            encoding="utf-8",
        )

        result = runner.invoke(app, ["scrape", "--config", str(retailers), "--concurrency", "1"])

        assert result.exit_code == 0, result.output
        assert "1/1 retailers successful" in result.output

        runs = runner.invoke(app, ["runs", "--retailer", "6"])
        assert "SUCCESS" in runs.output
