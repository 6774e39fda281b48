from typer.testing import CliRunner

from ottie import __version__, database
from ottie.cli import app

runner = CliRunner()


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_submit_rejects_bad_url():
    result = runner.invoke(app, ["submit", "not a url"])
    assert result.exit_code == 1
    assert "Invalid URL format" in result.output


def test_submit_queues(monkeypatch):
    monkeypatch.setenv("SCRAPERAPI_KEY", "k")
    result = runner.invoke(app, ["submit", "https://example.com/listing/1"])
    assert result.exit_code == 0
    assert "position 1" in result.output
    assert database.get_stats()["by_status"]["queued"] == 1


def test_rerun_unknown_stage():
    result = runner.invoke(app, ["rerun", "scrape", "abc"])
    assert result.exit_code == 1
    assert "Unknown stage" in result.output


def test_stats_on_empty_database():
    result = runner.invoke(app, ["stats"])
    assert result.exit_code == 0
    assert "Ottie Pipeline Status" in result.output
    assert "Total previews" in result.output
