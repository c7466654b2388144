from typer.testing import CliRunner

from burstclaim.cli_app import app

runner = CliRunner()


def test_root_help_lists_namespaces() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for name in ("records", "sync", "events", "alerts", "config", "serve", "worker", "init-db"):
        assert name in result.stdout


def test_events_help_shows_reply_controls() -> None:
    result = runner.invoke(app, ["events", "--help"])
    assert result.exit_code == 0
    assert "ingest" in result.stdout
    assert "flush" in result.stdout
    assert "gate" in result.stdout


def test_alerts_help_shows_claim_controls() -> None:
    result = runner.invoke(app, ["alerts", "--help"])
    assert result.exit_code == 0
    assert "dispatch" in result.stdout
    assert "stuck" in result.stdout
    assert "release" in result.stdout


def test_version_prints_package_version() -> None:
    from burstclaim import __version__

    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout
