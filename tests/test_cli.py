import pytest
from typer.testing import CliRunner

from socks_relay import __version__
from socks_relay.cmd import cli
from socks_relay.core.network import NetworkInterface
from socks_relay.core.utils.log_config import setup_logging

runner = CliRunner()


@pytest.fixture(autouse=True)
def _restore_logging():
    yield
    # the commands point loguru at the runner's captured stderr
    setup_logging("WARNING")


def test_version():
    result = runner.invoke(cli.app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_resolve_literal():
    result = runner.invoke(cli.app, ["resolve", "192.0.2.1"])
    assert result.exit_code == 0
    assert "192.0.2.1" in result.output


def test_resolve_rejects_bad_nameserver():
    result = runner.invoke(cli.app, ["resolve", "example.com", "--nameserver", "not-an-ip"])
    assert result.exit_code == 2


def test_proxy_rejects_bad_port():
    result = runner.invoke(cli.app, ["proxy", "--port", "70000"])
    assert result.exit_code == 2
    assert "Invalid configuration" in result.output


def test_proxy_rejects_bad_user():
    result = runner.invoke(cli.app, ["proxy", "--user", "nopassword"])
    assert result.exit_code == 2


def test_proxy_reads_environment(monkeypatch):
    seen = {}

    def fake_run(config, *, show_ui=False, copy=False):
        seen["config"] = config

    monkeypatch.setattr(cli, "run_socks_proxy", fake_run)
    result = runner.invoke(
        cli.app,
        ["proxy"],
        env={"SOCKS_RELAY_PORT": "1081", "SOCKS_RELAY_HOST": "127.0.0.1", "SOCKS_RELAY_CONNECT_TIMEOUT": "1.5"},
    )
    assert result.exit_code == 0
    assert seen["config"].listen_address == ("127.0.0.1", 1081)
    assert seen["config"].connect_timeout == 1.5


def test_interfaces(monkeypatch):
    monkeypatch.setattr(
        cli,
        "scan_interfaces",
        lambda include_virtual=False: [NetworkInterface("wlan0", "192.0.2.4", None, True, True)],
    )
    result = runner.invoke(cli.app, ["interfaces"])
    assert result.exit_code == 0
    assert "wlan0" in result.output
    assert "192.0.2.4" in result.output
