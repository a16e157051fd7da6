"""Tests for the OpenVPN server config and the launch step."""

import signal
import stat

import pytest

from gw_backend.errors import LaunchError
from gw_backend.models import ServerParams
from gw_backend.openvpn import launch, server_params_from_settings, write_server_config
from gw_backend.settings import load_settings

from conftest import FakeProc


@pytest.fixture
def params(tmp_path):
    d = tmp_path / "server"
    return ServerParams(
        port=1194,
        proto="udp",
        dev="tun0",
        network="10.8.0.0",
        netmask="255.255.255.0",
        ca_path=d / "ca.crt",
        cert_path=d / "server.crt",
        key_path=d / "server.key",
        dh_path=d / "dh.pem",
        tls_auth_path=d / "ta.key",
        dns=["1.1.1.1", "1.0.0.1"],
    )


class TestServerConfig:
    def test_directives(self, params, tmp_path):
        path = write_server_config(params, tmp_path / "server" / "server.conf")
        conf = path.read_text()
        lines = conf.splitlines()

        for expected in (
            "port 1194",
            "proto udp",
            "dev tun0",
            "server 10.8.0.0 255.255.255.0",
            "topology subnet",
            f"tls-auth {params.tls_auth_path} 0",
            "cipher AES-256-GCM",
            "auth SHA256",
            "tls-version-min 1.2",
            'push "redirect-gateway def1 bypass-dhcp"',
            'push "dhcp-option DNS 1.1.1.1"',
            'push "dhcp-option DNS 1.0.0.1"',
            "keepalive 10 120",
            "persist-key",
            "persist-tun",
            "user nobody",
            "group nogroup",
        ):
            assert expected in lines
        assert stat.S_IMODE(path.stat().st_mode) == 0o644

    def test_always_overwritten(self, params, tmp_path):
        path = tmp_path / "server.conf"
        path.write_text("stale\n")
        write_server_config(params, path)
        assert "stale" not in path.read_text()

    def test_params_from_settings(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        settings = load_settings(VPN_PUBLIC_HOST="h", OVPN_NET="10.20.0.0/16", OVPN_PROTO="tcp", OVPN_DNS="9.9.9.9")
        deployed = {k: tmp_path / k for k in ("ca", "cert", "key", "dh", "tls_auth")}
        p = server_params_from_settings(settings, deployed)
        assert (p.network, p.netmask) == ("10.20.0.0", "255.255.0.0")
        assert p.proto == "tcp"
        assert p.dns == ["9.9.9.9"]
        assert p.tls_auth_path == tmp_path / "tls_auth"

    def test_unwritable_location(self, params, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        with pytest.raises(LaunchError, match="Cannot write OpenVPN server config") as exc:
            write_server_config(params, blocker / "server.conf")
        assert exc.value.exit_code == 7


class TestLaunch:
    def test_exec_by_default(self, runner, params, tmp_path):
        conf = write_server_config(params, tmp_path / "server.conf")
        assert launch(conf, runner) is None
        assert runner.exec_calls == [["openvpn", "--config", str(conf)]]
        assert runner.spawn_calls == []

    def test_missing_config(self, runner, tmp_path):
        with pytest.raises(LaunchError) as exc:
            launch(tmp_path / "nope.conf", runner)
        assert exc.value.exit_code == 7
        assert runner.exec_calls == []

    def test_exec_failure(self, runner, params, tmp_path, monkeypatch):
        conf = write_server_config(params, tmp_path / "server.conf")

        def no_binary(cmd):
            raise FileNotFoundError(2, "No such file or directory", "openvpn")

        monkeypatch.setattr(runner, "replace_process", no_binary)
        with pytest.raises(LaunchError) as exc:
            launch(conf, runner)
        assert exc.value.exit_code == 127

    def test_spawn_returns_exit_status(self, runner, params, tmp_path):
        conf = write_server_config(params, tmp_path / "server.conf")
        runner.spawn_returncode = 1
        assert launch(conf, runner, replace=False) == 1
        assert runner.spawn_calls == [["openvpn", "--config", str(conf)]]

    def test_killed_by_signal(self, runner, params, tmp_path):
        conf = write_server_config(params, tmp_path / "server.conf")
        runner.spawn_returncode = -15
        assert launch(conf, runner, replace=False) == 143

    def test_signals_relayed_then_restored(self, runner, params, tmp_path, monkeypatch):
        conf = write_server_config(params, tmp_path / "server.conf")
        before = signal.getsignal(signal.SIGTERM)
        proc = FakeProc(0)

        def wait():
            signal.raise_signal(signal.SIGTERM)
            return 0

        proc.wait = wait
        monkeypatch.setattr(runner, "spawn", lambda cmd: proc)
        assert launch(conf, runner, replace=False) == 0
        assert proc.signals == [signal.SIGTERM]
        assert signal.getsignal(signal.SIGTERM) == before
