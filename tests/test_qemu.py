import io
import json

import pytest

from unikops import qemu as qemu_module
from unikops.config import RunConfig
from unikops.errors import HypervisorNotFoundError, OpsError
from unikops.qemu import QMPClient, Qemu, find_hypervisor, generate_mac


def run_config(**kwargs):
    defaults = {"mac": "52:54:00:12:34:56", "mgmt": 41000, "accel": False}
    defaults.update(kwargs)
    return RunConfig(**defaults)


class TestCommand:
    def test_user_networking_forwards_ports(self, tmp_path):
        cmd = Qemu("qemu-system-x86_64").command(
            run_config(ports=["8080", "9000-9001"], udp_ports=["53"]), tmp_path / "hello.img"
        )

        netdev = cmd[cmd.index("-netdev") + 1]
        assert netdev == (
            "user,id=n0,hostfwd=tcp::8080-:8080,hostfwd=tcp::9000-:9000,"
            "hostfwd=tcp::9001-:9001,hostfwd=udp::53-:53"
        )
        assert "virtio-net-pci,netdev=n0,mac=52:54:00:12:34:56" in cmd
        assert cmd[-2:] == ["-qmp", "tcp:localhost:41000,server,nowait"]
        assert f"file={tmp_path / 'hello.img'},format=raw,if=none,id=hd0" in cmd
        assert "-enable-kvm" not in cmd

    def test_bridged_uses_tap(self, tmp_path):
        cmd = Qemu("qemu-system-x86_64").command(
            run_config(bridged=True, tap_name="tap2", ports=["8080"]), tmp_path / "hello.img"
        )

        netdev = cmd[cmd.index("-netdev") + 1]
        assert netdev == "tap,id=n0,ifname=tap2,script=no,downscript=no"

    def test_volumes(self, tmp_path):
        volume = tmp_path / "data:1.raw"
        cmd = Qemu("qemu-system-x86_64").command(run_config(), tmp_path / "hello.img", [volume])

        assert f"file={volume},format=raw,if=none,id=vol0" in cmd
        assert "scsi-hd,bus=scsi0.0,drive=vol0" in cmd

    def test_arm64(self, tmp_path):
        cmd = Qemu("qemu-system-aarch64", arch="aarch64").command(run_config(), tmp_path / "x.img")
        assert cmd[1:3] == ["-machine", "virt"]


def test_find_hypervisor_missing(monkeypatch):
    monkeypatch.setattr(qemu_module.shutil, "which", lambda name: None)
    with pytest.raises(HypervisorNotFoundError, match="qemu-system-x86_64"):
        find_hypervisor()


def test_find_hypervisor_arch(monkeypatch):
    monkeypatch.setattr(qemu_module.shutil, "which", lambda name: f"/usr/bin/{name}")
    assert find_hypervisor("arm64").binary == "/usr/bin/qemu-system-aarch64"


def test_unsupported_arch():
    with pytest.raises(OpsError):
        find_hypervisor("sparc")


def test_generate_mac():
    mac = generate_mac()
    assert mac.startswith("52:54:00:")
    assert len(mac.split(":")) == 6


class FakeSocket:
    def __init__(self, replies):
        self.stream = FakeStream(replies)

    def makefile(self, mode):
        return self.stream

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeStream(io.BytesIO):
    def __init__(self, replies):
        super().__init__()
        self.replies = [json.dumps(r).encode() + b"\n" for r in replies]
        self.sent = []

    def readline(self, *args):
        return self.replies.pop(0) if self.replies else b""

    def write(self, data):
        self.sent.append(json.loads(data))
        return len(data)


class TestQMPClient:
    def connect(self, monkeypatch, replies):
        sock = FakeSocket(replies)
        monkeypatch.setattr(qemu_module.socket, "create_connection", lambda addr, timeout: sock)
        return sock.stream

    def test_execute(self, monkeypatch):
        stream = self.connect(monkeypatch, [
            {"QMP": {"version": {}}},
            {"return": {}},
            {"event": "RESUME"},
            {"return": {"status": "running"}},
        ])

        result = QMPClient(41000).execute("query-status")

        assert result == {"status": "running"}
        assert stream.sent == [{"execute": "qmp_capabilities"}, {"execute": "query-status"}]

    def test_error_reply(self, monkeypatch):
        self.connect(monkeypatch, [
            {"QMP": {}},
            {"return": {}},
            {"error": {"class": "GenericError", "desc": "Duplicate ID"}},
        ])

        with pytest.raises(OpsError, match="Duplicate ID"):
            QMPClient(41000).execute("device_add", {"id": "data"})

    def test_unreachable(self, monkeypatch):
        def refuse(addr, timeout):
            raise ConnectionRefusedError()

        monkeypatch.setattr(qemu_module.socket, "create_connection", refuse)
        with pytest.raises(OpsError, match="port 41000"):
            QMPClient(41000).execute("stop")
