"""QEMU process wrapper and QMP client."""

import json
import os
import random
import shutil
import socket
import subprocess
from pathlib import Path

from .config import RunConfig
from .errors import HypervisorNotFoundError, OpsError
from .firewall import parse_port_spec
from .utils import debug

MGMT_PORT_MIN = 40000
MGMT_PORT_MAX = 49999

ARCH_ALIASES = {
    "": "x86_64",
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
}


def qemu_arch(arch: str) -> str:
    try:
        return ARCH_ALIASES[arch]
    except KeyError:
        raise OpsError(f"unsupported architecture '{arch}'") from None


def find_hypervisor(arch: str = "") -> "Qemu":
    """Locate qemu-system-<arch> on PATH.

    :raises HypervisorNotFoundError: If no binary is installed
    """
    name = f"qemu-system-{qemu_arch(arch)}"
    binary = shutil.which(name)
    if not binary:
        raise HypervisorNotFoundError(
            f"{name} not found on PATH; install qemu (e.g. apt install qemu-system)"
        )
    return Qemu(binary, arch=qemu_arch(arch))


def generate_mac() -> str:
    """Random locally administered unicast MAC."""
    octets = [0x52, 0x54, 0x00] + [random.randint(0x00, 0xFF) for _ in range(3)]
    return ":".join(f"{o:02x}" for o in octets)


def random_mgmt_port() -> int:
    return random.randint(MGMT_PORT_MIN, MGMT_PORT_MAX)


def _hostfwd(protocol: str, spec: str) -> list[str]:
    from_port, to_port = parse_port_spec(spec)
    return [
        f"hostfwd={protocol}::{port}-:{port}" for port in range(from_port, to_port + 1)
    ]


class Qemu:
    """Start a unikernel image as a background qemu process."""

    def __init__(self, binary: str, arch: str = "x86_64"):
        self.binary = binary
        self.arch = arch
        self.process: subprocess.Popen | None = None

    @property
    def pid(self) -> int:
        if self.process is None:
            raise OpsError("hypervisor not started")
        return self.process.pid

    def command(self, run: RunConfig, image_path: Path, volumes: list[Path] = ()) -> list[str]:
        """Build the qemu argv for one instance."""
        args = [self.binary]
        if self.arch == "aarch64":
            args += ["-machine", "virt", "-cpu", "max"]
        else:
            args += ["-machine", "q35"]
        args += [
            "-m", run.memory,
            "-smp", str(run.cpus),
            "-nodefaults",
            "-no-reboot",
            "-display", "none",
            "-serial", "stdio",
            "-device", "virtio-scsi-pci,id=scsi0",
            "-device", "scsi-hd,bus=scsi0.0,drive=hd0",
            "-drive", f"file={image_path},format=raw,if=none,id=hd0",
        ]
        for i, volume in enumerate(volumes):
            args += [
                "-drive", f"file={volume},format=raw,if=none,id=vol{i}",
                "-device", f"scsi-hd,bus=scsi0.0,drive=vol{i}",
            ]

        if run.bridged:
            tap = run.tap_name or "tap0"
            args += ["-netdev", f"tap,id=n0,ifname={tap},script=no,downscript=no"]
        else:
            forwards = []
            for spec in run.ports:
                forwards += _hostfwd("tcp", spec)
            for spec in run.udp_ports:
                forwards += _hostfwd("udp", spec)
            args += ["-netdev", ",".join(["user", "id=n0"] + forwards)]
        args += ["-device", f"virtio-net-pci,netdev=n0,mac={run.mac}"]

        if run.accel and os.path.exists("/dev/kvm") and self.arch == os.uname().machine:
            args += ["-enable-kvm", "-cpu", "host"]
        args += ["-qmp", f"tcp:localhost:{run.mgmt},server,nowait"]
        return args

    def start(
        self, run: RunConfig, image_path: Path, log_path: Path, volumes: list[Path] = ()
    ) -> int:
        """Spawn qemu detached from our session; output goes to log_path.

        :return: Process id of the hypervisor
        """
        cmd = self.command(run, image_path, volumes)
        debug(f"run: {' '.join(cmd)}")
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "wb") as log_file:
            try:
                self.process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as e:
                raise OpsError(f"failed to start {self.binary}: {e}") from e
        return self.process.pid


class QMPClient:
    """Minimal QEMU Machine Protocol client over TCP on localhost."""

    def __init__(self, port: int, host: str = "localhost", timeout: float = 5.0):
        self.port = port
        self.host = host
        self.timeout = timeout

    def execute(self, command: str, arguments: dict | None = None) -> dict:
        """Negotiate capabilities then run one command.

        :return: The ``return`` payload of the reply
        :raises OpsError: If the monitor is unreachable or reports an error
        """
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout) as sock:
                stream = sock.makefile("rwb")
                self._read(stream)  # greeting
                self._send(stream, {"execute": "qmp_capabilities"})
                self._read(stream)
                message = {"execute": command}
                if arguments:
                    message["arguments"] = arguments
                self._send(stream, message)
                reply = self._read(stream)
        except OSError as e:
            raise OpsError(f"qmp {command} on port {self.port}: {e}") from e

        if "error" in reply:
            raise OpsError(f"qmp {command}: {reply['error'].get('desc', reply['error'])}")
        return reply.get("return", {})

    @staticmethod
    def _send(stream, message: dict) -> None:
        stream.write(json.dumps(message).encode() + b"\n")
        stream.flush()

    @staticmethod
    def _read(stream) -> dict:
        # Skip asynchronous events until a greeting, return or error arrives.
        while True:
            line = stream.readline()
            if not line:
                raise OSError("connection closed by qemu")
            message = json.loads(line)
            if "event" not in message:
                return message
