"""On-prem instance registry: one JSON record per hypervisor process.

Records live in ``instances/<pid>``. A record is only valid while its pid
is alive; listing purges records of dead processes. There is no locking,
so every removal tolerates the file already being gone.
"""

import json
import os
import signal
from collections.abc import Callable, Iterator
from dataclasses import replace
from pathlib import Path

from .bridge import BridgeNetwork, find_bridged_ip_by_pid
from .config import Config
from .errors import InstanceNotFoundError, OpsError
from .images import local_image_path
from .qemu import Qemu, find_hypervisor, generate_mac, random_mgmt_port
from .types import CloudInstance, InstanceRecord
from .utils import debug, log, timestamp_to_iso, warn
from .volumes import resolve_mounts

LOCALHOST = "127.0.0.1"


def pid_alive(pid: int) -> bool:
    """Probe a pid with signal 0."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # exists, owned by someone else
    return True


class InstanceRegistry:
    """Spawn, list and kill on-prem instances.

    :param home: Tool home holding images/, instances/, volumes/ and logs/
    :param resolve_ip: pid -> ip lookup for bridged instances
    """

    def __init__(
        self,
        home: Path,
        resolve_ip: Callable[[int], str] = find_bridged_ip_by_pid,
    ):
        self.home = home
        self.resolve_ip = resolve_ip

    @property
    def instances_dir(self) -> Path:
        return self.home / "instances"

    def log_path(self, name: str) -> Path:
        return self.home / "logs" / f"{name}.log"

    def record_path(self, pid: int) -> Path:
        return self.instances_dir / str(pid)

    def _write(self, pid: int, record: InstanceRecord) -> None:
        self.instances_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.instances_dir / f".{pid}.tmp"
        tmp.write_text(json.dumps(record, indent=2))
        os.replace(tmp, self.record_path(pid))

    def _remove(self, pid: int) -> None:
        self.record_path(pid).unlink(missing_ok=True)

    def create(
        self,
        config: Config,
        hypervisor: Qemu | None = None,
        network: BridgeNetwork | None = None,
    ) -> InstanceRecord:
        """Boot config.run.image_name in the background and record it.

        Nothing is written unless the hypervisor started.

        :param config: Operation config; run.instance_name defaults to the image stem
        :param hypervisor: Hypervisor to use (default: qemu for run.arch)
        :param network: Bridge to attach run.tap_name to, when bridged
        :return: The written record
        :raises ImageNotFoundError: If the image is not in images/
        :raises VolumeNotFoundError: If a mount names a missing volume
        :raises HypervisorNotFoundError: If qemu is not installed
        """
        run = replace(config.run)
        image_path = local_image_path(self.home / "images", run.image_name)
        volumes = resolve_mounts(self.home / "volumes", config.mounts)

        run.instance_name = run.instance_name or image_path.name.split(".")[0]
        if any(r.get("instance") == run.instance_name for r in self.records()):
            raise OpsError(f"instance '{run.instance_name}' already exists")

        if run.bridged and run.tap_name:
            (network or BridgeNetwork(run.bridge_name)).attach_tap(run.tap_name)

        hypervisor = hypervisor or find_hypervisor(run.arch)
        run.mac = run.mac or generate_mac()
        run.mgmt = run.mgmt or random_mgmt_port()

        pid = hypervisor.start(run, image_path, self.log_path(run.instance_name), volumes)
        record: InstanceRecord = {
            "instance": run.instance_name,
            "image": str(image_path),
            "ports": list(run.ports),
            "bridged": run.bridged,
            "private_ip": run.ip_address,
            "mac": run.mac,
            "pid": pid,
            "mgmt": run.mgmt,
            "arch": run.arch,
        }
        self._write(pid, record)
        log(f"Started instance '{run.instance_name}' (pid {pid})")
        return record

    def _scan(self) -> Iterator[tuple[InstanceRecord, Path]]:
        if not self.instances_dir.is_dir():
            return
        for entry in sorted(os.scandir(self.instances_dir), key=lambda e: e.name):
            if entry.name.startswith("."):
                continue
            try:
                pid = int(entry.name)
            except ValueError:
                warn(f"Skipping '{entry.name}' in '{self.instances_dir}': not a pid")
                continue

            path = Path(entry.path)
            if not pid_alive(pid):
                path.unlink(missing_ok=True)
                debug(f"Removed stale record for pid {pid}")
                continue

            try:
                record = json.loads(path.read_text())
            except FileNotFoundError:
                continue
            except json.JSONDecodeError as e:
                warn(f"Skipping unreadable record '{path}': {e}")
                continue
            record["pid"] = pid
            yield record, path

    def records(self) -> list[InstanceRecord]:
        """Records of live instances; records of dead pids are purged."""
        return [record for record, _ in self._scan()]

    def instances(self) -> list[CloudInstance]:
        """Live instances, with bridged addresses resolved if not yet known."""
        result = []
        for record, path in self._scan():
            ip = record.get("private_ip") or ""
            if not record.get("bridged"):
                ip = ip or LOCALHOST
            elif not ip:
                ip = self.resolve_ip(record["pid"])
            try:
                created = timestamp_to_iso(path.stat().st_ctime)
            except FileNotFoundError:
                continue
            result.append(
                {
                    "id": str(record["pid"]),
                    "name": record.get("instance", ""),
                    "status": "Running",
                    "created": created,
                    "private_ips": [ip] if ip else [],
                    "public_ips": [],
                    "image": record.get("image", ""),
                    "ports": record.get("ports", []),
                }
            )
        return result

    def get(self, name: str) -> InstanceRecord:
        """:raises InstanceNotFoundError: If no live instance has this name"""
        for record in self.records():
            if record.get("instance") == name:
                return record
        raise InstanceNotFoundError(name)

    def get_instance(self, name: str) -> CloudInstance:
        for instance in self.instances():
            if instance["name"] == name:
                return instance
        raise InstanceNotFoundError(name)

    def delete(self, name: str) -> None:
        """Kill the instance's process and drop its record.

        :raises InstanceNotFoundError: If no live instance has this name
        """
        record = self.get(name)
        pid = record["pid"]
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            raise OpsError(f"not allowed to kill instance '{name}' (pid {pid})") from e
        self._remove(pid)
        log(f"Deleted instance '{name}'")

    def record_address(self, pid: int, mac: str, ip: str) -> None:
        """Persist a MAC/IP discovered after boot."""
        path = self.record_path(pid)
        try:
            record = json.loads(path.read_text())
        except FileNotFoundError:
            return
        record["mac"] = mac
        record["private_ip"] = ip
        self._write(pid, record)
