"""Compose: boot a set of packages behind a private DNS instance.

A DNS package is booted first; every declared package is then built from
its ``name``, booted bridged on its own tap with that instance as its
nameserver, and registered as ``<pkg>.service``. A failure aborts the run
and leaves booted instances up.
"""

import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import dns.exception
import dns.resolver
import httpx
import yaml

from .bridge import find_bridged_ip_by_pid
from .config import Config
from .errors import OpsError, PackageNotFoundError
from .onprem import OnPremProvider
from .utils import debug, log, warn
from .waiter import PollResult, Waiter, WaitState

DNS_PACKAGE = "eyberg/ops-dns:0.0.1"
DNS_INSTANCE = "dns"
DNS_HTTP_PORT = 8080
NONCE_ENV = "non"
IP_RETRIES = 10
IP_DELAY = 0.5
TAP_PREFIX = "ctap"


@dataclass
class ComposePackage:
    """One entry of a compose file.

    :param pkg: Instance, image and service name
    :param name: Package to build from, e.g. ``eyberg/node:20.5.0``
    """

    pkg: str
    name: str
    local: bool = False
    arch: str = ""
    base_volume_sz: str = ""


def load_compose_file(path: str | Path) -> list[ComposePackage]:
    """Read the ``packages`` list from a compose.yaml.

    :raises OpsError: If the file is unreadable or malformed
    """
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except (OSError, yaml.YAMLError) as e:
        raise OpsError(f"cannot read compose file '{path}': {e}") from e

    entries = data.get("packages") if isinstance(data, dict) else None
    if not entries or not isinstance(entries, list):
        raise OpsError(f"compose file '{path}' declares no packages")

    packages = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("pkg") or not entry.get("name"):
            raise OpsError(f"compose file '{path}': every package needs a 'pkg' and a 'name'")
        packages.append(
            ComposePackage(
                pkg=str(entry["pkg"]),
                name=str(entry["name"]),
                local=bool(entry.get("local", False)),
                arch=str(entry.get("arch") or ""),
                base_volume_sz=str(entry.get("base_volume_sz") or ""),
            )
        )
    return packages


def generate_nonce() -> str:
    """32 hex characters shared with the DNS instance."""
    return secrets.token_hex(16)


def tap_name(index: int) -> str:
    """Tap device for the index-th compose instance; the DNS instance is 0."""
    return f"{TAP_PREFIX}{index}"


def package_path(config: Config, pkg: str, local: bool = False) -> Path:
    """Where a downloaded (or locally built) package lives.

    :raises PackageNotFoundError: If it is not there
    """
    root = config.packages_dir / "local" if local else config.packages_dir
    path = root / pkg
    if not path.exists():
        raise PackageNotFoundError(f"package '{pkg}' not found in '{root}'")
    return path


def resolve_service(nameserver: str, name: str) -> str | None:
    """Resolve a service name against the compose DNS instance."""
    resolver = dns.resolver.Resolver(configure=False)
    resolver.nameservers = [nameserver]
    try:
        answer = resolver.resolve(name, "A", lifetime=2)
    except dns.exception.DNSException:
        return None
    return str(answer[0]) if answer else None


class Compose:
    """Run a compose file against the on-prem provider.

    :param config: Base config; each instance gets its own copy
    :param provider: On-prem provider used to build and boot
    :param http: Client for the DNS registration calls
    :param resolve_ip: (pid, on_resolved) -> ip for bridged instances
    """

    def __init__(
        self,
        config: Config,
        provider: OnPremProvider | None = None,
        http: httpx.Client | None = None,
        resolve_ip: Callable = find_bridged_ip_by_pid,
        sleep: Callable[[float], None] = time.sleep,
        retries: int = IP_RETRIES,
        delay: float = IP_DELAY,
        verify: bool = True,
    ):
        self.config = config
        self.provider = provider or OnPremProvider()
        self.http = http or httpx.Client(timeout=10)
        self.resolve_ip = resolve_ip
        self.waiter = Waiter(delay=delay, max_attempts=retries, sleep=sleep)
        self.verify = verify

    def up(self, packages: list[ComposePackage]) -> dict[str, str]:
        """Boot DNS then every package in order.

        :return: Service name -> instance IP
        """
        dns_ip = self.spawn_dns(generate_nonce())
        log(f"DNS instance is up at {dns_ip}")

        services = {}
        for index, package in enumerate(packages, start=1):
            ip = self.spawn_package(package, dns_ip, tap_name(index))
            self.add_dns(dns_ip, package.pkg, ip)
            services[package.pkg] = ip
        return services

    def spawn_dns(self, nonce: str) -> str:
        try:
            pkg_path = package_path(self.config, DNS_PACKAGE)
        except PackageNotFoundError:
            raise PackageNotFoundError("you need the dns package to use compose") from None

        config = self.config.copy()
        config.env = {**config.env, NONCE_ENV: nonce}
        config.run.instance_name = DNS_INSTANCE
        config.run.image_name = DNS_INSTANCE
        config.run.bridged = True
        config.run.tap_name = tap_name(0)
        return self._boot(config, pkg_path)

    def spawn_package(self, package: ComposePackage, dns_ip: str, tap: str) -> str:
        pkg_path = package_path(self.config, package.name, package.local)

        config = self.config.copy()
        config.run.arch = package.arch
        config.run.instance_name = package.pkg
        config.run.image_name = package.pkg
        config.run.bridged = True
        config.run.tap_name = tap
        config.name_servers = [dns_ip]
        if package.base_volume_sz:
            config.base_volume_sz = package.base_volume_sz
        return self._boot(config, pkg_path)

    def _boot(self, config: Config, pkg_path: Path) -> str:
        image_path = self.provider.build_image_with_package(config, pkg_path)
        self.provider.create_image(config, image_path)
        record = self.provider.create_instance_record(config)
        return self.wait_for_ip(config, record["pid"])

    def wait_for_ip(self, config: Config, pid: int) -> str:
        """Poll the ARP cache for a bridged instance's address.

        :raises WaitTimeoutError: After the retry budget ("ip timeout")
        """
        registry = self.provider.registry(config)

        def probe() -> PollResult:
            ip = self.resolve_ip(pid, registry.record_address)
            if ip:
                return PollResult(WaitState.SUCCESS, ip)
            return PollResult(WaitState.PENDING)

        return self.waiter.wait(probe, f"ip timeout for pid {pid}")

    def add_dns(self, dns_ip: str, service: str, ip: str) -> None:
        """Register ``<service>.service -> ip`` with the DNS instance."""
        name = f"{service}.service"
        try:
            response = self.http.get(
                f"http://{dns_ip}:{DNS_HTTP_PORT}/add", params={"svc": name, "ip": ip}
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise OpsError(f"register '{name}' with dns at {dns_ip}: {e}") from e
        debug(f"dns: {response.text.strip()}")
        log(f"Registered '{name}' -> {ip}")

        if self.verify:
            resolved = resolve_service(dns_ip, name)
            if resolved != ip:
                warn(f"'{name}' resolves to '{resolved or 'nothing'}', expected '{ip}'")
