from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest

from unikops import compose as compose_module
from unikops import registry as registry_module
from unikops.compose import (
    DNS_PACKAGE,
    Compose,
    ComposePackage,
    generate_nonce,
    load_compose_file,
)
from unikops.errors import OpsError, PackageNotFoundError, WaitTimeoutError
from unikops.qemu import Qemu
from unikops.registry import InstanceRegistry

COMPOSE_YAML = """\
packages:
  - pkg: web
    name: eyberg/node:20.5.0
  - pkg: cache
    name: myredis
    local: true
    arch: arm64
"""


class TestLoadComposeFile:
    def test_packages(self, tmp_path):
        path = tmp_path / "compose.yaml"
        path.write_text(COMPOSE_YAML)

        packages = load_compose_file(path)

        assert packages == [
            ComposePackage(pkg="web", name="eyberg/node:20.5.0"),
            ComposePackage(pkg="cache", name="myredis", local=True, arch="arm64"),
        ]

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "packages: []\n",
            "packages:\n  - name: x\n",
            "packages:\n  - pkg: x\n",
            "just a string\n",
        ],
    )
    def test_invalid(self, tmp_path, text):
        path = tmp_path / "compose.yaml"
        path.write_text(text)
        with pytest.raises(OpsError):
            load_compose_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(OpsError, match="cannot read compose file"):
            load_compose_file(tmp_path / "nope.yaml")


def test_generate_nonce():
    nonce = generate_nonce()
    assert len(nonce) == 32
    int(nonce, 16)
    assert nonce != generate_nonce()


def add_package(config, pkg, local=False):
    root = config.packages_dir / "local" if local else config.packages_dir
    path = root / pkg
    path.mkdir(parents=True)
    return path


class FakeProvider:
    """Boots every image as the next pid, starting at 100."""

    def __init__(self):
        self.built = []
        self.next_pid = 100

    def registry(self, config):
        return MagicMock()

    def build_image_with_package(self, config, pkg_path):
        self.built.append((config, Path(pkg_path)))
        return config.images_dir / f"{config.run.image_name}.img"

    def create_image(self, config, image_path):
        pass

    def create_instance_record(self, config):
        self.next_pid += 1
        return {"pid": self.next_pid}


class RegistryProvider(FakeProvider):
    """Boots through a real registry with a recording hypervisor and bridge."""

    def __init__(self, network):
        super().__init__()
        self.network = network
        self.runs = []

    def create_image(self, config, image_path):
        image_path.write_bytes(b"\0" * 4096)

    def create_instance_record(self, config):
        self.next_pid += 1
        hypervisor = MagicMock()
        hypervisor.start.return_value = self.next_pid

        registry = InstanceRegistry(config.home, resolve_ip=MagicMock(return_value=""))
        record = registry.create(config, hypervisor=hypervisor, network=self.network)
        run, image_path = hypervisor.start.call_args.args[:2]
        self.runs.append((run, image_path))
        return record


@pytest.fixture
def dns_requests():
    return []


@pytest.fixture
def http(dns_requests):
    def handler(request):
        dns_requests.append(request)
        return httpx.Response(200, text="ok")

    return httpx.Client(transport=httpx.MockTransport(handler))


def compose(config, provider, http, ip="192.168.1.9"):
    return Compose(
        config, provider, http=http,
        resolve_ip=lambda pid, on_resolved: ip,
        sleep=lambda s: None, verify=False,
    )


class TestCompose:
    def test_up(self, config, http, dns_requests):
        add_package(config, DNS_PACKAGE)
        add_package(config, "eyberg/node:20.5.0")
        provider = FakeProvider()
        ips = {101: "192.168.1.2", 102: "192.168.1.3"}

        services = Compose(
            config, provider, http=http,
            resolve_ip=lambda pid, on_resolved: ips[pid],
            sleep=lambda s: None, verify=False,
        ).up([ComposePackage(pkg="web", name="eyberg/node:20.5.0")])

        assert services == {"web": "192.168.1.3"}
        dns_config, dns_pkg = provider.built[0]
        assert dns_pkg.name == "ops-dns:0.0.1"
        assert dns_config.run.instance_name == "dns"
        assert dns_config.run.bridged is True
        assert len(dns_config.env["non"]) == 32
        web_config, web_pkg = provider.built[1]
        assert web_pkg == config.packages_dir / "eyberg/node:20.5.0"
        assert web_config.name_servers == ["192.168.1.2"]
        assert web_config.run.instance_name == "web"
        assert web_config.run.image_name == "web"
        assert config.name_servers == []
        assert config.env == {}

        assert len(dns_requests) == 1
        url = dns_requests[0].url
        assert url.host == "192.168.1.2"
        assert url.port == 8080
        assert url.path == "/add"
        assert url.params["svc"] == "web.service"
        assert url.params["ip"] == "192.168.1.3"

    def test_each_instance_gets_its_own_tap(self, config, http):
        add_package(config, DNS_PACKAGE)
        add_package(config, "a")
        add_package(config, "b")
        provider = FakeProvider()

        compose(config, provider, http).up(
            [ComposePackage(pkg="a", name="a"), ComposePackage(pkg="b", name="b")]
        )

        taps = [c.run.tap_name for c, _ in provider.built]
        assert all(taps)
        assert len(set(taps)) == 3
        assert all(len(tap) <= 15 for tap in taps)
        assert config.run.tap_name == ""

    def test_taps_are_attached_and_used(self, config, http, monkeypatch):
        monkeypatch.setattr(registry_module, "pid_alive", lambda pid: True)
        add_package(config, DNS_PACKAGE)
        add_package(config, "a")
        network = MagicMock()
        provider = RegistryProvider(network)

        compose(config, provider, http).up([ComposePackage(pkg="a", name="a")])

        attached = [call.args[0] for call in network.attach_tap.call_args_list]
        assert len(attached) == 2
        assert len(set(attached)) == 2

        qemu = Qemu("qemu-system-x86_64")
        netdevs = []
        for run, image_path in provider.runs:
            args = qemu.command(run, image_path)
            netdevs.append(args[args.index("-netdev") + 1])
        assert len(set(netdevs)) == len(netdevs)
        for tap, netdev in zip(attached, netdevs):
            assert f"ifname={tap}," in netdev

    def test_arch_is_per_package(self, config, http):
        add_package(config, DNS_PACKAGE)
        add_package(config, "a")
        add_package(config, "b")
        provider = FakeProvider()

        compose(config, provider, http).up(
            [ComposePackage(pkg="a", name="a", arch="arm64"), ComposePackage(pkg="b", name="b")]
        )

        archs = [c.run.arch for c, _ in provider.built]
        assert archs == ["", "arm64", ""]

    def test_local_package(self, config, http):
        add_package(config, DNS_PACKAGE)
        add_package(config, "myredis", local=True)
        provider = FakeProvider()

        compose(config, provider, http).up(
            [ComposePackage(pkg="cache", name="myredis", local=True)]
        )

        _, pkg_path = provider.built[1]
        assert pkg_path == config.packages_dir / "local" / "myredis"

    def test_needs_dns_package(self, config, http):
        with pytest.raises(PackageNotFoundError, match="you need the dns package to use compose"):
            Compose(config, FakeProvider(), http=http).up([ComposePackage(pkg="a", name="a")])

    def test_missing_package(self, config, http):
        add_package(config, DNS_PACKAGE)
        with pytest.raises(PackageNotFoundError):
            compose(config, FakeProvider(), http).up([ComposePackage(pkg="web", name="missing")])

    def test_ip_timeout(self, config, http):
        add_package(config, DNS_PACKAGE)
        sleeps = []
        resolve = MagicMock(return_value="")

        with pytest.raises(WaitTimeoutError, match="ip timeout"):
            Compose(
                config, FakeProvider(), http=http, resolve_ip=resolve,
                sleep=sleeps.append, retries=3, delay=0.5,
            ).up([])

        assert resolve.call_count == 3
        assert sleeps == [0.5, 0.5]

    def test_dns_registration_error(self, config):
        def handler(request):
            return httpx.Response(500, text="boom")

        c = Compose(config, FakeProvider(), http=httpx.Client(transport=httpx.MockTransport(handler)))
        with pytest.raises(OpsError, match="register 'web.service'"):
            c.add_dns("192.168.1.2", "web", "192.168.1.3")

    def test_dns_verification(self, config, http, monkeypatch):
        lookups = []

        def resolve_service(nameserver, name):
            lookups.append((nameserver, name))
            return "192.168.1.3"

        monkeypatch.setattr(compose_module, "resolve_service", resolve_service)

        Compose(config, FakeProvider(), http=http).add_dns("192.168.1.2", "web", "192.168.1.3")

        assert lookups == [("192.168.1.2", "web.service")]
