#!/usr/bin/env python3
"""Build, launch and manage unikernel instances.

Usage: unikops <noun> <verb> [options]

Examples:
    unikops image create ./myapp --name myapp
    unikops instance create myapp --port 8080
    unikops instance list
    unikops instance delete web-1 web-2
    unikops image create ./myapp --provider aws --bucket my-images --zone us-east-1a
    unikops network setup
    unikops compose up compose.yaml
"""

import os
from contextlib import contextmanager
from pathlib import Path

import cyclopts
from rich import print

from .compose import Compose, load_compose_file
from .config import (
    Config,
    ProviderConfig,
    RunConfig,
    ensure_home,
    get_default_provider,
    get_home,
    parse_tags,
)
from .errors import OpsError
from .onprem import OnPremProvider
from .providers import DISABLED_PROVIDERS, PROVIDERS, get_provider
from .types import ProviderName
from .utils import bytes2human, error, log, run_concurrently, setup_logging

app = cyclopts.App(
    name="unikops", help="Build and run unikernel instances", sort_key=None
)

instance_app = cyclopts.App(name="instance", help="Manage instances", sort_key=1)
image_app = cyclopts.App(name="image", help="Build and manage images", sort_key=2)
volume_app = cyclopts.App(name="volume", help="Manage data volumes", sort_key=3)
network_app = cyclopts.App(name="network", help="Bridged networking (onprem)", sort_key=4)
compose_app = cyclopts.App(name="compose", help="Boot packages behind a private DNS", sort_key=5)
provider_app = cyclopts.App(name="provider", help="Provider information", sort_key=6)

app.command(instance_app)
app.command(image_app)
app.command(volume_app)
app.command(network_app)
app.command(compose_app)
app.command(provider_app)


@contextmanager
def reported():
    """Turn control-plane errors into a logged message and exit status 1."""
    try:
        yield
    except (OpsError, ValueError) as e:
        error(str(e))


def make_config(
    provider: str | None = None,
    *,
    zone: str = "",
    tags: list[str] | None = None,
    run: RunConfig | None = None,
    **cloud,
) -> tuple[str, Config]:
    """Build the per-operation config from command-line options."""
    name = provider or get_default_provider()
    config = Config(
        home=ensure_home(get_home()),
        cloud=ProviderConfig(
            platform=name,
            zone=zone or os.getenv("AWS_REGION", ""),
            tags=parse_tags(tags),
            **{k: v for k, v in cloud.items() if v is not None},
        ),
        run=run or RunConfig(),
    )
    return name, config


def print_table(headers: list[str], rows: list[list[str]]) -> None:
    widths = [max(len(h), *(len(r[i]) for r in rows)) for i, h in enumerate(headers)]
    print("  " + "  ".join(h.ljust(w) for h, w in zip(headers, widths)))
    print("  " + "  ".join("-" * w for w in widths))
    for row in rows:
        print("  " + "  ".join(c.ljust(w) for c, w in zip(row, widths)))


def report_bulk(verb: str, results: dict[str, Exception | None]) -> None:
    failed = 0
    for name, exc in results.items():
        if exc is not None:
            failed += 1
            print(f"[red]failed {verb} {name}: {exc}[/red]")
    if failed:
        error(f"{failed} of {len(results)} failed")


@instance_app.command(name="create")
def create_instance(
    image: str,
    *,
    name: str = "",
    provider: ProviderName | None = None,
    zone: str = "",
    port: list[str] | None = None,
    udp_port: list[str] | None = None,
    bridged: bool = False,
    bridge_name: str = "br0",
    tap: str = "",
    ip_address: str = "",
    ipv6_address: str = "",
    memory: str = "2G",
    cpus: int = 1,
    accel: bool = True,
    arch: str = "",
    mount: list[str] | None = None,
    flavor: str = "",
    vpc: str = "",
    subnet: str = "",
    security_group: str = "",
    tag: list[str] | None = None,
    ipv6: bool = False,
    static_ip: str = "",
    instance_profile: str = "",
    user_data: str = "",
    instance_group: str = "",
    profile: str | None = None,
):
    """Launch an instance from an image.

    :param image: Image name (onprem: file in images/; aws: Name tag of the AMI)
    :param name: Instance name (default: image name)
    :param provider: Provider (default: UNIKOPS_PROVIDER or onprem)
    :param zone: Region or availability zone (aws)
    :param port: TCP port or range to open/forward, e.g. 8080 or 9000-9040
    :param udp_port: UDP port or range to open/forward
    :param bridged: Attach the instance to the host bridge (onprem)
    :param tap: Tap device to use when bridged (onprem)
    :param mount: Volume to mount, as volume:/guest/dir
    :param arch: Target architecture, e.g. arm64
    :param tag: Tag as key=value (aws)
    :param ipv6: Enable IPv6 networking (aws)
    :param instance_group: Autoscaling group to point at this image (aws)
    """
    run = RunConfig(
        instance_name=name,
        image_name=image,
        ports=port or [],
        udp_ports=udp_port or [],
        bridged=bridged,
        bridge_name=bridge_name,
        tap_name=tap,
        ip_address=ip_address,
        ipv6_address=ipv6_address,
        memory=memory,
        cpus=cpus,
        accel=accel,
        arch=arch,
        instance_group=instance_group,
    )
    with reported():
        provider_name, config = make_config(
            provider,
            zone=zone,
            tags=tag,
            run=run,
            image_name=image,
            flavor=flavor,
            vpc=vpc,
            subnet=subnet,
            security_group=security_group,
            enable_ipv6=ipv6,
            static_ip=static_ip,
            instance_profile=instance_profile,
            user_data=user_data,
            profile=profile,
        )
        for entry in mount or []:
            volume, sep, guest_dir = entry.partition(":")
            if not sep:
                raise ValueError(f"invalid mount '{entry}', expected volume:/guest/dir")
            config.mounts[volume] = guest_dir
        p = get_provider(provider_name, config.cloud)
        instance_id = p.create_instance(config)
    log(f"Instance ready: '{name or image}' ({instance_id})")


@instance_app.command(name="list")
def list_instances(*, provider: ProviderName | None = None, zone: str = "", profile: str | None = None):
    """List instances created by unikops.

    :param provider: Provider (default: UNIKOPS_PROVIDER or onprem)
    :param zone: Region or availability zone (aws)
    """
    with reported():
        provider_name, config = make_config(provider, zone=zone, profile=profile)
        instances = get_provider(provider_name, config.cloud).get_instances(config)

    if not instances:
        log("No instances found")
        return

    print_table(
        ["NAME", "ID", "STATUS", "PRIVATE IPS", "PUBLIC IPS", "IMAGE", "CREATED"],
        [
            [
                i.get("name", ""),
                i.get("id", ""),
                i.get("status", ""),
                ", ".join(i.get("private_ips", [])),
                ", ".join(i.get("public_ips", [])),
                Path(i.get("image", "")).name,
                i.get("created", ""),
            ]
            for i in instances
        ],
    )


@instance_app.command(name="delete")
def delete_instances(
    *names: str, provider: ProviderName | None = None, zone: str = "", profile: str | None = None
):
    """Delete one or more instances in parallel.

    :param names: Instance names
    :param provider: Provider (default: UNIKOPS_PROVIDER or onprem)
    """
    if not names:
        error("no instance names given")
    with reported():
        provider_name, config = make_config(provider, zone=zone, profile=profile)
        p = get_provider(provider_name, config.cloud)
    results = run_concurrently(lambda n: p.delete_instance(config, n), names)
    report_bulk("deleting", results)


@instance_app.command(name="start")
def start_instance(name: str, *, provider: ProviderName | None = None, zone: str = ""):
    """Start (onprem: resume) an instance."""
    with reported():
        provider_name, config = make_config(provider, zone=zone)
        get_provider(provider_name, config.cloud).start_instance(config, name)


@instance_app.command(name="stop")
def stop_instance(name: str, *, provider: ProviderName | None = None, zone: str = ""):
    """Stop (onprem: pause) an instance."""
    with reported():
        provider_name, config = make_config(provider, zone=zone)
        get_provider(provider_name, config.cloud).stop_instance(config, name)


@instance_app.command(name="logs")
def instance_logs(name: str, *, provider: ProviderName | None = None, zone: str = ""):
    """Print an instance's console output."""
    with reported():
        provider_name, config = make_config(provider, zone=zone)
        output = get_provider(provider_name, config.cloud).get_instance_logs(config, name)
    print(output, end="")


@image_app.command(name="create")
def create_image(
    program: str = "",
    *,
    name: str = "",
    package: str = "",
    provider: ProviderName | None = None,
    zone: str = "",
    bucket: str = "",
    arch: str = "",
    arg: list[str] | None = None,
    env: list[str] | None = None,
    mount: list[str] | None = None,
    tag: list[str] | None = None,
    profile: str | None = None,
):
    """Build an image and register it with the provider.

    :param program: Executable to build the image from
    :param name: Image name (default: program name)
    :param package: Build from this package directory instead of a program
    :param bucket: S3 bucket to stage the upload in (aws)
    :param arch: Target architecture, e.g. arm64
    :param arg: Argument passed to the program
    :param env: Environment variable as KEY=VALUE
    """
    if not program and not package:
        error("give a program or --package")
    with reported():
        provider_name, config = make_config(
            provider,
            zone=zone,
            tags=tag,
            run=RunConfig(image_name=name, arch=arch),
            bucket_name=bucket,
            image_name=name,
            profile=profile,
        )
        config.program = program
        config.args = list(arg or [])
        for entry in env or []:
            key, sep, value = entry.partition("=")
            if not sep:
                raise ValueError(f"invalid env '{entry}', expected KEY=VALUE")
            config.env[key] = value
        for entry in mount or []:
            volume, _, guest_dir = entry.partition(":")
            config.mounts[volume] = guest_dir

        p = get_provider(provider_name, config.cloud)
        if package:
            image_path = p.build_image_with_package(config, Path(package))
        else:
            image_path = p.build_image(config)
        p.create_image(config, image_path)


@image_app.command(name="list")
def list_images(*, provider: ProviderName | None = None, zone: str = "", profile: str | None = None):
    """List images."""
    with reported():
        provider_name, config = make_config(provider, zone=zone, profile=profile)
        images = get_provider(provider_name, config.cloud).get_images(config)
    if not images:
        log("No images found")
        return
    print_table(
        ["NAME", "ID", "STATUS", "SIZE", "CREATED"],
        [
            [i.get("name", ""), i.get("id", ""), i.get("status", ""),
             bytes2human(i.get("size", 0)), i.get("created", "")]
            for i in images
        ],
    )


@image_app.command(name="delete")
def delete_images(
    *names: str, provider: ProviderName | None = None, zone: str = "", profile: str | None = None
):
    """Delete one or more images in parallel."""
    if not names:
        error("no image names given")
    with reported():
        provider_name, config = make_config(provider, zone=zone, profile=profile)
        p = get_provider(provider_name, config.cloud)
    results = run_concurrently(lambda n: p.delete_image(config, n), names)
    report_bulk("deleting", results)


@image_app.command(name="resize")
def resize_image(name: str, size: str, *, provider: ProviderName | None = None):
    """Grow an image to size, e.g. 2g."""
    with reported():
        provider_name, config = make_config(provider)
        get_provider(provider_name, config.cloud).resize_image(config, name, size)


@volume_app.command(name="create")
def create_volume(
    name: str, size: str, *, provider: ProviderName | None = None, zone: str = "",
    tag: list[str] | None = None,
):
    """Create an empty volume of size, e.g. 100m or 10g."""
    with reported():
        provider_name, config = make_config(provider, zone=zone, tags=tag)
        get_provider(provider_name, config.cloud).create_volume(config, name, size)


@volume_app.command(name="list")
def list_volumes(*, provider: ProviderName | None = None, zone: str = ""):
    """List volumes."""
    with reported():
        provider_name, config = make_config(provider, zone=zone)
        volumes = get_provider(provider_name, config.cloud).get_all_volumes(config)
    if not volumes:
        log("No volumes found")
        return
    print_table(
        ["NAME", "ID", "STATUS", "SIZE", "ATTACHED TO", "CREATED"],
        [
            [v.get("name", ""), v.get("id", ""), v.get("status", ""), str(v.get("size", "")),
             v.get("attached_to", ""), v.get("created_at", "")]
            for v in volumes
        ],
    )


@volume_app.command(name="delete")
def delete_volume(name: str, *, provider: ProviderName | None = None, zone: str = ""):
    """Delete a volume by name or id."""
    with reported():
        provider_name, config = make_config(provider, zone=zone)
        get_provider(provider_name, config.cloud).delete_volume(config, name)


@volume_app.command(name="attach")
def attach_volume(
    instance: str, volume: str, *, attach_id: int = 0,
    provider: ProviderName | None = None, zone: str = "",
):
    """Attach a volume to a running instance.

    :param attach_id: Fixed attachment slot 1-25 (default: first free)
    """
    with reported():
        provider_name, config = make_config(provider, zone=zone, run=RunConfig(attach_id=attach_id))
        get_provider(provider_name, config.cloud).attach_volume(config, instance, volume)


@volume_app.command(name="detach")
def detach_volume(instance: str, volume: str, *, provider: ProviderName | None = None, zone: str = ""):
    """Detach a volume from an instance."""
    with reported():
        provider_name, config = make_config(provider, zone=zone)
        get_provider(provider_name, config.cloud).detach_volume(config, instance, volume)


@network_app.command(name="setup")
def network_setup(*, bridge: str = "br0", tap: str = "tap0"):
    """Create the host bridge and tap device and get the bridge an address.

    Needs root (or CAP_NET_ADMIN and CAP_NET_RAW).
    """
    from .bridge import BridgeNetwork

    with reported():
        ip = BridgeNetwork(bridge, tap).setup()
    print(f"  Bridge: {bridge}  IP: {ip}")


@network_app.command(name="reset")
def network_reset(*, bridge: str = "br0", tap: str = "tap0"):
    """Tear down the host bridge and tap device."""
    from .bridge import BridgeNetwork

    failures = BridgeNetwork(bridge, tap).teardown()
    if failures:
        error(f"{len(failures)} teardown step(s) failed")


@compose_app.command(name="up")
def compose_up(file: str = "compose.yaml"):
    """Boot the DNS instance and every package in a compose file.

    :param file: Path to compose.yaml
    """
    with reported():
        _, config = make_config("onprem")
        packages = load_compose_file(file)
        services = Compose(config, OnPremProvider()).up(packages)
    for service, ip in services.items():
        print(f"  {service}.service  {ip}")


@provider_app.command(name="list")
def list_providers():
    """List known providers."""
    for name in sorted(PROVIDERS):
        status = "disabled" if name in DISABLED_PROVIDERS else "available"
        print(f"  {name.ljust(10)}  {status}")


def main():
    setup_logging(os.getenv("UNIKOPS_LOG_LEVEL", "INFO"))
    app()


if __name__ == "__main__":
    main()
