"""Per-operation configuration and environment loading."""

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path

import botocore.session
from dotenv import load_dotenv

from .types import Tag
from .utils import warn

DEFAULT_HOME = "~/.unikops"
DEFAULT_PROVIDER = "onprem"
HOME_SUBDIRS = ("images", "instances", "volumes", "packages", "logs")


@dataclass
class ProviderConfig:
    """Backend settings: where and how to place resources.

    Network identifiers may be either names (matched against the ``Name``
    tag) or opaque ids such as ``vpc-0abc``.
    """

    platform: str = DEFAULT_PROVIDER
    zone: str = ""
    flavor: str = ""
    image_name: str = ""
    bucket_name: str = ""
    vpc: str = ""
    subnet: str = ""
    security_group: str = ""
    tags: list[Tag] = field(default_factory=list)
    enable_ipv6: bool = False
    static_ip: str = ""
    instance_profile: str = ""
    user_data: str = ""
    profile: str | None = None  # aws only


@dataclass
class RunConfig:
    """Settings for one instance launch."""

    instance_name: str = ""
    image_name: str = ""
    ports: list[str] = field(default_factory=list)
    udp_ports: list[str] = field(default_factory=list)
    bridged: bool = False
    bridge_name: str = "br0"
    tap_name: str = ""
    ip_address: str = ""
    ipv6_address: str = ""
    memory: str = "2G"
    cpus: int = 1
    accel: bool = True
    instance_group: str = ""
    arch: str = ""  # alternate target architecture, e.g. "arm64"
    mac: str = ""
    mgmt: int = 0
    attach_id: int = 0


@dataclass
class Config:
    """Everything a single provider operation needs.

    Passed down explicitly; nothing here is process-wide state.
    """

    program: str = ""
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    mounts: dict[str, str] = field(default_factory=dict)  # volume -> guest dir
    name_servers: list[str] = field(default_factory=list)
    base_volume_sz: str = ""
    home: Path = field(default_factory=lambda: get_home())
    cloud: ProviderConfig = field(default_factory=ProviderConfig)
    run: RunConfig = field(default_factory=RunConfig)

    @property
    def images_dir(self) -> Path:
        return self.home / "images"

    @property
    def instances_dir(self) -> Path:
        return self.home / "instances"

    @property
    def volumes_dir(self) -> Path:
        return self.home / "volumes"

    @property
    def packages_dir(self) -> Path:
        return self.home / "packages"

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    def copy(self) -> "Config":
        return copy.deepcopy(self)


def get_home() -> Path:
    """Tool home directory, from UNIKOPS_HOME or ~/.unikops."""
    load_dotenv()
    return Path(os.path.expanduser(os.getenv("UNIKOPS_HOME", DEFAULT_HOME)))


def ensure_home(home: Path) -> Path:
    """Create the home directory layout if missing."""
    for sub in HOME_SUBDIRS:
        (home / sub).mkdir(parents=True, exist_ok=True)
    return home


def get_default_provider() -> str:
    load_dotenv()
    return os.getenv("UNIKOPS_PROVIDER", DEFAULT_PROVIDER)


def parse_tags(values: list[str] | None) -> list[Tag]:
    """Parse ``key=value`` strings into tags.

    :param values: Strings from the command line, e.g. ``["env=dev"]``
    :return: List of tags in the EC2 wire shape
    :raises ValueError: If a value has no ``=``
    """
    tags: list[Tag] = []
    for value in values or []:
        key, sep, val = value.partition("=")
        if not sep or not key:
            raise ValueError(f"invalid tag '{value}', expected key=value")
        tags.append({"Key": key, "Value": val})
    return tags


def get_aws_config(profile: str | None = None, region: str | None = None) -> dict:
    """boto3.Session kwargs from explicit values, then AWS_PROFILE / AWS_REGION.

    An unknown profile is dropped so boto3 falls back to its default chain.
    """
    load_dotenv()

    aws_config = {}
    profile = profile or os.getenv("AWS_PROFILE")
    if profile:
        if profile in botocore.session.get_session().available_profiles:
            aws_config["profile_name"] = profile
        else:
            warn(f"aws profile '{profile}' not found, using the default credential chain")
            os.environ.pop("AWS_PROFILE", None)

    region = region or os.getenv("AWS_REGION")
    if region:
        aws_config["region_name"] = region
    return aws_config


def zone_to_region(zone: str) -> str:
    """Strip the AZ letter: ``us-east-1a`` -> ``us-east-1``."""
    if zone and zone[-1].isalpha() and zone[-2:-1].isdigit():
        return zone[:-1]
    return zone
