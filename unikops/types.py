"""Type definitions for unikops."""

from typing import Literal, TypedDict

ProviderName = Literal[
    "onprem",
    "aws",
    "gcp",
    "azure",
    "do",
    "vultr",
    "vsphere",
    "openstack",
    "hyper-v",
    "upcloud",
    "oci",
    "vbox",
    "proxmox",
]


class Tag(TypedDict):
    """Key/value tag in the EC2 wire shape."""

    Key: str
    Value: str


class CloudImage(TypedDict, total=False):
    """Registered boot image as seen at query time."""

    id: str
    name: str
    status: str
    size: int  # bytes
    created: str
    path: str  # onprem only


class CloudInstance(TypedDict, total=False):
    """Running or stopped instance as seen at query time."""

    id: str
    name: str
    status: str
    created: str
    private_ips: list[str]
    public_ips: list[str]
    image: str
    ports: list[str]


class NanosVolume(TypedDict, total=False):
    """Detachable data volume."""

    id: str
    name: str
    label: str
    size: int  # bytes onprem, GiB on aws
    path: str
    created_at: str
    attached_to: str  # owning instance id, or ""
    status: str


class InstanceRecord(TypedDict, total=False):
    """On-prem instance record, stored as instances/<pid>."""

    instance: str
    image: str
    ports: list[str]
    bridged: bool
    private_ip: str
    mac: str
    pid: int
    mgmt: int  # QMP port on localhost
    arch: str


class LaunchTemplateInput(TypedDict, total=False):
    """Seed for the launch-template create/modify/attach sequence."""

    auto_scaling_group: str
    image_id: str
    instance_profile_name: str
    instance_type: str
    launch_template_name: str
    tags: list[Tag]
    network_interface: dict
