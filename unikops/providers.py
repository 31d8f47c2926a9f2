"""Provider abstraction and the name-keyed provider factory."""

from pathlib import Path
from typing import Protocol

from .config import Config, ProviderConfig, get_default_provider
from .errors import OpsError, ProviderDisabledError
from .types import CloudImage, CloudInstance, NanosVolume, ProviderName


class Provider(Protocol):
    provider_name: ProviderName

    def initialize(self, cloud: ProviderConfig) -> None: ...

    def build_image(self, config: Config) -> Path: ...

    def build_image_with_package(self, config: Config, pkg_path: Path) -> Path: ...

    def create_image(self, config: Config, image_path: Path) -> None: ...

    def get_images(self, config: Config) -> list[CloudImage]: ...

    def delete_image(self, config: Config, name: str) -> None: ...

    def resize_image(self, config: Config, name: str, size: str) -> None: ...

    def create_instance(self, config: Config) -> str: ...

    def get_instances(self, config: Config) -> list[CloudInstance]: ...

    def get_instance_by_name(self, config: Config, name: str) -> CloudInstance: ...

    def delete_instance(self, config: Config, name: str) -> None: ...

    def start_instance(self, config: Config, name: str) -> None: ...

    def stop_instance(self, config: Config, name: str) -> None: ...

    def get_instance_logs(self, config: Config, name: str) -> str: ...

    def create_volume(self, config: Config, name: str, size: str) -> NanosVolume: ...

    def get_all_volumes(self, config: Config) -> list[NanosVolume]: ...

    def delete_volume(self, config: Config, name: str) -> None: ...

    def attach_volume(self, config: Config, instance: str, volume: str) -> None: ...

    def detach_volume(self, config: Config, instance: str, volume: str) -> None: ...


class DisabledProvider:
    """Placeholder for a backend that is known but not built in."""

    def __init__(self, name: str):
        self.provider_name = name

    def initialize(self, cloud: ProviderConfig) -> None:
        raise ProviderDisabledError(f"[{self.provider_name}] provider - disabled")

    def __getattr__(self, attr: str):
        if attr.startswith("__"):
            raise AttributeError(attr)
        raise ProviderDisabledError(f"[{self.provider_name}] provider - disabled")


DISABLED_PROVIDERS = [
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


def _onprem() -> Provider:
    from .onprem import OnPremProvider

    return OnPremProvider()


def _aws() -> Provider:
    from .aws import AWSProvider

    return AWSProvider()


PROVIDERS = {
    "onprem": _onprem,
    "aws": _aws,
    **{name: (lambda n=name: DisabledProvider(n)) for name in DISABLED_PROVIDERS},
}


def get_provider(
    name: str | None = None, cloud: ProviderConfig | None = None
) -> Provider:
    """Create and initialize the provider registered under name.

    :param name: Provider name (default: UNIKOPS_PROVIDER or onprem)
    :param cloud: Provider settings passed to initialize
    :raises OpsError: If name is not a known provider
    """
    name = name or get_default_provider()
    if name not in PROVIDERS:
        raise OpsError(
            f"Unknown provider '{name}'. Available: {', '.join(sorted(PROVIDERS))}"
        )
    provider = PROVIDERS[name]()
    provider.initialize(cloud or ProviderConfig(platform=name))
    return provider
