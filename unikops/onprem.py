"""On-prem provider: instances are local qemu processes."""

import shutil
from pathlib import Path

from .config import Config, ProviderConfig, ensure_home
from .errors import NotFoundError
from .images import (
    ExternalImageBuilder,
    ImageBuilder,
    delete_local_image,
    image_file_name,
    list_local_images,
    parse_size,
    resize_local_image,
)
from .qemu import QMPClient
from .registry import InstanceRegistry
from .types import CloudImage, CloudInstance, InstanceRecord, NanosVolume
from .utils import log
from .volumes import create_volume, delete_volume, find_volume, get_volumes


class OnPremProvider:
    provider_name = "onprem"

    def __init__(self, builder: ImageBuilder | None = None):
        self.builder = builder or ExternalImageBuilder()
        self.cloud = ProviderConfig(platform="onprem")

    def initialize(self, cloud: ProviderConfig) -> None:
        self.cloud = cloud

    def registry(self, config: Config) -> InstanceRegistry:
        return InstanceRegistry(ensure_home(config.home))

    def build_image(self, config: Config) -> Path:
        return self.builder.build_image(config)

    def build_image_with_package(self, config: Config, pkg_path: Path) -> Path:
        return self.builder.build_image_from_package(pkg_path, config)

    def create_image(self, config: Config, image_path: Path) -> None:
        """Copy a built image into images/ unless it is already there."""
        dest = config.images_dir / (
            image_file_name(config) if config.run.image_name else image_path.name
        )
        if Path(image_path).resolve() == dest.resolve():
            return
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(image_path, dest)
        log(f"Created image: '{dest.name}'")

    def get_images(self, config: Config) -> list[CloudImage]:
        return list_local_images(config.images_dir)

    def delete_image(self, config: Config, name: str) -> None:
        delete_local_image(config.images_dir, name)

    def resize_image(self, config: Config, name: str, size: str) -> None:
        resize_local_image(config.images_dir, name, size)

    def create_instance(self, config: Config) -> str:
        return str(self.create_instance_record(config)["pid"])

    def create_instance_record(self, config: Config) -> InstanceRecord:
        return self.registry(config).create(config)

    def get_instances(self, config: Config) -> list[CloudInstance]:
        return self.registry(config).instances()

    def get_instance_by_name(self, config: Config, name: str) -> CloudInstance:
        return self.registry(config).get_instance(name)

    def delete_instance(self, config: Config, name: str) -> None:
        self.registry(config).delete(name)

    def _qmp(self, config: Config, name: str) -> QMPClient:
        record = self.registry(config).get(name)
        return QMPClient(record["mgmt"])

    def start_instance(self, config: Config, name: str) -> None:
        self._qmp(config, name).execute("cont")
        log(f"Resumed instance '{name}'")

    def stop_instance(self, config: Config, name: str) -> None:
        self._qmp(config, name).execute("stop")
        log(f"Paused instance '{name}'")

    def get_instance_logs(self, config: Config, name: str) -> str:
        path = self.registry(config).log_path(name)
        if not path.exists():
            raise NotFoundError(f"no logs for instance '{name}'")
        return path.read_text(errors="replace")

    def create_volume(self, config: Config, name: str, size: str) -> NanosVolume:
        return create_volume(config.volumes_dir, name, parse_size(size))

    def get_all_volumes(self, config: Config) -> list[NanosVolume]:
        return get_volumes(config.volumes_dir)

    def delete_volume(self, config: Config, name: str) -> None:
        delete_volume(config.volumes_dir, name)

    def attach_volume(self, config: Config, instance: str, volume: str) -> None:
        """Hot-plug a volume as a scsi disk through the instance's monitor."""
        vol = find_volume(config.volumes_dir, volume)
        qmp = self._qmp(config, instance)
        node = vol["name"]
        qmp.execute(
            "blockdev-add",
            {
                "driver": "raw",
                "node-name": node,
                "file": {"driver": "file", "filename": vol["path"]},
            },
        )
        device = {"driver": "scsi-hd", "bus": "scsi0.0", "drive": node, "id": node}
        if config.run.attach_id:
            device["device_id"] = f"persistent-disk-{config.run.attach_id}"
        qmp.execute("device_add", device)
        log(f"Attached volume '{node}' to '{instance}'")

    def detach_volume(self, config: Config, instance: str, volume: str) -> None:
        vol = find_volume(config.volumes_dir, volume)
        qmp = self._qmp(config, instance)
        qmp.execute("device_del", {"id": vol["name"]})
        qmp.execute("blockdev-del", {"node-name": vol["name"]})
        log(f"Detached volume '{vol['name']}' from '{instance}'")
