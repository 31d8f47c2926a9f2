"""Local raw-file volumes for on-prem instances.

A volume is ``volumes/<name>:<uuid>.raw``; the name doubles as the label
the guest mounts it by.
"""

import os
import uuid
from pathlib import Path

from .errors import OpsError, VolumeNotFoundError
from .types import NanosVolume
from .utils import log, timestamp_to_iso

VOLUME_DELIMITER = ":"
VOLUME_SUFFIX = ".raw"


def volume_path(volumes_dir: Path, name: str, volume_id: str) -> Path:
    return volumes_dir / f"{name}{VOLUME_DELIMITER}{volume_id}{VOLUME_SUFFIX}"


def parse_volume_filename(filename: str) -> tuple[str, str] | None:
    """Split ``name:uuid.raw`` into (name, uuid), or None if not a volume."""
    if not filename.endswith(VOLUME_SUFFIX):
        return None
    stem = filename[: -len(VOLUME_SUFFIX)]
    name, sep, volume_id = stem.rpartition(VOLUME_DELIMITER)
    if not sep or not name or not volume_id:
        return None
    return name, volume_id


def create_volume(volumes_dir: Path, name: str, size: int) -> NanosVolume:
    """Create an empty sparse volume of ``size`` bytes.

    :raises OpsError: If a volume with this name already exists
    """
    if VOLUME_DELIMITER in name:
        raise OpsError(f"volume name '{name}' must not contain '{VOLUME_DELIMITER}'")
    if any(v["name"] == name for v in get_volumes(volumes_dir)):
        raise OpsError(f"volume '{name}' already exists")

    volumes_dir.mkdir(parents=True, exist_ok=True)
    path = volume_path(volumes_dir, name, str(uuid.uuid4()))
    with open(path, "wb") as f:
        f.truncate(size)
    log(f"Created volume: '{name}' ({path})")
    return _describe(path)


def _describe(path: Path) -> NanosVolume:
    name, volume_id = parse_volume_filename(path.name)
    st = path.stat()
    return {
        "id": volume_id,
        "name": name,
        "label": name,
        "size": st.st_size,
        "path": str(path),
        "created_at": timestamp_to_iso(st.st_mtime),
        "attached_to": "",
        "status": "available",
    }


def get_volumes(volumes_dir: Path) -> list[NanosVolume]:
    if not volumes_dir.is_dir():
        return []
    volumes = []
    for entry in sorted(os.scandir(volumes_dir), key=lambda e: e.name):
        if entry.is_file() and parse_volume_filename(entry.name):
            try:
                volumes.append(_describe(Path(entry.path)))
            except FileNotFoundError:
                continue
    return volumes


def find_volume(volumes_dir: Path, query: str) -> NanosVolume:
    """Find a volume by name or uuid.

    :raises VolumeNotFoundError: If nothing matches
    """
    for volume in get_volumes(volumes_dir):
        if query in (volume["name"], volume["id"]):
            return volume
    raise VolumeNotFoundError(query)


def delete_volume(volumes_dir: Path, query: str) -> None:
    volume = find_volume(volumes_dir, query)
    Path(volume["path"]).unlink(missing_ok=True)
    log(f"Deleted volume: '{volume['name']}'")


def resolve_mounts(volumes_dir: Path, mounts: dict[str, str]) -> list[Path]:
    """Map each configured volume (name or uuid) to its backing file.

    :param mounts: Volume name or uuid -> guest mount point
    :raises VolumeNotFoundError: If a mount names a missing volume
    """
    return [Path(find_volume(volumes_dir, query)["path"]) for query in mounts]
