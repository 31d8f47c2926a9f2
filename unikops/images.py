"""Image builder seam and local disk image helpers."""

import os
import re
import shlex
from pathlib import Path
from typing import Protocol

from dotenv import load_dotenv

from .config import Config
from .errors import ImageNotFoundError, OpsError
from .types import CloudImage
from .utils import log, run_cmd, timestamp_to_iso

IMAGE_SUFFIX = ".img"
DEFAULT_BUILDER = "mkimage"

_SIZE_RE = re.compile(r"^(\d+)\s*([kmgt]?)b?$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}


class ImageBuilder(Protocol):
    def build_image(self, config: Config) -> Path: ...

    def build_image_from_package(self, pkg_path: Path, config: Config) -> Path: ...


def image_file_name(config: Config) -> str:
    name = config.run.image_name or Path(config.program).name
    if not name:
        raise OpsError("no image name or program given")
    return name if name.endswith(IMAGE_SUFFIX) else name + IMAGE_SUFFIX


class ExternalImageBuilder:
    """Build images by running an external builder binary.

    The binary is taken from UNIKOPS_IMAGE_BUILDER (default ``mkimage``) and
    receives the whole run configuration as flags.
    """

    def __init__(self, command: list[str] | None = None):
        if command is None:
            load_dotenv()
            command = shlex.split(os.getenv("UNIKOPS_IMAGE_BUILDER", DEFAULT_BUILDER))
        self.command = command

    def _args(self, config: Config, output: Path) -> list[str]:
        args = ["--output", str(output)]
        if config.run.arch:
            args += ["--arch", config.run.arch]
        for arg in config.args:
            args += ["--arg", arg]
        for key, value in config.env.items():
            args += ["--env", f"{key}={value}"]
        for server in config.name_servers:
            args += ["--nameserver", server]
        for volume, guest_dir in config.mounts.items():
            args += ["--mount", f"{volume}:{guest_dir}"]
        if config.base_volume_sz:
            args += ["--base-volume-size", config.base_volume_sz]
        return args

    def build_image(self, config: Config) -> Path:
        if not config.program:
            raise OpsError("no program given to build an image from")
        output = config.images_dir / image_file_name(config)
        output.parent.mkdir(parents=True, exist_ok=True)
        run_cmd(*self.command, "--program", config.program, *self._args(config, output))
        log(f"Built image: '{output}'")
        return output

    def build_image_from_package(self, pkg_path: Path, config: Config) -> Path:
        output = config.images_dir / image_file_name(config)
        output.parent.mkdir(parents=True, exist_ok=True)
        run_cmd(*self.command, "--package", str(pkg_path), *self._args(config, output))
        log(f"Built image: '{output}' from package '{pkg_path.name}'")
        return output


def parse_size(size: str) -> int:
    """Parse ``"512m"``/``"1G"``/``"4096"`` into bytes."""
    match = _SIZE_RE.match(str(size).strip())
    if not match:
        raise ValueError(f"invalid size '{size}'")
    return int(match.group(1)) * _SIZE_UNITS[match.group(2).lower()]


def list_local_images(images_dir: Path) -> list[CloudImage]:
    if not images_dir.is_dir():
        return []
    images = []
    for path in sorted(images_dir.glob(f"*{IMAGE_SUFFIX}")):
        st = path.stat()
        images.append(
            {
                "id": path.name,
                "name": path.name,
                "status": "available",
                "size": st.st_size,
                "created": timestamp_to_iso(st.st_mtime),
                "path": str(path),
            }
        )
    return images


def local_image_path(images_dir: Path, name: str) -> Path:
    """Resolve an image name, with or without suffix, to an existing file.

    :raises ImageNotFoundError: If neither form exists
    """
    for candidate in (images_dir / name, images_dir / f"{name}{IMAGE_SUFFIX}"):
        if candidate.is_file():
            return candidate
    raise ImageNotFoundError(name)


def delete_local_image(images_dir: Path, name: str) -> None:
    path = local_image_path(images_dir, name)
    path.unlink(missing_ok=True)
    log(f"Deleted image: '{path.name}'")


def resize_local_image(images_dir: Path, name: str, size: str) -> int:
    """Grow a raw image to ``size``. Shrinking is refused.

    :return: New size in bytes
    """
    path = local_image_path(images_dir, name)
    new_size = parse_size(size)
    if new_size < path.stat().st_size:
        raise OpsError(f"image '{name}' is larger than {size}; shrinking is not supported")
    with open(path, "r+b") as f:
        f.truncate(new_size)
    log(f"Resized image: '{path.name}' to {new_size} bytes")
    return new_size
