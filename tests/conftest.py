"""Shared fixtures: an isolated tool home and a config pointing at it."""

import pytest

from unikops.config import Config, ProviderConfig, RunConfig, ensure_home


def pytest_addoption(parser):
    parser.addoption(
        "--image",
        default="",
        help="Image in UNIKOPS_HOME/images to boot in integration tests",
    )


@pytest.fixture(scope="session")
def image_name(request):
    return request.config.getoption("--image")


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("UNIKOPS_HOME", str(tmp_path))
    return ensure_home(tmp_path)


@pytest.fixture
def config(home):
    return Config(home=home, cloud=ProviderConfig(), run=RunConfig())


@pytest.fixture
def image(home):
    """An empty raw image named ``hello.img``."""
    path = home / "images" / "hello.img"
    path.write_bytes(b"\0" * 4096)
    return path
