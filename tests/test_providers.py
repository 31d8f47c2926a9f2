from typing import get_args

import pytest

from unikops.config import ProviderConfig
from unikops.errors import OpsError, ProviderDisabledError
from unikops.onprem import OnPremProvider
from unikops.providers import DISABLED_PROVIDERS, PROVIDERS, DisabledProvider, get_provider
from unikops.types import ProviderName


def test_every_provider_name_is_registered():
    assert set(PROVIDERS) == set(get_args(ProviderName))


def test_unknown_provider():
    with pytest.raises(OpsError, match="Unknown provider 'nope'"):
        get_provider("nope")


@pytest.mark.parametrize("name", DISABLED_PROVIDERS)
def test_disabled_provider(name):
    with pytest.raises(ProviderDisabledError, match=rf"\[{name}\] provider - disabled"):
        get_provider(name)


def test_disabled_provider_operations():
    provider = DisabledProvider("gcp")
    with pytest.raises(ProviderDisabledError):
        provider.get_instances(None)
    with pytest.raises(AttributeError):
        provider.__wrapped__


def test_onprem(home):
    cloud = ProviderConfig(platform="onprem")
    provider = get_provider("onprem", cloud)
    assert isinstance(provider, OnPremProvider)
    assert provider.cloud is cloud


def test_default_provider(home, monkeypatch):
    monkeypatch.setenv("UNIKOPS_PROVIDER", "onprem")
    assert get_provider().provider_name == "onprem"
