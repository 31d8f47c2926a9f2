import pytest

from unikops.cidr import allocate_new_cidr_block, ipv6_subnet_block


@pytest.mark.parametrize(
    "existing, expected",
    [
        (["10.0.0.0/16"], "10.1.0.0/16"),
        (["10.0.0.0/16", "172.31.0.0/16"], "172.32.0.0/16"),
        (["10.0.0.0/24", "172.31.0.0/24"], "172.31.1.0/24"),
        (["10.0.0.0/16", "172.255.0.0/16"], "173.0.0.0/16"),
        (["10.0.0.0/16", "172.1.255.0/24"], "172.2.0.0/24"),
        (["10.0.0.0/16", "172.255.255.0/24"], "173.0.0.0/24"),
        (["10.0.0.0/16", "10.1.0.0/16"], "10.2.0.0/16"),
        (["172.255.0.0/16"], "173.0.0.0/16"),
        (["192.168.255.0/24"], "192.169.0.0/24"),
        (["10.0.0.0/8", "10.5.0.0/16"], "11.0.0.0/16"),
    ],
)
def test_allocate_new_cidr_block(existing, expected):
    assert allocate_new_cidr_block(existing) == expected


def test_allocate_does_not_overlap():
    existing = ["10.0.0.0/16", "10.1.0.0/24"]
    block = allocate_new_cidr_block(existing)
    assert block == "10.1.1.0/24"


def test_allocate_nothing_to_start_from():
    assert allocate_new_cidr_block([]) is None


def test_allocate_ignores_ipv6():
    assert allocate_new_cidr_block(["2600:1f18::/56"]) is None


def test_ipv6_subnet_block():
    assert ipv6_subnet_block("2600:1f18:abcd:1200::/56") == "2600:1f18:abcd:1200::/64"
