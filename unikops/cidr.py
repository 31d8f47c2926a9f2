"""CIDR block allocation for new VPCs."""

import ipaddress

DEFAULT_VPC_CIDR = "10.0.0.0/16"


def allocate_new_cidr_block(existing: list[str]) -> str | None:
    """Pick the next block after the highest existing one.

    The new block has the same prefix length as the highest block and starts
    right after it, carrying into higher octets, so ``172.255.0.0/16``
    becomes ``173.0.0.0/16``. Steps again while the result overlaps any
    existing block.

    :param existing: CIDR blocks already in use in the account
    :return: New CIDR block, or None when there is nothing to start from
    """
    if not existing:
        return None

    networks = [ipaddress.ip_network(block, strict=False) for block in existing]
    networks = [n for n in networks if n.version == 4]
    if not networks:
        return None

    highest = max(networks, key=lambda n: int(n.network_address))
    step = highest.num_addresses
    candidate_start = int(highest.network_address) + step
    while True:
        if candidate_start + step > 2**32:
            return None
        candidate = ipaddress.ip_network(
            (candidate_start, highest.prefixlen), strict=True
        )
        if not any(candidate.overlaps(n) for n in networks):
            return str(candidate)
        candidate_start += step


def ipv6_subnet_block(vpc_ipv6_cidr: str) -> str:
    """First /64 of a VPC's IPv6 block."""
    network = ipaddress.ip_network(vpc_ipv6_cidr, strict=False)
    return f"{network.network_address}/64"
