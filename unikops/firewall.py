"""Ingress rule construction from port specifications."""

import re

from .errors import PortSpecError

ANY_IPV4 = "0.0.0.0/0"
ANY_IPV6 = "::/0"

_RANGE_RE = re.compile(r"^(\d+)-(\d+)$")
_SINGLE_RE = re.compile(r"^-?\d+$")


def parse_port_spec(spec: str) -> tuple[int, int]:
    """Parse ``"80"`` or ``"9000-9040"`` into (from_port, to_port).

    ``"-1"`` is accepted as the all-ports wildcard used by ICMP rules.

    :raises PortSpecError: If the string is not a port or port range
    """
    spec = str(spec).strip()
    match = _RANGE_RE.match(spec)
    if match:
        from_port, to_port = int(match.group(1)), int(match.group(2))
    elif _SINGLE_RE.match(spec):
        from_port = to_port = int(spec)
    else:
        raise PortSpecError(spec)

    if from_port == -1 and to_port == -1:
        return from_port, to_port
    if not (0 <= from_port <= 65535 and 0 <= to_port <= 65535) or from_port > to_port:
        raise PortSpecError(spec)
    return from_port, to_port


def _rule(protocol: str, spec: str, ipv4: bool, ipv6: bool) -> dict:
    from_port, to_port = parse_port_spec(spec)
    rule = {"IpProtocol": protocol, "FromPort": from_port, "ToPort": to_port}
    if ipv4:
        rule["IpRanges"] = [{"CidrIp": ANY_IPV4}]
    if ipv6:
        rule["Ipv6Ranges"] = [{"CidrIpv6": ANY_IPV6}]
    return rule


def build_ingress_rules(
    tcp_ports: list[str] | None,
    udp_ports: list[str] | None,
    enable_ipv6: bool = False,
) -> list[dict]:
    """Build EC2 IpPermissions for the given ports.

    Every spec is parsed before anything is returned, so a malformed port
    fails before any network call. Order: ICMPv6 (when IPv6 is on), then
    TCP, then UDP.

    :param tcp_ports: TCP port or range strings
    :param udp_ports: UDP port or range strings
    :param enable_ipv6: Add ::/0 ranges and an ICMPv6 allow-all rule
    :return: List of IpPermissions dicts
    """
    rules = []
    if enable_ipv6:
        rules.append(_rule("icmpv6", "-1", ipv4=False, ipv6=True))
    for spec in tcp_ports or []:
        rules.append(_rule("tcp", spec, ipv4=True, ipv6=enable_ipv6))
    for spec in udp_ports or []:
        rules.append(_rule("udp", spec, ipv4=True, ipv6=enable_ipv6))
    return rules
