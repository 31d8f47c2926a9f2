"""Bridged networking for on-prem instances.

Sets up a kernel bridge with the host's wired adapter and a tap device,
gets the bridge an address over DHCP, and finds the LAN address of an
instance from its MAC via the ARP cache.
"""

import errno
import ipaddress
import random
import re
from collections.abc import Callable

from pyroute2 import IPRoute, NetlinkError
from scapy.layers.dhcp import BOOTP, DHCP
from scapy.layers.inet import IP, UDP
from scapy.layers.l2 import Ether
from scapy.sendrecv import srp1
from scapy.utils import mac2str

from .errors import OpsError, PrivilegeError
from .utils import debug, log, run_cmd, warn

DEFAULT_BRIDGE = "br0"
DEFAULT_TAP = "tap0"
DHCP_MAC = "08:00:27:00:a8:e8"
DHCP_TIMEOUT = 10
BRIDGE_PREFIXLEN = 24

IFF_UP = 0x1
DHCP_OFFER = 2
DHCP_ACK = 5
DHCP_MESSAGE_TYPES = {"discover": 1, "offer": 2, "request": 3, "ack": 5, "nak": 6}

_CMDLINE_MAC_RE = re.compile(
    r"(?:^|[\s,])mac=([0-9A-Fa-f]{1,2}(?:[:-][0-9A-Fa-f]{1,2}){5})"
)
_ARP_IP_RE = re.compile(r"\(([^)]+)\)")


def format_mac_for_arp(mac: str) -> str:
    """Render a MAC the way ``arp -a`` prints it: lowercase, no leading zeros.

    ``08:00:27:00:A8:E8`` becomes ``8:0:27:0:a8:e8``. Already formatted input
    is returned unchanged.

    :raises ValueError: If mac is not six hex octets
    """
    octets = re.split(r"[:-]", mac.strip())
    if len(octets) != 6:
        raise ValueError(f"invalid mac address '{mac}'")
    try:
        values = [int(o, 16) for o in octets]
    except ValueError:
        raise ValueError(f"invalid mac address '{mac}'") from None
    if any(not o or v > 0xFF for o, v in zip(octets, values)):
        raise ValueError(f"invalid mac address '{mac}'")
    return ":".join(format(v, "x") for v in values)


def mac_from_cmdline(cmdline: str) -> str:
    """Pull the NIC MAC out of a hypervisor command line, or ""."""
    match = _CMDLINE_MAC_RE.search(cmdline)
    return match.group(1) if match else ""


def parse_arp_output(output: str, mac: str) -> str:
    """Return the IP of the first ARP entry for mac, or "".

    Entries look like ``? (192.168.1.20) at 8:0:27:0:a8:e8 on en0``.
    """
    target = format_mac_for_arp(mac)
    for line in output.splitlines():
        tokens = line.split()
        if "at" not in tokens:
            continue
        at = tokens.index("at")
        if at + 1 >= len(tokens):
            continue
        try:
            hw = format_mac_for_arp(tokens[at + 1])
        except ValueError:
            continue  # <incomplete>
        if hw != target:
            continue
        match = _ARP_IP_RE.search(line)
        if match:
            return match.group(1)
    return ""


def process_cmdline(pid: int) -> str:
    return run_cmd("ps", "ww", "-o", "args=", "-p", str(pid), check=False)


def arp_lookup(mac: str) -> str:
    return parse_arp_output(run_cmd("arp", "-an", check=False), mac)


def find_bridged_ip_by_pid(
    pid: int, on_resolved: Callable[[int, str, str], None] | None = None
) -> str:
    """Find the LAN address of a bridged instance from its MAC.

    Needs the guest to have sent traffic recently; returns "" rather than
    failing when the ARP cache has no entry yet.

    :param pid: Hypervisor process id
    :param on_resolved: Called with (pid, mac, ip) once an address is found
    :return: The instance IP, or ""
    """
    mac = mac_from_cmdline(process_cmdline(pid))
    if not mac:
        debug(f"no mac on command line of pid {pid}")
        return ""
    ip = arp_lookup(mac)
    if ip and on_resolved is not None:
        on_resolved(pid, mac, ip)
    return ip


def _option(packet, name: str):
    for opt in packet[DHCP].options:
        if isinstance(opt, tuple) and opt[0] == name:
            return opt[1]
    return None


def dhcp_message_type(packet) -> int | None:
    if packet is None or DHCP not in packet:
        return None
    value = _option(packet, "message-type")
    return DHCP_MESSAGE_TYPES.get(value) if isinstance(value, str) else value


def dhcp_request(iface: str, mac: str = DHCP_MAC, timeout: float = DHCP_TIMEOUT) -> str:
    """Run discover/offer/request/ack on iface for mac.

    :return: The acknowledged IPv4 address
    :raises OpsError: If no offer or ack arrives, or the lease is not IPv4
    """
    xid = random.getrandbits(32)
    chaddr = mac2str(mac)

    def packet(options: list) -> Ether:
        return (
            Ether(src=mac, dst="ff:ff:ff:ff:ff:ff")
            / IP(src="0.0.0.0", dst="255.255.255.255")
            / UDP(sport=68, dport=67)
            / BOOTP(chaddr=chaddr, xid=xid, flags=0x8000)
            / DHCP(options=options + ["end"])
        )

    try:
        offer = srp1(
            packet([("message-type", "discover")]), iface=iface, timeout=timeout, verbose=False
        )
        if dhcp_message_type(offer) != DHCP_OFFER:
            raise OpsError(f"no DHCP offer received on '{iface}'")
        offered = offer[BOOTP].yiaddr
        debug(f"DHCP offer {offered} on '{iface}'")

        ack = srp1(
            packet(
                [
                    ("message-type", "request"),
                    ("requested_addr", offered),
                    ("server_id", _option(offer, "server_id")),
                ]
            ),
            iface=iface,
            timeout=timeout,
            verbose=False,
        )
    except PermissionError as e:
        raise PrivilegeError("DHCP needs root or CAP_NET_RAW") from e

    if dhcp_message_type(ack) != DHCP_ACK:
        raise OpsError(f"DHCP request for {offered} on '{iface}' was not acknowledged")
    ip = ack[BOOTP].yiaddr
    try:
        ipaddress.IPv4Address(ip)
    except ValueError:
        raise OpsError(f"DHCP lease on '{iface}' is not IPv4: '{ip}'") from None
    return ip


def find_wired_adapter(ipr: IPRoute) -> str:
    """First interface that is up and named like a wired adapter (eth0, enp3s0)."""
    for link in ipr.get_links():
        name = link.get_attr("IFLA_IFNAME") or ""
        if name.startswith("e") and link["flags"] & IFF_UP:
            return name
    raise OpsError("no active wired network adapter found")


def _index(ipr: IPRoute, ifname: str) -> int:
    indexes = ipr.link_lookup(ifname=ifname)
    if not indexes:
        raise OpsError(f"interface '{ifname}' not found")
    return indexes[0]


def _ensure_link(ipr: IPRoute, ifname: str, **kind) -> int:
    indexes = ipr.link_lookup(ifname=ifname)
    if indexes:
        return indexes[0]
    ipr.link("add", ifname=ifname, **kind)
    return _index(ipr, ifname)


def _netlink_error(what: str, e: NetlinkError) -> OpsError:
    if e.code in (errno.EPERM, errno.EACCES):
        return PrivilegeError(f"{what} needs root or CAP_NET_ADMIN")
    return OpsError(f"{what}: {e}")


class BridgeNetwork:
    """Host bridge joining the wired adapter and instance tap devices.

    :param bridge: Bridge device name
    :param tap: Tap device created during setup
    :param mac: MAC used for the bridge's own DHCP lease
    :param dhcp: DHCP client, (iface, mac) -> ip
    """

    def __init__(
        self,
        bridge: str = DEFAULT_BRIDGE,
        tap: str = DEFAULT_TAP,
        mac: str = DHCP_MAC,
        dhcp: Callable[[str, str], str] = dhcp_request,
    ):
        self.bridge = bridge
        self.tap = tap
        self.mac = mac
        self.dhcp = dhcp

    def setup(self) -> str:
        """Create the bridge, enslave adapter and tap, and address the bridge.

        Stops at the first failing step without undoing earlier ones.

        :return: IP address assigned to the bridge
        """
        try:
            with IPRoute() as ipr:
                adapter = find_wired_adapter(ipr)
                log(f"Bridging adapter '{adapter}' into '{self.bridge}'")
                br = _ensure_link(ipr, self.bridge, kind="bridge")
                ipr.link("set", index=br, state="up")
                ipr.link("set", index=_index(ipr, adapter), master=br)
                tap = _ensure_link(ipr, self.tap, kind="tuntap", mode="tap")
                ipr.link("set", index=tap, state="up")
                ipr.link("set", index=tap, master=br)
        except NetlinkError as e:
            raise _netlink_error("bridge setup", e) from e

        ip = self.dhcp(self.bridge, self.mac)

        try:
            with IPRoute() as ipr:
                ipr.addr("replace", index=br, address=ip, mask=BRIDGE_PREFIXLEN)
        except NetlinkError as e:
            raise _netlink_error(f"assign {ip} to '{self.bridge}'", e) from e
        log(f"Bridge '{self.bridge}' is up at {ip}/{BRIDGE_PREFIXLEN}")
        return ip

    def teardown(self) -> list[str]:
        """Detach, bring down and delete adapter links, tap and bridge.

        Every step is attempted; failures are logged and returned.

        :return: Messages for the steps that failed
        """
        failures = []

        def step(what: str, fn: Callable[[IPRoute], None]) -> None:
            try:
                with IPRoute() as ipr:
                    fn(ipr)
            except (NetlinkError, OpsError) as e:
                message = f"{what}: {e}"
                warn(message)
                failures.append(message)

        step("detach adapter", lambda ipr: ipr.link(
            "set", index=_index(ipr, find_wired_adapter(ipr)), master=0))
        step(f"detach '{self.tap}'", lambda ipr: ipr.link(
            "set", index=_index(ipr, self.tap), master=0))
        step(f"bring down '{self.tap}'", lambda ipr: ipr.link(
            "set", index=_index(ipr, self.tap), state="down"))
        step(f"bring down '{self.bridge}'", lambda ipr: ipr.link(
            "set", index=_index(ipr, self.bridge), state="down"))
        step(f"delete '{self.tap}'", lambda ipr: ipr.link(
            "del", index=_index(ipr, self.tap)))
        step(f"delete '{self.bridge}'", lambda ipr: ipr.link(
            "del", index=_index(ipr, self.bridge)))

        if not failures:
            log(f"Removed bridge '{self.bridge}'")
        return failures

    def attach_tap(self, tap: str) -> None:
        """Make sure tap exists, is up and is enslaved to the bridge."""
        try:
            with IPRoute() as ipr:
                indexes = ipr.link_lookup(ifname=self.bridge)
                if not indexes:
                    raise OpsError(
                        f"bridge '{self.bridge}' not found; run 'unikops network setup'"
                    )
                index = _ensure_link(ipr, tap, kind="tuntap", mode="tap")
                ipr.link("set", index=index, master=indexes[0])
                ipr.link("set", index=index, state="up")
        except NetlinkError as e:
            raise _netlink_error(f"attach '{tap}' to '{self.bridge}'", e) from e
        debug(f"tap '{tap}' attached to '{self.bridge}'")
