import pytest

from unikops.errors import PortSpecError
from unikops.firewall import build_ingress_rules, parse_port_spec


class TestParsePortSpec:
    def test_single(self):
        assert parse_port_spec("80") == (80, 80)

    def test_range(self):
        assert parse_port_spec("9000-9040") == (9000, 9040)

    def test_wildcard(self):
        assert parse_port_spec("-1") == (-1, -1)

    @pytest.mark.parametrize("spec", ["", "http", "80-", "-80-90", "9040-9000", "70000", "1-2-3"])
    def test_malformed(self, spec):
        with pytest.raises(PortSpecError):
            parse_port_spec(spec)


class TestBuildIngressRules:
    def test_ipv4_only(self):
        rules = build_ingress_rules(["80", "9000-9040"], ["53"])
        assert rules == [
            {"IpProtocol": "tcp", "FromPort": 80, "ToPort": 80,
             "IpRanges": [{"CidrIp": "0.0.0.0/0"}]},
            {"IpProtocol": "tcp", "FromPort": 9000, "ToPort": 9040,
             "IpRanges": [{"CidrIp": "0.0.0.0/0"}]},
            {"IpProtocol": "udp", "FromPort": 53, "ToPort": 53,
             "IpRanges": [{"CidrIp": "0.0.0.0/0"}]},
        ]

    def test_ipv6_adds_icmpv6_first(self):
        rules = build_ingress_rules(["80"], [], enable_ipv6=True)
        assert rules[0] == {
            "IpProtocol": "icmpv6",
            "FromPort": -1,
            "ToPort": -1,
            "Ipv6Ranges": [{"CidrIpv6": "::/0"}],
        }
        assert rules[1]["IpProtocol"] == "tcp"
        assert rules[1]["IpRanges"] == [{"CidrIp": "0.0.0.0/0"}]
        assert rules[1]["Ipv6Ranges"] == [{"CidrIpv6": "::/0"}]

    def test_no_ports(self):
        assert build_ingress_rules(None, None) == []

    def test_malformed_port_fails(self):
        with pytest.raises(PortSpecError):
            build_ingress_rules(["80", "nope"], [])
