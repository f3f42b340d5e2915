from __future__ import annotations

from overlay_agent.network.gateways import ExtraRoute, GatewayMap


def test_exact_host_mapping_wins_over_subnet():
    gmap = GatewayMap.parse("203.0.113.0/24:192.0.2.1,203.0.113.5:203.0.113.1")

    assert gmap.resolve("203.0.113.5") == "203.0.113.1"
    assert gmap.resolve("203.0.113.9") == "192.0.2.1"
    assert gmap.resolve("198.51.100.1") is None


def test_most_specific_subnet_matches_first():
    gmap = GatewayMap.parse("10.0.0.0/8:192.0.2.1,10.1.0.0/16:192.0.2.2")

    assert gmap.resolve("10.1.2.3") == "192.0.2.2"
    assert gmap.resolve("10.2.2.3") == "192.0.2.1"


def test_effective_destination_falls_back_to_address():
    gmap = GatewayMap.parse("203.0.113.5:203.0.113.1")

    assert gmap.effective_destination("203.0.113.5") == "203.0.113.1"
    assert gmap.effective_destination("198.51.100.7") == "198.51.100.7"


def test_malformed_entries_are_ignored():
    gmap = GatewayMap.parse("garbage, 203.0.113.5:notanip, :1.2.3.4, 198.51.100.7:198.51.100.1")

    assert len(gmap) == 1
    assert gmap.to_dict() == {"198.51.100.7": "198.51.100.1"}


def test_extra_routes_parse():
    routes = ExtraRoute.parse_list("172.20.0.0/16:10.0.0.1:eth1, 172.21.0.5/16:10.0.0.2, bad")

    assert routes == [
        ExtraRoute("172.20.0.0/16", "10.0.0.1", "eth1"),
        ExtraRoute("172.21.0.0/16", "10.0.0.2", None),
    ]
    assert routes[0].to_route().device == "eth1"
