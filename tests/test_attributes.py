import pytest

from bgplab.protocols.attributes import (
    Origin,
    PathAttributes,
    RibEntry,
    Source,
    canonical_prefix,
    parse_entry,
    prefix_family,
)


def test_canonical_prefix_masks_host_bits():
    assert canonical_prefix("10.0.0.1/24") == "10.0.0.0/24"
    assert canonical_prefix("2001:db8::1/32") == "2001:db8::/32"


def test_prefix_family():
    assert prefix_family("192.0.2.0/24") == "ipv4"
    assert prefix_family("2001:db8::/32") == "ipv6"


def test_origin_order_and_parse():
    assert Origin.IGP < Origin.EGP < Origin.INCOMPLETE
    assert Origin.parse("egp") is Origin.EGP
    assert Origin.INCOMPLETE.label() == "incomplete"
    with pytest.raises(KeyError):
        Origin.parse("bogus")


def test_source_kinds():
    assert Source.RR_CLIENT.is_ibgp
    assert Source.IBGP.is_ibgp
    assert not Source.EBGP.is_ibgp
    assert Source.AGGREGATE.is_local
    assert not Source.EBGP.is_local


def test_prepend_returns_new_attributes():
    a = PathAttributes(as_path=(65002,))
    b = a.prepend(65001)
    assert b.as_path == (65001, 65002)
    assert a.as_path == (65002,)
    assert b.first_as == 65001
    assert b.as_path_len == 2
    assert PathAttributes().first_as is None


def test_parse_entry_defaults():
    e = parse_entry({"prefix": "10.1.2.3/16"})
    assert e.prefix == "10.1.0.0/16"
    assert e.source is Source.LOCAL
    assert e.next_hop == "0.0.0.0"
    assert e.attrs.origin is Origin.IGP
    assert e.attrs.as_path == ()
    assert e.attrs.local_pref is None
    assert not e.withdrawn


def test_parse_entry_attributes():
    e = parse_entry({
        "prefix": "10.0.0.0/24",
        "source": "eBGP",
        "nextHop": "192.0.2.1",
        "pathAttributes": {
            "origin": "incomplete",
            "asPath": [65002, 65003],
            "med": 20,
            "localPref": 150,
            "communities": ["65002:1", "65002:2"],
            "aggregator": {"asn": 65003, "routerId": "3.3.3.3"},
        },
    }, peer="Y")
    assert e.source is Source.EBGP
    assert e.peer == "Y"
    assert e.attrs.as_path == (65002, 65003)
    assert e.attrs.med == 20
    assert e.attrs.communities == frozenset({"65002:1", "65002:2"})
    assert e.attrs.aggregator.router_id == "3.3.3.3"


def test_same_route_ignores_age():
    e = RibEntry("10.0.0.0/24", PathAttributes(), Source.LOCAL, "0.0.0.0")
    assert e.aged(500).same_route(e)
    assert e.aged(500).age_ms == 500
    assert not e.tombstone().same_route(e)
    assert not e.same_route(None)


def test_tombstone_resets_counter():
    e = RibEntry("10.0.0.0/24", PathAttributes(), Source.LOCAL, "0.0.0.0", withdrawn_ticks=2)
    t = e.tombstone()
    assert t.withdrawn
    assert t.withdrawn_ticks == 0


def test_to_dict_uses_lab_keys():
    e = RibEntry("10.0.0.0/24", PathAttributes(as_path=(65001,), med=5), Source.EBGP, "1.1.1.1")
    d = e.to_dict()
    assert d["nextHop"] == "1.1.1.1"
    assert d["source"] == "eBGP"
    assert d["pathAttributes"]["asPath"] == [65001]
    assert d["pathAttributes"]["med"] == 5
    assert d["pathAttributes"]["origin"] == "igp"
