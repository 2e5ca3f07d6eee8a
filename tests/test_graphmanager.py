import pytest

from bgplab.manager.graphmanager import GraphManager
from bgplab.protocols.models import Interface, Neighbor, Router


def line():
    """A --5/7-- B --3/4-- C"""
    a = Router("A", "A", 65001, "1.1.1.1", loopbacks=("10.255.0.1/32",), interfaces=(
        Interface("a0", "eth0", "10.0.12.1/30", "10.0.12.0/30", 5),
    ))
    b = Router("B", "B", 65002, "2.2.2.2", interfaces=(
        Interface("b0", "eth0", "10.0.12.2/30", "10.0.12.0/30", 7),
        Interface("b1", "eth1", "10.0.23.1/30", "10.0.23.0/30", 3),
    ))
    c = Router("C", "C", 65003, "3.3.3.3", interfaces=(
        Interface("c0", "eth0", "10.0.23.2/30", "10.0.23.0/30", 4),
    ))
    n = Neighbor("A-C", "A", "C", 65001, 65003, multihop_ttl=2)
    return GraphManager([a, b, c], [n])


def test_links_from_shared_subnets():
    gm = line()
    assert gm.G_base.has_edge("A", "B")
    assert gm.G_base.has_edge("C", "B")
    assert not gm.G_base.has_edge("A", "C")
    assert gm.G_sess.number_of_edges() == 1


def test_igp_cost_is_shortest_path_over_interface_costs():
    gm = line()
    assert gm.igp_cost("A", "10.0.23.2") == 8
    assert gm.igp_cost("C", "10.0.12.1") == 11
    # own address
    assert gm.igp_cost("A", "10.0.12.1") == 0
    assert gm.igp_cost("A", "1.1.1.1") == 0


def test_igp_cost_for_foreign_addresses():
    gm = line()
    # on one of A's networks, but nobody in the lab owns it
    assert gm.igp_cost("A", "10.0.12.3") == 5
    assert gm.igp_cost("A", "192.0.2.1") is None
    assert gm.igp_cost("A", "not-an-address") is None


def test_reachability_honours_ttl():
    gm = line()
    assert gm.reachable("A", "B")
    assert not gm.reachable("A", "C")
    assert gm.reachable("A", "C", ttl=2)
    assert gm.hop_count("A", "C") == 2


def test_session_address_prefers_shared_subnet():
    gm = line()
    assert gm.session_address("A", "B") == "10.0.12.1"
    # no common network: first loopback, else router id
    assert gm.session_address("A", "C") == "10.255.0.1"
    assert gm.session_address("C", "A") == "3.3.3.3"


def test_labs_without_interfaces_are_fully_meshed():
    x = Router("X", "X", 1, "1.1.1.1")
    y = Router("Y", "Y", 2, "2.2.2.2")
    gm = GraphManager([x, y])
    assert gm.reachable("X", "Y")
    assert gm.igp_cost("X", "2.2.2.2") == 0


def test_layout_puts_routers_on_a_circle():
    x = Router("X", "X", 1, "1.1.1.1")
    y = Router("Y", "Y", 2, "2.2.2.2")
    pos = GraphManager([y, x]).layout(radius=100)
    assert pos["X"] == pytest.approx((100.0, 0.0))
    assert pos["Y"] == pytest.approx((-100.0, 0.0))
