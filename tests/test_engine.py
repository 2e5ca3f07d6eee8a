import os

import pytest

from bgplab.errors import BgpLabError, LoadError
from bgplab.protocols.attributes import Source
from bgplab.protocols.fsm import FsmState
from bgplab.utils.lab import load_lab_file

from labdoc import ebgp_pair, lab, neighbor, router, seed

P = "10.0.0.0/24"


def test_scenario_a_route_crosses_ebgp_in_one_tick(engine):
    engine.load_lab(ebgp_pair())
    assert engine.loc_rib("Y") == []

    assert engine.tick(1000)

    assert engine.session_state("X-Y") is FsmState.ESTABLISHED
    assert engine.session_state("Y-X") is FsmState.ESTABLISHED
    rib = engine.loc_rib("Y")
    assert len(rib) == 1
    e = rib[0]
    assert e.prefix == P
    assert e.next_hop == "1.1.1.1"
    assert e.source is Source.EBGP
    assert e.attrs.as_path == (65001,)
    # local-pref is not carried over eBGP
    assert e.attrs.local_pref is None


def test_scenario_a_next_hop_is_the_link_address(engine, lab_dir):
    engine.load_lab(load_lab_file(os.path.join(lab_dir, "ebgp101.json")))
    engine.tick()
    e = engine.best_local("R2", P)
    assert e.next_hop == "192.168.12.1"
    assert e.source is Source.EBGP


def test_scenario_b_local_pref_decides(engine, lab_dir):
    engine.load_lab(load_lab_file(os.path.join(lab_dir, "localPrefVsMed.json")))
    best = engine.best_local("R3", "203.0.113.0/24")
    assert best.peer == "R1"
    assert best.attrs.local_pref == 200
    assert engine.selection("R3", "203.0.113.0/24").step == "local-pref"


def test_scenario_c_lowest_med_with_always_compare(engine):
    doc = lab(
        [router("R", 65000, "9.9.9.9", knobs={"alwaysCompareMed": True}),
         router("A", 64501, "1.1.1.1"), router("B", 64502, "2.2.2.2")],
        [neighbor("R", "A", 65000, 64501), neighbor("R", "B", 65000, 64502)],
        [seed("R", P, peer="A", source="eBGP", next_hop="1.1.1.1", asPath=[64501], med=20),
         seed("R", P, peer="B", source="eBGP", next_hop="2.2.2.2", asPath=[64502], med=10)],
    )
    engine.load_lab(doc)
    best = engine.best_local("R", P)
    assert best.attrs.med == 10
    assert best.peer == "B"


def test_scenario_d_hold_timer_expiry(engine):
    doc = ebgp_pair(keepalive=1, hold=3)
    doc["neighbors"] = [neighbor("X", "Y", 65001, 65002)]
    engine.load_lab(doc)
    engine.tick(1000)
    assert engine.session_state("X-Y") is FsmState.ESTABLISHED
    assert engine.best_local("Y", P) is not None

    engine.drop_keepalives("X-Y")
    engine.tick(1000)
    engine.tick(1000)
    assert engine.session_state("X-Y") is FsmState.ESTABLISHED
    assert engine.best_local("Y", P) is not None

    engine.tick(1000)
    assert engine.session_state("X-Y") is FsmState.IDLE
    assert engine.loc_rib("Y") == []
    assert engine.adj_rib_in("Y", "X") == []

    down = engine.events("SESSION_DOWN")
    assert [ev["reason"] for ev in down] == ["hold-timer-expired"]
    assert down[0]["tick"] == 4


def test_keepalives_keep_the_session_up(engine):
    engine.load_lab(ebgp_pair(keepalive=1, hold=3))
    for _ in range(10):
        engine.tick(1000)
    assert engine.session_state("X-Y") is FsmState.ESTABLISHED
    assert engine.best_local("Y", P) is not None


def test_withdrawal_reaches_everyone_at_once(engine):
    doc = lab(
        [router("X", 65001, "1.1.1.1"), router("Y", 65002, "2.2.2.2"), router("Z", 65003, "3.3.3.3")],
        [neighbor("X", "Y", 65001, 65002), neighbor("Y", "Z", 65002, 65003)],
        [seed("X", P)],
    )
    engine.load_lab(doc)
    engine.tick()
    z = engine.best_local("Z", P)
    assert z.attrs.as_path == (65002, 65001)
    assert z.next_hop == "2.2.2.2"

    now = engine.now_ms
    assert engine.withdraw("X", P)
    assert engine.loc_rib("Y") == []
    assert engine.loc_rib("Z") == []
    assert engine.now_ms == now
    assert not engine.withdraw("X", P)


def test_originate_propagates(engine):
    engine.load_lab(ebgp_pair())
    engine.tick()
    engine.originate("X", "10.9.0.0/16", {"med": 7})
    e = engine.best_local("Y", "10.9.0.0/16")
    assert e.attrs.med == 7
    with pytest.raises(ValueError):
        engine.originate("X", "10.8.0.0/16", source="eBGP")


def test_tombstones_are_swept_after_retention(engine):
    engine.load_lab(ebgp_pair())
    engine.tick()
    engine.withdraw("X", P)
    local = engine.ctx.RIB.get("X").local
    for _ in range(3):
        engine.tick()
        assert local[P].withdrawn
    engine.tick()
    assert P not in local


def test_tick_zero_is_a_no_op(engine):
    engine.load_lab(ebgp_pair())
    before = list(engine.events())
    assert engine.tick(0) is False
    assert engine.now_ms == 0
    assert engine.session_state("X-Y") is FsmState.IDLE
    assert engine.events() == before
    with pytest.raises(ValueError):
        engine.tick(-5)


def test_reload_gives_the_same_result(engine):
    engine.load_lab(ebgp_pair())
    engine.tick()
    first = [e.to_dict() for e in engine.loc_rib("Y")]

    engine.load_lab(ebgp_pair())
    assert engine.now_ms == 0
    assert engine.loc_rib("Y") == []
    engine.tick()
    assert [e.to_dict() for e in engine.loc_rib("Y")] == first


def test_failed_load_keeps_previous_lab(engine):
    engine.load_lab(ebgp_pair())
    engine.tick()

    bad = ebgp_pair()
    bad["neighbors"].append(neighbor("X", "Q", 65001, 65009))
    with pytest.raises(LoadError):
        engine.load_lab(bad)
    with pytest.raises(LoadError):
        engine.load_lab("not a lab")

    assert engine.current_lab.id == "pair"
    assert engine.now_ms == 1000
    assert engine.best_local("Y", P) is not None


def test_no_lab_loaded(engine):
    assert engine.tick() is False
    assert engine.list_routers() == []
    assert engine.events() == []
    assert engine.current_lab is None
    with pytest.raises(BgpLabError):
        engine.loc_rib("X")


def test_unknown_ids_raise_key_error(engine):
    engine.load_lab(ebgp_pair())
    with pytest.raises(KeyError):
        engine.loc_rib("nope")
    with pytest.raises(KeyError):
        engine.session_state("nope")
    with pytest.raises(KeyError):
        engine.select_router("nope")
    with pytest.raises(KeyError):
        engine.stop_session("nope")


def test_stop_and_start_session(engine):
    engine.load_lab(ebgp_pair())
    engine.tick()

    engine.stop_session("X-Y")
    engine.tick()
    assert engine.session_state("X-Y") is FsmState.IDLE
    assert engine.loc_rib("Y") == []
    down = {ev["neighbor"]: ev["reason"] for ev in engine.events("SESSION_DOWN")}
    assert down == {"X-Y": "stopped", "Y-X": "notification-received"}

    engine.start_session("X-Y")
    engine.tick()
    assert engine.session_state("X-Y") is FsmState.ESTABLISHED
    assert engine.session_state("Y-X") is FsmState.ESTABLISHED
    assert engine.best_local("Y", P) is not None


def test_notification_drops_the_session(engine):
    engine.load_lab(ebgp_pair())
    engine.tick()
    engine.notify("Y-X")
    engine.tick()
    assert engine.session_state("Y-X") is FsmState.IDLE
    assert engine.loc_rib("Y") == []
    faults = {ev["neighbor"]: ev["reason"] for ev in engine.events("SESSION_FAULT")}
    assert faults == {"Y-X": "notification-received", "X-Y": "transport-down"}
    assert engine.session_state("X-Y") is FsmState.IDLE


def test_shutdown_neighbor_never_starts(engine):
    doc = ebgp_pair()
    doc["neighbors"][1]["shutdown"] = True
    engine.load_lab(doc)
    engine.tick()
    assert engine.session_state("Y-X") is FsmState.IDLE
    assert engine.loc_rib("Y") == []


def test_bfd_detects_transport_loss(engine):
    doc = ebgp_pair()
    doc["neighbors"] = [neighbor("X", "Y", 65001, 65002,
                                 bfd={"enabled": True, "minTx": 300, "minRx": 300, "mult": 3})]
    engine.load_lab(doc)
    engine.tick()
    engine.set_transport("X-Y", False)
    engine.tick()
    assert engine.session_state("X-Y") is FsmState.IDLE
    assert engine.events("SESSION_FAULT")[-1]["reason"] == "bfd-down"


def test_without_bfd_only_the_hold_timer_notices(engine):
    doc = ebgp_pair()
    doc["neighbors"] = [neighbor("X", "Y", 65001, 65002)]
    engine.load_lab(doc)
    engine.tick()
    engine.set_transport("X-Y", False)
    engine.tick()
    assert engine.session_state("X-Y") is FsmState.ESTABLISHED


def test_peer_as_mismatch_is_a_malformed_open(engine):
    doc = ebgp_pair()
    doc["neighbors"] = [neighbor("X", "Y", 65001, 65099)]
    engine.load_lab(doc)
    engine.tick()
    assert engine.session_state("X-Y") is FsmState.IDLE
    fault = engine.events("SESSION_FAULT")[-1]
    assert fault["reason"] == "malformed-open"
    assert engine.ctx.sessions["X-Y"].last_fault == "malformed-open"


def test_shared_router_id_is_a_malformed_open(engine):
    doc = ebgp_pair()
    doc["routers"][1]["routerId"] = "1.1.1.1"
    doc["neighbors"] = [neighbor("X", "Y", 65001, 65002)]
    engine.load_lab(doc)
    engine.tick()
    assert engine.session_state("X-Y") is FsmState.IDLE
    assert "collision" in engine.events("SESSION_FAULT")[-1]["detail"]


def test_passive_session_is_answered(engine):
    doc = ebgp_pair()
    doc["neighbors"][0]["passive"] = True
    engine.load_lab(doc)
    engine.tick()
    assert engine.session_state("X-Y") is FsmState.ESTABLISHED
    assert engine.best_local("Y", P) is not None


def test_both_ends_passive_never_connect(engine):
    doc = ebgp_pair()
    for n in doc["neighbors"]:
        n["passive"] = True
    engine.load_lab(doc)
    engine.tick()
    assert engine.session_state("X-Y") is FsmState.ACTIVE
    assert engine.session_state("Y-X") is FsmState.ACTIVE


def test_unreachable_peer_stays_down(engine):
    doc = lab(
        [router("X", 65001, "1.1.1.1", interfaces=[
            {"id": "x0", "name": "eth0", "ip": "10.0.1.1/30", "network": "10.0.1.0/30"}]),
         router("Y", 65002, "2.2.2.2", interfaces=[
            {"id": "y0", "name": "eth0", "ip": "10.0.2.1/30", "network": "10.0.2.0/30"}])],
        [neighbor("X", "Y", 65001, 65002)],
        [seed("X", P)],
    )
    engine.load_lab(doc)
    engine.tick()
    assert engine.session_state("X-Y") is FsmState.ACTIVE
    assert engine.loc_rib("Y") == []


def test_callbacks_see_events(engine):
    seen = []
    engine.register_callback(seen.append)
    engine.load_lab(ebgp_pair())
    engine.tick()
    kinds = [ev["type"] for ev in seen]
    assert kinds[0] == "LAB_LOADED"
    assert "SESSION_UP" in kinds
    assert kinds[-1] == "TICK"
    assert seen[-1]["added"] == 1


def test_inspect_and_topology(engine):
    engine.load_lab(ebgp_pair())
    engine.tick()
    assert engine.inspect_router() is None

    engine.select_router("Y")
    assert engine.selected_router == "Y"
    info = engine.inspect_router()
    assert info["asn"] == 65002
    assert info["routerId"] == "2.2.2.2"
    assert info["locRib"][0]["prefix"] == P
    assert info["locRib"][0]["asPath"] == [65001]
    assert {n["state"] for n in info["neighbors"]} == {"Established"}

    topo = engine.topology()
    assert [n["id"] for n in topo["nodes"]] == ["X", "Y"]
    assert [n["selected"] for n in topo["nodes"]] == [False, True]
    assert {e["state"] for e in topo["edges"]} == {"Established"}


def test_queries_return_sorted_snapshots(engine):
    engine.load_lab(ebgp_pair())
    engine.tick()
    assert [r.id for r in engine.list_routers()] == ["X", "Y"]
    assert [n.id for n in engine.list_neighbors()] == ["X-Y", "Y-X"]
    assert [e.prefix for e in engine.adj_rib_out("X", "Y")] == [P]
    assert list(engine.adj_rib_in("Y")) == ["X"]
    assert engine.candidates("Y", P)[0].peer == "X"
    assert engine.loc_rib_paths("Y", P)[0].peer == "X"


def test_start_on_a_running_session_is_ignored(engine):
    engine.load_lab(ebgp_pair())
    engine.tick()
    engine.start_session("X-Y")
    engine.tick()
    assert engine.session_state("X-Y") is FsmState.ESTABLISHED
    assert engine.events("SESSION_FAULT") == []
    assert engine.events("SESSION_DOWN") == []
    assert engine.best_local("Y", P) is not None


def test_stopping_one_end_takes_both_ends_down(engine):
    engine.load_lab(ebgp_pair())
    engine.tick()
    engine.stop_session("X-Y")
    for _ in range(5):
        engine.tick()
    assert engine.session_state("X-Y") is FsmState.IDLE
    assert engine.session_state("Y-X") is not FsmState.ESTABLISHED


def test_stopped_end_refuses_the_restarting_peer(engine):
    engine.load_lab(ebgp_pair())
    engine.tick()
    engine.stop_session("X-Y")
    engine.tick()
    # Y-X restarts after connect-retry (120s) but X-Y stays stopped
    for _ in range(130):
        engine.tick()
    assert engine.session_state("X-Y") is FsmState.IDLE
    assert engine.session_state("Y-X") is FsmState.ACTIVE
    assert engine.loc_rib("Y") == []


def test_hold_expiry_notifies_the_peer_end(engine):
    engine.load_lab(ebgp_pair(keepalive=1, hold=3))
    engine.tick(1000)
    engine.drop_keepalives("X-Y")
    for _ in range(3):
        engine.tick(1000)
    assert engine.session_state("X-Y") is FsmState.IDLE
    assert engine.session_state("Y-X") is FsmState.IDLE
    faults = {ev["neighbor"]: ev["reason"] for ev in engine.events("SESSION_FAULT")}
    assert faults == {"X-Y": "hold-timer-expired", "Y-X": "notification-received"}


@pytest.mark.parametrize("duration", [0.5, 1000.5, True])
def test_fractional_tick_is_rejected(engine, duration):
    engine.load_lab(ebgp_pair())
    with pytest.raises(ValueError):
        engine.tick(duration)
    assert engine.now_ms == 0


def test_whole_float_tick_is_accepted(engine):
    engine.load_lab(ebgp_pair())
    assert engine.tick(1000.0)
    assert engine.now_ms == 1000


@pytest.mark.parametrize("attrs, next_hop", [
    ({"med": -1}, "0.0.0.0"),
    ({"localPref": -5}, "0.0.0.0"),
    ({"weight": "heavy"}, "0.0.0.0"),
    ({}, "nowhere"),
])
def test_originate_checks_values(engine, attrs, next_hop):
    engine.load_lab(ebgp_pair())
    with pytest.raises(ValueError):
        engine.originate("X", "10.9.0.0/16", attrs, next_hop=next_hop)
    assert engine.best_local("X", "10.9.0.0/16") is None
