from bgplab.protocols.fsm import (
    OPEN_HOLD_MS,
    TRANSITIONS,
    FsmEvent as E,
    FsmState as S,
    SessionFsm,
    lookup,
)


def established(hold_s=3, keepalive_s=1, peer_hold_s=None):
    fsm = SessionFsm("n1", hold_s=hold_s, keepalive_s=keepalive_s, connect_retry_s=5)
    fsm.handle(E.MANUAL_START)
    fsm.handle(E.TRANSPORT_UP)
    fsm.handle(E.OPEN_RECEIVED, peer_hold_s=hold_s if peer_hold_s is None else peer_hold_s)
    fsm.handle(E.KEEPALIVE_RECEIVED)
    return fsm


def test_handshake_to_established():
    fsm = SessionFsm("n1", hold_s=3, keepalive_s=1, connect_retry_s=5)

    tr = fsm.handle(E.MANUAL_START)
    assert (tr.old, tr.new) == (S.IDLE, S.CONNECT)
    assert fsm.timers["connect_retry"] == 5000

    fsm.handle(E.TRANSPORT_UP)
    assert fsm.state is S.OPEN_SENT
    assert fsm.timers["connect_retry"] is None
    assert fsm.timers["hold"] == OPEN_HOLD_MS

    fsm.handle(E.OPEN_RECEIVED, peer_hold_s=9)
    assert fsm.state is S.OPEN_CONFIRM
    assert fsm.hold_ms == 3000
    assert fsm.keepalive_ms == 1000

    tr = fsm.handle(E.KEEPALIVE_RECEIVED)
    assert fsm.state is S.ESTABLISHED
    assert tr.went_up
    assert not tr.is_fault


def test_hold_time_is_the_lower_of_both_ends():
    fsm = established(hold_s=90, keepalive_s=30, peer_hold_s=30)
    assert fsm.hold_ms == 30000
    # a third of the negotiated hold time
    assert fsm.keepalive_ms == 10000


def test_keepalive_defaults_to_a_third_of_hold():
    fsm = established(hold_s=9, keepalive_s=0)
    assert fsm.keepalive_ms == 3000


def test_zero_hold_disables_timers():
    fsm = established(hold_s=0, keepalive_s=0, peer_hold_s=180)
    assert fsm.state is S.ESTABLISHED
    assert fsm.timers["hold"] is None
    assert fsm.timers["keepalive"] is None
    assert fsm.advance(10_000_000) == []


def test_unknown_event_in_idle_is_ignored():
    fsm = SessionFsm("n1", 180, 60, 120)
    assert fsm.handle(E.KEEPALIVE_RECEIVED) is None
    assert fsm.state is S.IDLE


def test_unknown_event_elsewhere_is_an_fsm_error():
    fsm = SessionFsm("n1", 180, 60, 120)
    fsm.handle(E.MANUAL_START)
    tr = fsm.handle(E.OPEN_RECEIVED)
    assert tr.new is S.IDLE
    assert tr.is_fault
    assert lookup(S.CONNECT, E.KEEPALIVE_RECEIVED)[0] is S.IDLE


def test_timer_expiry_order():
    fsm = SessionFsm("n1", 180, 60, 120)
    fsm.timers.update(connect_retry=100, keepalive=100, hold=100)
    assert fsm.advance(100) == [
        ("connect_retry", E.CONNECT_RETRY_EXPIRES),
        ("keepalive", E.KEEPALIVE_EXPIRES),
        ("hold", E.HOLD_EXPIRES),
    ]
    assert fsm.expired("hold")
    assert fsm.advance(0) == []


def test_hold_expiry_drops_to_idle_and_arms_restart():
    fsm = established()
    assert fsm.advance(2000) == [("keepalive", E.KEEPALIVE_EXPIRES)]
    due = fsm.advance(1000)
    assert ("hold", E.HOLD_EXPIRES) in due

    tr = fsm.handle(E.HOLD_EXPIRES)
    assert tr.went_down
    assert tr.is_fault
    assert fsm.state is S.IDLE
    assert fsm.timers["connect_retry"] == 5000
    assert fsm.timers["hold"] is None


def test_automatic_restart_from_idle():
    fsm = established()
    fsm.handle(E.HOLD_EXPIRES)
    fsm.advance(5000)
    tr = fsm.handle(E.CONNECT_RETRY_EXPIRES)
    assert tr.new is S.CONNECT


def test_keepalive_refreshes_hold():
    fsm = established()
    fsm.advance(2500)
    fsm.handle(E.KEEPALIVE_RECEIVED)
    assert fsm.timers["hold"] == 3000


def test_manual_stop_is_not_a_fault():
    fsm = established()
    tr = fsm.handle(E.MANUAL_STOP)
    assert tr.went_down
    assert not tr.is_fault
    assert all(v is None for v in fsm.timers.values())


def test_passive_session_waits_in_active():
    fsm = SessionFsm("n1", 180, 60, 120, passive=True)
    fsm.handle(E.MANUAL_START)
    assert fsm.state is S.ACTIVE
    fsm.handle(E.CONNECT_RETRY_EXPIRES)
    assert fsm.state is S.ACTIVE
    fsm.handle(E.TRANSPORT_UP)
    assert fsm.state is S.OPEN_SENT


def test_every_way_out_of_established_is_listed():
    leaving = {ev for (st, ev), (nxt, _) in TRANSITIONS.items()
               if st is S.ESTABLISHED and nxt is S.IDLE}
    assert leaving == {
        E.MANUAL_STOP, E.HOLD_EXPIRES, E.TRANSPORT_DOWN,
        E.NOTIFICATION_RECEIVED, E.MAX_PREFIX_EXCEEDED,
    }


def test_start_is_ignored_outside_idle():
    fsm = established()
    for ev in (E.MANUAL_START, E.AUTOMATIC_START):
        assert fsm.handle(ev) is None
        assert fsm.state is S.ESTABLISHED
    for state in (S.CONNECT, S.ACTIVE, S.OPEN_SENT, S.OPEN_CONFIRM):
        assert lookup(state, E.MANUAL_START) is None


def test_automatic_start_wakes_idle():
    fsm = SessionFsm("n1", 180, 60, 120)
    assert fsm.handle(E.AUTOMATIC_START).new is S.CONNECT
    passive = SessionFsm("n2", 180, 60, 120, passive=True)
    assert passive.handle(E.AUTOMATIC_START).new is S.ACTIVE
