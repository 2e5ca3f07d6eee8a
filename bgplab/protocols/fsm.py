# protocols/fsm.py
#
# BGP session FSM (RFC 4271 section 8) driven by simulated events.
# States are a plain Enum and every transition lives in TRANSITIONS;
# the FSM itself only moves state and runs the timer actions, anything
# that would touch a socket is handed back to the caller as an action tag.

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

log = logging.getLogger("bgplab.fsm")

# RFC 4271 10: large hold time used while waiting for OPEN
OPEN_HOLD_MS = 240_000


class FsmState(Enum):
    IDLE         = "Idle"
    CONNECT      = "Connect"
    ACTIVE       = "Active"
    OPEN_SENT    = "OpenSent"
    OPEN_CONFIRM = "OpenConfirm"
    ESTABLISHED  = "Established"


class FsmEvent(Enum):
    MANUAL_START               = "ManualStart"
    MANUAL_STOP                = "ManualStop"
    AUTOMATIC_START            = "AutomaticStart"
    CONNECT_RETRY_EXPIRES      = "ConnectRetryTimerExpires"
    HOLD_EXPIRES               = "HoldTimerExpires"
    KEEPALIVE_EXPIRES          = "KeepaliveTimerExpires"
    OPEN_RECEIVED              = "SimulatedOpenReceived"
    OPEN_ERROR                 = "SimulatedOpenError"
    KEEPALIVE_RECEIVED         = "SimulatedKeepaliveReceived"
    NOTIFICATION_RECEIVED      = "SimulatedNotificationReceived"
    TRANSPORT_UP               = "SimulatedTransportUp"
    TRANSPORT_DOWN             = "SimulatedTransportDown"
    MAX_PREFIX_EXCEEDED        = "MaxPrefixExceeded"


# action tags
START_CONNECT_RETRY = "start_connect_retry"
STOP_CONNECT_RETRY  = "stop_connect_retry"
CONNECT             = "connect"
SEND_OPEN           = "send_open"
SEND_KEEPALIVE      = "send_keepalive"
SEND_NOTIFICATION   = "send_notification"
NEGOTIATE_HOLD      = "negotiate_hold"
RESTART_HOLD        = "restart_hold"
RELEASE             = "release"
FAULT               = "fault"

S = FsmState
E = FsmEvent

_DROP        = (RELEASE,)
_DROP_NOTIFY = (SEND_NOTIFICATION, RELEASE, START_CONNECT_RETRY, FAULT)

TRANSITIONS: Dict[Tuple[FsmState, FsmEvent], Tuple[FsmState, Tuple[str, ...]]] = {
    # Idle. Automatic restart rides on the connect retry timer.
    (S.IDLE, E.MANUAL_START):             (S.CONNECT, (START_CONNECT_RETRY, CONNECT)),
    (S.IDLE, E.CONNECT_RETRY_EXPIRES):    (S.CONNECT, (START_CONNECT_RETRY, CONNECT)),
    # an inbound connection wakes a session that is waiting to restart
    (S.IDLE, E.AUTOMATIC_START):          (S.CONNECT, (START_CONNECT_RETRY, CONNECT)),

    # Connect
    (S.CONNECT, E.MANUAL_STOP):           (S.IDLE, _DROP),
    (S.CONNECT, E.TRANSPORT_UP):          (S.OPEN_SENT, (STOP_CONNECT_RETRY, SEND_OPEN)),
    (S.CONNECT, E.TRANSPORT_DOWN):        (S.ACTIVE, (START_CONNECT_RETRY,)),
    (S.CONNECT, E.CONNECT_RETRY_EXPIRES): (S.CONNECT, (START_CONNECT_RETRY, CONNECT)),

    # Active
    (S.ACTIVE, E.MANUAL_STOP):            (S.IDLE, _DROP),
    (S.ACTIVE, E.TRANSPORT_UP):           (S.OPEN_SENT, (STOP_CONNECT_RETRY, SEND_OPEN)),
    (S.ACTIVE, E.TRANSPORT_DOWN):         (S.ACTIVE, ()),
    (S.ACTIVE, E.CONNECT_RETRY_EXPIRES):  (S.CONNECT, (START_CONNECT_RETRY, CONNECT)),

    # OpenSent
    (S.OPEN_SENT, E.MANUAL_STOP):           (S.IDLE, (SEND_NOTIFICATION, RELEASE)),
    (S.OPEN_SENT, E.OPEN_RECEIVED):         (S.OPEN_CONFIRM, (NEGOTIATE_HOLD, SEND_KEEPALIVE)),
    (S.OPEN_SENT, E.OPEN_ERROR):            (S.IDLE, _DROP_NOTIFY),
    (S.OPEN_SENT, E.HOLD_EXPIRES):          (S.IDLE, _DROP_NOTIFY),
    (S.OPEN_SENT, E.TRANSPORT_DOWN):        (S.ACTIVE, (RELEASE, START_CONNECT_RETRY)),
    (S.OPEN_SENT, E.NOTIFICATION_RECEIVED): (S.IDLE, (RELEASE, START_CONNECT_RETRY, FAULT)),

    # OpenConfirm
    (S.OPEN_CONFIRM, E.MANUAL_STOP):           (S.IDLE, (SEND_NOTIFICATION, RELEASE)),
    (S.OPEN_CONFIRM, E.KEEPALIVE_RECEIVED):    (S.ESTABLISHED, (RESTART_HOLD,)),
    (S.OPEN_CONFIRM, E.KEEPALIVE_EXPIRES):     (S.OPEN_CONFIRM, (SEND_KEEPALIVE,)),
    (S.OPEN_CONFIRM, E.HOLD_EXPIRES):          (S.IDLE, _DROP_NOTIFY),
    (S.OPEN_CONFIRM, E.TRANSPORT_DOWN):        (S.IDLE, (RELEASE, START_CONNECT_RETRY, FAULT)),
    (S.OPEN_CONFIRM, E.NOTIFICATION_RECEIVED): (S.IDLE, (RELEASE, START_CONNECT_RETRY, FAULT)),

    # Established. Every way out is a failure.
    (S.ESTABLISHED, E.MANUAL_STOP):           (S.IDLE, (SEND_NOTIFICATION, RELEASE)),
    (S.ESTABLISHED, E.KEEPALIVE_RECEIVED):    (S.ESTABLISHED, (RESTART_HOLD,)),
    (S.ESTABLISHED, E.KEEPALIVE_EXPIRES):     (S.ESTABLISHED, (SEND_KEEPALIVE,)),
    (S.ESTABLISHED, E.HOLD_EXPIRES):          (S.IDLE, _DROP_NOTIFY),
    (S.ESTABLISHED, E.TRANSPORT_DOWN):        (S.IDLE, (RELEASE, START_CONNECT_RETRY, FAULT)),
    (S.ESTABLISHED, E.NOTIFICATION_RECEIVED): (S.IDLE, (RELEASE, START_CONNECT_RETRY, FAULT)),
    (S.ESTABLISHED, E.MAX_PREFIX_EXCEEDED):   (S.IDLE, _DROP_NOTIFY),
}

# passive sessions never dial out, they wait in Active
_PASSIVE_OVERRIDES = {
    (S.IDLE, E.MANUAL_START):          (S.ACTIVE, (START_CONNECT_RETRY,)),
    (S.IDLE, E.CONNECT_RETRY_EXPIRES): (S.ACTIVE, (START_CONNECT_RETRY,)),
    (S.IDLE, E.AUTOMATIC_START):       (S.ACTIVE, (START_CONNECT_RETRY,)),
    (S.ACTIVE, E.CONNECT_RETRY_EXPIRES): (S.ACTIVE, (START_CONNECT_RETRY,)),
}

# start events are only meaningful in Idle (RFC 4271 8.2.2)
_IGNORED_OUTSIDE_IDLE = {E.MANUAL_START, E.AUTOMATIC_START}

# timer expiry order inside one tick
TIMER_EVENTS = (
    ("connect_retry", E.CONNECT_RETRY_EXPIRES),
    ("keepalive",     E.KEEPALIVE_EXPIRES),
    ("hold",          E.HOLD_EXPIRES),
)


def lookup(state, event, passive=False):
    """Return (next_state, actions) for an event, or None if it is ignored."""
    if passive and (state, event) in _PASSIVE_OVERRIDES:
        return _PASSIVE_OVERRIDES[(state, event)]
    hit = TRANSITIONS.get((state, event))
    if hit is not None:
        return hit
    if state == S.IDLE or event in _IGNORED_OUTSIDE_IDLE:
        return None
    # anything unexpected outside Idle is an FSM error
    return (S.IDLE, _DROP_NOTIFY)


@dataclass
class Transition:
    session: str
    old: FsmState
    new: FsmState
    event: FsmEvent
    actions: Tuple[str, ...]

    @property
    def went_up(self):
        return self.new == S.ESTABLISHED and self.old != S.ESTABLISHED

    @property
    def went_down(self):
        return self.old == S.ESTABLISHED and self.new != S.ESTABLISHED

    @property
    def is_fault(self):
        return FAULT in self.actions


class SessionFsm:

    def __init__(self, name, hold_s, keepalive_s, connect_retry_s, passive=False):
        self.name = name
        self.passive = passive
        self.state = S.IDLE

        self.hold_cfg_ms = int(hold_s * 1000)
        self.keepalive_cfg_ms = int(keepalive_s * 1000)
        self.connect_retry_ms = int(connect_retry_s * 1000)

        # negotiated on OPEN
        self.hold_ms = self.hold_cfg_ms
        self.keepalive_ms = self.keepalive_cfg_ms

        self.timers: Dict[str, Optional[int]] = {
            "connect_retry": None,
            "keepalive": None,
            "hold": None,
        }

    def advance(self, ms):
        """Count timers down and return the events that are now due."""
        if ms <= 0:
            return []
        due = []
        for name, ev in TIMER_EVENTS:
            left = self.timers[name]
            if left is None:
                continue
            left -= ms
            self.timers[name] = left
            if left <= 0:
                due.append((name, ev))
        return due

    def expired(self, timer):
        left = self.timers[timer]
        return left is not None and left <= 0

    def handle(self, event, peer_hold_s=None):
        hit = lookup(self.state, event, self.passive)
        if hit is None:
            log.debug(f"[FSM] {self.name} ignore {event.value} in {self.state.value}")
            return None

        new, actions = hit
        old = self.state
        for act in actions:
            self._run_timer_action(act, peer_hold_s)
        self.state = new

        if old != new:
            log.info(f"[FSM] {self.name} {old.value} -> {new.value} on {event.value}")
        return Transition(self.name, old, new, event, actions)

    def _run_timer_action(self, act, peer_hold_s):
        t = self.timers
        if act == START_CONNECT_RETRY:
            t["connect_retry"] = self.connect_retry_ms
        elif act == STOP_CONNECT_RETRY:
            t["connect_retry"] = None
        elif act == SEND_OPEN:
            t["hold"] = OPEN_HOLD_MS
        elif act == NEGOTIATE_HOLD:
            peer_ms = self.hold_cfg_ms if peer_hold_s is None else int(peer_hold_s * 1000)
            self.hold_ms = min(self.hold_cfg_ms, peer_ms)
            if self.hold_ms <= 0:
                self.hold_ms = 0
                self.keepalive_ms = 0
                t["hold"] = None
                t["keepalive"] = None
            else:
                self.keepalive_ms = min(self.keepalive_cfg_ms or self.hold_ms, self.hold_ms // 3)
                t["hold"] = self.hold_ms
                t["keepalive"] = self.keepalive_ms
        elif act == RESTART_HOLD:
            if self.hold_ms:
                t["hold"] = self.hold_ms
        elif act == SEND_KEEPALIVE:
            if self.keepalive_ms:
                t["keepalive"] = self.keepalive_ms
        elif act == RELEASE:
            t["keepalive"] = None
            t["hold"] = None
            t["connect_retry"] = None
