# manager/sessionmanager.py
#
# Drives one SessionFsm per neighbor and plays the part of the remote
# speaker: whatever the FSM "sends" is answered here, synchronously.

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional, Tuple

from bgplab.errors import SessionFault
from bgplab.protocols.fsm import (
  CONNECT,
  RELEASE,
  SEND_KEEPALIVE,
  SEND_NOTIFICATION,
  SEND_OPEN,
  FsmEvent,
  FsmState,
  SessionFsm,
  Transition,
)
from bgplab.protocols.models import Neighbor

E = FsmEvent

_CONNECTED = (FsmState.OPEN_SENT, FsmState.OPEN_CONFIRM, FsmState.ESTABLISHED)

_FAULT_REASON = {
  E.HOLD_EXPIRES:          "hold-timer-expired",
  E.OPEN_ERROR:            "malformed-open",
  E.MAX_PREFIX_EXCEEDED:   "max-prefix-exceeded",
  E.TRANSPORT_DOWN:        "transport-down",
  E.NOTIFICATION_RECEIVED: "notification-received",
}


@dataclass
class SessionRuntime:
  neighbor: Neighbor
  fsm: SessionFsm
  transport_up: bool = True
  drop_keepalives: bool = False
  bfd_left: Optional[int] = None
  last_fault: Optional[str] = None
  # (event, timer name or None, detail)
  pending: Deque[Tuple[FsmEvent, Optional[str], dict]] = field(default_factory=deque)


class SessionManager:
  def __init__(self, log=None):
    self.log = log or logging.getLogger("bgplab.session")

  #----------------------------------------
  def create(self, ctx):
    for nid in sorted(ctx.neighbors):
      n = ctx.neighbors[nid]
      t = ctx.routers[n.local_router_id].timers
      fsm = SessionFsm(nid, t.hold, t.keepalive, t.connect_retry, passive=n.passive)
      rt = SessionRuntime(neighbor=n, fsm=fsm)
      ctx.sessions[nid] = rt
      if not n.shutdown:
        rt.pending.append((E.MANUAL_START, None, {}))

  def rt(self, ctx, nid) -> SessionRuntime:
    return ctx.sessions[nid]

  def state(self, ctx, nid) -> FsmState:
    return ctx.sessions[nid].fsm.state

  #----------------------------------------
  # commands
  #----------------------------------------
  def post(self, ctx, nid, event, detail=None):
    ctx.sessions[nid].pending.append((event, None, detail or {}))

  def set_transport(self, ctx, nid, up):
    rt = ctx.sessions[nid]
    rt.transport_up = up
    bfd = rt.neighbor.bfd
    if not up and bfd is not None and bfd.enabled:
      rt.bfd_left = bfd.detection_ms
    else:
      rt.bfd_left = None
    self.log.info(f"[FSM] {nid} transport {'up' if up else 'down'}")

  def max_prefix_exceeded(self, ctx, router_id, peer_id, count):
    v = ctx.view(router_id, peer_id)
    if v is None or v.max_prefixes is None or count <= v.max_prefixes:
      return False
    self.log.warning(f"[FSM] {v.id} max-prefix {v.max_prefixes} exceeded ({count})")
    self.post(ctx, v.id, E.MAX_PREFIX_EXCEEDED, {"count": count})
    return True

  def has_pending(self, ctx):
    return any(rt.pending for rt in ctx.sessions.values())

  #----------------------------------------
  # clock
  #----------------------------------------
  def advance(self, ctx, ms):
    for nid in sorted(ctx.sessions):
      rt = ctx.sessions[nid]
      for timer, ev in rt.fsm.advance(ms):
        rt.pending.append((ev, timer, {}))
      if rt.bfd_left is not None:
        rt.bfd_left -= ms
        if rt.bfd_left <= 0:
          rt.bfd_left = None
          self.log.info(f"[FSM] {nid} bfd detection timeout")
          rt.pending.append((E.TRANSPORT_DOWN, None, {"reason": "bfd-down"}))

  def drain(self, ctx) -> List[Transition]:
    """Process every queued event. Returns the transitions that happened."""
    out = []
    for nid in sorted(ctx.sessions):
      rt = ctx.sessions[nid]
      self._accept_inbound(ctx, rt)
      while rt.pending:
        ev, timer, detail = rt.pending.popleft()
        if timer is not None:
          if not rt.fsm.expired(timer):
            continue
          rt.fsm.timers[timer] = None

        tr = rt.fsm.handle(ev, peer_hold_s=detail.get("hold"))
        if tr is None:
          continue
        self._run_io(ctx, rt, tr)
        self._report(ctx, rt, tr, detail)
        out.append(tr)
        self._accept_inbound(ctx, rt)
    return out

  #----------------------------------------
  # simulated remote speaker
  #----------------------------------------
  def _reverse(self, ctx, n) -> Optional[SessionRuntime]:
    """The runtime of the same session as configured on the peer."""
    v = ctx.view(n.peer_router_id, n.local_router_id)
    return ctx.sessions.get(v.id) if v is not None else None

  def _can_connect(self, ctx, n):
    if not ctx.sessions[n.id].transport_up:
      return False
    rev = self._reverse(ctx, n)
    # stopped by hand: Idle with nothing queued and no restart armed
    if (rev is not None and rev.fsm.state == FsmState.IDLE and not rev.pending
        and rev.fsm.timers["connect_retry"] is None):
      return False
    for other in ctx.linking(n.local_router_id, n.peer_router_id):
      if other.id != n.id and other.shutdown:
        return False
    ttl = n.multihop_ttl
    if ttl is None and not n.is_ebgp:
      ttl = 255
    return ctx.GM.reachable(n.local_router_id, n.peer_router_id, ttl)

  def _accept_inbound(self, ctx, rt):
    """A passive session in Active takes the remote speaker's connection."""
    n = rt.neighbor
    if not rt.fsm.passive or rt.fsm.state != FsmState.ACTIVE or rt.pending:
      return
    reverse = ctx.view(n.peer_router_id, n.local_router_id)
    if reverse is not None and reverse.passive:
      return
    if self._can_connect(ctx, n):
      rt.pending.append((E.TRANSPORT_UP, None, {}))

  def _peer_open(self, ctx, n):
    """The OPEN the remote speaker would send, checked as a receiver would."""
    local = ctx.routers[n.local_router_id]
    peer  = ctx.routers[n.peer_router_id]
    if peer.asn != n.peer_as:
      raise SessionFault("malformed-open", f"bad peer AS {peer.asn}, expected {n.peer_as}")
    if peer.router_id == local.router_id:
      raise SessionFault("malformed-open", f"BGP identifier collision {peer.router_id}")
    if not set(n.families) & set(peer.afi_safi.enabled()):
      raise SessionFault("malformed-open", "no common address family")
    reverse = ctx.view(n.peer_router_id, n.local_router_id)
    if reverse is not None and reverse.peer_as != local.asn:
      raise SessionFault("malformed-open", f"peer expects AS {reverse.peer_as}")
    return {"asn": peer.asn, "hold": peer.timers.hold, "bgp_id": peer.router_id}

  def _run_io(self, ctx, rt, tr):
    n = rt.neighbor
    for act in tr.actions:
      if act == CONNECT:
        if self._can_connect(ctx, n):
          rt.pending.appendleft((E.TRANSPORT_UP, None, {}))
          self._inbound(ctx, n)
        else:
          rt.pending.appendleft((E.TRANSPORT_DOWN, None, {"reason": "connect-failed"}))

      elif act == SEND_OPEN:
        if not rt.transport_up:
          continue
        try:
          msg = self._peer_open(ctx, n)
        except SessionFault as e:
          rt.pending.appendleft((E.OPEN_ERROR, None, {"reason": e.reason, "detail": e.detail}))
        else:
          rt.pending.appendleft((E.OPEN_RECEIVED, None, msg))

      elif act == SEND_KEEPALIVE:
        if rt.transport_up and not rt.drop_keepalives:
          rt.pending.appendleft((E.KEEPALIVE_RECEIVED, None, {}))

      elif act == SEND_NOTIFICATION:
        self.log.info(f"[FSM] {n.id} NOTIFICATION sent to {n.peer_router_id}")

      elif act == RELEASE:
        self._hang_up(ctx, n, SEND_NOTIFICATION in tr.actions)

  def _inbound(self, ctx, n):
    """The peer end sees our connection arrive."""
    rev = self._reverse(ctx, n)
    if rev is None or rev.pending:
      return
    if rev.fsm.state == FsmState.IDLE and rev.fsm.timers["connect_retry"] is not None:
      rev.pending.append((E.AUTOMATIC_START, None, {}))
    elif rev.fsm.state in (FsmState.CONNECT, FsmState.ACTIVE):
      rev.pending.append((E.TRANSPORT_UP, None, {}))

  def _hang_up(self, ctx, n, notified):
    """Closing our end takes the peer end of the session down too."""
    rev = self._reverse(ctx, n)
    if rev is None or rev.fsm.state not in _CONNECTED:
      return
    if notified:
      rev.pending.append((E.NOTIFICATION_RECEIVED, None, {}))
    else:
      rev.pending.append((E.TRANSPORT_DOWN, None, {}))

  def _report(self, ctx, rt, tr, detail):
    n = rt.neighbor
    base = {
      "neighbor": n.id,
      "local": n.local_router_id,
      "peer": n.peer_router_id,
    }
    if tr.old != tr.new:
      ctx.emit(dict(base, type="SESSION_STATE", old=tr.old.value, new=tr.new.value,
                    event=tr.event.value))
    if tr.is_fault:
      reason = detail.get("reason") or _FAULT_REASON.get(tr.event, "fsm-error")
      rt.last_fault = reason
      self.log.warning(f"[FSM] {n.id} fault {reason} in {tr.old.value}")
      ctx.emit(dict(base, type="SESSION_FAULT", reason=reason, state=tr.old.value,
                    detail=detail.get("detail", "")))
    if tr.went_up:
      rt.last_fault = None
      ctx.emit(dict(base, type="SESSION_UP"))
    elif tr.went_down:
      ctx.emit(dict(base, type="SESSION_DOWN", reason=rt.last_fault if tr.is_fault else "stopped"))
