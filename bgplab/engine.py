# engine.py
#
# Query/command facade over one simulation context. Loading, ticking and
# commands are serialised behind one lock; queries read snapshots.

import logging
import threading
from typing import Callable, List, Optional

from bgplab.errors import BgpLabError, InvariantViolation, LoadError
from bgplab.manager.clock import SimulationClock
from bgplab.manager.context import SimContext
from bgplab.manager.propagator import UpdatePropagator
from bgplab.manager.sessionmanager import SessionManager
from bgplab.protocols.attributes import RibEntry, canonical_prefix, parse_entry
from bgplab.protocols.fsm import FsmEvent, FsmState
from bgplab.protocols.models import Lab
from bgplab.protocols.policy import PolicyEngine
from bgplab.utils.config import EngineConfig
from bgplab.utils.diff import count_diffs, diff_dict
from bgplab.utils.lab import check_entry, parse_lab


class BgpEngine:
  def __init__(self, config: Optional[EngineConfig] = None, log=None):
    self.log    = log or logging.getLogger("bgplab.engine")
    self.config = config or EngineConfig()
    self.lock   = threading.Lock()
    self.ctx: Optional[SimContext] = None

    # M
    self.policies = PolicyEngine()
    self.SM = SessionManager(log=log)
    self.UP = UpdatePropagator(self.policies, log=log)
    self.UP.attach_SM(self.SM)
    self.clock = SimulationClock(self.SM, self.UP, self.config, log=log)

    self.callbacks: List[Callable[[dict], None]] = []
    self._log = log

  def register_callback(self, cb):
    self.callbacks.append(cb)
    if self.ctx is not None:
      self.ctx.callbacks.append(cb)

  #----------------------------------------
  # load
  #----------------------------------------
  def load_lab(self, doc):
    """Build a fresh context for doc and swap it in. On LoadError the
    current context is kept as it was."""
    with self.lock:
      try:
        lab = doc if isinstance(doc, Lab) else parse_lab(doc)
        ctx = self._build(lab)
      except LoadError as e:
        self.log.error(f"[LAB] load rejected: {e}")
        raise
      except (KeyError, TypeError, ValueError, AttributeError) as e:
        self.log.error(f"[LAB] load rejected: {e!r}")
        raise LoadError(f"lab: {e!r}") from e

      self.ctx = ctx
      ctx.callbacks = list(self.callbacks)
      self.log.info(f"[LAB] loaded {lab.id} ({lab.name})")
      ctx.emit({
        "type": "LAB_LOADED",
        "lab": lab.id,
        "routers": len(lab.routers),
        "neighbors": len(lab.neighbors),
      })
      return lab

  def _build(self, lab: Lab) -> SimContext:
    ctx = SimContext(lab, event_history=self.config.event_history, log=self._log)
    self.SM.create(ctx)

    for seed in lab.initial_ribs:
      e = seed.entry
      if seed.peer is None:
        ctx.RIB.install_local(seed.router_id, e.prefix, e)
      else:
        ctx.RIB.receive_from_peer(seed.router_id, seed.peer, e.prefix, e)

    # seeds are selected now, sessions wait for the first tick
    self.clock.converge(ctx, sessions=False)
    return ctx

  #----------------------------------------
  # clock
  #----------------------------------------
  def tick(self, duration_ms=None):
    """Advance the simulation. Returns False if nothing happened."""
    with self.lock:
      ctx = self.ctx
      if ctx is None:
        self.log.warning("tick without a lab")
        return False
      ms = self.config.tick_ms if duration_ms is None else duration_ms
      if isinstance(ms, bool) or int(ms) != ms:
        raise ValueError(f"tick duration must be whole milliseconds, got {ms!r}")
      ms = int(ms)
      if ms < 0:
        raise ValueError(f"negative tick duration {ms}")
      if ms == 0:
        return False

      before = self._snapshot(ctx)
      try:
        self.clock.tick(ctx, ms)
      except InvariantViolation as e:
        self.log.error(f"[DECISION] tick {ctx.ticks} aborted: {e}")
        raise
      after = self._snapshot(ctx)

      ctx.emit(dict(count_diffs(diff_dict(before, after)), type="TICK"))
      return True

  def _snapshot(self, ctx):
    snap = {}
    for r in ctx.RIB.routers():
      for e in ctx.RIB.loc_rib(r):
        snap[(r, e.prefix)] = (e.next_hop, e.source.value, e.attrs, e.peer)
    return snap

  #----------------------------------------
  # commands
  #----------------------------------------
  def select_router(self, router_id):
    with self.lock:
      ctx = self._ctx()
      if router_id is not None and router_id not in ctx.routers:
        raise KeyError(router_id)
      ctx.selected = router_id

  def originate(self, router_id, prefix, path_attributes=None, source="local", next_hop="0.0.0.0"):
    """Install a locally originated route and propagate it at once."""
    with self.lock:
      ctx = self._ctx()
      if router_id not in ctx.routers:
        raise KeyError(router_id)
      entry = parse_entry({
        "prefix": prefix,
        "pathAttributes": path_attributes or {},
        "source": source,
        "nextHop": next_hop,
      })
      if not entry.source.is_local:
        raise ValueError(f"originate needs a local or aggregate source, got {source}")
      try:
        check_entry(entry, f"originate on {router_id}")
      except LoadError as e:
        raise ValueError(str(e)) from None
      ctx.RIB.install_local(router_id, entry.prefix, entry)
      self.clock.converge(ctx, sessions=False)
      return entry

  def withdraw(self, router_id, prefix):
    with self.lock:
      ctx = self._ctx()
      if router_id not in ctx.routers:
        raise KeyError(router_id)
      if not ctx.RIB.withdraw_local(router_id, prefix):
        return False
      self.clock.converge(ctx, sessions=False)
      return True

  # session commands are queued and run on the next tick
  def start_session(self, neighbor_id):
    self._post(neighbor_id, FsmEvent.MANUAL_START)

  def stop_session(self, neighbor_id):
    self._post(neighbor_id, FsmEvent.MANUAL_STOP)

  def notify(self, neighbor_id, reason="notification-received"):
    self._post(neighbor_id, FsmEvent.NOTIFICATION_RECEIVED, {"reason": reason})

  def set_transport(self, neighbor_id, up):
    with self.lock:
      ctx = self._ctx()
      if neighbor_id not in ctx.sessions:
        raise KeyError(neighbor_id)
      # a failure is noticed by BFD if enabled, else only by the hold timer
      self.SM.set_transport(ctx, neighbor_id, bool(up))

  def drop_keepalives(self, neighbor_id, drop=True):
    with self.lock:
      ctx = self._ctx()
      ctx.sessions[neighbor_id].drop_keepalives = bool(drop)
      self.log.info(f"[FSM] {neighbor_id} keepalives {'dropped' if drop else 'restored'}")

  def _post(self, neighbor_id, event, detail=None):
    with self.lock:
      ctx = self._ctx()
      if neighbor_id not in ctx.sessions:
        raise KeyError(neighbor_id)
      self.SM.post(ctx, neighbor_id, event, detail)
      self.log.info(f"[FSM] {neighbor_id} queued {event.value}")

  def _ctx(self) -> SimContext:
    if self.ctx is None:
      raise BgpLabError("no lab loaded")
    return self.ctx

  #----------------------------------------
  # queries
  #----------------------------------------
  @property
  def current_lab(self) -> Optional[Lab]:
    return self.ctx.lab if self.ctx is not None else None

  @property
  def selected_router(self):
    return self.ctx.selected if self.ctx is not None else None

  @property
  def now_ms(self):
    return self.ctx.now_ms if self.ctx is not None else 0

  def list_routers(self):
    if self.ctx is None:
      return []
    return self.ctx.lab.routers_sorted()

  def list_neighbors(self):
    if self.ctx is None:
      return []
    return [self.ctx.neighbors[nid] for nid in sorted(self.ctx.neighbors)]

  def loc_rib(self, router_id) -> List[RibEntry]:
    return self._ctx().RIB.loc_rib(router_id)

  def loc_rib_paths(self, router_id, prefix) -> List[RibEntry]:
    return self._ctx().RIB.loc_rib_paths(router_id, prefix)

  def best_local(self, router_id, prefix) -> Optional[RibEntry]:
    return self._ctx().RIB.best_local(router_id, prefix)

  def candidates(self, router_id, prefix) -> List[RibEntry]:
    return self._ctx().RIB.all_candidates(router_id, prefix)

  def selection(self, router_id, prefix):
    return self._ctx().RIB.get(router_id).selection.get(canonical_prefix(prefix))

  def adj_rib_in(self, router_id, peer_id=None):
    return self._adj(self._ctx().RIB.get(router_id).adj_in, peer_id)

  def adj_rib_out(self, router_id, peer_id=None):
    return self._adj(self._ctx().RIB.get(router_id).adj_out, peer_id)

  def _adj(self, tables, peer_id):
    def live(table):
      return [table[p] for p in sorted(table) if not table[p].withdrawn]
    if peer_id is not None:
      return live(tables.get(peer_id, {}))
    return {peer: live(tables[peer]) for peer in sorted(tables) if live(tables[peer])}

  def session_state(self, neighbor_id) -> FsmState:
    return self._ctx().sessions[neighbor_id].fsm.state

  def events(self, kind=None):
    if self.ctx is None:
      return []
    return [ev for ev in self.ctx.events if kind is None or ev["type"] == kind]

  def inspect_router(self, router_id=None):
    """Details of one router (the selected one by default), or None."""
    ctx = self._ctx()
    router_id = router_id or ctx.selected
    if router_id is None:
      return None
    r = ctx.routers[router_id]
    rib = ctx.RIB.get(router_id)

    neighbors = []
    for peer in ctx.peers_of(router_id):
      for n in ctx.linking(router_id, peer):
        rt = ctx.sessions[n.id]
        neighbors.append({
          "id": n.id,
          "peer": peer,
          "sessionType": n.session_type,
          "state": rt.fsm.state.value,
          "lastFault": rt.last_fault,
          "received": ctx.RIB.accepted_count(router_id, peer),
        })

    loc = []
    for e in ctx.RIB.loc_rib(router_id):
      sel = rib.selection.get(e.prefix)
      loc.append({
        "prefix": e.prefix,
        "nextHop": e.next_hop,
        "localPref": e.attrs.local_pref,
        "med": e.attrs.med,
        "asPath": list(e.attrs.as_path),
        "source": e.source.value,
        "paths": len(ctx.RIB.loc_rib_paths(router_id, e.prefix)),
        "step": sel.step if sel else None,
      })

    return {
      "id": r.id,
      "name": r.name,
      "asn": r.asn,
      "routerId": r.router_id,
      "selected": ctx.selected == router_id,
      "neighbors": neighbors,
      "locRib": loc,
    }

  def topology(self, radius=200):
    """Nodes with positions and session edges with live state."""
    if self.ctx is None:
      return {"nodes": [], "edges": []}
    ctx = self.ctx
    pos = ctx.GM.layout(radius)
    nodes = [{
      "id": r.id,
      "name": r.name,
      "asn": r.asn,
      "x": pos[r.id][0],
      "y": pos[r.id][1],
      "selected": ctx.selected == r.id,
    } for r in ctx.lab.routers_sorted()]
    edges = [{
      "id": n.id,
      "source": n.local_router_id,
      "target": n.peer_router_id,
      "sessionType": n.session_type,
      "state": ctx.sessions[n.id].fsm.state.value,
    } for n in self.list_neighbors()]
    return {"nodes": nodes, "edges": edges}
