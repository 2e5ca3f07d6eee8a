# manager/context.py
import logging
from collections import deque
from typing import Dict, List, Optional

from bgplab.manager.graphmanager import GraphManager
from bgplab.manager.ribmanager import RibStore
from bgplab.protocols.fsm import FsmState
from bgplab.protocols.models import Lab, Neighbor


class SimContext:
  """Everything one loaded lab owns. Created on load, dropped on reload."""

  def __init__(self, lab: Lab, event_history=1000, log=None):
    self.log = log or logging.getLogger("bgplab")

    self.lab       = lab
    self.routers   = lab.router_map()
    self.neighbors = lab.neighbor_map()

    self.GM  = GraphManager(lab.routers, lab.neighbors, log=self.log)
    self.RIB = RibStore(log=self.log)
    for rid in sorted(self.routers):
      self.RIB.add_router(rid)

    # neighbor id -> SessionRuntime, filled by the session manager
    self.sessions = {}

    # (router, peer) -> [neighbor ids linking them]
    self.links: Dict[tuple, List[str]] = {}
    for n in sorted(lab.neighbors, key=lambda n: n.id):
      self.links.setdefault((n.local_router_id, n.peer_router_id), []).append(n.id)
      self.links.setdefault((n.peer_router_id, n.local_router_id), []).append(n.id)

    self.now_ms   = 0
    self.ticks    = 0
    self.selected = None
    self.events   = deque(maxlen=event_history)
    self.callbacks = []

  #----------------------------------------
  # session views
  #----------------------------------------
  def view(self, router_id, peer_id) -> Optional[Neighbor]:
    """The neighbor configured on router_id towards peer_id, if any."""
    for nid in self.links.get((router_id, peer_id), []):
      n = self.neighbors[nid]
      if n.local_router_id == router_id:
        return n
    return None

  def linking(self, router_id, peer_id) -> List[Neighbor]:
    return [self.neighbors[nid] for nid in self.links.get((router_id, peer_id), [])]

  def peers_of(self, router_id):
    return sorted({p for (r, p) in self.links if r == router_id})

  def session_up(self, router_id, peer_id):
    nids = self.links.get((router_id, peer_id), [])
    if not nids:
      return False
    return all(
      nid in self.sessions and self.sessions[nid].fsm.state == FsmState.ESTABLISHED
      for nid in nids
    )

  def up_peers(self, router_id):
    return [p for p in self.peers_of(router_id) if self.session_up(router_id, p)]

  def session_families(self, router_id, peer_id):
    fams = None
    for n in self.linking(router_id, peer_id):
      fams = set(n.families) if fams is None else fams & set(n.families)
    return fams or set()

  def is_rr_client(self, router_id, peer_id):
    """Is peer_id a route reflector client of router_id?"""
    v = self.view(router_id, peer_id)
    return bool(v and v.route_reflector_client)

  def is_route_server_client(self, router_id, peer_id):
    v = self.view(router_id, peer_id)
    return bool(v and v.route_server_client)

  def next_hop_self(self, router_id, peer_id):
    v = self.view(router_id, peer_id)
    return self.routers[router_id].knobs.next_hop_self or bool(v and v.next_hop_self)

  #----------------------------------------
  # events
  #----------------------------------------
  def emit(self, ev):
    ev = dict(ev, tick=self.ticks, now_ms=self.now_ms)
    self.events.append(ev)
    for cb in self.callbacks:
      cb(ev)
