# manager/graphmanager.py
import ipaddress
import logging
import math

import networkx as nx

UNKNOWN_COST = 65535


class GraphManager:
  """Interface graph of a lab.

  Routers are nodes, a directed edge u->v exists when an interface of u
  and an interface of v sit on the same network; its cost is u's
  interface cost. No IGP runs in the simulation, shortest paths over
  this graph stand in for the IGP metric to a BGP next hop.
  """

  def __init__(self, routers, neighbors=(), log=None):
    self.log = log or logging.getLogger("bgplab.graph")

    self.G_base  = nx.MultiDiGraph()
    self.G_sess  = nx.MultiGraph()
    self.owner   = {}     # address -> router id
    self.dist    = {}     # router id -> {router id: cost}
    self.routers = {r.id: r for r in routers}

    for r in routers:
      self.G_base.add_node(r.id)
      self.G_sess.add_node(r.id, name=r.name, asn=r.asn)
      for addr in r.addresses():
        self.owner.setdefault(addr, r.id)

    self.make_G()

    for n in neighbors:
      self.G_sess.add_edge(n.local_router_id, n.peer_router_id, key=n.id, session=n.session_type)

    self.log.info(
      f"[LAB] graph {self.G_base.number_of_nodes()} routers "
      f"{self.G_base.number_of_edges()} links {self.G_sess.number_of_edges()} sessions"
    )

  #----------------------------------------
  def check_link(self, iface):
    cost = iface.cost if iface.cost is not None else UNKNOWN_COST
    return {"cost": cost, "ifname": iface.name}

  #----------------------------------------
  def make_G(self):
    by_net = {}
    for r in self.routers.values():
      for iface in r.interfaces:
        by_net.setdefault(iface.subnet, []).append((r.id, iface))

    for net, members in by_net.items():
      for u, ui in members:
        for v, _ in members:
          if u == v:
            continue
          self.G_base.add_edge(u, v, key=str(net), **self.check_link(ui))

  #----------------------------------------
  def has_topology(self, *router_ids):
    return all(self.routers[r].interfaces for r in router_ids)

  def shared_network(self, u, v):
    """(u's interface, v's interface) on a common network, or None."""
    for ui in self.routers[u].interfaces:
      for vi in self.routers[v].interfaces:
        if ui.subnet == vi.subnet:
          return ui, vi
    return None

  def session_address(self, u, v):
    """Address u uses towards v: shared subnet, else loopback, else router-id."""
    r = self.routers[u]
    hit = self.shared_network(u, v)
    if hit is not None:
      return hit[0].address
    if r.loopbacks:
      return str(ipaddress.ip_interface(r.loopbacks[0]).ip)
    return r.router_id

  def hop_count(self, u, v):
    if u == v:
      return 0
    try:
      return nx.shortest_path_length(self.G_base, u, v)
    except (nx.NetworkXNoPath, nx.NodeNotFound):
      return None

  def reachable(self, u, v, ttl=None):
    """Can a BGP transport between u and v come up?"""
    if not self.has_topology(u, v):
      return True
    hops = self.hop_count(u, v)
    if hops is None:
      return False
    if ttl is None:
      return hops <= 1
    return hops <= ttl

  def igp_cost(self, router_id, next_hop):
    owner = self.owner.get(next_hop)
    if owner is None:
      # not a lab address, treat as directly attached if on one of our networks
      try:
        ip = ipaddress.ip_address(next_hop)
      except ValueError:
        return None
      for iface in self.routers[router_id].interfaces:
        if ip in iface.subnet:
          return iface.cost
      return None
    if owner == router_id:
      return 0
    if not self.has_topology(router_id, owner):
      return 0
    if router_id not in self.dist:
      self.dist[router_id] = nx.single_source_dijkstra_path_length(
        self.G_base, router_id, weight="cost")
    return self.dist[router_id].get(owner)

  #----------------------------------------
  def layout(self, radius=200):
    """Routers on a circle, in id order."""
    ids = sorted(self.G_sess.nodes())
    count = max(len(ids), 1)
    pos = {}
    for i, rid in enumerate(ids):
      angle = (i / count) * 2 * math.pi
      pos[rid] = (radius * math.cos(angle), radius * math.sin(angle))
    return pos
