# manager/ribmanager.py
import logging
from collections import defaultdict
from dataclasses import replace
from typing import Dict, List, Optional

from bgplab.protocols.attributes import RibEntry, canonical_prefix


class RouterRibs:
  # - adj_in
  #   - peer
  #     - prefix: RibEntry (or tombstone)
  # - local
  #   - prefix: RibEntry (or tombstone)
  # - loc_rib
  #   - prefix: best RibEntry (or tombstone)
  # - multipath
  #   - prefix: (extra equal paths)
  # - adj_out
  #   - peer
  #     - prefix: RibEntry (or tombstone)

  def __init__(self, router_id):
    self.router_id = router_id
    self.adj_in    = defaultdict(dict)
    self.local     = {}
    self.loc_rib   = {}
    self.multipath = {}
    self.adj_out   = defaultdict(dict)

    self.revision  = 0
    self.prefix_rev = {}   # prefix -> revision of last candidate change
    self.select_rev = {}   # prefix -> revision seen by last selection
    self.selection  = {}   # prefix -> Selection

  def bump(self, prefix):
    self.revision += 1
    self.prefix_rev[prefix] = self.revision


class RibStore:
  def __init__(self, log=None):
    self.log  = log or logging.getLogger("bgplab.rib")
    self.RIBs: Dict[str, RouterRibs] = {}

  def add_router(self, router_id):
    self.RIBs[router_id] = RouterRibs(router_id)

  def get(self, router_id) -> RouterRibs:
    return self.RIBs[router_id]

  def routers(self):
    return sorted(self.RIBs.keys())

  #----------------------------------------
  # candidate side
  #----------------------------------------
  def install_local(self, router_id, prefix, entry):
    rib = self.RIBs[router_id]
    prefix = canonical_prefix(prefix)
    rib.local[prefix] = entry
    rib.bump(prefix)
    self.log.info(f"[RIB] {router_id} install local {prefix} nh {entry.next_hop}")

  def withdraw_local(self, router_id, prefix):
    rib = self.RIBs[router_id]
    prefix = canonical_prefix(prefix)
    old = rib.local.get(prefix)
    if old is None or old.withdrawn:
      return False
    rib.local[prefix] = old.tombstone()
    rib.bump(prefix)
    self.log.info(f"[RIB] {router_id} withdraw local {prefix}")
    return True

  def receive_from_peer(self, router_id, peer_id, prefix, entry: Optional[RibEntry]):
    """entry None is a withdrawal. Returns True if the table changed."""
    rib = self.RIBs[router_id]
    prefix = canonical_prefix(prefix)
    table = rib.adj_in[peer_id]
    old = table.get(prefix)

    if entry is None:
      if old is None or old.withdrawn:
        return False
      table[prefix] = old.tombstone()
      rib.bump(prefix)
      self.log.info(f"[RIB] {router_id} withdraw {prefix} from {peer_id}")
      return True

    if old is not None and not old.withdrawn and entry.same_route(old):
      return False
    table[prefix] = entry
    rib.bump(prefix)
    self.log.info(f"[RIB] {router_id} receive {prefix} from {peer_id} nh {entry.next_hop}")
    return True

  def withdraw_peer(self, router_id, peer_id):
    """Tombstone everything learned from and advertised to a peer."""
    rib = self.RIBs[router_id]
    affected = []
    for prefix, e in sorted(rib.adj_in.get(peer_id, {}).items()):
      if not e.withdrawn:
        rib.adj_in[peer_id][prefix] = e.tombstone()
        rib.bump(prefix)
        affected.append(prefix)
    for prefix, e in list(rib.adj_out.get(peer_id, {}).items()):
      if not e.withdrawn:
        rib.adj_out[peer_id][prefix] = e.tombstone()
    if affected:
      self.log.info(f"[RIB] {router_id} flush {len(affected)} prefixes from {peer_id}")
    return affected

  def accepted_count(self, router_id, peer_id):
    return sum(1 for e in self.RIBs[router_id].adj_in.get(peer_id, {}).values() if not e.withdrawn)

  def all_candidates(self, router_id, prefix) -> List[RibEntry]:
    rib = self.RIBs[router_id]
    prefix = canonical_prefix(prefix)
    out = []
    e = rib.local.get(prefix)
    if e is not None and not e.withdrawn:
      out.append(e)
    for peer in sorted(rib.adj_in.keys()):
      e = rib.adj_in[peer].get(prefix)
      if e is not None and not e.withdrawn:
        out.append(e)
    return out

  def dirty_prefixes(self, router_id):
    rib = self.RIBs[router_id]
    return sorted(p for p, rev in rib.prefix_rev.items() if rev > rib.select_rev.get(p, 0))

  def has_dirty(self):
    return any(self.dirty_prefixes(r) for r in self.RIBs)

  #----------------------------------------
  # Loc-RIB
  #----------------------------------------
  def best_local(self, router_id, prefix) -> Optional[RibEntry]:
    e = self.RIBs[router_id].loc_rib.get(canonical_prefix(prefix))
    if e is None or e.withdrawn:
      return None
    return e

  def set_best(self, router_id, selection):
    """Install a selection. Returns (old_best, new_best) if Loc-RIB changed."""
    rib = self.RIBs[router_id]
    prefix = selection.prefix
    rib.select_rev[prefix] = rib.revision
    rib.selection[prefix] = selection

    old = rib.loc_rib.get(prefix)
    if old is not None and old.withdrawn:
      old = None
    new = selection.best
    extra = tuple(selection.winners[1:])

    if new is None:
      rib.multipath.pop(prefix, None)
      if old is None:
        return None
      rib.loc_rib[prefix] = old.tombstone()
      self.log.info(f"[RIB] {router_id} loc-rib remove {prefix}")
      return (old, None)

    old_extra = rib.multipath.get(prefix, ())
    rib.loc_rib[prefix] = new
    if extra:
      rib.multipath[prefix] = extra
    else:
      rib.multipath.pop(prefix, None)

    if old is not None and new.same_route(old):
      if [x.peer for x in extra] != [x.peer for x in old_extra]:
        self.log.info(f"[RIB] {router_id} loc-rib {prefix} multipath set changed")
      return None
    self.log.info(f"[RIB] {router_id} loc-rib {prefix} via {new.next_hop} ({new.source.value})")
    return (old, new)

  def loc_rib(self, router_id, include_withdrawn=False) -> List[RibEntry]:
    rib = self.RIBs[router_id]
    return [
      rib.loc_rib[p] for p in sorted(rib.loc_rib.keys())
      if include_withdrawn or not rib.loc_rib[p].withdrawn
    ]

  def loc_rib_paths(self, router_id, prefix) -> List[RibEntry]:
    best = self.best_local(router_id, prefix)
    if best is None:
      return []
    return [best] + list(self.RIBs[router_id].multipath.get(canonical_prefix(prefix), ()))

  #----------------------------------------
  # Adj-RIB-Out
  #----------------------------------------
  def advertise(self, router_id, peer_id, prefix, entry: Optional[RibEntry]):
    """Record what was sent to a peer. Returns False if nothing new is sent."""
    table = self.RIBs[router_id].adj_out[peer_id]
    old = table.get(prefix)
    if entry is None:
      if old is None or old.withdrawn:
        return False
      table[prefix] = old.tombstone()
      return True
    if old is not None and not old.withdrawn and entry.same_route(old):
      return False
    table[prefix] = entry
    return True

  def advertised(self, router_id, peer_id, prefix):
    e = self.RIBs[router_id].adj_out.get(peer_id, {}).get(prefix)
    if e is None or e.withdrawn:
      return None
    return e

  #----------------------------------------
  # clock
  #----------------------------------------
  def _tables(self, rib):
    yield rib.local
    yield rib.loc_rib
    for t in rib.adj_in.values():
      yield t
    for t in rib.adj_out.values():
      yield t

  def _forget(self, rib, prefix):
    """Drop revision and selection state of a prefix no table holds any more."""
    if any(prefix in table for table in self._tables(rib)):
      return
    # still waiting for a selection
    if rib.prefix_rev.get(prefix, 0) > rib.select_rev.get(prefix, 0):
      return
    rib.prefix_rev.pop(prefix, None)
    rib.select_rev.pop(prefix, None)
    rib.selection.pop(prefix, None)
    rib.multipath.pop(prefix, None)

  def age(self, ms):
    if ms <= 0:
      return
    for rib in self.RIBs.values():
      for table in self._tables(rib):
        for prefix, e in table.items():
          table[prefix] = e.aged(ms)
      for prefix, extra in rib.multipath.items():
        rib.multipath[prefix] = tuple(e.aged(ms) for e in extra)

  def sweep(self, retention_ticks):
    """Count tombstones one tick older and drop the expired ones."""
    swept = 0
    for rib in self.RIBs.values():
      gone = set()
      for table in self._tables(rib):
        for prefix in list(table.keys()):
          e = table[prefix]
          if not e.withdrawn:
            continue
          if e.withdrawn_ticks + 1 > retention_ticks:
            del table[prefix]
            gone.add(prefix)
            swept += 1
          else:
            table[prefix] = replace(e, withdrawn_ticks=e.withdrawn_ticks + 1)
      for prefix in gone:
        self._forget(rib, prefix)
    if swept:
      self.log.debug(f"[RIB] swept {swept} tombstones")
    return swept
