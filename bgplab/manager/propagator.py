# manager/propagator.py
import logging

from bgplab.protocols.attributes import RibEntry, Source
from bgplab.protocols.policy import IN, OUT, PolicyEngine


class UpdatePropagator:
  def __init__(self, policies: PolicyEngine, SM=None, log=None):
    self.log = log or logging.getLogger("bgplab.update")
    self.policies = policies
    self.SM = SM

  def attach_SM(self, SM):
    self.SM = SM

  # ---------- Loc-RIB -> peers ----------
  def on_loc_rib_change(self, ctx, router_id, prefix):
    for peer_id in ctx.up_peers(router_id):
      self.send(ctx, router_id, peer_id, prefix)

  def open_session(self, ctx, a, b):
    self.log.info(f"[UPDATE] session {a}-{b} up, exchanging tables")
    for src, dst in ((a, b), (b, a)):
      for e in ctx.RIB.loc_rib(src):
        self.send(ctx, src, dst, e.prefix)

  def close_session(self, ctx, a, b):
    affected_a = ctx.RIB.withdraw_peer(a, b)
    affected_b = ctx.RIB.withdraw_peer(b, a)
    self.log.info(
      f"[UPDATE] session {a}-{b} down, {len(affected_a) + len(affected_b)} routes withdrawn"
    )

  #----------------------------------------
  def send(self, ctx, r, q, prefix):
    best = ctx.RIB.best_local(r, prefix)
    out = self.export(ctx, r, q, best) if best is not None else None

    if not ctx.RIB.advertise(r, q, prefix, out):
      return False

    if out is None:
      self.log.info(f"[UPDATE] {r} -> {q} withdraw {prefix}")
      ctx.RIB.receive_from_peer(q, r, prefix, None)
      return True

    self.log.info(f"[UPDATE] {r} -> {q} {prefix} nh {out.next_hop} path {list(out.attrs.as_path)}")
    accepted = self.import_(ctx, q, r, out)
    changed = ctx.RIB.receive_from_peer(q, r, prefix, accepted)
    if changed and accepted is not None and self.SM is not None:
      self.SM.max_prefix_exceeded(ctx, q, r, ctx.RIB.accepted_count(q, r))
    return True

  #----------------------------------------
  def export(self, ctx, r, q, best: RibEntry):
    """What r advertises to q for its best route, or None."""
    router = ctx.routers[r]
    peer   = ctx.routers[q]

    if best.family not in ctx.session_families(r, q):
      return None
    # never back to where it came from
    if best.peer == q:
      return None

    ebgp = router.asn != peer.asn
    reflect = False
    if best.source.is_ibgp and not ebgp:
      from_client = best.source == Source.RR_CLIENT
      to_client = ctx.is_rr_client(r, q)
      if not (from_client or to_client):
        return None
      reflect = True

    addr  = ctx.GM.session_address(r, q)
    attrs = best.attrs.with_(weight=None)
    next_hop = best.next_hop

    if ebgp:
      if not ctx.is_route_server_client(r, q):
        attrs = attrs.prepend(router.asn)
        next_hop = addr
      attrs = attrs.with_(local_pref=None, originator_id=None, cluster_list=())
      if not best.source.is_local:
        attrs = attrs.with_(med=None)
      source = Source.EBGP
    else:
      if best.source.is_local or ctx.next_hop_self(r, q):
        next_hop = addr
      if reflect:
        attrs = attrs.with_(
          originator_id=attrs.originator_id or best.peer_bgp_id,
          cluster_list=(router.cluster_id,) + attrs.cluster_list,
        )
      source = Source.RR_CLIENT if ctx.is_rr_client(q, r) else Source.IBGP

    entry = RibEntry(
      prefix=best.prefix,
      attrs=attrs,
      source=source,
      next_hop=next_hop,
      peer=r,
      peer_bgp_id=router.router_id,
      peer_addr=addr,
    )
    view = ctx.view(r, q)
    return self.policies.apply(view.out_route_maps if view else (), entry, OUT, r, q)

  def import_(self, ctx, q, r, entry: RibEntry):
    """Receiver side checks and inbound policy on q for a route from r."""
    receiver = ctx.routers[q]
    a = entry.attrs
    if entry.source == Source.EBGP and receiver.asn in a.as_path:
      self.log.info(f"[UPDATE] {q} drop {entry.prefix} from {r}: AS loop")
      return None
    if a.originator_id == receiver.router_id:
      self.log.info(f"[UPDATE] {q} drop {entry.prefix} from {r}: originator is self")
      return None
    if receiver.cluster_id in a.cluster_list:
      self.log.info(f"[UPDATE] {q} drop {entry.prefix} from {r}: cluster loop")
      return None
    view = ctx.view(q, r)
    return self.policies.apply(view.in_route_maps if view else (), entry, IN, q, r)
