# manager/clock.py
import logging

from bgplab.protocols import decision


class SimulationClock:
  def __init__(self, SM, UP, config, log=None):
    self.log = log or logging.getLogger("bgplab.clock")
    self.SM = SM
    self.UP = UP
    self.config = config

  #----------------------------------------
  def tick(self, ctx, duration_ms):
    if duration_ms <= 0:
      return False

    ctx.now_ms += duration_ms
    ctx.ticks  += 1

    ctx.RIB.age(duration_ms)
    ctx.RIB.sweep(self.config.tombstone_retention_ticks)
    self.SM.advance(ctx, duration_ms)
    self.converge(ctx)
    return True

  #----------------------------------------
  def converge(self, ctx, sessions=True):
    """Run sessions, decision and propagation until nothing is dirty."""
    rounds = 0
    while True:
      if sessions:
        self.apply_transitions(ctx, self.SM.drain(ctx))

      dirty = {r: ctx.RIB.dirty_prefixes(r) for r in ctx.RIB.routers()}
      if not any(dirty.values()):
        if not (sessions and self.SM.has_pending(ctx)):
          break
        continue

      rounds += 1
      if rounds > self.config.max_convergence_rounds:
        left = sum(len(v) for v in dirty.values())
        self.log.warning(f"[DECISION] no convergence after {rounds - 1} rounds, {left} prefixes carried over")
        break

      # select everything first so propagation never sees a half-updated round
      changes = []
      for r in sorted(dirty):
        for prefix in dirty[r]:
          if self.run_decision(ctx, r, prefix):
            changes.append((r, prefix))

      for r, prefix in changes:
        self.UP.on_loc_rib_change(ctx, r, prefix)

  def run_decision(self, ctx, router_id, prefix):
    router = ctx.routers[router_id]
    cands = ctx.RIB.all_candidates(router_id, prefix)
    sel = decision.select(
      prefix, cands, router,
      lambda e: ctx.GM.igp_cost(router_id, e.next_hop),
    )
    change = ctx.RIB.set_best(router_id, sel)
    if change is None:
      return False

    old, new = change
    if new is None:
      self.log.info(f"[DECISION] {router_id} {prefix} withdrawn")
    else:
      via = new.peer or "local"
      self.log.info(f"[DECISION] {router_id} {prefix} best via {via} ({sel.step}) of {len(cands)}")
    ctx.emit({
      "type": "LOC_RIB",
      "router": router_id,
      "prefix": prefix,
      "action": "withdraw" if new is None else ("add" if old is None else "replace"),
      "step": sel.step,
    })
    return True

  #----------------------------------------
  def apply_transitions(self, ctx, transitions):
    for tr in transitions:
      n = ctx.neighbors[tr.session]
      a, b = n.local_router_id, n.peer_router_id
      if tr.went_up and ctx.session_up(a, b):
        self.UP.open_session(ctx, a, b)
      elif tr.went_down:
        self.UP.close_session(ctx, a, b)
