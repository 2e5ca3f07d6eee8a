# protocols/decision.py
#
# Best path selection. Candidates are narrowed one attribute at a time;
# the first step that leaves a single route decides.

import ipaddress
import logging
from dataclasses import dataclass
from itertools import groupby
from typing import Callable, List, Optional, Sequence, Tuple

from bgplab.errors import InvariantViolation
from bgplab.protocols.attributes import (
    DEFAULT_LOCAL_PREF,
    DEFAULT_MED,
    DEFAULT_WEIGHT,
    RibEntry,
    Source,
)

log = logging.getLogger("bgplab.decision")

UNREACHABLE = float("inf")


@dataclass(frozen=True)
class Selection:
    prefix: str
    winners: Tuple[RibEntry, ...]
    step: str

    @property
    def best(self) -> Optional[RibEntry]:
        return self.winners[0] if self.winners else None


def top_group(routes, fct, lower_is_better=True):
    """Keep the routes sharing the best value of fct."""
    if not routes:
        return []
    vals = [fct(r) for r in routes]
    best = min(vals) if lower_is_better else max(vals)
    return [r for r, v in zip(routes, vals) if v == best]


def weight(r):
    return r.attrs.weight if r.attrs.weight is not None else DEFAULT_WEIGHT


def local_pref(r):
    return r.attrs.local_pref if r.attrs.local_pref is not None else DEFAULT_LOCAL_PREF


def med(r):
    return r.attrs.med if r.attrs.med is not None else DEFAULT_MED


def neighbor_as(r, local_asn):
    first = r.attrs.first_as
    return local_asn if first is None else first


def _ip_key(addr):
    if addr is None:
        return (1, 0, "")
    try:
        ip = ipaddress.ip_address(addr)
        return (0, ip.version, int(ip))
    except ValueError:
        return (0, 99, addr)


def stable_key(r):
    """Step 10: oldest first, then shorter cluster list, BGP id, address."""
    bgp_id = r.attrs.originator_id or r.peer_bgp_id
    return (
        -r.age_ms,
        len(r.attrs.cluster_list),
        _ip_key(bgp_id),
        _ip_key(r.peer_addr),
        r.peer or "",
    )


def _ebgp_rank(r):
    return 0 if r.source == Source.EBGP else 1


def _narrow_pre_med(routes):
    steps = (
        ("weight",     lambda rs: top_group(rs, weight, lower_is_better=False)),
        ("local-pref", lambda rs: top_group(rs, local_pref, lower_is_better=False)),
        ("local",      lambda rs: top_group(rs, lambda r: 0 if r.source.is_local else 1)),
        ("as-path",    lambda rs: top_group(rs, lambda r: r.attrs.as_path_len)),
        ("origin",     lambda rs: top_group(rs, lambda r: int(r.attrs.origin))),
    )
    return _run(routes, steps)


def _run(routes, steps, decided=None):
    for name, fn in steps:
        if len(routes) <= 1:
            break
        routes = fn(routes)
        if len(routes) == 1 and decided is None:
            decided = name
    return routes, decided


def _med_by_group(routes, local_asn):
    """Drop routes with a worse MED than another route from the same neighbor AS."""
    key = lambda r: neighbor_as(r, local_asn)
    out = []
    for _, grp in groupby(sorted(routes, key=key), key=key):
        out += top_group(list(grp), med)
    return out


def _multipath_set(routes, max_paths):
    if len(routes) < 2:
        return routes
    ordered = sorted(routes, key=stable_key)
    if all(r.source == Source.EBGP for r in ordered):
        lead = ordered[0]
        same = [r for r in ordered
                if r.attrs.first_as == lead.attrs.first_as
                and r.attrs.as_path_len == lead.attrs.as_path_len]
    elif all(r.source.is_ibgp for r in ordered):
        lead = ordered[0]
        same = [r for r in ordered if r.attrs == lead.attrs]
    else:
        same = ordered[:1]
    return same[:max(1, max_paths)]


def select(prefix, candidates: Sequence[RibEntry], router,
           igp_cost: Callable[[RibEntry], Optional[float]]) -> Selection:
    """Run the decision process for one prefix on one router.

    candidates must already exclude tombstones. Returns the winners with
    the best path first; more than one winner only with multipath.
    """
    knobs = router.knobs
    routes: List[RibEntry] = list(candidates)

    if not routes:
        return Selection(prefix, (), "withdrawn")
    if len(routes) == 1:
        return Selection(prefix, (routes[0],), "only-candidate")

    routes, decided = _narrow_pre_med(routes)

    def igp_key(r):
        c = igp_cost(r)
        return UNREACHABLE if c is None else c

    post_med = (
        ("ebgp-over-ibgp", lambda rs: top_group(rs, _ebgp_rank)),
        ("igp-cost",       lambda rs: top_group(rs, igp_key)),
    )

    if len(routes) > 1:
        if knobs.always_compare_med:
            routes = top_group(routes, med)
            if len(routes) == 1 and decided is None:
                decided = "med"
        elif knobs.deterministic_med:
            # resolve each neighbor AS group on its own, then compare winners
            key = lambda r: neighbor_as(r, router.asn)
            group_best = []
            for _, grp in groupby(sorted(routes, key=key), key=key):
                grp = top_group(list(grp), med)
                grp, _ = _run(grp, post_med)
                group_best.append(min(grp, key=stable_key))
            if len(group_best) == 1 and decided is None:
                decided = "deterministic-med"
            routes = group_best
        else:
            routes = _med_by_group(routes, router.asn)
            if len(routes) == 1 and decided is None:
                decided = "med"

    routes, decided = _run(routes, post_med, decided)

    if len(routes) > 1 and knobs.multipath:
        winners = _multipath_set(routes, knobs.max_paths)
        if decided is None:
            decided = "multipath" if len(winners) > 1 else "age/router-id"
    else:
        winners = [min(routes, key=stable_key)] if routes else []
        if decided is None:
            decided = "age/router-id"

    check_winners(router, prefix, winners)
    return Selection(prefix, tuple(winners), decided)


def check_winners(router, prefix, winners):
    if len(winners) > 1 and not router.knobs.multipath:
        raise InvariantViolation(
            f"{router.id} {prefix}: {len(winners)} winners with multipath disabled")
    if router.knobs.multipath and len(winners) > max(1, router.knobs.max_paths):
        raise InvariantViolation(
            f"{router.id} {prefix}: {len(winners)} winners exceed max-paths {router.knobs.max_paths}")
    prefixes = {w.prefix for w in winners}
    if len(prefixes) > 1:
        raise InvariantViolation(f"{router.id}: winners for {prefix} span {sorted(prefixes)}")
