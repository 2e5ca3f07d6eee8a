# utils/lab.py
#
# Lab documents (camelCase JSON) -> frozen model objects.
# Every inconsistency is a LoadError naming the object it was found on.

import ipaddress
import json
import logging
import os
from dataclasses import replace

from bgplab.errors import LoadError
from bgplab.protocols.attributes import parse_entry
from bgplab.protocols.models import (
  FAMILIES,
  AfiSafi,
  AsPathList,
  Bfd,
  CommunityList,
  Interface,
  Knobs,
  Lab,
  Neighbor,
  Policy,
  PrefixList,
  RouteMap,
  Router,
  Seed,
  Timers,
)

log = logging.getLogger("bgplab.lab")

# vpn families ride on top of their base family
_BASE_FAMILY = {"vpnv4": "ipv4", "vpnv6": "ipv6"}


#----------------------------------------
# small checks
#----------------------------------------
def _need(raw, key, where):
  if not isinstance(raw, dict):
    raise LoadError(f"{where}: expected an object, got {type(raw).__name__}")
  if key not in raw or raw[key] in (None, ""):
    raise LoadError(f"{where}: missing '{key}'")
  return raw[key]

def _int(value, what, where, minimum=None):
  if isinstance(value, bool):
    raise LoadError(f"{where}: {what} must be an integer, got {value!r}")
  try:
    v = int(value)
  except (TypeError, ValueError):
    raise LoadError(f"{where}: {what} must be an integer, got {value!r}") from None
  if minimum is not None and v < minimum:
    raise LoadError(f"{where}: {what} must be >= {minimum}, got {v}")
  return v

def _ip(value, what, where):
  try:
    return str(ipaddress.ip_address(value))
  except ValueError:
    raise LoadError(f"{where}: bad {what} {value!r}") from None

def _named(items, cls, field, where):
  out = []
  for raw in items or []:
    name = _need(raw, "name", where)
    out.append(cls(name, tuple(raw.get(field, []) or [])))
  return tuple(out)


#----------------------------------------
# routers
#----------------------------------------
def parse_afi_safi(raw, where):
  if raw is None:
    return AfiSafi()
  if isinstance(raw, list):
    unknown = [f for f in raw if f not in FAMILIES]
    if unknown:
      raise LoadError(f"{where}: unknown address family {unknown[0]!r}")
    return AfiSafi(**{f: (f in raw) for f in FAMILIES})
  unknown = [f for f in raw if f not in FAMILIES]
  if unknown:
    raise LoadError(f"{where}: unknown address family {unknown[0]!r}")
  return AfiSafi(**{f: bool(raw.get(f, False)) for f in FAMILIES})

def parse_interface(raw, where):
  iid = _need(raw, "id", where)
  where = f"{where} interface {iid}"
  ip = _need(raw, "ip", where)
  net = _need(raw, "network", where)
  try:
    addr = ipaddress.ip_interface(ip)
    subnet = ipaddress.ip_network(net, strict=False)
  except ValueError as e:
    raise LoadError(f"{where}: {e}") from None
  if addr.ip not in subnet:
    raise LoadError(f"{where}: {ip} is not inside {net}")
  cost = _int(raw.get("cost", 1), "cost", where, minimum=0)
  return Interface(iid, raw.get("name", iid), ip, str(subnet), cost)

def parse_router(raw):
  rid = _need(raw, "id", "router")
  where = f"router {rid}"

  asn = _int(_need(raw, "asn", where), "asn", where, minimum=1)
  bgp_id = raw.get("routerId")
  if not bgp_id:
    raise LoadError(f"{where}: missing 'routerId'")
  try:
    bgp_id = str(ipaddress.IPv4Address(bgp_id))
  except ValueError:
    raise LoadError(f"{where}: routerId must be a dotted quad, got {bgp_id!r}") from None

  loopbacks = []
  for lo in raw.get("loopbacks", []) or []:
    try:
      ipaddress.ip_interface(lo)
    except ValueError:
      raise LoadError(f"{where}: bad loopback {lo!r}") from None
    loopbacks.append(lo)

  interfaces = tuple(parse_interface(i, where) for i in raw.get("interfaces", []) or [])
  seen = set()
  for i in interfaces:
    if i.id in seen:
      raise LoadError(f"{where}: duplicate interface {i.id}")
    seen.add(i.id)

  pol = raw.get("policy", {}) or {}
  policy = Policy(
    route_maps=_named(pol.get("routeMaps"), RouteMap, "statements", where),
    community_lists=_named(pol.get("communityLists"), CommunityList, "entries", where),
    as_path_lists=_named(pol.get("asPathLists"), AsPathList, "regexes", where),
    prefix_lists=_named(pol.get("prefixLists"), PrefixList, "prefixes", where),
  )

  t = raw.get("timers", {}) or {}
  timers = Timers(
    keepalive=_int(t.get("keepalive", 60), "keepalive", where, minimum=0),
    hold=_int(t.get("hold", 180), "hold", where, minimum=0),
    connect_retry=_int(t.get("connectRetry", 120), "connectRetry", where, minimum=1),
    graceful_restart=bool(t.get("gracefulRestart", False)),
  )
  if 0 < timers.hold < 3:
    raise LoadError(f"{where}: hold time must be 0 or at least 3 seconds")

  k = raw.get("knobs", {}) or {}
  cluster_id = k.get("clusterId")
  if cluster_id is not None:
    cluster_id = _ip(cluster_id, "clusterId", where)
  knobs = Knobs(
    always_compare_med=bool(k.get("alwaysCompareMed", False)),
    deterministic_med=bool(k.get("deterministicMed", False)),
    multipath=bool(k.get("multipath", False)),
    max_paths=_int(k.get("maxPaths", 1), "maxPaths", where, minimum=1),
    add_path=bool(k.get("addPath", False)),
    next_hop_self=bool(k.get("nextHopSelf", False)),
    cluster_id=cluster_id,
  )

  return Router(
    id=rid,
    name=raw.get("name", rid),
    asn=asn,
    router_id=bgp_id,
    loopbacks=tuple(loopbacks),
    interfaces=interfaces,
    afi_safi=parse_afi_safi(raw.get("afiSafi"), where),
    policy=policy,
    timers=timers,
    knobs=knobs,
    security=dict(raw.get("security", {}) or {}),
  )


#----------------------------------------
# neighbors
#----------------------------------------
def parse_neighbor(raw, routers):
  nid = _need(raw, "id", "neighbor")
  where = f"neighbor {nid}"

  local_id = _need(raw, "localRouterId", where)
  peer_id = _need(raw, "peerRouterId", where)
  for r in (local_id, peer_id):
    if r not in routers:
      raise LoadError(f"{where}: unknown router {r!r}")
  if local_id == peer_id:
    raise LoadError(f"{where}: local and peer router are both {local_id}")

  local, peer = routers[local_id], routers[peer_id]
  local_as = _int(raw.get("localAs", local.asn), "localAs", where, minimum=1)
  peer_as = _int(raw.get("peerAs", peer.asn), "peerAs", where, minimum=1)
  if local_as != local.asn:
    raise LoadError(f"{where}: localAs {local_as} but {local_id} is AS {local.asn}")

  declared = raw.get("sessionType")
  actual = "iBGP" if local_as == peer_as else "eBGP"
  if declared is not None and declared != actual:
    raise LoadError(f"{where}: sessionType {declared} but AS {local_as} -> AS {peer_as} is {actual}")

  families = tuple(raw.get("families", ["ipv4"]) or ["ipv4"])
  enabled = set(local.afi_safi.enabled())
  for f in families:
    if f not in FAMILIES:
      raise LoadError(f"{where}: unknown address family {f!r}")
    if f not in enabled:
      raise LoadError(f"{where}: family {f} is not enabled on {local_id}")
    base = _BASE_FAMILY.get(f)
    if base is not None and base not in enabled:
      raise LoadError(f"{where}: family {f} needs {base} enabled on {local_id}")

  defined = local.policy.route_map_names()
  in_maps = tuple(raw.get("inRouteMaps", []) or [])
  out_maps = tuple(raw.get("outRouteMaps", []) or [])
  for name in in_maps + out_maps:
    if name not in defined:
      raise LoadError(f"{where}: route-map {name!r} is not defined on {local_id}")

  ttl = raw.get("multihopTtl")
  if ttl is not None:
    ttl = _int(ttl, "multihopTtl", where, minimum=1)
    if ttl > 255:
      raise LoadError(f"{where}: multihopTtl {ttl} above 255")

  max_prefixes = raw.get("maxPrefixes")
  if max_prefixes is not None:
    max_prefixes = _int(max_prefixes, "maxPrefixes", where, minimum=1)

  bfd = None
  b = raw.get("bfd")
  if b:
    bfd = Bfd(
      enabled=bool(b.get("enabled", False)),
      min_tx=_int(b.get("minTx", 300), "bfd.minTx", where, minimum=1),
      min_rx=_int(b.get("minRx", 300), "bfd.minRx", where, minimum=1),
      mult=_int(b.get("mult", 3), "bfd.mult", where, minimum=1),
    )

  return Neighbor(
    id=nid,
    local_router_id=local_id,
    peer_router_id=peer_id,
    local_as=local_as,
    peer_as=peer_as,
    families=families,
    multihop_ttl=ttl,
    passive=bool(raw.get("passive", False)),
    route_server_client=bool(raw.get("routeServerClient", False)),
    route_reflector_client=bool(raw.get("routeReflectorClient", False)),
    next_hop_self=bool(raw.get("nextHopSelf", False)),
    in_route_maps=in_maps,
    out_route_maps=out_maps,
    max_prefixes=max_prefixes,
    bfd=bfd,
    shutdown=bool(raw.get("shutdown", False)),
  )


#----------------------------------------
# seeds
#----------------------------------------
def parse_seed(raw, routers, idx):
  where = f"initialRibs[{idx}]"
  rid = _need(raw, "routerId", where)
  if rid not in routers:
    raise LoadError(f"{where}: unknown router {rid!r}")
  entry_raw = _need(raw, "entry", where)
  peer = raw.get("peer")
  if peer is not None and peer not in routers:
    raise LoadError(f"{where}: unknown peer {peer!r}")
  if peer == rid:
    raise LoadError(f"{where}: {rid} cannot learn a route from itself")

  try:
    entry = parse_entry(entry_raw, peer=peer)
  except KeyError as e:
    raise LoadError(f"{where}: missing or unknown value {e}") from None
  except ValueError as e:
    raise LoadError(f"{where}: {e}") from None

  check_entry(entry, where)

  if peer is not None and not entry.source.is_local:
    sender = routers[peer]
    entry = _received(entry, sender)
  elif peer is not None:
    # local sources are originations whatever peer is named
    peer = None
    entry = replace(entry, peer=None)
  return Seed(rid, entry, peer)

def check_entry(entry, where):
  """Value checks a parsed RibEntry must pass before it enters a RIB."""
  where = f"{where} {entry.prefix}"
  try:
    ipaddress.ip_address(entry.next_hop)
  except ValueError:
    raise LoadError(f"{where}: bad nextHop {entry.next_hop!r}") from None
  if entry.age_ms < 0:
    raise LoadError(f"{where}: negative ageMs")
  for name in ("med", "local_pref", "weight"):
    v = getattr(entry.attrs, name)
    if v is not None and (isinstance(v, bool) or not isinstance(v, int) or v < 0):
      raise LoadError(f"{where}: {name} must be a non-negative integer, got {v!r}")

def _received(entry, sender):
  return replace(entry, peer=sender.id, peer_bgp_id=sender.router_id, peer_addr=entry.next_hop)


#----------------------------------------
def parse_lab(doc) -> Lab:
  if not isinstance(doc, dict):
    raise LoadError(f"lab: expected an object, got {type(doc).__name__}")
  lab_id = _need(doc, "id", "lab")

  routers = {}
  for raw in doc.get("routers", []) or []:
    r = parse_router(raw)
    if r.id in routers:
      raise LoadError(f"router {r.id}: duplicate id")
    routers[r.id] = r
  if not routers:
    raise LoadError(f"lab {lab_id}: no routers")

  bgp_ids = {}
  for r in routers.values():
    if r.router_id in bgp_ids:
      # a collision is left to the session OPEN check
      log.warning(f"[LAB] {r.id} and {bgp_ids[r.router_id]} share routerId {r.router_id}")
    bgp_ids.setdefault(r.router_id, r.id)

  neighbors = {}
  for raw in doc.get("neighbors", []) or []:
    n = parse_neighbor(raw, routers)
    if n.id in neighbors:
      raise LoadError(f"neighbor {n.id}: duplicate id")
    neighbors[n.id] = n

  seeds = tuple(
    parse_seed(raw, routers, i)
    for i, raw in enumerate(doc.get("initialRibs", []) or [])
  )

  lab = Lab(
    id=lab_id,
    name=doc.get("name", lab_id),
    description=doc.get("description", ""),
    routers=tuple(routers.values()),
    neighbors=tuple(neighbors.values()),
    initial_ribs=seeds,
  )
  log.info(f"[LAB] parsed {lab.id}: {len(lab.routers)} routers {len(lab.neighbors)} neighbors {len(seeds)} seeds")
  return lab


#----------------------------------------
# catalog
#----------------------------------------
def load_lab_file(path):
  """Read a lab JSON file. Returns the raw document."""
  try:
    with open(path) as f:
      return json.load(f)
  except OSError as e:
    raise LoadError(f"lab file {path}: {e.strerror}") from None
  except json.JSONDecodeError as e:
    raise LoadError(f"lab file {path}: {e}") from None

def list_labs(lab_dir):
  """[{id, name, description, path}] for every lab file in a directory, by id."""
  out = []
  if not os.path.isdir(lab_dir):
    return out
  for fname in sorted(os.listdir(lab_dir)):
    if not fname.endswith(".json"):
      continue
    path = os.path.join(lab_dir, fname)
    try:
      doc = load_lab_file(path)
    except LoadError as e:
      log.warning(f"[LAB] skip {fname}: {e}")
      continue
    if not isinstance(doc, dict):
      log.warning(f"[LAB] skip {fname}: not a lab document")
      continue
    out.append({
      "id": doc.get("id", fname[:-5]),
      "name": doc.get("name", ""),
      "description": doc.get("description", ""),
      "path": path,
    })
  return sorted(out, key=lambda x: x["id"])
