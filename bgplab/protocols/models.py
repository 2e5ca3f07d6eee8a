# protocols/models.py
import ipaddress
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Tuple

from bgplab.protocols.attributes import RibEntry

Family = Literal["ipv4", "ipv6", "vpnv4", "vpnv6"]
SessionType = Literal["eBGP", "iBGP"]

FAMILIES = ("ipv4", "ipv6", "vpnv4", "vpnv6")


@dataclass(frozen=True)
class Interface:
    id: str
    name: str
    ip: str
    network: str
    cost: int = 1

    @property
    def address(self):
        return str(ipaddress.ip_interface(self.ip).ip)

    @property
    def subnet(self):
        return ipaddress.ip_network(self.network, strict=False)


@dataclass(frozen=True)
class AfiSafi:
    ipv4: bool = True
    ipv6: bool = False
    vpnv4: bool = False
    vpnv6: bool = False

    def enabled(self):
        return tuple(f for f in FAMILIES if getattr(self, f))


@dataclass(frozen=True)
class Timers:
    # seconds, as configured on real routers
    keepalive: int = 60
    hold: int = 180
    connect_retry: int = 120
    graceful_restart: bool = False


@dataclass(frozen=True)
class Knobs:
    always_compare_med: bool = False
    deterministic_med: bool = False
    multipath: bool = False
    max_paths: int = 1
    add_path: bool = False
    next_hop_self: bool = False
    cluster_id: Optional[str] = None


# Opaque policy objects. Stored and referenced by name, never executed.
@dataclass(frozen=True)
class RouteMap:
    name: str
    statements: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CommunityList:
    name: str
    entries: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AsPathList:
    name: str
    regexes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PrefixList:
    name: str
    prefixes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Policy:
    route_maps: Tuple[RouteMap, ...] = ()
    community_lists: Tuple[CommunityList, ...] = ()
    as_path_lists: Tuple[AsPathList, ...] = ()
    prefix_lists: Tuple[PrefixList, ...] = ()

    def route_map_names(self):
        return {rm.name for rm in self.route_maps}


@dataclass(frozen=True)
class Router:
    id: str
    name: str
    asn: int
    router_id: str
    loopbacks: Tuple[str, ...] = ()
    interfaces: Tuple[Interface, ...] = ()
    afi_safi: AfiSafi = AfiSafi()
    policy: Policy = Policy()
    timers: Timers = Timers()
    knobs: Knobs = Knobs()
    security: Dict[str, object] = field(default_factory=dict, compare=False, hash=False)

    @property
    def cluster_id(self):
        return self.knobs.cluster_id or self.router_id

    def addresses(self):
        out = [i.address for i in self.interfaces]
        out += [str(ipaddress.ip_interface(lo).ip) for lo in self.loopbacks]
        out.append(self.router_id)
        return out


@dataclass(frozen=True)
class Bfd:
    enabled: bool = False
    min_tx: int = 300
    min_rx: int = 300
    mult: int = 3

    @property
    def detection_ms(self):
        return self.min_rx * self.mult


@dataclass(frozen=True)
class Neighbor:
    id: str
    local_router_id: str
    peer_router_id: str
    local_as: int
    peer_as: int
    families: Tuple[str, ...] = ("ipv4",)
    multihop_ttl: Optional[int] = None
    passive: bool = False
    route_server_client: bool = False
    route_reflector_client: bool = False
    next_hop_self: bool = False
    in_route_maps: Tuple[str, ...] = ()
    out_route_maps: Tuple[str, ...] = ()
    max_prefixes: Optional[int] = None
    bfd: Optional[Bfd] = None
    shutdown: bool = False

    @property
    def session_type(self) -> SessionType:
        return "iBGP" if self.local_as == self.peer_as else "eBGP"

    @property
    def is_ebgp(self):
        return self.local_as != self.peer_as

    def other(self, router_id):
        if router_id == self.local_router_id:
            return self.peer_router_id
        return self.local_router_id

    def to_dict(self, state=None):
        return {
            "id": self.id,
            "localRouterId": self.local_router_id,
            "peerRouterId": self.peer_router_id,
            "localAs": self.local_as,
            "peerAs": self.peer_as,
            "sessionType": self.session_type,
            "families": list(self.families),
            "passive": self.passive,
            "fsm": state,
        }


@dataclass(frozen=True)
class Seed:
    router_id: str
    entry: RibEntry
    peer: Optional[str] = None


@dataclass(frozen=True)
class Lab:
    id: str
    name: str
    description: str
    routers: Tuple[Router, ...]
    neighbors: Tuple[Neighbor, ...]
    initial_ribs: Tuple[Seed, ...] = ()

    def router_map(self) -> Dict[str, Router]:
        return {r.id: r for r in self.routers}

    def neighbor_map(self) -> Dict[str, Neighbor]:
        return {n.id: n for n in self.neighbors}

    def routers_sorted(self) -> List[Router]:
        return sorted(self.routers, key=lambda r: r.id)
