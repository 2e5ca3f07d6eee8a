# protocols/attributes.py
import ipaddress
from dataclasses import dataclass, replace
from enum import Enum, IntEnum
from typing import FrozenSet, Optional, Tuple

DEFAULT_LOCAL_PREF = 100
DEFAULT_WEIGHT     = 0
DEFAULT_MED        = 0


class Origin(IntEnum):
    IGP        = 0
    EGP        = 1
    INCOMPLETE = 2

    @classmethod
    def parse(cls, value):
        if isinstance(value, Origin):
            return value
        return cls[str(value).upper()]

    def label(self):
        return self.name.lower()


class Source(Enum):
    EBGP      = "eBGP"
    IBGP      = "iBGP"
    LOCAL     = "local"
    AGGREGATE = "aggregate"
    RR_CLIENT = "rr-client"

    @property
    def is_local(self):
        return self in (Source.LOCAL, Source.AGGREGATE)

    @property
    def is_ibgp(self):
        return self in (Source.IBGP, Source.RR_CLIENT)


@dataclass(frozen=True)
class Aggregator:
    asn: int
    router_id: str


@dataclass(frozen=True)
class PathAttributes:
    origin: Origin = Origin.IGP
    as_path: Tuple[int, ...] = ()
    med: Optional[int] = None
    local_pref: Optional[int] = None
    communities: FrozenSet[str] = frozenset()
    ext_communities: FrozenSet[str] = frozenset()
    aggregator: Optional[Aggregator] = None
    atomic_aggregate: bool = False
    originator_id: Optional[str] = None
    cluster_list: Tuple[str, ...] = ()
    # local override, never propagated
    weight: Optional[int] = None

    @property
    def as_path_len(self):
        return len(self.as_path)

    @property
    def first_as(self):
        return self.as_path[0] if self.as_path else None

    def prepend(self, asn):
        return replace(self, as_path=(asn,) + self.as_path)

    def with_(self, **changes):
        return replace(self, **changes)


@dataclass(frozen=True)
class RibEntry:
    prefix: str
    attrs: PathAttributes
    source: Source
    next_hop: str
    age_ms: int = 0
    # sender: router id in the lab, BGP identifier, session address
    peer: Optional[str] = None
    peer_bgp_id: Optional[str] = None
    peer_addr: Optional[str] = None
    # tombstone
    withdrawn: bool = False
    withdrawn_ticks: int = 0

    def aged(self, ms):
        return replace(self, age_ms=self.age_ms + ms)

    def tombstone(self):
        return replace(self, withdrawn=True, withdrawn_ticks=0)

    def same_route(self, other):
        """Equal apart from age; used to suppress duplicate advertisements."""
        if other is None:
            return False
        return (
            self.prefix == other.prefix and self.attrs == other.attrs
            and self.source == other.source and self.next_hop == other.next_hop
            and self.peer == other.peer and self.withdrawn == other.withdrawn
        )

    @property
    def family(self):
        return prefix_family(self.prefix)

    def to_dict(self):
        a = self.attrs
        return {
            "prefix": self.prefix,
            "nextHop": self.next_hop,
            "source": self.source.value,
            "ageMs": self.age_ms,
            "peer": self.peer,
            "withdrawn": self.withdrawn,
            "pathAttributes": {
                "origin": a.origin.label(),
                "asPath": list(a.as_path),
                "med": a.med,
                "localPref": a.local_pref,
                "communities": sorted(a.communities),
                "extCommunities": sorted(a.ext_communities),
                "aggregator": (
                    {"asn": a.aggregator.asn, "routerId": a.aggregator.router_id}
                    if a.aggregator else None
                ),
                "atomicAggregate": a.atomic_aggregate,
                "originatorId": a.originator_id,
                "clusterList": list(a.cluster_list),
                "weight": a.weight,
            },
        }


def canonical_prefix(prefix):
    return str(ipaddress.ip_network(prefix, strict=False))


def prefix_family(prefix):
    return "ipv6" if ipaddress.ip_network(prefix, strict=False).version == 6 else "ipv4"


def parse_attributes(raw):
    raw = raw or {}
    agg = raw.get("aggregator")
    return PathAttributes(
        origin=Origin.parse(raw.get("origin", "igp")),
        as_path=tuple(int(x) for x in raw.get("asPath", [])),
        med=raw.get("med"),
        local_pref=raw.get("localPref"),
        communities=frozenset(raw.get("communities", []) or []),
        ext_communities=frozenset(raw.get("extCommunities", []) or []),
        aggregator=Aggregator(int(agg["asn"]), agg["routerId"]) if agg else None,
        atomic_aggregate=bool(raw.get("atomicAggregate", False)),
        originator_id=raw.get("originatorId"),
        cluster_list=tuple(raw.get("clusterList", []) or []),
        weight=raw.get("weight"),
    )


def parse_entry(raw, peer=None):
    return RibEntry(
        prefix=canonical_prefix(raw["prefix"]),
        attrs=parse_attributes(raw.get("pathAttributes")),
        source=Source(raw.get("source", "local")),
        next_hop=raw.get("nextHop", "0.0.0.0"),
        age_ms=int(raw.get("ageMs", 0)),
        peer=peer,
    )
