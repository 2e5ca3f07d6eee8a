# protocols/policy.py
#
# Route-maps and friends are opaque named references. A name resolves to
# a hook if one was registered, otherwise the route passes unchanged.

import logging
from typing import Callable, Dict, Iterable, Optional

from bgplab.protocols.attributes import RibEntry

log = logging.getLogger("bgplab.policy")

IN  = "in"
OUT = "out"

# hook(entry, direction, router_id, peer_id) -> RibEntry (accept/modify) or None (reject)
PolicyHook = Callable[[RibEntry, str, str, str], Optional[RibEntry]]


class PolicyEngine:

    def __init__(self):
        self.hooks: Dict[str, PolicyHook] = {}

    def register(self, name, hook: PolicyHook):
        self.hooks[name] = hook

    def unregister(self, name):
        self.hooks.pop(name, None)

    def apply(self, names: Iterable[str], entry, direction, router_id, peer_id):
        prefix = entry.prefix
        for name in names:
            hook = self.hooks.get(name)
            if hook is None:
                continue
            entry = hook(entry, direction, router_id, peer_id)
            if entry is None:
                log.info(f"[UPDATE] {router_id} policy {name} {direction} rejects {prefix} ({peer_id})")
                return None
        return entry
