# utils/diff.py
from enum import Enum, auto


class DiffType(Enum):
    ADD = auto()
    DEL = auto()
    MOD = auto()


def diff_dict(old: dict, new: dict):
    """
    Differences between two dicts, key by key, as ADD / DEL / MOD records.
    Keys are visited in sorted order so the result is reproducible.
    """
    diffs = []

    old_keys = set(old.keys())
    new_keys = set(new.keys())

    # ADD
    for k in sorted(new_keys - old_keys):
        diffs.append({
            "type": DiffType.ADD,
            "id": k,
            "new": new[k],
        })

    # DEL
    for k in sorted(old_keys - new_keys):
        diffs.append({
            "type": DiffType.DEL,
            "id": k,
            "old": old[k],
        })

    # MOD
    for k in sorted(old_keys & new_keys):
        if old[k] != new[k]:
            diffs.append({
                "type": DiffType.MOD,
                "id": k,
                "old": old[k],
                "new": new[k],
            })

    return diffs


def diff_by_id(old: list, new: list, key="id"):
    """diff_dict over two lists of objects keyed by one of their fields."""
    return diff_dict(
        {x.get(key): x for x in old or []},
        {x.get(key): x for x in new or []},
    )


def count_diffs(diffs):
    counts = {"added": 0, "removed": 0, "changed": 0}
    names = {DiffType.ADD: "added", DiffType.DEL: "removed", DiffType.MOD: "changed"}
    for d in diffs:
        counts[names[d["type"]]] += 1
    return counts
