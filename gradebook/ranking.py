"""
Class ranking.

Uses standard competition ranking: equal metrics share a rank and the next
distinct metric takes its 1-based position, so averages 18, 18, 15 rank
1, 1, 3. A None metric sorts below every real value.

Ties are listed by identifier ascending. Identifiers of one type are compared
directly; mixed types fall back to comparing their string forms.
"""
from dataclasses import dataclass
from typing import Any, Hashable, Iterable, List, Optional, Tuple


@dataclass(frozen=True)
class RankedEntry:
    id: Hashable
    metric: Optional[Any]
    rank: int


def _id_key(entries):
    ids = [entry_id for entry_id, _ in entries]
    if len({type(i) for i in ids}) <= 1:
        return lambda i: i
    return str


def rank(entries: Iterable[Tuple[Hashable, Optional[Any]]]) -> List[RankedEntry]:
    """Rank (id, metric) pairs, best first."""
    entries = list(entries)
    if not entries:
        return []

    id_key = _id_key(entries)
    # Stable two-pass sort: identifier first, then metric descending
    ordered = sorted(entries, key=lambda e: id_key(e[0]))
    ordered.sort(key=lambda e: (e[1] is None, _negate(e[1])))

    ranked = []
    position = 0
    last_metric = object()
    for i, (entry_id, metric) in enumerate(ordered, 1):
        if metric != last_metric:
            position = i
            last_metric = metric
        ranked.append(RankedEntry(id=entry_id, metric=metric, rank=position))

    return ranked


def _negate(metric):
    return 0 if metric is None else -metric
