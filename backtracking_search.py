"""Budgeted best-first branch-and-bound over any binary hierarchy.

The search first follows the preferred child from the root down to a terminal,
remembering every alternative child in a heap keyed by a lower bound on the
distance of any terminal below it. It then reopens remembered branches in bound
order until the heap runs dry or ``max_check`` terminals have been scored.

With an admissible bound, branches whose bound already exceeds the best
distance are dropped, so the result is exact once ``max_check`` covers every
terminal. The visit order never depends on ``max_check``; a larger budget only
extends the same sequence, so the best distance cannot get worse.
"""

from __future__ import annotations

import heapq
import itertools
import math
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from errors import InvalidBudgetError


@dataclass
class SearchResult:
    node: Any
    distance: float
    checked: int
    pruned: int = 0


def bounded_best_first_search(
    root: Any,
    *,
    children: Callable[[Any], Optional[Tuple[Any, Any]]],
    lower_bound: Callable[[Any], float],
    leaf_distance: Callable[[Any], float],
    max_check: int,
) -> SearchResult:
    """Return the closest terminal found within ``max_check`` terminal visits.

    ``children(node)`` returns ``(near, far)`` for an inner node and ``None``
    for a terminal.
    """
    if max_check < 1:
        raise InvalidBudgetError(f"max_check must be >= 1, got {max_check}")

    heap: list[tuple[float, int, Any]] = []
    counter = itertools.count()
    best_node: Any = None
    best_distance = math.inf
    checked = 0
    pruned = 0

    def descend(node: Any) -> None:
        nonlocal best_node, best_distance, checked, pruned
        while True:
            pair = children(node)
            if pair is None:
                distance = leaf_distance(node)
                checked += 1
                if distance < best_distance:
                    best_distance = distance
                    best_node = node
                return

            near, far = pair
            far_bound = lower_bound(far)
            if far_bound <= best_distance:
                heapq.heappush(heap, (far_bound, next(counter), far))
            else:
                pruned += 1

            if lower_bound(near) > best_distance:
                pruned += 1
                return
            node = near

    descend(root)
    while heap and checked < max_check:
        bound, _, node = heapq.heappop(heap)
        if bound > best_distance:
            # heap minimum is already worse than the best terminal
            pruned += 1 + len(heap)
            break
        descend(node)

    return SearchResult(best_node, best_distance, checked, pruned)
