"""
budget_engines.tree -- Cycle-safe walks over parent-linked trees.

Responsibility:
    Iterative traversals used by the totals engine, cascading deletes,
    version cloning and the structure read: ancestor chains, descendant
    sets, parent-before-child ordering and hierarchical display order.

Architecture position:
    Engines -- pure, zero I/O.  Works on plain ids and callables, so the
    same walks serve titles and line items.

Invariants enforced:
    - No recursion.  Every walk uses an explicit stack or queue plus a
      visited set, so depth is bounded by the number of nodes.
    - Revisiting a node on an ancestor chain raises CycleDetectedError
      instead of looping.
    - Orderings are deterministic: siblings sort by (order, id).

Failure modes:
    - CycleDetectedError from ``walk_ancestors``.
    - ``parent_first_order`` leaves nodes whose parent chain never reaches a
      root (missing parent, cycle) out of the ordering and reports them.
"""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Callable, Hashable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

from budget_kernel.exceptions import CycleDetectedError

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)


def walk_ancestors(
    start: str,
    parent_of: Callable[[str], str | None],
) -> Iterator[str]:
    """
    Yield ``start`` and then each ancestor up to the root.

    Raises:
        CycleDetectedError: if an id repeats on the chain.
    """
    visited: set[str] = set()
    path: list[str] = []
    current: str | None = start
    while current is not None:
        if current in visited:
            raise CycleDetectedError(current, path)
        visited.add(current)
        path.append(current)
        yield current
        current = parent_of(current)


def collect_descendants(
    root: K,
    children_of: Callable[[K], Iterable[K]],
) -> list[K]:
    """
    All descendants of ``root`` (excluding it), deepest-last BFS order.

    Nodes reachable twice are returned once.
    """
    visited: set[K] = {root}
    result: list[K] = []
    queue: deque[K] = deque([root])
    while queue:
        node = queue.popleft()
        for child in children_of(node):
            if child in visited:
                continue
            visited.add(child)
            result.append(child)
            queue.append(child)
    return result


@dataclass(frozen=True)
class ParentFirstOrder(Generic[T]):
    ordered: tuple[T, ...]
    unresolved: tuple[T, ...]


def parent_first_order(
    nodes: Sequence[T],
    key_of: Callable[[T], K],
    parent_of: Callable[[T], K | None],
    known: Iterable[K] = (),
) -> ParentFirstOrder[T]:
    """
    Order ``nodes`` so each comes after its parent.

    A node is ready when it has no parent, its parent is in ``known``, or its
    parent has already been placed.  Nodes whose parent is neither present
    nor known never become ready and come back in ``unresolved``; this is
    how circular references surface.
    """
    placed: set[K] = set(known)
    pending = list(nodes)
    ordered: list[T] = []
    progress = True
    while pending and progress:
        progress = False
        remaining: list[T] = []
        for node in pending:
            parent = parent_of(node)
            if parent is None or parent in placed:
                ordered.append(node)
                placed.add(key_of(node))
                progress = True
            else:
                remaining.append(node)
        pending = remaining
    return ParentFirstOrder(tuple(ordered), tuple(pending))


def hierarchical_order(
    nodes: Sequence[T],
    key_of: Callable[[T], K],
    parent_of: Callable[[T], K | None],
    sort_key: Callable[[T], tuple],
) -> list[T]:
    """
    Depth-first display order: each node followed by its sorted subtree.

    Nodes whose parent is not among ``nodes`` are treated as roots.  Nodes
    on a cycle with no root are appended at the end in sort order.
    """
    by_key = {key_of(n): n for n in nodes}
    children: dict[K | None, list[T]] = defaultdict(list)
    for node in nodes:
        parent = parent_of(node)
        children[parent if parent in by_key else None].append(node)
    for siblings in children.values():
        siblings.sort(key=sort_key)

    result: list[T] = []
    seen: set[K] = set()
    stack: list[T] = list(reversed(children[None]))
    while stack:
        node = stack.pop()
        k = key_of(node)
        if k in seen:
            continue
        seen.add(k)
        result.append(node)
        stack.extend(reversed(children.get(k, [])))

    leftovers = sorted((n for n in nodes if key_of(n) not in seen), key=sort_key)
    result.extend(leftovers)
    return result
