"""Foreign-key dependency ordering for tables.

Produces an order in which tables can be created (and filled) so that every
referenced table comes before the tables that reference it.  Pure logic --
no I/O.

Cycles are broken by skipping the edge that closes them, so every input
table still appears exactly once.  Foreign keys on such tables are emitted
after all CREATE TABLE statements by the reconstructor, so a dropped edge
never produces an invalid script.

Usage:
    from db_porter.schema.resolver import resolve

    order = resolve(
        ["comments", "posts", "users"],
        [("posts", "users"), ("comments", "posts")],
    )
    # ["users", "posts", "comments"]
"""

import logging
from collections.abc import Iterable

from db_porter.schema.models import TableNode

logger = logging.getLogger(__name__)


def build_table_nodes(
    tables: Iterable[str],
    foreign_key_edges: Iterable[tuple[str, str]],
) -> dict[str, TableNode]:
    """Build the dependency graph restricted to *tables*.

    Args:
        tables: Table names to order.
        foreign_key_edges: ``(child, parent)`` pairs, one per foreign key.

    Returns:
        Dict mapping table name to its ``TableNode``.  Parents outside
        *tables* and self-references are dropped.
    """
    names = list(dict.fromkeys(tables))
    known = set(names)
    depends_on: dict[str, set[str]] = {name: set() for name in names}

    for child, parent in foreign_key_edges:
        if child not in known:
            continue
        if parent not in known:
            logger.debug("Ignoring dependency %s -> %s (not dumped)", child, parent)
            continue
        if parent == child:
            continue
        depends_on[child].add(parent)

    return {
        name: TableNode(name=name, depends_on=frozenset(deps))
        for name, deps in depends_on.items()
    }


def resolve(
    tables: Iterable[str],
    foreign_key_edges: Iterable[tuple[str, str]],
) -> list[str]:
    """Order tables so referenced tables come first.

    Depth-first traversal with an explicit stack.  Roots are visited in
    input order and each table's parents in sorted order, so the result is
    deterministic for a given input.

    Args:
        tables: Table names to order.
        foreign_key_edges: ``(child, parent)`` pairs, one per foreign key.

    Returns:
        Every input table exactly once, parents before children.  Where
        tables form a cycle, the edge closing the cycle is ignored.

    Examples:
        >>> resolve(["b", "a"], [("b", "a")])
        ['a', 'b']
        >>> resolve(["a", "b"], [("a", "b"), ("b", "a")])
        ['b', 'a']
    """
    nodes = build_table_nodes(tables, foreign_key_edges)

    ordered: list[str] = []
    done: set[str] = set()
    in_progress: set[str] = set()

    for root in nodes:
        if root in done:
            continue

        in_progress.add(root)
        stack = [(root, iter(sorted(nodes[root].depends_on)))]

        while stack:
            table, parents = stack[-1]
            for parent in parents:
                if parent in done:
                    continue
                if parent in in_progress:
                    logger.debug("Cycle: skipping edge %s -> %s", table, parent)
                    continue
                in_progress.add(parent)
                stack.append((parent, iter(sorted(nodes[parent].depends_on))))
                break
            else:
                stack.pop()
                in_progress.discard(table)
                done.add(table)
                ordered.append(table)

    return ordered
