# flow_builder/ordering.py
"""
Sibling ordering for categories and question groups.

Two ways to move a node, both ending with the same dense 0-based renumbering:
  - step: swap with the neighbour above/below (arrow buttons, drag-and-drop onto a neighbour)
  - manual: "move to position k" with k 1-based, as typed by the admin

A question never leaves its sibling group here: its group is the sub-questions of its
parent, or the root questions of its category.
"""

import logging
from dataclasses import dataclass, field

from flow_builder.errors import ValidationError
from flow_builder.tree_store import CATEGORIES_GROUP, FlowTree

logger = logging.getLogger("flow_builder")

UP = "up"
DOWN = "down"


@dataclass
class ReorderResult:
    tree: FlowTree
    group_key: tuple
    items: list = field(default_factory=list)  # [{"id", "order"}] for the reorder persistence call
    changed: bool = False

    @property
    def is_category_group(self) -> bool:
        return self.group_key[0] == "categories"


def sibling_scope(tree: FlowTree, node_id) -> tuple[tuple, list]:
    """(group_key, sibling ids sorted by order) for a category or question id."""
    group_key = tree.group_key_of(node_id)
    ids = list(tree.group_ids(group_key))
    ids.sort(key=lambda i: tree.find_by_id(i).order)
    return group_key, ids


def _apply(tree: FlowTree, group_key, ordered_ids, before) -> ReorderResult:
    if ordered_ids == before:
        return ReorderResult(tree=tree, group_key=group_key, items=[], changed=False)
    new_tree = tree.reorder_group(group_key, ordered_ids)
    items = [{"id": i, "order": rank} for rank, i in enumerate(ordered_ids)]
    return ReorderResult(tree=new_tree, group_key=group_key, items=items, changed=True)


def step_reorder(tree: FlowTree, node_id, direction: str) -> ReorderResult:
    """Move one step up or down. Moving past either end of the group is a no-op."""
    if direction not in (UP, DOWN):
        raise ValidationError(f"Unknown direction: {direction!r}")
    group_key, ids = sibling_scope(tree, node_id)
    index = ids.index(node_id)
    new_index = index - 1 if direction == UP else index + 1
    if new_index < 0 or new_index >= len(ids):
        return ReorderResult(tree=tree, group_key=group_key, items=[], changed=False)

    reordered = list(ids)
    reordered[index], reordered[new_index] = reordered[new_index], reordered[index]
    return _apply(tree, group_key, reordered, ids)


def drop_reorder(tree: FlowTree, source_id, target_id) -> ReorderResult:
    """
    Drag-and-drop: `source_id` takes the rank of `target_id` and the nodes in between
    shift by one (for neighbours this is a plain swap). Both must share a sibling group.
    """
    group_key, ids = sibling_scope(tree, source_id)
    if source_id == target_id:
        return ReorderResult(tree=tree, group_key=group_key, items=[], changed=False)
    if tree.group_key_of(target_id) != group_key:
        raise ValidationError("Items can only be dropped within their own list")

    reordered = list(ids)
    target_index = reordered.index(target_id)
    reordered.remove(source_id)
    reordered.insert(target_index, source_id)
    return _apply(tree, group_key, reordered, ids)


def manual_reorder(tree: FlowTree, node_id, position: int) -> ReorderResult:
    """
    Move to the 1-based `position` within the sibling group. Positions outside
    [1, sibling count] are rejected before anything changes.
    """
    group_key, ids = sibling_scope(tree, node_id)
    try:
        position = int(position)
    except (TypeError, ValueError):
        raise ValidationError(f"Position must be a number, got {position!r}")
    if position < 1 or position > len(ids):
        raise ValidationError(f"Position must be between 1 and {len(ids)}")

    reordered = list(ids)
    reordered.remove(node_id)
    reordered.insert(position - 1, node_id)
    return _apply(tree, group_key, reordered, ids)


def current_position(tree: FlowTree, node_id) -> tuple[int, int]:
    """(1-based position, sibling count)"""
    _, ids = sibling_scope(tree, node_id)
    return ids.index(node_id) + 1, len(ids)


def dense_violations(tree: FlowTree) -> list[tuple]:
    """Group keys whose order values are not exactly 0..n-1 in stored order."""
    bad = []
    groups = [("categories", CATEGORIES_GROUP)]
    groups += [("category", cid) for cid in tree.category_ids()]
    groups += [("question", q.id) for q in tree.iter_questions()]
    for group_key in groups:
        ids = tree.group_ids(group_key)
        orders = [tree.find_by_id(i).order for i in ids]
        if orders != list(range(len(ids))):
            bad.append(group_key)
    if bad:
        logger.warning("Non-dense sibling groups: %s", bad)
    return bad
