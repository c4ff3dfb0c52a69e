# flow_builder/drag_drop.py
"""
Drag-and-drop reordering as a plain state machine, independent of any UI toolkit:

    IDLE -> DRAGGING(source) -> HOVERING(source, target) -> DROPPED | CANCELLED

A drag only starts when the pointer went down on the drag handle, and a hover only
registers on a node of the same sibling group as the source.
"""

import logging
from enum import Enum

from flow_builder.errors import ValidationError
from flow_builder.ordering import ReorderResult, drop_reorder
from flow_builder.tree_store import FlowTree

logger = logging.getLogger("flow_builder")


class DragState(str, Enum):
    IDLE = "idle"
    DRAGGING = "dragging"
    HOVERING = "hovering"
    DROPPED = "dropped"
    CANCELLED = "cancelled"


class DragSession:
    def __init__(self):
        self.state = DragState.IDLE
        self.source_id: str | None = None
        self.target_id: str | None = None
        self._handle_down = False

    def reset(self) -> None:
        self.state = DragState.IDLE
        self.source_id = None
        self.target_id = None
        self._handle_down = False

    def handle_down(self, allow: bool) -> None:
        self._handle_down = bool(allow)

    def start(self, tree: FlowTree, source_id) -> bool:
        if self.state in (DragState.DRAGGING, DragState.HOVERING):
            return False
        if not self._handle_down:
            return False
        if tree.find_by_id(source_id) is None:
            return False
        self.state = DragState.DRAGGING
        self.source_id = source_id
        self.target_id = None
        return True

    def hover(self, tree: FlowTree, target_id) -> bool:
        if self.state not in (DragState.DRAGGING, DragState.HOVERING):
            return False
        if target_id == self.source_id or tree.find_by_id(target_id) is None:
            return False
        if tree.group_key_of(target_id) != tree.group_key_of(self.source_id):
            return False
        self.state = DragState.HOVERING
        self.target_id = target_id
        return True

    def leave(self) -> None:
        if self.state == DragState.HOVERING:
            self.state = DragState.DRAGGING
            self.target_id = None

    def drop(self, tree: FlowTree, target_id=None) -> ReorderResult | None:
        """
        Finish the drag. Returns the reorder result, or None when the drop was cancelled
        (no valid target, or the source was removed from the tree meanwhile).
        """
        if target_id is not None and target_id != self.target_id:
            self.hover(tree, target_id)
        if self.state != DragState.HOVERING or tree.find_by_id(self.source_id) is None:
            self.cancel()
            return None
        try:
            result = drop_reorder(tree, self.source_id, self.target_id)
        except ValidationError as e:
            logger.info("Drop rejected: %s", e)
            self.cancel()
            return None
        self.state = DragState.DROPPED
        self._handle_down = False
        return result

    def cancel(self) -> None:
        self.state = DragState.CANCELLED
        self._handle_down = False

    def end(self) -> None:
        """Drag-end always returns the machine to IDLE."""
        self.reset()

    @property
    def active(self) -> bool:
        return self.state in (DragState.DRAGGING, DragState.HOVERING)
