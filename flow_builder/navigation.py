# flow_builder/navigation.py
"""
Where the admin currently is in the flow.

    ROOT                        no category selected, no breadcrumbs
    AT_CATEGORY(category)       breadcrumbs == [category]
    AT_QUESTION(path)           breadcrumbs == [category, q1, q2, ...]

Breadcrumbs are kept as their own state (id + resolved label), so after every tree
change the owner calls `reconcile` to drop crumbs pointing at deleted nodes and refresh
labels that were renamed.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from flow_builder.errors import ValidationError
from flow_builder.translations import resolve
from flow_builder.tree_store import FlowTree, QuestionNode

logger = logging.getLogger("flow_builder")


@dataclass(frozen=True)
class Breadcrumb:
    id: str
    label: str
    type: str  # "category" | "question"

    def to_dict(self) -> dict:
        return {"id": self.id, "label": self.label, "type": self.type}


class NavState(str, Enum):
    ROOT = "root"
    AT_CATEGORY = "at_category"
    AT_QUESTION = "at_question"


def category_crumb(tree: FlowTree, category_id, lang) -> Breadcrumb:
    return Breadcrumb(id=category_id, label=resolve(tree.category(category_id).name, lang), type="category")


def question_crumb(tree: FlowTree, question_id, lang) -> Breadcrumb:
    return Breadcrumb(id=question_id, label=resolve(tree.question(question_id).question, lang), type="question")


def path_crumbs(tree: FlowTree, node_id, lang) -> list[Breadcrumb]:
    ids = tree.path_to(node_id)
    return [category_crumb(tree, ids[0], lang)] + [question_crumb(tree, qid, lang) for qid in ids[1:]]


class Navigator:
    def __init__(self):
        self.selected_category: str | None = None
        self.breadcrumbs: list[Breadcrumb] = []
        # question to scroll to and highlight after a search jump
        self.target_question_id: str | None = None

    @property
    def state(self) -> NavState:
        if self.selected_category is None:
            return NavState.ROOT
        if len(self.breadcrumbs) <= 1:
            return NavState.AT_CATEGORY
        return NavState.AT_QUESTION

    @property
    def current_parent_id(self) -> str | None:
        """Question whose sub-questions are on screen, or None at a category root."""
        if len(self.breadcrumbs) > 1:
            return self.breadcrumbs[-1].id
        return None

    def path_ids(self) -> list[str]:
        return [b.id for b in self.breadcrumbs]

    def go_root(self) -> None:
        self.selected_category = None
        self.breadcrumbs = []
        self.target_question_id = None

    def select_category(self, tree: FlowTree, category_id, lang) -> None:
        """
        Selecting a category (the same one again included) shows its root list.
        Passing None goes back to ROOT.
        """
        if category_id is None:
            self.go_root()
            return
        crumb = category_crumb(tree, category_id, lang)
        self.selected_category = category_id
        self.breadcrumbs = [crumb]
        self.target_question_id = None

    def navigate_into(self, tree: FlowTree, question_id, lang) -> None:
        if self.selected_category is None:
            raise ValidationError("Select a category first")
        node = tree.question(question_id)
        expected_parent = self.current_parent_id
        if expected_parent is not None:
            belongs = node.parent_id == expected_parent
        else:
            belongs = node.parent_id is None and node.category_id == self.selected_category
        if not belongs:
            raise ValidationError(f"Question {question_id} is not on the current level")
        self.breadcrumbs = self.breadcrumbs + [question_crumb(tree, question_id, lang)]

    def navigate_to_breadcrumb(self, index: int) -> None:
        if index < 0 or index >= len(self.breadcrumbs):
            raise ValidationError(f"Breadcrumb index {index} out of range")
        self.breadcrumbs = self.breadcrumbs[: index + 1]

    def select_search_result(self, category_id, path: list[Breadcrumb], question_id) -> None:
        """
        Jump to the container of a search hit: the hit's own crumb is dropped so the
        list that holds it is shown, and the hit becomes the scroll/highlight target.
        """
        if not path or path[0].id != category_id:
            raise ValidationError("Search path must start at its category")
        self.selected_category = category_id
        self.breadcrumbs = list(path[:-1]) or [path[0]]
        self.target_question_id = question_id

    def questions_at_level(self, tree: FlowTree) -> list[QuestionNode]:
        if self.selected_category is None:
            return []
        parent_id = self.current_parent_id
        if parent_id is not None:
            nodes = tree.children(parent_id)
        else:
            nodes = tree.root_questions(self.selected_category)
        return sorted(nodes, key=lambda n: n.order)

    def reconcile(self, tree: FlowTree, lang) -> None:
        """
        Make the breadcrumbs agree with `tree`: a deleted category sends us to ROOT,
        a deleted question truncates the path at its nearest surviving ancestor, and
        surviving crumbs get their labels re-resolved.
        """
        if self.selected_category is None:
            self.breadcrumbs = []
            return
        if not tree.has_category(self.selected_category):
            logger.debug("Selected category %s is gone; back to root", self.selected_category)
            self.go_root()
            return

        kept = [category_crumb(tree, self.selected_category, lang)]
        parent_id = None
        for crumb in self.breadcrumbs[1:]:
            node = tree.find_by_id(crumb.id)
            if not isinstance(node, QuestionNode):
                break
            if parent_id is None:
                if node.parent_id is not None or node.category_id != self.selected_category:
                    break
            elif node.parent_id != parent_id:
                break
            kept.append(question_crumb(tree, crumb.id, lang))
            parent_id = crumb.id
        if len(kept) != len(self.breadcrumbs):
            logger.debug("Breadcrumbs truncated from %d to %d", len(self.breadcrumbs), len(kept))
        self.breadcrumbs = kept

        if self.target_question_id is not None and not tree.has_question(self.target_question_id):
            self.target_question_id = None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "selected_category": self.selected_category,
            "breadcrumbs": [b.to_dict() for b in self.breadcrumbs],
            "target_question_id": self.target_question_id,
        }
