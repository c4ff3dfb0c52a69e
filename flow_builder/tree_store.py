# flow_builder/tree_store.py
"""
In-memory forest of categories -> questions -> nested sub-questions.

Nodes live in a flat arena keyed by id. Each question holds its parent id (or its
category id when it sits at the root of a category) and the ordered tuple of its
children ids, so lookups never walk the whole forest.

A FlowTree is never mutated in place. Every mutation returns a new FlowTree that shares
all untouched node objects with the old one; only the mutated node(s) and the chain of
ancestors above them are replaced (ancestors get their `version` bumped). Callers can
therefore compare node identity to know whether a subtree changed.

Sibling groups always carry dense 0-based ranks: after any mutation the `order` values
of a group are exactly 0..n-1 and the ids tuple of the group is kept in that order.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator
from uuid import uuid4

from flow_builder.errors import NotFoundError, ValidationError
from flow_builder.translations import (
    EMPTY_TRANSLATIONS,
    Attachment,
    Language,
    TranslationMap,
    missing_translations_count,
)

logger = logging.getLogger("flow_builder")

# marker for "leave the attachment as it is"
KEEP = object()

CATEGORIES_GROUP = "__categories__"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


def _require_text(text, what: str) -> str:
    if text is None or not str(text).strip():
        raise ValidationError(f"{what} text is required")
    return str(text).strip()


@dataclass(frozen=True)
class CategoryNode:
    id: str
    order: int
    name: TranslationMap = EMPTY_TRANSLATIONS
    created_at: datetime | None = None
    created_by: str | None = None
    updated_at: datetime | None = None
    updated_by: str | None = None
    version: int = 0

    kind = "category"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order": self.order,
            "name": self.name.to_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "created_by": self.created_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "updated_by": self.updated_by,
        }


@dataclass(frozen=True)
class QuestionNode:
    id: str
    order: int
    question: TranslationMap = EMPTY_TRANSLATIONS
    answer: TranslationMap = EMPTY_TRANSLATIONS
    # only set for root-level questions; nested ones point at their parent instead
    category_id: str | None = None
    parent_id: str | None = None
    attachments: dict = field(default_factory=dict)  # Language -> Attachment
    child_ids: tuple = ()
    created_at: datetime | None = None
    created_by: str | None = None
    updated_at: datetime | None = None
    updated_by: str | None = None
    version: int = 0

    kind = "question"

    def attachment(self, lang) -> Attachment | None:
        return self.attachments.get(Language.try_parse(lang))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order": self.order,
            "category_id": self.category_id,
            "parent_id": self.parent_id,
            "question": self.question.to_dict(),
            "answer": self.answer.to_dict(),
            "attachments": {lang.value: a.to_dict() for lang, a in self.attachments.items()},
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "created_by": self.created_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "updated_by": self.updated_by,
        }


def _parse_dt(value):
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def _parse_attachments(value) -> dict:
    out = {}
    for code, raw in (value or {}).items():
        lang = Language.try_parse(code)
        attachment = Attachment.from_value(raw)
        if lang is not None and attachment is not None:
            out[lang] = attachment
    return out


class FlowTree:
    """Immutable snapshot of the whole flow."""

    def __init__(
        self,
        categories: dict | None = None,
        category_ids: tuple = (),
        nodes: dict | None = None,
        root_ids: dict | None = None,
    ):
        self._categories: dict[str, CategoryNode] = categories or {}
        self._category_ids: tuple = tuple(category_ids)
        self._nodes: dict[str, QuestionNode] = nodes or {}
        self._root_ids: dict[str, tuple] = root_ids or {}

    # -----------------------
    # Construction
    # -----------------------

    @classmethod
    def from_records(cls, categories: list[dict], questions: list[dict]) -> "FlowTree":
        """
        Build a tree from persistence records. `questions` are root questions carrying
        their nested `sub_questions`. Ranks are normalized to dense 0..n-1 by (order, position).
        """
        tree = cls()
        cats = sorted(enumerate(categories or []), key=lambda p: (p[1].get("order") or 0, p[0]))
        cat_nodes = {}
        cat_ids = []
        for rank, (_, rec) in enumerate(cats):
            node = CategoryNode(
                id=str(rec["id"]),
                order=rank,
                name=TranslationMap.coerce(rec.get("name")),
                created_at=_parse_dt(rec.get("created_at")),
                created_by=rec.get("created_by"),
                updated_at=_parse_dt(rec.get("updated_at")),
                updated_by=rec.get("updated_by"),
            )
            cat_nodes[node.id] = node
            cat_ids.append(node.id)

        nodes: dict[str, QuestionNode] = {}
        root_ids: dict[str, list] = {cid: [] for cid in cat_ids}

        def build(records, category_id, parent_id) -> list[str]:
            ordered = sorted(enumerate(records or []), key=lambda p: (p[1].get("order") or 0, p[0]))
            ids = []
            for rank, (_, rec) in enumerate(ordered):
                qid = str(rec["id"])
                child_ids = build(rec.get("sub_questions"), None, qid)
                nodes[qid] = QuestionNode(
                    id=qid,
                    order=rank,
                    question=TranslationMap.coerce(rec.get("question")),
                    answer=TranslationMap.coerce(rec.get("answer")),
                    category_id=category_id,
                    parent_id=parent_id,
                    attachments=_parse_attachments(rec.get("attachments")),
                    child_ids=tuple(child_ids),
                    created_at=_parse_dt(rec.get("created_at")),
                    created_by=rec.get("created_by"),
                    updated_at=_parse_dt(rec.get("updated_at")),
                    updated_by=rec.get("updated_by"),
                )
                ids.append(qid)
            return ids

        grouped: dict[str, list] = {}
        for rec in questions or []:
            cid = rec.get("category_id")
            if cid is None or str(cid) not in cat_nodes:
                logger.warning("Skipping root question %s with unknown category %s", rec.get("id"), cid)
                continue
            grouped.setdefault(str(cid), []).append(rec)
        for cid, recs in grouped.items():
            root_ids[cid] = build(recs, cid, None)

        tree._categories = cat_nodes
        tree._category_ids = tuple(cat_ids)
        tree._nodes = nodes
        tree._root_ids = {cid: tuple(ids) for cid, ids in root_ids.items()}
        return tree

    def _copy(self) -> "FlowTree":
        return FlowTree(dict(self._categories), self._category_ids, dict(self._nodes), dict(self._root_ids))

    # -----------------------
    # Queries
    # -----------------------

    def categories(self) -> list[CategoryNode]:
        return [self._categories[cid] for cid in self._category_ids]

    def category_ids(self) -> tuple:
        return self._category_ids

    def has_category(self, category_id) -> bool:
        return category_id in self._categories

    def has_question(self, question_id) -> bool:
        return question_id in self._nodes

    def category(self, category_id) -> CategoryNode:
        node = self._categories.get(category_id)
        if node is None:
            raise NotFoundError(f"Category not found: {category_id}")
        return node

    def question(self, question_id) -> QuestionNode:
        node = self._nodes.get(question_id)
        if node is None:
            raise NotFoundError(f"Question not found: {question_id}")
        return node

    def find_by_id(self, node_id) -> CategoryNode | QuestionNode | None:
        return self._nodes.get(node_id) or self._categories.get(node_id)

    def category_id_of(self, question_id) -> str:
        node = self.question(question_id)
        while node.parent_id is not None:
            node = self._nodes[node.parent_id]
        return node.category_id

    def path_to(self, node_id) -> list[str]:
        """Ids from the category down to `node_id` (inclusive)."""
        if node_id in self._categories:
            return [node_id]
        node = self.question(node_id)
        path = [node.id]
        while node.parent_id is not None:
            node = self._nodes[node.parent_id]
            path.append(node.id)
        path.append(node.category_id)
        path.reverse()
        return path

    def root_questions(self, category_id) -> list[QuestionNode]:
        return [self._nodes[qid] for qid in self._root_ids.get(category_id, ())]

    def children(self, question_id) -> list[QuestionNode]:
        return [self._nodes[qid] for qid in self.question(question_id).child_ids]

    def group_key_of(self, node_id) -> tuple[str, str]:
        """
        ("categories", CATEGORIES_GROUP) for a category, ("category", category_id) for a
        root question, ("question", parent_id) for a nested one.
        """
        if node_id in self._categories:
            return ("categories", CATEGORIES_GROUP)
        node = self.question(node_id)
        if node.parent_id is not None:
            return ("question", node.parent_id)
        return ("category", node.category_id)

    def group_ids(self, group_key: tuple[str, str]) -> tuple:
        scope, owner = group_key
        if scope == "categories":
            return self._category_ids
        if scope == "category":
            return self._root_ids.get(owner, ())
        return self.question(owner).child_ids

    def sibling_ids(self, node_id) -> tuple:
        return self.group_ids(self.group_key_of(node_id))

    def iter_questions(self) -> Iterator[QuestionNode]:
        """Depth-first, in category order then sibling order."""
        for cid in self._category_ids:
            yield from self.iter_subtree_of_category(cid)

    def iter_subtree_of_category(self, category_id) -> Iterator[QuestionNode]:
        stack = list(reversed(self._root_ids.get(category_id, ())))
        while stack:
            node = self._nodes[stack.pop()]
            yield node
            stack.extend(reversed(node.child_ids))

    def descendant_ids(self, question_id) -> list[str]:
        out = []
        stack = list(self.question(question_id).child_ids)
        while stack:
            qid = stack.pop()
            out.append(qid)
            stack.extend(self._nodes[qid].child_ids)
        return out

    def question_count(self) -> int:
        return len(self._nodes)

    def missing_translations_count(self, required_languages=None) -> int:
        if required_languages is None:
            return missing_translations_count(self.categories(), self._nodes.values())
        return missing_translations_count(self.categories(), self._nodes.values(), required_languages)

    def to_nested(self) -> dict:
        def dump(node: QuestionNode) -> dict:
            data = node.to_dict()
            data["sub_questions"] = [dump(self._nodes[c]) for c in node.child_ids]
            return data

        return {
            "categories": [c.to_dict() for c in self.categories()],
            "questions": [
                dump(self._nodes[qid])
                for cid in self._category_ids
                for qid in self._root_ids.get(cid, ())
            ],
        }

    # -----------------------
    # Internal rewrite helpers (operate on a fresh copy)
    # -----------------------

    def _bump_ancestors(self, parent_id, category_id=None) -> None:
        while parent_id is not None:
            parent = self._nodes[parent_id]
            self._nodes[parent_id] = dataclasses.replace(parent, version=parent.version + 1)
            category_id = parent.category_id or category_id
            parent_id = parent.parent_id
        if category_id is not None and category_id in self._categories:
            cat = self._categories[category_id]
            self._categories[category_id] = dataclasses.replace(cat, version=cat.version + 1)

    def _set_group(self, group_key: tuple[str, str], ids) -> None:
        """Store the ids of a group and renumber it densely. Only nodes whose rank changed are replaced."""
        ids = tuple(ids)
        scope, owner = group_key
        if scope == "categories":
            self._category_ids = ids
            for rank, cid in enumerate(ids):
                cat = self._categories[cid]
                if cat.order != rank:
                    self._categories[cid] = dataclasses.replace(cat, order=rank)
            return

        for rank, qid in enumerate(ids):
            node = self._nodes[qid]
            if node.order != rank:
                self._nodes[qid] = dataclasses.replace(node, order=rank)
        if scope == "category":
            self._root_ids[owner] = ids
            self._bump_ancestors(None, owner)
        else:
            parent = self._nodes[owner]
            self._nodes[owner] = dataclasses.replace(parent, child_ids=ids, version=parent.version + 1)
            self._bump_ancestors(parent.parent_id, parent.category_id)

    # -----------------------
    # Mutations
    # -----------------------

    def add_category(self, name, lang, *, category_id=None, created_by=None, created_at=None):
        """Append a category with the next order value. Returns (tree, node)."""
        text = _require_text(name, "Category name")
        lang = Language.parse(lang)
        cid = category_id or _new_id()
        if cid in self._categories:
            raise ValidationError(f"Duplicate category id: {cid}")
        node = CategoryNode(
            id=cid,
            order=len(self._category_ids),
            name=TranslationMap.single(lang, text),
            created_at=created_at or _now(),
            created_by=created_by,
            updated_by=created_by,
        )
        tree = self._copy()
        tree._categories[cid] = node
        tree._category_ids = self._category_ids + (cid,)
        tree._root_ids[cid] = ()
        return tree, node

    def add_question(self, text, lang, *, category_id=None, parent_question_id=None,
                     question_id=None, created_by=None, created_at=None):
        """
        Create a leaf question, prepended to its group (newest first) and renumbered.
        Exactly one of `category_id` / `parent_question_id` must be given.
        Returns (tree, node).
        """
        body = _require_text(text, "Question")
        lang = Language.parse(lang)
        if bool(category_id) == bool(parent_question_id):
            raise ValidationError("Exactly one of category_id or parent_question_id is required")
        if parent_question_id:
            self.question(parent_question_id)
            group_key = ("question", parent_question_id)
        else:
            self.category(category_id)
            group_key = ("category", category_id)

        qid = question_id or _new_id()
        if qid in self._nodes:
            raise ValidationError(f"Duplicate question id: {qid}")
        node = QuestionNode(
            id=qid,
            order=0,
            question=TranslationMap.single(lang, body),
            category_id=None if parent_question_id else category_id,
            parent_id=parent_question_id,
            created_at=created_at or _now(),
            created_by=created_by,
            updated_by=created_by,
        )
        tree = self._copy()
        tree._nodes[qid] = node
        tree._set_group(group_key, (qid,) + self.group_ids(group_key))
        return tree, tree._nodes[qid]

    def update_node(self, node_id, lang, *, name=None, question=None, answer=None,
                    attachment=KEEP, order=None, updated_by=None, updated_at=None):
        """
        Write translation fields for one language; other languages are never touched.
        `attachment` is an Attachment, None (clear) or KEEP. `order` moves the node to that
        0-based rank inside its sibling group (clamped), keeping the group dense.
        Returns (tree, node).
        """
        lang = Language.parse(lang)
        tree = self._copy()

        if node_id in self._categories:
            if question is not None or answer is not None or attachment is not KEEP:
                raise ValidationError("Categories only carry a name")
            cat = self._categories[node_id]
            changes = {"version": cat.version + 1, "updated_at": updated_at or _now()}
            if updated_by is not None:
                changes["updated_by"] = updated_by
            if name is not None:
                changes["name"] = cat.name.with_text(lang, _require_text(name, "Category name"))
            tree._categories[node_id] = dataclasses.replace(cat, **changes)
        else:
            if name is not None:
                raise ValidationError("Questions do not carry a name")
            node = self.question(node_id)
            changes = {"version": node.version + 1, "updated_at": updated_at or _now()}
            if updated_by is not None:
                changes["updated_by"] = updated_by
            if question is not None:
                changes["question"] = node.question.with_text(lang, _require_text(question, "Question"))
            if answer is not None:
                changes["answer"] = node.answer.with_text(lang, answer if str(answer).strip() else None)
            if attachment is not KEEP:
                attachments = dict(node.attachments)
                if attachment is None:
                    attachments.pop(lang, None)
                else:
                    attachments[lang] = Attachment.from_value(attachment)
                changes["attachments"] = attachments
            tree._nodes[node_id] = dataclasses.replace(node, **changes)
            tree._bump_ancestors(node.parent_id, node.category_id)

        if order is not None:
            tree = tree.move_to_rank(node_id, int(order), clamp=True)
        return tree, tree.find_by_id(node_id)

    def set_translations(self, node_id, field_name: str, translations, attachments=None,
                         updated_by=None, updated_at=None):
        """
        Replace every language of one field (name / question / answer) at once.
        `attachments` maps language -> Attachment | None | KEEP and only applies to answers.
        """
        values = TranslationMap({
            lang: text for lang, text in TranslationMap.coerce(translations).items() if text and text.strip()
        })
        tree = self._copy()
        if node_id in self._categories:
            if field_name != "name":
                raise ValidationError(f"Unknown category field: {field_name}")
            if not values.has_content():
                raise ValidationError("Category name is required in at least one language")
            cat = self._categories[node_id]
            tree._categories[node_id] = dataclasses.replace(
                cat, name=values, version=cat.version + 1,
                updated_at=updated_at or _now(), updated_by=updated_by or cat.updated_by,
            )
            return tree, tree._categories[node_id]

        node = self.question(node_id)
        if field_name not in ("question", "answer"):
            raise ValidationError(f"Unknown question field: {field_name}")
        if field_name == "question" and not values.has_content():
            raise ValidationError("Question text is required in at least one language")
        changes = {
            field_name: values,
            "version": node.version + 1,
            "updated_at": updated_at or _now(),
            "updated_by": updated_by or node.updated_by,
        }
        if field_name == "answer" and attachments:
            merged = dict(node.attachments)
            for code, value in attachments.items():
                if value is KEEP:
                    continue
                lang = Language.parse(code)
                if value is None:
                    merged.pop(lang, None)
                else:
                    merged[lang] = Attachment.from_value(value)
            changes["attachments"] = merged
        tree._nodes[node_id] = dataclasses.replace(node, **changes)
        tree._bump_ancestors(node.parent_id, node.category_id)
        return tree, tree._nodes[node_id]

    def with_fields(self, node_id, **changes) -> "FlowTree":
        """Replace plain (non-structural) fields on one node, e.g. server audit fields."""
        for key in ("id", "order", "child_ids", "parent_id", "category_id"):
            changes.pop(key, None)
        tree = self._copy()
        if node_id in self._categories:
            cat = self._categories[node_id]
            tree._categories[node_id] = dataclasses.replace(cat, version=cat.version + 1, **changes)
            return tree
        node = self.question(node_id)
        tree._nodes[node_id] = dataclasses.replace(node, version=node.version + 1, **changes)
        tree._bump_ancestors(node.parent_id, node.category_id)
        return tree

    def delete_node(self, node_id):
        """
        Remove a category (with all its questions) or a question (with its whole subtree).
        Remaining siblings are renumbered. Returns (tree, removed_ids).
        """
        if node_id in self._categories:
            removed = [node_id]
            for root in self._root_ids.get(node_id, ()):
                removed.append(root)
                removed.extend(self.descendant_ids(root))
            tree = self._copy()
            for qid in removed[1:]:
                del tree._nodes[qid]
            del tree._categories[node_id]
            tree._root_ids.pop(node_id, None)
            tree._set_group(("categories", CATEGORIES_GROUP), [c for c in self._category_ids if c != node_id])
            return tree, removed

        self.question(node_id)
        group_key = self.group_key_of(node_id)
        removed = [node_id] + self.descendant_ids(node_id)
        tree = self._copy()
        for qid in removed:
            del tree._nodes[qid]
        tree._set_group(group_key, [q for q in self.group_ids(group_key) if q != node_id])
        return tree, removed

    def reorder_group(self, group_key: tuple[str, str], ordered_ids) -> "FlowTree":
        """Assign ranks 0..n-1 following `ordered_ids`, which must be a permutation of the group."""
        ordered_ids = list(ordered_ids)
        current = self.group_ids(group_key)
        if sorted(ordered_ids) != sorted(current):
            raise ValidationError("Reorder must be a permutation of the sibling group")
        tree = self._copy()
        tree._set_group(group_key, ordered_ids)
        return tree

    def move_to_rank(self, node_id, rank: int, clamp: bool = False) -> "FlowTree":
        group_key = self.group_key_of(node_id)
        ids = list(self.group_ids(group_key))
        if clamp:
            rank = max(0, min(rank, len(ids) - 1))
        elif rank < 0 or rank >= len(ids):
            raise ValidationError(f"Rank {rank} outside 0..{len(ids) - 1}")
        ids.remove(node_id)
        ids.insert(rank, node_id)
        return self.reorder_group(group_key, ids)
