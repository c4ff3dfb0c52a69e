# flow_builder/persistence.py
"""
Relational store for the flow: categories, questions and their per-language rows.

Records handed back are plain dicts in the shape FlowTree.from_records reads:

    category: {id, order, name: {lang: text}, created_at, created_by, updated_at, updated_by}
    question: {id, category_id, parent_id, order, question: {lang: text}, answer: {lang: text},
               attachments: {lang: {url, name}}, sub_questions: [...], audit fields}
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from flow_builder.entities import Category, CategoryTranslation, Question, QuestionTranslation
from flow_builder.errors import NotFoundError, PersistenceError, ValidationError
from flow_builder.translations import Language

logger = logging.getLogger("flow_builder")


def _iso(value):
    return value.isoformat() if value is not None else None


def _normalize_translations(translations, text_keys) -> list[dict]:
    """
    Accept either a list of {"language": ..., <field>: ...} rows or a {lang: text} map
    (which is taken as the first of `text_keys`).
    """
    if translations is None:
        return []
    if isinstance(translations, dict):
        translations = [{"language": lang, text_keys[0]: text} for lang, text in translations.items()]
    rows = []
    for row in translations:
        if not isinstance(row, dict) or "language" not in row:
            raise ValidationError("Each translation needs a 'language'")
        out = dict(row)
        out["language"] = Language.parse(row["language"]).value
        rows.append(out)
    return rows


class SqlFlowRepository:
    def __init__(self, session_factory: Callable[[], Session]):
        self.SessionFactory = session_factory

    def _run(self, label: str, fn):
        session = self.SessionFactory()
        try:
            result = fn(session)
            session.commit()
            return result
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("%s failed: %s", label, e)
            raise PersistenceError(f"{label} failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -----------------------
    # Record formatting
    # -----------------------

    def _category_record(self, session: Session, category: Category) -> dict:
        rows = (
            session.query(CategoryTranslation)
            .filter(CategoryTranslation.category_id == category.id)
            .all()
        )
        return {
            "id": category.id,
            "order": category.order,
            "name": {t.language: t.name for t in rows},
            "created_at": _iso(category.created_at),
            "created_by": category.created_by,
            "updated_at": _iso(category.updated_at),
            "updated_by": category.updated_by,
        }

    def _question_record(self, question: Question, rows: list) -> dict:
        record = {
            "id": question.id,
            "category_id": question.category_id,
            "parent_id": question.parent_id,
            "order": question.order,
            "question": {},
            "answer": {},
            "attachments": {},
            "sub_questions": [],
            "created_at": _iso(question.created_at),
            "created_by": question.created_by,
            "updated_at": _iso(question.updated_at),
            "updated_by": question.updated_by,
        }
        for t in rows:
            if t.question:
                record["question"][t.language] = t.question
            if t.answer:
                record["answer"][t.language] = t.answer
            if t.attachment_url:
                record["attachments"][t.language] = {
                    "url": t.attachment_url,
                    "name": t.attachment_name or t.attachment_url.rsplit("/", 1)[-1],
                }
        return record

    def _load_question_record(self, session: Session, question: Question) -> dict:
        rows = (
            session.query(QuestionTranslation)
            .filter(QuestionTranslation.question_id == question.id)
            .all()
        )
        return self._question_record(question, rows)

    def _get_category(self, session: Session, category_id) -> Category:
        category = session.query(Category).filter(Category.id == str(category_id)).one_or_none()
        if category is None:
            raise NotFoundError(f"Category not found: {category_id}")
        return category

    def _get_question(self, session: Session, question_id) -> Question:
        question = session.query(Question).filter(Question.id == str(question_id)).one_or_none()
        if question is None:
            raise NotFoundError(f"Question not found: {question_id}")
        return question

    def _subtree_ids(self, session: Session, root_ids: list[str]) -> list[str]:
        out = []
        frontier = list(root_ids)
        while frontier:
            out.extend(frontier)
            frontier = [
                qid for (qid,) in session.query(Question.id).filter(Question.parent_id.in_(frontier)).all()
            ]
        return out

    def _apply_order(self, session: Session, model, items) -> None:
        for item in items or []:
            session.query(model).filter(model.id == str(item["id"])).update(
                {model.order: int(item["order"])}, synchronize_session=False
            )

    def _delete_questions(self, session: Session, ids: list[str]) -> None:
        if not ids:
            return
        session.query(QuestionTranslation).filter(QuestionTranslation.question_id.in_(ids)).delete(
            synchronize_session=False
        )
        # children first so parent_id foreign keys never dangle
        for qid in reversed(ids):
            session.query(Question).filter(Question.id == qid).delete(synchronize_session=False)

    # -----------------------
    # Categories
    # -----------------------

    def list_categories(self) -> list[dict]:
        def _list(session):
            categories = session.query(Category).order_by(Category.order.asc(), Category.created_at.asc()).all()
            return [self._category_record(session, c) for c in categories]

        return self._run("list_categories", _list)

    def create_category(self, translations, category_id=None, actor=None) -> dict:
        rows = _normalize_translations(translations, ("name",))
        if not any((r.get("name") or "").strip() for r in rows):
            raise ValidationError("Translations are required")

        def _create(session):
            next_order = session.query(func.coalesce(func.max(Category.order) + 1, 0)).scalar()
            category = Category(
                id=str(category_id or uuid4()),
                order=next_order,
                created_by=actor,
                updated_by=actor,
            )
            session.add(category)
            session.flush()
            for r in rows:
                session.add(CategoryTranslation(category_id=category.id, language=r["language"], name=r.get("name") or ""))
            session.flush()
            return self._category_record(session, category)

        return self._run("create_category", _create)

    def update_category(self, category_id, translations, actor=None) -> dict:
        rows = _normalize_translations(translations, ("name",))

        def _update(session):
            category = self._get_category(session, category_id)
            if actor is not None:
                category.updated_by = actor
            for r in rows:
                existing = (
                    session.query(CategoryTranslation)
                    .filter(
                        CategoryTranslation.category_id == category.id,
                        CategoryTranslation.language == r["language"],
                    )
                    .one_or_none()
                )
                if existing is None:
                    session.add(CategoryTranslation(category_id=category.id, language=r["language"], name=r.get("name") or ""))
                else:
                    existing.name = r.get("name") or ""
            # translation rows live in another table; bump the parent row explicitly
            category.updated_at = datetime.now(timezone.utc)
            session.flush()
            session.refresh(category)
            return self._category_record(session, category)

        return self._run("update_category", _update)

    def delete_category(self, category_id, reorder_items=None) -> dict:
        """`reorder_items` renumbers the surviving categories in the same transaction."""
        def _delete(session):
            category = self._get_category(session, category_id)
            roots = [qid for (qid,) in session.query(Question.id).filter(Question.category_id == category.id).all()]
            self._delete_questions(session, self._subtree_ids(session, roots))
            session.query(CategoryTranslation).filter(CategoryTranslation.category_id == category.id).delete(
                synchronize_session=False
            )
            session.delete(category)
            session.flush()
            self._apply_order(session, Category, reorder_items)
            return {"success": True}

        return self._run("delete_category", _delete)

    def reorder_categories(self, items: list[dict]) -> dict:
        def _reorder(session):
            self._apply_order(session, Category, items)
            return {"success": True}

        return self._run("reorder_categories", _reorder)

    # -----------------------
    # Questions
    # -----------------------

    def list_questions(self) -> list[dict]:
        """Root questions (ordered) with their nested sub_questions."""
        def _list(session):
            questions = session.query(Question).order_by(Question.order.asc(), Question.created_at.desc()).all()
            rows_by_q = defaultdict(list)
            for t in session.query(QuestionTranslation).all():
                rows_by_q[t.question_id].append(t)

            records = {q.id: self._question_record(q, rows_by_q.get(q.id, [])) for q in questions}
            roots = []
            for q in questions:
                record = records[q.id]
                if q.parent_id and q.parent_id in records:
                    records[q.parent_id]["sub_questions"].append(record)
                elif q.category_id:
                    roots.append(record)
            return roots

        return self._run("list_questions", _list)

    def create_question(self, translations, category_id=None, parent_id=None, question_id=None, actor=None) -> dict:
        """New questions go first in their group; the rest of the group shifts down by one."""
        rows = _normalize_translations(translations, ("question", "answer"))
        if not any((r.get("question") or "").strip() for r in rows):
            raise ValidationError("Question text is required")
        if bool(category_id) == bool(parent_id):
            raise ValidationError("Exactly one of category_id or parent_id is required")

        def _create(session):
            if parent_id:
                self._get_question(session, parent_id)
                siblings = session.query(Question).filter(Question.parent_id == str(parent_id))
            else:
                self._get_category(session, category_id)
                siblings = session.query(Question).filter(
                    Question.category_id == str(category_id), Question.parent_id.is_(None)
                )
            siblings.update({Question.order: Question.order + 1}, synchronize_session=False)

            question = Question(
                id=str(question_id or uuid4()),
                category_id=None if parent_id else str(category_id),
                parent_id=str(parent_id) if parent_id else None,
                order=0,
                created_by=actor,
                updated_by=actor,
            )
            session.add(question)
            session.flush()
            for r in rows:
                session.add(QuestionTranslation(
                    question_id=question.id,
                    language=r["language"],
                    question=r.get("question") or "",
                    answer=r.get("answer") or None,
                    attachment_url=r.get("attachment_url"),
                    attachment_name=r.get("attachment_name"),
                ))
            session.flush()
            return self._load_question_record(session, question)

        return self._run("create_question", _create)

    def update_question(self, question_id, translations=None, order=None, actor=None, reorder_items=None) -> dict:
        """
        Upsert translation rows. Only keys present in a row are written, so a row
        {"language": "ru", "answer": "..."} leaves the ru question text alone.
        `attachment_url: None` clears that language's attachment.
        `reorder_items` renumbers the sibling group in the same transaction.
        """
        rows = _normalize_translations(translations, ("question",))

        def _update(session):
            question = self._get_question(session, question_id)
            if order is not None:
                question.order = int(order)
            if actor is not None:
                question.updated_by = actor
            for r in rows:
                existing = (
                    session.query(QuestionTranslation)
                    .filter(
                        QuestionTranslation.question_id == question.id,
                        QuestionTranslation.language == r["language"],
                    )
                    .one_or_none()
                )
                if existing is None:
                    existing = QuestionTranslation(question_id=question.id, language=r["language"], question="")
                    session.add(existing)
                if "question" in r:
                    existing.question = r.get("question") or ""
                if "answer" in r:
                    existing.answer = r.get("answer") or None
                if "attachment_url" in r:
                    existing.attachment_url = r.get("attachment_url") or None
                    existing.attachment_name = (r.get("attachment_name") or None) if existing.attachment_url else None
            session.flush()
            self._apply_order(session, Question, reorder_items)
            session.refresh(question)
            return self._load_question_record(session, question)

        return self._run("update_question", _update)

    def delete_question(self, question_id, reorder_items=None) -> dict:
        def _delete(session):
            question = self._get_question(session, question_id)
            self._delete_questions(session, self._subtree_ids(session, [question.id]))
            self._apply_order(session, Question, reorder_items)
            return {"success": True}

        return self._run("delete_question", _delete)

    def reorder_questions(self, items: list[dict]) -> dict:
        def _reorder(session):
            self._apply_order(session, Question, items)
            return {"success": True}

        return self._run("reorder_questions", _reorder)
