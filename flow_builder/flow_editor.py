# flow_builder/flow_editor.py
"""
FlowEditor: everything one admin session does to the flow.

Each mutation follows the same optimistic cycle:
  1. validate (ValidationError / NotFoundError, nothing changes)
  2. build the new FlowTree and show it right away
  3. call the repository
  4. success -> fold the server record into the tree, it becomes the confirmed snapshot
     failure -> log, leave a user-visible notice, revert to the confirmed snapshot, raise

Navigation, panels and modals are re-checked after every tree change so they never point
at nodes that no longer exist.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

from flow_builder.base_utils import BaseUtils
from flow_builder.drag_drop import DragSession
from flow_builder.errors import (
    DeleteAttachmentError,
    FlowError,
    NotFoundError,
    PersistenceError,
    UploadError,
    ValidationError,
)
from flow_builder.navigation import Navigator, path_crumbs
from flow_builder.ordering import (
    ReorderResult,
    current_position,
    manual_reorder,
    step_reorder,
)
from flow_builder.panels import (
    PANEL_ANSWER,
    PANEL_EDIT,
    REORDER_NAME_LIMIT,
    DeleteConfirm,
    PanelController,
    ReorderModal,
    TranslationForm,
)
from flow_builder.search import SearchResult, search_forest
from flow_builder.translations import (
    DEFAULT_LANGUAGE,
    SUPPORTED_LANGUAGES,
    Attachment,
    Language,
    TranslationMap,
    resolve,
)
from flow_builder.tree_store import KEEP, FlowTree, _parse_attachments, _parse_dt

logger = logging.getLogger("flow_builder")


@dataclass
class Notice:
    level: str  # "success" | "error" | "info"
    message: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PendingCommand:
    id: str
    label: str
    # navigator state before the optimistic apply, restored on revert
    navigation: tuple = ()


class FlowEditor(BaseUtils):
    def __init__(self, repository, storage=None, lang=DEFAULT_LANGUAGE, actor: str | None = None):
        self.repository = repository
        self.storage = storage
        self.current_lang = Language.parse(lang)
        self.actor = actor

        self.tree = FlowTree()
        self.confirmed = self.tree
        self.pending: dict[str, PendingCommand] = {}

        self.navigator = Navigator()
        self.panels = PanelController()
        self.drag = DragSession()
        self.translation_form: TranslationForm | None = None
        self.reorder_modal: ReorderModal | None = None
        self.delete_confirm: DeleteConfirm | None = None
        self.notices: list[Notice] = []
        self.is_uploading = False

    # -----------------------
    # Optimistic update machinery
    # -----------------------

    def _notify(self, level: str, message: str) -> None:
        self.notices.append(Notice(level=level, message=message))
        if level == "error":
            self.color_print(f"[notice] {message}", color="red")
        else:
            self.color_print(f"[notice] {message}", color="green")

    def _set_tree(self, tree: FlowTree) -> None:
        self.tree = tree
        self.navigator.reconcile(tree, self.current_lang)
        if self.panels.active is not None and not tree.has_question(self.panels.active.question_id):
            self.panels.close()
        if self.translation_form is not None and tree.find_by_id(self.translation_form.node_id) is None:
            self.translation_form = None
        if self.reorder_modal is not None and tree.find_by_id(self.reorder_modal.node_id) is None:
            self.reorder_modal = None

    def _commit(self, label: str, new_tree: FlowTree, persist, reconcile=None):
        nav = self.navigator
        command = PendingCommand(
            id=str(uuid4()),
            label=label,
            navigation=(nav.selected_category, list(nav.breadcrumbs), nav.target_question_id),
        )
        self.pending[command.id] = command
        logger.debug("command %s (%s) applied optimistically", command.id, label)
        self._set_tree(new_tree)
        try:
            record = persist()
        except Exception as e:
            self.pending.pop(command.id, None)
            nav.selected_category, nav.breadcrumbs, nav.target_question_id = command.navigation
            self._set_tree(self.confirmed)
            logger.error("command %s (%s) failed, reverted: %s", command.id, label, e)
            self._notify("error", f"{label} failed")
            if isinstance(e, FlowError):
                raise
            raise PersistenceError(f"{label} failed: {e}") from e

        self.pending.pop(command.id, None)
        if reconcile is not None and record:
            self._set_tree(reconcile(self.tree, record))
        self.confirmed = self.tree
        return record

    def _reconcile_category(self, tree: FlowTree, record: dict) -> FlowTree:
        if not tree.has_category(record.get("id")):
            return tree
        return tree.with_fields(
            record["id"],
            name=TranslationMap.coerce(record.get("name")) if record.get("name") else tree.category(record["id"]).name,
            created_at=_parse_dt(record.get("created_at")) or tree.category(record["id"]).created_at,
            created_by=record.get("created_by"),
            updated_at=_parse_dt(record.get("updated_at")),
            updated_by=record.get("updated_by"),
        )

    def _reconcile_question(self, tree: FlowTree, record: dict) -> FlowTree:
        qid = record.get("id")
        if not tree.has_question(qid):
            return tree
        node = tree.question(qid)
        return tree.with_fields(
            qid,
            question=TranslationMap.coerce(record.get("question")) or node.question,
            answer=TranslationMap.coerce(record.get("answer")),
            attachments=_parse_attachments(record.get("attachments")),
            created_at=_parse_dt(record.get("created_at")) or node.created_at,
            created_by=record.get("created_by"),
            updated_at=_parse_dt(record.get("updated_at")),
            updated_by=record.get("updated_by"),
        )

    def _persist_reorder(self, result: ReorderResult):
        if result.is_category_group:
            return self.repository.reorder_categories(result.items)
        return self.repository.reorder_questions(result.items)

    def _group_items(self, tree: FlowTree, group_key) -> list[dict]:
        return [{"id": i, "order": rank} for rank, i in enumerate(tree.group_ids(group_key))]

    # -----------------------
    # Loading & language
    # -----------------------

    def load(self) -> FlowTree:
        try:
            categories = self.repository.list_categories()
            questions = self.repository.list_questions()
        except PersistenceError as e:
            logger.error("Loading the flow failed: %s", e)
            self._notify("error", "Failed to load the flow")
            raise
        tree = FlowTree.from_records(categories, questions)
        self.pending.clear()
        self.confirmed = tree
        self._set_tree(tree)
        logger.info("Loaded %d categories and %d questions", len(tree.category_ids()), tree.question_count())
        return tree

    def set_language(self, lang) -> None:
        self.current_lang = Language.parse(lang)
        self.panels.close()
        self.navigator.reconcile(self.tree, self.current_lang)

    # -----------------------
    # Navigation
    # -----------------------

    def select_category(self, category_id) -> None:
        if category_id is not None:
            self.tree.category(category_id)
        self.panels.close()
        self.navigator.select_category(self.tree, category_id, self.current_lang)

    def navigate_into(self, question_id) -> None:
        self.navigator.navigate_into(self.tree, question_id, self.current_lang)
        self.panels.close()

    def navigate_to_breadcrumb(self, index: int) -> None:
        self.navigator.navigate_to_breadcrumb(index)
        self.panels.close()

    def questions_at_level(self):
        return self.navigator.questions_at_level(self.tree)

    def header_title(self) -> str:
        if not self.navigator.breadcrumbs:
            return ""
        return self.navigator.breadcrumbs[-1].label

    # -----------------------
    # Search
    # -----------------------

    def search(self, query: str) -> list[SearchResult]:
        return search_forest(self.tree, query, self.current_lang)

    def select_search_result(self, result: SearchResult) -> None:
        self.tree.question(result.question_id)
        path = path_crumbs(self.tree, result.question_id, self.current_lang)
        self.panels.close()
        self.navigator.select_search_result(result.category_id, path, result.question_id)

    # -----------------------
    # Categories
    # -----------------------

    def add_category(self, name: str):
        new_tree, node = self.tree.add_category(name, self.current_lang, created_by=self.actor)
        text = node.name.get(self.current_lang)
        self._commit(
            "Create category",
            new_tree,
            lambda: self.repository.create_category(
                [{"language": self.current_lang.value, "name": text}],
                category_id=node.id,
                actor=self.actor,
            ),
            self._reconcile_category,
        )
        self.select_category(node.id)
        return self.tree.category(node.id)

    def update_category(self, category_id, name: str):
        new_tree, node = self.tree.update_node(category_id, self.current_lang, name=name, updated_by=self.actor)
        self._commit(
            "Update category",
            new_tree,
            lambda: self.repository.update_category(
                category_id,
                [{"language": self.current_lang.value, "name": node.name.get(self.current_lang)}],
                actor=self.actor,
            ),
            self._reconcile_category,
        )
        return self.tree.category(category_id)

    def delete_category(self, category_id) -> list[str]:
        new_tree, removed = self.tree.delete_node(category_id)
        items = self._group_items(new_tree, self.tree.group_key_of(category_id))

        self._commit(
            "Delete category",
            new_tree,
            lambda: self.repository.delete_category(category_id, reorder_items=items),
        )
        return removed

    def reorder_category(self, category_id, direction: str) -> ReorderResult:
        result = step_reorder(self.tree, category_id, direction)
        if result.changed:
            self._commit("Reorder categories", result.tree, lambda: self._persist_reorder(result))
        return result

    # -----------------------
    # Questions
    # -----------------------

    def add_question(self, text: str, category_id=None, parent_question_id=None):
        new_tree, node = self.tree.add_question(
            text,
            self.current_lang,
            category_id=category_id,
            parent_question_id=parent_question_id,
            created_by=self.actor,
        )
        self._commit(
            "Create question",
            new_tree,
            lambda: self.repository.create_question(
                [{"language": self.current_lang.value, "question": node.question.get(self.current_lang), "answer": ""}],
                category_id=category_id,
                parent_id=parent_question_id,
                question_id=node.id,
                actor=self.actor,
            ),
            self._reconcile_question,
        )
        return self.tree.question(node.id)

    def add_root_question(self):
        """Adds `panels.new_question_text` to the root of the selected category."""
        if self.navigator.selected_category is None:
            raise ValidationError("Select a category first")
        node = self.add_question(self.panels.new_question_text, category_id=self.navigator.selected_category)
        self.panels.new_question_text = ""
        return node

    def add_sub_question(self, parent_id):
        text = self.panels.subquestion_text(parent_id)
        node = self.add_question(text, parent_question_id=parent_id)
        self.panels.subquestion_form = ""
        return node

    def delete_question(self, question_id) -> list[str]:
        group_key = self.tree.group_key_of(question_id)
        new_tree, removed = self.tree.delete_node(question_id)
        items = self._group_items(new_tree, group_key) if new_tree.find_by_id(group_key[1]) else []

        self._commit(
            "Delete question",
            new_tree,
            lambda: self.repository.delete_question(question_id, reorder_items=items),
        )
        return removed

    def reorder_question(self, question_id, direction: str) -> ReorderResult:
        result = step_reorder(self.tree, question_id, direction)
        if result.changed:
            self._commit("Reorder questions", result.tree, lambda: self._persist_reorder(result))
        return result

    def reorder_manual(self, node_id, position: int) -> ReorderResult:
        result = manual_reorder(self.tree, node_id, position)
        if result.changed:
            label = "Reorder categories" if result.is_category_group else "Reorder questions"
            self._commit(label, result.tree, lambda: self._persist_reorder(result))
        return result

    # -----------------------
    # Panels
    # -----------------------

    def open_panel(self, question_id, panel: str):
        return self.panels.open(self.tree, question_id, panel, self.current_lang)

    def close_panel(self) -> None:
        self.panels.close()

    def attach_to_panel(self, attachment: Attachment | None) -> None:
        active = self.panels.active
        if active is None or active.panel not in (PANEL_ANSWER, PANEL_EDIT):
            raise ValidationError("Attachments can only be set on an open answer or edit panel")
        if active.panel == PANEL_ANSWER:
            self.panels.answer_attachment = attachment
        else:
            self.panels.edit_attachment = attachment

    def _translation_row(self, question=None, answer=None, attachment=KEEP) -> dict:
        row = {"language": self.current_lang.value}
        if question is not None:
            row["question"] = question
        if answer is not None:
            row["answer"] = answer
        if attachment is not KEEP:
            row["attachment_url"] = attachment.url if attachment else None
            row["attachment_name"] = attachment.name if attachment else None
        return row

    def save_answer(self, question_id):
        changes = self.panels.answer_update(question_id)
        new_tree, _ = self.tree.update_node(question_id, self.current_lang, updated_by=self.actor, **changes)
        self._commit(
            "Save answer",
            new_tree,
            lambda: self.repository.update_question(
                question_id,
                [self._translation_row(answer=changes["answer"], attachment=changes["attachment"])],
                actor=self.actor,
            ),
            self._reconcile_question,
        )
        self.panels.close()
        return self.tree.question(question_id)

    def save_edit(self, question_id):
        changes = self.panels.edit_update(question_id)
        group_key = self.tree.group_key_of(question_id)
        before = self.tree.group_ids(group_key)
        new_tree, node = self.tree.update_node(question_id, self.current_lang, updated_by=self.actor, **changes)
        after = new_tree.group_ids(group_key)
        items = self._group_items(new_tree, group_key) if before != after else []

        def persist():
            return self.repository.update_question(
                question_id,
                [self._translation_row(question=changes["question"], answer=changes["answer"],
                                       attachment=changes["attachment"])],
                order=node.order,
                actor=self.actor,
                reorder_items=items,
            )

        self._commit("Save question", new_tree, persist, self._reconcile_question)
        self.panels.close()
        return self.tree.question(question_id)

    # -----------------------
    # Attachments
    # -----------------------

    def upload_attachment(self, filename: str, data: bytes) -> Attachment:
        if self.storage is None:
            raise UploadError("No attachment storage configured")
        self.is_uploading = True
        try:
            attachment = self.storage.upload(filename, data)
        except UploadError:
            self._notify("error", "Failed to upload file")
            raise
        finally:
            self.is_uploading = False
        self._notify("success", f"File uploaded: {attachment.name}")
        return attachment

    def delete_attachment(self, question_id, url: str):
        """
        Clear the current language's attachment on the question, then delete the stored file.
        A file that cannot be deleted after the row is cleared is logged as orphaned.
        """
        node = self.tree.question(question_id)
        if self.storage is None:
            raise DeleteAttachmentError("No attachment storage configured")

        lang = self.current_lang
        current = node.attachment(lang)
        if current is None or current.url != url:
            logger.warning("Attachment %s is not the %s attachment of %s", url, lang.value, question_id)
        new_tree, _ = self.tree.update_node(question_id, lang, attachment=None, updated_by=self.actor)
        self._commit(
            "Delete attachment",
            new_tree,
            lambda: self.repository.update_question(
                question_id, [self._translation_row(attachment=None)], actor=self.actor
            ),
            self._reconcile_question,
        )
        for buffer_name in ("answer_attachment", "edit_attachment"):
            pending = getattr(self.panels, buffer_name)
            if pending is not None and pending.url == url:
                setattr(self.panels, buffer_name, None)
        try:
            self.storage.delete(url)
        except DeleteAttachmentError as e:
            logger.error("Attachment %s is no longer referenced but could not be deleted: %s", url, e)
            self._notify("error", "Failed to delete attachment")
            raise
        self._notify("success", "File deleted successfully")
        return self.tree.question(question_id)

    # -----------------------
    # Translation modal
    # -----------------------

    def open_translation_modal(self, kind: str, node_id, field_name: str) -> TranslationForm:
        self.translation_form = TranslationForm.open(self.tree, kind, node_id, field_name)
        return self.translation_form

    def close_translation_modal(self) -> None:
        self.translation_form = None

    def save_translations(self):
        form = self.translation_form
        if form is None:
            raise ValidationError("No translation form is open")
        values = form.translations()
        attachment_updates = form.attachment_updates()
        new_tree, _ = self.tree.set_translations(
            form.node_id, form.field_name, values, attachments=attachment_updates, updated_by=self.actor
        )

        if form.kind == "category":
            rows = [{"language": lang.value, "name": values.get(lang) or ""} for lang in SUPPORTED_LANGUAGES]
            self._commit(
                "Save translations",
                new_tree,
                lambda: self.repository.update_category(form.node_id, rows, actor=self.actor),
                self._reconcile_category,
            )
        else:
            rows = []
            for lang in SUPPORTED_LANGUAGES:
                row = {"language": lang.value, form.field_name: values.get(lang) or ""}
                if lang in attachment_updates:
                    attachment = attachment_updates[lang]
                    row["attachment_url"] = attachment.url if attachment else None
                    row["attachment_name"] = attachment.name if attachment else None
                rows.append(row)
            self._commit(
                "Save translations",
                new_tree,
                lambda: self.repository.update_question(form.node_id, rows, actor=self.actor),
                self._reconcile_question,
            )
        self.translation_form = None
        return self.tree.find_by_id(form.node_id)

    def missing_translations_count(self) -> int:
        return self.tree.missing_translations_count()

    def question_count(self) -> int:
        return self.tree.question_count()

    # -----------------------
    # Reorder modal
    # -----------------------

    def open_reorder_modal(self, node_id) -> ReorderModal:
        node = self.tree.find_by_id(node_id)
        if node is None:
            raise NotFoundError(f"Node not found: {node_id}")
        position, total = current_position(self.tree, node_id)
        if node.kind == "category":
            name = resolve(node.name, self.current_lang)
        else:
            name = resolve(node.question, self.current_lang, default="") or "Question"
        self.reorder_modal = ReorderModal(
            kind=node.kind,
            node_id=node_id,
            position=position,
            total=total,
            name=self.truncate_label(name, REORDER_NAME_LIMIT),
        )
        return self.reorder_modal

    def open_reorder_category_modal(self, category_id) -> ReorderModal:
        self.tree.category(category_id)
        return self.open_reorder_modal(category_id)

    def close_reorder_modal(self) -> None:
        self.reorder_modal = None

    def confirm_reorder(self, position: int) -> ReorderResult:
        if self.reorder_modal is None:
            raise ValidationError("No reorder modal is open")
        result = self.reorder_manual(self.reorder_modal.node_id, position)
        self.reorder_modal = None
        return result

    # -----------------------
    # Delete confirmation
    # -----------------------

    def request_delete(self, kind: str, node_id) -> DeleteConfirm:
        node = self.tree.find_by_id(node_id)
        if node is None or node.kind != kind:
            raise NotFoundError(f"{kind} not found: {node_id}")
        text = node.name if kind == "category" else node.question
        self.delete_confirm = DeleteConfirm(kind=kind, node_id=node_id, name=resolve(text, self.current_lang))
        return self.delete_confirm

    def cancel_delete(self) -> None:
        self.delete_confirm = None

    def confirm_delete(self) -> list[str]:
        confirm = self.delete_confirm
        if confirm is None:
            raise ValidationError("Nothing to delete")
        self.delete_confirm = None
        if confirm.kind == "category":
            return self.delete_category(confirm.node_id)
        return self.delete_question(confirm.node_id)

    # -----------------------
    # Drag and drop
    # -----------------------

    def drag_handle_down(self, allow: bool) -> None:
        self.drag.handle_down(allow)

    def start_drag(self, node_id) -> bool:
        return self.drag.start(self.tree, node_id)

    def drag_over(self, node_id) -> bool:
        return self.drag.hover(self.tree, node_id)

    def drag_leave(self) -> None:
        self.drag.leave()

    def drop(self, target_id=None) -> ReorderResult | None:
        result = self.drag.drop(self.tree, target_id)
        try:
            if result is not None and result.changed:
                label = "Reorder categories" if result.is_category_group else "Reorder questions"
                self._commit(label, result.tree, lambda: self._persist_reorder(result))
        finally:
            self.drag.end()
        return result

    def drag_end(self) -> None:
        self.drag.end()

    # -----------------------
    # Snapshot for callers / debugging
    # -----------------------

    def snapshot(self) -> dict:
        data = {
            "language": self.current_lang.value,
            "flow": self.tree.to_nested(),
            "navigation": self.navigator.to_dict(),
            "panels": self.panels.to_dict(),
            "missing_translations": self.missing_translations_count(),
            "question_count": self.question_count(),
            "pending": [c.label for c in self.pending.values()],
            "notices": [{"level": n.level, "message": n.message} for n in self.notices[-5:]],
        }
        logger.debug("snapshot\n%s", self.preview(data))
        return data
