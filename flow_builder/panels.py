# flow_builder/panels.py
"""
Inline edit surfaces and their unsaved buffers.

At most one question has a panel open. Opening a panel anywhere throws away whatever
was typed in the previous one; nothing is saved implicitly.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

from flow_builder.errors import ValidationError
from flow_builder.translations import (
    LANGUAGE_NAMES,
    SUPPORTED_LANGUAGES,
    Attachment,
    Language,
    TranslationMap,
    resolve,
)
from flow_builder.tree_store import KEEP, FlowTree

logger = logging.getLogger("flow_builder")

PANEL_ANSWER = "answer"
PANEL_SUBQUESTION = "subquestion"
PANEL_EDIT = "edit"
PANELS = (PANEL_ANSWER, PANEL_SUBQUESTION, PANEL_EDIT)

REORDER_NAME_LIMIT = 30


@dataclass(frozen=True)
class ActivePanel:
    question_id: str
    panel: str

    def to_dict(self) -> dict:
        return {"question_id": self.question_id, "panel": self.panel}


@dataclass
class EditForm:
    question: str = ""
    answer: str = ""
    order: int = 0


class AttachmentAction(str, Enum):
    KEEP = "keep"
    SET = "set"
    CLEAR = "clear"


@dataclass(frozen=True)
class PendingAttachment:
    """What saving should do with one language's attachment."""
    action: AttachmentAction = AttachmentAction.KEEP
    attachment: Attachment | None = None

    @classmethod
    def keep(cls) -> "PendingAttachment":
        return cls()

    @classmethod
    def set(cls, attachment: Attachment) -> "PendingAttachment":
        return cls(AttachmentAction.SET, Attachment.from_value(attachment))

    @classmethod
    def clear(cls) -> "PendingAttachment":
        return cls(AttachmentAction.CLEAR, None)

    def as_update(self):
        if self.action == AttachmentAction.SET:
            return self.attachment
        if self.action == AttachmentAction.CLEAR:
            return None
        return KEEP


class PanelController:
    def __init__(self):
        self.active: ActivePanel | None = None
        self.new_question_text = ""
        self.answer_form = ""
        self.answer_attachment: Attachment | None = None
        self.subquestion_form = ""
        self.edit_form = EditForm()
        self.edit_attachment: Attachment | None = None

    def is_open(self, question_id, panel=None) -> bool:
        if self.active is None or self.active.question_id != question_id:
            return False
        return panel is None or self.active.panel == panel

    def open(self, tree: FlowTree, question_id, panel: str, lang) -> ActivePanel:
        if panel not in PANELS:
            raise ValidationError(f"Unknown panel: {panel!r}")
        node = tree.question(question_id)
        lang = Language.parse(lang)
        if self.active is not None and self.active.question_id != question_id:
            logger.debug("Discarding unsaved %s buffer of %s", self.active.panel, self.active.question_id)
        self._clear_buffers()

        if panel == PANEL_ANSWER:
            self.answer_form = node.answer.get(lang) or ""
            self.answer_attachment = node.attachment(lang)
        elif panel == PANEL_EDIT:
            self.edit_form = EditForm(
                question=node.question.get(lang) or resolve(node.question, lang, default=""),
                answer=node.answer.get(lang) or "",
                order=node.order,
            )
            self.edit_attachment = node.attachment(lang)
        self.active = ActivePanel(question_id=question_id, panel=panel)
        return self.active

    def close(self) -> None:
        self.active = None
        self._clear_buffers()

    def _clear_buffers(self) -> None:
        self.answer_form = ""
        self.answer_attachment = None
        self.subquestion_form = ""
        self.edit_form = EditForm()
        self.edit_attachment = None

    def _require(self, question_id, panel) -> None:
        if not self.is_open(question_id, panel):
            raise ValidationError(f"No open {panel} panel for question {question_id}")

    def answer_update(self, question_id) -> dict:
        """update_node keyword arguments for saving the answer panel."""
        self._require(question_id, PANEL_ANSWER)
        return {"answer": self.answer_form, "attachment": self.answer_attachment}

    def edit_update(self, question_id) -> dict:
        self._require(question_id, PANEL_EDIT)
        text = (self.edit_form.question or "").strip()
        if not text:
            raise ValidationError("Question text is required")
        return {
            "question": text,
            "answer": self.edit_form.answer,
            "attachment": self.edit_attachment,
            "order": self.edit_form.order,
        }

    def subquestion_text(self, question_id) -> str:
        self._require(question_id, PANEL_SUBQUESTION)
        text = (self.subquestion_form or "").strip()
        if not text:
            raise ValidationError("Sub-question text is required")
        return text

    def to_dict(self) -> dict:
        return {
            "active": self.active.to_dict() if self.active else None,
            "answer_form": self.answer_form,
            "answer_attachment": self.answer_attachment.to_dict() if self.answer_attachment else None,
            "subquestion_form": self.subquestion_form,
            "edit_form": {
                "question": self.edit_form.question,
                "answer": self.edit_form.answer,
                "order": self.edit_form.order,
            },
            "edit_attachment": self.edit_attachment.to_dict() if self.edit_attachment else None,
        }


FIELDS_BY_KIND = {
    "category": ("name",),
    "question": ("question", "answer"),
}


@dataclass
class TranslationForm:
    """All languages of one field, edited side by side."""
    kind: str
    node_id: str
    field_name: str
    texts: dict = field(default_factory=dict)        # Language -> str
    attachments: dict = field(default_factory=dict)  # Language -> PendingAttachment
    existing_attachments: dict = field(default_factory=dict)

    @classmethod
    def open(cls, tree: FlowTree, kind: str, node_id, field_name: str) -> "TranslationForm":
        if field_name not in FIELDS_BY_KIND.get(kind, ()):
            raise ValidationError(f"Field {field_name!r} is not translatable on a {kind}")
        if kind == "category":
            values = tree.category(node_id).name
            existing = {}
        else:
            node = tree.question(node_id)
            values = node.question if field_name == "question" else node.answer
            existing = dict(node.attachments) if field_name == "answer" else {}
        return cls(
            kind=kind,
            node_id=node_id,
            field_name=field_name,
            texts={lang: text for lang, text in values.items()},
            existing_attachments=existing,
        )

    def set_text(self, lang, text: str) -> None:
        self.texts[Language.parse(lang)] = text or ""

    def attach(self, lang, attachment: Attachment) -> None:
        if self.field_name != "answer":
            raise ValidationError("Attachments belong to answers only")
        self.attachments[Language.parse(lang)] = PendingAttachment.set(attachment)

    def remove_attachment(self, lang) -> None:
        if self.field_name != "answer":
            raise ValidationError("Attachments belong to answers only")
        self.attachments[Language.parse(lang)] = PendingAttachment.clear()

    def attachment_for(self, lang) -> Attachment | None:
        """What the form currently shows for `lang` (pending change first, then stored value)."""
        lang = Language.parse(lang)
        pending = self.attachments.get(lang)
        if pending is not None and pending.action != AttachmentAction.KEEP:
            return pending.attachment
        return self.existing_attachments.get(lang)

    def translations(self) -> TranslationMap:
        return TranslationMap({lang: text for lang, text in self.texts.items() if text is not None})

    def attachment_updates(self) -> dict:
        return {lang: p.as_update() for lang, p in self.attachments.items() if p.action != AttachmentAction.KEEP}

    def rows(self) -> list[dict]:
        return [
            {
                "language": lang.value,
                "label": LANGUAGE_NAMES[lang],
                "text": self.texts.get(lang, ""),
                "attachment": (self.attachment_for(lang).to_dict() if self.attachment_for(lang) else None),
            }
            for lang in SUPPORTED_LANGUAGES
        ]


@dataclass(frozen=True)
class ReorderModal:
    kind: str  # "category" | "question"
    node_id: str
    position: int  # 1-based
    total: int
    name: str


@dataclass(frozen=True)
class DeleteConfirm:
    kind: str
    node_id: str
    name: str
