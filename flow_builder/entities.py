# flow_builder/entities.py
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from typing import TypeAlias
UUID: TypeAlias = str
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class AuditMixin:
    # e-mail of the acting admin, filled by the repository
    created_by = Column(String, nullable=True)
    updated_by = Column(String, nullable=True)


class Category(Base, TimestampMixin, AuditMixin):
    __tablename__ = "category"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    order: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))

    __table_args__ = (
        Index("ix_category_order", "order"),
    )


class CategoryTranslation(Base):
    __tablename__ = "category_translation"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    category_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("category.id", ondelete="CASCADE"),
        nullable=False,
    )
    language: Mapped[str] = mapped_column(String(8), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))

    __table_args__ = (
        UniqueConstraint("category_id", "language", name="uq_category_translation_language"),
    )


class Question(Base, TimestampMixin, AuditMixin):
    __tablename__ = "question"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    # set for root-level questions only
    category_id: Mapped[UUID | None] = mapped_column(
        String(36),
        ForeignKey("category.id", ondelete="CASCADE"),
        nullable=True,
    )
    parent_id: Mapped[UUID | None] = mapped_column(
        String(36),
        ForeignKey("question.id", ondelete="CASCADE"),
        nullable=True,
    )
    order: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))

    __table_args__ = (
        Index("ix_question_category_id", "category_id"),
        Index("ix_question_parent_id", "parent_id"),
    )


class QuestionTranslation(Base):
    __tablename__ = "question_translation"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    question_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("question.id", ondelete="CASCADE"),
        nullable=False,
    )
    language: Mapped[str] = mapped_column(String(8), nullable=False)
    question: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    answer: Mapped[str | None] = mapped_column(Text)
    attachment_url: Mapped[str | None] = mapped_column(Text)
    attachment_name: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint("question_id", "language", name="uq_question_translation_language"),
    )
