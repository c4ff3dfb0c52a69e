# flow_builder/translations.py
"""
Per-language text values.

Every place that shows or matches text (header titles, breadcrumb labels, search results)
goes through `resolve`, so the fallback order is the same everywhere:

    requested language -> DEFAULT_LANGUAGE -> first non-empty value -> UNKNOWN_TEXT
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Mapping

from dotenv import load_dotenv

from flow_builder.errors import ValidationError

load_dotenv()

UNKNOWN_TEXT = "Unknown"


class Language(str, Enum):
    AZ = "az"
    RU = "ru"

    @classmethod
    def parse(cls, code) -> "Language":
        if isinstance(code, Language):
            return code
        try:
            return cls(str(code).strip().lower())
        except ValueError:
            raise ValidationError(f"Unsupported language: {code!r}")

    @classmethod
    def try_parse(cls, code) -> "Language | None":
        try:
            return cls.parse(code)
        except ValidationError:
            return None


LANGUAGE_NAMES = {
    Language.AZ: "Azərbaycan",
    Language.RU: "Русский",
}

SUPPORTED_LANGUAGES: tuple[Language, ...] = tuple(Language)
DEFAULT_LANGUAGE = Language.try_parse(os.getenv("FLOW_DEFAULT_LANGUAGE", "az")) or Language.AZ


@dataclass(frozen=True)
class Attachment:
    url: str
    name: str

    def to_dict(self) -> dict:
        return {"url": self.url, "name": self.name}

    @classmethod
    def from_value(cls, value) -> "Attachment | None":
        if value is None or isinstance(value, Attachment):
            return value
        url = (value or {}).get("url")
        if not url:
            return None
        return cls(url=str(url), name=str(value.get("name") or url.rsplit("/", 1)[-1]))


def _has_text(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


class TranslationMap:
    """
    Immutable language -> text table.

    A missing key means "not translated"; the map never invents empty strings for languages
    that were not written.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping | None = None):
        items: dict[Language, str] = {}
        for code, text in (values or {}).items():
            if text is None:
                continue
            items[Language.parse(code)] = str(text)
        self._values = items

    @classmethod
    def single(cls, lang, text: str) -> "TranslationMap":
        return cls({Language.parse(lang): text})

    @classmethod
    def coerce(cls, value) -> "TranslationMap":
        if isinstance(value, TranslationMap):
            return value
        return cls(value or {})

    def get(self, lang) -> str | None:
        parsed = Language.try_parse(lang)
        if parsed is None:
            return None
        return self._values.get(parsed)

    def has_text(self, lang) -> bool:
        return _has_text(self.get(lang))

    def with_text(self, lang, text: str | None) -> "TranslationMap":
        """Return a copy with one language written (or removed when `text` is None)."""
        lang = Language.parse(lang)
        values = dict(self._values)
        if text is None:
            values.pop(lang, None)
        else:
            values[lang] = text
        return TranslationMap(values)

    def has_content(self) -> bool:
        return any(_has_text(v) for v in self._values.values())

    def items(self):
        return self._values.items()

    def languages(self) -> list[Language]:
        return list(self._values.keys())

    def to_dict(self) -> dict[str, str]:
        return {lang.value: text for lang, text in self._values.items()}

    def __iter__(self) -> Iterator[Language]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, lang) -> bool:
        return Language.try_parse(lang) in self._values

    def __eq__(self, other) -> bool:
        if isinstance(other, TranslationMap):
            return self._values == other._values
        if isinstance(other, Mapping):
            return self.to_dict() == dict(other)
        return NotImplemented

    def __hash__(self):
        return hash(tuple(sorted(self.to_dict().items())))

    def __repr__(self) -> str:
        return f"TranslationMap({self.to_dict()!r})"


EMPTY_TRANSLATIONS = TranslationMap()


def _as_code_dict(value) -> dict:
    if value is None:
        return {}
    if isinstance(value, TranslationMap):
        return value.to_dict()
    if isinstance(value, Mapping):
        out = {}
        for k, v in value.items():
            key = k.value if isinstance(k, Language) else str(k)
            out[key] = v
        return out
    return {}


def resolve(value, lang=None, default: str = UNKNOWN_TEXT) -> str:
    """
    Display text for `lang`. Never raises: unknown languages, None maps and
    non-string values all fall through to the next step of the fallback chain.
    """
    values = _as_code_dict(value)
    code = lang.value if isinstance(lang, Language) else (str(lang) if lang else "")

    text = values.get(code)
    if _has_text(text):
        return text
    text = values.get(DEFAULT_LANGUAGE.value)
    if _has_text(text):
        return text
    for text in values.values():
        if _has_text(text):
            return text
    return default


def completeness(value, required_languages: Iterable = SUPPORTED_LANGUAGES) -> list[Language]:
    """Required languages that have no non-empty value in `value`."""
    values = _as_code_dict(value)
    missing = []
    for lang in required_languages:
        lang = Language.parse(lang)
        if not _has_text(values.get(lang.value)):
            missing.append(lang)
    return missing


def missing_translations_count(categories, questions, required_languages: Iterable = SUPPORTED_LANGUAGES) -> int:
    """
    Global "missing translations" counter.

    Counts gaps in every category name and every question text. Answers only count
    when the question has answer content in at least one language.
    """
    required = [Language.parse(lang) for lang in required_languages]
    count = 0
    for category in categories:
        count += len(completeness(category.name, required))
    for question in questions:
        count += len(completeness(question.question, required))
        if question.answer is not None and TranslationMap.coerce(question.answer).has_content():
            count += len(completeness(question.answer, required))
    return count
