# flow_builder/search.py

import logging
import os
import unicodedata
from dataclasses import dataclass, field

from dotenv import load_dotenv

from flow_builder.navigation import Breadcrumb, category_crumb, question_crumb
from flow_builder.translations import resolve
from flow_builder.tree_store import FlowTree

load_dotenv()

logger = logging.getLogger("flow_builder")

SEARCH_MIN_QUERY_LENGTH = int(os.getenv("SEARCH_MIN_QUERY_LENGTH", "2"))

MATCH_QUESTION = "question"
MATCH_ANSWER = "answer"


@dataclass
class SearchResult:
    question_id: str
    category_id: str
    match_type: str  # "question" | "answer"
    path: list[Breadcrumb] = field(default_factory=list)
    snippet: str = ""

    def to_dict(self) -> dict:
        return {
            "question_id": self.question_id,
            "category_id": self.category_id,
            "match_type": self.match_type,
            "path": [b.to_dict() for b in self.path],
            "snippet": self.snippet,
        }


def _fold(text: str) -> tuple[str, list[int]]:
    """
    Casefold and strip combining marks, so "İnternet" and "internet" compare equal.
    Also returns, for every folded character, the index of the character it came from.
    """
    chars: list[str] = []
    origin: list[int] = []
    for i, ch in enumerate(text):
        for c in unicodedata.normalize("NFKD", ch.casefold()):
            if not unicodedata.combining(c):
                chars.append(c)
                origin.append(i)
    return "".join(chars), origin


def _find(text: str, needle: str) -> tuple[int, int] | None:
    """Span of the first folded match of `needle` in `text`, in `text` indices."""
    folded, origin = _fold(text)
    pos = folded.find(needle)
    if pos < 0:
        return None
    return origin[pos], origin[pos + len(needle) - 1] + 1


def _snippet(text: str, needle: str, radius: int = 40) -> str:
    span = _find(text, needle)
    if span is None:
        return text[: radius * 2]
    start = max(0, span[0] - radius)
    end = min(len(text), span[1] + radius)
    prefix = "..." if start > 0 else ""
    suffix = "..." if end < len(text) else ""
    return f"{prefix}{text[start:end]}{suffix}"


def search_forest(tree: FlowTree, query: str, lang) -> list[SearchResult]:
    """
    Case- and accent-insensitive substring search over resolved question and answer text.

    Results follow forest order (category order, then sibling order, depth first).
    A question whose text and answer both match yields two results, one per field.
    Queries shorter than SEARCH_MIN_QUERY_LENGTH return nothing.
    """
    query = (query or "").strip()
    if len(query) < SEARCH_MIN_QUERY_LENGTH:
        return []
    needle = _fold(query)[0]
    if not needle:
        return []
    results: list[SearchResult] = []

    def walk(question_ids, parent_path, category_id):
        for qid in question_ids:
            node = tree.question(qid)
            path = parent_path + [question_crumb(tree, qid, lang)]

            question_text = resolve(node.question, lang)
            if _find(question_text, needle) is not None:
                results.append(SearchResult(qid, category_id, MATCH_QUESTION, path))

            # an unanswered question has nothing to match, not the "Unknown" placeholder
            answer_text = resolve(node.answer, lang, default="")
            if answer_text and _find(answer_text, needle) is not None:
                results.append(
                    SearchResult(qid, category_id, MATCH_ANSWER, list(path), _snippet(answer_text, needle))
                )

            walk(node.child_ids, path, category_id)

    for category in tree.categories():
        root_ids = [q.id for q in tree.root_questions(category.id)]
        walk(root_ids, [category_crumb(tree, category.id, lang)], category.id)

    logger.debug("search %r (%s): %d results", query, lang, len(results))
    return results
