from flow_builder.search import MATCH_ANSWER, MATCH_QUESTION, _snippet, search_forest
from flow_builder.tree_store import FlowTree


def test_short_query_returns_nothing(sample_tree):
    assert search_forest(sample_tree, "o", "az") == []
    assert search_forest(sample_tree, "   ", "az") == []


def test_nested_match_path(sample_tree):
    results = search_forest(sample_tree, "which", "az")
    assert len(results) == 1
    hit = results[0]
    assert hit.question_id == "q3"
    assert hit.category_id == "c1"
    assert hit.match_type == MATCH_QUESTION
    # depth 3 -> category + 3 questions
    assert [b.id for b in hit.path] == ["c1", "q1", "q2", "q3"]


def test_question_and_answer_match_separately(sample_tree):
    results = search_forest(sample_tree, "order", "az")
    pairs = [(r.question_id, r.match_type) for r in results]
    assert pairs == [
        ("q1", MATCH_QUESTION),
        ("q3", MATCH_ANSWER),
    ]
    assert results[1].snippet == "order.az"


def test_case_insensitive_and_language_fallback(sample_tree):
    ru = search_forest(sample_tree, "ЗАКАЗ", "ru")
    assert [r.question_id for r in ru] == ["q1"]
    # q5 has no ru text; it is matched through the az fallback
    assert [r.question_id for r in search_forest(sample_tree, "delivery", "ru")] == ["q5"]


def test_unanswered_questions_do_not_match_placeholder(sample_tree):
    assert search_forest(sample_tree, "unknown", "az") == []


def test_search_is_repeatable(sample_tree):
    first = [r.to_dict() for r in search_forest(sample_tree, "co", "az")]
    second = [r.to_dict() for r in search_forest(sample_tree, "co", "az")]
    assert first == second
    assert [r["question_id"] for r in first] == ["q4"]


def test_dotted_capitals_and_accents_fold():
    tree = FlowTree.from_records(
        [{"id": "c1", "order": 0, "name": {"az": "Bank"}}],
        [
            {
                "id": "q1", "category_id": "c1", "order": 0,
                "question": {"az": "İnternet bankçılıq?"},
                "answer": {"az": "Bu İnternetdir"},
            },
            {"id": "q2", "category_id": "c1", "order": 1, "question": {"az": "Çay var?"}},
        ],
    )
    results = search_forest(tree, "internet", "az")
    assert [(r.question_id, r.match_type) for r in results] == [("q1", MATCH_QUESTION), ("q1", MATCH_ANSWER)]
    assert results[1].snippet == "Bu İnternetdir"
    assert [r.question_id for r in search_forest(tree, "CAY", "az")] == ["q2"]


def test_snippet_maps_back_to_original_text():
    assert _snippet("Bu İnternetdir", "internet", radius=1) == "... İnternetd..."
