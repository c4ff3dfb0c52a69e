import pytest
from sqlalchemy.exc import SQLAlchemyError

from flow_builder.errors import DeleteAttachmentError, NotFoundError, PersistenceError, ValidationError
from flow_builder.navigation import NavState
from flow_builder.ordering import UP, dense_violations
from flow_builder.panels import PANEL_ANSWER, PANEL_EDIT, PANEL_SUBQUESTION
from flow_builder.translations import Language


def _ids(nodes):
    return [n.id for n in nodes]


@pytest.fixture
def populated(editor):
    """Category "Test" with root questions [Q2, Q1] and Q1 -> [S1]."""
    cat = editor.add_category("Test")
    q1 = editor.add_question("Q1", category_id=cat.id)
    q2 = editor.add_question("Q2", category_id=cat.id)
    s1 = editor.add_question("S1", parent_question_id=q1.id)
    return editor, cat, q1, q2, s1


def test_end_to_end_create_reorder_delete(editor, repo):
    cat = editor.add_category("Test")
    assert editor.tree.category(cat.id).name == {"az": "Test"}
    assert editor.navigator.selected_category == cat.id

    q1 = editor.add_question("Q1", category_id=cat.id)
    q2 = editor.add_question("Q2", category_id=cat.id)
    assert _ids(editor.questions_at_level()) == [q2.id, q1.id]

    result = editor.reorder_manual(q1.id, 1)
    assert result.changed
    assert _ids(editor.questions_at_level()) == [q1.id, q2.id]
    assert [q["id"] for q in repo.list_questions()] == [q1.id, q2.id]

    editor.delete_category(cat.id)
    assert editor.tree.question_count() == 0
    assert editor.tree.category_ids() == ()
    assert editor.navigator.state == NavState.ROOT

    editor.load()
    assert editor.question_count() == 0
    assert editor.tree.category_ids() == ()


def test_end_to_end_missing_translation_count(editor):
    cat = editor.add_category("Test")
    q = editor.add_question("Q", category_id=cat.id)
    # category ru + question ru
    assert editor.missing_translations_count() == 2

    editor.open_panel(q.id, PANEL_ANSWER)
    editor.panels.answer_form = "Cavab"
    editor.save_answer(q.id)
    before = editor.missing_translations_count()
    assert before == 3

    editor.set_language("ru")
    editor.open_panel(q.id, PANEL_ANSWER)
    assert editor.panels.answer_form == ""
    editor.panels.answer_form = "Ответ"
    editor.save_answer(q.id)
    assert editor.missing_translations_count() == before - 1
    assert editor.tree.question(q.id).answer == {"az": "Cavab", "ru": "Ответ"}


def test_server_audit_fields_are_reconciled(editor):
    cat = editor.add_category("Test")
    node = editor.tree.category(cat.id)
    assert node.created_by == "admin@example.com"
    assert node.updated_at is not None
    assert editor.confirmed is editor.tree
    assert editor.pending == {}


def test_optimistic_state_is_visible_while_persisting(editor, repo, monkeypatch):
    cat = editor.add_category("Test")
    seen = {}
    original = repo.create_question

    def spy(*args, **kwargs):
        seen["count"] = editor.tree.question_count()
        seen["pending"] = [c.label for c in editor.pending.values()]
        return original(*args, **kwargs)

    monkeypatch.setattr(repo, "create_question", spy)
    editor.add_question("Q", category_id=cat.id)
    assert seen == {"count": 1, "pending": ["Create question"]}
    assert editor.pending == {}


def test_failed_create_reverts_and_notifies(editor, fake_repo):
    cat = editor.add_category("Test")
    fake_repo.fail.add("create_question")
    with pytest.raises(PersistenceError):
        editor.add_question("Q", category_id=cat.id)
    assert editor.tree.question_count() == 0
    assert editor.tree is editor.confirmed
    assert editor.pending == {}
    assert editor.notices[-1].level == "error"
    assert editor.notices[-1].message == "Create question failed"


def test_failed_reorder_reverts(populated, fake_repo):
    editor, cat, q1, q2, _ = populated
    fake_repo.fail.add("reorder_questions")
    with pytest.raises(PersistenceError):
        editor.reorder_question(q1.id, UP)
    assert _ids(editor.questions_at_level()) == [q2.id, q1.id]


def test_failed_delete_restores_navigation(populated, fake_repo):
    editor, cat, q1, _, s1 = populated
    editor.navigate_into(q1.id)
    fake_repo.fail.add("delete_question")
    with pytest.raises(PersistenceError):
        editor.delete_question(q1.id)
    assert editor.tree.has_question(s1.id)
    assert editor.navigator.path_ids() == [cat.id, q1.id]


def _broken_order(session, model, items):
    raise SQLAlchemyError("boom")


def test_failed_renumber_after_delete_reverts(populated, repo, monkeypatch):
    editor, cat, q1, q2, _ = populated
    monkeypatch.setattr(repo, "_apply_order", _broken_order)
    with pytest.raises(PersistenceError):
        editor.delete_question(q2.id)
    assert _ids(editor.questions_at_level()) == [q2.id, q1.id]
    assert [(q["id"], q["order"]) for q in repo.list_questions()] == [(q2.id, 0), (q1.id, 1)]


def test_failed_renumber_after_edit_reverts(populated, repo, monkeypatch):
    editor, cat, q1, q2, _ = populated
    editor.open_panel(q2.id, PANEL_EDIT)
    editor.panels.edit_form.question = "Q2 edited"
    editor.panels.edit_form.order = 9
    monkeypatch.setattr(repo, "_apply_order", _broken_order)
    with pytest.raises(PersistenceError):
        editor.save_edit(q2.id)
    assert _ids(editor.questions_at_level()) == [q2.id, q1.id]
    assert editor.tree.question(q2.id).question == {"az": "Q2"}
    roots = repo.list_questions()
    assert [(q["id"], q["order"]) for q in roots] == [(q2.id, 0), (q1.id, 1)]
    assert roots[0]["question"] == {"az": "Q2"}


def test_delete_category_renumbers_in_one_call(editor, fake_repo, repo):
    a = editor.add_category("A")
    b = editor.add_category("B")
    editor.delete_category(a.id)
    assert fake_repo.called("reorder_categories") == []
    assert [(c["id"], c["order"]) for c in repo.list_categories()] == [(b.id, 0)]


def test_sub_question_panel_flow(populated, repo):
    editor, cat, q1, _, s1 = populated
    editor.open_panel(q1.id, PANEL_SUBQUESTION)
    editor.panels.subquestion_form = "S2"
    s2 = editor.add_sub_question(q1.id)
    assert editor.tree.question(q1.id).child_ids == (s2.id, s1.id)
    assert editor.panels.subquestion_form == ""
    roots = {q["id"]: q for q in repo.list_questions()}
    assert [s["id"] for s in roots[q1.id]["sub_questions"]] == [s2.id, s1.id]


def test_add_root_question_uses_selected_category(editor):
    with pytest.raises(ValidationError):
        editor.add_root_question()
    cat = editor.add_category("Test")
    editor.panels.new_question_text = "Hello?"
    node = editor.add_root_question()
    assert node.category_id == cat.id
    assert editor.panels.new_question_text == ""


def test_save_edit_with_order_override(populated, repo):
    editor, cat, q1, q2, _ = populated
    editor.open_panel(q2.id, PANEL_EDIT)
    editor.panels.edit_form.question = "Q2 edited"
    editor.panels.edit_form.order = 9
    editor.save_edit(q2.id)

    assert _ids(editor.questions_at_level()) == [q1.id, q2.id]
    assert editor.tree.question(q2.id).question == {"az": "Q2 edited"}
    assert editor.panels.active is None
    assert [(q["id"], q["order"]) for q in repo.list_questions()] == [(q1.id, 0), (q2.id, 1)]
    assert dense_violations(editor.tree) == []


def test_step_reorder_of_categories(editor, repo):
    a = editor.add_category("A")
    b = editor.add_category("B")
    result = editor.reorder_category(b.id, UP)
    assert result.changed
    assert [c["id"] for c in repo.list_categories()] == [b.id, a.id]
    assert not editor.reorder_category(b.id, UP).changed


def test_rename_category_refreshes_breadcrumbs(populated, repo):
    editor, cat, q1, _, _ = populated
    editor.navigate_into(q1.id)
    editor.update_category(cat.id, "Renamed")
    assert editor.navigator.breadcrumbs[0].label == "Renamed"
    assert editor.navigator.path_ids() == [cat.id, q1.id]
    assert repo.list_categories()[0]["name"] == {"az": "Renamed"}
    with pytest.raises(ValidationError):
        editor.update_category(cat.id, "")


def test_navigation_closes_panels(populated):
    editor, cat, q1, _, _ = populated
    editor.open_panel(q1.id, PANEL_EDIT)
    editor.navigate_into(q1.id)
    assert editor.panels.active is None
    editor.open_panel(editor.questions_at_level()[0].id, PANEL_ANSWER)
    editor.navigate_to_breadcrumb(0)
    assert editor.panels.active is None
    with pytest.raises(NotFoundError):
        editor.select_category("missing")


def test_deleting_open_question_closes_panel(populated):
    editor, cat, q1, _, s1 = populated
    editor.navigate_into(q1.id)
    editor.open_panel(s1.id, PANEL_EDIT)
    editor.delete_question(q1.id)
    assert editor.panels.active is None
    assert editor.navigator.path_ids() == [cat.id]
    assert not editor.tree.has_question(s1.id)


def test_attachment_upload_save_and_delete(populated, repo, storage, tmp_path):
    editor, cat, q1, _, _ = populated
    attachment = editor.upload_attachment("menu.pdf", b"%PDF")
    assert editor.notices[-1].message == "File uploaded: menu.pdf"
    stored = tmp_path / "uploads" / attachment.url.rsplit("/", 1)[-1]
    assert stored.exists()

    editor.open_panel(q1.id, PANEL_ANSWER)
    editor.attach_to_panel(attachment)
    editor.panels.answer_form = "See the menu"
    node = editor.save_answer(q1.id)
    assert node.attachment(Language.AZ) == attachment
    record = {q["id"]: q for q in repo.list_questions()}[q1.id]
    assert record["attachments"]["az"] == attachment.to_dict()

    node = editor.delete_attachment(q1.id, attachment.url)
    assert node.attachment(Language.AZ) is None
    assert node.answer == {"az": "See the menu"}
    assert not stored.exists()
    record = {q["id"]: q for q in repo.list_questions()}[q1.id]
    assert record["attachments"] == {}


def _attach_menu(editor, question_id):
    attachment = editor.upload_attachment("menu.pdf", b"%PDF")
    editor.open_panel(question_id, PANEL_ANSWER)
    editor.attach_to_panel(attachment)
    editor.panels.answer_form = "See the menu"
    editor.save_answer(question_id)
    return attachment


def test_failed_attachment_row_update_keeps_the_file(populated, fake_repo, repo, tmp_path):
    editor, cat, q1, _, _ = populated
    attachment = _attach_menu(editor, q1.id)
    stored = tmp_path / "uploads" / attachment.url.rsplit("/", 1)[-1]

    fake_repo.fail.add("update_question")
    with pytest.raises(PersistenceError):
        editor.delete_attachment(q1.id, attachment.url)
    assert stored.exists()
    assert editor.tree.question(q1.id).attachment(Language.AZ) == attachment
    record = {q["id"]: q for q in repo.list_questions()}[q1.id]
    assert record["attachments"]["az"] == attachment.to_dict()


def test_failed_file_delete_after_row_update(populated, repo, storage, monkeypatch):
    editor, cat, q1, _, _ = populated
    attachment = _attach_menu(editor, q1.id)

    def broken_delete(url):
        raise DeleteAttachmentError(f"cannot delete {url}")

    monkeypatch.setattr(storage, "delete", broken_delete)
    with pytest.raises(DeleteAttachmentError):
        editor.delete_attachment(q1.id, attachment.url)
    assert editor.tree.question(q1.id).attachment(Language.AZ) is None
    record = {q["id"]: q for q in repo.list_questions()}[q1.id]
    assert record["attachments"] == {}
    assert editor.notices[-1].message == "Failed to delete attachment"


def test_attach_requires_answer_or_edit_panel(populated):
    editor, *_ = populated
    with pytest.raises(ValidationError):
        editor.attach_to_panel(None)


def test_translation_modal_for_category(populated, repo):
    editor, cat, *_ = populated
    form = editor.open_translation_modal("category", cat.id, "name")
    form.set_text("ru", "Тест")
    editor.save_translations()
    assert editor.translation_form is None
    assert editor.tree.category(cat.id).name == {"az": "Test", "ru": "Тест"}
    assert repo.list_categories()[0]["name"] == {"az": "Test", "ru": "Тест"}


def test_translation_modal_for_answer_with_attachments(populated, repo):
    editor, cat, q1, _, _ = populated
    ru_file = editor.upload_attachment("ru.pdf", b"ru")
    form = editor.open_translation_modal("question", q1.id, "answer")
    form.set_text("az", "Cavab")
    form.set_text("ru", "Ответ")
    form.attach("ru", ru_file)
    node = editor.save_translations()

    assert node.answer == {"az": "Cavab", "ru": "Ответ"}
    assert node.question == {"az": "Q1"}
    assert node.attachment("ru") == ru_file
    record = {q["id"]: q for q in repo.list_questions()}[q1.id]
    assert record["answer"] == {"az": "Cavab", "ru": "Ответ"}
    assert record["question"] == {"az": "Q1"}
    assert record["attachments"] == {"ru": ru_file.to_dict()}


def test_reorder_modal(populated, repo):
    editor, cat, q1, q2, _ = populated
    editor.open_panel(q2.id, PANEL_EDIT)
    editor.panels.edit_form.question = "A question that is clearly longer than thirty characters"
    editor.save_edit(q2.id)

    modal = editor.open_reorder_modal(q2.id)
    assert (modal.position, modal.total) == (1, 2)
    assert modal.name == "A question that is clearly lon..."

    with pytest.raises(ValidationError):
        editor.confirm_reorder(3)
    assert _ids(editor.questions_at_level()) == [q2.id, q1.id]

    editor.confirm_reorder(2)
    assert editor.reorder_modal is None
    assert _ids(editor.questions_at_level()) == [q1.id, q2.id]

    cat_modal = editor.open_reorder_category_modal(cat.id)
    assert (cat_modal.kind, cat_modal.position, cat_modal.total, cat_modal.name) == ("category", 1, 1, "Test")


def test_delete_confirmation(populated):
    editor, cat, q1, q2, s1 = populated
    confirm = editor.request_delete("question", q1.id)
    assert confirm.name == "Q1"
    editor.cancel_delete()
    with pytest.raises(ValidationError):
        editor.confirm_delete()

    editor.request_delete("question", q1.id)
    removed = editor.confirm_delete()
    assert set(removed) == {q1.id, s1.id}
    assert editor.delete_confirm is None
    with pytest.raises(NotFoundError):
        editor.request_delete("category", q2.id)


def test_search_and_jump(populated):
    editor, cat, q1, _, s1 = populated
    editor.select_category(None)
    results = editor.search("S1")
    assert [r.question_id for r in results] == [s1.id]
    editor.select_search_result(results[0])
    assert editor.navigator.path_ids() == [cat.id, q1.id]
    assert editor.navigator.target_question_id == s1.id
    assert editor.header_title() == "Q1"


def test_drag_and_drop_persists(populated, repo):
    editor, cat, q1, q2, _ = populated
    assert not editor.start_drag(q2.id)
    editor.drag_handle_down(True)
    assert editor.start_drag(q2.id)
    assert editor.drag_over(q1.id)
    result = editor.drop()
    assert result.changed
    assert not editor.drag.active
    assert [q["id"] for q in repo.list_questions()] == [q1.id, q2.id]


def test_failed_drop_reverts_and_resets_drag(populated, fake_repo):
    editor, cat, q1, q2, _ = populated
    fake_repo.fail.add("reorder_questions")
    editor.drag_handle_down(True)
    editor.start_drag(q2.id)
    with pytest.raises(PersistenceError):
        editor.drop(q1.id)
    assert _ids(editor.questions_at_level()) == [q2.id, q1.id]
    assert not editor.drag.active


def test_snapshot(populated):
    editor, cat, *_ = populated
    snap = editor.snapshot()
    assert snap["language"] == "az"
    assert snap["question_count"] == 3
    assert snap["navigation"]["selected_category"] == cat.id
    assert snap["pending"] == []
