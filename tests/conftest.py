# tests/conftest.py
import pytest

from flow_builder.attachment_storage import LocalAttachmentStorage
from flow_builder.DBConnection_hlpr import DBConnection
from flow_builder.errors import PersistenceError
from flow_builder.flow_editor import FlowEditor
from flow_builder.persistence import SqlFlowRepository
from flow_builder.translations import Language
from flow_builder.tree_store import FlowTree


class FakeRepository:
    """
    Wraps a real repository, records every call and raises PersistenceError for the
    method names listed in `fail`.
    """

    def __init__(self, inner):
        self.inner = inner
        self.fail: set[str] = set()
        self.calls: list[tuple] = []

    def __getattr__(self, name):
        target = getattr(self.inner, name)

        def _call(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            if name in self.fail:
                raise PersistenceError(f"{name} failed (injected)")
            return target(*args, **kwargs)

        return _call

    def called(self, name) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def session_factory():
    return DBConnection(database_url="sqlite://").build_db_session_factory()


@pytest.fixture
def repo(session_factory):
    return SqlFlowRepository(session_factory)


@pytest.fixture
def fake_repo(repo):
    return FakeRepository(repo)


@pytest.fixture
def storage(tmp_path):
    return LocalAttachmentStorage(upload_dir=str(tmp_path / "uploads"), url_prefix="/uploads")


@pytest.fixture
def editor(fake_repo, storage):
    ed = FlowEditor(fake_repo, storage=storage, lang=Language.AZ, actor="admin@example.com")
    ed.load()
    return ed


@pytest.fixture
def sample_tree():
    """
    Food (c1)                 Drinks (c2)
      q1 "How to order?"        q4 "Coffee?"
        q2 "Online?"
          q3 "Which site?"
      q5 "Delivery time?"
    """
    categories = [
        {"id": "c1", "order": 0, "name": {"az": "Yemək", "ru": "Еда"}},
        {"id": "c2", "order": 1, "name": {"az": "İçki"}},
    ]
    questions = [
        {
            "id": "q1", "category_id": "c1", "order": 0,
            "question": {"az": "How to order?", "ru": "Как заказать?"},
            "answer": {"az": "Call us"},
            "sub_questions": [
                {
                    "id": "q2", "order": 0,
                    "question": {"az": "Online?"},
                    "sub_questions": [
                        {"id": "q3", "order": 0, "question": {"az": "Which site?"}, "answer": {"az": "order.az"}},
                    ],
                },
            ],
        },
        {"id": "q5", "category_id": "c1", "order": 1, "question": {"az": "Delivery time?"}},
        {"id": "q4", "category_id": "c2", "order": 0, "question": {"az": "Coffee?"}},
    ]
    return FlowTree.from_records(categories, questions)
