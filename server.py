import logging
import os
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from flow_builder.attachment_storage import UPLOAD_BACKEND, UPLOAD_DIR, UPLOAD_URL_PREFIX, build_attachment_storage
from flow_builder.base_utils import BaseUtils
from flow_builder.DBConnection_hlpr import DBConnection
from flow_builder.errors import FlowError, NotFoundError, ValidationError
from flow_builder.persistence import SqlFlowRepository

load_dotenv()

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)
logger = logging.getLogger("flow_server")

app = FastAPI()

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if UPLOAD_BACKEND == "local":
    app.mount(UPLOAD_URL_PREFIX, StaticFiles(directory=UPLOAD_DIR, check_dir=False), name="uploads")

_utils = BaseUtils()
_connection: DBConnection | None = None
_repository: SqlFlowRepository | None = None
_storage = None


def get_repository() -> SqlFlowRepository:
    global _connection, _repository
    if _repository is None:
        _connection = _connection or DBConnection()
        _repository = SqlFlowRepository(_connection.build_db_session_factory())
    return _repository


def get_storage():
    global _connection, _storage
    if _storage is None:
        if UPLOAD_BACKEND == "gcs":
            _connection = _connection or DBConnection()
        _storage = build_attachment_storage(_connection)
    return _storage


class CategoryCreate(BaseModel):
    # either a list of {"language", "name"} rows or a {lang: name} map
    translations: Optional[Any] = None
    name: Optional[dict[str, str]] = None
    id: Optional[str] = None


class CategoryUpdate(BaseModel):
    id: str
    translations: Optional[Any] = None
    name: Optional[dict[str, str]] = None


class QuestionCreate(BaseModel):
    translations: Any
    category_id: Optional[str] = None
    parent_id: Optional[str] = None
    id: Optional[str] = None


class QuestionUpdate(BaseModel):
    id: str
    translations: Optional[Any] = None
    order: Optional[int] = None


class ReorderItem(BaseModel):
    id: str
    order: int


class ReorderRequest(BaseModel):
    items: list[ReorderItem]


def _error(status: int, error: str, details: str | None = None) -> JSONResponse:
    body = {"error": error}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status, content=body)


@app.exception_handler(FlowError)
async def flow_error_handler(request: Request, exc: FlowError):
    if isinstance(exc, ValidationError):
        return _error(400, str(exc))
    if isinstance(exc, NotFoundError):
        return _error(404, str(exc))
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return _error(500, f"Failed to {request.method.lower()} {request.url.path}", str(exc))


# -----------------------
# Categories
# -----------------------

@app.get("/api/categories")
def list_categories(repo: SqlFlowRepository = Depends(get_repository)):
    return repo.list_categories()


@app.post("/api/categories")
def create_category(
    body: CategoryCreate,
    repo: SqlFlowRepository = Depends(get_repository),
    x_admin_email: Optional[str] = Header(default=None),
):
    translations = body.translations if body.translations is not None else body.name
    if not translations:
        raise ValidationError("Translations are required")
    logger.debug("create category\n%s", _utils.preview(body.model_dump()))
    return repo.create_category(translations, category_id=body.id, actor=x_admin_email)


@app.put("/api/categories")
def update_category(
    body: CategoryUpdate,
    repo: SqlFlowRepository = Depends(get_repository),
    x_admin_email: Optional[str] = Header(default=None),
):
    translations = body.translations if body.translations is not None else body.name
    return repo.update_category(body.id, translations, actor=x_admin_email)


@app.delete("/api/categories")
def delete_category(id: Optional[str] = None, repo: SqlFlowRepository = Depends(get_repository)):
    if not id:
        raise ValidationError("ID required")
    return repo.delete_category(id)


@app.post("/api/categories/reorder")
def reorder_categories(body: ReorderRequest, repo: SqlFlowRepository = Depends(get_repository)):
    return repo.reorder_categories([item.model_dump() for item in body.items])


# -----------------------
# Questions
# -----------------------

@app.get("/api/questions")
def list_questions(repo: SqlFlowRepository = Depends(get_repository)):
    return repo.list_questions()


@app.post("/api/questions")
def create_question(
    body: QuestionCreate,
    repo: SqlFlowRepository = Depends(get_repository),
    x_admin_email: Optional[str] = Header(default=None),
):
    logger.debug("create question\n%s", _utils.preview(body.model_dump()))
    return repo.create_question(
        body.translations,
        category_id=body.category_id,
        parent_id=body.parent_id,
        question_id=body.id,
        actor=x_admin_email,
    )


@app.put("/api/questions")
def update_question(
    body: QuestionUpdate,
    repo: SqlFlowRepository = Depends(get_repository),
    x_admin_email: Optional[str] = Header(default=None),
):
    return repo.update_question(body.id, body.translations, order=body.order, actor=x_admin_email)


@app.delete("/api/questions")
def delete_question(id: Optional[str] = None, repo: SqlFlowRepository = Depends(get_repository)):
    if not id:
        raise ValidationError("ID required")
    return repo.delete_question(id)


@app.post("/api/questions/reorder")
def reorder_questions(body: ReorderRequest, repo: SqlFlowRepository = Depends(get_repository)):
    return repo.reorder_questions([item.model_dump() for item in body.items])


# -----------------------
# Attachments
# -----------------------

@app.post("/api/upload")
async def upload(request: Request, filename: str = "file", storage=Depends(get_storage)):
    data = await request.body()
    if not data:
        raise ValidationError("No body")
    attachment = storage.upload(filename, data)
    return {
        "url": attachment.url,
        "name": attachment.name,
        "content_type": request.headers.get("content-type") or "application/octet-stream",
    }


@app.delete("/api/upload")
def delete_upload(url: Optional[str] = None, storage=Depends(get_storage)):
    if not url:
        raise ValidationError("Url required")
    storage.delete(url)
    return {"success": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
