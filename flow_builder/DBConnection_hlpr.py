import logging
import os
from typing import Callable

from dotenv import load_dotenv
from google.auth import default as google_auth_default
from google.cloud import secretmanager, storage
from google.oauth2 import service_account
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from flow_builder.entities import Base

load_dotenv()

logger = logging.getLogger("flow_builder")


class DBConnection:
    def __init__(self, database_url: str | None = None) -> None:
        # ---- env config (shared) ----
        self.PROJECT_ID   = os.getenv("PROJECT_ID", "")
        self.BUCKET_NAME  = os.getenv("GCS_BUCKET_NAME", "")
        self.DB_HOST      = os.getenv("DB_HOST", "localhost")
        self.DB_PORT      = int(os.getenv("DB_PORT", "5432"))
        self.DB_NAME      = os.getenv("DB_NAME", "")
        self.DB_USER      = os.getenv("DB_USER", "")
        self.DB_PASSWORD  = os.getenv("DB_PASSWORD", "")
        self.DB_SECRET_ID = os.getenv("DB_SECRET_ID", "")

        self._creds = None
        self._storage_client = None
        self._sessionmaker = None

        # !###############################################
        # !   EITHER A DATABASE_URL IN THE .ENV FILE OR
        # !   THE DB_* PIECES (PASSWORD MAY COME FROM SECRET MANAGER)
        # !###############################################
        self.DATABASE_URL = database_url or os.getenv("DATABASE_URL", "")
        self.IS_LOCAL = True
        if not self.DATABASE_URL:
            self.IS_LOCAL = False
            self.DATABASE_URL = f"postgresql+pg8000://{self.DB_USER}:{self._get_db_password_lazy()}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # -------- GCP auth / creds --------
    def _build_creds(self):
        key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
        scopes = ["https://www.googleapis.com/auth/cloud-platform"]
        if key_path and os.path.exists(key_path):
            return service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
        creds, _ = google_auth_default(scopes=scopes)
        return creds

    @property
    def creds(self):
        if self._creds is None:
            self._creds = self._build_creds()
        return self._creds

    @property
    def storage_client(self) -> storage.Client:
        if self._storage_client is None:
            self._storage_client = storage.Client(credentials=self.creds, project=self.PROJECT_ID or None)
        return self._storage_client

    # -------- DB password (Secret Manager) --------
    def _get_db_password_lazy(self) -> str:
        if self.DB_PASSWORD:
            return self.DB_PASSWORD
        if self.DB_SECRET_ID:
            client = secretmanager.SecretManagerServiceClient(credentials=self.creds)
            name = client.secret_version_path(self.PROJECT_ID, self.DB_SECRET_ID, "latest")
            resp = client.access_secret_version(request={"name": name})
            self.DB_PASSWORD = resp.payload.data.decode("utf-8")
            return self.DB_PASSWORD
        raise RuntimeError("No DB_PASSWORD and no Secret Manager configured")

    def _create_engine(self):
        url = self.DATABASE_URL
        if url.startswith("sqlite"):
            logger.info(f"[DB] Using SQLite URL: {url}")
            kwargs = {"future": True, "connect_args": {"check_same_thread": False}}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
            engine = create_engine(url, **kwargs)

            @event.listens_for(engine, "connect")
            def _enable_fk(dbapi_conn, _record):
                cursor = dbapi_conn.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

            return engine

        logger.info(f"[DB] Connecting to Postgres at {self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}")
        # pg8000 supports 'timeout' in seconds
        return create_engine(
            url,
            future=True,
            pool_pre_ping=True,
            connect_args={"timeout": 10} if "pg8000" in url else {},
        )

    # -------- SQLAlchemy Session factory --------
    def build_db_session_factory(self, create_tables: bool = True) -> Callable[[], Session]:
        if not self._sessionmaker:
            engine = self._create_engine()
            if create_tables:
                Base.metadata.create_all(engine)
            self._sessionmaker = sessionmaker(
                bind=engine,
                autoflush=False,
                autocommit=False,
                future=True,
            )

        def _factory() -> Session:
            return self._sessionmaker()

        return _factory
