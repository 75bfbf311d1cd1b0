import logging
import os
from google.cloud import secretmanager
from google.oauth2 import service_account
from google.auth import default as google_auth_default
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from dotenv import load_dotenv
load_dotenv()

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)

logger = logging.getLogger("studyplan_backend")

# --- Configuration ---
PROJECT_ID = os.getenv("GOOGLE_CLOUD_PROJECT", "your-project-id")

DATABASE_URL        = os.environ.get("DATABASE_URL", "")
DB_HOST             = os.environ.get("DB_HOST", "localhost")
DB_PORT             = int(os.environ.get("DB_PORT", "5432"))
DB_NAME             = os.environ.get("DB_NAME", "studyplan")
DB_USER             = os.environ.get("DB_USER", "postgres")
DB_PASSWORD         = os.environ.get("DB_PASSWORD")
DB_SECRET_ID        = os.environ.get("DB_SECRET_ID")

IS_LOCAL_DB = (not DATABASE_URL and DB_HOST == "localhost")
LOCAL_DB_URL = "sqlite:///studyplan.db"


def _build_creds():
    key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    scopes = ["https://www.googleapis.com/auth/cloud-platform"]
    if key_path and os.path.exists(key_path):
        return service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
    creds, _ = google_auth_default(scopes=scopes)
    return creds


def get_db_password() -> str:
    global DB_PASSWORD

    if DB_PASSWORD:
        return DB_PASSWORD

    if DB_SECRET_ID:
        creds = _build_creds()
        client = secretmanager.SecretManagerServiceClient(credentials=creds)
        name = client.secret_version_path(PROJECT_ID, DB_SECRET_ID, "latest")
        resp = client.access_secret_version(request={"name": name})
        DB_PASSWORD = resp.payload.data.decode("utf-8")
        return DB_PASSWORD

    raise RuntimeError("No DB_PASSWORD and no Secret Manager configured")


def get_db_engine():
    if DATABASE_URL:
        logger.info("[DB] Using DATABASE_URL")
        return create_engine(DATABASE_URL, future=True, pool_pre_ping=True)

    if IS_LOCAL_DB:
        logger.info(f"[DB] Using SQLite URL: {LOCAL_DB_URL}")
        return create_engine(LOCAL_DB_URL, connect_args={"check_same_thread": False})

    password = get_db_password()
    url = f"postgresql+pg8000://{DB_USER}:{password}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
    logger.info(f"[DB] Connecting to Postgres at {DB_HOST}:{DB_PORT}/{DB_NAME}")

    # pg8000 supports 'timeout' in seconds
    return create_engine(
        url,
        connect_args={"timeout": 10},  # fail in 10s instead of hanging forever
    )


def create_session_factory(engine=None) -> sessionmaker:
    if engine is None:
        engine = get_db_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


_session_factory: sessionmaker | None = None


def get_session_factory() -> sessionmaker:
    """
    Process-wide session factory, built on first use.
    """
    global _session_factory
    if _session_factory is None:
        from studyplan.entities import Base

        engine = get_db_engine()
        Base.metadata.create_all(engine)
        _session_factory = create_session_factory(engine)
    return _session_factory


def set_session_factory(factory: sessionmaker | None) -> None:
    global _session_factory
    _session_factory = factory
