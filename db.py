from pathlib import Path
import os
import sys
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase

def app_root_dir() -> Path:
    if getattr(sys, "frozen", False):
        exe_dir = Path(sys.executable).resolve().parent
        return exe_dir.parent
    return Path(__file__).resolve().parent

def resolve_db_path(root_dir: Path) -> Path:
    custom_path = os.getenv("APP_DB_PATH")
    if not custom_path:
        data_dir = root_dir / "data"
        data_dir.mkdir(parents=True, exist_ok=True)
        return data_dir / "assets.db"

    db_path = Path(custom_path).expanduser()
    if not db_path.is_absolute():
        db_path = (root_dir / db_path).resolve()

    db_path.parent.mkdir(parents=True, exist_ok=True)
    return db_path

def resolve_database_url() -> str:
    url = os.getenv("APP_DATABASE_URL")
    if url:
        return url
    db_path = resolve_db_path(app_root_dir())
    return f"sqlite:///{db_path.as_posix()}"

def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # SQLite ignores REFERENCES clauses unless asked per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()

def create_db_engine(url: str | None = None, **kwargs) -> Engine:
    url = url or resolve_database_url()
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    engine = create_engine(url, connect_args=connect_args, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine

class Base(DeclarativeBase):
    pass
