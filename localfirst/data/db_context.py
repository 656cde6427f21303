import os
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

DATABASE_NAME = "localfirst.db"
MEMORY_DATABASE = ":memory:"

load_dotenv()


def get_db_path() -> str:
    """
    Caminho do banco local.
    LOCALFIRST_DB_PATH (ambiente ou .env) tem prioridade sobre o padrão do diretório atual.
    """
    return os.getenv("LOCALFIRST_DB_PATH") or DATABASE_NAME


def create_db_engine(db_path: Optional[str] = None) -> Engine:
    """
    Cria o engine SQLite com otimizações para escrita frequente e UI fluida.
    ':memory:' usa um pool estático para que todas as sessões vejam o mesmo banco.
    """
    db_path = db_path or get_db_path()

    if db_path == MEMORY_DATABASE:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False, "timeout": 10.0},
        )

    @event.listens_for(engine, "connect")
    def _set_pragmas(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        if db_path != MEMORY_DATABASE:
            cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute("PRAGMA temp_store=MEMORY;")
        cursor.close()

    return engine
