from bridgesync.db.engine import create_tables, dispose_engine, get_engine, get_session_factory, init_engine
from bridgesync.db.models import Base

__all__ = ["Base", "create_tables", "dispose_engine", "get_engine", "get_session_factory", "init_engine"]
