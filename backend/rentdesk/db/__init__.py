from rentdesk.db.session import close_engine, get_db, get_session_maker, init_db, init_engine
from rentdesk.db.base import Base

__all__ = ["Base", "close_engine", "get_db", "get_session_maker", "init_db", "init_engine"]
