import pymysql
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

pymysql.install_as_MySQLdb()

class Base(DeclarativeBase):
    pass

def build_mysql_url(host: str, port: str, user: str, password: str, db: str) -> str:
    return f"mysql+pymysql://{user}:{password}@{host}:{port}/{db}"

def make_engine(db_url: str) -> Engine:
    if db_url.startswith("sqlite"):
        # one shared connection so an in-memory catalog survives across threads
        return create_engine(
            db_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
    # MySQL drops idle connections; recycle before it does
    return create_engine(db_url, pool_pre_ping=True, pool_recycle=1800, future=True)

def init_db(engine: Engine) -> None:
    """Create missing tables. Fine for dev and tests; use migrations in prod."""
    Base.metadata.create_all(bind=engine)

def make_session_factory(engine: Engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=True, bind=engine)

def db_dependency(SessionLocal):
    """FastAPI dependency yielding one session per request."""
    def _get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()
    return _get_db
