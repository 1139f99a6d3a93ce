from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from dosekeeper.config import DB_URL

DATABASE_URL = DB_URL or "sqlite:///dosekeeper.db"

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

Base = declarative_base()
