from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from sidekick.config import DATABASE_URL

# Worker threads write the transaction log concurrently with request handlers,
# so SQLite connections must be shareable across threads.
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

class Base(DeclarativeBase):
	pass


def init_db(bind=None) -> None:
	"""Create all tables (models must be imported so they register on Base)."""
	import sidekick.models.db  # noqa: F401

	Base.metadata.create_all(bind=bind or engine)
