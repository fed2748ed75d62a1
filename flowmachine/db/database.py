from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from flowmachine import config


class Base(DeclarativeBase):
    pass


def make_engine(url: str = config.DATABASE_URL):
    # Workers in other processes share the file; wait on locks instead of failing.
    return create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": config.DATABASE_LOCK_TIMEOUT},
    )


engine = make_engine()

SessionLocal = sessionmaker(bind=engine)


def init_db(bind=None):
    from flowmachine.db import tables  # noqa: F401 - registers table models
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
