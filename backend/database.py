from typing import Iterator

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from pricing.config.settings import DATABASE_URL, ensure_dirs


def make_engine(url: str = DATABASE_URL, **kwargs) -> Engine:
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, **kwargs)


ensure_dirs()
engine = make_engine()


def init_db(bind: Engine = engine) -> None:
    # Tables register on SQLModel.metadata when the models module is imported.
    import backend.models  # noqa: F401

    SQLModel.metadata.create_all(bind)


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session
