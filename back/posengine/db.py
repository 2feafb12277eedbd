from collections.abc import Iterator

from sqlalchemy import text
from sqlmodel import Session, SQLModel, create_engine

from .settings import settings


engine = create_engine(settings.database_url, pool_pre_ping=True)


def create_db_and_tables() -> None:
    # Import table modules so their metadata is registered before create_all
    from . import inventory_models, models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def check_db_connection() -> None:
    with engine.connect() as connection:
        connection.execute(text("SELECT 1"))


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session
