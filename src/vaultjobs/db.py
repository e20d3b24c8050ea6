from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .models import Base
from .settings import Settings, settings as default_settings


def create_db_engine(database_url: Optional[str] = None, app_settings: Optional[Settings] = None) -> Engine:
    """Create the sync engine shared by the scheduler threads and the API."""
    app_settings = app_settings or default_settings
    url = database_url or app_settings.database_url

    connect_args = {}
    if url.startswith("sqlite"):
        # Sessions are opened from scheduler and handler worker threads
        connect_args["check_same_thread"] = False

    return create_engine(
        url,
        echo=app_settings.environment == "development" and app_settings.log_level.upper() == "DEBUG",
        future=True,
        connect_args=connect_args,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory whose objects stay readable after the session closes."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        expire_on_commit=False,
    )


def create_tables(engine: Engine) -> None:
    """Create all database tables."""
    Base.metadata.create_all(bind=engine)


def drop_tables(engine: Engine) -> None:
    Base.metadata.drop_all(bind=engine)
