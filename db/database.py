"""
Database connection configuration.

The billing ledger itself lives in Stripe; the database only keeps the
webhook event log.
"""
import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv

load_dotenv()

SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./billing.db")


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            # Share one connection so every session sees the same in-memory DB
            options["poolclass"] = StaticPool
        return options
    return {
        "pool_pre_ping": True,   # Verify connections before use
        "pool_recycle": 3600,    # Recycle connections every hour
        "pool_size": 10,         # Maximum connections in pool
        "max_overflow": 20,      # Additional connections when pool is full
    }


engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    echo=False,  # Set True for SQL debugging
    **_engine_options(SQLALCHEMY_DATABASE_URL)
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """
    Dependency that provides a database session.
    Automatically closes the session after request completion.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
