# ABOUTME: Database connection and session management
# ABOUTME: Provides the Database store handle, table creation and default tier seeding

import logging
from pathlib import Path
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.requests import Request

from cn_api.models.database import Base, BillingTier

logger = logging.getLogger(__name__)

# Tiers offered by operator key issuance
DEFAULT_TIERS = [
    {"tier_name": "basic", "monthly_call_limit": 1000, "description": "1,000 calls/month"},
    {"tier_name": "professional", "monthly_call_limit": 10000, "description": "10,000 calls/month"},
    {"tier_name": "enterprise", "monthly_call_limit": 100000, "description": "100,000 calls/month"},
]


def build_engine(database_url: str):
    """Create an engine suited to the database URL."""
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    # Writers wait on the SQLite lock instead of failing straight away
    connect_args = {"check_same_thread": False, "timeout": 30}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(database_url, connect_args=connect_args)


class Database:
    """
    Store handle shared by the services and the request-scoped sessions.

    Constructed once by create_app() (or by tests) and passed to every
    component that needs it.
    """

    def __init__(self, database_url: str | None = None, engine=None):
        if engine is None:
            if database_url is None:
                raise ValueError("Either database_url or engine is required")
            engine = build_engine(database_url)
        self.engine = engine
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self):
        """Create all database tables and seed the default billing tiers."""
        url = self.engine.url
        if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

        Base.metadata.create_all(bind=self.engine)
        self.seed_default_tiers()

    def seed_default_tiers(self) -> int:
        """Insert any default tier that is missing. Existing tiers are left as they are."""
        created = 0
        with self.SessionLocal() as session:
            existing = {name for (name,) in session.query(BillingTier.tier_name).all()}
            for tier in DEFAULT_TIERS:
                if tier["tier_name"] not in existing:
                    session.add(BillingTier(**tier))
                    created += 1
            session.commit()
        if created:
            logger.info("Seeded %d default billing tiers", created)
        return created

    def dispose(self):
        self.engine.dispose()


def get_db(request: Request):
    """Dependency for getting database sessions."""
    db = request.app.state.database.SessionLocal()
    try:
        yield db
    finally:
        db.close()
