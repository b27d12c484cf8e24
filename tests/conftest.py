import sqlite3
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.models import billing, calls, gdpr, load, organization, partner, referral  # noqa: F401


sqlite3.register_adapter(Decimal, float)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def make_org(db):
    def _make(
        name: str = "Acme Freight",
        *,
        plan: str = "free",
        usage_minutes_current: int = 0,
        usage_minutes_limit: int | None = 60,
        usage_reset_date: date | None = None,
        email: str | None = None,
    ) -> int:
        row = db.execute(
            text(
                """
                INSERT INTO organizations (name, plan, subscription_status, usage_minutes_current,
                                           usage_minutes_limit, usage_reset_date, email)
                VALUES (:name, :plan, 'active', :current, :limit, :reset_date, :email)
                RETURNING id
                """
            ),
            {
                "name": name,
                "plan": plan,
                "current": usage_minutes_current,
                "limit": usage_minutes_limit,
                "reset_date": usage_reset_date,
                "email": email,
            },
        ).first()
        db.commit()
        return int(row.id)

    return _make


@pytest.fixture
def make_user(db):
    def _make(email: str, *, organization_id: int | None = None, role: str = "owner", full_name: str | None = None) -> int:
        row = db.execute(
            text("INSERT INTO users (email, full_name) VALUES (:email, :full_name) RETURNING id"),
            {"email": email, "full_name": full_name},
        ).first()
        if organization_id is not None:
            db.execute(
                text(
                    """
                    INSERT INTO user_organizations (user_id, organization_id, role)
                    VALUES (:user_id, :organization_id, :role)
                    """
                ),
                {"user_id": row.id, "organization_id": organization_id, "role": role},
            )
        db.commit()
        return int(row.id)

    return _make


@pytest.fixture
def make_call(db):
    def _make(
        organization_id: int,
        *,
        status: str = "uploaded",
        duration_minutes: int | None = None,
        file_size: int | None = None,
        user_id: int | None = None,
        file_name: str = "call.mp3",
    ) -> int:
        row = db.execute(
            text(
                """
                INSERT INTO calls (organization_id, user_id, file_name, status, duration_minutes, file_size)
                VALUES (:organization_id, :user_id, :file_name, :status, :duration_minutes, :file_size)
                RETURNING id
                """
            ),
            {
                "organization_id": organization_id,
                "user_id": user_id,
                "file_name": file_name,
                "status": status,
                "duration_minutes": duration_minutes,
                "file_size": file_size,
            },
        ).first()
        db.commit()
        return int(row.id)

    return _make
