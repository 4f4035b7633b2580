import pytest
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")

import dripflow.models  # noqa: F401
from dripflow.core.config import settings
from dripflow.core.deps import get_db, get_session_factory
from dripflow.db.base import Base
from dripflow.main import app
from dripflow.models.facts import (
    Attendance,
    EngagementScore,
    PassOwnership,
    PassProduct,
    Purchase,
    Recipient,
)

NOW = datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture()
def test_context():
    original_workers = settings.segment_recalc_max_workers
    original_mode = settings.audience_size_mode
    # StaticPool shares one connection, so the batch must not run in parallel.
    settings.segment_recalc_max_workers = 1
    settings.audience_size_mode = "sum"

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_local

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
    settings.segment_recalc_max_workers = original_workers
    settings.audience_size_mode = original_mode


@pytest.fixture()
def seeded(test_context):
    """Six recipients with a spread of purchases, attendance, passes and engagement.

    r1: 3 purchases totalling 250, last 2 days ago, all_access pass, active, 12 opens
    r2: 1 purchase of 40, 45 days ago, monthly pass, at_risk
    r3: 2 purchases totalling 120, last 10 days ago, dormant
    r4: no purchases, attended 3 events, single_event pass, inactive
    r5: 1 purchase of 500, 90 days ago, active, 1 open
    r6: nothing at all
    """
    client, session_local = test_context
    with session_local() as db:
        for rid in ("r1", "r2", "r3", "r4", "r5", "r6"):
            db.add(Recipient(id=rid, email=f"{rid}@example.com", full_name=rid.upper()))
        db.flush()

        purchases = [
            ("p1", "r1", "100.00", 30),
            ("p2", "r1", "100.00", 15),
            ("p3", "r1", "50.00", 2),
            ("p4", "r2", "40.00", 45),
            ("p5", "r3", "60.00", 20),
            ("p6", "r3", "60.00", 10),
            ("p7", "r5", "500.00", 90),
            ("p8", None, "999.00", 1),
        ]
        for pid, rid, amount, days_ago in purchases:
            db.add(
                Purchase(
                    id=pid,
                    recipient_id=rid,
                    amount=Decimal(amount),
                    purchased_at=NOW - timedelta(days=days_ago),
                )
            )

        for index in range(3):
            db.add(Attendance(id=f"a4-{index}", recipient_id="r4", item_ref=f"event-{index}"))
        db.add(Attendance(id="a1-0", recipient_id="r1", item_ref="event-0"))

        db.add(PassProduct(id="pass-aa", name="All Access", category="all_access"))
        db.add(PassProduct(id="pass-mo", name="Monthly", category="monthly"))
        db.add(PassProduct(id="pass-se", name="Single", category="single_event"))
        db.flush()
        db.add(PassOwnership(id="po1", recipient_id="r1", pass_id="pass-aa"))
        db.add(PassOwnership(id="po2", recipient_id="r2", pass_id="pass-mo"))
        db.add(PassOwnership(id="po3", recipient_id="r4", pass_id="pass-se"))

        engagement = [
            ("r1", "active", 12, 4),
            ("r2", "at_risk", 3, 0),
            ("r3", "dormant", 0, 0),
            ("r4", "inactive", 0, 0),
            ("r5", "active", 1, 1),
        ]
        for rid, level, opened, clicked in engagement:
            db.add(
                EngagementScore(
                    id=f"e-{rid}",
                    recipient_id=rid,
                    engagement_level=level,
                    emails_opened=opened,
                    emails_clicked=clicked,
                )
            )
        db.commit()

    return client, session_local
