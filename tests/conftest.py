import os
import secrets
from datetime import datetime, time as dt_time, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

"""Pytest fixtures and factories.

Important: SQLAlchemy relationship configuration requires all model modules to be imported
before Base.metadata.create_all(), otherwise back_populates targets might not exist yet.
"""
from eod_reports.main import app
from eod_reports.database import Base
from eod_reports.api import deps
from eod_reports.config import DispatchSettings
from eod_reports.jobs.queue import AckDelayQueue
from eod_reports.jobs.routing import QueueRouter
from eod_reports.models.db import MainTask, Subscriber, Transaction
from eod_reports.models.db.enums import MainTaskKind, MainTaskStatus, ReportKind, SubscriberStatus
from eod_reports.pipeline.runner import PipelineRunner
from eod_reports.reports.csv_sink import CsvReportSink
from eod_reports.utils.time import utc_today

# File-based SQLite so worker threads and the test thread share one database
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_eod_reports.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.remove("test_eod_reports.db")
    except OSError:
        pass


@pytest.fixture(autouse=True)
def _clean_tables(create_test_db):
    """Empty every table after each test so factories can reuse emails."""
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def session_factory():
    return TestingSessionLocal


@pytest.fixture()
def settings(tmp_path):
    return DispatchSettings.from_config(
        output_dir=str(tmp_path / "reports"),
        min_workers=1,
        max_workers=2,
        poll_timeout=0.05,
        idle_worker_timeout=0.5,
        max_deliveries=3,
        claimed_requeue_delay_seconds=0.0,
        backoff={"base_seconds": 0, "factor": 2, "max_seconds": 0, "jitter_pct": 0.0},
        scheduler_enabled=False,
    )


@pytest.fixture()
def queue_router(settings):
    router = QueueRouter({
        kind: AckDelayQueue(name) for kind, name in settings.queue_names.items()
    })
    yield router
    router.shutdown()


@pytest.fixture()
def sink(settings):
    return CsvReportSink(settings.output_dir)


@pytest.fixture()
def runner(settings, sink):
    return PipelineRunner(session_factory=TestingSessionLocal, sink=sink, settings=settings)


# Override dependency
def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


app.dependency_overrides[deps.get_db] = _override_get_db


@pytest.fixture()
def client(queue_router, settings):
    """Lifespan is bypassed in tests; replicate the app.state it would set."""
    app.state.settings = settings
    app.state.session_factory = TestingSessionLocal
    app.state.queue_router = queue_router
    app.state.consumer_pools = {}
    return TestClient(app)


# ---------- Data factory helpers ----------

@pytest.fixture()
def subscriber_factory(db_session):
    def _create(
        email: str | None = None,
        kind: ReportKind = ReportKind.REPORT,
        *,
        active_from=None,
        active_to=None,
        status: SubscriberStatus = SubscriberStatus.ACTIVE,
    ):
        today = utc_today()
        if email is None:
            email = f"merchant_{secrets.token_hex(4)}@example.com"
        s = Subscriber(
            email=email,
            report_kind=kind,
            active_from=active_from or today - timedelta(days=30),
            active_to=active_to or today + timedelta(days=30),
            status=status,
        )
        db_session.add(s)
        db_session.commit()
        db_session.refresh(s)
        return s
    return _create


@pytest.fixture()
def transaction_factory(db_session):
    def _create(
        merchant_email: str,
        amount: str | Decimal = "10.00",
        *,
        currency: str = "USD",
        occurred_at: datetime | None = None,
        payer_name: str | None = "Pat Payer",
        payer_email: str | None = "payer@example.com",
    ):
        if occurred_at is None:
            occurred_at = datetime.combine(utc_today(), dt_time(12, 0, 0))
        t = Transaction(
            payer_name=payer_name,
            payer_email=payer_email,
            merchant_email=merchant_email,
            amount=Decimal(str(amount)),
            currency=currency,
            occurred_at=occurred_at,
        )
        db_session.add(t)
        db_session.commit()
        db_session.refresh(t)
        return t
    return _create


@pytest.fixture()
def main_task_factory(db_session):
    def _create(kind: MainTaskKind = MainTaskKind.EOD):
        m = MainTask(kind=kind, status=MainTaskStatus.PENDING)
        db_session.add(m)
        db_session.commit()
        db_session.refresh(m)
        return m
    return _create
