import os
import sys
from pathlib import Path
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, delete
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'price_manager' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from price_manager.main import app  # type: ignore
from price_manager.database import Base  # type: ignore
from price_manager.api import deps  # type: ignore
"""Pytest fixtures and factories.

Important: SQLAlchemy relationship configuration requires all model modules to be imported
before Base.metadata.create_all(), otherwise back_populates targets might not exist yet.
"""
from price_manager.models.db import CatalogItem, ItemMeta, JobRecordRow
from price_manager.models.db.enums import ItemKind, PriceMetaKey
from price_manager.jobs.queue import PriorityDelayQueue
from price_manager.jobs.worker import ActionWorker, LAST_EXCEPTIONS
from price_manager.services.catalog_sync import PRICE_RANGE_CACHE
from price_manager.services.job_controller import PriceJobController
from price_manager.services.job_store import JobStore
from price_manager.services.record_store import InMemoryRecordStore, SqlRecordStore

# Use file-based SQLite for thread-safe multi-connection access (worker threads + test thread)
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_price_manager.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# --- Critical: background workers must see the same database as the test thread ---
import price_manager.database as _pm_database  # noqa: E402
_pm_database.SessionLocal = TestingSessionLocal  # type: ignore


class FakeClock:
    """Settable epoch clock for controller tests."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.remove("test_price_manager.db")
    except OSError:
        pass


@pytest.fixture(scope="session", autouse=True)
def job_queue(create_test_db):  # depend on DB creation
    """Queue, workers and controller on app.state for endpoints during tests.

    The production app sets these up in lifespan. Tests bypass lifespan so we replicate here.
    """
    queue = PriorityDelayQueue()
    controller = PriceJobController(
        JobStore(SqlRecordStore(TestingSessionLocal)), queue, TestingSessionLocal
    )
    worker = ActionWorker(queue, worker_count=2, poll_timeout=0.05)
    controller.register(worker)
    app.state.job_queue = queue  # type: ignore[attr-defined]
    app.state.price_jobs = controller  # type: ignore[attr-defined]
    worker.start()
    yield queue
    worker.stop(join_timeout=1.0)
    queue.shutdown()


def _wipe_tables() -> None:
    session = TestingSessionLocal()
    try:
        session.execute(delete(ItemMeta))
        session.execute(delete(CatalogItem))
        session.execute(delete(JobRecordRow))
        session.commit()
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _isolate_test_state(job_queue):
    """Ensure per-test isolation for shared single-process components.

    Resets:
        - Queue contents (purge) so leftover batches never run into the next test.
        - Catalog + job tables.
        - Price range cache and recorded worker exceptions.
    """
    job_queue.purge()
    _wipe_tables()
    PRICE_RANGE_CACHE.clear()
    LAST_EXCEPTIONS.clear()
    yield
    job_queue.purge()
    PRICE_RANGE_CACHE.clear()
    LAST_EXCEPTIONS.clear()


@pytest.fixture()
def session_factory():
    return TestingSessionLocal


@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


# Override dependency
def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

app.dependency_overrides[deps.get_db] = _override_get_db


@pytest.fixture()
def client():
    return TestClient(app)


@pytest.fixture()
def app_controller(job_queue) -> PriceJobController:
    return app.state.price_jobs  # type: ignore[attr-defined]


# ---------- Controller without workers (batches are run by the test) ----------

@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def manual_queue():
    queue = PriorityDelayQueue()
    yield queue
    queue.shutdown()


@pytest.fixture()
def controller(manual_queue, clock):
    return PriceJobController(
        JobStore(InMemoryRecordStore()), manual_queue, TestingSessionLocal, clock=clock
    )


# ---------- Data factory helpers ----------

@pytest.fixture()
def catalog_factory(db_session):
    """Create a parent product with variations.

    Each variation entry is a dict with optional keys ``attributes`` (name -> value),
    ``regular``, ``sale``, ``status`` and ``kind``. Returns (product_id, [variation_ids]).
    """
    def _create(title: str = "Test Product", variations: list[dict] | None = None, status: str = "publish"):
        product = CatalogItem(kind=ItemKind.PRODUCT.value, status=status, title=title)
        db_session.add(product)
        db_session.flush()
        ids = []
        for idx, entry in enumerate(variations or []):
            variation = CatalogItem(
                kind=entry.get("kind", ItemKind.PRODUCT_VARIATION.value),
                status=entry.get("status", "publish"),
                parent_id=product.id,
                title=f"{title} #{idx + 1}",
            )
            db_session.add(variation)
            db_session.flush()
            for name, value in entry.get("attributes", {}).items():
                db_session.add(ItemMeta(item_id=variation.id, meta_key=f"attribute_{name}", meta_value=value))
            regular = entry.get("regular")
            sale = entry.get("sale")
            if regular is not None:
                db_session.add(ItemMeta(item_id=variation.id, meta_key=PriceMetaKey.REGULAR.value, meta_value=regular))
            if sale is not None:
                db_session.add(ItemMeta(item_id=variation.id, meta_key=PriceMetaKey.SALE.value, meta_value=sale))
            if regular is not None or sale is not None:
                effective = sale if sale else (regular or "")
                db_session.add(ItemMeta(item_id=variation.id, meta_key=PriceMetaKey.EFFECTIVE.value, meta_value=effective))
            ids.append(variation.id)
        db_session.commit()
        return product.id, ids
    return _create


@pytest.fixture()
def read_meta(db_session):
    """Fresh read of one meta value (None when the row does not exist)."""
    def _read(item_id: int, key: str):
        db_session.expire_all()
        row = db_session.query(ItemMeta).filter_by(item_id=item_id, meta_key=key).first()
        return row.meta_value if row is not None else None
    return _read
