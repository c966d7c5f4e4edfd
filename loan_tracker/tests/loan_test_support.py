import os
import sys
import tempfile
import unittest
from pathlib import Path


os.environ.setdefault("LOAN_TRACKER_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("LOAN_TRACKER_UPLOADS_DIR", os.path.join(tempfile.gettempdir(), "loan-tracker-test-uploads"))
os.environ.setdefault("LOAN_TRACKER_CREATE_TABLES", "false")

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from sqlalchemy import func, select

from loan_tracker.db.base import Base
from loan_tracker.db.session import build_engine, build_sessionmaker
from loan_tracker.models.loan_models import Item, ItemVariant, Loan


class DatabaseTestCase(unittest.TestCase):
    """Fresh in-memory database per test."""

    db_url = "sqlite+pysqlite:///:memory:"

    def setUp(self):
        self.engine = build_engine(self.db_url, timeout_seconds=10)
        Base.metadata.create_all(bind=self.engine)
        self.SessionLocal = build_sessionmaker(self.engine)
        self.db = self.SessionLocal()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def on_loan(self, *criteria) -> int:
        stmt = select(func.coalesce(func.sum(Loan.quantity), 0)).where(Loan.returned_at.is_(None))
        for criterion in criteria:
            stmt = stmt.where(criterion)
        with self.SessionLocal() as fresh:
            return int(fresh.execute(stmt).scalar())

    def assertConserved(self, row):
        """available == total - units out on active loans, for an item or a variant."""
        with self.SessionLocal() as fresh:
            current = fresh.get(type(row), row.id)
        if isinstance(row, ItemVariant):
            out = self.on_loan(Loan.variant_id == row.id)
        else:
            self.assertIsInstance(row, Item)
            out = self.on_loan(Loan.item_id == row.id, Loan.variant_id.is_(None))
        self.assertEqual(current.available_quantity, current.total_quantity - out)
        self.assertGreaterEqual(current.available_quantity, 0)
        self.assertLessEqual(current.available_quantity, current.total_quantity)
