import os
import shutil
import tempfile
import threading
import unittest

from loan_test_support import DatabaseTestCase

from loan_tracker.services import catalog_service, loan_service, roster_service
from loan_tracker.services.errors import AlreadyReturnedError, InsufficientAvailabilityError


class ConcurrentLoanTests(DatabaseTestCase):
    """Two checkout points racing for the same units against one file database."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="loan-tracker-")
        self.db_url = f"sqlite+pysqlite:///{os.path.join(self.tmpdir, 'loans.db')}"
        super().setUp()

    def tearDown(self):
        super().tearDown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _race(self, worker, count=2):
        barrier = threading.Barrier(count)
        outcomes = []
        lock = threading.Lock()

        def run():
            session = self.SessionLocal()
            try:
                barrier.wait()
                result = worker(session)
            except Exception as exc:
                result = exc
            finally:
                session.close()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=run) for _ in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        return outcomes

    def test_last_unit_goes_to_exactly_one_borrower(self):
        person = roster_service.add_person(self.db, "Martin")
        lamp = catalog_service.add_item(self.db, "Lamp", 1)

        outcomes = self._race(lambda session: loan_service.create_loan(session, lamp.id, person.id, 1))
        self.db.expire_all()

        failures = [o for o in outcomes if isinstance(o, Exception)]
        successes = [o for o in outcomes if not isinstance(o, Exception)]
        self.assertEqual(len(successes), 1)
        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0], InsufficientAvailabilityError)
        self.assertEqual(catalog_service.get_item(self.db, lamp.id).available_quantity, 0)
        self.assertConserved(lamp)

    def test_variant_units_are_never_oversold(self):
        person = roster_service.add_person(self.db, "Martin")
        rifle = catalog_service.add_item(self.db, "Rifle", 10)
        model_a = catalog_service.add_variant(self.db, rifle.id, "Model A", 3)

        outcomes = self._race(
            lambda session: loan_service.create_loan(session, rifle.id, person.id, 1, variant_id=model_a.id),
            count=5,
        )
        self.db.expire_all()

        successes = [o for o in outcomes if not isinstance(o, Exception)]
        failures = [o for o in outcomes if isinstance(o, Exception)]
        self.assertEqual(len(successes), 3)
        self.assertTrue(all(isinstance(o, InsufficientAvailabilityError) for o in failures))
        self.assertEqual(catalog_service.get_variant(self.db, model_a.id).available_quantity, 0)
        self.assertConserved(model_a)

    def test_concurrent_returns_credit_once(self):
        person = roster_service.add_person(self.db, "Martin")
        helmet = catalog_service.add_item(self.db, "Helmet", 2)
        loan = loan_service.create_loan(self.db, helmet.id, person.id, 2)

        outcomes = self._race(lambda session: loan_service.return_loan(session, loan.id))
        self.db.expire_all()

        failures = [o for o in outcomes if isinstance(o, Exception)]
        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0], AlreadyReturnedError)
        self.assertEqual(catalog_service.get_item(self.db, helmet.id).available_quantity, 2)
        self.assertConserved(helmet)


if __name__ == "__main__":
    unittest.main()
