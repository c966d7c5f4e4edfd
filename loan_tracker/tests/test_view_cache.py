import unittest

from loan_test_support import DatabaseTestCase

from loan_tracker.services import catalog_service, loan_service, roster_service
from loan_tracker.services.errors import InsufficientAvailabilityError
from loan_tracker.services.view_cache import InventoryView


class InventoryViewTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.person = roster_service.add_person(self.db, "Jan Novak")
        self.helmet = catalog_service.add_item(self.db, "Helmet", 5)
        self.view = InventoryView()
        self.view.resync(self.db)

    def _cached(self, item_id):
        return next(row for row in self.view.items(self.db) if row["itemID"] == item_id)

    def test_late_apply_does_not_overwrite_newer_counter(self):
        first = self.SessionLocal()
        second = self.SessionLocal()
        try:
            older = loan_service.create_loan(first, self.helmet.id, self.person.id, 1)
            newer = loan_service.create_loan(second, self.helmet.id, self.person.id, 1)
            # Requests finish out of order: the newer row arrives first.
            self.view.apply_loan(newer)
            self.view.apply_loan(older)
        finally:
            first.close()
            second.close()

        self.assertEqual(self._cached(self.helmet.id)["availableQuantity"], 3)
        self.db.expire_all()
        self.assertEqual(catalog_service.get_item(self.db, self.helmet.id).available_quantity, 3)
        self.assertEqual(len(self.view.active_loans(self.db)), 2)

    def test_late_variant_apply_is_ignored(self):
        rifle = catalog_service.add_item(self.db, "Rifle", 10)
        model_a = catalog_service.add_variant(self.db, rifle.id, "Model A", 4)
        self.view.resync(self.db)

        first = self.SessionLocal()
        second = self.SessionLocal()
        try:
            older = loan_service.create_loan(first, rifle.id, self.person.id, 1, variant_id=model_a.id)
            newer = loan_service.create_loan(second, rifle.id, self.person.id, 2, variant_id=model_a.id)
            self.view.apply_loan(newer)
            self.view.apply_loan(older)
        finally:
            first.close()
            second.close()

        variants = self._cached(rifle.id)["variants"]
        self.assertEqual(variants[0]["availableQuantity"], 1)

    def test_returned_loan_is_not_revived_by_late_create(self):
        first = self.SessionLocal()
        second = self.SessionLocal()
        try:
            created = loan_service.create_loan(first, self.helmet.id, self.person.id, 2)
            returned = loan_service.return_loan(second, created.id)
            self.view.apply_loan(returned)
            self.view.apply_loan(created)
        finally:
            first.close()
            second.close()

        self.assertEqual(self.view.active_loans(self.db), [])
        self.assertEqual(self._cached(self.helmet.id)["availableQuantity"], 5)

    def test_deleted_item_stays_deleted(self):
        with self.SessionLocal() as other:
            stale = catalog_service.get_item(other, self.helmet.id)
        catalog_service.delete_item(self.db, self.helmet.id)
        self.view.forget_item(self.helmet.id)
        self.view.apply_item(stale)
        self.assertEqual(self.view.items(self.db), [])

    def test_error_invalidates_and_next_read_resyncs(self):
        loan_service.create_loan(self.db, self.helmet.id, self.person.id, 5)
        with self.assertRaises(InsufficientAvailabilityError):
            self.view.run(lambda: loan_service.create_loan(self.db, self.helmet.id, self.person.id, 1))
        self.assertEqual(self._cached(self.helmet.id)["availableQuantity"], 0)
        self.assertEqual(len(self.view.active_loans(self.db)), 1)


if __name__ == "__main__":
    unittest.main()
