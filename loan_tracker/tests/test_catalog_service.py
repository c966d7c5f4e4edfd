import unittest

from loan_test_support import DatabaseTestCase

from loan_tracker.db import gateway
from loan_tracker.models.loan_models import Item, ItemVariant, Loan
from loan_tracker.services import catalog_service, loan_service, roster_service
from loan_tracker.services.errors import ConflictError, InvariantViolation, NotFoundError, ValidationError
from loan_tracker.services.targets import ItemTarget, VariantTarget


class CatalogServiceTests(DatabaseTestCase):
    def test_add_item_starts_fully_available(self):
        item = catalog_service.add_item(self.db, "  Helmet ", 5)
        self.assertEqual(item.name, "Helmet")
        self.assertEqual(item.total_quantity, 5)
        self.assertEqual(item.available_quantity, 5)
        self.assertFalse(item.consumable)
        self.assertTrue(item.id)

    def test_add_item_rejects_bad_input(self):
        with self.assertRaises(ValidationError):
            catalog_service.add_item(self.db, "   ", 5)
        with self.assertRaises(ValidationError):
            catalog_service.add_item(self.db, "Helmet", 0)
        with self.assertRaises(ValidationError):
            catalog_service.add_item(self.db, "Helmet", -3)
        with self.assertRaises(ValidationError):
            catalog_service.add_item(self.db, "Helmet", True)
        self.assertEqual(catalog_service.list_items(self.db), [])

    def test_add_variant_to_missing_item(self):
        with self.assertRaises(NotFoundError):
            catalog_service.add_variant(self.db, "nope", "Blue", 2)

    def test_variants_are_listed_with_their_item(self):
        rifle = catalog_service.add_item(self.db, "Rifle", 10)
        catalog_service.add_variant(self.db, rifle.id, "Model B", 3)
        catalog_service.add_variant(self.db, rifle.id, "Model A", 2)

        items = catalog_service.list_items(self.db)
        self.assertEqual(len(items), 1)
        payload = catalog_service.serialize_item(items[0])
        self.assertEqual([row["name"] for row in payload["variants"]], ["Model A", "Model B"])
        self.assertEqual(payload["variants"][0]["availableQuantity"], 2)
        self.assertTrue(catalog_service.has_variants(self.db, rifle.id))

    def test_resolve_target(self):
        rifle = catalog_service.add_item(self.db, "Rifle", 10)
        variant = catalog_service.add_variant(self.db, rifle.id, "Model A", 2)
        tent = catalog_service.add_item(self.db, "Tent", 4)

        self.assertEqual(catalog_service.resolve_target(self.db, tent.id), ItemTarget(item_id=tent.id))
        self.assertEqual(
            catalog_service.resolve_target(self.db, rifle.id, variant.id),
            VariantTarget(item_id=rifle.id, variant_id=variant.id),
        )
        with self.assertRaises(ValidationError):
            catalog_service.resolve_target(self.db, rifle.id)
        with self.assertRaises(ValidationError):
            catalog_service.resolve_target(self.db, tent.id, variant.id)

    def test_adjust_availability_respects_bounds(self):
        item = catalog_service.add_item(self.db, "Rope", 3)
        target = ItemTarget(item_id=item.id)

        row = catalog_service.adjust_availability(self.db, target, 2)
        self.assertEqual(row.available_quantity, 1)

        with self.assertRaises(InvariantViolation):
            catalog_service.adjust_availability(self.db, target, 2)
        with self.assertRaises(InvariantViolation):
            catalog_service.adjust_availability(self.db, target, -3)

        row = catalog_service.adjust_availability(self.db, target, -2)
        self.assertEqual(row.available_quantity, 3)
        self.assertEqual(catalog_service.get_item(self.db, item.id).available_quantity, 3)

    def test_adjust_availability_unknown_target(self):
        with self.assertRaises(NotFoundError):
            catalog_service.adjust_availability(self.db, ItemTarget(item_id="missing"), 1)
        item = catalog_service.add_item(self.db, "Rifle", 10)
        other = catalog_service.add_item(self.db, "Bow", 1)
        variant = catalog_service.add_variant(self.db, item.id, "Model A", 2)
        with self.assertRaises(NotFoundError):
            catalog_service.adjust_availability(self.db, VariantTarget(item_id=other.id, variant_id=variant.id), 1)

    def test_delete_item_cascades_variants(self):
        rifle = catalog_service.add_item(self.db, "Rifle", 10)
        variant = catalog_service.add_variant(self.db, rifle.id, "Model A", 2)

        catalog_service.delete_item(self.db, rifle.id)

        self.assertIsNone(gateway.get(self.db, Item, rifle.id, fresh=True))
        self.assertIsNone(gateway.get(self.db, ItemVariant, variant.id, fresh=True))
        with self.assertRaises(NotFoundError):
            catalog_service.delete_item(self.db, rifle.id)

    def test_delete_blocked_by_active_loan(self):
        person = roster_service.add_person(self.db, "Jan Novak")
        rifle = catalog_service.add_item(self.db, "Rifle", 10)
        variant = catalog_service.add_variant(self.db, rifle.id, "Model A", 2)
        loan = loan_service.create_loan(self.db, rifle.id, person.id, 1, variant_id=variant.id)

        with self.assertRaises(ConflictError):
            catalog_service.delete_item(self.db, rifle.id)
        with self.assertRaises(ConflictError):
            catalog_service.delete_variant(self.db, variant.id)
        self.assertIsNotNone(gateway.get(self.db, ItemVariant, variant.id, fresh=True))

        loan_service.return_loan(self.db, loan.id)
        catalog_service.delete_item(self.db, rifle.id)

        self.db.expire_all()
        history = gateway.get(self.db, Loan, loan.id)
        self.assertIsNotNone(history)
        self.assertIsNone(history.item_id)
        self.assertIsNone(history.variant_id)
        self.assertIsNotNone(history.returned_at)

    def test_delete_variant_leaves_item(self):
        rifle = catalog_service.add_item(self.db, "Rifle", 10)
        keep = catalog_service.add_variant(self.db, rifle.id, "Model A", 2)
        drop = catalog_service.add_variant(self.db, rifle.id, "Model B", 2)

        catalog_service.delete_variant(self.db, drop.id)

        self.db.expire_all()
        item = catalog_service.get_item(self.db, rifle.id)
        self.assertEqual([v.id for v in item.variants], [keep.id])


if __name__ == "__main__":
    unittest.main()
