import contextlib
import io
import os
import shutil
import sys
import tempfile
import unittest
from unittest import mock

from sqlalchemy import update

from loan_test_support import DatabaseTestCase

from loan_tracker.models.loan_models import Item
from loan_tracker.scripts import inventory_audit
from loan_tracker.services import catalog_service, loan_service, roster_service


class InventoryAuditScriptTests(DatabaseTestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="loan-audit-")
        self.db_url = f"sqlite+pysqlite:///{os.path.join(self.tmpdir, 'audit.db')}"
        super().setUp()
        person = roster_service.add_person(self.db, "Vera")
        self.tent = catalog_service.add_item(self.db, "Tent", 3)
        rifle = catalog_service.add_item(self.db, "Rifle", 4)
        model_a = catalog_service.add_variant(self.db, rifle.id, "Model A", 2)
        loan_service.create_loan(self.db, self.tent.id, person.id, 2)
        loan_service.create_loan(self.db, rifle.id, person.id, 1, variant_id=model_a.id)

    def tearDown(self):
        super().tearDown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _run(self):
        output = io.StringIO()
        with mock.patch.object(sys, "argv", ["inventory_audit.py", "--db-url", self.db_url]):
            with contextlib.redirect_stdout(output):
                code = inventory_audit.main()
        return code, output.getvalue()

    def test_consistent_database_passes(self):
        code, output = self._run()
        self.assertEqual(code, 0, output)
        self.assertIn("[OK] conservation:item:Tent", output)
        self.assertIn("[OK] conservation:variant:Model A", output)
        self.assertNotIn("[FAIL]", output)

    def test_drifted_counter_is_reported(self):
        self.db.execute(update(Item).where(Item.id == self.tent.id).values(available_quantity=3))
        self.db.commit()

        code, output = self._run()
        self.assertEqual(code, 1)
        self.assertIn("[FAIL] conservation:item:Tent", output)

    def test_missing_url(self):
        with mock.patch.object(sys, "argv", ["inventory_audit.py", "--db-url", ""]):
            with contextlib.redirect_stdout(io.StringIO()):
                self.assertEqual(inventory_audit.main(), 2)


if __name__ == "__main__":
    unittest.main()
