import io
import unittest
from contextlib import redirect_stdout
from datetime import date

import expenses
import invoices
import ledger
import reconcile_card_credit
from db import get_conn
from tests.support import DatabaseTestCase


class ReconcileTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.card = self.make_card(limite=1000.0)
        expenses.create_expense(
            {"metodo_pagamento": "credito", "tipo": "A", "quantidade": 300, "data": "2025-03-25", "card_id": self.card["id"]},
            user_id=self.user_id,
        )

    def _corrupt(self, value: float):
        with get_conn() as conn:
            conn.execute("UPDATE cards SET limite_disponivel = ? WHERE id = ?", (value, self.card["id"]))

    def test_consistent_card_has_no_drift(self):
        [row] = ledger.reconcile(user_id=self.user_id)
        self.assertEqual(row["limite_disponivel"], 700.0)
        self.assertEqual(row["limite_derivado"], 700.0)
        self.assertEqual(row["diferenca"], 0.0)

    def test_dry_run_reports_without_writing(self):
        self._corrupt(500.0)
        [row] = ledger.reconcile(card_id=self.card["id"])
        self.assertEqual(row["diferenca"], -200.0)
        self.assertEqual(self.available(self.card["id"]), 500.0)

    def test_apply_rewrites_available(self):
        self._corrupt(500.0)
        ledger.reconcile(apply=True)
        self.assertEqual(self.available(self.card["id"]), 700.0)

    def test_paid_competencias_are_not_open(self):
        invoices.pay_card_invoice(self.card["id"], 3, 2025, user_id=self.user_id, today=date(2025, 4, 1))
        self.assertEqual(self.open_balance(self.card["id"]), 0.0)
        [row] = ledger.reconcile()
        self.assertEqual(row["limite_derivado"], 1000.0)

    def test_debit_cards_are_ignored(self):
        self.make_card(nome="Débito", tipo="debito", numero="1111", dia_vencimento=None, limite=None)
        self.assertEqual(len(ledger.reconcile()), 1)

    def test_cli_apply(self):
        self._corrupt(123.45)
        out = io.StringIO()
        with redirect_stdout(out):
            code = reconcile_card_credit.main(["--apply", "--user-id", str(self.user_id)])
        self.assertEqual(code, 0)
        self.assertIn("[APPLY]", out.getvalue())
        self.assertEqual(self.available(self.card["id"]), 700.0)


if __name__ == "__main__":
    unittest.main()
