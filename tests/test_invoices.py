import sqlite3
import unittest
from datetime import date
from unittest import mock

import expenses
import invoices
from db import get_conn
from errors import ConflictError, NotFoundError, ValidationError
from tests.support import DatabaseTestCase


def buy(card_id, quantidade, data, **extra):
    payload = {
        "metodo_pagamento": "credito",
        "tipo": "Compra",
        "quantidade": quantidade,
        "data": data,
        "card_id": card_id,
    }
    payload.update(extra)
    return expenses.create_expense(payload, user_id=1)


class PayInvoiceTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.card = self.make_card(limite=1000.0, dia_vencimento=10, dias_fechamento_antes=10)

    def test_end_to_end_purchase_and_payment(self):
        row = buy(self.card["id"], 300.0, "2025-03-25")
        self.assertEqual((row["competencia_mes"], row["competencia_ano"]), (3, 2025))
        self.assertEqual(self.available(self.card["id"]), 700.0)

        out = invoices.pay_card_invoice(self.card["id"], 3, 2025, user_id=self.user_id, today=date(2025, 4, 1))
        self.assertEqual(
            out,
            {
                "competencia_mes": 3,
                "competencia_ano": 2025,
                "total_devolvido": 300.0,
                "fechamento_em": "2025-02-28",
            },
        )
        self.assertEqual(self.available(self.card["id"]), 1000.0)

        with self.assertRaises(ConflictError) as ctx:
            invoices.pay_card_invoice(self.card["id"], 3, 2025, user_id=self.user_id, today=date(2025, 4, 1))
        self.assertEqual(ctx.exception.status, 400)
        self.assertEqual(self.available(self.card["id"]), 1000.0)

    def test_invoice_not_closed_yet(self):
        buy(self.card["id"], 100.0, "2025-03-25")
        with self.assertRaises(ValidationError) as ctx:
            invoices.pay_card_invoice(self.card["id"], 4, 2025, user_id=self.user_id, today=date(2025, 3, 30))
        self.assertIn("2025-03-31", ctx.exception.message)
        self.assertEqual(self.available(self.card["id"]), 900.0)

    def test_defaults_to_current_due_competencia(self):
        buy(self.card["id"], 120.0, "2025-04-05")
        out = invoices.pay_card_invoice(self.card["id"], user_id=self.user_id, today=date(2025, 4, 1))
        self.assertEqual((out["competencia_mes"], out["competencia_ano"]), (4, 2025))
        self.assertEqual(out["total_devolvido"], 120.0)

    def test_invalid_month(self):
        with self.assertRaises(ValidationError):
            invoices.pay_card_invoice(self.card["id"], 13, 2025, user_id=self.user_id, today=date(2026, 1, 1))

    def test_unknown_and_debit_cards(self):
        with self.assertRaises(NotFoundError):
            invoices.pay_card_invoice(4242, 3, 2025, user_id=self.user_id)
        debit = self.make_card(tipo="debito", numero="5555", dia_vencimento=None, limite=None)
        with self.assertRaises(ValidationError):
            invoices.pay_card_invoice(debit["id"], 3, 2025, user_id=self.user_id)

    def test_concurrent_payment_loses_on_unique_index(self):
        buy(self.card["id"], 300.0, "2025-03-25")
        invoices.pay_card_invoice(self.card["id"], 3, 2025, user_id=self.user_id, today=date(2025, 4, 1))
        # Simula a outra requisição que passou pela checagem antes do INSERT desta.
        with mock.patch("ledger.is_competencia_paid", return_value=False):
            with self.assertRaises(ConflictError):
                invoices.pay_card_invoice(self.card["id"], 3, 2025, user_id=self.user_id, today=date(2025, 4, 1))
        self.assertEqual(self.available(self.card["id"]), 1000.0)

    def test_unique_index_on_payments(self):
        with get_conn() as conn:
            conn.execute(
                "INSERT INTO card_invoices_payments(user_id, card_id, competencia_mes, competencia_ano, amount_paid) VALUES (1, ?, 3, 2025, 0)",
                (self.card["id"],),
            )
        with self.assertRaises(sqlite3.IntegrityError):
            with get_conn() as conn:
                conn.execute(
                    "INSERT INTO card_invoices_payments(user_id, card_id, competencia_mes, competencia_ano, amount_paid) VALUES (1, ?, 3, 2025, 0)",
                    (self.card["id"],),
                )


class InvoiceQueriesTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.card = self.make_card()
        buy(self.card["id"], 100.0, "2025-03-25")
        buy(self.card["id"], 50.0, "2025-03-31")
        buy(self.card["id"], 25.0, "2025-04-02")

    def test_available_invoices(self):
        rows = invoices.get_available_invoices(self.card["id"], user_id=self.user_id, today=date(2025, 3, 31))
        self.assertEqual(
            rows,
            [
                {
                    "competencia_mes": 3,
                    "competencia_ano": 2025,
                    "total_fatura": 100.0,
                    "data_vencimento": "2025-03-10",
                    "data_fechamento": "2025-02-28",
                    "pode_pagar": True,
                },
                {
                    "competencia_mes": 4,
                    "competencia_ano": 2025,
                    "total_fatura": 75.0,
                    "data_vencimento": "2025-04-10",
                    "data_fechamento": "2025-03-31",
                    "pode_pagar": True,
                },
            ],
        )
        invoices.pay_card_invoice(self.card["id"], 3, 2025, user_id=self.user_id, today=date(2025, 4, 1))
        rows = invoices.get_available_invoices(self.card["id"], user_id=self.user_id, today=date(2025, 3, 30))
        self.assertEqual([(r["competencia_mes"], r["pode_pagar"]) for r in rows], [(4, False)])

    def test_can_pay_invoice(self):
        self.assertEqual(
            invoices.can_pay_invoice(self.card["id"], 4, 2025, user_id=self.user_id, today=date(2025, 3, 30)),
            {
                "can_pay": False,
                "reason": "Fatura ainda não fechou. Fechamento em 2025-03-31.",
                "close_date": "2025-03-31",
            },
        )
        self.assertEqual(
            invoices.can_pay_invoice(self.card["id"], 3, 2025, user_id=self.user_id, today=date(2025, 3, 30)),
            {"can_pay": True},
        )
        invoices.pay_card_invoice(self.card["id"], 3, 2025, user_id=self.user_id, today=date(2025, 4, 1))
        out = invoices.can_pay_invoice(self.card["id"], 3, 2025, user_id=self.user_id)
        self.assertFalse(out["can_pay"])
        self.assertEqual(out["reason"], "Esta fatura já foi paga.")

        missing = invoices.can_pay_invoice(999, 3, 2025, user_id=self.user_id)
        self.assertFalse(missing["can_pay"])
        self.assertIn("reason", missing)

    def test_cancel_payment(self):
        invoices.pay_card_invoice(self.card["id"], 3, 2025, user_id=self.user_id, today=date(2025, 4, 1))
        self.assertEqual(self.available(self.card["id"]), 925.0)

        out = invoices.cancel_invoice_payment(self.card["id"], 3, 2025, user_id=self.user_id)
        self.assertEqual(out["amount_reverted"], 100.0)
        self.assertEqual(self.available(self.card["id"]), 825.0)
        self.assertEqual(invoices.get_payment_history(self.card["id"], user_id=self.user_id), [])

        with self.assertRaises(NotFoundError):
            invoices.cancel_invoice_payment(self.card["id"], 3, 2025, user_id=self.user_id)

    def test_payment_history_most_recent_first(self):
        invoices.pay_card_invoice(self.card["id"], 3, 2025, user_id=self.user_id, today=date(2025, 4, 1))
        invoices.pay_card_invoice(self.card["id"], 4, 2025, user_id=self.user_id, today=date(2025, 4, 1))
        history = invoices.get_payment_history(self.card["id"], user_id=self.user_id)
        self.assertEqual([(h["competencia_mes"], h["amount_paid"]) for h in history], [(4, 75.0), (3, 100.0)])
        self.assertEqual(len(invoices.get_payment_history(self.card["id"], limit=1, user_id=self.user_id)), 1)


class LedgerConservationTests(DatabaseTestCase):
    def assertConserved(self, card):
        expected = round(card["limite"] - self.open_balance(card["id"]), 2)
        self.assertAlmostEqual(self.available(card["id"]), expected, places=2)

    def test_available_matches_open_balance_through_lifecycle(self):
        card = self.make_card(limite=2000.0, dia_vencimento=15, dias_fechamento_antes=7)
        self.assertConserved(card)

        single = buy(card["id"], 180.0, "2025-02-03")
        self.assertConserved(card)
        parcels = buy(card["id"], 999.99, "2025-02-20", parcelas=4)
        self.assertConserved(card)

        mes, ano = single["competencia_mes"], single["competencia_ano"]
        invoices.pay_card_invoice(card["id"], mes, ano, user_id=self.user_id, today=date(2025, 12, 1))
        self.assertConserved(card)

        invoices.cancel_invoice_payment(card["id"], mes, ano, user_id=self.user_id)
        self.assertConserved(card)

        invoices.pay_card_invoice(card["id"], mes, ano, user_id=self.user_id, today=date(2025, 12, 1))
        expenses.delete_expense(parcels[2]["id"], user_id=self.user_id)
        self.assertConserved(card)

        expenses.delete_expense(single["id"], user_id=self.user_id)
        self.assertConserved(card)


if __name__ == "__main__":
    unittest.main()
