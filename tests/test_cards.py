import unittest
from datetime import date

import expenses
import invoices
import repo
from errors import NotFoundError, ValidationError
from tests.support import DatabaseTestCase


class CreateCardTests(DatabaseTestCase):
    def test_credit_card_starts_with_full_limit(self):
        card = self.make_card(limite=1500.0, dias_fechamento_antes=None)
        self.assertEqual(card["tipo"], "credito")
        self.assertEqual(card["limite"], 1500.0)
        self.assertEqual(card["limite_disponivel"], 1500.0)
        self.assertEqual(card["dias_fechamento_antes"], 10)
        self.assertEqual(card["cor"], "#6B7280")

    def test_accented_type(self):
        card = self.make_card(tipo="Crédito")
        self.assertEqual(card["tipo"], "credito")

    def test_debit_card_has_no_cycle(self):
        card = self.make_card(tipo="débito", dia_vencimento=None, limite=None)
        self.assertEqual(card["tipo"], "debito")
        self.assertIsNone(card["dia_vencimento"])
        self.assertIsNone(card["dias_fechamento_antes"])
        self.assertEqual(card["limite"], 0.0)

    def test_validation(self):
        for bad in [
            {"numero": "123"},
            {"numero": "12345"},
            {"numero": "12a4"},
            {"tipo": "prepago"},
            {"dia_vencimento": 0},
            {"dia_vencimento": 32},
            {"dia_vencimento": None},
            {"dias_fechamento_antes": 40},
            {"limite": 0},
            {"limite": -10},
            {"nome": " "},
        ]:
            with self.assertRaises(ValidationError, msg=str(bad)):
                self.make_card(**bad)


class ReadCardTests(DatabaseTestCase):
    def test_get_card_scoped_by_user(self):
        card = self.make_card()
        self.assertEqual(repo.get_card(card["id"], user_id=self.user_id)["id"], card["id"])
        with self.assertRaises(NotFoundError):
            repo.get_card(card["id"], user_id=2)

    def test_list_cards_with_current_competencia_spending(self):
        credit = self.make_card()
        debit = self.make_card(nome="Conta", tipo="debito", numero="4321", dia_vencimento=None, limite=None)
        expenses.create_expense(
            {"metodo_pagamento": "credito", "tipo": "A", "quantidade": 300, "data": "2025-03-05", "card_id": credit["id"]},
            user_id=self.user_id,
        )
        expenses.create_expense(
            {"metodo_pagamento": "credito", "tipo": "B", "quantidade": 40, "data": "2025-03-25", "card_id": credit["id"]},
            user_id=self.user_id,
        )
        cards = {c["id"]: c for c in repo.list_cards(user_id=self.user_id, today=date(2025, 3, 15))}
        self.assertEqual(cards[credit["id"]]["gasto_total"], 340.0)
        self.assertEqual(cards[credit["id"]]["proximo_vencimento"], "2025-04-10")
        self.assertEqual(cards[debit["id"]]["gasto_total"], 0.0)
        self.assertIsNone(cards[debit["id"]]["proximo_vencimento"])


class UpdateCardTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.card = self.make_card(limite=1000.0)
        expenses.create_expense(
            {"metodo_pagamento": "credito", "tipo": "A", "quantidade": 400, "data": "2025-03-25", "card_id": self.card["id"]},
            user_id=self.user_id,
        )

    def test_limit_below_open_balance_rejected(self):
        with self.assertRaises(ValidationError):
            repo.update_card(self.card["id"], {"limite": 399.99}, user_id=self.user_id)
        self.assertEqual(self.available(self.card["id"]), 600.0)

    def test_new_limit_recomputes_available(self):
        card = repo.update_card(self.card["id"], {"limite": 2500}, user_id=self.user_id)
        self.assertEqual(card["limite"], 2500.0)
        self.assertEqual(card["limite_disponivel"], 2100.0)

    def test_paid_invoices_do_not_count_as_open(self):
        invoices.pay_card_invoice(self.card["id"], 3, 2025, user_id=self.user_id, today=date(2025, 4, 1))
        card = repo.update_card(self.card["id"], {"limite": 300}, user_id=self.user_id)
        self.assertEqual(card["limite_disponivel"], 300.0)

    def test_partial_update(self):
        card = repo.update_card(self.card["id"], {"nome": "Roxinho", "cor": "#8A05BE"}, user_id=self.user_id)
        self.assertEqual(card["nome"], "Roxinho")
        self.assertEqual(card["cor"], "#8A05BE")
        self.assertEqual(card["numero"], "1234")
        self.assertEqual(card["limite_disponivel"], 600.0)

    def test_invalid_and_missing(self):
        with self.assertRaises(ValidationError):
            repo.update_card(self.card["id"], {"numero": "99"}, user_id=self.user_id)
        with self.assertRaises(NotFoundError):
            repo.update_card(777, {"nome": "x"}, user_id=self.user_id)


class DeleteCardTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.card = self.make_card()
        expenses.create_expense(
            {"metodo_pagamento": "credito", "tipo": "A", "quantidade": 80, "data": "2025-03-05", "card_id": self.card["id"]},
            user_id=self.user_id,
        )

    def test_blocked_with_current_month_expenses(self):
        with self.assertRaises(ValidationError):
            repo.delete_card(self.card["id"], user_id=self.user_id, today=date(2025, 3, 20))
        self.assertEqual(repo.get_card(self.card["id"], user_id=self.user_id)["id"], self.card["id"])

    def test_deletes_card_with_past_expenses_and_payments(self):
        invoices.pay_card_invoice(self.card["id"], 3, 2025, user_id=self.user_id, today=date(2025, 4, 1))
        out = repo.delete_card(self.card["id"], user_id=self.user_id, today=date(2025, 6, 1))
        self.assertIn("despesas anteriores", out["message"])
        self.assertEqual(self.count_expenses(), 0)
        self.assertEqual(invoices.get_payment_history(self.card["id"], user_id=self.user_id), [])
        with self.assertRaises(NotFoundError):
            repo.get_card(self.card["id"], user_id=self.user_id)

    def test_delete_card_without_expenses(self):
        other = self.make_card(nome="Outro", numero="0001")
        out = repo.delete_card(other["id"], user_id=self.user_id, today=date(2025, 3, 20))
        self.assertEqual(out["message"], "Cartão removido com sucesso.")

    def test_missing_card(self):
        with self.assertRaises(NotFoundError):
            repo.delete_card(31337, user_id=self.user_id)


if __name__ == "__main__":
    unittest.main()
