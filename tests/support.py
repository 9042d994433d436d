import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import ledger
import repo
from db import get_conn, init_db
from tenant import clear_current_user_id


class DatabaseTestCase(unittest.TestCase):
    """Cada teste roda contra um arquivo SQLite descartável."""

    user_id = 1

    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        env = mock.patch.dict(
            os.environ,
            {"FINANCE_DB_PATH": str(Path(tmp.name) / "finance.db"), "DATABASE_URL": ""},
        )
        env.start()
        self.addCleanup(env.stop)
        self.addCleanup(clear_current_user_id)
        init_db()

    def make_card(self, limite=1000.0, dia_vencimento=10, dias_fechamento_antes=10, **extra) -> dict:
        payload = {
            "nome": extra.pop("nome", "Nubank"),
            "tipo": extra.pop("tipo", "credito"),
            "numero": extra.pop("numero", "1234"),
            "limite": limite,
            "dia_vencimento": dia_vencimento,
            "dias_fechamento_antes": dias_fechamento_antes,
        }
        payload.update(extra)
        return repo.create_card(payload, user_id=self.user_id)

    def available(self, card_id: int) -> float:
        return repo.get_card(card_id, user_id=self.user_id)["limite_disponivel"]

    def open_balance(self, card_id: int) -> float:
        with get_conn() as conn:
            return ledger.open_balance(conn, self.user_id, card_id)

    def count_expenses(self) -> int:
        with get_conn() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM expenses").fetchone()
        return int(row["n"])
