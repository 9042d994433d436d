"""
Limite disponível do cartão.

`cards.limite_disponivel` é um saldo corrente: cada caminho que cria ou remove
uma despesa no crédito, paga ou cancela uma fatura ajusta a coluna com
aritmética SQL no mesmo commit da mudança correspondente.

`open_balance` é o valor derivado (soma das despesas de competências sem
pagamento) e `reconcile` recalcula o saldo corrente a partir dele.
"""
import logging

from db import DBConn, get_conn

logger = logging.getLogger(__name__)


def debit(conn: DBConn, user_id: int, card_id: int, amount: float) -> None:
    value = abs(float(amount or 0.0))
    if value <= 0:
        return
    conn.execute(
        "UPDATE cards SET limite_disponivel = limite_disponivel - ? WHERE id = ? AND user_id = ?",
        (value, int(card_id), int(user_id)),
    )
    logger.info("card=%s limite_disponivel -%.2f", card_id, value)


def credit(conn: DBConn, user_id: int, card_id: int, amount: float) -> None:
    value = abs(float(amount or 0.0))
    if value <= 0:
        return
    conn.execute(
        "UPDATE cards SET limite_disponivel = limite_disponivel + ? WHERE id = ? AND user_id = ?",
        (value, int(card_id), int(user_id)),
    )
    logger.info("card=%s limite_disponivel +%.2f", card_id, value)


def is_competencia_paid(conn: DBConn, user_id: int, card_id: int, mes: int, ano: int) -> bool:
    row = conn.execute(
        """
        SELECT COUNT(*) AS n
        FROM card_invoices_payments
        WHERE user_id = ? AND card_id = ? AND competencia_mes = ? AND competencia_ano = ?
        """,
        (int(user_id), int(card_id), int(mes), int(ano)),
    ).fetchone()
    return bool(row and int(row["n"]) > 0)


def unpaid_amount(conn: DBConn, user_id: int, rows: list[dict]) -> float:
    """Soma das linhas cuja competência ainda não foi paga (linhas sem cartão contam zero)."""
    paid_cache: dict[tuple[int, int, int], bool] = {}
    total = 0.0
    for r in rows:
        card_id = r.get("card_id")
        mes = r.get("competencia_mes")
        ano = r.get("competencia_ano")
        if card_id is None or mes is None or ano is None:
            continue
        key = (int(card_id), int(mes), int(ano))
        if key not in paid_cache:
            paid_cache[key] = is_competencia_paid(conn, user_id, *key)
        if not paid_cache[key]:
            total += abs(float(r.get("quantidade") or 0.0))
    return round(total, 2)


def open_balance(conn: DBConn, user_id: int, card_id: int) -> float:
    row = conn.execute(
        """
        SELECT COALESCE(SUM(e.quantidade), 0) AS aberto
        FROM expenses e
        LEFT JOIN card_invoices_payments p
          ON p.user_id = e.user_id
         AND p.card_id = e.card_id
         AND p.competencia_mes = e.competencia_mes
         AND p.competencia_ano = e.competencia_ano
        WHERE e.user_id = ?
          AND e.card_id = ?
          AND e.competencia_mes IS NOT NULL
          AND e.competencia_ano IS NOT NULL
          AND p.id IS NULL
        """,
        (int(user_id), int(card_id)),
    ).fetchone()
    return round(float(row["aberto"] if row else 0.0), 2)


def reconcile(user_id: int | None = None, card_id: int | None = None, apply: bool = False) -> list[dict]:
    """
    Compara o limite disponível gravado com `limite - saldo em aberto` de cada
    cartão de crédito. Com `apply=True` grava o valor derivado.
    """
    q = """
        SELECT id, user_id, nome, limite, limite_disponivel
        FROM cards
        WHERE dia_vencimento IS NOT NULL
    """
    params: list = []
    if user_id is not None:
        q += " AND user_id = ?"
        params.append(int(user_id))
    if card_id is not None:
        q += " AND id = ?"
        params.append(int(card_id))
    q += " ORDER BY user_id, id"

    report: list[dict] = []
    with get_conn() as conn:
        cards = conn.execute(q, params).fetchall()
        for card in cards:
            uid = int(card["user_id"])
            cid = int(card["id"])
            stored = round(float(card["limite_disponivel"] or 0.0), 2)
            derived = round(float(card["limite"] or 0.0) - open_balance(conn, uid, cid), 2)
            drift = round(stored - derived, 2)
            report.append(
                {
                    "card_id": cid,
                    "user_id": uid,
                    "nome": card["nome"],
                    "limite_disponivel": stored,
                    "limite_derivado": derived,
                    "diferenca": drift,
                }
            )
            if apply and drift != 0:
                conn.execute(
                    "UPDATE cards SET limite_disponivel = ? WHERE id = ? AND user_id = ?",
                    (derived, cid, uid),
                )
                logger.info("card=%s limite_disponivel reconciliado %.2f -> %.2f", cid, stored, derived)
        if not apply:
            conn.rollback()
    return report
