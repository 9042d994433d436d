import logging
from datetime import date

import ledger
from billing import (
    DEFAULT_CLOSE_DAYS_BEFORE,
    closing_date_for,
    current_due_competencia,
    due_date_for,
    format_competencia,
)
from db import DBConn, get_conn, integrity_errors
from errors import ConflictError, NotFoundError, ValidationError
from tenant import resolve_user_id
from utils import row_to_dict

logger = logging.getLogger(__name__)


def load_credit_card(conn: DBConn, user_id: int, card_id: int) -> dict:
    row = conn.execute(
        """
        SELECT id, nome, tipo, limite, limite_disponivel, dia_vencimento, dias_fechamento_antes
        FROM cards
        WHERE id = ? AND user_id = ?
        """,
        (int(card_id), int(user_id)),
    ).fetchone()
    if not row:
        raise NotFoundError("Cartão não encontrado.")
    card = row_to_dict(row)
    if card["dia_vencimento"] is None:
        raise ValidationError("Cartão de débito não possui fatura.")
    if card["dias_fechamento_antes"] is None:
        card["dias_fechamento_antes"] = DEFAULT_CLOSE_DAYS_BEFORE
    return card


def _check_competencia(mes, ano) -> tuple[int, int]:
    try:
        m, y = int(mes), int(ano)
    except (TypeError, ValueError):
        raise ValidationError("Mês e ano da competência devem ser números.")
    if m < 1 or m > 12 or y < 1:
        raise ValidationError("Mês deve estar entre 1 e 12, e ano deve ser válido.")
    return m, y


def _competencia_total(conn: DBConn, user_id: int, card_id: int, mes: int, ano: int) -> float:
    row = conn.execute(
        """
        SELECT COALESCE(SUM(quantidade), 0) AS total
        FROM expenses
        WHERE user_id = ? AND card_id = ? AND competencia_mes = ? AND competencia_ano = ?
        """,
        (int(user_id), int(card_id), int(mes), int(ano)),
    ).fetchone()
    return round(float(row["total"] if row else 0.0), 2)


def pay_card_invoice(
    card_id: int,
    mes: int | None = None,
    ano: int | None = None,
    user_id: int | None = None,
    today: date | None = None,
) -> dict:
    uid = resolve_user_id(user_id)
    now = today or date.today()
    try:
        with get_conn() as conn:
            card = load_credit_card(conn, uid, card_id)
            due_day = int(card["dia_vencimento"])
            close_before = int(card["dias_fechamento_antes"])

            if not mes or not ano:
                mes, ano = current_due_competencia(now, due_day)
            mes, ano = _check_competencia(mes, ano)

            close_date = closing_date_for(mes, ano, due_day, close_before)
            if now < close_date:
                raise ValidationError(
                    f"Fatura {format_competencia(mes, ano)} ainda não fechou. "
                    f"Fechamento em {close_date.isoformat()}."
                )

            if ledger.is_competencia_paid(conn, uid, card_id, mes, ano):
                raise ConflictError("Esta fatura já foi paga.")

            total = _competencia_total(conn, uid, card_id, mes, ano)
            ledger.credit(conn, uid, card_id, total)
            conn.execute(
                """
                INSERT INTO card_invoices_payments(user_id, card_id, competencia_mes, competencia_ano, amount_paid)
                VALUES (?, ?, ?, ?, ?)
                """,
                (uid, int(card_id), mes, ano, total),
            )
    except integrity_errors():
        # Outra requisição gravou o pagamento entre a checagem e o INSERT.
        raise ConflictError("Esta fatura já foi paga.")

    logger.info("Fatura %s do cartão %s paga: %.2f", format_competencia(mes, ano), card_id, total)
    return {
        "competencia_mes": mes,
        "competencia_ano": ano,
        "total_devolvido": total,
        "fechamento_em": close_date.isoformat(),
    }


def get_available_invoices(card_id: int, user_id: int | None = None, today: date | None = None) -> list[dict]:
    uid = resolve_user_id(user_id)
    now = today or date.today()
    with get_conn() as conn:
        card = load_credit_card(conn, uid, card_id)
        rows = conn.execute(
            """
            SELECT
                e.competencia_mes,
                e.competencia_ano,
                SUM(e.quantidade) AS total_fatura
            FROM expenses e
            LEFT JOIN card_invoices_payments p
              ON p.user_id = e.user_id
             AND p.card_id = e.card_id
             AND p.competencia_mes = e.competencia_mes
             AND p.competencia_ano = e.competencia_ano
            WHERE e.user_id = ? AND e.card_id = ? AND p.id IS NULL
              AND e.competencia_mes IS NOT NULL
              AND e.competencia_ano IS NOT NULL
            GROUP BY e.competencia_mes, e.competencia_ano
            ORDER BY e.competencia_ano, e.competencia_mes
            """,
            (uid, int(card_id)),
        ).fetchall()

    due_day = int(card["dia_vencimento"])
    close_before = int(card["dias_fechamento_antes"])
    out = []
    for row in rows:
        mes = int(row["competencia_mes"])
        ano = int(row["competencia_ano"])
        close_date = closing_date_for(mes, ano, due_day, close_before)
        out.append(
            {
                "competencia_mes": mes,
                "competencia_ano": ano,
                "total_fatura": round(float(row["total_fatura"] or 0.0), 2),
                "data_vencimento": due_date_for(mes, ano, due_day).isoformat(),
                "data_fechamento": close_date.isoformat(),
                "pode_pagar": now >= close_date,
            }
        )
    return out


def cancel_invoice_payment(card_id: int, mes: int, ano: int, user_id: int | None = None) -> dict:
    uid = resolve_user_id(user_id)
    mes, ano = _check_competencia(mes, ano)
    with get_conn() as conn:
        payment = conn.execute(
            """
            SELECT amount_paid
            FROM card_invoices_payments
            WHERE user_id = ? AND card_id = ? AND competencia_mes = ? AND competencia_ano = ?
            """,
            (uid, int(card_id), mes, ano),
        ).fetchone()
        if not payment:
            raise NotFoundError("Pagamento não encontrado.")

        amount_paid = round(float(payment["amount_paid"] or 0.0), 2)
        ledger.debit(conn, uid, card_id, amount_paid)
        conn.execute(
            """
            DELETE FROM card_invoices_payments
            WHERE user_id = ? AND card_id = ? AND competencia_mes = ? AND competencia_ano = ?
            """,
            (uid, int(card_id), mes, ano),
        )

    logger.info("Pagamento da fatura %s do cartão %s cancelado", format_competencia(mes, ano), card_id)
    return {
        "message": f"Pagamento da fatura {mes}/{ano} cancelado com sucesso.",
        "amount_reverted": amount_paid,
    }


def can_pay_invoice(
    card_id: int,
    mes: int,
    ano: int,
    user_id: int | None = None,
    today: date | None = None,
) -> dict:
    uid = resolve_user_id(user_id)
    now = today or date.today()
    mes, ano = _check_competencia(mes, ano)
    with get_conn() as conn:
        try:
            card = load_credit_card(conn, uid, card_id)
        except (NotFoundError, ValidationError) as e:
            return {"can_pay": False, "reason": e.message}
        if ledger.is_competencia_paid(conn, uid, card_id, mes, ano):
            return {"can_pay": False, "reason": "Esta fatura já foi paga."}

    close_date = closing_date_for(mes, ano, int(card["dia_vencimento"]), int(card["dias_fechamento_antes"]))
    if now < close_date:
        return {
            "can_pay": False,
            "reason": f"Fatura ainda não fechou. Fechamento em {close_date.isoformat()}.",
            "close_date": close_date.isoformat(),
        }
    return {"can_pay": True}


def get_payment_history(card_id: int, limit: int = 10, user_id: int | None = None) -> list[dict]:
    uid = resolve_user_id(user_id)
    with get_conn() as conn:
        rows = conn.execute(
            """
            SELECT competencia_mes, competencia_ano, amount_paid, created_at AS paid_at
            FROM card_invoices_payments
            WHERE user_id = ? AND card_id = ?
            ORDER BY competencia_ano DESC, competencia_mes DESC
            LIMIT ?
            """,
            (uid, int(card_id), int(limit)),
        ).fetchall()
    return [
        {
            "competencia_mes": int(r["competencia_mes"]),
            "competencia_ano": int(r["competencia_ano"]),
            "amount_paid": float(r["amount_paid"] or 0.0),
            "paid_at": str(r["paid_at"]),
        }
        for r in rows
    ]
