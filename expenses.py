"""
Ciclo de vida das despesas: criação (simples, parcelada, fixa), edição com
histórico, exclusão em série e consultas.

Despesas no crédito vinculadas a um cartão recebem competência e movimentam o
limite disponível. Todas as escritas de uma operação acontecem numa única
transação.
"""
import json
import logging
import re
from datetime import date

import ledger
from billing import add_months_safe, calculate_competencia, format_competencia, last_day_of_month
from db import DBConn, get_conn
from errors import ConflictError, NotFoundError, ValidationError
from invoices import load_credit_card
from recurrence import fixed_replica_dates, new_series_id
from tenant import resolve_user_id
from utils import as_int_or_none, is_credit_method, parse_iso_date, row_to_dict

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "metodo_pagamento",
    "tipo",
    "quantidade",
    "data",
    "frequencia",
    "card_id",
    "category_id",
    "observacoes",
)
# Campos propagados para as próximas ocorrências de uma série fixa.
CASCADE_FIELDS = ("metodo_pagamento", "tipo", "quantidade", "frequencia", "category_id", "observacoes")


def _expense_out(row) -> dict:
    d = row_to_dict(row)
    if not d:
        return d
    d["fixo"] = bool(d.get("fixo"))
    d["quantidade"] = float(d.get("quantidade") or 0.0)
    for k in ("created_at", "updated_at"):
        if d.get(k) is not None:
            d[k] = str(d[k])
    return d


def _fetch_expense(conn: DBConn, user_id: int, expense_id: int) -> dict:
    row = conn.execute(
        "SELECT * FROM expenses WHERE id = ? AND user_id = ?",
        (int(expense_id), int(user_id)),
    ).fetchone()
    if not row:
        raise NotFoundError("Despesa não encontrada.")
    return row_to_dict(row)


def _insert_expense(conn: DBConn, user_id: int, values: dict) -> dict:
    row = conn.execute(
        """
        INSERT INTO expenses(
            user_id, metodo_pagamento, tipo, quantidade, fixo, data, parcelas, frequencia,
            card_id, category_id, observacoes, competencia_mes, competencia_ano, series_id
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            int(user_id),
            values["metodo_pagamento"],
            values["tipo"],
            float(values["quantidade"]),
            bool(values.get("fixo")),
            values["data"],
            values.get("parcelas"),
            values.get("frequencia"),
            values.get("card_id"),
            values.get("category_id"),
            values.get("observacoes"),
            values.get("competencia_mes"),
            values.get("competencia_ano"),
            values.get("series_id"),
        ),
    ).fetchall()[0]
    return _fetch_expense(conn, user_id, int(row["id"]))


def _clean_text(value) -> str | None:
    s = str(value).strip() if value is not None else ""
    return s or None


def _positive_amount(value) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Quantidade deve ser um número maior que zero.")
    if amount <= 0:
        raise ValidationError("Quantidade deve ser um número maior que zero.")
    return round(amount, 2)


def _validate_new(payload: dict, today: date) -> dict:
    metodo = _clean_text(payload.get("metodo_pagamento"))
    if not metodo:
        raise ValidationError("Método de pagamento é obrigatório.")
    tipo = _clean_text(payload.get("tipo"))
    if not tipo:
        raise ValidationError("Tipo da despesa é obrigatório.")

    raw_date = payload.get("data")
    purchase = parse_iso_date(raw_date) if raw_date else today

    parcelas = payload.get("parcelas")
    if parcelas is None or parcelas == "":
        parcelas = 1
    try:
        parcelas = int(parcelas)
    except (TypeError, ValueError):
        raise ValidationError("Parcelas deve ser um número inteiro.")
    if parcelas < 1:
        raise ValidationError("Parcelas deve ser maior ou igual a 1.")

    return {
        "metodo_pagamento": metodo,
        "tipo": tipo,
        "quantidade": _positive_amount(payload.get("quantidade")),
        "fixo": bool(payload.get("fixo")),
        "data": purchase,
        "parcelas": parcelas,
        "frequencia": _clean_text(payload.get("frequencia")),
        "card_id": as_int_or_none(payload.get("card_id")),
        "category_id": as_int_or_none(payload.get("category_id")),
        "observacoes": _clean_text(payload.get("observacoes")),
    }


def _split_installments(total: float, n: int) -> list[float]:
    base = round(total / n, 2)
    last = round(total - base * (n - 1), 2)
    return [base] * (n - 1) + [last]


def create_expense(payload: dict, user_id: int | None = None, today: date | None = None):
    """
    Cria uma despesa.

    Retorna a linha criada; para compras parceladas no crédito retorna a lista
    de parcelas; para despesas fixas retorna a linha do mês corrente (as
    réplicas até dezembro são criadas junto).
    """
    uid = resolve_user_id(user_id)
    data = _validate_new(payload, today or date.today())
    card_id = data["card_id"]

    with get_conn() as conn:
        if is_credit_method(data["metodo_pagamento"]) and card_id is not None:
            out = _create_credit_expense(conn, uid, data)
        else:
            out = _create_plain_expense(conn, uid, data)

    logger.info(
        "Despesa criada user=%s tipo=%s valor=%.2f parcelas=%s fixo=%s",
        uid,
        data["tipo"],
        data["quantidade"],
        data["parcelas"],
        data["fixo"],
    )
    if isinstance(out, list):
        return [_expense_out(r) for r in out]
    return _expense_out(out)


def _create_plain_expense(conn: DBConn, user_id: int, data: dict) -> dict:
    base = dict(data, data=data["data"].isoformat())
    if not data["fixo"]:
        return _insert_expense(conn, user_id, base)

    base["series_id"] = new_series_id()
    first = _insert_expense(conn, user_id, base)
    for d in fixed_replica_dates(data["data"]):
        _insert_expense(conn, user_id, dict(base, data=d.isoformat()))
    return first


def _create_credit_expense(conn: DBConn, user_id: int, data: dict):
    card = load_credit_card(conn, user_id, data["card_id"])
    card_id = int(card["id"])
    due_day = int(card["dia_vencimento"])
    close_before = int(card["dias_fechamento_antes"])
    purchase = data["data"]
    total = data["quantidade"]

    mes, ano = calculate_competencia(purchase, due_day, close_before)
    if ledger.is_competencia_paid(conn, user_id, card_id, mes, ano):
        raise ConflictError(
            f"A fatura {format_competencia(mes, ano)} já foi paga. "
            "Não é possível adicionar despesas nela."
        )

    available = float(card["limite_disponivel"] or 0.0)
    if total > available:
        raise ValidationError(f"Limite insuficiente. Disponível: {available:.2f}.")

    if data["parcelas"] > 1:
        return _create_installments(conn, user_id, data, card_id, due_day, close_before)

    base = dict(
        data,
        data=purchase.isoformat(),
        card_id=card_id,
        competencia_mes=mes,
        competencia_ano=ano,
    )
    if not data["fixo"]:
        row = _insert_expense(conn, user_id, base)
        ledger.debit(conn, user_id, card_id, total)
        return row

    base["parcelas"] = 1
    base["series_id"] = new_series_id()
    first = _insert_expense(conn, user_id, base)
    for d in fixed_replica_dates(purchase):
        r_mes, r_ano = calculate_competencia(d, due_day, close_before)
        if ledger.is_competencia_paid(conn, user_id, card_id, r_mes, r_ano):
            continue
        _insert_expense(
            conn,
            user_id,
            dict(base, data=d.isoformat(), competencia_mes=r_mes, competencia_ano=r_ano),
        )
    # Só o mês corrente compromete o limite; as réplicas entram nas próximas faturas.
    ledger.debit(conn, user_id, card_id, total)
    return first


def _create_installments(
    conn: DBConn,
    user_id: int,
    data: dict,
    card_id: int,
    due_day: int,
    close_before: int,
) -> list[dict]:
    n = int(data["parcelas"])
    total = data["quantidade"]
    series_id = new_series_id()
    rows = []
    for i, amount in enumerate(_split_installments(total, n)):
        d = add_months_safe(data["data"], i)
        mes, ano = calculate_competencia(d, due_day, close_before)
        if ledger.is_competencia_paid(conn, user_id, card_id, mes, ano):
            raise ConflictError(
                f"A fatura {format_competencia(mes, ano)} já foi paga. "
                f"Não é possível lançar a parcela {i + 1}/{n} nela."
            )
        rows.append(
            _insert_expense(
                conn,
                user_id,
                dict(
                    data,
                    tipo=f"{data['tipo']} ({i + 1}/{n})",
                    quantidade=amount,
                    fixo=False,
                    data=d.isoformat(),
                    parcelas=n,
                    card_id=card_id,
                    competencia_mes=mes,
                    competencia_ano=ano,
                    series_id=series_id,
                ),
            )
        )
    ledger.debit(conn, user_id, card_id, total)
    return rows


def _validate_changes(payload: dict) -> dict:
    changes = {}
    for field in EDITABLE_FIELDS:
        if field not in payload or payload[field] is None:
            continue
        value = payload[field]
        if field in ("metodo_pagamento", "tipo"):
            value = _clean_text(value)
            if not value:
                raise ValidationError(f"Campo '{field}' não pode ser vazio.")
        elif field == "quantidade":
            value = _positive_amount(value)
        elif field == "data":
            value = parse_iso_date(value).isoformat()
        elif field in ("card_id", "category_id"):
            value = as_int_or_none(value)
        else:
            value = _clean_text(value)
        changes[field] = value
    return changes


def _fixed_series_after(conn: DBConn, user_id: int, expense: dict) -> list[int]:
    """Ids das ocorrências seguintes (mesmo ano, data posterior) de uma série fixa."""
    year = str(expense["data"])[:4]
    params: list = [int(user_id), str(expense["data"]), f"{year}-12-31", int(expense["id"])]
    q = """
        SELECT id FROM expenses
        WHERE user_id = ? AND data > ? AND data <= ? AND id <> ?
    """
    if expense.get("series_id"):
        q += " AND series_id = ?"
        params.append(expense["series_id"])
    else:
        q += " AND series_id IS NULL AND tipo = ? AND fixo = ?"
        params.extend([expense["tipo"], True])
    return [int(r["id"]) for r in conn.execute(q, params).fetchall()]


def _apply_changes(conn: DBConn, user_id: int, expense_ids: list[int], changes: dict) -> None:
    if not expense_ids or not changes:
        return
    sets = ", ".join(f"{k} = ?" for k in changes)
    marks = ", ".join("?" for _ in expense_ids)
    conn.execute(
        f"UPDATE expenses SET {sets}, updated_at = CURRENT_TIMESTAMP WHERE user_id = ? AND id IN ({marks})",
        [*changes.values(), int(user_id), *expense_ids],
    )


def update_expense(expense_id: int, payload: dict, user_id: int | None = None) -> dict:
    uid = resolve_user_id(user_id)
    changes = _validate_changes(payload)

    with get_conn() as conn:
        current = _fetch_expense(conn, uid, expense_id)
        if is_credit_method(current["metodo_pagamento"]):
            raise ValidationError(
                "Despesas no crédito não podem ser editadas. Exclua e lance novamente."
            )
        if "metodo_pagamento" in changes and is_credit_method(changes["metodo_pagamento"]):
            raise ValidationError(
                "Não é possível alterar o método de pagamento para crédito. Exclua e lance novamente."
            )
        if not changes:
            return _expense_out(current)

        conn.execute(
            "INSERT INTO expense_history(expense_id, user_id, tipo, alteracao) VALUES (?, ?, ?, ?)",
            (int(expense_id), uid, "edicao", json.dumps(_expense_out(current), ensure_ascii=False)),
        )
        _apply_changes(conn, uid, [int(expense_id)], changes)

        cascaded = 0
        if bool(current.get("fixo")):
            follow = {k: v for k, v in changes.items() if k in CASCADE_FIELDS}
            if follow:
                ids = _fixed_series_after(conn, uid, current)
                _apply_changes(conn, uid, ids, follow)
                cascaded = len(ids)

        updated = _fetch_expense(conn, uid, expense_id)

    logger.info("Despesa %s editada (%s ocorrências seguintes atualizadas)", expense_id, cascaded)
    return _expense_out(updated)


def _installment_series(conn: DBConn, user_id: int, expense: dict) -> list[dict]:
    if expense.get("series_id"):
        rows = conn.execute(
            "SELECT * FROM expenses WHERE user_id = ? AND series_id = ? ORDER BY data, id",
            (int(user_id), expense["series_id"]),
        ).fetchall()
        return [row_to_dict(r) for r in rows]

    # Linhas antigas sem series_id: mesmo cartão, mesma quantidade de parcelas e rótulo "tipo (i/N)".
    # Comparado em Python: em LIKE, "_" e "%" do rótulo funcionariam como curingas.
    n = int(expense["parcelas"])
    label = re.sub(r" \(\d+/\d+\)$", "", str(expense["tipo"]))
    pattern = re.compile(re.escape(label) + rf" \(\d+/{n}\)")
    rows = conn.execute(
        """
        SELECT * FROM expenses
        WHERE user_id = ? AND card_id = ? AND parcelas = ? AND series_id IS NULL
        ORDER BY data, id
        """,
        (int(user_id), expense["card_id"], n),
    ).fetchall()
    return [row_to_dict(r) for r in rows if pattern.fullmatch(str(r["tipo"]))]


def _fixed_series(conn: DBConn, user_id: int, expense: dict) -> list[dict]:
    if expense.get("series_id"):
        rows = conn.execute(
            "SELECT * FROM expenses WHERE user_id = ? AND series_id = ? ORDER BY data, id",
            (int(user_id), expense["series_id"]),
        ).fetchall()
    else:
        rows = conn.execute(
            """
            SELECT * FROM expenses
            WHERE user_id = ? AND series_id IS NULL AND tipo = ? AND fixo = ?
            ORDER BY data, id
            """,
            (int(user_id), expense["tipo"], True),
        ).fetchall()
    return [row_to_dict(r) for r in rows]


def _first_of_each_year(rows: list[dict]) -> list[dict]:
    """Primeira ocorrência de cada ano de uma série fixa: a única que debitou o limite."""
    firsts: dict[str, dict] = {}
    for r in rows:
        firsts.setdefault(str(r["data"])[:4], r)
    return list(firsts.values())


def delete_expense(expense_id: int, user_id: int | None = None):
    """
    Exclui a despesa. Parcelada no crédito ou fixa: exclui a série inteira.
    No crédito, devolve ao limite apenas o valor das competências ainda não pagas.
    """
    uid = resolve_user_id(user_id)
    with get_conn() as conn:
        expense = _fetch_expense(conn, uid, expense_id)
        credit = is_credit_method(expense["metodo_pagamento"]) and expense.get("card_id") is not None

        if credit and int(expense.get("parcelas") or 1) > 1:
            rows = _installment_series(conn, uid, expense)
        elif bool(expense.get("fixo")):
            rows = _fixed_series(conn, uid, expense)
        else:
            rows = [expense]

        refund = 0.0
        if credit:
            charged = _first_of_each_year(rows) if bool(expense.get("fixo")) else rows
            refund = ledger.unpaid_amount(conn, uid, charged)
            ledger.credit(conn, uid, expense["card_id"], refund)

        ids = [int(r["id"]) for r in rows]
        marks = ", ".join("?" for _ in ids)
        conn.execute(
            f"DELETE FROM expense_history WHERE user_id = ? AND expense_id IN ({marks})",
            [uid, *ids],
        )
        conn.execute(
            f"DELETE FROM expenses WHERE user_id = ? AND id IN ({marks})",
            [uid, *ids],
        )

    logger.info("Despesa %s excluída (%s linhas, %.2f devolvido ao limite)", expense_id, len(ids), refund)
    if len(rows) == 1:
        return _expense_out(rows[0])
    return [_expense_out(r) for r in rows]


def list_expenses(start_date, end_date, user_id: int | None = None) -> list[dict]:
    uid = resolve_user_id(user_id)
    start = parse_iso_date(start_date, "start_date")
    end = parse_iso_date(end_date, "end_date")
    if start > end:
        raise ValidationError("start_date deve ser anterior ou igual a end_date.")
    with get_conn() as conn:
        rows = conn.execute(
            """
            SELECT * FROM expenses
            WHERE user_id = ? AND data >= ? AND data <= ?
            ORDER BY data, id
            """,
            (uid, start.isoformat(), end.isoformat()),
        ).fetchall()
    return [_expense_out(r) for r in rows]


def list_expenses_by_month(mes: int, ano: int, user_id: int | None = None) -> list[dict]:
    try:
        m, y = int(mes), int(ano)
    except (TypeError, ValueError):
        raise ValidationError("Mês e ano devem ser números.")
    if m < 1 or m > 12:
        raise ValidationError("Mês deve estar entre 1 e 12.")
    return list_expenses(date(y, m, 1), date(y, m, last_day_of_month(y, m)), user_id=user_id)


def get_expense_history(expense_id: int, user_id: int | None = None) -> list[dict]:
    uid = resolve_user_id(user_id)
    with get_conn() as conn:
        _fetch_expense(conn, uid, expense_id)
        rows = conn.execute(
            """
            SELECT id, expense_id, tipo, alteracao, data_alteracao
            FROM expense_history
            WHERE expense_id = ? AND user_id = ?
            ORDER BY data_alteracao DESC, id DESC
            """,
            (int(expense_id), uid),
        ).fetchall()
    out = []
    for r in rows:
        d = row_to_dict(r)
        d["alteracao"] = json.loads(d["alteracao"])
        d["data_alteracao"] = str(d["data_alteracao"])
        out.append(d)
    return out
