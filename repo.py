from datetime import date
import logging
import re

import ledger
from billing import DEFAULT_CLOSE_DAYS_BEFORE, last_day_of_month, next_due_date
from db import get_conn, integrity_errors
from errors import ConflictError, NotFoundError, ValidationError
from recurrence import fixed_replica_dates, new_series_id
from tenant import resolve_user_id
from utils import as_int_or_none, norm_card_type, parse_iso_date, row_to_dict

logger = logging.getLogger(__name__)

DEFAULT_COLOR = "#6B7280"


def _uid(user_id: int | None = None) -> int:
    return resolve_user_id(user_id)


# ---------------------------------------------------------------------------
# Cartões
# ---------------------------------------------------------------------------


def _card_out(row) -> dict:
    d = row_to_dict(row)
    for k in ("limite", "limite_disponivel"):
        d[k] = round(float(d.get(k) or 0.0), 2)
    for k in ("created_at", "updated_at"):
        if d.get(k) is not None:
            d[k] = str(d[k])
    return d


def _check_day(value, label: str) -> int:
    day = as_int_or_none(value)
    if day is None or day < 1 or day > 31:
        raise ValidationError(f"{label} deve estar entre 1 e 31.")
    return day


def _check_limit(value) -> float:
    try:
        limite = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Limite deve ser um número positivo para cartões de crédito.")
    if limite <= 0:
        raise ValidationError("Limite deve ser um número positivo para cartões de crédito.")
    return round(limite, 2)


def _check_numero(value) -> str:
    numero = str(value or "").strip()
    if not re.fullmatch(r"\d{4}", numero):
        raise ValidationError("O número do cartão deve conter exatamente 4 dígitos.")
    return numero


def create_card(payload: dict, user_id: int | None = None) -> dict:
    uid = _uid(user_id)
    nome = str(payload.get("nome") or "").strip()
    if not nome:
        raise ValidationError("Nome do cartão é obrigatório.")
    numero = _check_numero(payload.get("numero"))
    tipo = norm_card_type(payload.get("tipo"))
    if not tipo:
        raise ValidationError("Tipo do cartão inválido. Use 'credito' ou 'debito'.")
    cor = str(payload.get("cor") or "").strip() or DEFAULT_COLOR

    if tipo == "credito":
        due_day = _check_day(payload.get("dia_vencimento"), "Dia de vencimento")
        close_raw = payload.get("dias_fechamento_antes")
        close_before = (
            DEFAULT_CLOSE_DAYS_BEFORE
            if close_raw is None
            else _check_day(close_raw, "Dias de fechamento antes")
        )
        limite = _check_limit(payload.get("limite"))
    else:
        due_day = None
        close_before = None
        limite = 0.0

    with get_conn() as conn:
        row = conn.execute(
            """
            INSERT INTO cards(user_id, nome, tipo, numero, cor, limite, limite_disponivel, dia_vencimento, dias_fechamento_antes)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (uid, nome, tipo, numero, cor, limite, limite, due_day, close_before),
        ).fetchall()[0]
        card = conn.execute(
            "SELECT * FROM cards WHERE id = ? AND user_id = ?",
            (int(row["id"]), uid),
        ).fetchone()
    logger.info("Cartão %s criado user=%s tipo=%s limite=%.2f", row["id"], uid, tipo, limite)
    return _card_out(card)


def list_cards(user_id: int | None = None, today: date | None = None) -> list[dict]:
    uid = _uid(user_id)
    now = today or date.today()
    with get_conn() as conn:
        rows = conn.execute(
            """
            SELECT
                c.*,
                COALESCE(SUM(e.quantidade), 0) AS gasto_total
            FROM cards c
            LEFT JOIN expenses e
              ON e.card_id = c.id
             AND e.user_id = c.user_id
             AND e.competencia_mes = ?
             AND e.competencia_ano = ?
            WHERE c.user_id = ?
            GROUP BY c.id
            ORDER BY c.id DESC
            """,
            (now.month, now.year, uid),
        ).fetchall()
    out = []
    for r in rows:
        card = _card_out(r)
        card["gasto_total"] = round(float(card.get("gasto_total") or 0.0), 2)
        due_day = card.get("dia_vencimento")
        card["proximo_vencimento"] = (
            next_due_date(now, int(due_day)).isoformat() if due_day is not None else None
        )
        out.append(card)
    return out


def get_card(card_id: int, user_id: int | None = None) -> dict:
    uid = _uid(user_id)
    with get_conn() as conn:
        row = conn.execute(
            "SELECT * FROM cards WHERE id = ? AND user_id = ?",
            (int(card_id), uid),
        ).fetchone()
    if not row:
        raise NotFoundError("Cartão não encontrado.")
    return _card_out(row)


def update_card(card_id: int, payload: dict, user_id: int | None = None) -> dict:
    uid = _uid(user_id)
    changes: dict = {}
    if payload.get("nome") is not None:
        nome = str(payload["nome"]).strip()
        if not nome:
            raise ValidationError("Nome do cartão é obrigatório.")
        changes["nome"] = nome
    if payload.get("numero") is not None:
        changes["numero"] = _check_numero(payload["numero"])
    if payload.get("tipo") is not None:
        tipo = norm_card_type(payload["tipo"])
        if not tipo:
            raise ValidationError("Tipo do cartão inválido. Use 'credito' ou 'debito'.")
        changes["tipo"] = tipo
    if payload.get("cor") is not None:
        changes["cor"] = str(payload["cor"]).strip() or DEFAULT_COLOR
    if payload.get("dia_vencimento") is not None:
        changes["dia_vencimento"] = _check_day(payload["dia_vencimento"], "Dia de vencimento")
    if payload.get("dias_fechamento_antes") is not None:
        changes["dias_fechamento_antes"] = _check_day(
            payload["dias_fechamento_antes"], "Dias de fechamento antes"
        )
    new_limit = _check_limit(payload["limite"]) if payload.get("limite") is not None else None

    with get_conn() as conn:
        row = conn.execute(
            "SELECT * FROM cards WHERE id = ? AND user_id = ?",
            (int(card_id), uid),
        ).fetchone()
        if not row:
            raise NotFoundError("Cartão não encontrado.")

        if new_limit is not None:
            aberto = ledger.open_balance(conn, uid, card_id)
            if new_limit < aberto:
                raise ValidationError(
                    "O novo limite não pode ser menor que o saldo em aberto "
                    f"(faturas não pagas): R$ {aberto:.2f}"
                )
            changes["limite"] = new_limit
            changes["limite_disponivel"] = round(max(new_limit - aberto, 0.0), 2)

        if changes:
            sets = ", ".join(f"{k} = ?" for k in changes)
            conn.execute(
                f"UPDATE cards SET {sets}, updated_at = CURRENT_TIMESTAMP WHERE id = ? AND user_id = ?",
                [*changes.values(), int(card_id), uid],
            )
        card = conn.execute(
            "SELECT * FROM cards WHERE id = ? AND user_id = ?",
            (int(card_id), uid),
        ).fetchone()
    return _card_out(card)


def _count_card_expenses(conn, user_id: int, card_id: int, start: str, end: str, inside: bool) -> int:
    cond = "data >= ? AND data <= ?" if inside else "(data < ? OR data > ?)"
    row = conn.execute(
        f"SELECT COUNT(*) AS n FROM expenses WHERE card_id = ? AND user_id = ? AND {cond}",
        (int(card_id), int(user_id), start, end),
    ).fetchone()
    return int(row["n"] if row else 0)


def delete_card(card_id: int, user_id: int | None = None, today: date | None = None) -> dict:
    uid = _uid(user_id)
    now = today or date.today()
    month_start = date(now.year, now.month, 1).isoformat()
    month_end = date(now.year, now.month, last_day_of_month(now.year, now.month)).isoformat()

    with get_conn() as conn:
        exists = conn.execute(
            "SELECT id FROM cards WHERE id = ? AND user_id = ?",
            (int(card_id), uid),
        ).fetchone()
        if not exists:
            raise NotFoundError("Cartão não encontrado.")

        if _count_card_expenses(conn, uid, card_id, month_start, month_end, inside=True) > 0:
            raise ValidationError(
                "Este cartão possui despesas vinculadas no mês atual e não pode ser excluído."
            )

        has_past = _count_card_expenses(conn, uid, card_id, month_start, month_end, inside=False) > 0
        conn.execute(
            """
            DELETE FROM expense_history
            WHERE user_id = ? AND expense_id IN (SELECT id FROM expenses WHERE card_id = ? AND user_id = ?)
            """,
            (uid, int(card_id), uid),
        )
        conn.execute("DELETE FROM expenses WHERE card_id = ? AND user_id = ?", (int(card_id), uid))
        conn.execute(
            "DELETE FROM card_invoices_payments WHERE card_id = ? AND user_id = ?",
            (int(card_id), uid),
        )
        conn.execute("DELETE FROM cards WHERE id = ? AND user_id = ?", (int(card_id), uid))

    logger.info("Cartão %s excluído user=%s (despesas anteriores: %s)", card_id, uid, has_past)
    if has_past:
        return {
            "message": "Cartão e todas as despesas anteriores vinculadas a ele foram excluídos com sucesso."
        }
    return {"message": "Cartão removido com sucesso."}


# ---------------------------------------------------------------------------
# Categorias
# ---------------------------------------------------------------------------

CATEGORY_KINDS = ("despesa", "receita")
_HEX_COLOR = re.compile(r"#(?:[0-9A-Fa-f]{6}|[0-9A-Fa-f]{3})")


def _category_out(row) -> dict:
    d = row_to_dict(row)
    if d.get("created_at") is not None:
        d["created_at"] = str(d["created_at"])
    return d


def _check_color(value) -> str | None:
    cor = str(value or "").strip()
    if not cor:
        return None
    if not _HEX_COLOR.fullmatch(cor):
        raise ValidationError("Cor deve estar no formato hexadecimal válido.")
    return cor


def _check_kind(value) -> str:
    tipo = str(value or "").strip().lower()
    if tipo not in CATEGORY_KINDS:
        raise ValidationError("Tipo deve ser 'despesa' ou 'receita'.")
    return tipo


def _fetch_category(conn, user_id: int, category_id: int):
    return conn.execute(
        "SELECT * FROM categories WHERE id = ? AND user_id = ?",
        (int(category_id), int(user_id)),
    ).fetchone()


def _check_parent(conn, user_id: int, parent_id: int, tipo: str, category_id: int | None = None) -> int:
    parent = _fetch_category(conn, user_id, parent_id)
    if not parent:
        raise NotFoundError("Categoria pai não encontrada.")
    if parent["tipo"] != tipo:
        raise ValidationError("Categoria pai deve ser do mesmo tipo.")
    if category_id is not None:
        # Sobe a hierarquia a partir do novo pai para impedir ciclos.
        node = parent
        while node is not None:
            if int(node["id"]) == int(category_id):
                raise ValidationError("Uma categoria não pode ser pai de si mesma.")
            node = _fetch_category(conn, user_id, node["parent_id"]) if node["parent_id"] is not None else None
    return int(parent["id"])


def _check_unique_category(conn, user_id: int, nome: str, tipo: str, cor: str | None, category_id: int | None = None):
    exclude = int(category_id) if category_id is not None else 0
    dup = conn.execute(
        "SELECT id FROM categories WHERE user_id = ? AND tipo = ? AND nome = ? AND id <> ?",
        (int(user_id), tipo, nome, exclude),
    ).fetchone()
    if dup:
        raise ConflictError(f"Já existe uma categoria {tipo} com este nome.")
    if cor:
        same_color = conn.execute(
            "SELECT nome FROM categories WHERE user_id = ? AND tipo = ? AND cor = ? AND id <> ?",
            (int(user_id), tipo, cor, exclude),
        ).fetchone()
        if same_color:
            raise ConflictError(
                f'A cor selecionada já está sendo usada pela categoria "{same_color["nome"]}" do tipo {tipo}.'
            )


def list_categories(user_id: int | None = None, tipo: str | None = None) -> list[dict]:
    """Categorias do usuário, raízes primeiro. `tipo` filtra por despesa/receita."""
    uid = _uid(user_id)
    query = "SELECT id, nome, cor, tipo, parent_id FROM categories WHERE user_id = ?"
    params: list = [uid]
    if tipo:
        query += " AND tipo = ?"
        params.append(_check_kind(tipo))
    query += " ORDER BY CASE WHEN parent_id IS NULL THEN 0 ELSE 1 END, nome"
    with get_conn() as conn:
        rows = conn.execute(query, params).fetchall()
    return [row_to_dict(r) for r in rows]


def get_category(category_id: int, user_id: int | None = None) -> dict:
    uid = _uid(user_id)
    with get_conn() as conn:
        row = _fetch_category(conn, uid, category_id)
    if not row:
        raise NotFoundError("Categoria não encontrada.")
    return _category_out(row)


def create_category(
    nome: str,
    cor: str | None = None,
    tipo: str = "despesa",
    parent_id: int | None = None,
    user_id: int | None = None,
) -> dict:
    uid = _uid(user_id)
    nm = str(nome or "").strip()
    if not nm:
        raise ValidationError("Nome da categoria é obrigatório.")
    kind = _check_kind(tipo)
    color = _check_color(cor)
    try:
        with get_conn() as conn:
            _check_unique_category(conn, uid, nm, kind, color)
            parent = _check_parent(conn, uid, parent_id, kind) if parent_id is not None else None
            row = conn.execute(
                "INSERT INTO categories(user_id, nome, cor, tipo, parent_id) VALUES (?, ?, ?, ?, ?) RETURNING id",
                (uid, nm, color or DEFAULT_COLOR, kind, parent),
            ).fetchall()[0]
            created = _fetch_category(conn, uid, int(row["id"]))
    except integrity_errors():
        raise ConflictError(f"Já existe uma categoria {kind} com este nome.")
    return _category_out(created)


def update_category(category_id: int, payload: dict, user_id: int | None = None) -> dict:
    """Atualização parcial: campos ausentes ou nulos mantêm o valor atual."""
    uid = _uid(user_id)
    try:
        with get_conn() as conn:
            row = _fetch_category(conn, uid, category_id)
            if not row:
                raise NotFoundError("Categoria não encontrada.")
            current = row_to_dict(row)

            changes: dict = {}
            if payload.get("nome") is not None:
                nome = str(payload["nome"]).strip()
                if not nome:
                    raise ValidationError("Nome da categoria é obrigatório.")
                changes["nome"] = nome
            if payload.get("tipo") is not None:
                changes["tipo"] = _check_kind(payload["tipo"])
            if payload.get("cor") is not None:
                changes["cor"] = _check_color(payload["cor"]) or DEFAULT_COLOR
            kind = changes.get("tipo", current["tipo"])

            parent_id = as_int_or_none(payload.get("parent_id"))
            if parent_id is not None:
                changes["parent_id"] = _check_parent(conn, uid, parent_id, kind, category_id=int(category_id))
            elif "tipo" in changes and current.get("parent_id") is not None:
                _check_parent(conn, uid, current["parent_id"], kind)

            if not changes:
                return _category_out(row)
            _check_unique_category(
                conn,
                uid,
                changes.get("nome", current["nome"]),
                kind,
                changes.get("cor"),
                category_id=int(category_id),
            )
            sets = ", ".join(f"{k} = ?" for k in changes)
            conn.execute(
                f"UPDATE categories SET {sets} WHERE id = ? AND user_id = ?",
                [*changes.values(), int(category_id), uid],
            )
            updated = _fetch_category(conn, uid, category_id)
    except integrity_errors():
        raise ConflictError("Já existe uma categoria com este nome.")
    return _category_out(updated)


def category_usage_count(category_id: int, user_id: int | None = None) -> int:
    uid = _uid(user_id)
    with get_conn() as conn:
        row = conn.execute(
            """
            SELECT
                (SELECT COUNT(*) FROM expenses WHERE category_id = ? AND user_id = ?)
              + (SELECT COUNT(*) FROM incomes WHERE category_id = ? AND user_id = ?) AS n
            """,
            (int(category_id), uid, int(category_id), uid),
        ).fetchone()
    return int(row["n"] if row else 0)


def delete_category(category_id: int, user_id: int | None = None) -> dict:
    uid = _uid(user_id)
    if category_usage_count(category_id, user_id=uid) > 0:
        raise ValidationError("Categoria em uso por despesas ou receitas e não pode ser excluída.")
    with get_conn() as conn:
        children = conn.execute(
            "SELECT COUNT(*) AS n FROM categories WHERE parent_id = ? AND user_id = ?",
            (int(category_id), uid),
        ).fetchone()
        if int(children["n"]):
            raise ValidationError(
                "Não é possível excluir uma categoria que possui subcategorias. Exclua as subcategorias primeiro."
            )
        cur = conn.execute(
            "DELETE FROM categories WHERE id = ? AND user_id = ?",
            (int(category_id), uid),
        )
        deleted = int(cur.rowcount or 0)
    if not deleted:
        raise NotFoundError("Categoria não encontrada.")
    return {"message": "Categoria removida com sucesso."}


# ---------------------------------------------------------------------------
# Receitas
# ---------------------------------------------------------------------------


def _income_out(row) -> dict:
    d = row_to_dict(row)
    d["fixo"] = bool(d.get("fixo"))
    d["quantidade"] = float(d.get("quantidade") or 0.0)
    for k in ("created_at", "updated_at"):
        if d.get(k) is not None:
            d[k] = str(d[k])
    return d


def _insert_income(conn, user_id: int, values: dict) -> dict:
    row = conn.execute(
        """
        INSERT INTO incomes(user_id, tipo, quantidade, fixo, data, fonte, nota, category_id, series_id)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            int(user_id),
            values["tipo"],
            float(values["quantidade"]),
            bool(values["fixo"]),
            values["data"],
            values.get("fonte"),
            values.get("nota"),
            values.get("category_id"),
            values.get("series_id"),
        ),
    ).fetchall()[0]
    return row_to_dict(
        conn.execute("SELECT * FROM incomes WHERE id = ?", (int(row["id"]),)).fetchone()
    )


def create_income(payload: dict, user_id: int | None = None, today: date | None = None):
    """Cria uma receita. Receitas fixas são replicadas até dezembro e retornadas como lista."""
    uid = _uid(user_id)
    tipo = str(payload.get("tipo") or "").strip()
    if not tipo:
        raise ValidationError("Tipo e quantidade são obrigatórios.")
    try:
        quantidade = round(float(payload.get("quantidade")), 2)
    except (TypeError, ValueError):
        raise ValidationError("Quantidade deve ser um número positivo.")
    if quantidade <= 0:
        raise ValidationError("Quantidade deve ser um número positivo.")
    raw_date = payload.get("data")
    base_date = parse_iso_date(raw_date) if raw_date else (today or date.today())

    values = {
        "tipo": tipo,
        "quantidade": quantidade,
        "fixo": bool(payload.get("fixo")),
        "data": base_date.isoformat(),
        "fonte": str(payload.get("fonte") or "").strip() or None,
        "nota": str(payload.get("nota") or "").strip() or None,
        "category_id": as_int_or_none(payload.get("category_id")),
    }

    with get_conn() as conn:
        if not values["fixo"]:
            return _income_out(_insert_income(conn, uid, values))
        values["series_id"] = new_series_id()
        rows = [_insert_income(conn, uid, values)]
        for d in fixed_replica_dates(base_date):
            rows.append(_insert_income(conn, uid, dict(values, data=d.isoformat())))
    return [_income_out(r) for r in rows]


def list_incomes(start_date, end_date, user_id: int | None = None) -> list[dict]:
    uid = _uid(user_id)
    start = parse_iso_date(start_date, "start_date")
    end = parse_iso_date(end_date, "end_date")
    with get_conn() as conn:
        rows = conn.execute(
            """
            SELECT * FROM incomes
            WHERE user_id = ? AND data >= ? AND data <= ?
            ORDER BY data, id
            """,
            (uid, start.isoformat(), end.isoformat()),
        ).fetchall()
    return [_income_out(r) for r in rows]


def list_incomes_by_month(mes: int, ano: int, user_id: int | None = None) -> list[dict]:
    m, y = int(mes), int(ano)
    if m < 1 or m > 12:
        raise ValidationError("Mês deve estar entre 1 e 12, e ano deve ser válido.")
    return list_incomes(date(y, m, 1), date(y, m, last_day_of_month(y, m)), user_id=user_id)


def update_income(income_id: int, payload: dict, user_id: int | None = None) -> dict:
    """Atualiza uma única receita; replicações de receitas fixas não são alteradas."""
    uid = _uid(user_id)
    changes: dict = {}
    if payload.get("tipo") is not None:
        tipo = str(payload["tipo"]).strip()
        if not tipo:
            raise ValidationError("Tipo e quantidade são obrigatórios.")
        changes["tipo"] = tipo
    if payload.get("quantidade") is not None:
        try:
            quantidade = round(float(payload["quantidade"]), 2)
        except (TypeError, ValueError):
            raise ValidationError("Quantidade deve ser um número positivo.")
        if quantidade <= 0:
            raise ValidationError("Quantidade deve ser um número positivo.")
        changes["quantidade"] = quantidade
    if payload.get("data") is not None:
        changes["data"] = parse_iso_date(payload["data"]).isoformat()
    for k in ("fonte", "nota"):
        if payload.get(k) is not None:
            changes[k] = str(payload[k]).strip() or None
    if payload.get("category_id") is not None:
        changes["category_id"] = as_int_or_none(payload["category_id"])

    with get_conn() as conn:
        row = conn.execute(
            "SELECT * FROM incomes WHERE id = ? AND user_id = ?",
            (int(income_id), uid),
        ).fetchone()
        if not row:
            raise NotFoundError("Receita não encontrada.")
        if changes:
            sets = ", ".join(f"{k} = ?" for k in changes)
            conn.execute(
                f"UPDATE incomes SET {sets}, updated_at = CURRENT_TIMESTAMP WHERE id = ? AND user_id = ?",
                [*changes.values(), int(income_id), uid],
            )
            row = conn.execute("SELECT * FROM incomes WHERE id = ?", (int(income_id),)).fetchone()
    return _income_out(row)


def delete_income(income_id: int, user_id: int | None = None):
    uid = _uid(user_id)
    with get_conn() as conn:
        row = conn.execute(
            "SELECT * FROM incomes WHERE id = ? AND user_id = ?",
            (int(income_id), uid),
        ).fetchone()
        if not row:
            raise NotFoundError("Receita não encontrada.")
        income = row_to_dict(row)

        if not bool(income.get("fixo")):
            conn.execute("DELETE FROM incomes WHERE id = ? AND user_id = ?", (int(income_id), uid))
            return _income_out(income)

        if income.get("series_id"):
            where, params = "user_id = ? AND series_id = ?", [uid, income["series_id"]]
        else:
            where, params = "user_id = ? AND series_id IS NULL AND tipo = ? AND fixo = ?", [uid, income["tipo"], True]
        rows = conn.execute(f"SELECT * FROM incomes WHERE {where} ORDER BY data, id", params).fetchall()
        conn.execute(f"DELETE FROM incomes WHERE {where}", params)
    return [_income_out(r) for r in rows]
