# utils.py
import unicodedata
from datetime import date
from typing import Any

from errors import ValidationError


def to_brl(x: float) -> str:
    # formatação simples pt-BR (sem depender de locale do SO)
    s = f"{float(x):,.2f}"
    s = s.replace(",", "X").replace(".", ",").replace("X", ".")
    return f"R$ {s}"


def normalize_text(value: Any) -> str:
    raw = unicodedata.normalize("NFD", str(value or ""))
    raw = "".join(ch for ch in raw if unicodedata.category(ch) != "Mn")
    return raw.strip().lower()


def payment_method_kind(value: Any) -> str:
    """
    Classifica o método de pagamento livre em: credito, debito, pix, dinheiro ou outro.
    "Cartão de Crédito", "crédito", "CREDITO parcelado" -> credito
    """
    raw = normalize_text(value)
    if "credito" in raw:
        return "credito"
    if "debito" in raw:
        return "debito"
    if "pix" in raw:
        return "pix"
    if "dinheiro" in raw or "especie" in raw:
        return "dinheiro"
    return "outro"


def is_credit_method(value: Any) -> bool:
    return payment_method_kind(value) == "credito"


def norm_card_type(value: Any) -> str:
    raw = normalize_text(value)
    if raw in {"credito", "credit"}:
        return "credito"
    if raw in {"debito", "debit"}:
        return "debito"
    return ""


def parse_iso_date(value: Any, field: str = "data") -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"Campo '{field}' inválido. Use YYYY-MM-DD.")


def as_int_or_none(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def row_to_dict(row: Any) -> dict:
    return dict(row) if row is not None else {}
