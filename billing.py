"""
Ciclo de faturamento de cartão de crédito (competência).

A competência é o par (mês, ano) da fatura em que uma compra entra. Ela não é o
mês da compra: depende do vencimento do cartão e de quantos dias antes do
vencimento a fatura fecha.

O dia de vencimento é sempre limitado a 28 para que todo mês tenha a data.
Cartões que vencem entre 29 e 31 são tratados como vencendo no dia 28.
"""
import calendar
from datetime import date, timedelta

DEFAULT_CLOSE_DAYS_BEFORE = 10
MAX_DUE_DAY = 28


def _add_months(year: int, month: int, plus: int) -> tuple[int, int]:
    total = (int(year) * 12) + (int(month) - 1) + int(plus)
    return total // 12, (total % 12) + 1


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(int(year), int(month))[1]


def add_months_safe(d: date, months: int) -> date:
    """Soma meses mantendo o dia; se o mês destino for menor, usa o último dia dele."""
    y, m = _add_months(d.year, d.month, months)
    return date(y, m, min(d.day, last_day_of_month(y, m)))


def _close_days(close_days_before: int | None) -> int:
    return DEFAULT_CLOSE_DAYS_BEFORE if close_days_before is None else int(close_days_before)


def _clamped_due_day(due_day: int) -> int:
    return min(int(due_day), MAX_DUE_DAY)


def due_date_for(mes: int, ano: int, due_day: int) -> date:
    return date(int(ano), int(mes), _clamped_due_day(due_day))


def closing_date_for(mes: int, ano: int, due_day: int, close_days_before: int | None = None) -> date:
    return due_date_for(mes, ano, due_day) - timedelta(days=_close_days(close_days_before))


def next_due_date(reference: date, due_day: int) -> date:
    this_month_due = date(reference.year, reference.month, _clamped_due_day(due_day))
    if reference <= this_month_due:
        return this_month_due
    return add_months_safe(this_month_due, 1)


def calculate_competencia(
    purchase_date: date,
    due_day: int,
    close_days_before: int | None = None,
) -> tuple[int, int]:
    """
    Regra do ciclo:
    - próximo vencimento = vencimento deste mês se a compra for até ele, senão o do mês seguinte;
    - fechamento = próximo vencimento - dias de fechamento;
    - compra no fechamento ou depois: competência do próximo vencimento;
    - compra antes do fechamento: competência do mês anterior ao próximo vencimento.
    """
    next_due = next_due_date(purchase_date, due_day)
    close_date = next_due - timedelta(days=_close_days(close_days_before))
    if purchase_date >= close_date:
        comp = next_due
    else:
        comp = add_months_safe(next_due, -1)
    return comp.month, comp.year


def current_due_competencia(today: date, due_day: int) -> tuple[int, int]:
    """Competência com o vencimento mais próximo a partir de hoje (inclusive)."""
    due = next_due_date(today, due_day)
    return due.month, due.year


def format_competencia(mes: int, ano: int) -> str:
    return f"{int(mes):02d}/{int(ano)}"
