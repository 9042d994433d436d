from datetime import date
from typing import Iterator
import uuid

from billing import last_day_of_month


def new_series_id() -> str:
    return uuid.uuid4().hex


def is_month_end(d: date) -> bool:
    return d.day == last_day_of_month(d.year, d.month)


def fixed_replica_dates(base_date: date) -> Iterator[date]:
    """
    Datas das réplicas de um lançamento fixo: uma por mês, do mês seguinte até
    dezembro do mesmo ano. Nunca avança para o ano seguinte.

    Base no último dia do mês -> cada réplica usa o último dia do próprio mês.
    Caso contrário -> min(dia original, último dia do mês destino).
    """
    month_end = is_month_end(base_date)
    for month in range(base_date.month + 1, 13):
        last = last_day_of_month(base_date.year, month)
        day = last if month_end else min(base_date.day, last)
        yield date(base_date.year, month, day)
