from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import expenses
import invoices
import repo
from db import init_db
from errors import FinanceError
from tenant import clear_current_user_id, set_current_user_id
from utils import as_int_or_none

from .schemas import (
    CardCreateRequest,
    CardUpdateRequest,
    CategoryCreateRequest,
    CategoryUpdateRequest,
    ExpenseCreateRequest,
    ExpenseUpdateRequest,
    IncomeCreateRequest,
    IncomeUpdateRequest,
    PayInvoiceRequest,
)

load_dotenv()

logging.basicConfig(
    level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Controle Financeiro API", version="0.2.0")


def _cors_origins() -> list[str]:
    raw = (os.getenv("CORS_ORIGINS") or "").strip()
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    return [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    # Tolerate local dev variations (localhost/127.0.0.1 with any port, optional trailing slash).
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?/?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    init_db()


def _is_development() -> bool:
    return (os.getenv("APP_ENV") or "").strip().lower() == "development"


@app.exception_handler(FinanceError)
async def finance_error_handler(request: Request, exc: FinanceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    msg = f"Campo '{field}' inválido: {first.get('msg', '')}" if field else "Requisição inválida."
    return JSONResponse(status_code=400, content={"error": msg})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Erro inesperado em %s %s", request.method, request.url.path)
    body = {"error": "Erro interno do servidor."}
    if _is_development():
        body["details"] = str(exc)
    return JSONResponse(status_code=500, content=body)


# async: the tenant is set in the request task, which sync handlers inherit.
async def _current_user_id(x_user_id: str | None = Header(default=None)) -> int:
    uid = as_int_or_none(x_user_id)
    if uid is None or uid <= 0:
        raise HTTPException(status_code=401, detail="Usuário não autenticado")
    set_current_user_id(uid)
    return uid


@app.get("/health")
def health() -> dict:
    return {"ok": True}


@app.get("/categories")
def list_categories(
    tipo: str | None = Query(default=None),
    uid: int = Depends(_current_user_id),
) -> list[dict]:
    return repo.list_categories(user_id=uid, tipo=tipo)


@app.get("/categories/{category_id}")
def get_category(
    category_id: int,
    uid: int = Depends(_current_user_id),
) -> dict:
    return repo.get_category(int(category_id), user_id=uid)


@app.post("/categories")
def create_category(
    body: CategoryCreateRequest,
    uid: int = Depends(_current_user_id),
) -> dict:
    return repo.create_category(body.nome, body.cor, tipo=body.tipo, parent_id=body.parent_id, user_id=uid)


@app.put("/categories/{category_id}")
def update_category(
    category_id: int,
    body: CategoryUpdateRequest,
    uid: int = Depends(_current_user_id),
) -> dict:
    return repo.update_category(int(category_id), body.model_dump(), user_id=uid)


@app.delete("/categories/{category_id}")
def delete_category(
    category_id: int,
    uid: int = Depends(_current_user_id),
) -> dict:
    return repo.delete_category(int(category_id), user_id=uid)


@app.get("/cards")
def list_cards(uid: int = Depends(_current_user_id)) -> list[dict]:
    return repo.list_cards(user_id=uid)


@app.post("/cards")
def create_card(
    body: CardCreateRequest,
    uid: int = Depends(_current_user_id),
) -> dict:
    return repo.create_card(body.model_dump(), user_id=uid)


@app.get("/cards/{card_id}")
def get_card(
    card_id: int,
    uid: int = Depends(_current_user_id),
) -> dict:
    return repo.get_card(int(card_id), user_id=uid)


@app.put("/cards/{card_id}")
def update_card(
    card_id: int,
    body: CardUpdateRequest,
    uid: int = Depends(_current_user_id),
) -> dict:
    return repo.update_card(int(card_id), body.model_dump(exclude_unset=True), user_id=uid)


@app.delete("/cards/{card_id}")
def delete_card(
    card_id: int,
    uid: int = Depends(_current_user_id),
) -> dict:
    return repo.delete_card(int(card_id), user_id=uid)


@app.post("/cards/{card_id}/pay-invoice")
def pay_card_invoice(
    card_id: int,
    body: PayInvoiceRequest | None = None,
    uid: int = Depends(_current_user_id),
) -> dict:
    mes = body.mes if body else None
    ano = body.ano if body else None
    return invoices.pay_card_invoice(int(card_id), mes=mes, ano=ano, user_id=uid)


@app.get("/cards/{card_id}/invoices")
def list_card_invoices(
    card_id: int,
    uid: int = Depends(_current_user_id),
) -> list[dict]:
    return invoices.get_available_invoices(int(card_id), user_id=uid)


@app.get("/cards/{card_id}/payment-history")
def card_payment_history(
    card_id: int,
    limit: int = Query(default=10, ge=1, le=120),
    uid: int = Depends(_current_user_id),
) -> list[dict]:
    return invoices.get_payment_history(int(card_id), limit=limit, user_id=uid)


@app.get("/cards/{card_id}/can-pay-invoice")
def can_pay_invoice(
    card_id: int,
    mes: int,
    ano: int,
    uid: int = Depends(_current_user_id),
) -> dict:
    return invoices.can_pay_invoice(int(card_id), mes, ano, user_id=uid)


@app.delete("/cards/{card_id}/cancel-payment")
def cancel_invoice_payment(
    card_id: int,
    mes: int,
    ano: int,
    uid: int = Depends(_current_user_id),
) -> dict:
    return invoices.cancel_invoice_payment(int(card_id), mes, ano, user_id=uid)


@app.get("/expenses")
def list_expenses(
    start_date: str | None = None,
    end_date: str | None = None,
    mes: int | None = None,
    ano: int | None = None,
    uid: int = Depends(_current_user_id),
) -> list[dict]:
    if mes is not None and ano is not None:
        return expenses.list_expenses_by_month(mes, ano, user_id=uid)
    if not start_date or not end_date:
        raise HTTPException(status_code=400, detail="Parâmetros start_date e end_date são obrigatórios.")
    return expenses.list_expenses(start_date, end_date, user_id=uid)


@app.post("/expenses")
def create_expense(
    body: ExpenseCreateRequest,
    uid: int = Depends(_current_user_id),
):
    return expenses.create_expense(body.model_dump(), user_id=uid)


@app.put("/expenses/{expense_id}")
def update_expense(
    expense_id: int,
    body: ExpenseUpdateRequest,
    uid: int = Depends(_current_user_id),
) -> dict:
    return expenses.update_expense(int(expense_id), body.model_dump(exclude_unset=True), user_id=uid)


@app.delete("/expenses/{expense_id}")
def delete_expense(
    expense_id: int,
    uid: int = Depends(_current_user_id),
):
    return expenses.delete_expense(int(expense_id), user_id=uid)


@app.get("/expenses/{expense_id}/history")
def expense_history(
    expense_id: int,
    uid: int = Depends(_current_user_id),
) -> list[dict]:
    return expenses.get_expense_history(int(expense_id), user_id=uid)


@app.get("/incomes")
def list_incomes(
    start_date: str | None = None,
    end_date: str | None = None,
    mes: int | None = None,
    ano: int | None = None,
    uid: int = Depends(_current_user_id),
) -> list[dict]:
    if mes is not None and ano is not None:
        return repo.list_incomes_by_month(mes, ano, user_id=uid)
    if not start_date or not end_date:
        raise HTTPException(status_code=400, detail="Parâmetros start_date e end_date são obrigatórios.")
    return repo.list_incomes(start_date, end_date, user_id=uid)


@app.post("/incomes")
def create_income(
    body: IncomeCreateRequest,
    uid: int = Depends(_current_user_id),
):
    return repo.create_income(body.model_dump(), user_id=uid)


@app.put("/incomes/{income_id}")
def update_income(
    income_id: int,
    body: IncomeUpdateRequest,
    uid: int = Depends(_current_user_id),
) -> dict:
    return repo.update_income(int(income_id), body.model_dump(), user_id=uid)


@app.delete("/incomes/{income_id}")
def delete_income(
    income_id: int,
    uid: int = Depends(_current_user_id),
):
    return repo.delete_income(int(income_id), user_id=uid)


@app.middleware("http")
async def tenant_cleanup_middleware(request, call_next):
    try:
        response = await call_next(request)
        return response
    finally:
        clear_current_user_id()
