from pydantic import BaseModel


class CategoryCreateRequest(BaseModel):
    nome: str
    cor: str | None = None
    tipo: str = "despesa"
    parent_id: int | None = None


class CategoryUpdateRequest(BaseModel):
    nome: str | None = None
    cor: str | None = None
    tipo: str | None = None
    parent_id: int | None = None


class CardCreateRequest(BaseModel):
    nome: str
    tipo: str
    numero: str
    cor: str | None = None
    limite: float | None = None
    dia_vencimento: int | None = None
    dias_fechamento_antes: int | None = None


class CardUpdateRequest(BaseModel):
    nome: str | None = None
    tipo: str | None = None
    numero: str | None = None
    cor: str | None = None
    limite: float | None = None
    dia_vencimento: int | None = None
    dias_fechamento_antes: int | None = None


class PayInvoiceRequest(BaseModel):
    mes: int | None = None
    ano: int | None = None


class ExpenseCreateRequest(BaseModel):
    metodo_pagamento: str
    tipo: str
    quantidade: float
    fixo: bool = False
    data: str | None = None
    parcelas: int | None = None
    frequencia: str | None = None
    card_id: int | None = None
    category_id: int | None = None
    observacoes: str | None = None


class ExpenseUpdateRequest(BaseModel):
    metodo_pagamento: str | None = None
    tipo: str | None = None
    quantidade: float | None = None
    data: str | None = None
    frequencia: str | None = None
    card_id: int | None = None
    category_id: int | None = None
    observacoes: str | None = None


class IncomeCreateRequest(BaseModel):
    tipo: str
    quantidade: float
    fixo: bool = False
    data: str | None = None
    fonte: str | None = None
    nota: str | None = None
    category_id: int | None = None


class IncomeUpdateRequest(BaseModel):
    tipo: str | None = None
    quantidade: float | None = None
    data: str | None = None
    fonte: str | None = None
    nota: str | None = None
    category_id: int | None = None
