import os
import sqlite3
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_SQLITE_PATH = BASE_DIR / "data" / "finance.db"


def database_url() -> str:
    return os.getenv("DATABASE_URL", "").strip()


def use_postgres() -> bool:
    url = database_url()
    return url.startswith("postgres://") or url.startswith("postgresql://")


def sqlite_path() -> Path:
    raw = os.getenv("FINANCE_DB_PATH", "").strip()
    return Path(raw) if raw else DEFAULT_SQLITE_PATH


class DBCursor:
    def __init__(self, cursor, use_postgres: bool):
        self._cursor = cursor
        self._use_postgres = use_postgres

    def execute(self, query: str, params: tuple | list | None = None):
        q = _adapt_query(query, self._use_postgres)
        self._cursor.execute(q, tuple(params or ()))
        return self

    def fetchone(self):
        return self._cursor.fetchone()

    def fetchall(self):
        return self._cursor.fetchall()


class DBConn:
    """Thin wrapper over a sqlite3/psycopg connection.

    Used as a context manager it is one unit of work: commit on success,
    rollback on any exception, always close.
    """

    def __init__(self, conn, use_postgres: bool):
        self._conn = conn
        self._use_postgres = use_postgres

    @property
    def is_postgres(self) -> bool:
        return self._use_postgres

    def execute(self, query: str, params: tuple | list | None = None):
        q = _adapt_query(query, self._use_postgres)
        return self._conn.execute(q, tuple(params or ()))

    def cursor(self):
        return DBCursor(self._conn.cursor(), self._use_postgres)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            self.rollback()
        else:
            self.commit()
        self.close()
        return False


def _adapt_query(query: str, use_postgres: bool) -> str:
    if not use_postgres:
        return query

    # sqlite qmark style -> psycopg format style
    return query.replace("?", "%s")


def get_conn() -> DBConn:
    if use_postgres():
        try:
            import psycopg
            from psycopg.rows import dict_row
        except ImportError as e:
            raise RuntimeError(
                "PostgreSQL habilitado via DATABASE_URL, mas psycopg não está instalado."
            ) from e

        raw = psycopg.connect(database_url(), row_factory=dict_row)
        return DBConn(raw, use_postgres=True)

    path = sqlite_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    raw = sqlite3.connect(path, check_same_thread=False, timeout=30.0)
    # Reduce SQLITE_BUSY / "database is locked" on concurrent local usage.
    raw.execute("PRAGMA journal_mode=WAL;")
    raw.execute("PRAGMA busy_timeout=30000;")
    raw.execute("PRAGMA synchronous=NORMAL;")
    raw.execute("PRAGMA foreign_keys=ON;")
    raw.row_factory = sqlite3.Row
    return DBConn(raw, use_postgres=False)


def integrity_errors() -> tuple[type[Exception], ...]:
    errors: list[type[Exception]] = [sqlite3.IntegrityError]
    if use_postgres():
        import psycopg

        errors.append(psycopg.IntegrityError)
    return tuple(errors)


def _sqlite_schema(cur):
    cur.execute("""
    CREATE TABLE IF NOT EXISTS categories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        nome TEXT NOT NULL,
        cor TEXT NOT NULL DEFAULT '#6B7280',
        tipo TEXT NOT NULL DEFAULT 'despesa',
        parent_id INTEGER,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS cards (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        nome TEXT NOT NULL,
        tipo TEXT NOT NULL DEFAULT 'credito',
        numero TEXT NOT NULL,
        cor TEXT NOT NULL DEFAULT '#6B7280',
        limite REAL NOT NULL DEFAULT 0,
        limite_disponivel REAL NOT NULL DEFAULT 0,
        dia_vencimento INTEGER,
        dias_fechamento_antes INTEGER,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        updated_at TEXT
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS expenses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        metodo_pagamento TEXT NOT NULL,
        tipo TEXT NOT NULL,
        quantidade REAL NOT NULL,
        fixo INTEGER NOT NULL DEFAULT 0,
        data TEXT NOT NULL,
        parcelas INTEGER,
        frequencia TEXT,
        card_id INTEGER,
        category_id INTEGER,
        observacoes TEXT,
        competencia_mes INTEGER,
        competencia_ano INTEGER,
        series_id TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        updated_at TEXT,
        FOREIGN KEY(card_id) REFERENCES cards(id),
        FOREIGN KEY(category_id) REFERENCES categories(id)
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS card_invoices_payments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        card_id INTEGER NOT NULL,
        competencia_mes INTEGER NOT NULL,
        competencia_ano INTEGER NOT NULL,
        amount_paid REAL NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        FOREIGN KEY(card_id) REFERENCES cards(id)
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS expense_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        expense_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        tipo TEXT NOT NULL,
        alteracao TEXT NOT NULL,
        data_alteracao TEXT NOT NULL DEFAULT (datetime('now'))
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS incomes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        tipo TEXT NOT NULL,
        quantidade REAL NOT NULL,
        fixo INTEGER NOT NULL DEFAULT 0,
        data TEXT NOT NULL,
        fonte TEXT,
        nota TEXT,
        category_id INTEGER,
        series_id TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        updated_at TEXT,
        FOREIGN KEY(category_id) REFERENCES categories(id)
    );
    """)


def _postgres_schema(cur):
    cur.execute("""
    CREATE TABLE IF NOT EXISTS categories (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL,
        nome TEXT NOT NULL,
        cor TEXT NOT NULL DEFAULT '#6B7280',
        tipo TEXT NOT NULL DEFAULT 'despesa',
        parent_id BIGINT,
        created_at TIMESTAMP NOT NULL DEFAULT NOW()
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS cards (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL,
        nome TEXT NOT NULL,
        tipo TEXT NOT NULL DEFAULT 'credito',
        numero TEXT NOT NULL,
        cor TEXT NOT NULL DEFAULT '#6B7280',
        limite DOUBLE PRECISION NOT NULL DEFAULT 0,
        limite_disponivel DOUBLE PRECISION NOT NULL DEFAULT 0,
        dia_vencimento INTEGER,
        dias_fechamento_antes INTEGER,
        created_at TIMESTAMP NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS expenses (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL,
        metodo_pagamento TEXT NOT NULL,
        tipo TEXT NOT NULL,
        quantidade DOUBLE PRECISION NOT NULL,
        fixo BOOLEAN NOT NULL DEFAULT FALSE,
        data TEXT NOT NULL,
        parcelas INTEGER,
        frequencia TEXT,
        card_id BIGINT,
        category_id BIGINT,
        observacoes TEXT,
        competencia_mes INTEGER,
        competencia_ano INTEGER,
        series_id TEXT,
        created_at TIMESTAMP NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP,
        CONSTRAINT fk_expenses_card FOREIGN KEY (card_id) REFERENCES cards(id),
        CONSTRAINT fk_expenses_category FOREIGN KEY (category_id) REFERENCES categories(id)
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS card_invoices_payments (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL,
        card_id BIGINT NOT NULL,
        competencia_mes INTEGER NOT NULL,
        competencia_ano INTEGER NOT NULL,
        amount_paid DOUBLE PRECISION NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL DEFAULT NOW(),
        CONSTRAINT fk_payments_card FOREIGN KEY (card_id) REFERENCES cards(id)
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS expense_history (
        id BIGSERIAL PRIMARY KEY,
        expense_id BIGINT NOT NULL,
        user_id BIGINT NOT NULL,
        tipo TEXT NOT NULL,
        alteracao TEXT NOT NULL,
        data_alteracao TIMESTAMP NOT NULL DEFAULT NOW()
    );
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS incomes (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL,
        tipo TEXT NOT NULL,
        quantidade DOUBLE PRECISION NOT NULL,
        fixo BOOLEAN NOT NULL DEFAULT FALSE,
        data TEXT NOT NULL,
        fonte TEXT,
        nota TEXT,
        category_id BIGINT,
        series_id TEXT,
        created_at TIMESTAMP NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP,
        CONSTRAINT fk_incomes_category FOREIGN KEY (category_id) REFERENCES categories(id)
    );
    """)


def _add_column_sqlite(cur, table: str, column_def: str):
    col_name = column_def.split()[0]
    cols = cur.execute(f"PRAGMA table_info({table})").fetchall()
    existing = {c[1] for c in cols}
    if col_name not in existing:
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column_def}")


def _migrate_sqlite(cur):
    # Databases created before installment/fixed series carried an explicit id.
    _add_column_sqlite(cur, "expenses", "series_id TEXT")
    _add_column_sqlite(cur, "incomes", "series_id TEXT")
    _add_column_sqlite(cur, "cards", "dias_fechamento_antes INTEGER")
    _add_column_sqlite(cur, "categories", "tipo TEXT NOT NULL DEFAULT 'despesa'")
    _add_column_sqlite(cur, "categories", "parent_id INTEGER")
    _create_indexes(cur)


def _migrate_postgres(cur):
    cur.execute("ALTER TABLE expenses ADD COLUMN IF NOT EXISTS series_id TEXT")
    cur.execute("ALTER TABLE incomes ADD COLUMN IF NOT EXISTS series_id TEXT")
    cur.execute("ALTER TABLE cards ADD COLUMN IF NOT EXISTS dias_fechamento_antes INTEGER")
    cur.execute("ALTER TABLE categories ADD COLUMN IF NOT EXISTS tipo TEXT NOT NULL DEFAULT 'despesa'")
    cur.execute("ALTER TABLE categories ADD COLUMN IF NOT EXISTS parent_id BIGINT")
    _create_indexes(cur)


def _create_indexes(cur):
    # Names are unique per user and kind (despesa/receita).
    cur.execute("DROP INDEX IF EXISTS ux_categories_user_nome")
    cur.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS ux_categories_user_tipo_nome ON categories(user_id, tipo, nome)"
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_categories_parent ON categories(user_id, parent_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_cards_user ON cards(user_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_expenses_user_date ON expenses(user_id, data)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_expenses_series ON expenses(user_id, series_id)")
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_expenses_competencia "
        "ON expenses(user_id, card_id, competencia_ano, competencia_mes)"
    )
    cur.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS ux_invoice_payments_competencia "
        "ON card_invoices_payments(user_id, card_id, competencia_mes, competencia_ano)"
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_expense_history_expense ON expense_history(expense_id, user_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_incomes_user_date ON incomes(user_id, data)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_incomes_series ON incomes(user_id, series_id)")


def init_db() -> None:
    with get_conn() as conn:
        cur = conn.cursor()
        if conn.is_postgres:
            _postgres_schema(cur)
            _migrate_postgres(cur)
        else:
            _sqlite_schema(cur)
            _migrate_sqlite(cur)
