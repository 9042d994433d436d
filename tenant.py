from contextvars import ContextVar

_current_user_id: ContextVar[int | None] = ContextVar("current_user_id", default=None)


def set_current_user_id(user_id: int) -> None:
    _current_user_id.set(int(user_id))


def clear_current_user_id() -> None:
    _current_user_id.set(None)


def get_current_user_id(required: bool = True) -> int | None:
    uid = _current_user_id.get()
    if uid is None and required:
        raise RuntimeError("Usuário não identificado no contexto da requisição.")
    return uid


def resolve_user_id(user_id: int | None = None) -> int:
    return int(user_id) if user_id is not None else int(get_current_user_id())
