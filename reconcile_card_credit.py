import argparse
import logging

from dotenv import load_dotenv

from db import init_db
from ledger import reconcile
from utils import to_brl


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Recalcula o limite disponível dos cartões de crédito a partir das faturas não pagas."
    )
    parser.add_argument("--apply", action="store_true", help="Grava os valores recalculados no banco.")
    parser.add_argument("--user-id", type=int, default=None, help="Restringe a um usuário.")
    parser.add_argument("--card-id", type=int, default=None, help="Restringe a um cartão.")
    args = parser.parse_args(argv)

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    init_db()

    report = reconcile(user_id=args.user_id, card_id=args.card_id, apply=args.apply)
    mode = "APPLY" if args.apply else "DRY-RUN"
    drifted = [r for r in report if r["diferenca"] != 0]
    print(f"[{mode}] {len(report)} cartão(ões) analisado(s), {len(drifted)} com diferença:")
    for r in report:
        flag = "*" if r["diferenca"] != 0 else " "
        print(
            f"{flag} user={r['user_id']} card={r['card_id']} {r['nome']}: "
            f"gravado {to_brl(r['limite_disponivel'])} | derivado {to_brl(r['limite_derivado'])} "
            f"| diferença {to_brl(r['diferenca'])}"
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
