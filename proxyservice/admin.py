from __future__ import annotations

import argparse
import secrets
import sys

from .config import ServiceConfig
from .errors import QuotaStoreError
from .quota_store import QuotaStore, build_redis_client, mask_code

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
DEFAULT_CODE_LENGTH = 10


def generate_code(length: int = DEFAULT_CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Issue, inspect and disable proxy access codes.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    issue = subparsers.add_parser("issue", help="Create access codes with a fresh quota.")
    issue.add_argument("--total", type=int, required=True, help="Generations allowed per code.")
    issue.add_argument("--count", type=int, default=1, help="Number of codes to create (default: 1).")
    issue.add_argument("--code", default="", help="Use this code instead of a random one (only with --count 1).")
    issue.add_argument("--length", type=int, default=DEFAULT_CODE_LENGTH, help="Random code length.")

    show = subparsers.add_parser("show", help="Print the quota record of a code.")
    show.add_argument("code")

    disable = subparsers.add_parser("disable", help="Disable a code without deleting it.")
    disable.add_argument("code")

    enable = subparsers.add_parser("enable", help="Re-enable a disabled code.")
    enable.add_argument("code")
    return parser.parse_args(argv)


def run(args: argparse.Namespace, store: QuotaStore) -> int:
    if args.command == "issue":
        if args.total <= 0:
            print("[error] --total must be positive.")
            return 2
        if args.code and args.count != 1:
            print("[error] --code can only be used with --count 1.")
            return 2
        for _ in range(max(1, args.count)):
            code = args.code or generate_code(max(4, args.length))
            if store.get_record(code) is not None:
                print(f"[skip] {code} already exists")
                continue
            record = store.create_record(code, args.total)
            print(f"[issued] {record.code} total={record.total}")
        return 0

    if args.command == "show":
        record = store.get_record(args.code)
        if record is None:
            print(f"[error] {mask_code(args.code)} not found")
            return 1
        print(
            f"[record] code={record.code} total={record.total} "
            f"remaining={record.remaining} valid={str(record.valid).lower()}"
        )
        return 0

    valid = args.command == "enable"
    if not store.set_valid(args.code, valid):
        print(f"[error] {mask_code(args.code)} not found")
        return 1
    print(f"[{args.command}d] {args.code}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    store = QuotaStore(build_redis_client(ServiceConfig.from_env()))
    try:
        return run(args, store)
    except QuotaStoreError as exc:
        print(f"[error] {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
