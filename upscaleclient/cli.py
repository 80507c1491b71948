from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from .archive import ArchiveStore
from .auth import (
    DEFAULT_PROXY_URL,
    AuthError,
    CredentialStore,
    ProxiedAuth,
    ProxyRequestError,
    resolve_auth_mode,
)
from .export import EXPORTERS, NothingToExportError
from .pages import PageStatus, ProcessedPage, load_inputs
from .processing import SUPPORTED_RESOLUTIONS, PageProcessor

logger = logging.getLogger("upscaler")

DEFAULT_HOME = "~/.page-upscaler"


def get_home() -> Path:
    return Path(os.environ.get("UPSCALER_HOME") or DEFAULT_HOME).expanduser()


def get_proxy_url() -> str:
    return (os.environ.get("UPSCALER_PROXY_URL") or DEFAULT_PROXY_URL).strip()


def parse_page_selection(raw: str, page_count: int) -> set[int]:
    selected: set[int] = set()
    for token in raw.split(","):
        token = token.strip()
        if not token:
            continue
        if "-" in token:
            start_raw, end_raw = token.split("-", 1)
            start, end = int(start_raw), int(end_raw)
            if start > end:
                start, end = end, start
            selected.update(range(start, end + 1))
        else:
            selected.add(int(token))
    return {index for index in selected if 1 <= index <= page_count}


def parse_formats(raw: str) -> list[str]:
    formats: list[str] = []
    for token in raw.split(","):
        name = token.strip().lower()
        if not name:
            continue
        if name not in EXPORTERS:
            raise argparse.ArgumentTypeError(f"Unknown export format: {name}")
        if name not in formats:
            formats.append(name)
    return formats


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Upscale PDF pages or images with Gemini and export the results.",
    )
    parser.add_argument("--proxy-url", default=get_proxy_url(), help="Base URL of the access-code proxy.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    login = subparsers.add_parser("login", help="Save an API key or verify and save an access code.")
    credential = login.add_mutually_exclusive_group(required=True)
    credential.add_argument("--api-key", default="", help="Your own Gemini API key (direct mode).")
    credential.add_argument("--access-code", default="", help="Server-issued access code (proxy mode).")

    subparsers.add_parser("logout", help="Forget saved credentials.")
    subparsers.add_parser("status", help="Show the active mode and cached quota.")

    run = subparsers.add_parser("run", help="Process a PDF or a set of images.")
    run.add_argument("inputs", nargs="+", type=Path, help="PDF file or image files.")
    run.add_argument("--resolution", choices=SUPPORTED_RESOLUTIONS, default="2K")
    run.add_argument("--formats", type=parse_formats, default=["pdf"], help="Comma-separated: pdf,pptx,zip.")
    run.add_argument("--pages", default="", help="Pages to process, e.g. 1,3-5. Default: all.")
    run.add_argument("--out", type=Path, default=Path("."), help="Output directory.")
    run.add_argument("--no-archive", action="store_true", help="Do not keep local copies of results.")

    archive = subparsers.add_parser("archive", help="Inspect or clean the local archive.")
    archive.add_argument("action", choices=("list", "prune", "clear"))
    return parser.parse_args(argv)


def command_login(args: argparse.Namespace, store: CredentialStore) -> int:
    if args.api_key:
        store.save_api_key(args.api_key.strip())
        print("[ok] API key saved (direct mode).")
        return 0

    code = args.access_code.strip()
    try:
        valid, quota, error = ProxiedAuth(code, base_url=args.proxy_url).verify()
    except ProxyRequestError as exc:
        print(f"[error] {exc}")
        return 1
    if not valid:
        print(f"[error] {error or 'Invalid access code'}")
        return 1
    store.save_access_code(code, quota)
    remaining = f" remaining={quota.remaining}/{quota.total}" if quota else ""
    print(f"[ok] Access code saved (proxy mode).{remaining}")
    return 0


def command_status(store: CredentialStore) -> int:
    if store.access_code:
        quota = store.quota
        detail = f" remaining={quota.remaining}/{quota.total}" if quota else ""
        print(f"[mode] proxy{detail}")
    elif store.api_key:
        print("[mode] direct")
    else:
        print("[mode] none")
    return 0


def print_page(page: ProcessedPage) -> None:
    print(f"[page {page.page_index}] {page.status.value}")


def command_run(args: argparse.Namespace, store: CredentialStore, archive: ArchiveStore) -> int:
    try:
        auth = resolve_auth_mode(store, proxy_url=args.proxy_url)
    except AuthError as exc:
        print(f"[error] {exc}")
        return 2

    archive.prune()
    pages = load_inputs(args.inputs)
    if not pages:
        print("[error] No pages found in inputs.")
        return 2
    if args.pages:
        chosen = parse_page_selection(args.pages, len(pages))
        for page in pages:
            page.selected = page.page_index in chosen

    processor = PageProcessor(auth, on_page_update=print_page, on_quota_update=store.save_quota)

    def handle_interrupt(signum, frame):
        if processor.stopping:
            raise KeyboardInterrupt
        print("[stopping] Finishing the current page, press Ctrl+C again to abort.")
        processor.stop()

    previous_handler = signal.signal(signal.SIGINT, handle_interrupt)
    try:
        summary = processor.run(pages, resolution=args.resolution)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if not args.no_archive:
        for page in pages:
            if page.status == PageStatus.COMPLETED and page.processed_image:
                archive.save(
                    page.processed_image,
                    page.width,
                    page.height,
                    source_name=page.source_name,
                    thumbnail_source=page.original_png,
                )

    args.out.mkdir(parents=True, exist_ok=True)
    for name in args.formats:
        try:
            path = EXPORTERS[name](pages, args.out)
        except NothingToExportError as exc:
            print(f"[skip] {name}: {exc}")
            continue
        print(f"[export] {path}")

    quota = f" remaining={summary.quota.remaining}/{summary.quota.total}" if summary.quota else ""
    print(
        f"[summary] completed={summary.completed} failed={summary.failed} "
        f"stopped={str(summary.stopped).lower()}{quota}"
    )
    if summary.show_completion:
        print("[done] All selected pages processed.")
    return 0 if summary.failed == 0 else 1


def command_archive(action: str, archive: ArchiveStore) -> int:
    if action == "prune":
        print(f"[archive] pruned={archive.prune()}")
    elif action == "clear":
        archive.clear()
        print("[archive] cleared")
    else:
        for entry in archive.list_images():
            print(f"{entry.id}\t{entry.width}x{entry.height}\t{entry.size}\t{entry.source_name or '-'}")
        print(f"[archive] count={archive.count()}")
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(level=os.environ.get("UPSCALER_LOG_LEVEL", "WARNING"))
    args = parse_args(argv)
    home = get_home()
    store = CredentialStore(home / "credentials.json")

    if args.command == "login":
        return command_login(args, store)
    if args.command == "logout":
        store.clear()
        print("[ok] Credentials cleared.")
        return 0
    if args.command == "status":
        return command_status(store)

    archive = ArchiveStore(home / "archive")
    if args.command == "archive":
        return command_archive(args.action, archive)
    return command_run(args, store, archive)


if __name__ == "__main__":
    sys.exit(main())
