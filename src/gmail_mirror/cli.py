"""Command-line entry point for Gmail Mirror."""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

import uvicorn

from gmail_mirror.core import (
    AppSettings,
    GmailMirrorError,
    configure_logging,
    load_app_settings,
)
from gmail_mirror.ingestion import sync_all_accounts, sync_messages_for_user
from gmail_mirror.storage import S3BlobStore, SqliteMailRepository
from gmail_mirror.transport.gmail_client import gmail_client_factory
from gmail_mirror.web import create_app


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="Gmail Mirror sync service")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="info",
        choices=["info", "sync", "serve"],
        help="Operation to execute.",
    )
    parser.add_argument(
        "--user-id",
        dest="user_id",
        default=None,
        help="Sync only this user's account (default: every linked account).",
    )
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return an exit code."""
    command = args.command
    if command == "info":
        print("Gmail Mirror is ready. Link a Google account to get started.")
        print(f"Database path: {settings.storage.db_path}")
        print(f"Blob bucket: {settings.blob.bucket or '(not configured)'}")
        return 0
    if command == "sync":
        return _run_sync(settings, user_id=args.user_id)
    if command == "serve":
        uvicorn.run(
            create_app(settings),
            host=settings.web.host,
            port=settings.web.port,
            log_config=None,
        )
    return 0


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    raise SystemExit(execute(args, settings))


def _run_sync(settings: AppSettings, *, user_id: str | None) -> int:
    """Run a synchronization cycle and report the outcome."""
    client_factory = gmail_client_factory(settings.google, settings.sync)
    try:
        blob_store = S3BlobStore(settings.blob)
        with SqliteMailRepository(settings.storage) as repository:
            if user_id is None:
                total = asyncio.run(
                    sync_all_accounts(
                        repository=repository,
                        blob_store=blob_store,
                        client_factory=client_factory,
                        on_cursor_expired=settings.sync.on_cursor_expired,
                    )
                )
                print(f"Synced {total} message(s) across all accounts.")
                return 0
            result = asyncio.run(
                sync_messages_for_user(
                    user_id,
                    repository=repository,
                    blob_store=blob_store,
                    client_factory=client_factory,
                    on_cursor_expired=settings.sync.on_cursor_expired,
                )
            )
    except GmailMirrorError as exc:
        print(f"Sync failed: {exc}")
        return 1

    print(
        f"{result.mode.value.capitalize()} sync: {len(result.added)} added, "
        f"{len(result.removed)} removed. Cursor stored: {result.cursor}"
    )
    return 0


if __name__ == "__main__":
    main()
