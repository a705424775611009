import argparse
import json
import mimetypes
import sys
from collections.abc import Sequence
from pathlib import Path

from app.config.settings import Settings
from app.database.connection import close_pool, init_pool
from app.database.schema import ensure_schema
from app.logging.logger import Log
from app.scheduler.exceptions import TaskRejectedError
from app.uploads.exceptions import InvalidInputError, StagingError
from app.uploads.models import UploadRecordView
from app.uploads.service import UploadService, build_upload_service


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="file-uploader",
        description="Upload files to the object store and poll their status.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    upload = commands.add_parser("upload", help="Upload a local file")
    upload.add_argument("path", type=Path)
    upload.add_argument("--key", required=True, help="Idempotency key")
    upload.add_argument("--content-type", default=None)
    upload.add_argument(
        "--wait",
        action="store_true",
        help="Block until the transfer finishes and print the final status",
    )

    status = commands.add_parser("status", help="Show an upload by id")
    status.add_argument("id")

    by_key = commands.add_parser("by-key", help="Show an upload by idempotency key")
    by_key.add_argument("key")

    commands.add_parser("list", help="List uploads, newest first")
    return parser.parse_args(argv)


def run_command(service: UploadService, args: argparse.Namespace) -> int:
    """Execute one CLI command against the service. Returns the exit code."""
    if args.command == "upload":
        return _upload(service, args)
    if args.command == "status":
        return _print_view(service.get_by_id(args.id))
    if args.command == "by-key":
        return _print_view(service.get_by_idempotency_key(args.key))
    if args.command == "list":
        print(json.dumps([view.to_dict() for view in service.list_all()], indent=2))
        return 0
    raise ValueError(f"Unknown command '{args.command}'")


def _upload(service: UploadService, args: argparse.Namespace) -> int:
    path: Path = args.path
    if not path.is_file():
        Log.error(f"File not found: {path}")
        return 1
    content_type = args.content_type or mimetypes.guess_type(path.name)[0]
    try:
        with path.open("rb") as payload:
            view = service.initiate_upload(
                payload,
                original_name=path.name,
                content_type=content_type,
                size_bytes=path.stat().st_size,
                idempotency_key=args.key,
            )
    except InvalidInputError as exc:
        Log.error(f"Upload rejected: {exc}")
        return 1
    except (StagingError, TaskRejectedError) as exc:
        Log.error(f"Upload could not be accepted: {exc}")
        return 1

    if args.wait:
        service.wait_for_transfer(view.id)
        return _print_view(service.get_by_id(view.id))
    return _print_view(view)


def _print_view(view: UploadRecordView | None) -> int:
    if view is None:
        Log.error("Upload not found")
        return 1
    print(json.dumps(view.to_dict(), indent=2))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point: initialize pool -> ensure schema -> build service -> run command."""
    args = parse_args(argv)
    settings = Settings()
    Log.configure(settings.log_level)
    init_pool(settings)

    try:
        ensure_schema()
        service = build_upload_service(settings)
        try:
            return run_command(service, args)
        finally:
            service.shutdown(timeout=settings.executor_shutdown_timeout_seconds)
    finally:
        close_pool()


if __name__ == "__main__":
    sys.exit(main())
