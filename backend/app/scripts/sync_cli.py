from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from backend.app.integrations.base import SyncConfigError
from backend.app.services import sync_service
from backend.app.services.sync_service import IngestTarget


logger = logging.getLogger(__name__)


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _ingest_target(args: argparse.Namespace) -> Optional[IngestTarget]:
    if bool(args.tenant) != bool(args.workspace):
        raise SyncConfigError("--tenant and --workspace must be given together")
    if not args.tenant:
        return None
    return IngestTarget(tenant=args.tenant, workspace=args.workspace)


def _cmd_sync_run(args: argparse.Namespace) -> int:
    target = _ingest_target(args)
    if target is None:
        stats = sync_service.run_cycle(args.connector, full_sync=args.full, out_dir=args.out)
    else:
        from backend.app.db import init_db, session_scope

        init_db()
        with session_scope() as db:
            stats = sync_service.run_cycle(
                args.connector, full_sync=args.full, out_dir=args.out, ingest=target, db=db
            )
    _print_json(stats.to_dict())
    return 0


def _cmd_sync_status(args: argparse.Namespace) -> int:
    _print_json([status.to_dict() for status in sync_service.get_sync_status(args.connector)])
    return 0


def _cmd_sync_list(args: argparse.Namespace) -> int:
    _ = args
    for name in sync_service.list_connectors():
        print(name)
    return 0


def _cmd_sync_start(args: argparse.Namespace) -> int:
    from backend.app.services.sync_worker import SyncWorker

    target = _ingest_target(args)
    session_factory = None
    if target is not None:
        from backend.app.db import SessionLocal, init_db

        init_db()
        session_factory = SessionLocal

    def on_cycle(stats) -> None:
        _print_json(stats.to_dict())

    def on_error(error) -> None:
        if isinstance(error, sync_service.SyncStats):
            logger.error("sync cycle failed: %s", error.error)
        else:
            logger.error("sync worker stopped: %s", error)

    worker = SyncWorker(
        args.connector,
        interval_seconds=args.interval,
        full_sync=args.full,
        out_dir=args.out,
        ingest=target,
        session_factory=session_factory,
        on_cycle=on_cycle,
        on_error=on_error,
    ).start()
    try:
        while worker.is_running():
            worker.join(1.0)
    except KeyboardInterrupt:
        logger.info("stopping sync worker")
        worker.stop()
    return 0


def _cmd_ingest(args: argparse.Namespace) -> int:
    from backend.app.db import init_db, session_scope
    from backend.app.services import ingest_service

    init_db()
    with session_scope() as db:
        stats = ingest_service.ingest_export_dir(
            db,
            tenant=args.tenant,
            workspace=args.workspace,
            provider=args.provider,
            directory=Path(args.directory),
        )
        db.commit()
    _print_json(stats.as_dict())
    return 0


def _cmd_push(args: argparse.Namespace) -> int:
    from backend.app.db import init_db, session_scope
    from backend.app.services import outbound_service

    init_db()
    with session_scope() as db:
        try:
            result = outbound_service.push_outbound_for(
                db, tenant=args.tenant, workspace=args.workspace, provider=args.provider
            )
        except outbound_service.WorkspaceNotFoundError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
    _print_json(result.to_dict())
    return 1 if result.failed else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="helpdesk-sync", description="Helpdesk export, ingestion and outbound sync.")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default INFO).")
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Connector sync cycles.")
    sync_commands = sync.add_subparsers(dest="sync_command", required=True)

    run = sync_commands.add_parser("run", help="Run one sync cycle.")
    run.add_argument("connector")
    run.add_argument("--full", action="store_true", help="Ignore the stored cursor.")
    run.add_argument("--out", type=Path, help="Staging directory (default <SYNC_EXPORT_ROOT>/<connector>).")
    run.add_argument("--tenant", help="Ingest into this tenant (requires --workspace).")
    run.add_argument("--workspace", help="Ingest into this workspace (requires --tenant).")
    run.set_defaults(func=_cmd_sync_run)

    status = sync_commands.add_parser("status", help="Show the last manifest per connector.")
    status.add_argument("connector", nargs="?")
    status.set_defaults(func=_cmd_sync_status)

    listing = sync_commands.add_parser("list", help="List registered connectors.")
    listing.set_defaults(func=_cmd_sync_list)

    start = sync_commands.add_parser("start", help="Run sync cycles on an interval until interrupted.")
    start.add_argument("connector")
    start.add_argument("--interval", type=float, default=300.0, help="Seconds between cycles (default 300).")
    start.add_argument("--full", action="store_true")
    start.add_argument("--out", type=Path)
    start.add_argument("--tenant")
    start.add_argument("--workspace")
    start.set_defaults(func=_cmd_sync_start)

    ingest = commands.add_parser("ingest", help="Ingest a staged export directory.")
    ingest.add_argument("directory")
    ingest.add_argument("--provider", required=True)
    ingest.add_argument("--tenant", required=True)
    ingest.add_argument("--workspace", required=True)
    ingest.set_defaults(func=_cmd_ingest)

    push = commands.add_parser("push", help="Push changed tickets back to the origin.")
    push.add_argument("--provider", required=True)
    push.add_argument("--tenant", required=True)
    push.add_argument("--workspace", required=True)
    push.set_defaults(func=_cmd_push)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.func(args)
    except SyncConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
