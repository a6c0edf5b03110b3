"""Command-line entry points: ``python -m cv_intake <command>``."""

from __future__ import annotations

import argparse
import json
import logging
from typing import Any, Callable, Optional, Sequence

import psycopg
from dotenv import load_dotenv
from pydantic import ValidationError

from .cost_guard import format_cost
from .db.connection import connect
from .db.migrate import apply_schema
from .errors import IntakeError
from .models import BatchStatus
from .settings import Settings, get_settings
from .utils.log import configure_logging
from .wiring import Runtime, build_dependencies, build_usage_guard

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_BATCH_FAILED = 1
EXIT_FATAL = 2

RuntimeFactory = Callable[[Settings], Runtime]


def _emit(payload: dict[str, Any], as_json: bool, lines: Sequence[str]) -> None:
    if as_json:
        print(json.dumps(payload, indent=2, sort_keys=True, default=str))
        return
    for line in lines:
        print(line)


def _cmd_run_batch(args: argparse.Namespace, settings: Settings, factory: RuntimeFactory) -> int:
    if args.fail_fast:
        settings = settings.model_copy(update={"continue_on_error": False})
    runtime = factory(settings)
    try:
        result = runtime.orchestrator().run(args.batch_id, args.client_id)
    finally:
        runtime.close()

    stats = result.stats
    lines = [
        f"[run-batch] batch={result.batch_id} status={result.status.value}"
        + (f" skipped ({result.reason})" if result.skipped else ""),
        f"[run-batch] files={stats.total} skipped={stats.skipped} failed={stats.failed} "
        f"rejected={stats.rejected_by_classification + stats.rejected_by_filters} "
        f"packs={stats.packs} held={stats.held_for_review} candidates={stats.candidates_created} "
        f"sync_failed={stats.sync_failed}",
    ]
    if result.reason and not result.skipped:
        lines.append(f"[run-batch] reason: {result.reason}")
    if result.cost:
        lines.append(f"[run-batch] cost={format_cost(result.cost.get('cost_usd', 0.0))} calls={result.cost.get('calls', 0)}")
    _emit(result.as_dict(), args.json, lines)
    return EXIT_BATCH_FAILED if result.status is BatchStatus.FAILED and not result.skipped else EXIT_OK


def _cmd_process_hold(args: argparse.Namespace, settings: Settings, factory: RuntimeFactory) -> int:
    runtime = factory(settings)
    try:
        result = runtime.hold_processor().process(args.hold_id)
    finally:
        runtime.close()

    if result.processed:
        line = (
            f"[process-hold] hold={result.hold_id} candidate={result.candidate_id} "
            f"contact={result.contact_id or '-'} updated_existing={result.updated_existing} "
            f"sync_failed={result.sync_failed}"
        )
    else:
        line = f"[process-hold] hold={result.hold_id} not processed: {result.reason}"
    _emit(result.as_dict(), args.json, [line])
    return EXIT_OK if result.processed else EXIT_BATCH_FAILED


def _cmd_usage(args: argparse.Namespace, settings: Settings, factory: RuntimeFactory) -> int:
    conn = connect(settings)
    try:
        guard = build_usage_guard(settings, conn)
        usage = guard.today_usage()
        payload: dict[str, Any] = {"today": usage.as_dict()}
        lines = [
            f"[usage] {usage.usage_date.isoformat()} calls={usage.calls}/{guard.limits.daily_call_ceiling} "
            f"cost={format_cost(usage.cost)}/{format_cost(guard.limits.daily_cost_ceiling)} "
            f"level={usage.warning_level}"
        ]
        if args.batch_id:
            summary = guard.batch_summary(args.batch_id)
            payload["batch"] = summary.as_dict()
            lines.append(f"[usage] batch={args.batch_id} calls={summary.calls} cost={format_cost(summary.cost)}")
            for operation, bucket in sorted(summary.by_operation.items()):
                lines.append(f"  - {operation}: calls={int(bucket['calls'])} cost={format_cost(bucket['cost_usd'])}")
    finally:
        conn.close()
    _emit(payload, args.json, lines)
    return EXIT_OK


def _cmd_migrate(args: argparse.Namespace, settings: Settings, factory: RuntimeFactory) -> int:
    conn = connect(settings)
    try:
        apply_schema(conn)
    finally:
        conn.close()
    _emit({"migrated": True}, args.json, ["[migrate] schema applied"])
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--json", action="store_true", help="Print the result as JSON.")
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    parser = argparse.ArgumentParser(prog="cv_intake", description="Candidate document batch intake.")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run-batch", parents=[common], help="Process one uploaded batch.")
    run.add_argument("--batch-id", required=True)
    run.add_argument("--client-id", required=True)
    run.add_argument(
        "--fail-fast",
        action="store_true",
        help="Fail the whole batch on the first unexpected file or pack error.",
    )
    run.set_defaults(handler=_cmd_run_batch)

    hold = sub.add_parser("process-hold", parents=[common], help="Process one reviewed hold-queue entry.")
    hold.add_argument("--hold-id", required=True)
    hold.set_defaults(handler=_cmd_process_hold)

    usage = sub.add_parser("usage", parents=[common], help="Show today's API usage.")
    usage.add_argument("--batch-id", help="Also summarize usage for this batch.")
    usage.set_defaults(handler=_cmd_usage)

    migrate = sub.add_parser("migrate", parents=[common], help="Apply the database schema.")
    migrate.set_defaults(handler=_cmd_migrate)
    return parser


def main(argv: Optional[Sequence[str]] = None, *, factory: RuntimeFactory = build_dependencies) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()
    try:
        settings = get_settings()
    except ValidationError as exc:
        configure_logging(args.verbose)
        logger.error("[cli] invalid settings: %s", exc)
        return EXIT_FATAL
    configure_logging(args.verbose, level=settings.log_level, max_length=settings.max_log_length)
    try:
        return args.handler(args, settings, factory)
    except (IntakeError, psycopg.Error) as exc:
        logger.error("[cli] %s failed: %s", args.command, exc)
        return EXIT_FATAL
    except Exception:
        logger.exception("[cli] %s crashed", args.command)
        return EXIT_FATAL


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
