"""
Command-line entry point: sa2pg discover|plan|migrate|translate|status
"""

import argparse
import json
import logging
import signal
import sys
import textwrap
from pathlib import Path
from typing import List, Optional

import structlog

from .config import Settings, apply_migration_overrides, load_settings
from .errors import MigrationCancelled, MigrationError
from .ledger import MigrationLedger
from .models import CancelToken, SchemaSnapshot
from .pipeline import MigrationPipeline
from .translator import ProcedureTranslator, descriptor_from_source, render_script
from .type_mapper import TypeMapper

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130


def configure_logging(level: str = "INFO", json_logs: bool = False):
    """Console rendering for operators, JSON lines for log shipping"""
    processors = [
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


def _snapshot_summary(snapshot: SchemaSnapshot) -> dict:
    return {
        "tables": [
            {
                "name": table.name,
                "rows": table.row_count,
                "primary_key": list(table.primary_key),
                "columns": [
                    {"name": col.name, "type": col.source_type, "width": col.width,
                     "scale": col.scale, "nullable": col.nullable}
                    for col in table.columns
                ],
            }
            for table in snapshot.tables
        ],
        "foreign_keys": [
            {"name": edge.name, "child": edge.child_table, "parent": edge.parent_table,
             "child_columns": list(edge.child_columns), "parent_columns": list(edge.parent_columns)}
            for edge in snapshot.foreign_keys
        ],
        "procedures": [
            {"name": proc.name, "behavior": proc.behavior.value} for proc in snapshot.procedures
        ],
    }


def cmd_discover(args, token: CancelToken) -> int:
    pipeline = MigrationPipeline(load_settings(args.config), cancel_token=token)
    with pipeline.source:
        snapshot = pipeline.discover()
    _print_json(_snapshot_summary(snapshot))
    return EXIT_OK


def cmd_plan(args, token: CancelToken) -> int:
    pipeline = MigrationPipeline(load_settings(args.config), cancel_token=token)
    with pipeline.source:
        _, plan = pipeline.plan()
    _print_json(plan.to_dict())
    return EXIT_OK


def cmd_migrate(args, token: CancelToken) -> int:
    settings = apply_migration_overrides(
        load_settings(args.config), batch_size=args.batch_size, workers=args.workers
    )

    report = MigrationPipeline(settings, cancel_token=token).run()
    _print_json({
        "complete": report.complete,
        "started_at": report.started_at,
        "finished_at": report.finished_at,
        "tables": {
            name: {"rows": result.rows_committed, "resumed_from": result.resumed_from}
            for name, result in report.move_results.items()
        },
        "procedures": [
            {"name": item.name, "function": item.target_name, "behavior": item.behavior.value}
            for item in report.procedures
        ],
    })
    return EXIT_OK


def _sql_files(source_path: Path) -> List[Path]:
    if source_path.is_dir():
        return sorted(source_path.rglob("*.sql"))
    return [source_path]


def cmd_translate(args, token: CancelToken) -> int:
    """Offline translation of CREATE PROCEDURE files; nothing is deployed"""
    overrides, schema, owner = {}, "public", args.owner
    if args.config:
        settings: Settings = load_settings(args.config)
        overrides = settings.migration.type_overrides
        schema = settings.target.schema_name
        owner = owner or settings.source.owner

    source_path = Path(args.source_path)
    if not source_path.exists():
        raise MigrationError(f"Source path not found: {source_path}")

    translator = ProcedureTranslator(TypeMapper(overrides), schema=schema)
    translated = []
    for sql_file in _sql_files(source_path):
        token.raise_if_cancelled("translation")
        descriptor = descriptor_from_source(sql_file.read_text(encoding="utf-8"), owner=owner or "DBA")
        translated.append(translator.translate(descriptor))

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    script = output_dir / "procedures.sql"
    script.write_text(render_script(translated), encoding="utf-8")

    _print_json({
        "script": str(script),
        "procedures": [
            {"name": item.name, "behavior": item.behavior.value, "manual_review": item.manual_review}
            for item in translated
        ],
    })
    return EXIT_OK


def cmd_status(args, token: CancelToken) -> int:
    ledger_dir = args.ledger_dir
    if ledger_dir is None:
        ledger_dir = load_settings(args.config).migration.ledger_dir if args.config else "./migration_ledger"
    _print_json(MigrationLedger(ledger_dir).summary())
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sa2pg",
        description="Migrate a SQL Anywhere database (schema, rows, stored procedures) to PostgreSQL.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              sa2pg discover --config params.env
              sa2pg plan --config params.env
              sa2pg migrate --config params.env --workers 8
              sa2pg translate --source-path ./procs --output-dir ./out
              sa2pg status --config params.env
        """),
    )
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines")

    commands = parser.add_subparsers(dest="command", required=True)

    discover = commands.add_parser("discover", help="Print the source schema")
    discover.add_argument("--config", required=True, help="Parameter file (KEY=value)")
    discover.set_defaults(handler=cmd_discover)

    plan = commands.add_parser("plan", help="Print the phased migration plan")
    plan.add_argument("--config", required=True, help="Parameter file (KEY=value)")
    plan.set_defaults(handler=cmd_plan)

    migrate = commands.add_parser("migrate", help="Run the migration")
    migrate.add_argument("--config", required=True, help="Parameter file (KEY=value)")
    migrate.add_argument("--batch-size", type=int, default=None, help="Override SA2PG_BATCH_SIZE")
    migrate.add_argument("--workers", type=int, default=None, help="Override SA2PG_WORKERS")
    migrate.set_defaults(handler=cmd_migrate)

    translate = commands.add_parser("translate", help="Translate procedure files without a database")
    translate.add_argument("--source-path", required=True, help=".sql file or directory of .sql files")
    translate.add_argument("--output-dir", required=True, help="Directory for procedures.sql")
    translate.add_argument("--config", default=None, help="Parameter file for type overrides and schema")
    translate.add_argument("--owner", default=None, help="Owner recorded for procedures without one")
    translate.set_defaults(handler=cmd_translate)

    status = commands.add_parser("status", help="Summarize the migration ledger")
    status.add_argument("--config", default=None, help="Parameter file naming the ledger directory")
    status.add_argument("--ledger-dir", default=None, help="Ledger directory")
    status.set_defaults(handler=cmd_status)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.json_logs)

    token = CancelToken()

    def _request_cancel(signum, frame):
        if token.cancelled:
            raise KeyboardInterrupt
        logger.warning("Cancellation requested; stopping after the current batch")
        token.cancel()

    previous = signal.signal(signal.SIGINT, _request_cancel)
    try:
        return args.handler(args, token)
    except (MigrationCancelled, KeyboardInterrupt) as e:
        logger.warning("Migration cancelled", reason=str(e))
        return EXIT_CANCELLED
    except MigrationError as e:
        logger.error("Command failed", command=args.command, error_type=type(e).__name__, error=str(e))
        return EXIT_ERROR
    finally:
        signal.signal(signal.SIGINT, previous)


if __name__ == "__main__":
    sys.exit(main())
