import argparse
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from dualdb.db.executor import BatchResult
from dualdb.errors import DualDbError
from dualdb.utils.settings import get_home, load_profiles, load_settings, profile_descriptor
from dualdb.workspace import Workspace

logger = logging.getLogger(__name__)

_LOG_FORMAT = '%(asctime)s %(levelname)-8s %(name)-20s: %(message)s'


def configure_logging(level: str = "INFO", log_dir: Optional[Path] = None) -> Optional[Path]:
    """Set up console logging and a rotating file under $DUALDB_HOME/logs.

    Returns the log file path, or None when only console logging could be set up.
    """
    numeric = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(level=numeric, format=_LOG_FORMAT, force=True)

    log_dir = log_dir or get_home() / 'logs'
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / 'dualdb.log'
        handler = RotatingFileHandler(str(log_file), maxBytes=5 * 1024 * 1024, backupCount=3, encoding='utf-8')
        handler.setLevel(numeric)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        logging.getLogger().addHandler(handler)
    except OSError:
        # continue with console logging only
        logger.exception('Failed to configure file logger')
        return None
    logger.debug("File logging configured: %s", log_file)
    return log_file


def _print_result(result: BatchResult, out=None) -> None:
    out = out or sys.stdout
    for res in result.statements:
        head = f"[{res.index + 1}] {res.statement.splitlines()[0][:60]}"
        if not res.success:
            print(f"{head}\n    ERROR: {res.error_message}", file=out)
            continue
        if res.returns_rows:
            print(f"{head}\n    {' | '.join(res.columns)}", file=out)
            for row in res.rows:
                print("    " + " | ".join("NULL" if v is None else str(v) for v in row), file=out)
            more = " (truncated)" if res.truncated else ""
            print(f"    {res.rows_affected} row(s){more} in {res.elapsed:.3f}s", file=out)
        else:
            print(f"{head}\n    {res.rows_affected} row(s) affected in {res.elapsed:.3f}s", file=out)
    for warning in result.warnings:
        print(f"WARNING: {warning}", file=out)
    if result.transaction_open:
        print("NOTE: a transaction is still open", file=out)
    if result.error is not None:
        print(f"Batch {result.final_state.value}: {result.error}", file=out)
    else:
        print(f"Batch {result.final_state.value} in {result.total_elapsed:.3f}s", file=out)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dualdb", description="Run SQL against a SQLite file or a PostgreSQL server.")
    parser.add_argument("database", nargs="?", help="SQLite file path or connection URL")
    parser.add_argument("--profile", help="name of a saved connection profile")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("-f", "--file", type=Path, help="script file to execute")
    source.add_argument("-e", "--execute", metavar="SQL", help="script text to execute")
    parser.add_argument("--atomic", action="store_true", help="run the whole script in one transaction")
    parser.add_argument("--schema", action="store_true", help="print the formatted schema context")
    parser.add_argument("--tables", action="store_true", help="list tables with their level in the relationship graph")
    parser.add_argument("--save", action="store_true", help="write changes back to the SQLite file")
    parser.add_argument("--log-level", help="override the configured log level")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if bool(args.database) == bool(args.profile):
        parser.error("give either a database or --profile")
    settings = load_settings()
    configure_logging(args.log_level or settings["log_level"])

    if args.profile:
        profiles = load_profiles()
        if args.profile not in profiles:
            print(f"No such profile: {args.profile}", file=sys.stderr)
            return 2
        descriptor = profile_descriptor(profiles[args.profile])
    else:
        descriptor = args.database

    script = None
    if args.file is not None:
        script = args.file.read_text(encoding="utf-8")
    elif args.execute is not None:
        script = args.execute

    status = 0
    with Workspace(settings) as ws:
        try:
            ws.open_connection(descriptor)
            print(f"Connected to {ws.database_name} ({ws.table_count} tables)")
            if script is not None:
                result = ws.execute_batch(script, atomic=args.atomic)
                _print_result(result)
                status = 0 if result.overall_success else 1
            if args.tables:
                graph = ws.schema_graph()
                for name, level in sorted(graph["levels"].items(), key=lambda kv: (kv[1], kv[0])):
                    print(f"{level}  {name}")
                stats = graph["stats"]
                print(f"{stats.tables} tables, {stats.columns} columns, "
                      f"{stats.relationships} relationships, {stats.indexes} indexes")
            if args.schema:
                print(ws.get_formatted_schema_context())
            if args.save:
                if ws.save():
                    print(f"Saved {ws.database_name}")
                else:
                    print("No database changes to save")
        except DualDbError as exc:
            logger.debug("Command failed", exc_info=True)
            print(f"Error: {exc}", file=sys.stderr)
            return 1
    return status


if __name__ == '__main__':
    sys.exit(main())
