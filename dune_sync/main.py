# dune_sync/main.py
"""CLI for dune-sync.

Subcommands:
    plan         read-only preview of what apply would do
    apply        converge Dune to the declarations file
    verify       drift-check declared materialized views
    destroy      delete declared views, then archive declared queries
    refresh      trigger a refresh of one materialized view
    import       adopt an existing query id under a key
    forget       drop a key from the state file (remote untouched)
    list-views   list materialized views visible to the API key
    usage        credits, executions and storage for a date window
    datasets     list datasets visible to the API key
    dataset      show one dataset's columns
    state        list records of the state file (no remote calls)
"""
from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from .core.config import Settings
from .core.declarations import load_declarations
from .core.dune_client import ClientOptions, DuneClient
from .core.errors import ConfigurationError, CredentialError, RemoteError, RemoteTransportError
from .core.logging_utils import get_logger, setup_logging
from .core.models import DeclarationSet, Outcome
from .core.state import StateStore
from .engine.reconciler import PassReport, Reconciler
from .utils.reporting import print_rows

EXIT_OK = 0
EXIT_GENERIC_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_CREDENTIAL_ERROR = 3
EXIT_NETWORK_ERROR = 4
EXIT_PARTIAL_FAILURE = 5

log = get_logger(__name__)


def _prepare_context(args) -> Reconciler:
    """Resolve settings (CLI flags win over the environment) and build the reconciler."""
    settings = Settings.from_env().with_overrides(
        declarations_file=args.file,
        state_file=args.state,
        team=args.team,
        workers=args.workers,
    )
    args.settings = settings
    client = DuneClient(
        settings.api_url,
        settings.api_key,
        options=ClientOptions(
            verify=not args.no_verify,
            timeout_sec=settings.timeout_sec,
            retries=settings.retries,
        ),
    )
    return Reconciler(
        client,
        StateStore(settings.state_file),
        team=settings.team,
        namespace=settings.namespace,
        workers=settings.workers,
    )


def _declarations(args) -> DeclarationSet:
    return load_declarations(args.settings.declarations_file)


def _report(report: PassReport, args) -> int:
    print_rows(report.rows(), args.format, summary=report.summary())
    if report.any_failed:
        log.error("%d key(s) failed during %s", len(report.failures), report.action)
        return EXIT_PARTIAL_FAILURE
    return EXIT_OK


# ----------------------------- Command handlers -----------------------------

def cmd_plan(args) -> int:
    reconciler = _prepare_context(args)
    return _report(reconciler.plan(_declarations(args)), args)


def cmd_apply(args) -> int:
    reconciler = _prepare_context(args)
    return _report(reconciler.apply(_declarations(args)), args)


def cmd_verify(args) -> int:
    reconciler = _prepare_context(args)
    report = reconciler.verify(_declarations(args))
    code = _report(report, args)
    out_of_sync = [r for r in report.results if r.outcome in (Outcome.DRIFTED, Outcome.MISSING)]
    if out_of_sync:
        log.warning("%d materialized view(s) out of sync", len(out_of_sync))
        return EXIT_PARTIAL_FAILURE
    return code


def cmd_destroy(args) -> int:
    reconciler = _prepare_context(args)
    return _report(reconciler.destroy(_declarations(args)), args)


def cmd_refresh(args) -> int:
    reconciler = _prepare_context(args)
    decls = None
    if args.settings.declarations_file.is_file():
        decls = _declarations(args)
    result = reconciler.refresh(args.view, decls)
    print_rows([result.to_row()], args.format)
    return EXIT_OK


def cmd_import(args) -> int:
    reconciler = _prepare_context(args)
    result = reconciler.import_query(args.key, args.query_id)
    print_rows([result.to_row()], args.format)
    return EXIT_OK


def cmd_forget(args) -> int:
    reconciler = _prepare_context(args)
    rec = reconciler.forget(args.key)
    print_rows([{"kind": rec.kind, "key": args.key, "outcome": "forgotten", "remote_id": rec.remote_id,
                 "full_name": rec.full_name}], args.format)
    return EXIT_OK


def cmd_list_views(args) -> int:
    reconciler = _prepare_context(args)
    print_rows(reconciler.list_views(), args.format)
    return EXIT_OK


def cmd_usage(args) -> int:
    reconciler = _prepare_context(args)
    record = reconciler.usage(args.start_date, args.end_date)
    print_rows([record.to_row()], args.format)
    return EXIT_OK


def cmd_datasets(args) -> int:
    reconciler = _prepare_context(args)
    records, next_offset = reconciler.list_datasets(owner=args.owner, limit=args.limit, offset=args.offset)
    summary = {"count": len(records)}
    if next_offset:
        summary["next_offset"] = next_offset
    print_rows([r.to_row() for r in records], args.format, summary=summary)
    return EXIT_OK


def cmd_dataset(args) -> int:
    reconciler = _prepare_context(args)
    print_rows([reconciler.get_dataset(args.name).to_row()], args.format)
    return EXIT_OK


def cmd_state(args) -> int:
    reconciler = _prepare_context(args)
    print_rows(reconciler.state_rows(), args.format)
    return EXIT_OK


# ---------------------------- Argument parser -------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dune-sync", description="Declarative sync of Dune queries and materialized views")
    parser.add_argument("--file", help="Declarations YAML (default: $DUNE_SYNC_FILE or ./dune.yml)")
    parser.add_argument("--state", help="State file (default: $DUNE_SYNC_STATE or ./.dune-sync/state.json)")
    parser.add_argument("--team", help="Team used to name materialized views (default: $DUNE_TEAM)")
    parser.add_argument("--workers", type=int, help="Keys processed concurrently per tier (default: $DUNE_SYNC_WORKERS or 4)")
    parser.add_argument("--format", choices=["table", "json"], default="table", help="Output format")
    parser.add_argument("--no-verify", action="store_true", help="Disable SSL verification")
    parser.add_argument("--log-level", default=None, help="Console log level (default: INFO)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("plan", help="Preview changes without touching Dune").set_defaults(func=cmd_plan)
    subparsers.add_parser("apply", help="Converge Dune to the declarations").set_defaults(func=cmd_apply)
    subparsers.add_parser("verify", help="Check materialized views for drift").set_defaults(func=cmd_verify)
    subparsers.add_parser("destroy", help="Delete views and archive queries").set_defaults(func=cmd_destroy)

    sp = subparsers.add_parser("refresh", help="Refresh one materialized view")
    sp.add_argument("view", help="Materialized view key")
    sp.set_defaults(func=cmd_refresh)

    sp = subparsers.add_parser("import", help="Adopt an existing query id under a key")
    sp.add_argument("key", help="Query key in the declarations file")
    sp.add_argument("query_id", help="Existing Dune query id")
    sp.set_defaults(func=cmd_import)

    sp = subparsers.add_parser("forget", help="Remove a key from the state file")
    sp.add_argument("key")
    sp.set_defaults(func=cmd_forget)

    subparsers.add_parser("list-views", help="List materialized views").set_defaults(func=cmd_list_views)

    sp = subparsers.add_parser("usage", help="Show credits, executions and storage usage")
    sp.add_argument("--start-date", help="Window start, YYYY-MM-DD (default: billing period)")
    sp.add_argument("--end-date", help="Window end, YYYY-MM-DD")
    sp.set_defaults(func=cmd_usage)

    sp = subparsers.add_parser("datasets", help="List datasets (one page)")
    sp.add_argument("--owner", help="Only datasets owned by this user or team")
    sp.add_argument("--limit", type=int, default=100, help="Page size (default: 100)")
    sp.add_argument("--offset", type=int, default=None, help="Offset returned by a previous page")
    sp.set_defaults(func=cmd_datasets)

    sp = subparsers.add_parser("dataset", help="Show one dataset and its columns")
    sp.add_argument("name", help="Dataset as namespace.name")
    sp.set_defaults(func=cmd_dataset)

    subparsers.add_parser("state", help="List records of the state file").set_defaults(func=cmd_state)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.workers is not None and args.workers < 1:
        parser.error("--workers must be >= 1")
    setup_logging(args.log_level, action=args.command)
    try:
        return args.func(args)
    except ConfigurationError as exc:
        log.error("Configuration error: %s", exc)
        return EXIT_CONFIG_ERROR
    except CredentialError as exc:
        log.error("Credential error: %s", exc)
        return EXIT_CREDENTIAL_ERROR
    except RemoteTransportError as exc:
        log.error("Network/HTTP error: %s", exc)
        return EXIT_NETWORK_ERROR
    except RemoteError as exc:
        log.error("Dune API error: %s", exc)
        return EXIT_GENERIC_ERROR
    except Exception as exc:  # pragma: no cover, safety net
        log.error("Unexpected error: %s", exc, exc_info=True)
        return EXIT_GENERIC_ERROR


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":  # pragma: no cover
    run()
