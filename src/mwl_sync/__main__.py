"""
Command line entry point for the worklist sync engine.
"""
import argparse
import json
import logging
import signal
import sys
import threading
from datetime import date
from typing import List, Optional

from .config import configure_logging, load_config
from .dicom_client import WorklistQueryClient
from .errors import BackendError, MwlSyncError
from .models import OrderFilter
from .publisher import BACKENDS, BOTH, DCM4CHEE, create_publishers, resolve_targets
from .repair import correlate_order, find_study_by_accession, rename_accession, rename_accession_by_lookup
from .ris_client import RisOrderStore
from .sync import CANCELLED, WorklistSync

logger = logging.getLogger("mwl_sync")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_SETUP = 2


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date {value!r}, expected YYYY-MM-DD")


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid number {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"Expected a number of at least 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mwl-sync",
        description="Publish RIS orders as DICOM Modality Worklist items",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync = subparsers.add_parser("sync", help="Publish RIS orders to the worklist backends")
    sync.add_argument("config_path", help="Path to the configuration YAML file")
    sync.add_argument("--limit", type=_positive_int, help="Maximum number of orders to process")
    sync.add_argument("--accession", help="Only the order with this accession number")
    sync.add_argument("--order-id", help="Only the order with this id")
    sync.add_argument("--status", help="Comma separated order statuses (default IN_REQUEST,SCHEDULED)")
    sync.add_argument("--from-date", type=_iso_date, help="Earliest schedule date (YYYY-MM-DD)")
    sync.add_argument("--to-date", type=_iso_date, help="Latest schedule date (YYYY-MM-DD)")
    sync.add_argument("--dry-run", action="store_true", help="Map orders and print them without publishing")
    sync.add_argument("--force", action="store_true", help="Publish orders that already have a study id")
    sync.add_argument("--target", choices=[*BACKENDS, BOTH], help="Backend(s) to publish to")
    sync.add_argument("--primary", choices=BACKENDS, help="Backend whose result decides the order outcome")
    sync.add_argument("--concurrency", type=_positive_int, help="Number of orders processed in parallel")
    sync.add_argument("--allow-default-schedule", action="store_true",
                      help="Schedule orders without a confirmed date at the current time")

    find = subparsers.add_parser("find-study", help="Find the study carrying an accession number")
    find.add_argument("config_path", help="Path to the configuration YAML file")
    find.add_argument("accession", help="Accession number to look up")
    find.add_argument("--backend", choices=BACKENDS, help="Backend to search (default: primary)")

    rename = subparsers.add_parser("rename-accession", help="Rewrite the accession number of a study")
    rename.add_argument("config_path", help="Path to the configuration YAML file")
    rename.add_argument("new_accession", help="Accession number to write")
    which = rename.add_mutually_exclusive_group(required=True)
    which.add_argument("--study", help="Backend study id (Orthanc id or Study Instance UID)")
    which.add_argument("--old-accession", help="Current accession number of the study")
    rename.add_argument("--backend", choices=BACKENDS, help="Backend holding the study (default: primary)")
    rename.add_argument("--delete-original", action="store_true", help="Delete the original study (Orthanc)")
    rename.add_argument("--tags", help='Extra tags to replace, as JSON (e.g. \'{"PatientID": "MRN1"}\')')

    correlate = subparsers.add_parser("correlate", help="Record the study id of an order found by its accession")
    correlate.add_argument("config_path", help="Path to the configuration YAML file")
    correlate.add_argument("order_id", help="RIS order id")
    correlate.add_argument("--backend", choices=BACKENDS, help="Backend to search (default: primary)")

    delete = subparsers.add_parser("delete-item", help="Delete a worklist item from dcm4chee")
    delete.add_argument("config_path", help="Path to the configuration YAML file")
    delete.add_argument("study_instance_uid", help="Study Instance UID of the item")
    delete.add_argument("sps_id", help="Scheduled Procedure Step ID of the item")

    verify = subparsers.add_parser("verify", help="Query the worklist SCP for an accession number (C-FIND)")
    verify.add_argument("config_path", help="Path to the configuration YAML file")
    verify.add_argument("accession", help="Accession number to look up")

    serve = subparsers.add_parser("serve", help="Run the MCP server")
    serve.add_argument("config_path", help="Path to the configuration YAML file")
    serve.add_argument("--transport", help="MCP transport type ('sse' or 'stdio')", default='stdio')

    return parser


def _load(config_path: str):
    config = load_config(config_path)
    configure_logging(config.logging)
    return config


def run_sync(args) -> int:
    config = _load(args.config_path)
    settings = config.sync.model_copy(deep=True)
    if args.target:
        settings.target = args.target
        if args.target != BOTH and not args.primary:
            settings.primary = args.target
    if args.primary:
        settings.primary = args.primary
    if args.concurrency is not None:
        settings.concurrency = args.concurrency
    if args.allow_default_schedule:
        settings.allow_default_schedule = True

    if config.ris is None:
        print("Configuration has no 'ris' section", file=sys.stderr)
        return EXIT_SETUP

    statuses = tuple(s.strip() for s in args.status.split(",") if s.strip()) if args.status else tuple(settings.statuses)
    order_filter = OrderFilter(
        order_id=args.order_id,
        accession_number=args.accession,
        statuses=statuses,
        from_date=args.from_date,
        to_date=args.to_date,
        limit=args.limit if args.limit is not None else settings.limit,
    )

    names = resolve_targets(settings.target)
    store = RisOrderStore.from_config(config.ris)
    publishers = create_publishers(config, names)
    cancel_event = threading.Event()

    def interrupt(signum, frame):
        logger.warning("Interrupted, finishing orders in flight")
        cancel_event.set()

    # Signal handlers can only be installed from the main thread
    handle_sigint = threading.current_thread() is threading.main_thread()
    if handle_sigint:
        previous_handler = signal.signal(signal.SIGINT, interrupt)
    try:
        store.ping()
        engine = WorklistSync(store, publishers, primary=settings.primary if len(names) > 1 else None,
                              settings=settings)
        report = engine.run(order_filter, dry_run=args.dry_run, force=args.force, cancel_event=cancel_event)
    finally:
        if handle_sigint:
            if previous_handler is None:
                previous_handler = signal.default_int_handler
            signal.signal(signal.SIGINT, previous_handler)
        for publisher in publishers.values():
            publisher.close()

    if cancel_event.is_set():
        cancelled = sum(1 for result in report.results if result.reason == CANCELLED)
        print(f"Run interrupted, {cancelled} orders not started", file=sys.stderr)
    for line in report.format_lines():
        print(line)
    if args.dry_run:
        for result in report.results:
            if result.item is not None:
                print(json.dumps(result.item.to_dict(), indent=2))
    print(report.summary())
    return EXIT_OK


def _publisher(config, backend: Optional[str]):
    name = backend or config.sync.primary
    return name, create_publishers(config, [name])[name]


def run_find_study(args) -> int:
    config = _load(args.config_path)
    name, publisher = _publisher(config, args.backend)
    with publisher:
        try:
            study = find_study_by_accession(publisher, args.accession)
        except MwlSyncError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_FAILED
    if study is None:
        print(f"No study with accession {args.accession} on {name}")
        return EXIT_FAILED
    print(json.dumps(study.to_dict(), indent=2))
    return EXIT_OK


def run_rename(args) -> int:
    config = _load(args.config_path)
    extra_tags = None
    if args.tags:
        try:
            extra_tags = json.loads(args.tags)
        except ValueError as e:
            print(f"Invalid --tags JSON: {e}", file=sys.stderr)
            return EXIT_SETUP
        if not isinstance(extra_tags, dict):
            print("--tags must be a JSON object", file=sys.stderr)
            return EXIT_SETUP

    _, publisher = _publisher(config, args.backend)
    with publisher:
        if args.study:
            result = rename_accession(publisher, args.study, args.new_accession,
                                      delete_original=args.delete_original, extra_tags=extra_tags)
        else:
            result = rename_accession_by_lookup(publisher, args.old_accession, args.new_accession,
                                                delete_original=args.delete_original, extra_tags=extra_tags)

    if not result.success:
        print(f"Rename failed: {result.error_message}", file=sys.stderr)
        return EXIT_FAILED
    print(f"Study {result.old_study_id} -> {result.new_study_id}, accession {result.new_accession_number}")
    return EXIT_OK


def run_correlate(args) -> int:
    config = _load(args.config_path)
    if config.ris is None:
        print("Configuration has no 'ris' section", file=sys.stderr)
        return EXIT_SETUP

    name, publisher = _publisher(config, args.backend)
    store = RisOrderStore.from_config(config.ris)
    try:
        with publisher:
            study = correlate_order(store, publisher, args.order_id)
    except MwlSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED
    finally:
        store.close()

    if study is None:
        print(f"No study on {name} for order {args.order_id}")
        return EXIT_FAILED
    print(json.dumps(study.to_dict(), indent=2))
    return EXIT_OK


def run_delete_item(args) -> int:
    config = _load(args.config_path)
    _, publisher = _publisher(config, DCM4CHEE)
    with publisher:
        try:
            publisher.delete_item(args.study_instance_uid, args.sps_id)
        except BackendError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_FAILED
    print(f"Deleted worklist item {args.study_instance_uid}/{args.sps_id}")
    return EXIT_OK


def run_verify(args) -> int:
    config = _load(args.config_path)
    if config.worklist_scp is None:
        print("Configuration has no 'worklist_scp' section", file=sys.stderr)
        return EXIT_SETUP

    scp = config.worklist_scp
    client = WorklistQueryClient(scp.host, scp.port, config.calling_aet, scp.ae_title)
    try:
        items = client.find_worklist(accession_number=args.accession)
    except ConnectionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED

    if not items:
        print(f"No worklist item with accession {args.accession} on {scp.ae_title}")
        return EXIT_FAILED
    print(json.dumps(items, indent=2, default=str))
    return EXIT_OK


def run_serve(args) -> int:
    from .server import create_mwl_sync_server

    config = _load(args.config_path)
    logger.info("Starting MCP server (%s, target %s)", args.transport, config.sync.target)
    mcp = create_mwl_sync_server(args.config_path)
    mcp.run(args.transport)
    return EXIT_OK


COMMANDS = {
    "sync": run_sync,
    "find-study": run_find_study,
    "rename-accession": run_rename,
    "correlate": run_correlate,
    "delete-item": run_delete_item,
    "verify": run_verify,
    "serve": run_serve,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return COMMANDS[args.command](args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_SETUP
    except Exception as e:
        logger.exception("%s failed", args.command)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_SETUP if args.command == "sync" else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
