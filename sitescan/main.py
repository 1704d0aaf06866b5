from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any

from sitescan.config import ScanConfig, load_yaml, resolve_settings, setup_logging
from sitescan.models import ScanRecord, ScanStatus, ThreatLevel, utc_now_iso
from sitescan.orchestrator import (
    ScanInProgressError,
    ScanOrchestrator,
    ScanRequest,
    ScanRequestError,
)
from sitescan.retention import apply_retention
from sitescan.storage import SqliteScanStore, write_json_file

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INVALID = 2
EXIT_THREAT = 3
EXIT_FAILED = 4
EXIT_IN_PROGRESS = 5


def build_orchestrator(settings: dict[str, Any], store: SqliteScanStore) -> ScanOrchestrator:
    return ScanOrchestrator(store, config=ScanConfig.from_settings(settings))


def resolve_requests(args: argparse.Namespace) -> list[ScanRequest]:
    if args.targets_file:
        data = load_yaml(args.targets_file)
        requests = []
        for item in data.get("targets", []):
            if not item.get("enabled", True):
                continue
            if "website_id" not in item or "user_id" not in item:
                raise ValueError(f"Target entry needs website_id and user_id: {item}")
            credentials = {"api_key": item["api_key"]} if item.get("api_key") else None
            requests.append(
                ScanRequest(
                    website_id=int(item["website_id"]),
                    user_id=int(item["user_id"]),
                    url=item.get("url"),
                    credentials=credentials,
                    trigger=item.get("trigger", "scheduled"),
                )
            )
        return requests

    if args.website_id is None or args.user_id is None:
        raise ValueError("Either --targets-file or both --website-id and --user-id are required")
    credentials = {"api_key": args.api_key} if args.api_key else None
    return [ScanRequest(args.website_id, args.user_id, args.url, credentials, trigger="manual")]


def scan_exit_code(records: list[ScanRecord], fail_on_threat: bool) -> int:
    overall_exit = EXIT_OK
    for record in records:
        if record.status == ScanStatus.FAILED:
            overall_exit = max(overall_exit, EXIT_FAILED)
        elif fail_on_threat and record.threat_level and record.threat_level.rank >= ThreatLevel.HIGH.rank:
            overall_exit = max(overall_exit, EXIT_THREAT)
    return overall_exit


def _emit(payload: dict[str, Any], json_output: str | None = None) -> None:
    if json_output:
        write_json_file(json_output, payload)
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def cmd_register_site(args: argparse.Namespace, settings: dict[str, Any], store: SqliteScanStore) -> int:
    website_id = store.register_website(args.user_id, args.name or args.url, args.url, args.api_key)
    _emit({"website_id": website_id, "url": args.url, "user_id": args.user_id})
    return EXIT_OK


def cmd_scan(args: argparse.Namespace, settings: dict[str, Any], store: SqliteScanStore) -> int:
    try:
        requests = resolve_requests(args)
    except (ValueError, TypeError) as exc:
        LOGGER.error("Invalid arguments: %s", exc)
        return EXIT_INVALID

    orchestrator = build_orchestrator(settings, store)

    if args.targets_file:
        max_workers = int(settings.get("execution", {}).get("max_concurrent_scans", 2))
        records = orchestrator.scan_many(requests, max_workers=max_workers)
        overall_exit = scan_exit_code(records, args.fail_on_threat)
        if len(records) < len(requests):
            overall_exit = max(overall_exit, EXIT_INVALID)
    else:
        request = requests[0]
        try:
            orchestrator.ensure_no_running_scan(request.website_id, request.user_id)
            record = orchestrator.scan(
                request.website_id,
                request.url,
                request.user_id,
                credentials=request.credentials,
                trigger=request.trigger,
            )
        except ScanInProgressError as exc:
            LOGGER.error("%s", exc)
            _emit({"error": "Security scan already in progress", "scan_id": exc.scan_id})
            return EXIT_IN_PROGRESS
        except ScanRequestError as exc:
            LOGGER.error("Invalid scan request: %s", exc)
            return EXIT_INVALID
        records = [record]
        overall_exit = scan_exit_code(records, args.fail_on_threat)

    _emit({"results": [record.to_dict() for record in records], "generated_at": utc_now_iso()}, args.json_output)
    return overall_exit


def cmd_history(args: argparse.Namespace, settings: dict[str, Any], store: SqliteScanStore) -> int:
    records = store.list_scan_records(args.website_id, args.user_id, limit=args.limit)
    _emit({"website_id": args.website_id, "scans": [record.summary() for record in records]})
    return EXIT_OK


def cmd_stats(args: argparse.Namespace, settings: dict[str, Any], store: SqliteScanStore) -> int:
    _emit(store.scan_stats(args.user_id))
    return EXIT_OK


def cmd_clear(args: argparse.Namespace, settings: dict[str, Any], store: SqliteScanStore) -> int:
    cleared = build_orchestrator(settings, store).clear_running_scans(args.website_id, args.user_id)
    _emit({"cleared": cleared})
    return EXIT_OK


def cmd_prune(args: argparse.Namespace, settings: dict[str, Any], store: SqliteScanStore) -> int:
    if args.force:
        settings["retention"]["enabled"] = True
    _emit(apply_retention(settings, dry_run=args.dry_run))
    return EXIT_OK


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="WordPress website security scan orchestrator")
    parser.add_argument("--settings", default=os.getenv("SITESCAN_SETTINGS", "/app/config/settings.yaml"), help="Path to settings YAML")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    register = subparsers.add_parser("register-site", help="Register a website to scan")
    register.add_argument("--user-id", type=int, required=True)
    register.add_argument("--url", required=True)
    register.add_argument("--name", help="Display name for the website")
    register.add_argument("--api-key", help="WP Remote Manager API key for the updates feed")
    register.set_defaults(handler=cmd_register_site)

    scan = subparsers.add_parser("scan", help="Run a security scan")
    scan.add_argument("--website-id", type=int)
    scan.add_argument("--user-id", type=int)
    scan.add_argument("--url", help="Override the registered website URL")
    scan.add_argument("--api-key", help="Override the stored updates feed API key")
    scan.add_argument("--targets-file", help="YAML file with several websites to scan")
    scan.add_argument("--json-output", help="Optional path for aggregate JSON output")
    scan.add_argument("--fail-on-threat", action="store_true", help="Exit with code 3 when a threat level is high or critical")
    scan.set_defaults(handler=cmd_scan)

    history = subparsers.add_parser("history", help="List recent scans of a website")
    history.add_argument("--website-id", type=int, required=True)
    history.add_argument("--user-id", type=int, required=True)
    history.add_argument("--limit", type=int, default=20)
    history.set_defaults(handler=cmd_history)

    stats = subparsers.add_parser("stats", help="Aggregate statistics of completed scans")
    stats.add_argument("--user-id", type=int)
    stats.set_defaults(handler=cmd_stats)

    clear = subparsers.add_parser("clear", help="Mark stuck scans of a website as failed")
    clear.add_argument("--website-id", type=int, required=True)
    clear.add_argument("--user-id", type=int, required=True)
    clear.set_defaults(handler=cmd_clear)

    prune = subparsers.add_parser("prune", help="Apply the retention policy")
    prune.add_argument("--dry-run", action="store_true")
    prune.add_argument("--force", action="store_true", help="Run even when retention is disabled in settings")
    prune.set_defaults(handler=cmd_prune)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    settings = resolve_settings(args.settings)
    store = SqliteScanStore(settings["paths"]["db_path"])
    return args.handler(args, settings, store)


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
