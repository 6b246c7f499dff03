#!/usr/bin/env python3
"""
Sanitize Runner - scan, repair and report a tenant's fundraising data.

Replaces the old one-off sanitize/fix/backfill scripts with a single
rule-driven pass over every collection:
teams -> campaigns -> users -> athletes -> coaches -> campaignAthletes ->
donations -> donors.

Dry run is the default (and doubles as the validator); nothing is written
without --apply.

Usage:
    python sanitize.py --project-id my-project                         # dry run
    python sanitize.py --project-id my-project --apply --write-report
    python sanitize.py --project-id my-project --collections donations donors --convert-likely-dollars
"""

import argparse
import signal
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Load environment
load_dotenv(Path(__file__).parent / ".env")

from fundsweep.config import RunSettings
from fundsweep.constants import COLLECTION_ORDER, EXIT_FAILURE
from fundsweep.db.client import get_firestore_client
from fundsweep.db.firestore_store import FirestoreRecordStore
from fundsweep.errors import ConfigurationError
from fundsweep.schemas.policy import load_policy
from fundsweep.services.sanitize_run import RunResult, SanitizeRun
from fundsweep.utils.logger import RunLogger

console = Console()


def display_results(result: RunResult, verbose: bool = False) -> None:
    """Display run results in a readable format."""
    report = result.report
    meta = report["meta"]
    totals = report["totals"]
    commit = report.get("commit") or {}
    console.print()

    summary = (
        f"Project: {meta['projectId']}\n"
        f"Mode: {meta['mode']}\n"
        f"Outcome: {meta['state']}\n"
        f"Scanned: {totals.get('scanned', 0)}\n"
        f"Planned writes: {len(report['writes'])}\n"
        f"Committed: {commit.get('committed', 0)}\n"
        f"Issues: {len(report['issues'])}\n"
        f"Duration: {meta['durationSeconds']:.1f}s"
    )
    border = "green" if result.exit_code == 0 else "red"
    console.print(Panel(summary, title="Sanitize Summary", border_style=border))

    if report["tally"]:
        table = Table(title="Per Collection")
        table.add_column("Collection", style="cyan")
        for column in ("Scanned", "Corrected", "Created", "Deleted", "Flagged", "Ambiguous"):
            table.add_column(column, justify="right")

        for name, tally in report["tally"].items():
            table.add_row(
                name,
                str(tally["scanned"]),
                str(tally["corrected"]),
                str(tally["created"]),
                str(tally["deleted"]),
                str(tally["flagged"]),
                str(tally["ambiguous"]),
            )
        console.print(table)

    if report["stats"]:
        table = Table(title="Issues by Code")
        table.add_column("Code", style="yellow")
        table.add_column("Count", justify="right")
        for code, count in list(report["stats"].items())[:25]:
            table.add_row(code, str(count))
        console.print(table)

    if meta.get("error"):
        console.print(f"[red]Run aborted: {meta['error']}[/red]")

    rule_errors = sum(1 for issue in report["issues"] if issue["kind"] == "rule_error")
    if rule_errors:
        console.print(f"[red]{rule_errors} rule errors, see the RULE_ERROR issues[/red]")

    if commit.get("error"):
        error = commit["error"]
        console.print(
            f"[red]Commit stopped at chunk {error['chunkIndex']} ({len(error['paths'])} ops): "
            f"{error['message']}[/red]"
        )

    if verbose:
        for issue in report["issues"]:
            color = "red" if issue["severity"] == "error" else "yellow"
            console.print(
                f"  [{color}]{issue['severity'].upper()}[/{color}] "
                f"{issue['collection']}/{issue['recordId']} {issue['code']}: {issue['message']}"
            )


def main():
    parser = argparse.ArgumentParser(description="Sanitize and reconcile fundraising data")
    parser.add_argument("--project-id", type=str, help="Target project (default: FIREBASE_PROJECT_ID)")
    parser.add_argument("--credentials", type=str, help="Service account key file")
    parser.add_argument("--apply", action="store_true", help="Write corrections (default: dry run)")
    parser.add_argument("--policy", type=str, help="Policy YAML (default: config/sanitize_policy.yaml)")
    parser.add_argument(
        "--collections",
        nargs="+",
        choices=COLLECTION_ORDER,
        help="Only evaluate these collections (default: all)",
    )
    parser.add_argument("--convert-likely-dollars", action="store_true", help="Convert small amounts from dollars to cents")
    parser.add_argument("--backfill-donors", action="store_true", help="Rebuild donor totals from donations")
    parser.add_argument("--backfill-public-donors", action="store_true", help="Create missing public donor entries")
    parser.add_argument("--campaign-public", action="store_true", help="Default missing campaign isPublic")
    parser.add_argument("--workers", type=int, help="Parallel workers (default: policy max_workers)")
    parser.add_argument("--write-report", action="store_true", help="Save the JSON report")
    parser.add_argument("--report-dir", type=str, help="Report directory (default: ./sanitize_reports)")
    parser.add_argument("--verbose", action="store_true", help="Show detailed output")
    args = parser.parse_args()

    try:
        settings = RunSettings.from_args(
            project_id=args.project_id,
            credentials=args.credentials,
            apply=args.apply,
            collections=args.collections,
            write_report=args.write_report,
            report_dir=args.report_dir,
            search_dir=Path(__file__).parent,
        )
        policy = load_policy(Path(args.policy) if args.policy else None)
        policy = policy.with_features(
            convert_likely_dollars=args.convert_likely_dollars or None,
            donor_aggregates=args.backfill_donors or None,
            public_donors=args.backfill_public_donors or None,
            campaign_is_public=args.campaign_public or None,
        )
        if args.workers:
            policy = policy.model_copy(update={"max_workers": args.workers})
    except ConfigurationError as e:
        print(f"Error: {e}")
        sys.exit(EXIT_FAILURE)

    mode = "APPLY" if settings.apply else "DRY-RUN"
    logger = RunLogger("sanitize", log_level="DEBUG" if args.verbose else "INFO", phase=mode)

    print("=" * 80)
    print(f"SANITIZE: {settings.project_id} ({mode})")
    print(f"  Collections: {', '.join(settings.collections)}")
    enabled = [name for name, on in policy.features.model_dump().items() if on]
    print(f"  Features: {', '.join(enabled)}")
    print("=" * 80)

    try:
        client = get_firestore_client(settings.project_id, str(settings.credentials_path))
    except ConfigurationError as e:
        logger.error("Could not create store client", exception=e)
        sys.exit(EXIT_FAILURE)
    store = FirestoreRecordStore(client, settings.project_id, timeout=policy.store_timeout_seconds)

    stop_event = threading.Event()

    def _request_stop(signum, frame):
        if stop_event.is_set():
            raise KeyboardInterrupt
        logger.warning("Stop requested, finishing the current step (Ctrl+C again to abort)")
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)

    run = SanitizeRun(store, settings, policy, stop_event=stop_event, run_logger=logger)
    result = run.run()

    display_results(result, verbose=args.verbose)
    if result.report_path:
        print(f"\nReport: {result.report_path}")
    if not settings.apply and result.planned:
        print(f"\nDry run: {len(result.planned)} writes planned. Re-run with --apply to commit.")

    sys.exit(result.exit_code)


if __name__ == "__main__":
    main()
