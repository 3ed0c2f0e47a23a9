"""Command-line maintenance for the calendar change log."""
import argparse
import logging
import sys
import time
from collections import Counter
from datetime import datetime
from typing import List, Optional

import boto3

from lambda_function import load_config, setup_logging
from notifications.change_log import NotificationQueue
from storage.schema import create_tables

logger = logging.getLogger(__name__)

CLEANUP_MENU = """
Choose cleanup option:
  1. Light cleanup (remove records older than 24 hours)
  2. Moderate cleanup (keep only the most recent 100 records)
  3. Truncate all records
  4. Custom cleanup (remove records older than N hours)
  5. Exit
"""

LIGHT_CLEANUP_HOURS = 24
MODERATE_KEEP_RECORDS = 100

MONITOR_PAGE_SIZE = 100
MONITOR_MAX_DETAILS = 5
BATCH_ALERT_THRESHOLD = 10
HIGH_ACTIVITY_THRESHOLD = 100
MODERATE_ACTIVITY_THRESHOLD = 20


def build_queue(config: dict) -> NotificationQueue:
    # Maintenance never enqueues, so inline retention stays off
    return NotificationQueue(
        config['updates_table'],
        log_name=config['updates_log'],
        inline_cleanup=False
    )


def print_status(queue: NotificationQueue) -> dict:
    stats = queue.stats()
    print("=== Calendar Updates Status ===")
    print(f"Total records: {stats['total_updates']}")
    print(f"Latest ID: {stats['latest_id']}")
    print(f"Oldest record: {stats['oldest_update'] or 'N/A'}")
    print(f"Newest record: {stats['newest_update'] or 'N/A'}")
    print(f"Created in last hour: {queue.count_since(3600)}")
    for event_type, count in sorted(stats['by_type'].items()):
        print(f"  {event_type}: {count}")
    return stats


def _confirm(prompt: str) -> bool:
    return input(prompt).strip().lower() == 'yes'


def cmd_cleanup(queue: NotificationQueue, args: argparse.Namespace) -> int:
    print_status(queue)

    interactive = sys.stdin.isatty()
    choice = args.choice
    if choice is None:
        if interactive:
            print(CLEANUP_MENU)
            choice = input("Enter choice (1-5): ").strip()
        else:
            print("Non-interactive session: running light cleanup")
            choice = '1'

    if choice == '1':
        deleted = queue.retention.simple_cleanup(LIGHT_CLEANUP_HOURS)
        print(f"[*] Removed {deleted} records older than {LIGHT_CLEANUP_HOURS} hours")
    elif choice == '2':
        deleted = queue.trim_to(MODERATE_KEEP_RECORDS)
        print(f"[*] Removed {deleted} records, kept the most recent {MODERATE_KEEP_RECORDS}")
    elif choice == '3':
        if not args.yes:
            if not interactive:
                print("[!] Truncate requires --yes in a non-interactive session")
                return 1
            if not _confirm("This deletes ALL calendar updates. Type 'yes' to continue: "):
                print("Cancelled")
                return 0
        deleted = queue.retention.purge_all()
        print(f"[*] Truncated change log ({deleted} records removed)")
    elif choice == '4':
        hours = args.hours
        if hours is None:
            if not interactive:
                print("[!] Custom cleanup requires --hours in a non-interactive session")
                return 1
            try:
                hours = float(input("Remove records older than how many hours? ").strip())
            except ValueError:
                print("[!] Invalid number of hours")
                return 1
        if hours < 0:
            print("[!] Hours must not be negative")
            return 1
        deleted = queue.retention.simple_cleanup(hours)
        print(f"[*] Removed {deleted} records older than {hours:g} hours")
    elif choice == '5':
        print("Exiting without changes")
        return 0
    else:
        print(f"[!] Invalid choice: {choice}")
        return 1

    print(f"Records remaining: {queue.count()}")
    return 0


def _poll_all(queue: NotificationQueue, last_id: int) -> list:
    entries = []
    while True:
        page = queue.poll(last_id, MONITOR_PAGE_SIZE)
        entries.extend(page)
        if len(page) < MONITOR_PAGE_SIZE:
            return entries
        last_id = page[-1].id


def cmd_monitor(queue: NotificationQueue, args: argparse.Namespace) -> int:
    """
    Watch the change log the way a polling client would and flag loops.

    Each check reports the new entries by type, warns when one check sees
    more than BATCH_ALERT_THRESHOLD entries or the same (type, entity) more
    than once, and the run ends with an activity verdict.
    """
    start_time = time.time()
    last_id = queue.latest_id()
    initial_count = queue.count()
    type_totals = Counter()
    total_new = 0

    print("Initial state:")
    print(f"- Total records: {initial_count}")
    print(f"- Last ID: {last_id}")
    print(f"- Monitoring for {args.duration:g} seconds (every {args.interval:g}s)...")

    while True:
        entries = _poll_all(queue, last_id)

        if entries:
            total_new += len(entries)
            batch_types = Counter(entry.event_type for entry in entries)
            type_totals.update(batch_types)

            details = ' '.join(
                f"#{entry.id} {entry.event_type} entity={entry.entity_id or 'N/A'}"
                for entry in entries[:MONITOR_MAX_DETAILS]
            )
            if len(entries) > MONITOR_MAX_DETAILS:
                details += ' ...'
            types = ' '.join(f"{event_type}({count})" for event_type, count in batch_types.items())
            print(f"[{datetime.now().strftime('%H:%M:%S')}] {len(entries)} new | {types} | {details}")

            last_id = entries[-1].id

            if len(entries) > BATCH_ALERT_THRESHOLD:
                print(f"[!] ALERT: {len(entries)} records added in one check - possible loop detected")

            duplicates = Counter(
                (entry.event_type, entry.entity_id)
                for entry in entries if entry.entity_id is not None
            )
            for (event_type, entity_id), count in duplicates.items():
                if count > 1:
                    print(f"[!] DUPLICATE: {event_type} {entity_id} appeared {count} times in this check")

        if time.time() - start_time + args.interval > args.duration:
            break
        time.sleep(args.interval)

    elapsed = max(1.0, time.time() - start_time)
    final_count = queue.count()

    print("\nMONITORING SUMMARY:")
    print(f"Duration: {elapsed:.0f} seconds")
    print(f"Total new records: {total_new}, last ID {last_id}")
    print(f"Average rate: {total_new / elapsed:.2f} records/second")
    for event_type, count in type_totals.most_common():
        print(f"- {event_type}: {count}")
    print(f"Final record count: {final_count} (net {final_count - initial_count:+d})")

    if total_new > HIGH_ACTIVITY_THRESHOLD:
        print(f"[!] HIGH ACTIVITY: {total_new} records suggests a possible notification loop; "
              "consider the emergency command")
    elif total_new > MODERATE_ACTIVITY_THRESHOLD:
        print(f"[!] MODERATE ACTIVITY: {total_new} records; consider running cleanup")
    else:
        print(f"[*] NORMAL ACTIVITY: {total_new} records")
    return 0


def cmd_emergency(queue: NotificationQueue, args: argparse.Namespace) -> int:
    before = queue.count()
    print(f"[!] Emergency cleanup: {before} records present")
    deleted = queue.retention.purge_all()
    print(f"[*] Deleted {deleted} records, {queue.count()} remaining")
    return 0


def cmd_cron(queue: NotificationQueue, args: argparse.Namespace) -> int:
    config = args.config
    max_age_hours = args.max_age_hours if args.max_age_hours is not None else config['cron_max_age_hours']
    max_records = args.max_records if args.max_records is not None else config['cron_max_records']

    report = queue.retention.run_scheduled(
        max_age_hours=max_age_hours,
        max_records=max_records
    )
    for message in report.messages:
        print(message)
    print(f"Recent records (5 min): {report.recent_count}")
    return 0


def cmd_init(args: argparse.Namespace) -> int:
    config = args.config
    created = create_tables(
        boto3.resource('dynamodb'),
        config['events_table'],
        config['users_table'],
        config['updates_table']
    )
    if created:
        print(f"[*] Created tables: {', '.join(created)}")
    else:
        print("[*] All tables already exist")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Calendar change log maintenance")
    subparsers = parser.add_subparsers(dest="command")

    cleanup_parser = subparsers.add_parser("cleanup", help="Show status and clean up interactively")
    cleanup_parser.add_argument("--choice", choices=['1', '2', '3', '4', '5'],
                                help="Menu option to run without prompting")
    cleanup_parser.add_argument("--hours", type=float, help="Age threshold for option 4")
    cleanup_parser.add_argument("--yes", action="store_true", help="Skip the truncate confirmation")

    monitor_parser = subparsers.add_parser("monitor", help="Watch new change log entries")
    monitor_parser.add_argument("--duration", type=float, default=60, help="Seconds to watch")
    monitor_parser.add_argument("--interval", type=float, default=2, help="Seconds between polls")

    subparsers.add_parser("emergency", help="Delete every change log entry")
    cron_parser = subparsers.add_parser("cron", help="Run scheduled retention once")
    cron_parser.add_argument("--max-age-hours", type=float,
                             help="Age threshold (default: CRON_MAX_AGE_HOURS)")
    cron_parser.add_argument("--max-records", type=int,
                             help="Count threshold (default: CRON_MAX_RECORDS)")
    subparsers.add_parser("init", help="Create the DynamoDB tables")

    return parser


COMMANDS = {
    'cleanup': cmd_cleanup,
    'monitor': cmd_monitor,
    'emergency': cmd_emergency,
    'cron': cmd_cron,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    args.config = load_config()
    setup_logging(args.config['log_level'])

    try:
        if args.command == 'init':
            return cmd_init(args)
        queue = build_queue(args.config)
        return COMMANDS[args.command](queue, args)
    except Exception as e:
        logger.error(f"Maintenance command '{args.command}' failed: {e}", exc_info=True)
        print(f"[FAIL] {type(e).__name__}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
