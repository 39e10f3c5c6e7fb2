#!/usr/bin/env python3
"""
Topic AI metadata generation CLI.

Generates an embedding, a plain-English summary, a difficulty band and an
exam importance score for every curriculum topic that does not yet have
metadata. Reruns only pick up what is still pending.

Usage:
    python generate_metadata.py run                          # Process everything pending
    python generate_metadata.py run --dry-run                # Counts and cost estimate only
    python generate_metadata.py run --board AQA --subject Biology
    python generate_metadata.py run --pilot                  # Small pilot batch
    python generate_metadata.py run --limit 500 --yes        # Skip the confirmation delay
    python generate_metadata.py status                       # Show coverage
    python generate_metadata.py import-topics topics.json    # Load a catalog into the SQLite store
    python generate_metadata.py show t0001                   # Show stored metadata for one topic
"""

import argparse
import json
import sys
import time
from pathlib import Path
from typing import Optional

import yaml

from topic_metadata.config import get_config, reload_config
from topic_metadata.core import RunReport, build_pipeline, create_store, estimate_cost
from topic_metadata.exceptions import ConfigurationError, RunAbortedError, TopicMetadataError
from topic_metadata.logging_config import setup_logging, get_logger
from topic_metadata.models import Topic, TopicFilters

logger = get_logger('cli')


def print_progress(stage: str, window: int, done: int, total: int):
    """Print per-window generation progress."""
    pct = (done / total * 100) if total > 0 else 0
    print(f"  [window {window}] {stage}: {done}/{total} ({pct:.0f}%)")


def print_window_complete(window, report: RunReport):
    """Print window completion message."""
    print(f"\n=== Window {window.index}/{report.windows_total} complete: "
          f"{window.written} saved, {window.failed} skipped, "
          f"{window.fallback_summaries} fallback ===")
    print(f"Coverage: {report.with_metadata}/{report.total_topics} ({report.coverage_percent:.1f}%)\n")


def print_plan(report: RunReport):
    """Print pending breakdown and cost estimate."""
    if report.breakdown:
        print("\nPending by board:")
        for board_level, count in report.breakdown.items():
            print(f"  {board_level}: {count} topics")

    estimate = estimate_cost(report.planned)
    print(f"\nEstimated cost for {estimate.topics} topics:")
    print(f"  Embeddings: ${estimate.embedding_cost:.4f}")
    print(f"  Summaries:  ${estimate.summary_cost:.4f}")
    print(f"  Total:      ${estimate.total_cost:.4f}")
    print(f"  Time:       ~{estimate.minutes} minutes")


def print_report(report: RunReport):
    """Print the final coverage report."""
    print("\n=== Summary ===")
    print(f"State:          {report.state.value}")
    print(f"Total topics:   {report.total_topics}")
    print(f"With metadata:  {report.with_metadata}")
    print(f"Pending:        {report.pending}")
    print(f"Coverage:       {report.coverage_percent:.1f}%")
    if not report.dry_run:
        print(f"Windows:        {len(report.windows)}/{report.windows_total}")
        print(f"Written:        {report.records_written}")
        print(f"Fallbacks:      {report.fallback_summaries}")
        print(f"Skipped:        {len(report.failed_records)}")

    if report.failed_records:
        print("\nRecords that could not be written:")
        for failure in report.failed_records[:20]:
            note = "rerun to retry" if failure.retryable else "fix the record"
            print(f"  {failure.topic_id}: {failure.kind.value} - {failure.reason} ({note})")
        if len(report.failed_records) > 20:
            print(f"  ... and {len(report.failed_records) - 20} more")

    if report.interrupted:
        print("\nRun was interrupted. Rerun the same command to continue.")


def resolve_run_scope(args, config) -> tuple[TopicFilters, Optional[int]]:
    """Filters and topic cap for a run, applying pilot defaults."""
    board, subject, limit = args.board, args.subject, args.limit
    if args.pilot:
        board = board or config.batch.pilot_board
        subject = subject or config.batch.pilot_subject
        limit = limit or config.batch.pilot_limit
    if limit is not None and limit < 1:
        raise ConfigurationError(f"--limit must be >= 1, got {limit}", config_key='limit')
    return TopicFilters(exam_board=board, subject=subject), limit


def confirm_delay(config, args):
    """Build the hook that pauses before large runs."""
    def before_processing(work):
        print(f"\nProcessing {work.pending_count} topics "
              f"({work.with_metadata}/{work.total_topics} already done)")
        if args.pilot or args.yes or work.pending_count <= config.batch.confirm_threshold:
            return
        delay = config.batch.confirm_delay_seconds
        print(f"\nThis will process {work.pending_count} topics. "
              f"Starting in {delay:.0f} seconds, press Ctrl+C to cancel...")
        time.sleep(delay)
    return before_processing


def cmd_run(args, config):
    """Generate metadata for pending topics."""
    filters, limit = resolve_run_scope(args, config)

    driver = build_pipeline(
        config,
        dry_run=args.dry_run,
        on_progress=print_progress,
        on_window_complete=print_window_complete,
    )
    driver.install_signal_handlers()

    mode = "DRY RUN" if args.dry_run else ("PILOT" if args.pilot else "FULL")
    print(f"\nMode: {mode} | Scope: {filters.describe()}" + (f" | Limit: {limit}" if limit else ""))
    print(f"Window size: {config.batch.window_size} | Chunk sizes: {config.batch.chunk_sizes}")

    store = driver.reader.store
    try:
        report = driver.run(
            filters=filters,
            limit=limit,
            dry_run=args.dry_run,
            before_processing=None if args.dry_run else confirm_delay(config, args),
        )
    except RunAbortedError as e:
        print(f"\nError: {e.message}")
        if e.report is not None:
            print_report(e.report)
        return 1
    finally:
        store.close()

    if args.dry_run:
        print_plan(report)
        print("\nDry run: no API calls were made and nothing was written.")

    print_report(report)

    if report.interrupted:
        return 130
    return 0


def cmd_status(args, config):
    """Show current metadata coverage."""
    filters = TopicFilters(exam_board=args.board, subject=args.subject)
    driver = build_pipeline(config, dry_run=True)
    with driver.reader.store:
        report = driver.run(filters=filters, dry_run=True)

    print(f"\n=== Coverage ({filters.describe()}) ===")
    print(f"Total topics:   {report.total_topics}")
    print(f"With metadata:  {report.with_metadata}")
    print(f"Pending:        {report.pending}")
    print(f"Coverage:       {report.coverage_percent:.1f}%")
    return 0


def load_topic_file(filepath: str) -> list[Topic]:
    """Load catalog rows from a JSON or YAML file.

    The file holds a list of topic rows, or a mapping with a ``topics`` list.
    """
    path = Path(filepath)
    if not path.exists():
        raise ConfigurationError(f"File not found: {filepath}", config_key='import_file')

    with open(path, encoding='utf-8') as f:
        try:
            if path.suffix.lower() in ('.yaml', '.yml'):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
        except (ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Could not parse {filepath}: {e}", config_key='import_file') from e

    if isinstance(data, dict):
        data = data.get('topics')
    if not isinstance(data, list):
        raise ConfigurationError(f"{filepath} must contain a list of topic rows", config_key='import_file')

    return [Topic.from_row(row) for row in data]


def cmd_import_topics(args, config):
    """Load a topic catalog into the local SQLite store."""
    if config.store.backend != 'sqlite':
        raise ConfigurationError(
            "import-topics only writes to the local catalog; set store.backend to sqlite",
            config_key='store.backend',
        )
    config.validate(dry_run=True)

    topics = load_topic_file(args.file)
    with create_store(config) as store:
        saved = store.save_topics(topics)
        stats = store.get_stats()

    print(f"\nImported {saved} topics from {args.file}")
    print(f"Catalog:        {stats['topics']} topics")
    print(f"With metadata:  {stats['metadata']}")
    return 0


def cmd_show(args, config):
    """Show the stored metadata for one topic."""
    config.validate(dry_run=True)
    with create_store(config) as store:
        record = store.get_metadata(args.topic_id)

    if record is None:
        print(f"No metadata for topic: {args.topic_id}")
        return 1

    print(f"\n=== {record['topic_id']} ===")
    print(f"Board/level:    {record.get('exam_board')} {record.get('qualification_level')}")
    print(f"Subject:        {record.get('subject_name')}")
    print(f"Difficulty:     {record['difficulty_band']}")
    print(f"Importance:     {record['exam_importance']:.2f}")
    print(f"Embedding:      {len(record['embedding'])} dimensions")
    print(f"Generated:      {record.get('generated_at')} ({record.get('spec_version')})")
    print(f"\n{record['plain_english_summary']}")
    if record.get('reasoning'):
        print(f"\nReasoning: {record['reasoning']}")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Generate AI metadata for curriculum topics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        '--verbose', '-V',
        action='store_true',
        help='Enable verbose output'
    )
    parser.add_argument(
        '--config', '-c',
        help='Path to config.yaml (default: search cwd and project root)'
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Run command
    run_parser = subparsers.add_parser(
        'run',
        help='Generate metadata for topics that do not have it yet'
    )
    run_parser.add_argument(
        '--board', '-b',
        help='Only process topics for this exam board'
    )
    run_parser.add_argument(
        '--subject', '-s',
        help='Only process topics for this subject'
    )
    run_parser.add_argument(
        '--pilot',
        action='store_true',
        help='Pilot run on the configured board/subject with a small topic cap'
    )
    run_parser.add_argument(
        '--limit', '-n',
        type=int,
        help='Process at most this many pending topics'
    )
    run_parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Report pending counts and estimated cost without calling any API'
    )
    run_parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip the confirmation delay for large runs'
    )

    # Status command
    status_parser = subparsers.add_parser(
        'status',
        help='Show metadata coverage'
    )
    status_parser.add_argument(
        '--board', '-b',
        help='Only count topics for this exam board'
    )
    status_parser.add_argument(
        '--subject', '-s',
        help='Only count topics for this subject'
    )

    # Import command
    import_parser = subparsers.add_parser(
        'import-topics',
        help='Load topic rows from a JSON or YAML file into the SQLite store'
    )
    import_parser.add_argument(
        'file',
        help='File holding a list of topic rows (or a mapping with a "topics" list)'
    )

    # Show command
    show_parser = subparsers.add_parser(
        'show',
        help='Show the stored metadata for one topic'
    )
    show_parser.add_argument(
        'topic_id',
        help='Topic id to look up'
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    try:
        config = reload_config(args.config) if args.config else get_config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        return 1

    # Initialize logging
    log_level = "DEBUG" if args.verbose else config.logging.level
    setup_logging(
        level=log_level,
        log_file=config.logging.file,
        json_format=config.logging.json_format,
        console=True,
        max_bytes=config.logging.max_bytes,
        backup_count=config.logging.backup_count,
    )

    # Route to command handler
    commands = {
        'run': cmd_run,
        'status': cmd_status,
        'import-topics': cmd_import_topics,
        'show': cmd_show,
    }

    try:
        return commands[args.command](args, config)
    except ConfigurationError as e:
        print(f"\nConfiguration error: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n\nInterrupted by user.")
        return 130
    except TopicMetadataError as e:
        logger.exception(f"Error: {e}")
        print(f"\nError: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
