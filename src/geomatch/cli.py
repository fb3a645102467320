#!/usr/bin/env python3
"""
geomatch CLI

Command-line interface for blocking candidates and matching targets.
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

from .cache.models import MatchStatus
from .cache.result_store import ResultStore
from .config_manager import ConfigManager, MatchConfig
from .core.errors import ConfigurationError
from .pipeline import MatchPipeline
from .utils.record_loader import RecordLoader

logger = logging.getLogger("geomatch")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="geomatch",
        description="geomatch - Link named targets to geocoded candidates by name similarity and proximity",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Build blocks and match all targets
  %(prog)s targets.csv --candidates candidates.csv --regions regions.gpkg

  # Use custom configuration
  %(prog)s targets.csv --candidates candidates.csv --regions regions.gpkg --config match.yaml

  # Resume an interrupted run using the saved blocks
  %(prog)s targets.csv --config match.yaml

  # Write an example configuration file
  %(prog)s --example-config match.yaml

  # Show stored result statistics
  %(prog)s --stats
        """
    )

    # Input/Output options
    parser.add_argument(
        'targets',
        nargs='?',
        type=Path,
        help='Target CSV/Excel file (one row per target and period)'
    )
    parser.add_argument(
        '--candidates',
        type=Path,
        help='Candidate CSV/Excel file with x/y columns, or a point layer'
    )
    parser.add_argument(
        '--regions',
        type=Path,
        help='Region layer (top-level units and lower-level regions)'
    )
    parser.add_argument(
        '-o', '--output',
        type=Path,
        help='Output CSV file for results (default: <output_dir>/match_results_TIMESTAMP.csv)'
    )
    parser.add_argument(
        '-r', '--review-queue',
        type=Path,
        help='Output CSV file for review queue (default: <output_dir>/review_queue_TIMESTAMP.csv)'
    )

    # Configuration options
    parser.add_argument(
        '-c', '--config',
        type=Path,
        help='Configuration YAML file (default: built-in settings)'
    )
    parser.add_argument(
        '--crs',
        help='Projected CRS of the input coordinates, recorded in block artifacts'
    )
    parser.add_argument(
        '--example-config',
        type=Path,
        metavar='OUTPUT',
        help='Write an example configuration file and exit'
    )

    # Run behavior
    parser.add_argument(
        '--rebuild-blocks',
        action='store_true',
        help='Rebuild blocks even when saved blocks exist (implied by --candidates/--regions)'
    )
    parser.add_argument(
        '--no-resume',
        action='store_true',
        help='Reprocess targets that already have stored results'
    )
    parser.add_argument(
        '--workers',
        type=int,
        help='Override execution.worker_count'
    )

    # Result store operations
    parser.add_argument(
        '--export',
        type=Path,
        metavar='OUTPUT',
        help='Export stored results to CSV and exit'
    )
    parser.add_argument(
        '--stats',
        action='store_true',
        help='Show stored result statistics and exit'
    )
    parser.add_argument(
        '--clear-results',
        action='store_true',
        help='Delete all stored results (WARNING: destructive!)'
    )
    parser.add_argument(
        '-y', '--yes',
        action='store_true',
        help='Do not ask for confirmation'
    )

    # Output options
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Verbose output'
    )
    parser.add_argument(
        '-q', '--quiet',
        action='store_true',
        help='Minimal output (errors only)'
    )
    parser.add_argument(
        '--no-progress',
        action='store_true',
        help='Disable progress indicators'
    )

    return parser


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def load_config(args) -> MatchConfig:
    """Load configuration from file (or defaults) and apply CLI overrides."""
    manager = ConfigManager(args.config)
    if args.config:
        config = manager.load()
    else:
        config = MatchConfig()

    if args.workers is not None:
        data = config.to_dict()
        data["worker_count"] = args.workers
        config = manager.from_dict(data)

    return config


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose, args.quiet)

    if args.example_config:
        ConfigManager().save_example_config(args.example_config)
        if not args.quiet:
            print(f"✅ Wrote example configuration to {args.example_config}")
        return 0

    # Validate arguments
    if not args.targets and not args.export and not args.stats and not args.clear_results:
        parser.error("targets is required unless using --export, --stats, --clear-results or --example-config")

    try:
        config = load_config(args)
    except (ConfigurationError, FileNotFoundError) as e:
        print(f"❌ Configuration error: {e}", file=sys.stderr)
        return 1

    try:
        result_store = ResultStore(config.results_db)
    except RuntimeError as e:
        print(f"❌ Error opening result store: {e}", file=sys.stderr)
        return 1

    # Handle result store operations
    if args.clear_results:
        if not args.yes:
            print("⚠️  WARNING: This will delete all stored results!")
            response = input("Are you sure? (yes/no): ")
            if response.lower() != 'yes':
                print("Aborted.")
                return 0
        result_store.clear()
        print("✅ Results cleared")
        return 0

    if args.stats:
        show_statistics(result_store)
        return 0

    pipeline = MatchPipeline(config, result_store=result_store, crs=args.crs)

    if args.export:
        pipeline.export_results(args.export)
        return 0

    # Load inputs
    loader = RecordLoader(normalize_columns=True)
    try:
        if not args.quiet:
            print(f"📊 Loading targets from {args.targets}...")
        targets = loader.load_targets(args.targets)

        # explicit inputs always rebuild; saved blocks must match current settings
        rebuild = args.rebuild_blocks or bool(args.candidates or args.regions)
        if not rebuild and pipeline.saved_blocks_current():
            if not args.quiet:
                print(f"📦 Loading saved blocks from {config.block_dir}...")
            pipeline.load_blocks_for(targets)
        else:
            if not args.candidates or not args.regions:
                if not rebuild and pipeline.block_store.exists():
                    print(
                        "❌ Error: saved blocks were built with different settings; "
                        "pass --candidates and --regions to rebuild them",
                        file=sys.stderr,
                    )
                else:
                    print(
                        "❌ Error: --candidates and --regions are required to build blocks",
                        file=sys.stderr,
                    )
                return 1
            candidates = loader.load_candidates(args.candidates)
            regions = loader.load_regions(args.regions)
            if not args.quiet:
                print(f"📦 Building blocks from {len(candidates)} candidates and {len(regions)} regions...")
            pipeline.build_blocks(candidates, regions, save=True)
            if not pipeline.partition_stats["top_level_units"]:
                print(
                    f"❌ Error: no regions at level {config.top_level!r}; check region levels and top_level",
                    file=sys.stderr,
                )
                return 1
    except (FileNotFoundError, ValueError) as e:
        print(f"❌ Error loading inputs: {e}", file=sys.stderr)
        return 1

    # Run
    if not args.quiet:
        print("\n🚀 Running matcher...")

    try:
        result = pipeline.run(
            targets,
            resume=not args.no_resume,
            show_progress=not (args.no_progress or args.quiet),
        )
    except KeyboardInterrupt:
        pipeline.request_stop()
        print("\n⚠️  Interrupted", file=sys.stderr)
        return 130

    # Generate outputs
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    output_dir = Path(config.output_dir)

    output_path = args.output or output_dir / f'match_results_{timestamp}.csv'
    pipeline.export_results(output_path)

    review_path = args.review_queue or output_dir / f'review_queue_{timestamp}.csv'
    pipeline.generate_review_queue(review_path)

    summary_path = pipeline.write_summary(result, targets)
    if not args.quiet:
        print(f"📁 Summary written to {summary_path}")

    if result.interrupted:
        print(
            f"⚠️  Run interrupted: {result.not_dispatched} targets not dispatched; "
            f"rerun the same command to resume",
            file=sys.stderr,
        )
        return 130

    return 0


def show_statistics(result_store: ResultStore) -> None:
    """Show stored result statistics."""
    stats = result_store.get_statistics()
    total = stats['total_results']

    print("\n" + "="*60)
    print("📊 Match Result Statistics")
    print("="*60)
    print(f"Total Results:     {total}")
    print()
    print("Status Distribution:")
    for status in MatchStatus:
        count = stats['statuses'].get(status.value, 0)
        percentage = count / total * 100 if total > 0 else 0
        print(f"  {status.value:20s}: {count:6d} ({percentage:5.1f}%)")

    if stats['reasons']:
        print()
        print("Reasons:")
        for reason, count in sorted(stats['reasons'].items()):
            print(f"  {reason:30s}: {count:6d}")

    if stats['avg_string_dist_matched'] is not None:
        print()
        print(f"Avg string distance (matched):  {stats['avg_string_dist_matched']:.4f}")
        print(f"Avg spatial distance (matched): {stats['avg_spatial_dist_matched']:.1f}")
    print("="*60)


if __name__ == "__main__":
    sys.exit(main())
