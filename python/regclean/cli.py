#!/usr/bin/env python3
"""
regclean: delete registry images that no Kubernetes workload uses.

Images referenced by pods, replica sets or controller revisions in the
configured contexts are kept. Everything else in the registry is a
deletion candidate, subject to the retention filters (include/exclude
name patterns and a minimum age).

Exit codes: 0 on success, 1 on a fatal error, 2 when any deletion failed.
"""

import argparse
import os
import sys
from datetime import datetime, timezone
from typing import List, Optional

from regclean.auth import resolve_credentials
from regclean.cluster_images import ClusterImageSource, collect_cluster_images
from regclean.config_manager import ConfigManager, ConfigValidationError
from regclean.deletion import DeletionAbortedError, DeletionOrchestrator, yes_no
from regclean.error_utils import ActionableError, create_config_error
from regclean.image_metadata import ImageMetadataService
from regclean.logging_utils import get_logger, log_exception, parse_level, setup_logging
from regclean.metadata_cache import open_metadata_cache
from regclean.reconcile import reconcile
from regclean.registry_client import RegistryClient, RegistryError
from regclean.report_utils import build_run_summary, format_repository_table, log_run_summary, save_json, sizeof_fmt
from regclean.retention import RetentionFilterConfig, filter_candidates

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_DELETE_FAILED = 2


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="regclean",
        description="Delete registry images that are not used by any Kubernetes workload",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # See what would be deleted
  regclean --registry-url https://registry.example.com --contexts prod,staging --dry-run

  # Delete images older than 60 days, asking before each one
  regclean --registry-url https://registry.example.com --contexts prod --min-age 60

  # ECR, no per-image prompts (one confirmation up front)
  regclean --registry-url 123456789.dkr.ecr.us-west-2.amazonaws.com --aws --yolo
        """,
    )
    parser.add_argument("--config", help="Path to config.yaml (default: REGCLEAN_CONFIG_FILE or ./config.yaml)")
    parser.add_argument("--dry-run", action="store_true", default=None, help="Report what would be deleted without deleting")
    parser.add_argument("--yolo", action="store_true", default=None,
                        help="Delete without per-image confirmation (asks once before starting)")
    parser.add_argument("--aws", action="store_true", default=None, help="Use AWS ECR credentials")
    parser.add_argument("--min-age", type=int, help="Minimum age in days of images to delete (default: 30)")
    parser.add_argument("--registry-url", help="Registry URL")
    parser.add_argument("--registry-username", help="Registry username")
    parser.add_argument("--registry-password", help="Registry password")
    parser.add_argument("--contexts", help="Comma-separated Kubernetes contexts to check for images")
    parser.add_argument("--exclude-name-filters", help="Comma-separated patterns; matching repositories are kept")
    parser.add_argument("--include-name-filters",
                        help="Comma-separated patterns; only matching repositories are considered")
    parser.add_argument("--kubeconfig", help="Path to the kubeconfig file")
    parser.add_argument("--cache-backend", choices=["disk", "sqlite"], help="Metadata cache backend")
    parser.add_argument("--cache-dir", help="Metadata cache directory")
    parser.add_argument("--report-file", help="Write a JSON run report to this path")
    parser.add_argument("-v", "--verbosity", default=os.environ.get("REGCLEAN_VERBOSITY", "info"),
                        help="Log level (debug, info, warn, error, fatal)")
    parser.add_argument("--print-config", action="store_true", help="Print the effective configuration and exit")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ConfigManager:
    """Load configuration and apply command line overrides, then validate"""
    config_manager = ConfigManager(config_file=args.config, validate=False)
    config_manager.override(
        registry_url=args.registry_url,
        registry_username=args.registry_username,
        registry_password=args.registry_password,
        credentials_provider="ecr" if args.aws else None,
        kubeconfig=args.kubeconfig,
        contexts=args.contexts,
        min_age_days=args.min_age,
        exclude_name_filters=args.exclude_name_filters,
        include_name_filters=args.include_name_filters,
        cache_backend=args.cache_backend,
        cache_dir=args.cache_dir,
        dry_run=args.dry_run,
        yolo=args.yolo,
    )
    config_manager.validate_config()
    return config_manager


def _retry_settings(config_manager: ConfigManager) -> dict:
    return {
        "max_retries": config_manager.get_max_retries(),
        "initial_delay": config_manager.get_retry_initial_delay(),
        "max_delay": config_manager.get_retry_max_delay(),
        "exponential_base": config_manager.get_retry_exponential_base(),
        "jitter": config_manager.get_retry_jitter(),
    }


def _candidate_sizes(candidates, metadata_service) -> int:
    """Log each candidate and return the combined size"""
    total = 0
    for ref in candidates:
        try:
            metadata = metadata_service.lookup(ref.repository, ref.tag)
        except RegistryError as e:
            logger.debug(f"Deleting {ref.repository}:{ref.tag} (size unknown: {e})")
            continue
        total += metadata.total_size_bytes
        created = metadata.created_at.strftime("%Y-%m-%d %H:%M:%S")
        logger.debug(f"Deleting {ref.repository}:{ref.tag} created={created} size={sizeof_fmt(metadata.total_size_bytes)}")
    return total


def run(config_manager: ConfigManager, confirm=yes_no, report_file: Optional[str] = None) -> int:
    """Run one cleanup pass. Returns the process exit code.

    Raises:
        ActionableError: cluster or registry access failed
        DeletionAbortedError: unattended deletion was not confirmed
    """
    dry_run = config_manager.is_dry_run()
    if dry_run:
        logger.info("DRY RUN: no images will be deleted")

    logger.info("Fetching images")
    source = ClusterImageSource(config_manager.get_kubeconfig())
    cluster_refs = collect_cluster_images(source, config_manager.get_contexts())

    logger.info("Fetching images from registry")
    username, password = resolve_credentials(config_manager)
    registry = RegistryClient(
        config_manager.get_registry_url(),
        username=username,
        password=password,
        timeout=config_manager.get_registry_timeout(),
        verify_tls=config_manager.get_verify_tls(),
        retry_settings=_retry_settings(config_manager),
    )
    registry.ping()
    registry_refs = registry.list_images()
    logger.info(f"Collected {len(registry_refs)} images from registry")

    result = reconcile(cluster_refs, registry_refs)

    cache = open_metadata_cache(
        config_manager.get_cache_backend(),
        config_manager.get_cache_dir(),
        lock_timeout=config_manager.get_cache_lock_timeout(),
        poll_interval=config_manager.get_cache_lock_poll_interval(),
    )
    try:
        metadata_service = ImageMetadataService(registry, cache)
        filter_config = RetentionFilterConfig(
            min_age_days=config_manager.get_min_age_days(),
            exclude_name_patterns=config_manager.get_exclude_name_filters(),
            include_name_patterns=config_manager.get_include_name_filters(),
        )
        filtered = filter_candidates(result.to_delete, filter_config, metadata_service.lookup)
        result.filtered_count = filtered.filtered_count
        candidates = filtered.candidates

        total = _candidate_sizes(candidates, metadata_service)
        logger.info(
            f"Found {len(candidates)} images to delete ({sizeof_fmt(total)}) "
            f"and {len(result.to_keep) + result.filtered_count} to keep"
        )
        logger.debug(f"Metadata cache: {metadata_service.hits} hits, {metadata_service.misses} misses")

        if not candidates:
            logger.info("Nothing to delete")
            outcomes = []
        else:
            print(format_repository_table(candidates))
            orchestrator = DeletionOrchestrator(registry, metadata_service.lookup, confirm=confirm)
            outcomes = orchestrator.execute(
                candidates, confirm_per_image=not config_manager.is_yolo(), dry_run=dry_run
            )
    finally:
        cache.close()

    summary = build_run_summary(
        considered=len(registry_refs),
        kept=len(result.to_keep),
        filter_stats=filtered.stats,
        outcomes=outcomes,
        dry_run=dry_run,
    )
    log_run_summary(summary)

    if report_file or config_manager.should_save_json_report():
        report = {
            "generated_at": datetime.now(timezone.utc),
            "registry": config_manager.get_registry_url(),
            "contexts": config_manager.get_contexts(),
            "summary": summary,
            "kept": result.to_keep,
            "outcomes": outcomes,
        }
        if report_file:
            save_json(report_file, report)
        else:
            save_json(os.path.join(config_manager.get_output_dir(), "regclean-report.json"), report, timestamp=True)

    return EXIT_DELETE_FAILED if summary["failed"] else EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_arguments(argv)

    try:
        setup_logging(parse_level(args.verbosity))
    except ValueError as e:
        logger.error(create_config_error("verbosity", args.verbosity, str(e)).format_message())
        return EXIT_FATAL

    try:
        config_manager = build_config(args)
    except ConfigValidationError as e:
        logger.error(str(e))
        return EXIT_FATAL

    if args.print_config:
        config_manager.print_config()
        return EXIT_OK

    try:
        return run(config_manager, report_file=args.report_file)
    except ActionableError as e:
        logger.error(e.format_message())
        return EXIT_FATAL
    except DeletionAbortedError as e:
        logger.error(str(e))
        return EXIT_FATAL
    except ConfigValidationError as e:
        logger.error(str(e))
        return EXIT_FATAL
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_FATAL
    except Exception as e:
        log_exception(logger, "Unexpected error during cleanup", exc_info=e)
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
