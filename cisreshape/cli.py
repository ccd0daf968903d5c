"""Command line entry point.

Reshapes every patient listed in a manifest into one workbook each, or with
--catalog only lists the parameter names found in each patient's exports.
"""

import argparse
import logging
import sys
from pathlib import Path

from cisreshape.data.loaders import ManifestLoader
from cisreshape.errors import ReshapeError
from cisreshape.orchestrator import ReshapeConfig, ReshapeOrchestrator
from cisreshape.pipeline.aggregator import aggregate_batches, parameter_catalog
from cisreshape.types import DuplicatePolicy

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cisreshape",
        description="Reshape monitoring system exports into per-patient workbooks",
    )
    parser.add_argument("--manifest", type=str, required=True,
                        help="CSV with patient_id, event_paths and optional lab_path")
    parser.add_argument("--config", type=str, default=None,
                        help="YAML configuration (categories, multi-valued parameters, ...)")
    parser.add_argument("--data-root", type=str, default=None,
                        help="Root for relative manifest paths (default: manifest directory)")
    parser.add_argument("--output-dir", type=str, default="output",
                        help="Directory receiving one workbook per patient")
    parser.add_argument("--lenient", action="store_true",
                        help="Resolve conflicting scalar observations by keeping the last value")
    parser.add_argument("--catalog", action="store_true",
                        help="Only print the parameter names found per patient")
    parser.add_argument("--quiet", action="store_true",
                        help="Disable the progress bar")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable debug logging")
    return parser


def print_catalog(orchestrator: ReshapeOrchestrator, manifest: ManifestLoader) -> dict[str, str]:
    """Print the parameter catalog of every patient.

    Returns:
        Dictionary patient_id -> error message for unreadable patients
    """
    failures = {}
    for i in range(len(manifest)):
        entry = manifest[i]
        patient_id = str(entry["patient_id"])
        try:
            batches = orchestrator.event_loader.load_all(manifest.event_paths(entry))
            records = aggregate_batches(batches, orchestrator.config.column_map)
        except (ReshapeError, OSError) as e:
            logger.error(f"Patient {patient_id} skipped: {e}")
            failures[patient_id] = str(e)
            continue
        names = parameter_catalog(records)
        print(f"{patient_id}: {len(names)} parameter(s)")
        for name in names:
            print(f"  {name}")
    return failures


def main(argv=None) -> int:
    """Run the reshape pipeline over a manifest."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    config = ReshapeConfig.from_yaml(args.config) if args.config else ReshapeConfig()
    if args.lenient:
        config.duplicate_policy = DuplicatePolicy.LENIENT
    logger.info(f"Duplicate scalar policy: {config.duplicate_policy.value}")

    orchestrator = ReshapeOrchestrator(config)
    manifest = ManifestLoader(args.manifest, Path(args.data_root) if args.data_root else None)

    if args.catalog:
        failures = print_catalog(orchestrator, manifest)
        return 1 if failures else 0

    failures = orchestrator.process_manifest(
        manifest, args.output_dir, show_progress=not args.quiet
    )
    if failures:
        logger.error(f"{len(failures)} patient(s) failed: {sorted(failures)}")
        return 1
    logger.info(f"Workbooks saved to: {args.output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
