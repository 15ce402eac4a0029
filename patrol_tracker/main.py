"""Replay a recorded fix log through the patrol engine.

Usage examples:

    # Replay a CSV log against a checkpoint catalog and print the summary
    python -m patrol_tracker --fixes patrol.csv --catalog checkpoints.json \
        --guard guard-7 --auto-confirm

    # Persist the session record and stream events to an HTTP relay
    python -m patrol_tracker --fixes patrol.jsonl --output-dir sessions \
        --relay-url https://relay.example.org
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from typing import List, Optional, Sequence

from .broadcast import Broadcaster, HttpRelayTransport
from .collaborators import CheckpointCatalog, JsonFileCatalog, SensorSample, StaticCatalog
from .config import RELAY_URL
from .errors import GeofenceError, PatrolError
from .models import Fix, HeadingSample, PatrolSummary
from .persistence import JsonFilePersistenceSink, NullPersistenceSink
from .sensors import FileSensorSource
from .service import PatrolService
from .utils import format_distance, format_duration, format_speed

LOGGER = logging.getLogger("patrol_tracker")


def _setup_logging(level: str = "INFO") -> None:
    if not logging.getLogger().hasHandlers():
        logging.basicConfig(
            level=getattr(logging, level.upper(), logging.INFO),
            format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        )
    else:
        logging.getLogger().setLevel(level.upper())


class ReplayClock:
    """Clock that follows the timestamps of the samples being replayed."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def advance_to(self, moment: datetime) -> None:
        if moment > self.current:
            self.current = moment

    def __call__(self) -> datetime:
        return self.current


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="patrol-tracker",
        description="Replay a recorded patrol through the tracking engine.",
    )
    parser.add_argument(
        "--fixes", required=True, help="CSV or JSON lines file with recorded samples"
    )
    parser.add_argument("--catalog", help="JSON checkpoint catalog")
    parser.add_argument("--guard", default="guard", help="Guard identifier")
    parser.add_argument("--area", help="Area id used to select catalog checkpoints")
    parser.add_argument(
        "--auto-confirm",
        action="store_true",
        help="Confirm each checkpoint as soon as the replay enters its radius",
    )
    parser.add_argument("--notes", default="", help="Notes attached on finish")
    parser.add_argument(
        "--output-dir", help="Directory for JSON session records (default: none)"
    )
    parser.add_argument(
        "--relay-url",
        default=RELAY_URL or None,
        help="HTTP relay that fans events out to observers",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (default: INFO)",
    )
    return parser


def _try_confirm(service: PatrolService, session_id: str, fix: Fix) -> None:
    candidate = service.nearby_checkpoint(session_id)
    if candidate is None or candidate.too_soon:
        return
    try:
        visit = service.confirm_checkpoint(
            session_id, candidate.checkpoint.id, fix, "confirmed during replay"
        )
    except GeofenceError as exc:
        LOGGER.info("Checkpoint %s not confirmed: %s", candidate.checkpoint.id, exc)
        return
    LOGGER.info(
        "Confirmed checkpoint %s at %.1fm (#%d)",
        visit.checkpoint_id,
        visit.distance_m,
        visit.sequence_number,
    )


def replay(
    samples: Sequence[SensorSample],
    *,
    catalog: CheckpointCatalog,
    persistence=None,
    relay_url: Optional[str] = None,
    guard_id: str = "guard",
    area_id: Optional[str] = None,
    auto_confirm: bool = False,
    notes: str = "",
) -> PatrolSummary:
    """Drive one full patrol from ``samples`` and return its summary."""

    fixes = [sample for sample in samples if isinstance(sample, Fix)]
    if not fixes:
        raise ValueError("the sample log contains no position fixes")
    first = fixes[0]
    clock = ReplayClock(first.captured_at)
    broadcaster = Broadcaster()
    service = PatrolService(
        catalog,
        persistence or NullPersistenceSink(),
        broadcaster,
        clock=clock,
    )
    transport = HttpRelayTransport(relay_url) if relay_url else None
    try:
        session_id = service.start_patrol(guard_id, first, area_id)
        if transport is not None:
            service.subscribe(session_id, transport)
        started = False
        for sample in samples:
            if sample is first and not started:
                started = True
                continue
            clock.advance_to(sample.captured_at)
            if isinstance(sample, HeadingSample):
                service.submit_heading(session_id, sample.heading_deg).result()
                continue
            result = service.submit_fix(session_id, sample).result()
            if auto_confirm and result.accepted:
                _try_confirm(service, session_id, sample)
        return service.finish_patrol(session_id, None, notes)
    finally:
        service.shutdown()
        if transport is not None:
            transport.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the ``patrol-tracker`` command."""

    parser = _build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.log_level)

    catalog: CheckpointCatalog = (
        JsonFileCatalog(args.catalog) if args.catalog else StaticCatalog()
    )
    persistence = (
        JsonFilePersistenceSink(args.output_dir)
        if args.output_dir
        else NullPersistenceSink()
    )
    try:
        samples = list(FileSensorSource(args.fixes))
    except (OSError, ValueError) as exc:
        LOGGER.error("Failed to read sample log '%s': %s", args.fixes, exc)
        return 1

    try:
        summary = replay(
            samples,
            catalog=catalog,
            persistence=persistence,
            relay_url=args.relay_url,
            guard_id=args.guard,
            area_id=args.area,
            auto_confirm=args.auto_confirm,
            notes=args.notes,
        )
    except (PatrolError, ValueError) as exc:
        LOGGER.error("Replay failed: %s", exc)
        return 1

    average = (
        summary.total_distance_m / summary.elapsed_seconds if summary.elapsed_seconds else 0.0
    )
    LOGGER.info(
        "Patrol %s: %s in %s (avg %s), %d/%d mandatory checkpoints",
        summary.session_id,
        format_distance(summary.total_distance_m),
        format_duration(summary.elapsed_seconds),
        format_speed(average),
        summary.mandatory_visited,
        summary.mandatory_total,
    )
    json.dump(summary.to_record(), sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


__all__ = ["main", "replay", "ReplayClock"]
