#!/usr/bin/env python3
"""Replay a recorded GPX track through the trip tracker.

Starts a trip (or resumes the one left in the store), feeds every GPX point
as a live fix, ends the trip and optionally exports the history as CSV.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import date
from pathlib import Path

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import config
from core.http.session import cleanup_session
from core.redis import close_shared_redis
from tracking.position_source import PositionSource
from tracking.providers.gpx_replay import GpxReplayProvider
from tracking.services.trip_store import create_trip_store
from tracking.services.trip_tracker import TripTracker
from trips.services.trip_export_service import export_filename, write_trips_csv
from trips.services.trip_sync_client import TripSyncClient
from trips.services.trip_sync_mirror import TripSyncMirror

logger = logging.getLogger("replay_gpx_trip")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Replay a GPX track as a business trip and archive it.",
    )
    parser.add_argument("gpx", type=Path, help="GPX file to replay.")
    parser.add_argument("--purpose", default="GPX replay", help="Trip purpose.")
    parser.add_argument(
        "--start-odometer",
        type=float,
        default=0.0,
        help="Odometer reading at trip start.",
    )
    parser.add_argument(
        "--end-odometer",
        type=float,
        default=None,
        help="Odometer reading at trip end (defaults to start + GPS distance).",
    )
    parser.add_argument(
        "--store",
        choices=config.STORE_BACKENDS,
        default=None,
        help="Persistence backend (defaults to TRIP_STORE_BACKEND).",
    )
    parser.add_argument(
        "--speedup",
        type=float,
        default=None,
        help="Replay speed multiplier; omit to replay without delays.",
    )
    parser.add_argument(
        "--export-dir",
        type=Path,
        default=None,
        help="Write business_trips_<date>.csv into this directory.",
    )
    parser.add_argument(
        "--sync",
        action="store_true",
        help="Mirror the trip to TRIP_SYNC_API_URL.",
    )
    return parser.parse_args()


async def main() -> int:
    args = parse_args()
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    provider = GpxReplayProvider.from_file(args.gpx, speedup=args.speedup)
    tracker = TripTracker(PositionSource(provider), create_trip_store(args.store))
    mirror = TripSyncMirror(TripSyncClient()) if args.sync else None
    if mirror is not None:
        tracker.add_listener(mirror)

    try:
        await tracker.initialize()
        for diagnostic in tracker.diagnostics:
            logger.warning("Store diagnostic: %s %s", diagnostic.message, diagnostic.details)

        if tracker.is_active:
            logger.info("Resuming trip %s", tracker.current_trip.id)
        else:
            result = await tracker.start_trip(args.purpose, args.start_odometer)
            if not result.ok:
                print(f"Could not start trip: {result.error.message}")
                return 1

        await provider.finished.wait()
        await tracker.drain()

        trip = tracker.current_trip
        end_odometer = args.end_odometer
        if end_odometer is None:
            end_odometer = trip.start_odometer + round(trip.distance_km, 1)

        result = await tracker.end_trip(end_odometer)
        if not result.ok:
            print(f"Could not end trip: {result.error.message}")
            return 1

        completed = result.trip
        print(f"Trip {completed.id} completed")
        print(f"  points:        {len(completed.route)}")
        print(f"  distance:      {completed.distance_km:.2f} km")
        print(f"  duration:      {completed.duration_seconds} s")
        print(f"  average speed: {completed.average_speed_kmh:.1f} km/h")
        print(f"  dropped:       {tracker.dropped_samples} out-of-order sample(s)")

        if args.export_dir is not None:
            path = args.export_dir / export_filename(date.today())
            count = write_trips_csv(path, tracker.history)
            print(f"Exported {count} trip(s) to {path}")

        if mirror is not None:
            await mirror.drain()
        return 0
    finally:
        await tracker.close()
        await provider.aclose()
        if mirror is not None:
            await mirror.aclose()
        await cleanup_session()
        await close_shared_redis()


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
