"""Positioning providers usable with ``PositionSource``."""

from tracking.providers.gpx_replay import GpxReplayProvider, load_gpx_positions

__all__ = ["GpxReplayProvider", "load_gpx_positions"]
