"""Remote service provisioning over SSH with queued, crash-safe jobs."""

__version__ = "0.1.0"
