"""Job queue, worker pool, cron scheduler and monitor for the digest pipeline."""

__version__ = "0.1.0"
