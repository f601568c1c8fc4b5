"""Parallel task execution, rule file parsing and job queues for build pipelines."""

__version__ = "0.1.0"

__all__ = ["par", "par_cli", "rules", "jobqueue", "queue_cli"]