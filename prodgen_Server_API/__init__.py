"""
Top-level package initializer for prodgen_Server_API.

The package hosts the pipeline orchestration service: stage queues, workers,
circuit breaking, dead-letter storage, cron and admin triggers.
"""

__version__ = "0.4.0"
