"""Scheduling of deferred HTTP and Kafka jobs, with an API, an engine and retries."""

__version__ = "0.1.0"