"""Execution metadata store, chunk processor and observability hooks."""
