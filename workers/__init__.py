"""Sync worker: polls pending jobs and runs them on the executor."""
