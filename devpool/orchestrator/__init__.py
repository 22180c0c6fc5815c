"""Orchestration core: locks, port pool, job table, poll-and-retry engine."""
