"""Shared-state managers for the orchestrator.

Each module owns one persisted table (ports, jobs, poll items).  Every
read-modify-write happens under that table's named lock, and managers raise
domain exceptions (``LookupError``, ``ValueError``, ``RuntimeError``), never
CLI errors -- that translation is the CLI's responsibility.
"""
