"""Contracts for the external capabilities the engine consumes.

Each module defines a ``Protocol`` plus a small reference
implementation used by tests and standalone runs.
"""
