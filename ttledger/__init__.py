"""
ttledger - a personal time-tracking ledger on a versioned entity store.

This package implements:
- An append-only, bitemporal store for projects and time blocks
  (SQLite, one file per user)
- As-of reads, hierarchical project names, and a filter algebra for
  searching time blocks
- A punch-in / punch-out façade
- A Teamwork sync client and the `tt` command-line tool

Architecture:
    ┌─────────┐   ┌──────────────┐   ┌──────────────────────────┐
    │ tt CLI  │──▶│ TimeTracker  │──▶│ ProjectStore             │
    └─────────┘   └──────────────┘   │ TimeblockStore (filters) │
    ┌─────────┐                      └────────────┬─────────────┘
    │Teamwork │─────────────────────────────────▶ │
    │  sync   │                                   ▼
    └─────────┘                      ┌──────────────────────────┐
                                     │ SQLite (version rows)    │
                                     └──────────────────────────┘

Invariants:
    - History is never overwritten; every change is a new version row
    - Entity ids are never reused
    - One process writes a ledger at a time

How to change safely:
    - Schema changes go through numbered migrations
    - Keep the external id prefixes used by sync stable

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
