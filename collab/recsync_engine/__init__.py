"""
RecSync Engine - field-level optimistic synchronization for shared records.

This package lets many editors mutate shared records (e.g. event
participants) through a UI that must feel instantaneous, while a remote
record store stays the durable source of truth:
- Draft Buffer holding unsaved per-field edits for one editing session
- Coalescing scheduler writing one patch per record after a quiet period
- Audit writer appending an immutable change log entry per committed write
- Reconciliation subscriber merging remote changes without clobbering drafts
- Restore engine rolling a field or status back to a logged value

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌──────────────────┐
    │  UI / HTTP  │────▶│ DraftBuffer │────▶│    Coalescing    │
    │  (session)  │     │  (per view) │     │    Scheduler     │
    └──────┬──────┘     └──────▲──────┘     └────────┬─────────┘
           │                   │                     │ update()
           │ restore           │ reconcile           ▼
    ┌──────▼──────┐     ┌──────┴──────┐     ┌──────────────────┐
    │   Restore   │────▶│ Change feed │◀────│   Record Store   │
    │   Engine    │     └─────────────┘     └────────┬─────────┘
    └──────┬──────┘                                  │ committed
           │                                         ▼
           │                                ┌──────────────────┐
           └───────────────────────────────▶│  Audit Writer /  │
                                            │ Change Log Store │
                                            └──────────────────┘

Invariants:
    - The record store is the only shared mutable resource
    - One write path per record at a time (flush and restore serialize)
    - Change log entries are append-only; restores add new entries
    - Draft Buffer operations never block on I/O

How to change safely:
    - New store back-ends must implement the protocols in stores/base.py
    - Keep flush-before-restore as a hard precondition
    - Test every race with ManualTimerFactory and store gates

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
