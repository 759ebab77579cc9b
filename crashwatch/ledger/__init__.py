"""Debounce Ledger for crashwatch.

Remembers which failures were already reported so that repeated watch
events for the same crash-looping container produce one incident per
cooldown window.

Submodules:
    debounce -- Thread-safe TTL set with atomic try_acquire.
"""

from crashwatch.ledger.debounce import DEFAULT_TTL_SECONDS, DebounceLedger

__all__ = ["DEFAULT_TTL_SECONDS", "DebounceLedger"]
