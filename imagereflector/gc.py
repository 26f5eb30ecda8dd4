"""Periodic garbage collection of the tag database."""

from __future__ import annotations

import logging
import threading

from .database import NoRewriteError, TagDatabase

MAX_DISCARDS = 1000
"""Upper bound on collection passes in one run."""


class GarbageCollector:
    """Runs the tag database's garbage collector at a fixed interval."""

    def __init__(self, name: str, db: TagDatabase, interval: float, discard_ratio: float):
        self.name = name
        self.db = db
        self.interval = interval
        self.discard_ratio = discard_ratio
        self.log = logging.getLogger(__name__).getChild(name)

    def start(self, stop_event: threading.Event) -> None:
        """Collect garbage every ``interval`` seconds until ``stop_event`` is set."""
        self.log.info("Starting Badger GC")
        while not stop_event.wait(self.interval):
            self.discard_value_log_files()
        self.log.info("Stopped Badger GC")

    def discard_value_log_files(self) -> int:
        """Run collection passes until nothing is left; return how many succeeded."""
        self.log.debug("Running Badger GC")
        for count in range(MAX_DISCARDS):
            try:
                self.db.run_value_log_gc(self.discard_ratio)
            except NoRewriteError:
                self.log.debug("Ran Badger GC, discarded_vlogs=%d", count)
                return count
            except Exception:
                self.log.exception("Badger GC Error, discarded_vlogs=%d", count)
                return count
        self.log.error(
            "Warning: Badger GC ran for maximum discards, discarded_vlogs=%d", MAX_DISCARDS
        )
        return MAX_DISCARDS