"""Edit-attribution guard.

Every programmatic mutation of the practice document runs inside
``EditGuard.hold()``. The document-change observer checks ``active`` first
and ignores everything emitted while it is set, which is how our own edits
are told apart from the learner's keystrokes.
"""

from contextlib import asynccontextmanager


class EditGuard:
    def __init__(self):
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    @asynccontextmanager
    async def hold(self):
        """Mark the enclosed mutation as synthetic; released on every exit path."""
        if self._active:
            raise RuntimeError("A programmatic edit is already in flight")
        self._active = True
        try:
            yield
        finally:
            self._active = False
