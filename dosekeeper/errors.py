from __future__ import annotations


class DoseKeeperError(Exception):
    pass


class StoreError(DoseKeeperError):
    """Remote store could not be reached or rejected the request.

    Transient: callers log it and let the next trigger retry.
    """


class ActionNotAllowed(DoseKeeperError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class UnknownReminderError(DoseKeeperError):
    pass
