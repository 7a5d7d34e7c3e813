"""
Error taxonomy for the table client.

None of these are fatal: the poll loop and the mirror notification path stay
live after any of them, and the next successful fetch heals the view.
"""
from typing import Optional


class TableClientError(Exception):
    """Base class for every error raised by the table client."""


class TransientFetchError(TableClientError):
    """Network or server failure on fetch-state or a command."""

    def __init__(self, command: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{command}: {message}")
        self.command = command
        self.status_code = status_code


class StaleResponseError(TableClientError):
    """A result belonging to a request that has since been superseded."""


class RosterMismatchError(TableClientError):
    """The local participant is missing from the roster."""


class InvalidSelectionError(TableClientError):
    """A command was submitted with the wrong number or kind of selections."""


class CommandBusyError(TableClientError):
    """A non-superseding command slot already has an outstanding request."""
