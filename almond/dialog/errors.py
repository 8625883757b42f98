"""
Dialog Errors - Exceptions raised while assembling a program.

Two families live here:

- Errors the state machine reports to the user and recovers from
  (NoDeviceError, UnknownContactError). The current intent is aborted and
  the program goes back to what it was before that intent.
- Errors that propagate to the caller of ``handle`` (MalformedIntentError,
  UnexpectedIntentError, IncompleteProgramError). The session state is left
  untouched so the caller can retry or re-ask the parser.
"""

from typing import Any, Dict, Optional


class DialogError(Exception):
    """Base exception for all dialog errors."""
    pass


class NoDeviceError(DialogError):
    """Raised when no device of the required kind is available."""

    def __init__(self, kind: str, setup: Optional[Dict[str, Any]] = None):
        super().__init__(f"No device of kind '{kind}'")
        self.kind = kind
        self.setup = setup or {}


class UnknownContactError(DialogError):
    """Raised when a remote principal cannot be found in the contacts."""

    def __init__(self, person: str):
        super().__init__(f"Unknown contact '{person}'")
        self.person = person


class IncompleteProgramError(DialogError):
    """Raised when compiling a program that still has unfilled slots."""
    pass


class MalformedIntentError(DialogError):
    """Raised when an intent lacks the fields required by its variant."""
    pass


class UnexpectedIntentError(MalformedIntentError):
    """Raised when a well-formed intent is not acceptable in the current state."""
    pass
