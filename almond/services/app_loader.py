"""
App Loader - Where committed programs go.

A confirmed program leaves the dialog through exactly one of two doors:

- AppLoader.load_app(code)               run it here
- RemoteSender.send_rule(address, code)  hand it to a contact's assistant

Both are fire-and-forget from the dialog's point of view. The in-memory
implementations keep what they received so the HTTP layer can list it and
tests can assert on it.

ContactDirectory resolves the ``person`` of a remote query to a principal.

Usage:
    loader = InMemoryAppLoader()
    remote = InMemoryRemoteSender()
    contacts = InMemoryContactDirectory({"mom": Contact(principal="...", name="Mom")})
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from almond.dialog.schemas import Contact


logger = logging.getLogger("almond.services.app_loader")


# ---------------------------------------------------------------------------
# REMOTE ADDRESSING
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RemoteAddress:
    """
    Addressing triple of a rule delegated to a remote principal.

    Attributes:
        contact: The principal running the rule
        token: Flow token correlating results with this program
        kind_channel: ``<role>:<kind>:<function>`` of the delegated stage
    """
    contact: Contact
    token: str
    kind_channel: str


# ---------------------------------------------------------------------------
# CONTRACTS
# ---------------------------------------------------------------------------

class AppLoader(ABC):
    """Runs compiled programs locally."""

    @abstractmethod
    async def load_app(self, code: str) -> None:
        pass


class RemoteSender(ABC):
    """Transmits compiled programs to a remote principal."""

    @abstractmethod
    async def send_rule(self, address: RemoteAddress, code: str) -> None:
        pass


class ContactDirectory(ABC):
    """Looks up remote principals by the name the user gave."""

    @abstractmethod
    async def lookup(self, person: str) -> Optional[Contact]:
        pass


# ---------------------------------------------------------------------------
# IN-MEMORY IMPLEMENTATIONS
# ---------------------------------------------------------------------------

class InMemoryAppLoader(AppLoader):
    """Keeps every loaded program, most recent last."""

    def __init__(self):
        self.apps: List[str] = []

    async def load_app(self, code: str) -> None:
        self.apps.append(code)
        logger.info(f"Loaded app ({len(self.apps)} total)")

    @property
    def last(self) -> Optional[str]:
        return self.apps[-1] if self.apps else None


class InMemoryRemoteSender(RemoteSender):
    """Keeps every (address, program) pair sent out."""

    def __init__(self):
        self.sent: List[Tuple[RemoteAddress, str]] = []

    async def send_rule(self, address: RemoteAddress, code: str) -> None:
        self.sent.append((address, code))
        logger.info(f"Sent rule to {address.contact.principal} ({address.kind_channel})")


class InMemoryContactDirectory(ContactDirectory):
    """Contacts keyed by the lowercase name users refer to them by."""

    def __init__(self, contacts: Optional[Dict[str, Contact]] = None):
        self._contacts = {name.lower(): contact for name, contact in (contacts or {}).items()}

    async def lookup(self, person: str) -> Optional[Contact]:
        return self._contacts.get(person.lower())
