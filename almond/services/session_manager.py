"""
Session Manager - One dialog per user session.

Each session owns its DialogStateMachine and the in-memory collaborators
around it (device registry, loader, remote sender). Sessions are created
lazily on first use; the first response of a session carries the welcome
message.

Turns within a session are serialized with an asyncio.Lock: a new intent is
only processed once the previous one has fully completed. ``nevermind`` is
the exception. It is applied immediately, without waiting for the lock, and
any in-flight turn discards its result when it resumes.

Usage:
    from almond.services.session_manager import session_manager

    messages = await session_manager.handle_parsed("abc", {"special": "help"})
    session_manager.close("abc")
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from almond.core.config import settings
from almond.dialog.intents import SpecialIntent, SpecialName, parse_intent
from almond.dialog.state_machine import DialogStateMachine
from almond.services.app_loader import (
    ContactDirectory,
    InMemoryAppLoader,
    InMemoryContactDirectory,
    InMemoryRemoteSender,
)
from almond.services.delegate import Message, RecordingDelegate
from almond.services.device_registry import InMemoryDeviceRegistry
from almond.services.semantic_parser import SemanticParser, SempreClient


logger = logging.getLogger("almond.services.session_manager")


@dataclass
class Session:
    """A dialog session and the collaborators it was built with."""
    session_id: str
    machine: DialogStateMachine
    delegate: RecordingDelegate
    loader: InMemoryAppLoader
    remote: InMemoryRemoteSender
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    welcome: List[Message] = field(default_factory=list)


SessionFactory = Callable[[str], Session]


def build_session(
    session_id: str,
    parser: Optional[SemanticParser] = None,
    contacts: Optional[ContactDirectory] = None,
) -> Session:
    """Default factory: in-memory collaborators, parser from settings."""
    if parser is None and settings.SEMPRE_URL:
        parser = SempreClient()
    delegate = RecordingDelegate()
    loader = InMemoryAppLoader()
    remote = InMemoryRemoteSender()
    machine = DialogStateMachine(
        delegate=delegate,
        devices=InMemoryDeviceRegistry(),
        loader=loader,
        remote=remote,
        contacts=contacts or InMemoryContactDirectory(),
        parser=parser,
        session_id=session_id,
    )
    return Session(session_id=session_id, machine=machine, delegate=delegate, loader=loader, remote=remote)


class SessionManager:
    """
    Registry of live dialog sessions.

    Args:
        factory: Builds a new Session for a session id
    """

    def __init__(self, factory: Optional[SessionFactory] = None):
        self._factory = factory or build_session
        self._sessions: Dict[str, Session] = {}
        logger.info("Session manager initialized")

    # -------------------------------------------------------------------------
    # SESSION LIFECYCLE
    # -------------------------------------------------------------------------

    async def get_or_create(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = self._factory(session_id)
            self._sessions[session_id] = session
            session.welcome = await session.machine.start()
            logger.info(f"Session created: {session_id}")
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def close(self, session_id: str) -> bool:
        """
        Drop a session, cancelling whatever it was doing.

        Returns:
            True if the session existed
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.machine.cancel()
        logger.info(f"Session closed: {session_id}")
        return True

    def count(self) -> int:
        return len(self._sessions)

    # -------------------------------------------------------------------------
    # TURNS
    # -------------------------------------------------------------------------

    @staticmethod
    def _opening(session: Session) -> List[Message]:
        """Welcome messages not yet returned to the client."""
        welcome, session.welcome = session.welcome, []
        return welcome

    async def handle_parsed(
        self,
        session_id: str,
        payload: Union[str, bytes, Dict[str, Any]],
    ) -> List[Message]:
        """
        Handle a parsed intent in wire form.

        Raises:
            MalformedIntentError: If the payload is not a valid intent, or the
                intent is not acceptable in the session's current state
        """
        intent = parse_intent(payload)
        session = await self.get_or_create(session_id)
        opening = self._opening(session)

        if isinstance(intent, SpecialIntent) and intent.name is SpecialName.NEVERMIND:
            session.machine.cancel()
            return opening

        async with session.lock:
            messages = await session.machine.handle(intent)
        session.delegate.drain()
        return opening + messages

    async def handle_command(self, session_id: str, text: str) -> List[Message]:
        """
        Handle a raw utterance.

        Raises:
            SemanticParserError: If the upstream parser fails
        """
        session = await self.get_or_create(session_id)
        opening = self._opening(session)
        async with session.lock:
            messages = await session.machine.handle_command(text)
        session.delegate.drain()
        return opening + messages

    def apps(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Programs loaded and rules sent by a session, or None if unknown."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return {
            "loaded": list(session.loader.apps),
            "remote": [
                {
                    "principal": address.contact.principal,
                    "name": address.contact.name,
                    "token": address.token,
                    "kind_channel": address.kind_channel,
                    "code": code,
                }
                for address, code in session.remote.sent
            ],
        }


# ---------------------------------------------------------------------------
# SINGLETON INSTANCE
# ---------------------------------------------------------------------------
# Usage: from almond.services.session_manager import session_manager
session_manager = SessionManager()
