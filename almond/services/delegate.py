"""
Output Channel - The boundary every user-facing message goes through.

The dialog never renders anything itself. It calls one method per message
on an OutputChannel (the "delegate"), and the delegate decides what that
looks like: a chat bubble, a button, a line in a terminal.

Message kinds are a closed set:

    send(text)                          plain message
    send_picture(url)                   picture
    send_rdl(rdl)                       rich descriptor (displayTitle, callback)
    send_choice(index, domain, title, text)   one entry of a multi-choice prompt
    send_link(title, url)               link
    send_button(title, payload)         button echoing an intent back verbatim
    send_ask_special(kind)              what shape the next answer should have

Usage:
    delegate = RecordingDelegate()
    machine = DialogStateMachine(delegate=delegate, ...)
    await machine.handle_parsed('{"special": "help"}')
    print(delegate.transcript())
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


# ---------------------------------------------------------------------------
# MESSAGE TYPES
# ---------------------------------------------------------------------------

class AskSpecial(str, Enum):
    """Expected shape of the next answer."""
    GENERIC = "generic"
    YESNO = "yesno"
    COMMAND = "command"
    NULL = "null"


class MessageKind(str, Enum):
    """Every kind of message the dialog can emit."""
    TEXT = "text"
    PICTURE = "picture"
    RDL = "rdl"
    CHOICE = "choice"
    LINK = "link"
    BUTTON = "button"
    ASK_SPECIAL = "ask_special"


class Message(BaseModel):
    """
    One emitted message, as recorded for transcripts and HTTP responses.

    Only the fields relevant to ``kind`` are set.
    """
    model_config = ConfigDict(frozen=True)

    kind: MessageKind
    text: Optional[str] = None
    url: Optional[str] = None
    title: Optional[str] = None
    index: Optional[int] = None
    domain: Optional[str] = None
    payload: Optional[str] = None
    rdl: Optional[Dict[str, Any]] = None
    ask: Optional[AskSpecial] = None

    def render(self) -> str:
        """Render as one transcript line."""
        if self.kind is MessageKind.TEXT:
            return f">> {self.text}"
        if self.kind is MessageKind.PICTURE:
            return f">> picture: {self.url}"
        if self.kind is MessageKind.RDL:
            rdl = self.rdl or {}
            return f">> rdl: {rdl.get('displayTitle')} {rdl.get('callback')}"
        if self.kind is MessageKind.CHOICE:
            return f">> choice {self.index}: {self.title}"
        if self.kind is MessageKind.LINK:
            return f">> link: {self.title} {self.url}"
        if self.kind is MessageKind.BUTTON:
            return f">> button: {self.title} {self.payload}"
        return f">> ask special {self.ask.value if self.ask else 'null'}"


# ---------------------------------------------------------------------------
# OUTPUT CHANNEL
# ---------------------------------------------------------------------------

class OutputChannel(ABC):
    """
    Abstract delegate receiving every message the dialog emits.

    Implementations must not call back into the dialog.
    """

    @abstractmethod
    def send(self, text: str) -> None:
        pass

    @abstractmethod
    def send_picture(self, url: str) -> None:
        pass

    @abstractmethod
    def send_rdl(self, rdl: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def send_choice(self, index: int, domain: str, title: str, text: str) -> None:
        pass

    @abstractmethod
    def send_link(self, title: str, url: str) -> None:
        pass

    @abstractmethod
    def send_button(self, title: str, payload: str) -> None:
        pass

    @abstractmethod
    def send_ask_special(self, kind: AskSpecial) -> None:
        pass


def deliver(channel: OutputChannel, message: Message) -> None:
    """Forward a recorded message to the matching channel method."""
    if message.kind is MessageKind.TEXT:
        channel.send(message.text or "")
    elif message.kind is MessageKind.PICTURE:
        channel.send_picture(message.url or "")
    elif message.kind is MessageKind.RDL:
        channel.send_rdl(message.rdl or {})
    elif message.kind is MessageKind.CHOICE:
        channel.send_choice(message.index or 0, message.domain or "", message.title or "", message.text or "")
    elif message.kind is MessageKind.LINK:
        channel.send_link(message.title or "", message.url or "")
    elif message.kind is MessageKind.BUTTON:
        channel.send_button(message.title or "", message.payload or "")
    else:
        channel.send_ask_special(message.ask or AskSpecial.NULL)


# ---------------------------------------------------------------------------
# RECORDING DELEGATES
# ---------------------------------------------------------------------------

class RecordingDelegate(OutputChannel):
    """
    Delegate that keeps every message in memory.

    Used by the HTTP layer (messages are returned in the response) and by
    tests (``transcript()`` matches the conversational fixtures line by line).
    """

    def __init__(self):
        self.messages: List[Message] = []

    def _record(self, message: Message) -> None:
        self.messages.append(message)

    def send(self, text: str) -> None:
        self._record(Message(kind=MessageKind.TEXT, text=text))

    def send_picture(self, url: str) -> None:
        self._record(Message(kind=MessageKind.PICTURE, url=url))

    def send_rdl(self, rdl: Dict[str, Any]) -> None:
        self._record(Message(kind=MessageKind.RDL, rdl=rdl))

    def send_choice(self, index: int, domain: str, title: str, text: str) -> None:
        self._record(Message(kind=MessageKind.CHOICE, index=index, domain=domain, title=title, text=text))

    def send_link(self, title: str, url: str) -> None:
        self._record(Message(kind=MessageKind.LINK, title=title, url=url))

    def send_button(self, title: str, payload: str) -> None:
        self._record(Message(kind=MessageKind.BUTTON, title=title, payload=payload))

    def send_ask_special(self, kind: AskSpecial) -> None:
        self._record(Message(kind=MessageKind.ASK_SPECIAL, ask=kind))

    def drain(self) -> List[Message]:
        """Return and forget everything recorded so far."""
        messages, self.messages = self.messages, []
        return messages

    def transcript(self) -> str:
        return "".join(message.render() + "\n" for message in self.messages)


class TurnRecorder(RecordingDelegate):
    """
    Records the messages of one turn and forwards each to the real delegate.
    """

    def __init__(self, delegate: OutputChannel):
        super().__init__()
        self._delegate = delegate

    def _record(self, message: Message) -> None:
        super()._record(message)
        deliver(self._delegate, message)
