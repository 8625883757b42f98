"""
Conversation Router - HTTP surface of the dialog.

Clients talk to one session per id. Every turn returns the messages the
dialog emitted, plus the last "ask special" marker so the client knows what
kind of input to offer next.

    POST   /conversation/{session_id}/parsed    body: wire intent JSON
    POST   /conversation/{session_id}/command   body: {"text": "..."}
    DELETE /conversation/{session_id}
    GET    /conversation/{session_id}/apps

Errors:
    400  malformed or unexpected intent
    502  semantic parser failure
    500  anything else
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field

from almond.deps import get_session_manager
from almond.dialog.errors import MalformedIntentError
from almond.services.delegate import Message, MessageKind
from almond.services.semantic_parser import SemanticParserError
from almond.services.session_manager import SessionManager


# ---------------------------------------------------------------------------
# LOGGER SETUP
# ---------------------------------------------------------------------------
logger = logging.getLogger("almond.routers.conversation")


# ---------------------------------------------------------------------------
# ROUTER SETUP
# ---------------------------------------------------------------------------
router = APIRouter(prefix="/conversation", tags=["conversation"])


# ---------------------------------------------------------------------------
# REQUEST/RESPONSE SCHEMAS
# ---------------------------------------------------------------------------

class CommandRequest(BaseModel):
    """
    Request schema for raw utterances.

    Example:
    {
        "text": "get an xkcd comic"
    }
    """
    text: str = Field(..., min_length=1, max_length=500, description="What the user typed or said")


class ConversationResponse(BaseModel):
    """
    Response schema for one dialog turn.

    Example:
    {
        "session_id": "abc",
        "messages": [{"kind": "text", "text": "What do you want to tweet?"},
                     {"kind": "ask_special", "ask": "generic"}],
        "ask": "generic"
    }
    """
    session_id: str
    messages: List[Message] = Field(default_factory=list)
    ask: Optional[str] = Field(default=None, description="Last ask-special marker of the turn")


class AppsResponse(BaseModel):
    """Programs a session has handed off."""
    session_id: str
    loaded: List[str] = Field(default_factory=list)
    remote: List[Dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# HELPER FUNCTIONS
# ---------------------------------------------------------------------------

def _to_response(session_id: str, messages: List[Message]) -> ConversationResponse:
    ask = None
    for message in messages:
        if message.kind is MessageKind.ASK_SPECIAL:
            ask = message.ask.value if message.ask else None
    return ConversationResponse(session_id=session_id, messages=messages, ask=ask)


# ---------------------------------------------------------------------------
# ENDPOINTS
# ---------------------------------------------------------------------------

@router.post("/{session_id}/parsed", response_model=ConversationResponse)
async def handle_parsed(
    session_id: str,
    payload: Dict[str, Any] = Body(...),
    manager: SessionManager = Depends(get_session_manager),
):
    """
    Send an already parsed intent, e.g. a button payload echoed back.
    """
    try:
        messages = await manager.handle_parsed(session_id, payload)
    except MalformedIntentError as e:
        logger.warning(f"Rejected intent for {session_id}: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to handle intent: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to handle intent: {str(e)}",
        )
    return _to_response(session_id, messages)


@router.post("/{session_id}/command", response_model=ConversationResponse)
async def handle_command(
    session_id: str,
    request: CommandRequest,
    manager: SessionManager = Depends(get_session_manager),
):
    """
    Send a raw utterance. It is parsed upstream unless the dialog is waiting
    for a typed value.
    """
    try:
        messages = await manager.handle_command(session_id, request.text)
    except MalformedIntentError as e:
        logger.warning(f"Rejected command for {session_id}: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SemanticParserError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to handle command: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to handle command: {str(e)}",
        )
    return _to_response(session_id, messages)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def close_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
):
    """Close a session. Closing an unknown session is not an error."""
    manager.close(session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{session_id}/apps", response_model=AppsResponse)
async def list_apps(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
):
    """List the programs loaded and rules sent by a session."""
    apps = manager.apps(session_id)
    if apps is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return AppsResponse(session_id=session_id, **apps)
