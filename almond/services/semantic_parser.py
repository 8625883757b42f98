"""
Semantic Parser Client - Turns free text into intents via SEMPRE.

The parser is an external HTTP service. One GET per utterance:

    GET {SEMPRE_URL}/query?locale=en-US&sessionId=<id>&q=<text>

    {"candidates": [{"answer": "{\"query\": {...}}", "score": 1.3}, ...]}

Candidates are ranked; the first one that parses as an intent wins. An
utterance without any usable candidate yields None so the dialog can say it
did not understand.

Usage:
    parser = SempreClient(base_url="https://sempre.example.com")
    intent = await parser.parse("get an xkcd comic", session_id="abc")
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from almond.core.config import settings
from almond.dialog.errors import MalformedIntentError
from almond.dialog.intents import Intent, parse_intent


logger = logging.getLogger("almond.services.semantic_parser")


class SemanticParserError(Exception):
    """Network or protocol failure talking to the semantic parser."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SemanticParser(ABC):
    """Anything that can turn an utterance into an intent."""

    @abstractmethod
    async def parse(self, text: str, session_id: str) -> Optional[Intent]:
        pass


class SempreClient(SemanticParser):
    """
    httpx client for the SEMPRE query endpoint.

    Args:
        base_url: Parser base URL (defaults to SEMPRE_URL)
        locale: Locale sent with every query
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests use MockTransport)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        locale: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.SEMPRE_URL).rstrip("/")
        self.locale = locale or settings.LOCALE
        self.timeout = timeout or settings.SEMPRE_TIMEOUT
        self._transport = transport

    async def _query(self, text: str, session_id: str) -> Dict[str, Any]:
        """
        Send one utterance to the parser.

        Raises:
            SemanticParserError: If the request fails or returns non-JSON
        """
        params = {"locale": self.locale, "sessionId": session_id, "q": text}

        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            try:
                response = await client.get(f"{self.base_url}/query", params=params)
            except httpx.RequestError as e:
                logger.error(f"Network error talking to semantic parser: {e}")
                raise SemanticParserError(f"Network error: {e}")

        if response.status_code != 200:
            logger.error(f"Semantic parser error: {response.status_code} - {response.text}")
            raise SemanticParserError(
                f"Semantic parser returned {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise SemanticParserError(f"Invalid JSON from semantic parser: {e}")

    async def parse(self, text: str, session_id: str) -> Optional[Intent]:
        """
        Parse an utterance.

        Returns:
            The best intent, or None if no candidate parses
        """
        data = await self._query(text, session_id)
        candidates = data.get("candidates") or []
        logger.debug(f"Semantic parser returned {len(candidates)} candidates for {text!r}")

        for candidate in candidates:
            answer = candidate.get("answer") if isinstance(candidate, dict) else None
            if not answer:
                continue
            try:
                return parse_intent(answer)
            except MalformedIntentError as e:
                logger.warning(f"Skipping unparseable candidate: {e}")
        return None
