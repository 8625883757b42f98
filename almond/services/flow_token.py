"""
Flow Token - Opaque identifiers for rules delegated to remote principals.

Every compiled remote program gets a fresh token so results coming back
can be matched with the program that asked for them. The generator is
injected into the compiler; tests pass a fixed one.
"""

import secrets
from typing import Callable, Optional

from almond.core.config import settings


TokenGenerator = Callable[[], str]


def generate_flow_token(nbytes: Optional[int] = None) -> str:
    """Return a random lowercase hex token."""
    return secrets.token_hex(nbytes or settings.FLOW_TOKEN_BYTES)


def fixed_token(value: str) -> TokenGenerator:
    """A generator that always returns ``value``."""
    return lambda: value
