"""
Dependencies module - reusable FastAPI dependencies for route handlers.
The main dependency here is get_session_manager, overridden in tests.
"""

from almond.services.session_manager import SessionManager, session_manager


def get_session_manager() -> SessionManager:
    """
    Return the process-wide session manager.

    Tests replace it with ``app.dependency_overrides[get_session_manager]``
    to get sessions wired to fixture devices and contacts.
    """
    return session_manager
