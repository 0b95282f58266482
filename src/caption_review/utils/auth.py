"""Session and identity management."""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..exceptions import AuthenticationError


@dataclass
class SessionDetails:
    """Authenticated session."""

    identity_id: Optional[str]
    access_token: str


class SessionProvider(ABC):
    """Source of the current session; implemented by the host application."""

    @abstractmethod
    def current_session(self) -> Optional[SessionDetails]:
        """Return the active session, or None when signed out."""

    def current_identity_id(self) -> Optional[str]:
        session = self.current_session()
        return session.identity_id if session else None

    def access_token(self) -> str:
        """Bearer credential for API calls; raises AuthenticationError when absent."""
        session = self.current_session()
        if session is None or not session.access_token:
            raise AuthenticationError("Not authenticated")
        return session.access_token


class StaticSessionProvider(SessionProvider):
    """Session loaded once from configuration and environment."""

    def __init__(self, config: Dict[str, Any]):
        self.identity_id = os.environ.get("CAPTION_REVIEW_IDENTITY_ID") or config.get("identity_id")
        self.token = os.environ.get("CAPTION_REVIEW_ACCESS_TOKEN") or config.get("access_token")

        if self.identity_id is not None:
            assert str(self.identity_id).strip(), "Session identity_id must not be blank"
            self.identity_id = str(self.identity_id)

    def current_session(self) -> Optional[SessionDetails]:
        if not self.token:
            return None
        return SessionDetails(identity_id=self.identity_id, access_token=self.token)

    def sign_out(self):
        """Drop the credential; later calls behave as unauthenticated."""
        self.token = None
        self.identity_id = None
