"""Sources of identity assertions for sign-in and silent re-authentication."""
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class IdentityProvider:
    """
    External identity provider.

    `fetch_assertion` returns an opaque identity assertion (an ID token)
    without user interaction, or None when none is silently available.
    """

    async def fetch_assertion(self) -> Optional[str]:
        raise NotImplementedError


class StaticIdentityProvider(IdentityProvider):
    """Provider backed by an assertion obtained out of band (env, CLI flag)."""

    def __init__(self, assertion: Optional[str]):
        self.assertion = assertion

    async def fetch_assertion(self) -> Optional[str]:
        if not self.assertion:
            logger.info("No identity assertion available for silent sign-in")
        return self.assertion or None
