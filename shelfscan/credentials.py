"""Session credential and its durable holder."""
import json
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Optional

from shelfscan.storage import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """Bearer token issued by the backend plus a minimal profile."""
    token: str
    email: str = ""
    name: str = ""
    user_id: str = ""

    def __repr__(self):
        return (
            f"Credential(token='{mask_token(self.token)}', email={self.email!r}, "
            f"name={self.name!r}, user_id={self.user_id!r})"
        )

    __str__ = __repr__


def mask_token(token: Optional[str]) -> str:
    """Loggable form of a bearer token."""
    if not token:
        return "<none>"
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-2:]}"


class CredentialStore:
    """
    Holder of the current session credential.

    The credential is written as one JSON record, so a refresh replaces the
    whole value and readers never see a half-written credential.
    """

    def __init__(self, kv: KeyValueStore, key: str = "session"):
        self.kv = kv
        self.key = key
        self._lock = threading.Lock()

    def save(self, credential: Credential) -> None:
        record = json.dumps(asdict(credential))
        with self._lock:
            self.kv.set(self.key, record)
        logger.info(f"Saved session credential for {credential.email or 'unknown user'}")

    def load(self) -> Optional[Credential]:
        with self._lock:
            raw = self.kv.get(self.key)
        return self._decode(raw)

    def clear(self) -> None:
        with self._lock:
            self.kv.remove(self.key)
        logger.info("Cleared session credential")

    def has(self) -> bool:
        return self.load() is not None

    def discard(self, token: str) -> bool:
        """
        Clear the stored credential only if it still carries `token`.

        Returns:
            True if the credential was cleared
        """
        with self._lock:
            current = self._decode(self.kv.get(self.key))
            if current is None or current.token != token:
                return False
            self.kv.remove(self.key)
        logger.info(f"Discarded rejected credential {mask_token(token)}")
        return True

    def _decode(self, raw: Optional[str]) -> Optional[Credential]:
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            if not data.get("token"):
                return None
            return Credential(
                token=data["token"],
                email=data.get("email") or "",
                name=data.get("name") or "",
                user_id=data.get("user_id") or "",
            )
        except (ValueError, AttributeError) as e:
            logger.warning(f"Ignoring malformed stored credential: {e}")
            return None
