"""Administrator sign-in gate.

Accounts come from configuration with passlib password hashes. The signed-in
identity lives in a mutable mapping, which is the signed cookie session in
the web application and a plain dict elsewhere.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional

from passlib.context import CryptContext
from passlib.hash import pbkdf2_sha256

from ..config import AdminAccount, AppConfig
from .errors import AuthenticationError


LOGGER = logging.getLogger(__name__)

PASSWORD_CONTEXT = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
SESSION_KEY = "identity"


def hash_password(password: str, *, rounds: Optional[int] = None) -> str:
    """Return a ``$pbkdf2-sha256$...`` hash for the ``admins`` config section."""

    if not password:
        raise ValueError("Password must not be empty")
    if rounds is None:
        return PASSWORD_CONTEXT.hash(password)
    return pbkdf2_sha256.using(rounds=rounds).hash(password)


def verify_password(password: Optional[str], encoded: Optional[str]) -> bool:
    if not password or not encoded:
        return False
    try:
        return PASSWORD_CONTEXT.verify(password, encoded)
    except (ValueError, TypeError):
        LOGGER.warning("Ignoring malformed password hash")
        return False


@dataclass(frozen=True)
class Credential:
    email: str
    password: str


@dataclass(frozen=True)
class Identity:
    email: str
    name: str = ""
    role: str = "admin"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Acts for every request while no admin accounts are configured.
LOCAL_IDENTITY = Identity(email="local@localhost", name="Local administrator")


class AdminDirectory:
    def __init__(self, accounts: Iterable[AdminAccount] = ()) -> None:
        self._accounts: Dict[str, AdminAccount] = {
            account.email.strip().lower(): account for account in accounts
        }

    @classmethod
    def from_config(cls, config: AppConfig) -> "AdminDirectory":
        return cls(config.admins)

    @property
    def is_open(self) -> bool:
        return not self._accounts

    def _account(self, email: str) -> Optional[AdminAccount]:
        return self._accounts.get(email.strip().lower())

    def lookup(self, email: str) -> Optional[Identity]:
        """Return the identity for a configured account, or ``None``."""

        account = self._account(email)
        if account is None:
            return None
        return Identity(email=account.email, name=account.name, role=account.role)

    def authenticate(self, credential: Credential) -> Identity:
        account = self._account(credential.email)
        if account is None or not verify_password(credential.password, account.password_hash):
            LOGGER.info("Rejected sign-in for %s", credential.email)
            raise AuthenticationError("Invalid email or password")
        return Identity(email=account.email, name=account.name, role=account.role)


class Subscription:
    """Handle returned by :meth:`IdentitySession.on_identity_change`."""

    def __init__(self, cancel: Callable[[], None]) -> None:
        self._cancel: Optional[Callable[[], None]] = cancel

    @property
    def active(self) -> bool:
        return self._cancel is not None

    def unsubscribe(self) -> None:
        if self._cancel is not None:
            self._cancel()
            self._cancel = None


IdentityListener = Callable[[Optional[Identity]], None]


class IdentitySession:
    def __init__(self, storage: MutableMapping[str, Any], directory: AdminDirectory) -> None:
        self._storage = storage
        self._directory = directory
        self._listeners: List[IdentityListener] = []

    @property
    def directory(self) -> AdminDirectory:
        return self._directory

    def get_current_identity(self) -> Optional[Identity]:
        stored = self._storage.get(SESSION_KEY)
        if isinstance(stored, Mapping) and stored.get("email"):
            # The cookie only names the account; the directory decides if it still exists.
            identity = self._directory.lookup(str(stored["email"]))
            if identity is not None:
                return identity
            LOGGER.info("Dropping session for removed account %s", stored["email"])
            self._storage.pop(SESSION_KEY, None)
        elif stored is not None:
            self._storage.pop(SESSION_KEY, None)
        if self._directory.is_open:
            return LOCAL_IDENTITY
        return None

    def require_identity(self) -> Identity:
        identity = self.get_current_identity()
        if identity is None:
            raise AuthenticationError("Sign in required")
        return identity

    def sign_in(self, credential: Credential) -> Identity:
        identity = self._directory.authenticate(credential)
        self._storage[SESSION_KEY] = identity.to_dict()
        LOGGER.info("Signed in %s", identity.email)
        self._notify(identity)
        return identity

    def sign_out(self) -> None:
        previous = self._storage.pop(SESSION_KEY, None)
        if previous:
            LOGGER.info("Signed out %s", previous.get("email"))
        self._notify(None)

    def on_identity_change(self, callback: IdentityListener) -> Subscription:
        self._listeners.append(callback)

        def cancel() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return Subscription(cancel)

    def _notify(self, identity: Optional[Identity]) -> None:
        for listener in list(self._listeners):
            listener(identity)


__all__ = [
    "AdminDirectory",
    "Credential",
    "Identity",
    "IdentitySession",
    "LOCAL_IDENTITY",
    "Subscription",
    "hash_password",
    "verify_password",
]
