"""
CORE App - Session context for FLEETLINE

The session is an explicit object passed to every workflow call. It is
bootstrapped once (stored credential -> profile fetch) and torn down on
logout. No module looks the session up from global state.
"""

import logging
from contextlib import contextmanager
from typing import Optional

from django.conf import settings
from django.core.cache import cache

from core.exceptions import FleetlineError, Unauthenticated
from core.models import Account

logger = logging.getLogger(__name__)


class CredentialStore:
    """
    Stores the opaque credential token in the Django cache.

    Issuance and renewal of the token belong to the backend; the client only
    keeps it around between bootstraps.
    """

    def __init__(self, key: Optional[str] = None, ttl: Optional[int] = None):
        self.key = key or settings.CREDENTIAL_CACHE_KEY
        self.ttl = ttl if ttl is not None else settings.CREDENTIAL_CACHE_TTL

    def get(self) -> Optional[str]:
        return cache.get(self.key)

    def set(self, token: str) -> None:
        cache.set(self.key, token, self.ttl)

    def clear(self) -> None:
        cache.delete(self.key)


class SessionContext:
    """
    Authenticated (or anonymous) session.

    Lifecycle:
        session = SessionContext(backend)
        session.bootstrap()     # reads stored token, fetches profile once
        ...                     # pass `session` to workflow calls
        session.teardown()      # clears credential and account

    Also usable as a context manager, which bootstraps on enter and tears
    down on exit.
    """

    def __init__(self, backend, credentials: Optional[CredentialStore] = None):
        self.backend = backend
        self.credentials = credentials or CredentialStore()
        self.account: Optional[Account] = None
        self.token: Optional[str] = None
        self.bootstrapped = False

    @property
    def is_authenticated(self) -> bool:
        return self.account is not None

    @property
    def role(self):
        return self.account.role if self.account else None

    def bootstrap(self) -> Optional[Account]:
        """
        Resolve the acting role.

        On any failure the stored credential is cleared and the session
        falls back to anonymous. Returns the account or None.
        """
        self.bootstrapped = True
        token = self.credentials.get()
        if not token:
            logger.info("[SESSION] No stored credential, anonymous session")
            return None

        try:
            profile = self.backend.get_profile(token)
            account = Account.from_payload(profile)
        except FleetlineError as e:
            logger.warning(f"[SESSION] Profile fetch failed, clearing credential: {e}")
            self.credentials.clear()
            self.backend.set_token(None)
            self.token = None
            self.account = None
            return None

        self.token = token
        self.account = account
        self.backend.set_token(token)
        logger.info(f"[SESSION] Bootstrapped as {account}")
        return account

    def login(self, token: str) -> Optional[Account]:
        """Store a freshly issued credential and bootstrap with it."""
        self.credentials.set(token)
        return self.bootstrap()

    def refresh_profile(self) -> Optional[Account]:
        """Re-fetch the profile, e.g. after a profile edit."""
        if not self.token:
            return None
        self.account = Account.from_payload(self.backend.get_profile(self.token))
        return self.account

    def teardown(self, forget_credential: bool = True) -> None:
        """
        Drop the resolved account. With forget_credential (logout) the
        stored token is cleared as well.
        """
        if self.account:
            logger.info(f"[SESSION] Tearing down session for {self.account}")
        if forget_credential:
            self.credentials.clear()
        self.backend.set_token(None)
        self.token = None
        self.account = None
        self.bootstrapped = False

    def __enter__(self):
        self.bootstrap()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.teardown(forget_credential=False)
        return False

    def __repr__(self):
        return f"<SessionContext {self.account or 'anonymous'}>"


@contextmanager
def expire_on_unauthenticated(session: SessionContext):
    """
    Tear the session down when the backend rejects the credential.

    The error is re-raised unchanged so the caller can send the user back
    to the login page.
    """
    try:
        yield
    except Unauthenticated:
        logger.warning(f"[SESSION] Credential rejected by backend, logging out {session.account}")
        session.teardown()
        raise
