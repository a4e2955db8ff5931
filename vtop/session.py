"""
Session value and its sealed, client-side persisted form.

A ``Session`` never changes in place. Every step of the login handshake and
every token rotation returns a new value, and the allowed steps are listed
in ``TRANSITIONS``:

    UNAUTHENTICATED -> HANDSHAKE_IN_FLIGHT -> CAPTCHA_ISSUED -> AUTHENTICATED -> EXPIRED

EXPIRED is terminal for a value. Re-authentication starts a new value in
HANDSHAKE_IN_FLIGHT that carries over the identity and saved credentials.
"""

import enum
import json
import time
import logging
import dataclasses
from dataclasses import dataclass
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .common import build_fernet
from .models import Credentials, Identity

logger = logging.getLogger("vtop.session")


class SessionState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    HANDSHAKE_IN_FLIGHT = "handshake"
    CAPTCHA_ISSUED = "captcha"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


TRANSITIONS = {
    SessionState.UNAUTHENTICATED: {SessionState.HANDSHAKE_IN_FLIGHT},
    SessionState.HANDSHAKE_IN_FLIGHT: {SessionState.CAPTCHA_ISSUED, SessionState.EXPIRED},
    SessionState.CAPTCHA_ISSUED: {SessionState.AUTHENTICATED, SessionState.EXPIRED},
    SessionState.AUTHENTICATED: {SessionState.EXPIRED},
    SessionState.EXPIRED: set(),
}

# States in which upstream tokens may rotate without a state change.
ROTATING_STATES = {
    SessionState.HANDSHAKE_IN_FLIGHT,
    SessionState.CAPTCHA_ISSUED,
    SessionState.AUTHENTICATED,
}


class InvalidTransition(ValueError):
    pass


def short(value, length=8):
    """Log-safe prefix of a session id or token."""
    if not value:
        return "<none>"
    return f"{value[:length]}..."


@dataclass(frozen=True)
class Session:
    session_id: str = ""
    csrf: str = ""
    server_id: Optional[str] = None
    identity: Optional[Identity] = None
    credentials: Optional[Credentials] = None
    expires_at: Optional[float] = None
    state: SessionState = SessionState.UNAUTHENTICATED

    # ----- queries -----

    @property
    def registration_number(self):
        return self.identity.registration_number if self.identity else ""

    def is_expired(self, now=None):
        if self.state is SessionState.EXPIRED:
            return True
        if self.expires_at is None:
            return False
        now = time.time() if now is None else now
        return now >= self.expires_at

    def is_usable(self, now=None):
        """True when this value may be used to issue authenticated requests."""
        return (
            self.state is SessionState.AUTHENTICATED
            and bool(self.session_id)
            and not self.is_expired(now)
        )

    # ----- transitions -----

    def _move(self, target, **changes):
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"Cannot move session from {self.state.value} to {target.value}")
        return dataclasses.replace(self, state=target, **changes)

    def begin_handshake(self):
        return self._move(SessionState.HANDSHAKE_IN_FLIGHT)

    def rotate(self, session_id=None, csrf=None, server_id=None):
        """Fold newly issued upstream tokens in. Empty values never overwrite."""
        if self.state not in ROTATING_STATES:
            raise InvalidTransition(f"Cannot rotate tokens of a {self.state.value} session")
        changes = {}
        if session_id and session_id != self.session_id:
            changes["session_id"] = session_id
        if csrf and csrf != self.csrf:
            changes["csrf"] = csrf
        if server_id and server_id != self.server_id:
            changes["server_id"] = server_id
        if not changes:
            return self
        return dataclasses.replace(self, **changes)

    def issue_captcha(self):
        if not self.session_id:
            raise InvalidTransition("A captcha cannot be issued without a session id")
        return self._move(SessionState.CAPTCHA_ISSUED)

    def authenticate(self, identity, expires_at, credentials=None):
        return self._move(
            SessionState.AUTHENTICATED,
            identity=identity,
            expires_at=expires_at,
            credentials=credentials if credentials is not None else self.credentials,
        )

    def with_identity(self, identity):
        if self.state is not SessionState.AUTHENTICATED:
            raise InvalidTransition(f"Cannot set the identity of a {self.state.value} session")
        return dataclasses.replace(self, identity=identity)

    def expire(self):
        if self.state is SessionState.EXPIRED:
            return self
        if self.state is SessionState.UNAUTHENTICATED:
            return dataclasses.replace(self, state=SessionState.EXPIRED)
        return self._move(SessionState.EXPIRED)

    def reauthenticate(self):
        """
        Start a fresh handshake for the same user. Only identity and saved
        credentials survive; upstream tokens are never reused.
        """
        if self.credentials is None:
            raise InvalidTransition("No saved credentials to re-authenticate with")
        return Session(
            identity=self.identity,
            credentials=self.credentials,
            state=SessionState.HANDSHAKE_IN_FLIGHT,
        )


# -------------------------------
# Sealed tokens
# -------------------------------


def _pack(session, expires_at):
    payload = {
        "j": session.session_id,
        "c": session.csrf,
        "e": expires_at,
        "st": session.state.value,
    }
    if session.server_id:
        payload["s"] = session.server_id
    if session.identity:
        payload["u"] = {
            "n": session.identity.name,
            "r": session.identity.registration_number,
            "l": session.identity.login_id,
        }
    if session.credentials:
        payload["cr"] = {"u": session.credentials.username, "p": session.credentials.password}
    return payload


def _unpack(payload):
    user = payload.get("u")
    creds = payload.get("cr")
    return Session(
        session_id=payload["j"],
        csrf=payload.get("c", ""),
        server_id=payload.get("s"),
        identity=Identity(name=user["n"], registration_number=user["r"], login_id=user["l"]) if user else None,
        credentials=Credentials(username=creds["u"], password=creds["p"]) if creds else None,
        expires_at=float(payload["e"]),
        state=SessionState(payload.get("st", SessionState.AUTHENTICATED.value)),
    )


class SessionStore:
    """
    Seals a Session into an opaque Fernet token and opens it again.

    Fernet gives a random IV per token and an HMAC checked on decrypt. The
    absolute expiry travels inside the payload and is checked here, so a
    replayed cookie past its expiry opens to None.
    """

    def __init__(self, fernet: Fernet, max_age=60 * 60 * 24, clock=time.time):
        self._fernet = fernet
        self.max_age = max_age
        self._clock = clock

    @classmethod
    def from_config(cls, cfg, clock=time.time):
        return cls(build_fernet(cfg), max_age=cfg.SESSION_MAX_AGE, clock=clock)

    def encode(self, session, max_age=None) -> str:
        if not session.session_id:
            raise ValueError("Refusing to seal a session without a session id")
        expires_at = session.expires_at
        if expires_at is None:
            expires_at = self._clock() + (max_age or self.max_age)
        data = json.dumps(_pack(session, expires_at), separators=(",", ":"))
        return self._fernet.encrypt(data.encode("utf-8")).decode("ascii")

    def decode(self, token) -> Optional[Session]:
        """Open a token. Tampered, malformed or expired tokens give None."""
        if not token:
            return None
        try:
            raw = self._fernet.decrypt(token.encode("utf-8") if isinstance(token, str) else token)
        except (InvalidToken, ValueError, TypeError):
            logger.warning("Session token failed verification.")
            return None
        try:
            session = _unpack(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Session payload malformed: {e}")
            return None
        if session.is_expired(self._clock()):
            logger.info(f"Session {short(session.session_id)} past its expiry.")
            return None
        if not session.session_id:
            return None
        return session
