"""
Entry points for glue code.

``VtopService`` is built once per process (it owns the cache registry, the
pooled HTTP session and the sealing key). Every inbound request opens its
own short-lived ``VtopClient`` from the caller's sealed token:

    service = VtopService.from_config(config)
    prompt = service.request_captcha()
    outcome = service.login(prompt.pending_token, username, password, captcha)

    with service.authenticated(outcome.token) as portal:
        attendance = portal.get_attendance(semester_id)
    new_token = portal.token  # None means: drop the cookie, log in again
"""

import time
import logging
import contextlib
import dataclasses
from dataclasses import dataclass
from typing import Optional

from .cache import CacheRegistry, CacheTTL, InflightRequests, LRUCache, cache_or_fetch, user_cache_key
from .client import VtopClient, build_http_session
from .common import config as default_config
from .errors import MissingIdentity, SessionExpired, Unauthorized, VtopError
from .models import Identity, LoginResult, ProfileData
from .scraping import attendance_insights
from .session import InvalidTransition, SessionState, SessionStore, short

logger = logging.getLogger("vtop.service")


@dataclass
class CaptchaPrompt:
    captcha_image: str
    pending_token: str


@dataclass
class LoginOutcome:
    result: LoginResult
    token: Optional[str] = None
    profile: Optional[ProfileData] = None


class PortalContext:
    """Typed data operations for one authenticated request, cached per user."""

    def __init__(self, service, client, token):
        self.service = service
        self.client = client
        self.token = token

    @property
    def registration_number(self):
        return self.client.session.registration_number

    def _cached(self, category, fetch, *params, refresh=False):
        cache = self.service.caches[category]
        key = user_cache_key(self.registration_number, category, *params)
        if refresh:
            cache.delete(key)
        return cache_or_fetch(cache, key, fetch, inflight=self.service.inflight)

    def get_semesters(self, refresh=False):
        return self._cached("semesters", self.client.get_semesters, refresh=refresh)

    def get_attendance(self, semester_id, refresh=False):
        return self._cached(
            "attendance", lambda: self.client.get_attendance(semester_id), semester_id, refresh=refresh
        )

    def get_attendance_insights(self, semester_id, refresh=False):
        return attendance_insights(self.get_attendance(semester_id, refresh=refresh))

    def get_timetable(self, semester_id, refresh=False):
        return self._cached(
            "timetable", lambda: self.client.get_timetable(semester_id), semester_id, refresh=refresh
        )

    def get_curriculum(self, refresh=False):
        return self._cached("curriculum", self.client.get_curriculum, refresh=refresh)

    def get_course_page(self, course_id, refresh=False):
        return self._cached(
            "course_page", lambda: self.client.get_course_page(course_id), course_id, refresh=refresh
        )

    def get_marks(self, semester_id, refresh=False):
        return self._cached("marks", lambda: self.client.get_marks(semester_id), semester_id, refresh=refresh)

    def get_grades(self, semester_id=None, refresh=False):
        return self._cached(
            "grades", lambda: self.client.get_grades(semester_id), semester_id or "all", refresh=refresh
        )

    def get_exam_schedule(self, semester_id, refresh=False):
        return self._cached(
            "exam_schedule", lambda: self.client.get_exam_schedule(semester_id), semester_id, refresh=refresh
        )

    def get_profile(self, refresh=False):
        return self._cached("profile", self.client.get_profile, refresh=refresh)

    def get_dashboard_cgpa(self):
        return self.client.get_dashboard_cgpa()

    def profile_photo_url(self):
        return self.client.profile_photo_url()


class VtopService:
    def __init__(
        self,
        store: SessionStore,
        caches: CacheRegistry,
        config=None,
        http=None,
        sleep=time.sleep,
        clock=time.time,
        monotonic=time.monotonic,
    ):
        self.store = store
        self.caches = caches
        self.config = config or default_config
        self.http = http if http is not None else build_http_session()
        self.inflight = InflightRequests()
        # session id -> True for sessions VTOP has already shown to be dead
        self.dead_sessions = LRUCache(max_size=1000, default_ttl=CacheTTL.SHORT, clock=monotonic)
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(cls, cfg=None):
        cfg = cfg or default_config
        return cls(SessionStore.from_config(cfg), CacheRegistry.from_config(cfg), config=cfg)

    def _client(self, session=None):
        return VtopClient(session, self.config, self.http, sleep=self._sleep, clock=self._clock)

    def _seal_pending(self, client):
        return self.store.encode(client.session, max_age=self.config.CAPTCHA_MAX_AGE)

    # ----- login flow -----

    def request_captcha(self):
        client = self._client()
        challenge = client.request_captcha()
        return CaptchaPrompt(captcha_image=challenge.captcha_image, pending_token=self._seal_pending(client))

    def _pending(self, pending_token):
        session = self.store.decode(pending_token)
        if session is None or session.state is not SessionState.CAPTCHA_ISSUED:
            raise SessionExpired("CAPTCHA session expired. Please refresh the CAPTCHA.")
        return session

    def login(self, pending_token, username, password, captcha, remember=True):
        client = self._client(self._pending(pending_token))
        result = client.login(username, password, captcha, remember=remember)
        if not result.success:
            return LoginOutcome(result=result)
        return self._complete_login(client, result, username)

    def _complete_login(self, client, result, username):
        """Confirm the register number from the profile while the fresh session is still warm."""
        profile = None
        try:
            profile = client.get_profile()
        except SessionExpired:
            logger.warning(f"Session for {username} died right after login")
            return LoginOutcome(
                result=LoginResult(
                    success=False,
                    message="Login succeeded but session became invalid immediately. Please try again.",
                    error_code=SessionExpired.code,
                )
            )
        except VtopError as e:
            logger.warning(f"Profile fetch after login failed for {username}: {e.message}")

        if profile is not None and profile.personal.registration_number:
            registration_number = profile.personal.registration_number
            client.confirm_identity(
                Identity(
                    name=profile.personal.name or registration_number,
                    registration_number=registration_number,
                    login_id=username,
                )
            )
            self.caches["profile"].set(user_cache_key(registration_number, "profile"), profile)

        identity = client.session.identity
        logger.info(f"{username} logged in as {identity.registration_number}")
        return LoginOutcome(
            result=dataclasses.replace(
                result,
                identity=identity,
                new_session_id=client.session.session_id,
                new_csrf=client.session.csrf,
                new_server_id=client.session.server_id,
            ),
            token=self.store.encode(client.session),
            profile=profile,
        )

    def logout(self, token):
        """Forget everything cached for the token's user. The caller drops the cookie."""
        session = self.store.decode(token)
        if session is None:
            return False
        self.dead_sessions.set(session.session_id, True)
        if session.registration_number:
            self.caches.clear_user(session.registration_number)
        logger.info(f"Logged out session {short(session.session_id)}")
        return True

    # ----- re-authentication -----

    def refresh_captcha(self, token):
        """
        Start a new handshake for a user whose session died, carrying the
        saved credentials into the pending token. A human still solves the CAPTCHA.
        """
        session = self.store.decode(token)
        if session is None:
            raise Unauthorized()
        try:
            seed = session.reauthenticate()
        except InvalidTransition as e:
            raise Unauthorized("No saved credentials. Please log in again.") from e
        client = self._client(seed)
        challenge = client.request_captcha()
        return CaptchaPrompt(captcha_image=challenge.captcha_image, pending_token=self._seal_pending(client))

    def refresh_login(self, token, pending_token, captcha):
        pending = self._pending(pending_token)
        credentials = pending.credentials
        if credentials is None:
            previous = self.store.decode(token)
            credentials = previous.credentials if previous is not None else None
        if credentials is None:
            raise Unauthorized("No saved credentials. Please log in again.")
        client = self._client(pending)
        result = client.login(credentials.username, credentials.password, captcha)
        if not result.success:
            return LoginOutcome(result=result)
        if pending.identity and client.session.registration_number == credentials.username:
            client.confirm_identity(pending.identity)
        return self._complete_login(client, result, credentials.username)

    # ----- data access -----

    @contextlib.contextmanager
    def authenticated(self, token):
        session = self.store.decode(token)
        if session is None or not session.is_usable(self._clock()):
            raise Unauthorized()
        if not session.registration_number:
            raise MissingIdentity()
        if self.dead_sessions.get(session.session_id):
            raise SessionExpired()

        portal = PortalContext(self, self._client(session), token)
        try:
            yield portal
        except VtopError as e:
            if e.requires_reauth:
                self._forget(portal, session)
            else:
                self._reseal(portal, session)
            raise
        else:
            self._reseal(portal, session)

    def _reseal(self, portal, session):
        """Hand back a token for the latest upstream tokens, even when the request failed after rotating them."""
        if portal.client.session.state is SessionState.EXPIRED:
            self._forget(portal, session)
        elif portal.client.session != session:
            portal.token = self.store.encode(portal.client.session)

    def _forget(self, portal, session):
        self.dead_sessions.set(session.session_id, True)
        portal.token = None
        logger.info(f"Session {short(session.session_id)} marked dead")
