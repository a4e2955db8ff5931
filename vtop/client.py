# client.py
import re
import time
import logging
import datetime
from email.utils import formatdate
from http.cookiejar import DefaultCookiePolicy

import requests
from requests.adapters import HTTPAdapter

from .common import config as default_config
from .errors import (
    AccountLocked,
    InvalidCaptcha,
    InvalidCredentials,
    InvalidInput,
    LoginFailed,
    MissingIdentity,
    SessionExpired,
    Unauthorized,
    UpstreamError,
    UpstreamTimeout,
    UpstreamUnavailable,
    VtopError,
    CaptchaParseFailure,
)
from .models import CaptchaChallenge, Credentials, Identity, LoginResult
from .scraping import (
    extract_captcha_image,
    extract_csrf_token,
    extract_registration_number,
    scrape_attendance_from_html,
    scrape_course_page_from_html,
    scrape_curriculum_from_html,
    scrape_dashboard_cgpa,
    scrape_exam_schedule_from_html,
    scrape_grades_from_html,
    scrape_marks_from_html,
    scrape_profile_from_html,
    scrape_semesters_from_html,
    scrape_timetable_from_html,
)
from .session import Session, SessionState, short

logger = logging.getLogger("vtop.client")

DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36"
    ),
    "Connection": "keep-alive",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
REDIRECT_STATUSES = (301, 302)
MAX_SETUP_REDIRECTS = 3

# Page fragments that only appear on the logged-out landing/login pages
# or on the dead-session 404 page.
EXPIRED_MARKERS = (
    "vtop/open/page",
    "captchaStr",
    "prelogin/setup",
    "sessionExpiredCall",
    "HTTP Status 404",
)
LOGIN_ROLE_FORMS = ("stdForm", "empForm", "parentForm")

LOGIN_SUCCESS_MARKERS = ("dashboard", "Welcome", "initialPage")
# (phrases, error) pairs, checked in order against the lower-cased page.
LOGIN_ERROR_PAGE_PHRASES = (
    (("invalid captcha", "captcha not match"), InvalidCaptcha),
    (("invalid user", "invalid password", "user does not exist"), InvalidCredentials),
    (("locked", "disabled"), AccountLocked),
)
LOGIN_PAGE_PHRASES = (
    (("invalid captcha",), InvalidCaptcha),
    (("invalid username", "invalid password"), InvalidCredentials),
    (("user disabled", "account locked"), AccountLocked),
)

ENDPOINTS = {
    "open_page": "/vtop/open/page",
    "prelogin_setup": "/vtop/prelogin/setup",
    "captcha": "/vtop/get/new/captcha",
    "login": "/vtop/login",
    "content": "/vtop/content",
    "attendance_menu": "/vtop/academics/common/StudentAttendance",
    "attendance": "/vtop/processViewStudentAttendance",
    "timetable_menu": "/vtop/academics/common/StudentTimeTable",
    "timetable": "/vtop/processViewTimeTable",
    "curriculum": "/vtop/academics/common/Curriculum",
    "course_page": "/vtop/academics/common/CoursePageConsolidated",
    "marks": "/vtop/examinations/doStudentMarkView",
    "grade_history": "/vtop/examinations/examGradeView/StudentGradeHistory",
    "grades": "/vtop/examinations/examGradeView/doStudentGradeView",
    "exam_schedule": "/vtop/examinations/doSearchExamScheduleForStudent",
    "profile": "/vtop/studentsRecord/StudentProfileAllView",
    "dashboard_cgpa": "/vtop/get/dashboard/current/cgpa/credits",
    "photo": "/vtop/users/image/",
}

_COOKIE_SPLIT = re.compile(r",(?=[^;]*=)")


# -------------------------------
# Response helpers
# -------------------------------


def cookie_value(set_cookie, name):
    """
    Value of cookie ``name`` from Set-Cookie data, given either as a list of
    header values or as one comma-joined header.
    """
    if not set_cookie:
        return None
    parts = set_cookie if isinstance(set_cookie, (list, tuple)) else _COOKIE_SPLIT.split(set_cookie)
    pattern = re.compile(rf"{re.escape(name)}=([^;,\s]+)")
    for part in parts:
        match = pattern.search(part)
        if match:
            return match.group(1)
    return None


def extract_session_id(set_cookie):
    return cookie_value(set_cookie, "JSESSIONID")


def extract_server_id(set_cookie):
    return cookie_value(set_cookie, "SERVERID")


def set_cookie_headers(response):
    """All Set-Cookie values of a response, as separate headers when urllib3 kept them apart."""
    raw_headers = getattr(getattr(response, "raw", None), "headers", None)
    if raw_headers is not None and hasattr(raw_headers, "getlist"):
        values = raw_headers.getlist("Set-Cookie")
        if isinstance(values, list) and values:
            return values
    return response.headers.get("Set-Cookie")


def looks_expired(html):
    """True when a 200 page is really the logged-out landing page or the dead-session 404."""
    if not html:
        return False
    if any(marker in html for marker in EXPIRED_MARKERS):
        return True
    return all(form in html for form in LOGIN_ROLE_FORMS)


def classify_login_failure(html, phrases):
    lowered = (html or "").lower()
    for needles, error in phrases:
        if any(needle in lowered for needle in needles):
            return LoginResult(success=False, message=error.default_message, error_code=error.code)
    return LoginResult(success=False, message=LoginFailed.default_message, error_code=LoginFailed.code)


def build_http_session(pool_connections=10, pool_maxsize=20):
    """
    requests.Session with a pooled adapter; retries are ours, not urllib3's.
    The cookie jar accepts nothing: one session is shared by every request,
    and cookies travel only through the explicit Cookie header.
    """
    http = requests.Session()
    http.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
    adapter = HTTPAdapter(
        pool_connections=pool_connections, pool_maxsize=pool_maxsize, max_retries=0, pool_block=False
    )
    http.mount("http://", adapter)
    http.mount("https://", adapter)
    return http


def with_retry(operation, max_retries=2, initial_delay=1.0, sleep=time.sleep, label="request"):
    """
    Run ``operation`` with exponential backoff. Errors that are not
    retryable (expiry, bad input, parse failures) propagate on first sight.
    """
    delay = initial_delay
    last_error = None
    for attempt in range(max_retries + 1):
        try:
            return operation()
        except VtopError as e:
            if not e.retryable:
                raise
            last_error = e
        if attempt < max_retries:
            logger.warning(
                f"[Retry] {label} attempt {attempt + 1}/{max_retries + 1} failed: {last_error.message}. "
                f"Retrying in {delay:.1f}s"
            )
            sleep(delay)
            delay *= 2
    logger.error(f"[Retry] {label} failed after {max_retries + 1} attempts: {last_error.message}")
    raise last_error


# -------------------------------
# Client
# -------------------------------


class VtopClient:
    """
    One authenticated conversation with VTOP.

    ``self.session`` always holds the latest immutable Session value; every
    response that rotates the session id, SERVERID or _csrf replaces it.
    Redirects are never followed automatically because their target is
    what tells a failed login from a successful one.
    """

    def __init__(self, session=None, config=None, http=None, sleep=time.sleep, clock=time.time):
        self.session = session if session is not None else Session()
        self.config = config or default_config
        self.http = http if http is not None else build_http_session()
        self._sleep = sleep
        self._clock = clock

    # ----- plumbing -----

    def _url(self, path):
        if path.startswith("http"):
            return path
        return f"{self.config.BASE_URL}{path}"

    @staticmethod
    def _cookie_header(session):
        cookie = f"JSESSIONID={session.session_id}"
        if session.server_id:
            cookie += f"; SERVERID={session.server_id}"
        return cookie

    def _headers(self, session, referer=None, form=False, **extra):
        headers = dict(DEFAULT_HEADERS)
        headers["Cookie"] = self._cookie_header(session)
        if form:
            headers["Content-Type"] = FORM_CONTENT_TYPE
        if referer:
            headers["Referer"] = referer
        headers.update(extra)
        return headers

    def _send(self, method, url, headers, data=None):
        try:
            return self.http.request(
                method,
                url,
                headers=headers,
                data=data,
                timeout=self.config.REQUEST_TIMEOUT,
                allow_redirects=False,
            )
        except requests.exceptions.Timeout as e:
            raise UpstreamTimeout(original=e) from e
        except requests.exceptions.ConnectionError as e:
            raise UpstreamUnavailable(original=e) from e
        except requests.exceptions.RequestException as e:
            raise UpstreamError(str(e), original=e) from e

    @staticmethod
    def _absorb_cookies(session, response):
        cookies = set_cookie_headers(response)
        return session.rotate(
            session_id=extract_session_id(cookies), server_id=extract_server_id(cookies)
        )

    def _now_iso(self):
        return datetime.datetime.fromtimestamp(self._clock(), datetime.timezone.utc).isoformat()

    def _utc_string(self):
        return formatdate(self._clock(), usegmt=True)

    # ----- handshake -----

    def request_captcha(self):
        """
        Run the pre-login handshake and return the CAPTCHA bound to the
        resulting session. The whole handshake is retried on transient failures.
        """
        return with_retry(
            self._handshake,
            self.config.MAX_RETRIES,
            self.config.RETRY_DELAY,
            self._sleep,
            label="captcha handshake",
        )

    def _handshake(self):
        # A re-authentication seed keeps its identity and saved credentials.
        if self.session.state is SessionState.HANDSHAKE_IN_FLIGHT:
            session = self.session
        else:
            session = Session().begin_handshake()
        base_headers = dict(DEFAULT_HEADERS)

        page = self._send("GET", self._url(ENDPOINTS["open_page"]), base_headers)
        cookies = set_cookie_headers(page)
        session_id = extract_session_id(cookies)
        if not session_id:
            raise UpstreamUnavailable("Failed to get session from VTOP")
        session = session.rotate(session_id=session_id, server_id=extract_server_id(cookies))
        initial_csrf = extract_csrf_token(page.text) or ""
        logger.debug(f"Handshake started with session {short(session.session_id)}")

        setup = self._send(
            "POST",
            self._url(ENDPOINTS["prelogin_setup"]),
            self._headers(session, referer=self._url(ENDPOINTS["open_page"]), form=True),
            data={"flag": "VTOP", "_csrf": initial_csrf},
        )
        session = self._absorb_cookies(session, setup)

        login_html = ""
        referer = self._url(ENDPOINTS["prelogin_setup"])
        location = setup.headers.get("Location") if setup.status_code in REDIRECT_STATUSES else None
        if location is None:
            login_html = setup.text or ""
        for hop in range(MAX_SETUP_REDIRECTS):
            if not location:
                break
            target = self._url(location)
            logger.debug(f"Handshake following redirect {hop + 1} to {target}")
            response = self._send("GET", target, self._headers(session, referer=referer))
            session = self._absorb_cookies(session, response)
            if response.status_code in REDIRECT_STATUSES:
                referer = target
                location = response.headers.get("Location")
            else:
                login_html = response.text or ""
                location = None

        csrf = extract_csrf_token(login_html) or initial_csrf

        # The CAPTCHA is bound to the session as it stands right now;
        # cookies set by this response are not folded in.
        captcha = self._send(
            "GET",
            self._url(ENDPOINTS["captcha"]),
            self._headers(session, referer=self._url(ENDPOINTS["login"])),
        )
        if captcha.status_code != 200:
            raise UpstreamError(f"Failed to fetch CAPTCHA (status {captcha.status_code})")
        image = extract_captcha_image(captcha.text)
        if not image:
            logger.error(f"CAPTCHA image missing from response: {(captcha.text or '')[:200]!r}")
            raise CaptchaParseFailure()
        csrf = extract_csrf_token(captcha.text) or csrf

        self.session = session.rotate(csrf=csrf).issue_captcha()
        logger.info(
            f"CAPTCHA issued for session {short(self.session.session_id)} "
            f"(server {self.session.server_id or '-'})"
        )
        return CaptchaChallenge(
            captcha_image=image,
            csrf=self.session.csrf,
            session_id=self.session.session_id,
            server_id=self.session.server_id,
        )

    # ----- login -----

    def login(self, username, password, captcha, remember=True):
        """
        Submit credentials on the CAPTCHA-issued session. Bad captcha, bad
        credentials and locked accounts come back as ``success=False``
        results, never as exceptions. Not retried: a CAPTCHA is single-use.
        """
        session = self.session
        if session.state is not SessionState.CAPTCHA_ISSUED or not session.session_id:
            raise InvalidInput("Request a CAPTCHA before logging in")
        if not username or not password or not captcha:
            raise InvalidInput("Username, password and CAPTCHA are required")

        logger.info(f"Logging in {username} on session {short(session.session_id)}")
        response = self._send(
            "POST",
            self._url(ENDPOINTS["login"]),
            self._headers(
                session,
                referer=self._url(ENDPOINTS["login"]),
                form=True,
                Origin=self.config.BASE_URL,
                **{"Upgrade-Insecure-Requests": "1"},
            ),
            data={"_csrf": session.csrf, "username": username, "password": password, "captchaStr": captcha},
        )
        active = self._absorb_cookies(session, response)
        text = response.text or ""
        redirected = response.status_code in REDIRECT_STATUSES

        if redirected:
            location = response.headers.get("Location") or ""
            if "/login/error" in location or "/error" in location:
                error_page = self._send("GET", self._url(location), self._headers(active))
                result = classify_login_failure(error_page.text, LOGIN_ERROR_PAGE_PHRASES)
                logger.warning(f"Login rejected for {username}: {result.error_code}")
                return result
            if location:
                dashboard = self._send(
                    "GET", self._url(location), self._headers(active, referer=self._url(ENDPOINTS["login"]))
                )
                active = self._absorb_cookies(active, dashboard)
                text = dashboard.text or ""

        if not redirected and not any(marker in text for marker in LOGIN_SUCCESS_MARKERS):
            result = classify_login_failure(text, LOGIN_PAGE_PHRASES)
            logger.warning(f"Login rejected for {username}: {result.error_code}")
            return result

        active = active.rotate(csrf=extract_csrf_token(text))
        # VTOP accepts the login id as authorizedID when the dashboard hides the register number.
        identity = Identity(
            name=username,
            registration_number=extract_registration_number(text) or username,
            login_id=username,
        )
        self.session = active.authenticate(
            identity,
            expires_at=self._clock() + self.config.SESSION_MAX_AGE,
            credentials=Credentials(username, password) if remember else None,
        )
        logger.info(
            f"Login succeeded for {username} "
            f"(registration {identity.registration_number or 'unknown'}, session {short(active.session_id)})"
        )
        return LoginResult(
            success=True,
            identity=identity,
            new_session_id=self.session.session_id,
            new_csrf=self.session.csrf,
            new_server_id=self.session.server_id,
        )

    def confirm_identity(self, identity):
        """Swap in an identity confirmed from the profile page."""
        self.session = self.session.with_identity(identity)
        return self.session

    # ----- authenticated requests -----

    def _registration_number(self):
        if not self.session.is_usable(self._clock()):
            raise Unauthorized()
        if not self.session.registration_number:
            raise MissingIdentity()
        return self.session.registration_number

    def _authenticated_post(self, path, fields):
        """One attempt: POST, then check for expiry and fold rotated tokens in."""
        session = self.session
        body = {"authorizedID": session.registration_number, "_csrf": session.csrf}
        body.update(fields)
        body["nocache"] = str(int(self._clock() * 1000))

        logger.debug(f"POST {path} session={short(session.session_id)} fields={sorted(body)}")
        response = self._send(
            "POST",
            self._url(path),
            self._headers(
                session,
                referer=self._url(ENDPOINTS["content"]),
                form=True,
                Origin=self.config.BASE_URL,
            ),
            data=body,
        )

        if response.status_code in REDIRECT_STATUSES:
            logger.info(f"{path} redirected to {response.headers.get('Location')}: session expired")
            self.session = session.expire()
            raise SessionExpired()
        if response.status_code != 200:
            raise UpstreamError(f"VTOP returned status {response.status_code} for {path}")

        text = response.text or ""
        if looks_expired(text):
            logger.info(f"{path} returned the logged-out page: session expired")
            self.session = session.expire()
            raise SessionExpired()

        cookies = set_cookie_headers(response)
        self.session = session.rotate(
            session_id=extract_session_id(cookies),
            server_id=extract_server_id(cookies),
            csrf=extract_csrf_token(text),
        )
        return text

    def fetch(self, path, fields=None):
        """Authenticated POST with the retry policy applied."""
        self._registration_number()
        return with_retry(
            lambda: self._authenticated_post(path, fields or {}),
            self.config.MAX_RETRIES,
            self.config.RETRY_DELAY,
            self._sleep,
            label=path,
        )

    def navigate(self, path):
        """Prime server-side page state. Best effort; only expiry propagates."""
        self._registration_number()
        try:
            self._authenticated_post(path, {"verifyMenu": "true"})
        except SessionExpired:
            raise
        except VtopError as e:
            logger.warning(f"Navigate to {path} failed, continuing: {e.message}")

    @staticmethod
    def _require(value, name):
        if not value or not str(value).strip():
            raise InvalidInput(f"{name} is required")
        return str(value).strip()

    # ----- data -----

    def get_semesters(self):
        html = self.fetch(ENDPOINTS["attendance_menu"], {"verifyMenu": "true"})
        semesters = scrape_semesters_from_html(html)
        logger.info(f"Found {len(semesters)} semesters")
        return semesters

    def get_attendance(self, semester_id):
        semester_id = self._require(semester_id, "semesterId")
        self.navigate(ENDPOINTS["attendance_menu"])
        html = self.fetch(
            ENDPOINTS["attendance"], {"semesterSubId": semester_id, "x": self._utc_string()}
        )
        return scrape_attendance_from_html(html, semester_id, fetched_at=self._now_iso())

    def get_timetable(self, semester_id):
        semester_id = self._require(semester_id, "semesterId")
        self.navigate(ENDPOINTS["timetable_menu"])
        html = self.fetch(
            ENDPOINTS["timetable"], {"semesterSubId": semester_id, "x": self._utc_string()}
        )
        return scrape_timetable_from_html(html, semester_id)

    def get_curriculum(self):
        html = self.fetch(ENDPOINTS["curriculum"], {"verifyMenu": "true"})
        return scrape_curriculum_from_html(html)

    def get_course_page(self, course_id):
        course_id = self._require(course_id, "courseId")
        html = self.fetch(ENDPOINTS["course_page"], {"courseId": course_id})
        return scrape_course_page_from_html(html)

    def get_marks(self, semester_id):
        semester_id = self._require(semester_id, "semesterId")
        html = self.fetch(ENDPOINTS["marks"], {"semesterSubId": semester_id})
        return scrape_marks_from_html(html, semester_id)

    def get_grades(self, semester_id=None):
        """Grades for one semester, or the whole grade history when no semester is given."""
        if not semester_id:
            html = self.fetch(ENDPOINTS["grade_history"], {"verifyMenu": "true"})
            return scrape_grades_from_html(html)
        self.navigate(ENDPOINTS["grade_history"])
        html = self.fetch(ENDPOINTS["grades"], {"semesterSubId": semester_id})
        return scrape_grades_from_html(html, semester_id)

    def get_exam_schedule(self, semester_id):
        semester_id = self._require(semester_id, "semesterId")
        html = self.fetch(ENDPOINTS["exam_schedule"], {"semesterSubId": semester_id})
        return scrape_exam_schedule_from_html(html, semester_id)

    def get_profile(self):
        html = self.fetch(ENDPOINTS["profile"], {"verifyMenu": "true", "x": self._utc_string()})
        return scrape_profile_from_html(html)

    def get_dashboard_cgpa(self):
        html = self.fetch(ENDPOINTS["dashboard_cgpa"])
        return scrape_dashboard_cgpa(html)

    def profile_photo_url(self, registration_number=None):
        registration_number = registration_number or self.session.registration_number
        return f"{self._url(ENDPOINTS['photo'])}?id={registration_number}"
