"""
Test doubles shared by the client and service tests.

FakeHttp stands in for a requests.Session: it records every call and
answers from a script, so no test ever reaches the network.
"""

import fnmatch


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


class FakeRawHeaders:
    def __init__(self, set_cookies):
        self._set_cookies = list(set_cookies)

    def getlist(self, name):
        return list(self._set_cookies) if name.lower() == "set-cookie" else []


class FakeRaw:
    def __init__(self, set_cookies):
        self.headers = FakeRawHeaders(set_cookies)


class FakeResponse:
    """
    Minimal requests.Response look-alike. ``set_cookie`` may be one
    comma-joined string or a list of separate header values.
    """

    def __init__(self, status_code=200, text="", location=None, set_cookie=None):
        self.status_code = status_code
        self.text = text
        self.headers = {}
        self.raw = None
        if location:
            self.headers["Location"] = location
        if isinstance(set_cookie, list):
            self.raw = FakeRaw(set_cookie)
            self.headers["Set-Cookie"] = ", ".join(set_cookie)
        elif set_cookie:
            self.headers["Set-Cookie"] = set_cookie


class FakeHttp:
    """
    Scripted transport. Each call pops the next item: a FakeResponse is
    returned, an exception instance is raised, a callable is invoked with
    (method, url, kwargs). ``default`` answers once the script runs dry.
    There is no cookie jar, so a client that reaches for one fails loudly.
    """

    def __init__(self, script=None, default=None):
        self.script = list(script or [])
        self.default = default
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        item = self.script.pop(0) if self.script else self.default
        if item is None:
            raise AssertionError(f"Unexpected request: {method} {url}")
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(method, url, kwargs)
        return item

    def paths(self):
        return [url.split("vit.ac.in", 1)[-1] for _, url, _ in self.calls]


class FakeRedis:
    """Dict-backed subset of the redis-py client used by RedisCache."""

    def __init__(self):
        self.store = {}
        self.ttls = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    def delete(self, key):
        if isinstance(key, bytes):
            key = key.decode()
        return 1 if self.store.pop(key, None) is not None else 0

    def scan_iter(self, match="*"):
        return [key.encode() for key in list(self.store) if fnmatch.fnmatch(key, match)]


# -------------------------------
# Page fixtures
# -------------------------------

OPEN_PAGE = '<html><body><form><input type="hidden" name="_csrf" value="csrf-open"/></form></body></html>'
LOGIN_PAGE = '<html><head><meta name="_csrf" content="csrf-login"/></head><body>stdForm</body></html>'
CAPTCHA_PAGE = '<div><img src="data:image/png;base64,iVBORw0KGgo=" alt="captcha"/></div>'
DASHBOARD_PAGE = (
    '<html><body><input type="hidden" id="authorizedIDX" value="21BCE1234"/>'
    '<input type="hidden" name="_csrf" value="csrf-dash"/><h3>Welcome</h3></body></html>'
)
SEMESTERS_PAGE = (
    '<select id="semesterSubId">'
    '<option value="">-- Choose Semester --</option>'
    '<option value="VL20242505" selected>Winter Semester 2024-25</option>'
    '<option value="VL20242501">Fall Semester 2024-25</option>'
    "</select>"
)
PROFILE_PAGE = """
<div class="card">
  <p style="text-align: center; font-weight: bold;">ARJUN KUMAR</p>
  <img class="img-thumbnail" src="data:image/jpeg;base64,AAAA"/>
</div>
<table>
  <tr><td>REGISTER NUMBER</td><td>21BCE1234</td></tr>
  <tr><td>STUDENT NAME</td><td>ARJUN KUMAR</td></tr>
  <tr><td>APPLICATION NUMBER</td><td>2021123456</td></tr>
  <tr><td>DATE OF BIRTH</td><td>01-01-2003</td></tr>
  <tr><td>GENDER</td><td>MALE</td></tr>
  <tr><td>BLOOD GROUP</td><td>O+</td></tr>
  <tr><td>MOBILE NUMBER</td><td>9876543210</td></tr>
  <tr><td>NATIONALITY</td><td>INDIAN</td></tr>
  <tr><td>VIT EMAIL</td><td>arjun.kumar2021@vitstudent.ac.in</td></tr>
  <tr><td>PROGRAM &amp; BRANCH</td><td>B.Tech - Computer Science</td></tr>
  <tr><td>SCHOOL NAME</td><td>SCOPE</td></tr>
</table>
<h4>ADDRESS INFORMATION</h4>
<table>
  <tr><td>STREET NAME</td><td>12 Main Road</td></tr>
  <tr><td>CITY</td><td>Chennai</td></tr>
  <tr><td>STATE</td><td>Tamil Nadu</td></tr>
  <tr><td>PINCODE</td><td>600127</td></tr>
</table>
<h4>FAMILY INFORMATION</h4>
<table>
  <tr><td colspan="2">FATHER DETAILS</td></tr>
  <tr><td>FATHER NAME</td><td>RAVI KUMAR</td></tr>
  <tr><td>OCCUPATION</td><td>ENGINEER</td></tr>
  <tr><td>MOBILE NUMBER</td><td>9000000001</td></tr>
  <tr><td colspan="2">MOTHER DETAILS</td></tr>
  <tr><td>NAME</td><td>LATHA KUMAR</td></tr>
  <tr><td>OCCUPATION</td><td>TEACHER</td></tr>
  <tr><td>MOBILE NUMBER</td><td>9000000002</td></tr>
</table>
<h4>PROCTOR INFORMATION</h4>
<table>
  <tr><td>FACULTY NAME</td><td>Dr. MEERA NAIR</td></tr>
  <tr><td>FACULTY EMAIL</td><td>meera.nair@vit.ac.in</td></tr>
  <tr><td>CABIN</td><td>SJT 413</td></tr>
</table>
"""
HOSTEL_SECTION = """
<h4>HOSTEL INFORMATION</h4>
<table>
  <tr><td>BLOCK NAME</td><td>Q Block</td></tr>
  <tr><td>ROOM NO.</td><td>512</td></tr>
  <tr><td>BED TYPE</td><td>4 Bedded</td></tr>
</table>
"""


def handshake_script():
    """Open page, setup redirect, login page, CAPTCHA; the CAPTCHA response tries to rotate cookies."""
    return [
        FakeResponse(200, OPEN_PAGE, set_cookie="JSESSIONID=AAA111; Path=/vtop; HttpOnly, SERVERID=s1; path=/"),
        FakeResponse(302, location="/vtop/login", set_cookie="JSESSIONID=BBB222; Path=/vtop"),
        FakeResponse(200, LOGIN_PAGE),
        FakeResponse(200, CAPTCHA_PAGE, set_cookie=["JSESSIONID=CCC333; Path=/vtop", "SERVERID=s9; path=/"]),
    ]
