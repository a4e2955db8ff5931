"""
Tests for the error taxonomy and the config helpers.
"""

import unittest

import requests
from cryptography.fernet import Fernet

from vtop.common import Config, build_fernet, derive_fernet_key
from vtop.errors import (
    LOGIN_ERRORS,
    InvalidCaptcha,
    InvalidCredentials,
    MissingIdentity,
    SessionExpired,
    UpstreamError,
    UpstreamTimeout,
    UpstreamUnavailable,
    VtopError,
    requires_reauth,
)


class TestErrors(unittest.TestCase):
    def test_wire_shape(self) -> None:
        error = SessionExpired()
        self.assertEqual(error.to_dict(), {
            "code": "SESSION_EXPIRED",
            "message": "Your session has expired. Please log in again.",
        })
        self.assertEqual(error.http_status, 401)
        self.assertEqual(InvalidCaptcha("Try again").to_dict()["message"], "Try again")

    def test_from_exception(self) -> None:
        self.assertIsInstance(VtopError.from_exception(requests.exceptions.ReadTimeout()), UpstreamTimeout)
        self.assertIsInstance(VtopError.from_exception(requests.exceptions.ConnectionError()), UpstreamUnavailable)
        self.assertIsInstance(VtopError.from_exception(ValueError("Session expired")), SessionExpired)
        self.assertIsInstance(VtopError.from_exception(ValueError("bad credentials")), InvalidCredentials)
        self.assertIsInstance(VtopError.from_exception(ValueError("registration missing")), MissingIdentity)
        self.assertIsInstance(VtopError.from_exception(ValueError("weird")), UpstreamError)
        original = InvalidCaptcha()
        self.assertIs(VtopError.from_exception(original), original)

    def test_flags(self) -> None:
        self.assertTrue(UpstreamTimeout().retryable)
        self.assertFalse(SessionExpired().retryable)
        self.assertTrue(requires_reauth(SessionExpired()))
        self.assertTrue(requires_reauth(RuntimeError("SESSION_EXPIRED")))
        self.assertFalse(requires_reauth(InvalidCaptcha()))
        self.assertIs(LOGIN_ERRORS["INVALID_CAPTCHA"], InvalidCaptcha)


class TestConfig(unittest.TestCase):
    def test_overrides(self) -> None:
        cfg = Config(MAX_RETRIES=5)
        self.assertEqual(cfg.MAX_RETRIES, 5)
        with self.assertRaises(AttributeError):
            Config(NOT_A_KEY=1)

    def test_fernet_from_key_or_passphrase(self) -> None:
        key = Fernet.generate_key().decode()
        token = build_fernet(Config(ENCRYPTION_KEY=key)).encrypt(b"x")
        self.assertEqual(Fernet(key.encode()).decrypt(token), b"x")

        self.assertEqual(derive_fernet_key("pass"), derive_fernet_key("pass"))
        self.assertNotEqual(derive_fernet_key("pass"), derive_fernet_key("other"))
        with self.assertRaises(ValueError):
            build_fernet(Config(ENCRYPTION_KEY="short", SESSION_SECRET=None))


if __name__ == "__main__":
    unittest.main()
