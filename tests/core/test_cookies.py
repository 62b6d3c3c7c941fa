# tests/core/test_cookies.py
"""Unit tests for signed cookie encoding and Set-Cookie emission"""
import pytest
from starlette.responses import Response

from shopguard.core.exceptions import ConfigurationError, CookieTamperedError
from shopguard.core.security.cookies import (
    SignedCookie,
    create_csrf_cookie,
    create_prefs_cookie,
    create_session_cookie,
)

SECRET = "a" * 40
OLD_SECRET = "b" * 40


@pytest.fixture
def cookie():
    return SignedCookie("session", secrets=[SECRET], max_age=3600)


def set_cookie_header(response: Response) -> str:
    headers = response.headers.getlist("set-cookie")
    assert len(headers) == 1
    return headers[0]


@pytest.mark.unit
class TestSigning:

    def test_decode_returns_encoded_value(self, cookie):
        raw = cookie.encode({"sid": "sess-1"})
        assert cookie.decode(raw) == {"sid": "sess-1"}

    def test_swapped_payload_is_rejected(self, cookie):
        raw = cookie.encode({"sid": "sess-1"})
        forged_payload = cookie.encode({"sid": "sess-admin"}).split(".")[0]
        rest = raw.split(".", 1)[1]

        with pytest.raises(CookieTamperedError):
            cookie.decode(f"{forged_payload}.{rest}")

    def test_wrong_secret_is_rejected(self, cookie):
        other = SignedCookie("session", secrets=["c" * 40])
        with pytest.raises(CookieTamperedError) as exc_info:
            cookie.decode(other.encode({"sid": "sess-1"}))
        assert exc_info.value.cookie_name == "session"

    def test_unsigned_value_is_rejected(self, cookie):
        with pytest.raises(CookieTamperedError):
            cookie.decode("no-signature-here")

    def test_value_signed_for_another_cookie_is_rejected(self, test_settings):
        csrf_value = create_csrf_cookie(test_settings).encode({"sid": "sess-1"})
        with pytest.raises(CookieTamperedError):
            create_session_cookie(test_settings).decode(csrf_value)

    @pytest.mark.parametrize("raw", ["éabc.def", "abc.éé", "\xe9x.y", "sess.☃.☃"])
    def test_non_ascii_value_is_rejected(self, cookie, raw):
        with pytest.raises(CookieTamperedError):
            cookie.decode(raw)

    def test_rotated_secret_still_reads(self):
        old = SignedCookie("session", secrets=[OLD_SECRET])
        rotated = SignedCookie("session", secrets=[SECRET, OLD_SECRET])

        raw = old.encode({"sid": "sess-1"})
        assert rotated.decode(raw) == {"sid": "sess-1"}
        # New cookies are signed with the active secret only
        with pytest.raises(CookieTamperedError):
            old.decode(rotated.encode({"sid": "sess-2"}))

    def test_parse_absent_cookie(self, cookie):
        assert cookie.parse({}) is None
        assert cookie.parse({"session": ""}) is None

    def test_signed_cookie_needs_secret(self):
        with pytest.raises(ConfigurationError):
            SignedCookie("session", secrets=[])


@pytest.mark.unit
class TestResponseCookies:

    def test_session_cookie_attributes(self, test_settings):
        response = Response()
        create_session_cookie(test_settings).set_on(response, {"sid": "sess-1"})
        header = set_cookie_header(response)

        assert header.startswith("session=")
        assert "HttpOnly" in header
        assert "samesite=strict" in header.lower()
        assert "Path=/" in header
        assert f"Max-Age={test_settings.SESSION_MAX_AGE}" in header
        assert "Secure" not in header

    def test_secure_in_production(self, make_settings):
        config = make_settings(ENVIRONMENT="production")
        response = Response()
        create_session_cookie(config).set_on(response, {"sid": "sess-1"})
        assert "Secure" in set_cookie_header(response)

    def test_explicit_max_age_wins(self, cookie):
        response = Response()
        cookie.set_on(response, {"sid": "sess-1"}, max_age=120)
        assert "Max-Age=120" in set_cookie_header(response)

    def test_delete_expires_cookie(self, cookie):
        response = Response()
        cookie.delete_on(response)
        header = set_cookie_header(response)

        assert header.startswith("session=")
        assert "Max-Age=0" in header

    def test_prefs_cookie_is_plain_and_script_readable(self, test_settings):
        prefs = create_prefs_cookie(test_settings)
        raw = prefs.encode("dark")

        assert raw == "dark"
        assert prefs.decode(raw) == "dark"
        response = Response()
        prefs.set_on(response, "dark")
        header = set_cookie_header(response)
        assert header.startswith("theme=dark")
        assert "HttpOnly" not in header
        assert "samesite=lax" in header.lower()
