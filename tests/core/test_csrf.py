# tests/core/test_csrf.py
"""Unit tests for the double-submit CSRF guard"""
import pytest
from starlette.responses import Response

from shopguard.core.security.csrf import CSRFGuard
from shopguard.models.auth_models import AuditEventType


@pytest.fixture
def guard(test_settings, audit_log):
    return CSRFGuard(test_settings, audit_log=audit_log)


@pytest.fixture
def issued(guard, ctx):
    """(token, context carrying the matching signed cookie)"""
    token = guard.issue_token()
    return token, ctx.with_cookie(guard.cookie.name, guard.cookie.encode(token))


@pytest.mark.unit
class TestIssue:

    def test_token_is_hex_of_configured_length(self, guard):
        token = guard.issue_token()
        assert len(token) == 64
        int(token, 16)

    def test_tokens_are_unique(self, guard):
        assert guard.issue_token() != guard.issue_token()

    def test_issue_sets_signed_cookie(self, guard, ctx):
        response = Response()
        token = guard.issue(response)
        header = response.headers["set-cookie"]

        assert header.startswith("csrf-token=")
        assert "HttpOnly" in header
        assert "samesite=strict" in header.lower()
        assert "Max-Age=3600" in header
        assert token not in header
        value = header.split(";")[0].split("=", 1)[1]
        assert guard.validate(ctx.with_cookie("csrf-token", value), token) is True


@pytest.mark.unit
class TestValidate:

    def test_accepts_matching_token(self, guard, issued):
        token, ctx = issued
        assert guard.validate(ctx, token) is True

    def test_rejects_different_token_of_same_length(self, guard, issued):
        _, ctx = issued
        assert guard.validate(ctx, guard.issue_token()) is False

    def test_rejects_wrong_length(self, guard, issued):
        token, ctx = issued
        assert guard.validate(ctx, token[:-2]) is False

    def test_rejects_missing_submission(self, guard, issued):
        _, ctx = issued
        assert guard.validate(ctx, None) is False
        assert guard.validate(ctx, "") is False

    def test_rejects_without_cookie(self, guard, ctx):
        assert guard.validate(ctx, guard.issue_token()) is False

    def test_tampered_cookie_is_audited(self, guard, ctx, audit_log):
        token = guard.issue_token()
        forged = ctx.with_cookie(guard.cookie.name, guard.cookie.encode(token)[:-3] + "abc")

        assert guard.validate(forged, token) is False
        events = audit_log.query(event_type=AuditEventType.COOKIE_TAMPERED)
        assert len(events) == 1
        assert events[0].metadata["cookie"] == "csrf-token"

    def test_disabled_protection_accepts(self, make_settings, ctx):
        guard = CSRFGuard(make_settings(CSRF_PROTECTION=False))
        assert guard.enabled is False
        assert guard.validate(ctx, None) is True

    @pytest.mark.parametrize("raw", ["éabc.def", "abc.def.éé"])
    def test_non_ascii_cookie_fails_closed(self, guard, ctx, audit_log, raw):
        token = guard.issue_token()

        assert guard.validate(ctx.with_cookie("csrf-token", raw), token) is False
        assert len(audit_log.query(event_type=AuditEventType.COOKIE_TAMPERED)) == 1
