# tests/services/test_auth_service.py
"""
Unit tests for AuthService.

Login never raises; every failure comes back as a LoginResult with a code.
Authorization helpers raise AuthenticationRequired / PermissionDenied.
"""
from unittest.mock import AsyncMock, patch

import pytest
from starlette.responses import Response

from shopguard.core.exceptions import (
    AuthErrorCode,
    AuthenticationRequired,
    InternalError,
    PermissionDenied,
)
from shopguard.models.auth_models import (
    AuditEventType,
    LoginCredentials,
    LoginOptions,
    Permission,
    User,
    UserRecord,
    UserRole,
)
from shopguard.services.auth_service import TwoFactorVerifier, create_auth_service


class StaticVerifier(TwoFactorVerifier):
    """Accepts exactly one code"""

    def __init__(self, code: str):
        self.code = code

    async def verify(self, user, code):
        return code == self.code


def creds(email="user@example.com", password="password", **kwargs):
    return LoginCredentials(email=email, password=password, **kwargs)


async def login_ctx(auth, ctx, email="user@example.com"):
    """Context carrying a fresh session cookie for email"""
    result = await auth.login(ctx, creds(email))
    assert result.success, result.error
    return ctx.with_cookie("session", auth.session_store.sign(result.session))


@pytest.fixture
def extra_users(user_repo):
    user_repo.add_user("disabled@example.com", "password", "Disabled", is_active=False, email_verified=True)
    user_repo.add_user("unverified@example.com", "password", "Unverified", email_verified=False)
    user_repo.add_user("twofa@example.com", "password", "Two Factor", email_verified=True, two_factor_enabled=True)
    return user_repo


@pytest.mark.unit
class TestLogin:

    async def test_successful_login(self, auth_service, ctx, clock):
        result = await auth_service.login(ctx, creds())

        assert result.success is True
        assert result.error is None
        assert result.session.role == UserRole.USER
        assert result.session.user_id == "3"
        assert result.redirect_to == "/dashboard"
        assert result.user.last_login_at == clock.now()

    async def test_login_without_two_factor_is_not_marked_verified(self, auth_service, ctx):
        result = await auth_service.login(ctx, creds())

        assert result.user.two_factor_enabled is False
        assert result.session.two_factor_verified is False
        stored = auth_service.session_store.get(result.session.session_id)
        assert stored.two_factor_verified is False

    async def test_result_user_has_no_password_hash(self, auth_service, ctx):
        result = await auth_service.login(ctx, creds())
        assert isinstance(result.user, User)
        assert not isinstance(result.user, UserRecord)
        assert "password_hash" not in result.user.model_dump()

    async def test_email_is_case_insensitive(self, auth_service, ctx):
        result = await auth_service.login(ctx, creds(email="  USER@Example.com "))
        assert result.success

    async def test_success_is_audited(self, auth_service, ctx, audit_log):
        result = await auth_service.login(ctx, creds())
        event = audit_log.query(event_type=AuditEventType.LOGIN_SUCCESS)[0]
        assert event.session_id == result.session.session_id
        assert event.metadata["login_method"] == "email_password"

    async def test_remember_me(self, auth_service, ctx):
        result = await auth_service.login(ctx, creds(remember_me=True))
        assert result.session.is_remembered

    async def test_safe_redirect_is_honoured(self, auth_service, ctx):
        result = await auth_service.login(ctx, creds(), LoginOptions(redirect_to="/cart"))
        assert result.redirect_to == "/cart"

    @pytest.mark.parametrize("target", ["https://evil.example", "//evil.example", "javascript:alert(1)"])
    async def test_open_redirect_falls_back(self, auth_service, ctx, target):
        result = await auth_service.login(ctx, creds(), LoginOptions(redirect_to=target))
        assert result.redirect_to == "/dashboard"

    async def test_wrong_password(self, auth_service, ctx, audit_log):
        result = await auth_service.login(ctx, creds(password="wrong"))

        assert result.success is False
        assert result.error.code == AuthErrorCode.INVALID_CREDENTIALS.value
        assert result.session is None
        assert audit_log.query(event_type=AuditEventType.LOGIN_FAILED)[0].user_id == "3"

    async def test_unknown_email_looks_like_wrong_password(self, auth_service, ctx):
        unknown = await auth_service.login(ctx, creds(email="nobody@example.com"))
        wrong = await auth_service.login(ctx, creds(password="wrong"))

        assert unknown.error.code == wrong.error.code
        assert unknown.error.message == wrong.error.message

    @pytest.mark.parametrize("email,password", [("", "password"), ("user@example.com", "")])
    async def test_missing_credentials(self, auth_service, ctx, email, password):
        result = await auth_service.login(ctx, creds(email=email, password=password))
        assert result.error.code == AuthErrorCode.INVALID_CREDENTIALS.value


@pytest.mark.unit
class TestLoginTiming:

    async def test_unknown_and_known_email_both_verify_once(self, auth_service, ctx):
        with patch.object(auth_service.hasher, "verify", wraps=auth_service.hasher.verify) as spy:
            await auth_service.login(ctx, creds(email="nobody@example.com"))
            assert spy.call_count == 1
            # The unknown email is checked against the dummy hash
            assert spy.call_args.args[1] == auth_service._dummy_hash

            await auth_service.login(ctx, creds(password="wrong"))
            assert spy.call_count == 2

    async def test_missing_credentials_skip_hashing(self, auth_service, ctx):
        with patch.object(auth_service.hasher, "verify", wraps=auth_service.hasher.verify) as spy:
            await auth_service.login(ctx, creds(password=""))
        spy.assert_not_called()


@pytest.mark.unit
class TestLoginRateLimit:

    @pytest.fixture
    def strict_auth(self, make_auth_service, make_settings):
        return make_auth_service(make_settings(RATE_LIMIT_LOGIN_ATTEMPTS=3))

    async def test_fourth_attempt_is_rate_limited(self, strict_auth, ctx):
        for _ in range(3):
            result = await strict_auth.login(ctx, creds(password="wrong"))
            assert result.error.code == AuthErrorCode.INVALID_CREDENTIALS.value

        # Correct password no longer helps
        result = await strict_auth.login(ctx, creds())
        assert result.success is False
        assert result.error.code == AuthErrorCode.RATE_LIMITED.value
        assert result.error.details["remaining_attempts"] == 0
        assert result.error.details["retry_after_seconds"] > 0

    async def test_rate_limited_login_skips_verification(self, strict_auth, ctx):
        for _ in range(3):
            await strict_auth.login(ctx, creds(password="wrong"))
        with patch.object(strict_auth.hasher, "verify") as verify:
            await strict_auth.login(ctx, creds())
        verify.assert_not_called()

    async def test_other_ip_is_unaffected(self, strict_auth, ctx, make_ctx):
        for _ in range(4):
            await strict_auth.login(ctx, creds(password="wrong"))
        result = await strict_auth.login(make_ctx(ip="198.51.100.7"), creds())
        assert result.success

    async def test_success_resets_counter(self, strict_auth, ctx):
        await strict_auth.login(ctx, creds(password="wrong"))
        await strict_auth.login(ctx, creds(password="wrong"))
        assert (await strict_auth.login(ctx, creds())).success
        assert strict_auth.login_limiter.remaining_attempts(ctx.client_ip) == 3

    async def test_blacklist_expires(self, strict_auth, ctx, clock):
        for _ in range(4):
            await strict_auth.login(ctx, creds(password="wrong"))
        clock.advance(hours=1, seconds=1)
        assert (await strict_auth.login(ctx, creds())).success


@pytest.mark.unit
class TestAccountState:

    async def test_disabled_account(self, auth_service, extra_users, ctx):
        result = await auth_service.login(ctx, creds(email="disabled@example.com"))
        assert result.error.code == AuthErrorCode.ACCOUNT_DISABLED.value

    async def test_unverified_email(self, auth_service, extra_users, ctx):
        result = await auth_service.login(ctx, creds(email="unverified@example.com"))
        assert result.error.code == AuthErrorCode.EMAIL_NOT_VERIFIED.value

    async def test_unverified_email_allowed_when_not_required(self, auth_service, extra_users, ctx):
        result = await auth_service.login(
            ctx, creds(email="unverified@example.com"), LoginOptions(require_email_verification=False)
        )
        assert result.success

    async def test_two_factor_required(self, auth_service, extra_users, ctx):
        result = await auth_service.login(ctx, creds(email="twofa@example.com"))
        assert result.requires_two_factor is True
        assert result.error.code == AuthErrorCode.TWO_FACTOR_REQUIRED.value
        assert result.session is None

    async def test_two_factor_without_verifier_fails_closed(self, auth_service, extra_users, ctx):
        result = await auth_service.login(ctx, creds(email="twofa@example.com", two_factor_code="123456"))
        assert result.success is False
        assert result.requires_two_factor is True

    async def test_two_factor_with_verifier(self, make_auth_service, test_settings, extra_users, ctx):
        auth = make_auth_service(test_settings, two_factor_verifier=StaticVerifier("123456"))

        rejected = await auth.login(ctx, creds(email="twofa@example.com", two_factor_code="000000"))
        assert rejected.error.code == AuthErrorCode.TWO_FACTOR_REQUIRED.value

        accepted = await auth.login(ctx, creds(email="twofa@example.com", two_factor_code="123456"))
        assert accepted.success
        assert accepted.session.two_factor_verified


@pytest.mark.unit
class TestLoginInternalError:

    async def test_repository_failure_is_generic(self, make_auth_service, test_settings, ctx, audit_log):
        broken = AsyncMock()
        broken.get_by_email.side_effect = RuntimeError("connection string postgres://secret")
        auth = make_auth_service(test_settings, users=broken)

        result = await auth.login(ctx, creds())

        assert result.success is False
        assert result.error.code == AuthErrorCode.INTERNAL_ERROR.value
        assert "postgres" not in result.error.message
        event = audit_log.query(event_type=AuditEventType.LOGIN_FAILED)[0]
        assert event.metadata["error_type"] == "RuntimeError"


@pytest.mark.unit
class TestRequireAuth:

    async def test_returns_user_and_session(self, auth_service, ctx):
        request = await login_ctx(auth_service, ctx)
        user, session = await auth_service.require_auth(request)
        assert user.id == "3"
        assert session.user_id == "3"

    async def test_missing_session_redirects_to_login(self, auth_service, ctx):
        with pytest.raises(AuthenticationRequired) as exc_info:
            await auth_service.require_auth(ctx)
        assert exc_info.value.code == AuthErrorCode.SESSION_NOT_FOUND
        assert exc_info.value.redirect_to == "/auth/login?redirectTo=%2Faccount"

    async def test_tampered_cookie_reports_not_found(self, auth_service, ctx):
        request = await login_ctx(auth_service, ctx)
        forged = request.with_cookie("session", request.cookies["session"][:-4] + "AAAA")
        with pytest.raises(AuthenticationRequired) as exc_info:
            await auth_service.require_auth(forged)
        assert exc_info.value.code == AuthErrorCode.SESSION_NOT_FOUND

    async def test_expired_session(self, auth_service, ctx, clock):
        request = await login_ctx(auth_service, ctx)
        clock.advance(days=2)
        with pytest.raises(AuthenticationRequired) as exc_info:
            await auth_service.require_auth(request)
        assert exc_info.value.code == AuthErrorCode.SESSION_EXPIRED

    async def test_strict_binding_reports_device_mismatch(self, make_auth_service, make_settings, ctx, make_ctx):
        auth = make_auth_service(make_settings(SESSION_STRICT_IP_BINDING=True))
        request = await login_ctx(auth, ctx)
        moved = make_ctx(ip="198.51.100.7").with_cookie("session", request.cookies["session"])
        with pytest.raises(AuthenticationRequired) as exc_info:
            await auth.require_auth(moved)
        assert exc_info.value.code == AuthErrorCode.DEVICE_MISMATCH

    async def test_disabled_user_loses_session(self, auth_service, user_repo, ctx):
        request = await login_ctx(auth_service, ctx)
        user_repo._users["3"].is_active = False

        with pytest.raises(AuthenticationRequired):
            await auth_service.require_auth(request)
        assert auth_service.session_store.get_user_sessions("3") == []

    async def test_unexpected_failure_is_internal_error(self, auth_service, ctx):
        request = await login_ctx(auth_service, ctx)
        with patch.object(auth_service.users, "get_by_id", AsyncMock(side_effect=KeyError("boom"))):
            with pytest.raises(InternalError) as exc_info:
                await auth_service.require_auth(request)
        assert exc_info.value.code == AuthErrorCode.INTERNAL_ERROR
        assert "boom" not in exc_info.value.message


@pytest.mark.unit
class TestRolesAndPermissions:

    async def test_manager_passes_user_requirement(self, auth_service, ctx):
        request = await login_ctx(auth_service, ctx, "manager@example.com")
        user, _ = await auth_service.require_role(request, UserRole.USER)
        assert user.role == UserRole.MANAGER

    async def test_manager_fails_admin_requirement(self, auth_service, ctx, audit_log):
        request = await login_ctx(auth_service, ctx, "manager@example.com")
        with pytest.raises(PermissionDenied) as exc_info:
            await auth_service.require_role(request, UserRole.ADMIN)
        assert exc_info.value.required == "admin"
        assert audit_log.query(event_type=AuditEventType.PERMISSION_DENIED)[0].user_id == "2"

    async def test_exact_role_match(self, auth_service, ctx):
        request = await login_ctx(auth_service, ctx, "manager@example.com")
        with pytest.raises(PermissionDenied):
            await auth_service.require_role(request, UserRole.USER, allow_higher_roles=False)
        assert await auth_service.has_role(request, UserRole.MANAGER, allow_higher_roles=False)

    async def test_require_permission(self, auth_service, ctx, audit_log):
        user_request = await login_ctx(auth_service, ctx)
        with pytest.raises(PermissionDenied) as exc_info:
            await auth_service.require_permission(user_request, Permission.SYSTEM_ADMIN)
        assert exc_info.value.required == "system_admin"

        admin_request = await login_ctx(auth_service, ctx, "admin@example.com")
        user, _ = await auth_service.require_permission(admin_request, Permission.SYSTEM_ADMIN)
        assert user.id == "1"
        assert audit_log.query(event_type=AuditEventType.PERMISSION_GRANTED)[0].user_id == "1"

    async def test_boolean_helpers(self, auth_service, ctx):
        assert await auth_service.has_role(ctx, UserRole.USER) is False
        request = await login_ctx(auth_service, ctx)
        assert await auth_service.has_permission(request, Permission.ORDER_VIEW) is True
        assert await auth_service.has_permission(request, Permission.INVENTORY_MANAGE) is False


@pytest.mark.unit
class TestLogout:

    async def test_logout_ends_session(self, auth_service, ctx, audit_log):
        request = await login_ctx(auth_service, ctx)
        response = Response()
        await auth_service.logout(request, response)
        header = response.headers["set-cookie"]

        assert header.startswith("session=")
        assert "Max-Age=0" in header
        assert audit_log.query(event_type=AuditEventType.LOGOUT)
        with pytest.raises(AuthenticationRequired):
            await auth_service.require_auth(request)

    async def test_logout_without_session(self, auth_service, ctx):
        response = Response()
        await auth_service.logout(ctx, response)
        assert "Max-Age=0" in response.headers["set-cookie"]

    async def test_logout_all_devices(self, auth_service, ctx, make_ctx):
        request = await login_ctx(auth_service, ctx)
        await login_ctx(auth_service, make_ctx(ip="198.51.100.7"))
        await login_ctx(auth_service, ctx, "admin@example.com")

        assert await auth_service.logout_all_devices(request) == 2
        assert auth_service.session_store.get_user_sessions("3") == []
        assert len(auth_service.session_store.get_user_sessions("1")) == 1


@pytest.mark.unit
class TestHelpers:

    async def test_get_current_user(self, auth_service, ctx):
        assert await auth_service.get_current_user(ctx) is None
        request = await login_ctx(auth_service, ctx)
        user = await auth_service.get_current_user(request)
        assert user.email == "user@example.com"

    async def test_get_current_user_is_throttled(self, make_auth_service, make_settings, ctx):
        auth = make_auth_service(make_settings(RATE_LIMIT_GENERAL=2))
        request = await login_ctx(auth, ctx)
        assert await auth.get_current_user(request) is not None
        assert await auth.get_current_user(request) is not None
        assert await auth.get_current_user(request) is None

    async def test_session_info(self, auth_service, ctx):
        request = await login_ctx(auth_service, ctx)
        info = await auth_service.get_session_info(request)
        assert info["is_valid"] is True
        assert info["user"]["email"] == "user@example.com"
        assert "password_hash" not in info["user"]
        assert info["client_ip"] == "203.0.113.10"

    async def test_security_health(self, auth_service):
        health = auth_service.get_security_health()
        assert health["security"]["csrf_enabled"] is True
        assert health["rate_limiting"]["login"]["name"] == "login"
        assert "active_sessions" in health["sessions"]

    async def test_create_auth_service_wires_own_stores(self, test_settings, clock):
        auth = create_auth_service(test_settings, clock=clock)
        assert auth.session_store.audit_log is auth.audit_log
        assert auth.login_limiter is not auth.general_limiter
