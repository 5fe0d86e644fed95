"""
tests/test_service.py -- Unit tests for AuthService orchestration.

Every collaborator is real except the identity authority and the audit sink,
which are the in-process fakes from conftest.py. Employee "jdoe" / "s3cret"
is id 42 in every fresh service.

Covers:
  - Successful login: session contents, tokens, fingerprint binding, audit record
  - Rate limiting: five failures block, the sixth attempt never reaches the authority
  - Credential failures, authority errors and permission denial each count once
  - validate()/get_session() and blacklist handling
  - refresh(): rotation, single redemption, device mismatch, no active session
  - logout(): logout-everywhere, audit summary, repeated logout
  - check_device() under disabled, WARN and BLOCK policies
  - normalize_ip_address() edge cases
"""

from __future__ import annotations

import pytest

from auth.audit import AuditAction
from auth.errors import (
    FingerprintMismatchError,
    InvalidCredentialsError,
    InvalidTokenError,
    NoActiveSessionError,
    PermissionDeniedError,
    RateLimitedError,
)
from auth.fingerprint import derive_fingerprint
from auth.identity import IdentityAuthorityError
from auth.service import UNKNOWN_IP, normalize_ip_address

IP = "10.0.0.5"
UA = "Mozilla/5.0"


def _login(parts, ip: str = IP, ua: str = UA):
    return parts.service.login("jdoe", "s3cret", ip, ua)


class TestLoginSuccess:
    """Scenario: successful login."""

    def test_session_is_bound_and_stored(self, parts) -> None:
        session = _login(parts)
        service = parts.service

        assert session.employee_id == 42
        assert session.device_fingerprint == derive_fingerprint(IP, UA)
        assert session.department_code == 7
        assert session.name == "Jane Doe"
        assert session.email == "jane.doe@example.com"
        assert session.sales_person_code == "SLP-12"
        assert session.client_ip == IP
        assert session.active is True
        assert service.sessions.get(session.access_token) is session

    def test_tokens_are_valid_and_typed(self, parts) -> None:
        session = _login(parts)
        tokens = parts.service.tokens
        assert tokens.validate_access_token(session.access_token)
        assert tokens.validate_refresh_token(session.refresh_token)
        assert tokens.extract_employee_id(session.access_token) == 42

    def test_login_is_audited(self, parts) -> None:
        _login(parts)
        assert parts.audit.records == [
            {
                "employee_id": 42,
                "action": AuditAction.LOGIN,
                "subject_type": "AUTH",
                "subject_id": "42",
                "previous_value": "",
                "new_value": f"Login successful from {IP}",
                "origin": IP,
                "window_id": 1,
            }
        ]

    def test_user_agent_defaults_to_unknown(self, parts) -> None:
        session = parts.service.login("jdoe", "s3cret", IP, None)
        assert session.device_fingerprint == derive_fingerprint(IP, "Unknown")

    def test_success_clears_earlier_failures(self, parts) -> None:
        service = parts.service
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                service.login("jdoe", "wrong", IP, UA)
        _login(parts)
        assert service.rate_limiter.remaining_attempts(IP) == 5

    def test_audit_failure_does_not_fail_login(self, parts) -> None:
        parts.audit.fail = True
        session = _login(parts)
        assert parts.service.validate(session.access_token)

    def test_two_devices_get_two_sessions(self, parts) -> None:
        laptop = _login(parts, ua="Laptop")
        phone = _login(parts, ua="Phone")
        assert laptop.access_token != phone.access_token
        assert len(parts.service.sessions.sessions_for_employee(42)) == 2


class TestLoginFailures:
    """Scenario: sixth attempt after five failures is rate limited."""

    def test_sixth_attempt_is_rate_limited_without_calling_authority(self, parts) -> None:
        service = parts.service
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                service.login("jdoe", "wrong", IP, UA)
        calls_before = len(parts.identity.calls)

        with pytest.raises(RateLimitedError) as excinfo:
            service.login("jdoe", "s3cret", IP, UA)

        assert len(parts.identity.calls) == calls_before
        assert excinfo.value.status_code == 429
        assert excinfo.value.retry_after == 900

    def test_block_lifts_after_fifteen_minutes(self, parts) -> None:
        service = parts.service
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                service.login("jdoe", "wrong", IP, UA)
        parts.limiter_clock.advance(15 * 60)
        assert _login(parts).employee_id == 42

    def test_other_ip_is_not_blocked(self, parts) -> None:
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                parts.service.login("jdoe", "wrong", IP, UA)
        assert _login(parts, ip="10.0.0.6").employee_id == 42

    def test_unknown_user(self, parts) -> None:
        with pytest.raises(InvalidCredentialsError):
            parts.service.login("nobody", "x", IP, UA)
        assert parts.service.rate_limiter.remaining_attempts(IP) == 4

    def test_authority_error_counts_as_failure(self, parts) -> None:
        parts.identity.error = IdentityAuthorityError("connection refused")
        with pytest.raises(InvalidCredentialsError):
            _login(parts)
        assert parts.service.rate_limiter.remaining_attempts(IP) == 4

    def test_unexpected_authority_exception_counts_as_failure(self, parts) -> None:
        parts.identity.error = RuntimeError("boom")
        with pytest.raises(InvalidCredentialsError):
            _login(parts)
        assert parts.service.rate_limiter.remaining_attempts(IP) == 4

    def test_no_access_is_permission_denied(self, parts) -> None:
        parts.identity.add_employee("guest", "pw", 77, access_number=0)
        with pytest.raises(PermissionDeniedError) as excinfo:
            parts.service.login("guest", "pw", IP, UA)
        assert excinfo.value.status_code == 403
        assert parts.service.rate_limiter.remaining_attempts(IP) == 4
        assert parts.service.sessions.active_count() == 0

    def test_failures_are_not_audited(self, parts) -> None:
        with pytest.raises(InvalidCredentialsError):
            parts.service.login("jdoe", "wrong", IP, UA)
        assert parts.audit.records == []

    def test_failures_share_the_unknown_ip_bucket(self, parts) -> None:
        for ip in (None, "", "0.0.0.0", "::", "0:0:0:0:0:0:0:0"):
            with pytest.raises(InvalidCredentialsError):
                parts.service.login("jdoe", "wrong", ip, UA)
        with pytest.raises(RateLimitedError):
            _login(parts, ip=None)


class TestValidate:
    def test_live_token_validates(self, parts) -> None:
        session = _login(parts)
        assert parts.service.validate(session.access_token) is True
        assert parts.service.get_session(session.access_token) is session

    @pytest.mark.parametrize("token", [None, "", "garbage"])
    def test_bad_tokens(self, parts, token) -> None:
        assert parts.service.validate(token) is False
        assert parts.service.get_session(token) is None

    def test_blacklisted_token_is_rejected(self, parts) -> None:
        session = _login(parts)
        parts.service.sessions.blacklist(session.access_token)
        assert parts.service.validate(session.access_token) is False

    def test_signed_token_without_session_is_rejected(self, parts) -> None:
        session = _login(parts)
        parts.service.sessions.remove(session.access_token)
        assert parts.service.validate(session.access_token) is False

    def test_refresh_token_is_not_accepted_as_access_token(self, parts) -> None:
        session = _login(parts)
        assert parts.service.validate(session.refresh_token) is False

    def test_validate_sweeps_old_blacklist_entries(self, parts) -> None:
        store = parts.service.sessions
        store.blacklist("ancient")
        parts.store_clock.advance(24 * 3600 + 1)
        parts.service.validate("anything")
        assert store.is_blacklisted("ancient") is False


class TestRefresh:
    def test_rotation(self, parts) -> None:
        service = parts.service
        old = _login(parts)
        new = service.refresh(old.refresh_token)

        assert new.access_token != old.access_token
        assert new.refresh_token != old.refresh_token
        assert new.employee_id == 42
        assert new.device_fingerprint == old.device_fingerprint
        assert new.name == old.name
        assert new.created_at == old.created_at
        assert service.validate(new.access_token) is True
        assert service.validate(old.access_token) is False
        assert service.sessions.is_blacklisted(old.refresh_token)

    def test_refresh_token_is_single_use(self, parts) -> None:
        service = parts.service
        old = _login(parts)
        service.refresh(old.refresh_token)
        with pytest.raises(InvalidTokenError):
            service.refresh(old.refresh_token)

    def test_spent_token_stays_revoked_past_retention(self, parts) -> None:
        service = parts.service
        old = _login(parts)
        renewed = service.refresh(old.refresh_token)

        parts.store_clock.advance(service.settings.blacklist_retention_seconds + 1)
        service.validate(renewed.access_token)

        assert service.sessions.is_blacklisted(old.refresh_token)
        with pytest.raises(InvalidTokenError):
            service.refresh(old.refresh_token)
        assert service.validate(renewed.access_token) is True

    def test_superseded_token_is_rejected_without_blacklist_entry(self, parts) -> None:
        service = parts.service
        old = _login(parts)
        renewed = service.refresh(old.refresh_token)

        parts.store_clock.advance(service.settings.refresh_token_ttl_seconds + 1)
        service.sessions.sweep_expired_blacklist(service.settings.blacklist_retention_seconds)
        assert not service.sessions.is_blacklisted(old.refresh_token)

        with pytest.raises(InvalidTokenError):
            service.refresh(old.refresh_token)
        assert service.validate(renewed.access_token) is True

    def test_logout_during_refresh_keeps_sessions_terminated(self, parts, monkeypatch) -> None:
        service = parts.service
        session = _login(parts)
        issue_access_token = service.tokens.issue_access_token

        def issue_then_logout(*args, **kwargs):
            token = issue_access_token(*args, **kwargs)
            service.logout(session.access_token)
            return token

        monkeypatch.setattr(service.tokens, "issue_access_token", issue_then_logout)

        with pytest.raises(NoActiveSessionError):
            service.refresh(session.refresh_token)
        assert service.sessions.active_count() == 0
        assert service.sessions.sessions_for_employee(42) == []
        assert service.sessions.blacklist_size() == 4

    def test_refresh_is_not_audited(self, parts) -> None:
        old = _login(parts)
        parts.service.refresh(old.refresh_token)
        assert [r["action"] for r in parts.audit.records] == [AuditAction.LOGIN]

    @pytest.mark.parametrize("token", [None, "", "garbage"])
    def test_invalid_token(self, parts, token) -> None:
        with pytest.raises(InvalidTokenError):
            parts.service.refresh(token)

    def test_access_token_cannot_refresh(self, parts) -> None:
        session = _login(parts)
        with pytest.raises(InvalidTokenError):
            parts.service.refresh(session.access_token)

    def test_no_active_session(self, parts) -> None:
        session = _login(parts)
        parts.service.sessions.remove(session.access_token)
        with pytest.raises(NoActiveSessionError):
            parts.service.refresh(session.refresh_token)

    def test_refresh_after_logout_is_rejected(self, parts) -> None:
        session = _login(parts)
        parts.service.logout(session.access_token)
        with pytest.raises(InvalidTokenError):
            parts.service.refresh(session.refresh_token)

    def test_token_from_another_device_is_rejected(self, parts) -> None:
        service = parts.service
        session = _login(parts)
        stolen = service.tokens.issue_refresh_token(42, derive_fingerprint("198.51.100.2", "curl/8.0"))
        with pytest.raises(FingerprintMismatchError):
            service.refresh(stolen)
        assert service.validate(session.access_token) is True

    def test_refreshes_the_matching_device(self, parts) -> None:
        service = parts.service
        laptop = _login(parts, ua="Laptop")
        phone = _login(parts, ua="Phone")
        renewed = service.refresh(phone.refresh_token)
        assert renewed.device_fingerprint == phone.device_fingerprint
        assert service.validate(laptop.access_token) is True
        assert service.validate(phone.access_token) is False


class TestLogout:
    def test_logout_everywhere(self, parts) -> None:
        service = parts.service
        laptop = _login(parts, ua="Laptop")
        phone = _login(parts, ua="Phone")

        assert service.logout(laptop.access_token) == 2

        for session in (laptop, phone):
            assert service.validate(session.access_token) is False
            assert service.sessions.is_blacklisted(session.access_token)
        assert service.sessions.active_count() == 0

    def test_logout_is_audited_once_with_count(self, parts) -> None:
        first = _login(parts, ua="Laptop")
        _login(parts, ua="Phone")
        parts.service.logout(first.access_token, client_ip="127.0.0.1")

        logout_records = [r for r in parts.audit.records if r["action"] == AuditAction.LOGOUT]
        assert len(logout_records) == 1
        record = logout_records[0]
        assert record["new_value"] == "logout (all devices - 2 sessions)"
        assert record["origin"] == "127.0.0.1 (localhost)"
        assert record["subject_id"] == "42"

    def test_logout_without_ip_uses_login_origin(self, parts) -> None:
        session = _login(parts)
        parts.service.logout(session.access_token)
        assert parts.audit.records[-1]["origin"] == IP

    def test_other_employees_survive(self, parts) -> None:
        parts.identity.add_employee("other", "pw", 7)
        other = parts.service.login("other", "pw", IP, UA)
        mine = _login(parts)
        parts.service.logout(mine.access_token)
        assert parts.service.validate(other.access_token) is True

    def test_second_logout_has_no_session(self, parts) -> None:
        session = _login(parts)
        parts.service.logout(session.access_token)
        with pytest.raises(NoActiveSessionError):
            parts.service.logout(session.access_token)

    @pytest.mark.parametrize("token", [None, "", "unknown"])
    def test_unknown_token(self, parts, token) -> None:
        with pytest.raises(NoActiveSessionError):
            parts.service.logout(token)

    def test_audit_failure_does_not_fail_logout(self, parts) -> None:
        session = _login(parts)
        parts.audit.fail = True
        assert parts.service.logout(session.access_token) == 1


class TestDevicePolicy:
    def test_disabled_accepts_any_device(self, parts) -> None:
        session = _login(parts)
        assert parts.service.check_device(session, "something-else") is True

    def test_warn_logs_and_accepts(self, make_service, caplog) -> None:
        parts = make_service(device_validation_enabled=True, device_mismatch_action="WARN")
        session = _login(parts)
        with caplog.at_level("WARNING", logger="staffauth.service"):
            assert parts.service.check_device(session, "something-else") is True
        assert "Device mismatch" in caplog.text

    def test_block_raises_on_mismatch(self, make_service) -> None:
        parts = make_service(device_validation_enabled=True, device_mismatch_action="BLOCK")
        session = _login(parts)
        with pytest.raises(FingerprintMismatchError):
            parts.service.check_device(session, "something-else")

    def test_block_accepts_matching_device(self, make_service) -> None:
        parts = make_service(device_validation_enabled=True, device_mismatch_action="BLOCK")
        session = _login(parts)
        assert parts.service.check_device(session, derive_fingerprint(IP, UA)) is True


class TestNormalizeIp:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            (None, UNKNOWN_IP),
            ("", UNKNOWN_IP),
            ("   ", UNKNOWN_IP),
            ("0.0.0.0", UNKNOWN_IP),
            ("::", UNKNOWN_IP),
            ("0:0:0:0:0:0:0:1", UNKNOWN_IP),
            ("127.0.0.1", "127.0.0.1 (localhost)"),
            ("::1", "::1 (localhost)"),
            (" 10.0.0.5 ", "10.0.0.5"),
        ],
    )
    def test_normalization(self, raw, expected) -> None:
        assert normalize_ip_address(raw) == expected
