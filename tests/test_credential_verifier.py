"""Unit tests for login, registration and refresh exchange."""

from datetime import timedelta

import pytest

from storeguard.service.errors import (
    DuplicateIdentity,
    InvalidCredentials,
    RefreshCredentialError,
    SecurityViolation,
)
from storeguard.storage.errors import EMAIL_UNIQUE
from storeguard.storage.models import AuditAction, AuditOutcome, ClientInfo

CLIENT = ClientInfo(ip="203.0.113.7", user_agent="pytest")
PASSWORD = "CorrectHorse42!"


@pytest.fixture
def shopper(verifier):
    return verifier.register("shopper@example.com", PASSWORD, CLIENT).identity


def _events(audit, store, action):
    audit.flush()
    return [e for e in store.audit_events if e.action == action]


class TestPasswords:
    def test_hash_is_argon2id_and_verifies(self, passwords):
        hashed = passwords.hash(PASSWORD)

        assert hashed.startswith("$argon2id$")
        assert passwords.verify(hashed, PASSWORD)
        assert not passwords.verify(hashed, "wrong")

    def test_malformed_hash_does_not_verify(self, passwords):
        assert not passwords.verify("not-a-hash", PASSWORD)


class TestRegister:
    def test_register_issues_grant_and_credential(self, verifier, store, audit):
        result = verifier.register("New.Shopper@Example.com", PASSWORD, CLIENT)

        assert result.identity.email == "new.shopper@example.com"
        assert result.grant.identity_id == result.identity.id
        assert result.credential.value
        assert store.get_password_hash(result.identity.id) != PASSWORD
        [event] = _events(audit, store, AuditAction.REGISTER)
        assert event.outcome == AuditOutcome.SUCCESS
        assert event.entity_id == result.identity.id

    def test_duplicate_email_is_rejected_and_audited(self, verifier, shopper, store, audit):
        with pytest.raises(DuplicateIdentity) as caught:
            verifier.register("SHOPPER@example.com", PASSWORD, CLIENT)

        assert caught.value.__cause__.constraint == EMAIL_UNIQUE

        failures = [
            e
            for e in _events(audit, store, AuditAction.REGISTER)
            if e.outcome == AuditOutcome.FAILURE
        ]
        assert len(failures) == 1

    def test_register_with_admin_role(self, verifier):
        result = verifier.register("ops@example.com", PASSWORD, role="admin")
        assert result.identity.is_admin


class TestLogin:
    def test_login_success(self, verifier, shopper, store, audit):
        result = verifier.login("shopper@example.com", PASSWORD, CLIENT)

        assert result.identity.id == shopper.id
        assert verifier.authenticate(result.grant.token).id == shopper.id
        [event] = _events(audit, store, AuditAction.LOGIN)
        assert event.client_ip == "203.0.113.7"

    def test_unknown_email_and_wrong_password_look_the_same(self, verifier, shopper):
        with pytest.raises(InvalidCredentials) as unknown:
            verifier.login("nobody@example.com", PASSWORD, CLIENT)
        with pytest.raises(InvalidCredentials) as mismatch:
            verifier.login("shopper@example.com", "wrong-password", CLIENT)

        assert unknown.value.client_message == mismatch.value.client_message
        assert unknown.value.status_code == mismatch.value.status_code == 401

    def test_failed_login_is_audited_with_reason(self, verifier, shopper, store, audit):
        with pytest.raises(InvalidCredentials):
            verifier.login("shopper@example.com", "wrong-password", CLIENT)

        [event] = _events(audit, store, AuditAction.LOGIN_FAILED)
        assert event.outcome == AuditOutcome.FAILURE
        assert event.error_detail == "password mismatch"
        assert event.metadata == {"email": "shopper@example.com"}

    def test_disabled_identity_cannot_login(self, verifier, shopper, store):
        store.set_identity_enabled(shopper.id, False)

        with pytest.raises(InvalidCredentials):
            verifier.login("shopper@example.com", PASSWORD, CLIENT)

    def test_threshold_raises_one_security_event(self, verifier, shopper, store, audit):
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                verifier.login("shopper@example.com", "wrong-password", CLIENT)

        [event] = _events(audit, store, AuditAction.SECURITY_EVENT)
        assert event.client_ip == "203.0.113.7"
        assert "5 failed logins" in event.description
        assert len(_events(audit, store, AuditAction.LOGIN_FAILED)) == 5

    def test_continued_failures_do_not_repeat_the_event(self, verifier, shopper, store, audit):
        for _ in range(8):
            with pytest.raises(InvalidCredentials):
                verifier.login("shopper@example.com", "wrong-password", CLIENT)

        assert len(_events(audit, store, AuditAction.SECURITY_EVENT)) == 1
        assert len(_events(audit, store, AuditAction.LOGIN_FAILED)) == 8

    def test_new_burst_after_window_escalates_again(self, verifier, shopper, store, audit, clock):
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                verifier.login("shopper@example.com", "wrong-password", CLIENT)
        clock.advance(minutes=16)
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                verifier.login("shopper@example.com", "wrong-password", CLIENT)

        assert len(_events(audit, store, AuditAction.SECURITY_EVENT)) == 2

    def test_failures_outside_window_do_not_count(self, verifier, shopper, store, audit, clock):
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                verifier.login("shopper@example.com", "wrong-password", CLIENT)
        clock.advance(minutes=16)
        with pytest.raises(InvalidCredentials):
            verifier.login("shopper@example.com", "wrong-password", CLIENT)

        assert _events(audit, store, AuditAction.SECURITY_EVENT) == []


class TestRefresh:
    def test_refresh_rotates(self, verifier, shopper):
        first = verifier.login("shopper@example.com", PASSWORD, CLIENT)

        second = verifier.refresh(first.credential.value, CLIENT)

        assert second.credential.value != first.credential.value
        assert second.identity.id == shopper.id
        assert verifier.authenticate(second.grant.token).id == shopper.id

    def test_replayed_refresh_is_a_security_violation(self, verifier, shopper):
        first = verifier.login("shopper@example.com", PASSWORD, CLIENT)
        second = verifier.refresh(first.credential.value, CLIENT)

        with pytest.raises(SecurityViolation):
            verifier.refresh(first.credential.value, CLIENT)
        with pytest.raises(RefreshCredentialError):
            verifier.refresh(second.credential.value, CLIENT)

    def test_disabled_identity_cannot_refresh(self, verifier, shopper, store, sessions):
        result = verifier.login("shopper@example.com", PASSWORD, CLIENT)
        store.set_identity_enabled(shopper.id, False)

        with pytest.raises(RefreshCredentialError):
            verifier.refresh(result.credential.value, CLIENT)

        assert store.get_credential(result.credential.token_hash).revoked
        # only the credential issued at registration is still active
        assert len(sessions.active_credentials(shopper.id)) == 1

    def test_logout_then_refresh_fails(self, verifier, shopper):
        result = verifier.login("shopper@example.com", PASSWORD, CLIENT)
        verifier.logout(result.credential.value, CLIENT)

        with pytest.raises(RefreshCredentialError):
            verifier.refresh(result.credential.value, CLIENT)

    def test_logout_all(self, verifier, shopper, sessions):
        for _ in range(3):
            verifier.login("shopper@example.com", PASSWORD, CLIENT)

        # register issued one more
        assert verifier.logout_all(shopper, CLIENT) == 4
        assert sessions.active_credentials(shopper.id) == []


class TestAuthenticate:
    def test_rejects_garbage(self, verifier):
        with pytest.raises(InvalidCredentials):
            verifier.authenticate("not.a.token")
        with pytest.raises(InvalidCredentials):
            verifier.authenticate(None)

    def test_rejects_expired_grant(self, verifier, shopper, clock):
        result = verifier.login("shopper@example.com", PASSWORD, CLIENT)
        clock.advance(minutes=15, seconds=31)

        with pytest.raises(InvalidCredentials):
            verifier.authenticate(result.grant.token)

    def test_rejects_tampered_signature(self, verifier, shopper):
        token = verifier.login("shopper@example.com", PASSWORD, CLIENT).grant.token
        header, payload, signature = token.split(".")
        flipped = ("A" if signature[0] != "A" else "B") + signature[1:]

        with pytest.raises(InvalidCredentials):
            verifier.authenticate(f"{header}.{payload}.{flipped}")

    def test_rejects_non_ascii_signature(self, verifier):
        with pytest.raises(InvalidCredentials):
            verifier.authenticate("eyJhbGciOiJIUzI1NiJ9.e30.éé")

    def test_grant_lifetime(self, verifier, shopper, clock):
        grant = verifier.login("shopper@example.com", PASSWORD, CLIENT).grant
        assert grant.expires_at == clock() + timedelta(minutes=15)
