import pytest
from jose import jwt
from sqlalchemy import select

from app.db import AuditEvent, Identity
from app.errors import InvalidInput, Unauthorized
from shared.contracts.enums import Role


def test_issue_and_verify_round_trip(platform, patient):
    credential = platform.sessions.issue(patient)

    claims = platform.sessions.verify(credential.access_token)

    assert claims.identity_id == patient.id
    assert claims.role == Role.PATIENT
    assert claims.session_id == credential.session_id
    assert credential.expires_in == 30 * 24 * 3600


def test_credential_expires_after_thirty_days(platform, patient, clock):
    credential = platform.sessions.issue(patient)

    clock.advance(days=29, hours=23)
    platform.sessions.verify(credential.access_token)

    clock.advance(hours=1)
    with pytest.raises(Unauthorized):
        platform.sessions.verify(credential.access_token)


def test_tampered_or_foreign_tokens_are_rejected(platform, patient):
    credential = platform.sessions.issue(patient)
    forged = jwt.encode(
        {"sub": patient.id, "role": "admin", "sid": "x", "exp": 4102444800},
        "another-secret",
        algorithm="HS256",
    )

    for token in (credential.access_token[:-2] + "xx", forged, "not-a-jwt", ""):
        with pytest.raises(Unauthorized):
            platform.sessions.verify(token)


def test_token_missing_claims_is_rejected(platform, patient):
    token = jwt.encode({"sub": patient.id, "exp": 4102444800}, "test-secret", algorithm="HS256")
    with pytest.raises(Unauthorized):
        platform.sessions.verify(token)


def test_refresh_issues_a_new_session(platform, patient, clock):
    original = platform.sessions.issue(patient)
    clock.advance(days=10)

    refreshed = platform.sessions.refresh(original.access_token)

    assert refreshed.session_id != original.session_id
    assert refreshed.identity_id == patient.id
    assert refreshed.expires_at > original.expires_at


def test_inactive_identity_cannot_get_a_session(platform, store):
    with store.transaction() as uow:
        identity = Identity(phone_number="+254700000099", role=Role.PATIENT, is_active=False)
        uow.session.add(identity)

    with pytest.raises(InvalidInput):
        platform.sessions.issue(identity)


def test_logout_is_recorded_but_token_stays_valid(platform, patient, store):
    credential = platform.sessions.issue(patient)

    platform.sessions.revoke(patient.id, credential.session_id)

    assert platform.sessions.verify(credential.access_token).identity_id == patient.id
    with store.transaction() as uow:
        events = list(uow.session.scalars(select(AuditEvent.event_type).order_by(AuditEvent.id)))
    assert events == ["auth.session_issued", "auth.logout"]
