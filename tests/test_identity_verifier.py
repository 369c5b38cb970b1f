from datetime import timedelta

import pytest
from sqlalchemy import func, select

from app.db import AuditEvent, ChallengeStatus, Identity, OneTimeChallenge
from app.errors import Expired, InvalidCode, InvalidInput, NotFound, TooManyAttempts, Unavailable
from shared.contracts.enums import Role

from tests.factories import PATIENT_PHONE


def _challenges(store, phone=PATIENT_PHONE):
    with store.transaction() as uow:
        return list(
            uow.session.scalars(select(OneTimeChallenge).where(OneTimeChallenge.phone_number == phone))
        )


def _wrong_code(code: str) -> str:
    return "000000" if code != "000000" else "111111"


def test_request_and_verify_creates_patient_identity(platform, messaging):
    platform.verifier.request_challenge(PATIENT_PHONE)
    code = messaging.last_code_for(PATIENT_PHONE)
    assert code is not None and len(code) == 6 and code.isdigit()

    identity, credential = platform.login(PATIENT_PHONE, code)

    assert identity.role == Role.PATIENT
    assert identity.phone_number == PATIENT_PHONE
    assert identity.phone_verified_at is not None
    assert credential.identity_id == identity.id
    assert credential.role == Role.PATIENT
    assert [c.status for c in _challenges(platform.store)] == [ChallengeStatus.verified]


def test_code_is_stored_hashed_with_message_id(platform, messaging):
    platform.verifier.request_challenge(PATIENT_PHONE)
    code = messaging.last_code_for(PATIENT_PHONE)
    (challenge,) = _challenges(platform.store)
    assert challenge.code_hash != code
    assert challenge.message_id == messaging.sent[-1].message_id


def test_rejects_malformed_phone_without_state_change(platform, messaging):
    with pytest.raises(InvalidInput):
        platform.verifier.request_challenge("0700000001")
    assert messaging.sent == []
    assert _challenges(platform.store, "0700000001") == []


def test_rerequest_supersedes_pending_challenge(platform, messaging):
    platform.verifier.request_challenge(PATIENT_PHONE)
    first = messaging.last_code_for(PATIENT_PHONE)
    platform.verifier.request_challenge(PATIENT_PHONE)
    second = messaging.last_code_for(PATIENT_PHONE)

    pending = [c for c in _challenges(platform.store) if c.status == ChallengeStatus.pending]
    assert len(pending) == 1

    if first != second:
        with pytest.raises(InvalidCode):
            platform.verifier.verify_challenge(PATIENT_PHONE, first)
    identity = platform.verifier.verify_challenge(PATIENT_PHONE, second)
    assert identity.phone_number == PATIENT_PHONE


def test_interleaved_requests_keep_one_pending_challenge(platform, messaging, clock):
    for step in range(4):
        platform.verifier.request_challenge(PATIENT_PHONE)
        if step % 2:
            with pytest.raises(InvalidCode):
                platform.verifier.verify_challenge(PATIENT_PHONE, _wrong_code(messaging.last_code_for(PATIENT_PHONE)))
        clock.advance(minutes=3)
        pending = [c for c in _challenges(platform.store) if c.status == ChallengeStatus.pending]
        assert len(pending) == 1


def test_invalid_code_increments_attempts(platform, messaging):
    platform.verifier.request_challenge(PATIENT_PHONE)
    wrong = _wrong_code(messaging.last_code_for(PATIENT_PHONE))

    with pytest.raises(InvalidCode) as excinfo:
        platform.verifier.verify_challenge(PATIENT_PHONE, wrong)

    assert excinfo.value.remaining_attempts == 4
    (challenge,) = _challenges(platform.store)
    assert challenge.attempts == 1
    assert challenge.status == ChallengeStatus.pending


def test_five_failures_lock_until_expiry(platform, messaging, clock):
    platform.verifier.request_challenge(PATIENT_PHONE)
    code = messaging.last_code_for(PATIENT_PHONE)
    wrong = _wrong_code(code)

    for _ in range(5):
        with pytest.raises(InvalidCode):
            platform.verifier.verify_challenge(PATIENT_PHONE, wrong)

    (challenge,) = _challenges(platform.store)
    assert challenge.attempts == 5
    assert challenge.status == ChallengeStatus.locked

    # Even the correct code is rejected while locked, and attempts stop counting.
    with pytest.raises(TooManyAttempts):
        platform.verifier.verify_challenge(PATIENT_PHONE, code)
    with pytest.raises(TooManyAttempts):
        platform.verifier.request_challenge(PATIENT_PHONE)
    assert _challenges(platform.store)[0].attempts == 5

    clock.advance(seconds=301)
    platform.verifier.request_challenge(PATIENT_PHONE)
    statuses = sorted(c.status.value for c in _challenges(platform.store))
    assert statuses == ["expired", "pending"]
    identity = platform.verifier.verify_challenge(PATIENT_PHONE, messaging.last_code_for(PATIENT_PHONE))
    assert identity.role == Role.PATIENT


def test_superseding_code_resets_attempts(platform, messaging):
    platform.verifier.request_challenge(PATIENT_PHONE)
    for _ in range(4):
        with pytest.raises(InvalidCode):
            platform.verifier.verify_challenge(PATIENT_PHONE, _wrong_code(messaging.last_code_for(PATIENT_PHONE)))

    platform.verifier.request_challenge(PATIENT_PHONE)
    (challenge,) = _challenges(platform.store)
    assert challenge.attempts == 0

    with pytest.raises(InvalidCode) as excinfo:
        platform.verifier.verify_challenge(PATIENT_PHONE, _wrong_code(messaging.last_code_for(PATIENT_PHONE)))
    assert excinfo.value.remaining_attempts == 4
    identity = platform.verifier.verify_challenge(PATIENT_PHONE, messaging.last_code_for(PATIENT_PHONE))
    assert identity.phone_number == PATIENT_PHONE


def test_expired_challenge_is_marked_lazily(platform, messaging, clock):
    platform.verifier.request_challenge(PATIENT_PHONE)
    code = messaging.last_code_for(PATIENT_PHONE)
    clock.advance(minutes=5)

    with pytest.raises(Expired):
        platform.verifier.verify_challenge(PATIENT_PHONE, code)

    (challenge,) = _challenges(platform.store)
    assert challenge.status == ChallengeStatus.expired
    with pytest.raises(NotFound):
        platform.verifier.verify_challenge(PATIENT_PHONE, code)


def test_verify_without_challenge_is_not_found(platform):
    with pytest.raises(NotFound):
        platform.verifier.verify_challenge(PATIENT_PHONE, "123456")


def test_verify_rejects_malformed_code(platform):
    with pytest.raises(InvalidInput):
        platform.verifier.verify_challenge(PATIENT_PHONE, "12ab56")


def test_delivery_failure_is_retryable(platform, messaging):
    messaging.fail_challenges = True
    with pytest.raises(Unavailable) as excinfo:
        platform.verifier.request_challenge(PATIENT_PHONE)
    assert excinfo.value.retryable

    messaging.fail_challenges = False
    platform.verifier.request_challenge(PATIENT_PHONE)
    assert len([c for c in _challenges(platform.store) if c.status == ChallengeStatus.pending]) == 1


def test_existing_identity_is_reused(platform, messaging, patient):
    platform.verifier.request_challenge(PATIENT_PHONE)
    identity = platform.verifier.verify_challenge(PATIENT_PHONE, messaging.last_code_for(PATIENT_PHONE))
    assert identity.id == patient.id

    with platform.store.transaction() as uow:
        count = uow.session.scalar(select(func.count(Identity.id)))
    assert count == 1


def test_each_outcome_writes_one_audit_record(platform, messaging):
    platform.verifier.request_challenge(PATIENT_PHONE)
    with pytest.raises(InvalidCode):
        platform.verifier.verify_challenge(PATIENT_PHONE, _wrong_code(messaging.last_code_for(PATIENT_PHONE)))
    platform.verifier.verify_challenge(PATIENT_PHONE, messaging.last_code_for(PATIENT_PHONE))

    with platform.store.transaction() as uow:
        events = list(uow.session.scalars(select(AuditEvent.event_type).order_by(AuditEvent.id)))
    assert events == ["auth.challenge_requested", "auth.challenge_failed", "auth.login"]


def test_challenge_ttl_is_five_minutes(platform, clock):
    platform.verifier.request_challenge(PATIENT_PHONE)
    (challenge,) = _challenges(platform.store)
    expires_at = challenge.expires_at.replace(tzinfo=clock.now.tzinfo)
    assert expires_at - clock.now == timedelta(minutes=5)
