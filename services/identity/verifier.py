from __future__ import annotations

import re
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.clock import Clock, as_utc
from app.core.logging import logger
from app.core.security import generate_otp, hash_code, verify_code
from app.db import ChallengeStatus, Identity, OneTimeChallenge, Store
from app.errors import (
    Expired,
    InvalidCode,
    InvalidInput,
    MediConnectError,
    NotFound,
    TooManyAttempts,
    Unauthorized,
    Unavailable,
)
from services.collaborators import MessagingDispatcher
from shared.contracts.enums import AuditEventType, Role

DEFAULT_PHONE_PATTERN = r"^\+254[0-9]{9}$"

LIVE_STATUSES = (ChallengeStatus.pending, ChallengeStatus.locked)


class IdentityVerifier:
    def __init__(
        self,
        store: Store,
        messaging: MessagingDispatcher,
        clock: Optional[Clock] = None,
        ttl_seconds: int = 300,
        max_attempts: int = 5,
        code_length: int = 6,
        phone_pattern: str = DEFAULT_PHONE_PATTERN,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.messaging = messaging
        self.clock = clock or store.clock
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_attempts = max_attempts
        self.code_length = code_length
        self._phone_re = re.compile(phone_pattern)
        self._code_re = re.compile(rf"^[0-9]{{{code_length}}}$")

    def request_challenge(self, phone: str) -> None:
        self._require_phone(phone)
        now = self.clock()
        code = generate_otp(self.code_length)

        with self.store.transaction() as uow:
            session = uow.session
            challenge = self._live_challenge(session, phone)

            if challenge is not None and now >= as_utc(challenge.expires_at):
                challenge.status = ChallengeStatus.expired
                session.flush()
                challenge = None

            if challenge is not None and (
                challenge.status == ChallengeStatus.locked or challenge.attempts >= self.max_attempts
            ):
                raise TooManyAttempts()

            if challenge is None:
                challenge = OneTimeChallenge(phone_number=phone, attempts=0, status=ChallengeStatus.pending)
                session.add(challenge)
            else:
                # A superseding code starts a fresh attempt budget.
                challenge.attempts = 0
            challenge.code_hash = hash_code(code)
            challenge.expires_at = now + self.ttl
            challenge.last_sent_at = now
            challenge.message_id = None
            session.flush()

            uow.audit(
                AuditEventType.CHALLENGE_REQUESTED,
                "one_time_challenge",
                challenge.id,
                phone_number=phone,
                attempts=challenge.attempts,
            )
            challenge_id = challenge.id

        logger.info("Challenge %s issued", challenge_id)

        try:
            message_id = self.messaging.send_challenge(phone, code)
        except Unavailable:
            raise
        except Exception as exc:
            logger.error("Challenge %s delivery failed", challenge_id, exc_info=True)
            raise Unavailable("Failed to send verification code") from exc
        if message_id:
            with self.store.transaction() as uow:
                uow.session.execute(
                    update(OneTimeChallenge)
                    .where(OneTimeChallenge.id == challenge_id)
                    .values(message_id=message_id)
                    .execution_options(synchronize_session=False)
                )

    def verify_challenge(self, phone: str, code: str) -> Identity:
        self._require_phone(phone)
        if not code or not self._code_re.match(code):
            raise InvalidInput(f"Code must be {self.code_length} digits")
        now = self.clock()
        failure: Optional[MediConnectError] = None
        identity: Optional[Identity] = None

        with self.store.transaction() as uow:
            session = uow.session
            challenge = self._live_challenge(session, phone)
            if challenge is None:
                raise NotFound("No pending verification for this phone number")

            if now >= as_utc(challenge.expires_at):
                challenge.status = ChallengeStatus.expired
                uow.audit(AuditEventType.CHALLENGE_EXPIRED, "one_time_challenge", challenge.id)
                failure = Expired()
            elif challenge.status == ChallengeStatus.locked:
                raise TooManyAttempts()
            elif not verify_code(code, challenge.code_hash):
                failure = self._record_failed_attempt(uow, challenge)
            else:
                identity = self._complete(uow, challenge, phone, now)

        # State changes from failed attempts are committed before the error is raised.
        if failure is not None:
            raise failure
        logger.info("Identity %s verified", identity.id)
        return identity

    def _record_failed_attempt(self, uow, challenge: OneTimeChallenge) -> MediConnectError:
        session = uow.session
        bumped = session.execute(
            update(OneTimeChallenge)
            .where(
                OneTimeChallenge.id == challenge.id,
                OneTimeChallenge.status == ChallengeStatus.pending,
                OneTimeChallenge.attempts < self.max_attempts,
            )
            .values(attempts=OneTimeChallenge.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        if bumped.rowcount == 0:
            return TooManyAttempts()

        session.refresh(challenge)
        if challenge.attempts >= self.max_attempts:
            challenge.status = ChallengeStatus.locked
        uow.audit(
            AuditEventType.CHALLENGE_FAILED,
            "one_time_challenge",
            challenge.id,
            attempts=challenge.attempts,
            locked=challenge.status == ChallengeStatus.locked,
        )
        remaining = max(self.max_attempts - challenge.attempts, 0)
        logger.info("Challenge %s failed attempt %s/%s", challenge.id, challenge.attempts, self.max_attempts)
        return InvalidCode(f"Invalid verification code. {remaining} attempts remaining.", remaining_attempts=remaining)

    def _complete(self, uow, challenge: OneTimeChallenge, phone: str, now) -> Identity:
        session = uow.session
        claimed = session.execute(
            update(OneTimeChallenge)
            .where(OneTimeChallenge.id == challenge.id, OneTimeChallenge.status == ChallengeStatus.pending)
            .values(status=ChallengeStatus.verified, verified_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            raise NotFound("No pending verification for this phone number")

        identity = session.scalar(select(Identity).where(Identity.phone_number == phone))
        created = identity is None
        if created:
            identity = Identity(phone_number=phone, role=Role.PATIENT, is_active=True)
            session.add(identity)
        elif not identity.is_active:
            raise Unauthorized("Account has been deactivated")
        identity.phone_verified_at = now
        session.flush()

        uow.audit(
            AuditEventType.LOGIN,
            "identity",
            identity.id,
            actor_id=identity.id,
            method="whatsapp_otp",
            created=created,
        )
        return identity

    def _live_challenge(self, session: Session, phone: str) -> Optional[OneTimeChallenge]:
        return session.scalar(
            select(OneTimeChallenge)
            .where(OneTimeChallenge.phone_number == phone, OneTimeChallenge.status.in_(LIVE_STATUSES))
            .order_by(OneTimeChallenge.last_sent_at.desc())
            .limit(1)
        )

    def _require_phone(self, phone: str) -> None:
        if not phone or not self._phone_re.match(phone):
            raise InvalidInput("Invalid phone number format")
