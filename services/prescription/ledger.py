"""Prescription issuance and single-use redemption.

A prescription can be consumed through exactly one channel: a pharmacy
redeeming its token, or the patient downloading it as a document. Downloading
permanently disables the token. Fulfillment is a single conditional update on
the prescription row, so concurrent pharmacies see exactly one success.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.clock import Clock, as_utc
from app.core.logging import logger
from app.core.security import generate_redemption_token, mask_identifier
from app.db import (
    ClaimStatus,
    Clinician,
    Encounter,
    EncounterStatus,
    Identity,
    Prescription,
    PrescriptionItem,
    PrescriptionStatus,
    RedemptionClaim,
    Store,
)
from app.errors import AlreadyUsed, Conflict, InvalidInput, NotFound, Unauthorized, Unavailable
from services.collaborators import DocumentRenderer, ObjectStore
from shared.contracts.enums import AuditEventType, RedemptionFailure, Role
from shared.contracts.models import DispensedItem, LineItem, RedemptionResult, RedemptionView

PRESCRIBABLE_STATUSES = (EncounterStatus.active, EncounterStatus.extended, EncounterStatus.completed)
REDEEMABLE_STATUSES = (PrescriptionStatus.active, PrescriptionStatus.claimed)
DOCUMENT_CONTENT_TYPE = "application/pdf"
SUPERSEDED_NOTE = "Prescription fulfilled by another pharmacy"


@dataclass(frozen=True)
class Document:
    prescription_id: str
    url: str
    content: bytes
    content_type: str = DOCUMENT_CONTENT_TYPE


class PrescriptionLedger:
    def __init__(
        self,
        store: Store,
        renderer: DocumentRenderer,
        object_store: ObjectStore,
        clock: Optional[Clock] = None,
        ttl_days: int = 30,
        masking_secret: str = "dev-only-masking-secret",
    ) -> None:
        self.store = store
        self.renderer = renderer
        self.object_store = object_store
        self.clock = clock or store.clock
        self.ttl = timedelta(days=ttl_days)
        self.masking_secret = masking_secret

    def issue(self, encounter_id: str, clinician_id: str, line_items: Iterable[Any]) -> Prescription:
        items = self._validate_items(line_items)
        now = self.clock()
        with self.store.transaction() as uow:
            session = uow.session
            encounter = session.get(Encounter, encounter_id)
            if encounter is None or encounter.status not in PRESCRIBABLE_STATUSES:
                raise NotFound("Encounter not found or not yet started")
            if encounter.clinician_id != clinician_id:
                raise Unauthorized("Only the assigned clinician can prescribe for this encounter")
            existing = session.scalar(select(Prescription.id).where(Prescription.encounter_id == encounter_id))
            if existing is not None:
                raise Conflict("A prescription already exists for this encounter")

            prescription = Prescription(
                encounter_id=encounter_id,
                clinician_id=clinician_id,
                patient_id=encounter.patient_id,
                redemption_token=generate_redemption_token(),
                redemption_enabled=True,
                status=PrescriptionStatus.active,
                issued_at=now,
                expires_at=now + self.ttl,
                items=[PrescriptionItem(position=index, **item.model_dump()) for index, item in enumerate(items)],
            )
            session.add(prescription)
            session.flush()
            clinician_identity = session.scalar(select(Clinician.identity_id).where(Clinician.id == clinician_id))
            uow.audit(
                AuditEventType.PRESCRIPTION_CREATED,
                "prescription",
                prescription.id,
                actor_id=clinician_identity,
                encounter_id=encounter_id,
                item_count=len(items),
            )
        logger.info("Prescription %s issued for encounter %s", prescription.id, encounter_id)
        return prescription

    def get(self, prescription_id: str) -> Prescription:
        with self.store.transaction() as uow:
            prescription = uow.session.get(Prescription, prescription_id)
            if prescription is None:
                raise NotFound("Prescription not found")
            return prescription

    def redeem(self, token: str, pharmacy_id: str) -> RedemptionResult:
        self._require_pharmacy(pharmacy_id)
        now = self.clock()
        with self.store.transaction() as uow:
            session = uow.session
            prescription = session.scalar(select(Prescription).where(Prescription.redemption_token == token)) if token else None
            if prescription is None:
                return RedemptionResult(valid=False, reason=RedemptionFailure.INVALID_CODE)
            if not prescription.redemption_enabled:
                return RedemptionResult(valid=False, reason=RedemptionFailure.DISABLED)
            if now >= as_utc(prescription.expires_at):
                if prescription.status in REDEEMABLE_STATUSES:
                    prescription.status = PrescriptionStatus.expired
                    uow.audit(AuditEventType.PRESCRIPTION_EXPIRED, "prescription", prescription.id)
                return RedemptionResult(valid=False, reason=RedemptionFailure.EXPIRED)
            if prescription.status == PrescriptionStatus.fulfilled:
                return RedemptionResult(valid=False, reason=RedemptionFailure.ALREADY_USED)

            claim = session.scalar(
                select(RedemptionClaim).where(
                    RedemptionClaim.prescription_id == prescription.id,
                    RedemptionClaim.pharmacy_id == pharmacy_id,
                    RedemptionClaim.status == ClaimStatus.ready,
                )
            )
            if claim is None:
                claim = RedemptionClaim(
                    prescription_id=prescription.id,
                    pharmacy_id=pharmacy_id,
                    status=ClaimStatus.ready,
                    dispensed_items=[],
                    claimed_at=now,
                )
                session.add(claim)
            if prescription.status == PrescriptionStatus.active:
                prescription.status = PrescriptionStatus.claimed
            session.flush()
            uow.audit(
                AuditEventType.PRESCRIPTION_CLAIMED,
                "prescription",
                prescription.id,
                actor_id=pharmacy_id,
                claim_id=claim.id,
            )
            view = self._masked_view(prescription)
            claim_id = claim.id

        logger.info("Prescription %s claimed by pharmacy %s", prescription.id, pharmacy_id)
        return RedemptionResult(valid=True, view=view, claim_id=claim_id)

    def download_as_document(self, prescription_id: str, patient_id: str) -> Document:
        now = self.clock()
        with self.store.transaction() as uow:
            session = uow.session
            prescription = session.get(Prescription, prescription_id)
            if prescription is None or prescription.patient_id != patient_id:
                raise NotFound("Prescription not found")
            if prescription.status == PrescriptionStatus.fulfilled:
                raise AlreadyUsed()

            # Irreversible: once a printable copy exists the token can never redeem again.
            first_download = prescription.redemption_enabled
            prescription.redemption_enabled = False
            prescription.document_downloaded_at = prescription.document_downloaded_at or now
            uow.audit(
                AuditEventType.PRESCRIPTION_DOCUMENT_DOWNLOADED,
                "prescription",
                prescription_id,
                actor_id=patient_id,
                first_download=first_download,
            )
            data = self._document_data(prescription)

        key = f"prescriptions/{prescription_id}.pdf"
        try:
            content = self.renderer.render_prescription(data)
            url = self.object_store.put(content, key, DOCUMENT_CONTENT_TYPE)
        except Exception as exc:
            logger.error("Document generation failed for prescription %s", prescription_id, exc_info=True)
            if isinstance(exc, Unavailable):
                raise
            raise Unavailable("Failed to generate prescription document") from exc

        with self.store.transaction() as uow:
            uow.session.execute(
                update(Prescription)
                .where(Prescription.id == prescription_id)
                .values(document_url=url)
                .execution_options(synchronize_session=False)
            )
        logger.info("Prescription %s downloaded as document", prescription_id)
        return Document(prescription_id=prescription_id, url=url, content=content)

    def fulfill(self, prescription_id: str, pharmacy_id: str, dispensed_items: Iterable[Any]) -> RedemptionClaim:
        items = self._validate_dispensed(dispensed_items)
        self._require_pharmacy(pharmacy_id)
        now = self.clock()
        with self.store.transaction() as uow:
            session = uow.session
            gate = session.execute(
                update(Prescription)
                .where(
                    Prescription.id == prescription_id,
                    Prescription.status.in_(REDEEMABLE_STATUSES),
                    Prescription.redemption_enabled.is_(True),
                    Prescription.expires_at > now,
                )
                .values(
                    status=PrescriptionStatus.fulfilled,
                    redemption_enabled=False,
                    fulfilled_at=now,
                    fulfilling_pharmacy_id=pharmacy_id,
                )
                .execution_options(synchronize_session=False)
            )
            if gate.rowcount == 0:
                raise self._fulfill_rejection(session, prescription_id)

            dispensed = session.execute(
                update(RedemptionClaim)
                .where(
                    RedemptionClaim.prescription_id == prescription_id,
                    RedemptionClaim.pharmacy_id == pharmacy_id,
                    RedemptionClaim.status == ClaimStatus.ready,
                )
                .values(
                    status=ClaimStatus.dispensed,
                    dispensed_items=[item.model_dump() for item in items],
                    dispensed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if dispensed.rowcount == 0:
                raise Conflict("No ready claim for this pharmacy; redeem the prescription first")

            # Other pharmacies' open claims can never be dispensed now.
            superseded = session.execute(
                update(RedemptionClaim)
                .where(
                    RedemptionClaim.prescription_id == prescription_id,
                    RedemptionClaim.status == ClaimStatus.ready,
                )
                .values(status=ClaimStatus.disputed, notes=SUPERSEDED_NOTE)
                .execution_options(synchronize_session=False)
            )

            claim = session.scalar(
                select(RedemptionClaim).where(
                    RedemptionClaim.prescription_id == prescription_id,
                    RedemptionClaim.status == ClaimStatus.dispensed,
                )
            )
            uow.audit(
                AuditEventType.PRESCRIPTION_FULFILLED,
                "prescription",
                prescription_id,
                actor_id=pharmacy_id,
                claim_id=claim.id,
                dispensed_items=claim.dispensed_items,
                superseded_claims=superseded.rowcount,
            )
        logger.info("Prescription %s fulfilled by pharmacy %s", prescription_id, pharmacy_id)
        return claim

    def dispute(self, claim_id: str, pharmacy_id: str, notes: str) -> RedemptionClaim:
        if not notes or not notes.strip():
            raise InvalidInput("Dispute notes are required")
        with self.store.transaction() as uow:
            session = uow.session
            claim = session.get(RedemptionClaim, claim_id)
            if claim is None or claim.pharmacy_id != pharmacy_id:
                raise NotFound("Claim not found")
            if claim.status != ClaimStatus.ready:
                raise Conflict(f"Cannot dispute a claim in status {claim.status.value}")
            claim.status = ClaimStatus.disputed
            claim.notes = notes.strip()
            uow.audit(
                AuditEventType.CLAIM_DISPUTED,
                "redemption_claim",
                claim_id,
                actor_id=pharmacy_id,
                prescription_id=claim.prescription_id,
            )
        logger.info("Claim %s disputed", claim_id)
        return claim

    def masked_clinician(self, clinician_id: str) -> str:
        return f"Dr. {mask_identifier(clinician_id, self.masking_secret)}"

    def _masked_view(self, prescription: Prescription) -> RedemptionView:
        return RedemptionView(
            prescription_id=prescription.id,
            prescribing_clinician=self.masked_clinician(prescription.clinician_id),
            issued_at=as_utc(prescription.issued_at),
            expires_at=as_utc(prescription.expires_at),
            line_items=[self._line_item(item) for item in prescription.items],
        )

    def _document_data(self, prescription: Prescription) -> Dict[str, Any]:
        return {
            "prescription_id": prescription.id,
            "encounter_id": prescription.encounter_id,
            "prescribing_clinician": self.masked_clinician(prescription.clinician_id),
            "issued_at": as_utc(prescription.issued_at).isoformat(),
            "expires_at": as_utc(prescription.expires_at).isoformat(),
            "line_items": [self._line_item(item).model_dump() for item in prescription.items],
        }

    @staticmethod
    def _line_item(item: PrescriptionItem) -> LineItem:
        return LineItem(
            drug_name=item.drug_name,
            strength=item.strength,
            form=item.form,
            quantity=item.quantity,
            instructions=item.instructions,
            substitution_allowed=item.substitution_allowed,
        )

    @staticmethod
    def _fulfill_rejection(session: Session, prescription_id: str) -> Exception:
        prescription = session.get(Prescription, prescription_id)
        if prescription is None:
            return NotFound("Prescription not found")
        if prescription.status == PrescriptionStatus.fulfilled:
            return AlreadyUsed()
        if not prescription.redemption_enabled:
            return Conflict("Prescription redemption is disabled")
        return Conflict("Prescription has expired")

    def _require_pharmacy(self, pharmacy_id: str) -> None:
        with self.store.transaction() as uow:
            identity = uow.session.get(Identity, pharmacy_id)
            if identity is None or not identity.is_active or identity.role != Role.PHARMACY_OPERATOR:
                raise Unauthorized("Only pharmacy operators can redeem prescriptions")

    @staticmethod
    def _validate_items(line_items: Iterable[Any]) -> List[LineItem]:
        try:
            items = [item if isinstance(item, LineItem) else LineItem.model_validate(item) for item in line_items or []]
        except ValidationError as exc:
            raise InvalidInput(f"Invalid line item: {exc.errors()[0]['msg']}") from exc
        if not items:
            raise InvalidInput("At least one line item is required")
        return items

    @staticmethod
    def _validate_dispensed(dispensed_items: Iterable[Any]) -> List[DispensedItem]:
        try:
            items = [
                item if isinstance(item, DispensedItem) else DispensedItem.model_validate(item)
                for item in dispensed_items or []
            ]
        except ValidationError as exc:
            raise InvalidInput(f"Invalid dispensed item: {exc.errors()[0]['msg']}") from exc
        if not items:
            raise InvalidInput("At least one dispensed item is required")
        return items
