from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from app.config import Settings
from app.db import Identity, Store
from shared.contracts.enums import Role

PATIENT_PHONE = "+254700000001"
CLINICIAN_PHONE = "+254711000001"
PHARMACY_PHONE = "+254722000001"

LINE_ITEMS = [
    {
        "drug_name": "Amoxicillin",
        "strength": "500mg",
        "form": "capsule",
        "quantity": 21,
        "instructions": "One capsule three times daily for 7 days",
    },
    {
        "drug_name": "Paracetamol",
        "strength": "500mg",
        "form": "tablet",
        "quantity": 12,
        "instructions": "Two tablets every 8 hours as needed",
        "substitution_allowed": False,
    },
]


@dataclass
class FakeClock:
    now: datetime

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_settings(**overrides) -> Settings:
    values = {
        "DATABASE_URL": "sqlite://",
        "JWT_SECRET_KEY": "test-secret",
        "MASKING_SECRET": "test-masking-secret",
        "AUTO_CREATE_SCHEMA": True,
    }
    values.update(overrides)
    return Settings(**values)


def create_patient(store: Store, phone: str = PATIENT_PHONE) -> Identity:
    with store.transaction() as uow:
        identity = Identity(phone_number=phone, role=Role.PATIENT, is_active=True)
        uow.session.add(identity)
        uow.session.flush()
    return identity


def start_encounter(platform, patient: Identity, clinician) -> str:
    """Request, assign and start an encounter; returns its id."""
    result = platform.request_consultation(patient.id, {"complaint": "sore throat and fever"})
    assert result.clinician.id == clinician.id
    platform.lifecycle.start(result.encounter.id, clinician.id)
    return result.encounter.id
