from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.db import Identity, Store
from mediconnect import MediConnect
from services.collaborators import (
    EchoSummarizer,
    InMemoryObjectStore,
    RecordingMessaging,
    RecordingNotifier,
    RecordingRenderer,
)
from shared.contracts.enums import ClinicianType
from tests.factories import CLINICIAN_PHONE, PHARMACY_PHONE, FakeClock, create_patient, make_settings


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    store = Store.from_url("sqlite://", clock=clock)
    store.create_schema()
    yield store
    store.dispose()


@pytest.fixture
def messaging() -> RecordingMessaging:
    return RecordingMessaging()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def renderer() -> RecordingRenderer:
    return RecordingRenderer()


@pytest.fixture
def object_store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def summarizer() -> EchoSummarizer:
    return EchoSummarizer()


@pytest.fixture
def platform(store, messaging, summarizer, renderer, object_store, notifier, clock) -> MediConnect:
    return MediConnect(
        store=store,
        messaging=messaging,
        summarizer=summarizer,
        renderer=renderer,
        object_store=object_store,
        notifier=notifier,
        settings=make_settings(),
        clock=clock,
    )


@pytest.fixture
def patient(store) -> Identity:
    return create_patient(store)


@pytest.fixture
def clinician(platform):
    return platform.register_clinician(
        CLINICIAN_PHONE,
        display_name="Dr. Wanjiru Kamau",
        license_number="KMPDC-0001",
        clinician_type=ClinicianType.GENERALIST,
        capacity=2,
    )


@pytest.fixture
def pharmacy(platform) -> Identity:
    return platform.register_pharmacy_operator(PHARMACY_PHONE, "Uzima Pharmacy")
