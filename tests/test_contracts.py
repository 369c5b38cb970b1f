import pytest
from pydantic import ValidationError

from shared.contracts.enums import ClinicianType, RedemptionFailure
from shared.contracts.models import (
    EncounterCreateRequest,
    LineItem,
    OTPVerifyRequest,
    RedemptionResult,
    RedemptionView,
)

from tests.factories import LINE_ITEMS


def test_line_item_defaults_to_substitution_allowed():
    item = LineItem.model_validate(LINE_ITEMS[0])
    assert item.substitution_allowed is True
    assert item.quantity == 21


def test_line_item_rejects_zero_quantity_and_unknown_fields():
    with pytest.raises(ValidationError):
        LineItem.model_validate({**LINE_ITEMS[0], "quantity": 0})
    with pytest.raises(ValidationError):
        LineItem.model_validate({**LINE_ITEMS[0], "patient_name": "Jane"})


def test_otp_request_shapes():
    OTPVerifyRequest(phone_number="+254700000001", otp="123456")
    with pytest.raises(ValidationError):
        OTPVerifyRequest(phone_number="+254700000001", otp="12345")
    with pytest.raises(ValidationError):
        OTPVerifyRequest(phone_number="+1555000000", otp="123456")


def test_encounter_request_needs_intake():
    request = EncounterCreateRequest(intake={"complaint": "fever"})
    assert request.required_type == ClinicianType.GENERALIST
    with pytest.raises(ValidationError):
        EncounterCreateRequest(intake={})


def test_redemption_result_consistency():
    assert RedemptionResult(valid=False, reason=RedemptionFailure.EXPIRED).view is None
    with pytest.raises(ValidationError):
        RedemptionResult(valid=True)
    with pytest.raises(ValidationError):
        RedemptionResult(valid=False)


def test_redemption_view_refuses_patient_fields():
    with pytest.raises(ValidationError):
        RedemptionView(
            prescription_id="rx1",
            prescribing_clinician="Dr. 1a2b3c4d",
            issued_at="2026-03-02T09:00:00Z",
            expires_at="2026-04-01T09:00:00Z",
            line_items=[LINE_ITEMS[0]],
            patient_phone="+254700000001",
        )
