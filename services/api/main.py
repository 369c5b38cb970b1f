from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.logging import logger
from app.errors import Forbidden, MediConnectError, Unauthorized
from mediconnect import MediConnect
from services.consultation.lifecycle import EndResult, StartResult
from shared.contracts.enums import Role
from shared.contracts.models import (
    AssignRequest,
    CancelRequest,
    ClaimDTO,
    DispensedItem,
    DisputeRequest,
    EncounterCreateRequest,
    EncounterDTO,
    EndRequest,
    EndResponse,
    ExtendRequest,
    FulfillRequest,
    IdentityDTO,
    LineItem,
    LoginResponse,
    MessageCreateRequest,
    MessageDTO,
    OTPRequest,
    OTPRequestResponse,
    OTPVerifyRequest,
    PrescriptionCreateRequest,
    PrescriptionDTO,
    RedeemRequest,
    RedemptionResult,
    SessionClaims,
    StartResponse,
)

bearer = HTTPBearer(auto_error=False)


def get_platform(request: Request) -> MediConnect:
    return request.app.state.platform


def get_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    platform: MediConnect = Depends(get_platform),
) -> SessionClaims:
    if credentials is None:
        raise Unauthorized("Missing bearer credentials")
    return platform.sessions.verify(credentials.credentials)


def require_role(*roles: Role) -> Callable[..., SessionClaims]:
    def dependency(claims: SessionClaims = Depends(get_claims)) -> SessionClaims:
        if claims.role not in roles:
            raise Forbidden()
        return claims

    return dependency


def _encounter_dto(encounter) -> EncounterDTO:
    return EncounterDTO(
        id=encounter.id,
        patient_id=encounter.patient_id,
        clinician_id=encounter.clinician_id,
        required_type=encounter.required_type,
        status=encounter.status.value,
        red_flags=list(encounter.red_flags or []),
        time_box_minutes=encounter.time_box_minutes,
        extension_applied=encounter.extension_applied,
        started_at=encounter.started_at,
        ended_at=encounter.ended_at,
        duration_minutes=encounter.duration_minutes,
    )


def _prescription_dto(prescription) -> PrescriptionDTO:
    return PrescriptionDTO(
        id=prescription.id,
        encounter_id=prescription.encounter_id,
        status=prescription.status.value,
        redemption_token=prescription.redemption_token,
        redemption_enabled=prescription.redemption_enabled,
        issued_at=prescription.issued_at,
        expires_at=prescription.expires_at,
        line_items=[
            LineItem(
                drug_name=item.drug_name,
                strength=item.strength,
                form=item.form,
                quantity=item.quantity,
                instructions=item.instructions,
                substitution_allowed=item.substitution_allowed,
            )
            for item in prescription.items
        ],
    )


def _claim_dto(claim) -> ClaimDTO:
    return ClaimDTO(
        id=claim.id,
        prescription_id=claim.prescription_id,
        pharmacy_id=claim.pharmacy_id,
        status=claim.status.value,
        dispensed_items=[DispensedItem.model_validate(item) for item in claim.dispensed_items or []],
        dispensed_at=claim.dispensed_at,
        notes=claim.notes,
    )


def _assigned_clinician_id(platform: MediConnect, claims: SessionClaims) -> str:
    return platform.clinician_for_identity(claims.identity_id).id


auth = APIRouter(prefix="/auth", tags=["auth"])
encounters = APIRouter(prefix="/encounters", tags=["encounters"])
prescriptions = APIRouter(prefix="/prescriptions", tags=["prescriptions"])


@auth.post("/request-otp", response_model=OTPRequestResponse)
def request_otp(payload: OTPRequest, platform: MediConnect = Depends(get_platform)) -> OTPRequestResponse:
    platform.verifier.request_challenge(payload.phone_number)
    return OTPRequestResponse(
        message="Verification code sent to your WhatsApp",
        expires_in=platform.settings.OTP_TTL_SECONDS,
    )


@auth.post("/verify-otp", response_model=LoginResponse)
def verify_otp(payload: OTPVerifyRequest, platform: MediConnect = Depends(get_platform)) -> LoginResponse:
    identity, credential = platform.login(payload.phone_number, payload.otp)
    return LoginResponse(
        access_token=credential.access_token,
        expires_in=credential.expires_in,
        user=IdentityDTO(
            id=identity.id,
            phone_number=identity.phone_number,
            role=identity.role,
            full_name=identity.full_name,
            phone_verified_at=identity.phone_verified_at,
        ),
    )


@auth.post("/refresh")
def refresh(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    platform: MediConnect = Depends(get_platform),
) -> dict[str, object]:
    if credentials is None:
        raise Unauthorized("Missing bearer credentials")
    credential = platform.sessions.refresh(credentials.credentials)
    return {"success": True, "access_token": credential.access_token, "expires_in": credential.expires_in}


@auth.post("/logout")
def logout(
    claims: SessionClaims = Depends(get_claims),
    platform: MediConnect = Depends(get_platform),
) -> dict[str, object]:
    platform.sessions.revoke(claims.identity_id, claims.session_id)
    return {"success": True, "message": "Logged out successfully"}


@encounters.post("", status_code=status.HTTP_201_CREATED)
def create_encounter(
    payload: EncounterCreateRequest,
    claims: SessionClaims = Depends(require_role(Role.PATIENT)),
    platform: MediConnect = Depends(get_platform),
) -> dict[str, object]:
    result = platform.request_consultation(claims.identity_id, payload.intake, payload.required_type)
    return {
        "encounter": _encounter_dto(result.encounter).model_dump(mode="json"),
        "clinician": {"id": result.clinician.id, "display_name": result.clinician.display_name},
    }


@encounters.post("/{encounter_id}/assign")
def assign_encounter(
    encounter_id: str,
    payload: AssignRequest,
    claims: SessionClaims = Depends(require_role(Role.PATIENT, Role.ADMIN)),
    platform: MediConnect = Depends(get_platform),
) -> dict[str, object]:
    encounter = platform.lifecycle.get(encounter_id)
    if claims.role == Role.PATIENT and encounter.patient_id != claims.identity_id:
        raise Forbidden()
    clinician = platform.scheduler.assign(encounter_id, payload.required_type)
    return {"encounter_id": encounter_id, "clinician": {"id": clinician.id, "display_name": clinician.display_name}}


@encounters.get("/{encounter_id}", response_model=EncounterDTO)
def get_encounter(
    encounter_id: str,
    claims: SessionClaims = Depends(get_claims),
    platform: MediConnect = Depends(get_platform),
) -> EncounterDTO:
    if claims.role != Role.ADMIN:
        platform.lifecycle.participant_role(encounter_id, claims.identity_id)
    return _encounter_dto(platform.lifecycle.get(encounter_id))


@encounters.post("/{encounter_id}/start", response_model=StartResponse)
def start_encounter(
    encounter_id: str,
    claims: SessionClaims = Depends(require_role(Role.CLINICIAN)),
    platform: MediConnect = Depends(get_platform),
) -> StartResponse:
    result: StartResult = platform.lifecycle.start(encounter_id, _assigned_clinician_id(platform, claims))
    return StartResponse(encounter=_encounter_dto(result.encounter), video_link=result.video_link, warnings=result.warnings)


@encounters.post("/{encounter_id}/extend", response_model=EncounterDTO)
def extend_encounter(
    encounter_id: str,
    payload: ExtendRequest,
    claims: SessionClaims = Depends(require_role(Role.CLINICIAN)),
    platform: MediConnect = Depends(get_platform),
) -> EncounterDTO:
    if platform.lifecycle.participant_role(encounter_id, claims.identity_id) != Role.CLINICIAN:
        raise Forbidden()
    return _encounter_dto(platform.lifecycle.extend(encounter_id, payload.reason))


@encounters.post("/{encounter_id}/end", response_model=EndResponse)
def end_encounter(
    encounter_id: str,
    payload: EndRequest,
    claims: SessionClaims = Depends(require_role(Role.CLINICIAN)),
    platform: MediConnect = Depends(get_platform),
) -> EndResponse:
    if platform.lifecycle.participant_role(encounter_id, claims.identity_id) != Role.CLINICIAN:
        raise Forbidden()
    result: EndResult = platform.lifecycle.end(encounter_id, payload.notes)
    return EndResponse(
        encounter=_encounter_dto(result.encounter),
        duration_minutes=result.duration_minutes,
        time_box_exceeded=result.time_box_exceeded,
    )


@encounters.post("/{encounter_id}/cancel", response_model=EncounterDTO)
def cancel_encounter(
    encounter_id: str,
    payload: CancelRequest,
    claims: SessionClaims = Depends(require_role(Role.PATIENT, Role.CLINICIAN)),
    platform: MediConnect = Depends(get_platform),
) -> EncounterDTO:
    platform.lifecycle.participant_role(encounter_id, claims.identity_id)
    return _encounter_dto(platform.lifecycle.cancel(encounter_id, payload.reason, actor_id=claims.identity_id))


@encounters.post("/{encounter_id}/messages", response_model=MessageDTO, status_code=status.HTTP_201_CREATED)
def post_message(
    encounter_id: str,
    payload: MessageCreateRequest,
    claims: SessionClaims = Depends(get_claims),
    platform: MediConnect = Depends(get_platform),
) -> MessageDTO:
    message = platform.lifecycle.post_message(encounter_id, claims.identity_id, payload.content)
    return MessageDTO.model_validate(message, from_attributes=True)


@encounters.get("/{encounter_id}/messages", response_model=list[MessageDTO])
def list_messages(
    encounter_id: str,
    limit: int = 50,
    claims: SessionClaims = Depends(get_claims),
    platform: MediConnect = Depends(get_platform),
) -> list[MessageDTO]:
    platform.lifecycle.participant_role(encounter_id, claims.identity_id)
    messages = platform.lifecycle.list_messages(encounter_id, limit=min(max(limit, 1), 200))
    return [MessageDTO.model_validate(message, from_attributes=True) for message in messages]


@prescriptions.post("", response_model=PrescriptionDTO, status_code=status.HTTP_201_CREATED)
def create_prescription(
    payload: PrescriptionCreateRequest,
    claims: SessionClaims = Depends(require_role(Role.CLINICIAN)),
    platform: MediConnect = Depends(get_platform),
) -> PrescriptionDTO:
    prescription = platform.ledger.issue(
        payload.encounter_id, _assigned_clinician_id(platform, claims), payload.line_items
    )
    return _prescription_dto(prescription)


@prescriptions.post("/redeem", response_model=RedemptionResult)
def redeem_prescription(
    payload: RedeemRequest,
    claims: SessionClaims = Depends(require_role(Role.PHARMACY_OPERATOR)),
    platform: MediConnect = Depends(get_platform),
) -> RedemptionResult:
    return platform.ledger.redeem(payload.token, claims.identity_id)


@prescriptions.post("/{prescription_id}/fulfill", response_model=ClaimDTO)
def fulfill_prescription(
    prescription_id: str,
    payload: FulfillRequest,
    claims: SessionClaims = Depends(require_role(Role.PHARMACY_OPERATOR)),
    platform: MediConnect = Depends(get_platform),
) -> ClaimDTO:
    claim = platform.ledger.fulfill(prescription_id, claims.identity_id, payload.dispensed_items)
    return _claim_dto(claim)


@prescriptions.post("/claims/{claim_id}/dispute", response_model=ClaimDTO)
def dispute_claim(
    claim_id: str,
    payload: DisputeRequest,
    claims: SessionClaims = Depends(require_role(Role.PHARMACY_OPERATOR)),
    platform: MediConnect = Depends(get_platform),
) -> ClaimDTO:
    return _claim_dto(platform.ledger.dispute(claim_id, claims.identity_id, payload.notes))


@prescriptions.get("/{prescription_id}/document")
def download_prescription(
    prescription_id: str,
    claims: SessionClaims = Depends(require_role(Role.PATIENT)),
    platform: MediConnect = Depends(get_platform),
) -> Response:
    document = platform.ledger.download_as_document(prescription_id, claims.identity_id)
    return Response(
        content=document.content,
        media_type=document.content_type,
        headers={
            "Content-Disposition": f'attachment; filename="prescription-{prescription_id}.pdf"',
            "X-Document-Url": document.url,
        },
    )


async def handle_domain_error(request: Request, exc: MediConnectError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.detail)
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == status.HTTP_401_UNAUTHORIZED else None
    if exc.retryable:
        headers = {"Retry-After": "5"}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def create_app(platform: Optional[MediConnect] = None) -> FastAPI:
    platform = platform or MediConnect.from_settings()
    app = FastAPI(title=platform.settings.APP_NAME)
    app.state.platform = platform
    app.add_exception_handler(MediConnectError, handle_domain_error)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    for router in (auth, encounters, prescriptions):
        app.include_router(router, prefix=platform.settings.API_V1_PREFIX)
    return app
