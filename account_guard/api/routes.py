"""HTTP route definitions for the account guard service."""

from __future__ import annotations

import logging

from datetime import datetime
from typing import Any

import jwt
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
import redis
from redis.exceptions import RedisError

from ..config import get_settings
from ..domain.errors import (
    AuthorizationError,
    EngineError,
    NotFoundError,
    PolicyError,
    RateLimitedError,
    StateError,
)
from ..domain.modules import Operation
from ..domain.service import AccountGuardService, Authorization
from ..schemas.credential import CredentialState, PublicKeyCoordinates, SecondFactor
from ..schemas.modules import ModuleInstallation, ModuleKind, RegistryState, SessionKey
from ..schemas.recovery import GuardianState, RecoveryRequest, RecoveryStatus
from ..schemas.timelock import PendingAction, PendingActionPayload
from ..security.throttle import RedisSlidingWindowThrottle, SlidingWindowThrottle
from ..security.tokens import decode_caller_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


class SignedRequest(BaseModel):
    """Body of an authenticated call; ``signature`` is hex over the intent digest."""

    signature: str | None = None


class CreateAccountRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    owner: str = Field(..., min_length=1)
    primary_key: PublicKeyCoordinates
    second_factor: PublicKeyCoordinates | None = None
    second_factor_label: str = ""
    mfa_enabled: bool = False


class AccountResponse(BaseModel):
    """Serialised view of an account's credential record."""

    account_id: str
    owner: str
    primary_key: PublicKeyCoordinates
    second_factors: list[SecondFactor]
    mfa_enabled: bool
    nonce: int

    @classmethod
    def from_domain(cls, account_id: str, state: CredentialState) -> "AccountResponse":
        return cls(
            account_id=account_id,
            owner=state.owner,
            primary_key=state.primary_key,
            second_factors=state.active_factors(),
            mfa_enabled=state.mfa_enabled,
            nonce=state.nonce,
        )


class IntentRequest(BaseModel):
    action: str
    params: dict[str, Any] = Field(default_factory=dict)


class IntentResponse(BaseModel):
    digest: str
    nonce: int


class VerifySignatureRequest(BaseModel):
    digest: str
    signature: str


class VerifySignatureResponse(BaseModel):
    valid: bool


class AddSecondFactorRequest(SignedRequest):
    public_key: PublicKeyCoordinates
    label: str = ""
    device_id: str = ""


class MfaRequest(SignedRequest):
    enabled: bool


class ProposeActionRequest(SignedRequest):
    payload: PendingActionPayload


class PendingActionList(BaseModel):
    items: list[PendingAction]


class GuardianRequest(SignedRequest):
    guardian: str = Field(..., min_length=1)


class ThresholdRequest(SignedRequest):
    threshold: int


class RecoveryDelayRequest(SignedRequest):
    delay_seconds: int


class GuardiansResponse(BaseModel):
    guardians: list[str]
    threshold: int
    delay_seconds: int

    @classmethod
    def from_domain(cls, state: GuardianState) -> "GuardiansResponse":
        return cls(guardians=state.guardians, threshold=state.threshold, delay_seconds=state.delay_seconds)


class InitiateRecoveryRequest(BaseModel):
    new_primary_key: PublicKeyCoordinates | None = None
    new_owner: str | None = None
    new_second_factor: PublicKeyCoordinates | None = None


class RecoveryResponse(BaseModel):
    nonce: int
    status: RecoveryStatus
    new_primary_key: PublicKeyCoordinates | None
    new_owner: str | None
    new_second_factor: PublicKeyCoordinates | None
    approvals: list[str]
    approval_count: int
    execute_after: int | None

    @classmethod
    def from_domain(cls, request: RecoveryRequest) -> "RecoveryResponse":
        return cls(
            nonce=request.nonce,
            status=request.status,
            new_primary_key=request.new_primary_key,
            new_owner=request.new_owner,
            new_second_factor=request.new_second_factor,
            approvals=request.approvals,
            approval_count=request.approval_count,
            execute_after=request.execute_after,
        )


class InstallModuleRequest(SignedRequest):
    kind: ModuleKind
    module_ref: str = Field(..., min_length=1)
    config: dict[str, Any] = Field(default_factory=dict)


class ModulesResponse(BaseModel):
    installed: list[ModuleInstallation]
    hooks: list[str]
    hook_manager: str | None

    @classmethod
    def from_domain(cls, state: RegistryState) -> "ModulesResponse":
        chain = state.hook_chain
        return cls(
            installed=list(state.installed.values()),
            hooks=list(chain.hooks) if chain else [],
            hook_manager=chain.manager if chain else None,
        )


class AddHookRequest(SignedRequest):
    hook_ref: str = Field(..., min_length=1)
    config: dict[str, Any] = Field(default_factory=dict)


class HookChainResponse(BaseModel):
    hooks: list[str]


class OperationRequest(SignedRequest):
    target: str = Field(..., min_length=1)
    value: int = Field(default=0, ge=0)
    data: str = ""


class SessionOperationRequest(BaseModel):
    target: str = Field(..., min_length=1)
    value: int = Field(default=0, ge=0)
    data: str = ""


class CreateSessionKeyRequest(SignedRequest):
    key: str = Field(..., min_length=1)
    valid_after: int = 0
    valid_until: int
    allowed_targets: list[str] = Field(default_factory=list)
    allowed_selectors: list[str] = Field(default_factory=list)
    spend_limit_per_tx: int | None = Field(default=None, ge=0)
    spend_limit_total: int | None = Field(default=None, ge=0)


class SessionKeyList(BaseModel):
    items: list[SessionKey]


class OperationResponse(BaseModel):
    account_id: str
    caller: str
    hook_context: str


class AuditLogEntry(BaseModel):
    """Audit log response entry."""

    audit_id: int
    account_id: str
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AuditLogResponse(BaseModel):
    """Envelope for paginated audit log data."""

    items: list[AuditLogEntry]
    next_cursor: str | None = None


settings = get_settings()


def _build_rate_limiter() -> SlidingWindowThrottle | RedisSlidingWindowThrottle:
    """Instantiate the configured throttle backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            client = redis.from_url(settings.redis_url)
            client.ping()
            logger.info("throttle configured for redis backend at %s", settings.redis_url)
            return RedisSlidingWindowThrottle(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        except (RedisError, ValueError) as exc:
            logger.warning("redis throttle unavailable, falling back to in-memory: %s", exc)

    logger.info("throttle using in-memory backend")
    return SlidingWindowThrottle(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


rate_limiter = _build_rate_limiter()


def get_service(request: Request) -> AccountGuardService:
    """Resolve the `AccountGuardService` stored on the FastAPI application state."""
    service: AccountGuardService = request.app.state.guard_service
    return service


def get_caller(authorization: str | None = Header(default=None)) -> str | None:
    """Return the caller principal named by a bearer token, if one was sent."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="bearer token required")
    try:
        return decode_caller_token(token)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid caller token") from exc


def require_caller(caller: str | None = Depends(get_caller)) -> str:
    if caller is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="bearer token required")
    return caller


def _hex(value: str, field_name: str) -> bytes:
    text = value[2:] if value.lower().startswith("0x") else value
    try:
        return bytes.fromhex(text)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{field_name} is not hex") from exc


def _authorization(caller: str | None, body: SignedRequest) -> Authorization:
    signature = _hex(body.signature, "signature") if body.signature else None
    return Authorization(caller=caller or "", signature=signature)


def _throttle(key: str) -> None:
    if not rate_limiter.allow(key):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate limited")


# Accounts


@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def create_account(
    payload: CreateAccountRequest,
    service: AccountGuardService = Depends(get_service),
) -> AccountResponse:
    """Bootstrap an account with its owner and primary key."""
    _throttle(f"create:{payload.owner}")
    try:
        state = service.create_account(
            payload.account_id,
            owner=payload.owner,
            primary_key=payload.primary_key,
            second_factor=payload.second_factor,
            second_factor_label=payload.second_factor_label,
            mfa_enabled=payload.mfa_enabled,
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return AccountResponse.from_domain(payload.account_id, state)


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(account_id: str, service: AccountGuardService = Depends(get_service)) -> AccountResponse:
    try:
        state = service.get_credentials(account_id)
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return AccountResponse.from_domain(account_id, state)


@router.post("/accounts/{account_id}/intent", response_model=IntentResponse)
def get_intent(
    account_id: str,
    payload: IntentRequest,
    service: AccountGuardService = Depends(get_service),
) -> IntentResponse:
    """Return the digest a client must sign to authorize an action."""
    try:
        digest, nonce = service.intent_for(account_id, payload.action, payload.params)
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return IntentResponse(digest="0x" + digest.hex(), nonce=nonce)


@router.post("/accounts/{account_id}/signatures/verify", response_model=VerifySignatureResponse)
def verify_signature(
    account_id: str,
    payload: VerifySignatureRequest,
    service: AccountGuardService = Depends(get_service),
) -> VerifySignatureResponse:
    _throttle(f"verify:{account_id}")
    digest = _hex(payload.digest, "digest")
    if len(digest) != 32:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="digest must be 32 bytes")
    try:
        valid = service.is_valid_signature(account_id, digest, _hex(payload.signature, "signature"))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return VerifySignatureResponse(valid=valid)


# Credentials


@router.post(
    "/accounts/{account_id}/second-factors",
    response_model=SecondFactor,
    status_code=status.HTTP_201_CREATED,
)
def add_second_factor(
    account_id: str,
    payload: AddSecondFactorRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> SecondFactor:
    try:
        return service.add_second_factor(
            account_id,
            payload.public_key,
            _authorization(caller, payload),
            label=payload.label,
            device_id=payload.device_id,
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc


@router.post("/accounts/{account_id}/second-factors/{factor_id}/remove", response_model=SecondFactor)
def remove_second_factor(
    account_id: str,
    factor_id: str,
    payload: SignedRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> SecondFactor:
    try:
        return service.remove_second_factor(account_id, factor_id, _authorization(caller, payload))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc


@router.put("/accounts/{account_id}/mfa", response_model=AccountResponse)
def set_mfa(
    account_id: str,
    payload: MfaRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> AccountResponse:
    auth = _authorization(caller, payload)
    try:
        if payload.enabled:
            service.enable_mfa(account_id, auth)
        else:
            service.disable_mfa(account_id, auth)
        state = service.get_credentials(account_id)
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return AccountResponse.from_domain(account_id, state)


# Pending actions


@router.post(
    "/accounts/{account_id}/pending-actions",
    response_model=PendingAction,
    status_code=status.HTTP_201_CREATED,
)
def propose_action(
    account_id: str,
    payload: ProposeActionRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> PendingAction:
    try:
        return service.propose_action(account_id, payload.payload, _authorization(caller, payload))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc


@router.get("/accounts/{account_id}/pending-actions", response_model=PendingActionList)
def list_pending_actions(
    account_id: str, service: AccountGuardService = Depends(get_service)
) -> PendingActionList:
    try:
        return PendingActionList(items=service.list_pending(account_id))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc


@router.post("/accounts/{account_id}/pending-actions/{action_id}/cancel", response_model=PendingAction)
def cancel_action(
    account_id: str,
    action_id: str,
    payload: SignedRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> PendingAction:
    try:
        return service.cancel_action(account_id, action_id, _authorization(caller, payload))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc


@router.post("/accounts/{account_id}/pending-actions/{action_id}/execute", response_model=PendingAction)
def execute_action(
    account_id: str,
    action_id: str,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> PendingAction:
    """Apply a due pending action; no credentials are needed."""
    try:
        return service.execute_action(account_id, action_id, caller)
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc


# Guardians and recovery


@router.get("/accounts/{account_id}/guardians", response_model=GuardiansResponse)
def get_guardians(account_id: str, service: AccountGuardService = Depends(get_service)) -> GuardiansResponse:
    try:
        return GuardiansResponse.from_domain(service.get_guardians(account_id))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc


@router.post("/accounts/{account_id}/guardians", response_model=GuardiansResponse)
def add_guardian(
    account_id: str,
    payload: GuardianRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> GuardiansResponse:
    try:
        state = service.add_guardian(account_id, payload.guardian, _authorization(caller, payload))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return GuardiansResponse.from_domain(state)


@router.post("/accounts/{account_id}/guardians/{guardian}/remove", response_model=GuardiansResponse)
def remove_guardian(
    account_id: str,
    guardian: str,
    payload: SignedRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> GuardiansResponse:
    try:
        state = service.remove_guardian(account_id, guardian, _authorization(caller, payload))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return GuardiansResponse.from_domain(state)


@router.put("/accounts/{account_id}/guardians/threshold", response_model=GuardiansResponse)
def set_threshold(
    account_id: str,
    payload: ThresholdRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> GuardiansResponse:
    try:
        state = service.set_threshold(account_id, payload.threshold, _authorization(caller, payload))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return GuardiansResponse.from_domain(state)


@router.put("/accounts/{account_id}/recovery/delay", response_model=GuardiansResponse)
def set_recovery_delay(
    account_id: str,
    payload: RecoveryDelayRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> GuardiansResponse:
    try:
        state = service.set_recovery_delay(account_id, payload.delay_seconds, _authorization(caller, payload))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return GuardiansResponse.from_domain(state)


@router.post(
    "/accounts/{account_id}/recoveries",
    response_model=RecoveryResponse,
    status_code=status.HTTP_201_CREATED,
)
def initiate_recovery(
    account_id: str,
    payload: InitiateRecoveryRequest,
    caller: str = Depends(require_caller),
    service: AccountGuardService = Depends(get_service),
) -> RecoveryResponse:
    try:
        request = service.initiate_recovery(
            account_id,
            caller,
            new_primary_key=payload.new_primary_key,
            new_owner=payload.new_owner,
            new_second_factor=payload.new_second_factor,
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return RecoveryResponse.from_domain(request)


@router.get("/accounts/{account_id}/recoveries/{nonce}", response_model=RecoveryResponse)
def get_recovery(
    account_id: str, nonce: int, service: AccountGuardService = Depends(get_service)
) -> RecoveryResponse:
    try:
        return RecoveryResponse.from_domain(service.get_recovery_request(account_id, nonce))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc


@router.post("/accounts/{account_id}/recoveries/{nonce}/approve", response_model=RecoveryResponse)
def approve_recovery(
    account_id: str,
    nonce: int,
    caller: str = Depends(require_caller),
    service: AccountGuardService = Depends(get_service),
) -> RecoveryResponse:
    try:
        return RecoveryResponse.from_domain(service.approve_recovery(account_id, caller, nonce))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc


@router.post("/accounts/{account_id}/recoveries/{nonce}/execute", response_model=RecoveryResponse)
def execute_recovery(
    account_id: str,
    nonce: int,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> RecoveryResponse:
    try:
        return RecoveryResponse.from_domain(service.execute_recovery(account_id, nonce, caller))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc


@router.post("/accounts/{account_id}/recoveries/{nonce}/cancel", response_model=RecoveryResponse)
def cancel_recovery(
    account_id: str,
    nonce: int,
    payload: SignedRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> RecoveryResponse:
    try:
        request = service.cancel_recovery(account_id, nonce, _authorization(caller, payload))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return RecoveryResponse.from_domain(request)


# Modules and hooks


@router.get("/accounts/{account_id}/modules", response_model=ModulesResponse)
def list_modules(account_id: str, service: AccountGuardService = Depends(get_service)) -> ModulesResponse:
    try:
        return ModulesResponse.from_domain(service.get_registry(account_id))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc


@router.post(
    "/accounts/{account_id}/modules",
    response_model=ModuleInstallation,
    status_code=status.HTTP_201_CREATED,
)
def install_module(
    account_id: str,
    payload: InstallModuleRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> ModuleInstallation:
    try:
        return service.install_module(
            account_id,
            payload.kind,
            payload.module_ref,
            _authorization(caller, payload),
            payload.config,
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc


@router.post("/accounts/{account_id}/modules/{kind}/{module_ref}/uninstall", response_model=ModulesResponse)
def uninstall_module(
    account_id: str,
    kind: int,
    module_ref: str,
    payload: SignedRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> ModulesResponse:
    try:
        service.uninstall_module(account_id, ModuleKind(kind), module_ref, _authorization(caller, payload))
        return ModulesResponse.from_domain(service.get_registry(account_id))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc


@router.post("/accounts/{account_id}/hooks", response_model=HookChainResponse)
def add_hook(
    account_id: str,
    payload: AddHookRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> HookChainResponse:
    try:
        hooks = service.add_hook(account_id, payload.hook_ref, _authorization(caller, payload), payload.config)
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return HookChainResponse(hooks=hooks)


@router.post("/accounts/{account_id}/hooks/{hook_ref}/remove", response_model=HookChainResponse)
def remove_hook(
    account_id: str,
    hook_ref: str,
    payload: SignedRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> HookChainResponse:
    try:
        hooks = service.remove_hook(account_id, hook_ref, _authorization(caller, payload))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return HookChainResponse(hooks=hooks)


@router.post("/accounts/{account_id}/operations", response_model=OperationResponse)
def execute_operation(
    account_id: str,
    payload: OperationRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> OperationResponse:
    """Run an operation through the hook chain and the account's validator."""
    operation = Operation(target=payload.target, value=payload.value, data=_hex(payload.data, "data"))
    try:
        in_flight = service.execute_operation(account_id, operation, _authorization(caller, payload))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return OperationResponse(
        account_id=in_flight.account_id,
        caller=in_flight.caller,
        hook_context="0x" + in_flight.hook_context.hex(),
    )


# Session keys


@router.get("/accounts/{account_id}/session-keys", response_model=SessionKeyList)
def list_session_keys(account_id: str, service: AccountGuardService = Depends(get_service)) -> SessionKeyList:
    try:
        return SessionKeyList(items=service.list_session_keys(account_id))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc


@router.post(
    "/accounts/{account_id}/session-keys",
    response_model=SessionKey,
    status_code=status.HTTP_201_CREATED,
)
def create_session_key(
    account_id: str,
    payload: CreateSessionKeyRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> SessionKey:
    try:
        session_key = SessionKey.model_validate(payload.model_dump(exclude={"signature"}))
        return service.create_session_key(account_id, session_key, _authorization(caller, payload))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc


@router.post("/accounts/{account_id}/session-keys/{key}/revoke", response_model=SessionKey)
def revoke_session_key(
    account_id: str,
    key: str,
    payload: SignedRequest,
    caller: str | None = Depends(get_caller),
    service: AccountGuardService = Depends(get_service),
) -> SessionKey:
    try:
        return service.revoke_session_key(account_id, key, _authorization(caller, payload))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc


@router.post("/accounts/{account_id}/session-operations", response_model=OperationResponse)
def execute_with_session_key(
    account_id: str,
    payload: SessionOperationRequest,
    caller: str = Depends(require_caller),
    service: AccountGuardService = Depends(get_service),
) -> OperationResponse:
    """Run an operation as the bearer's session key."""
    operation = Operation(target=payload.target, value=payload.value, data=_hex(payload.data, "data"))
    try:
        in_flight = service.execute_with_session_key(account_id, caller, operation)
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return OperationResponse(
        account_id=in_flight.account_id,
        caller=in_flight.caller,
        hook_context="0x" + in_flight.hook_context.hex(),
    )


# Audit


@router.get("/accounts/{account_id}/audit", response_model=AuditLogResponse)
def list_audit_logs(
    account_id: str,
    event_type: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    service: AccountGuardService = Depends(get_service),
) -> AuditLogResponse:
    """Return paginated audit events for the account, newest first."""
    try:
        records, next_cursor = service.list_audit_events(
            account_id,
            event_type=event_type,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    items = [
        AuditLogEntry(
            audit_id=record.audit_id,
            account_id=record.account_id,
            event_type=record.event_type,
            actor=record.actor,
            metadata=record.metadata,
            created_at=record.created_at,
        )
        for record in records
    ]
    return AuditLogResponse(items=items, next_cursor=next_cursor)


def _http_error_from_value_error(exc: ValueError) -> HTTPException:
    if not isinstance(exc, EngineError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    status_code = status.HTTP_400_BAD_REQUEST
    if isinstance(exc, AuthorizationError):
        status_code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, StateError):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, RateLimitedError):
        status_code = status.HTTP_429_TOO_MANY_REQUESTS
    elif isinstance(exc, PolicyError):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    return HTTPException(status_code=status_code, detail=str(exc), headers={"X-Error-Code": exc.code})
