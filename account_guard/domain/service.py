"""Account guard service orchestrating credentials, delays, recovery and modules."""

from __future__ import annotations

from base64 import urlsafe_b64decode, urlsafe_b64encode
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
import hashlib
import json
import logging
from threading import Lock
from typing import Any, Iterator, Optional, Protocol, Tuple, cast

from .clock import Clock, SystemClock
from .credentials import CredentialStore
from .errors import (
    AccountAuthorityRequiredError,
    DuplicateError,
    EngineError,
    InvalidSignatureError,
    ModuleNotInstalledError,
    NotFoundError,
    NotHookManagerError,
    PolicyError,
    RateLimitedError,
)
from .modules import (
    CREDENTIAL_VALIDATOR_REF,
    HookContext,
    ModuleCatalog,
    ModuleRegistry,
    Operation,
)
from .recovery import GuardianRecovery
from .session import CREDENTIALS, RECOVERY, REGISTRY, TIMELOCK, AccountSession, ModuleStateView
from .session_keys import SESSION_KEY_REF, SessionKeyExecutor
from .spending import SPENDING_LIMIT_REF, SpendingLimitHook
from .timelock import PendingActionTimelock
from .validation import ValidationEngine, Verdict
from ..config import Settings, get_settings
from ..metrics import record_operation, record_signature_check
from ..repository import AccountStore, AuditLogRecord
from ..schemas.credential import CredentialState, PublicKeyCoordinates, SecondFactor
from ..schemas.modules import ModuleInstallation, ModuleKind, RegistryState, SessionKey
from ..schemas.recovery import GuardianState, RecoveryRequest
from ..schemas.timelock import (
    AddSecondFactor,
    PendingAction,
    PendingActionPayload,
    RotatePrimaryKey,
    TimelockState,
    TransferOwnership,
)
from ..security.primary_keys import ensure_primary_key
from ..security.throttle import Throttle
from ..security.webauthn import ensure_second_factor_key

logger = logging.getLogger(__name__)


def intent_hash(account_id: str, nonce: int, action: str, params: dict[str, Any]) -> bytes:
    """Digest a client signs to authorize ``action`` on the account at ``nonce``."""
    document = {"account": account_id, "nonce": nonce, "action": action, "params": params}
    encoded = json.dumps(document, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).digest()


def _operation_params(operation: Operation) -> dict[str, Any]:
    return {"target": operation.target, "value": operation.value, "data": operation.data.hex()}


@dataclass(frozen=True, slots=True)
class Authorization:
    """Caller identity plus an optional signature over the operation intent.

    Without a signature the caller must be the account itself, i.e. a call the
    host has already authenticated as the account. Everyone else, the owner
    principal included, signs the intent.
    """

    caller: str
    signature: bytes | None = None


@dataclass(frozen=True, slots=True)
class AccountAuthority:
    """Proof that the current request acts with the account's authority."""

    account_id: str
    principal: str
    method: str


@dataclass(frozen=True, slots=True)
class InFlightOperation:
    """An operation between its hook pre-check and post-check."""

    account_id: str
    caller: str
    operation: Operation
    hook_context: bytes


class OperationSink(Protocol):
    def apply(self, account_id: str, operation: Operation) -> None: ...


@dataclass(slots=True)
class RecordingSink:
    """Sink that only remembers what it was asked to apply."""

    applied: list[tuple[str, Operation]] = field(default_factory=list)

    def apply(self, account_id: str, operation: Operation) -> None:
        self.applied.append((account_id, operation))


def default_catalog(clock: Clock) -> ModuleCatalog:
    """Catalog with the modules shipped alongside the engine."""
    catalog = ModuleCatalog()
    catalog.register(SPENDING_LIMIT_REF, SpendingLimitHook(clock), ModuleKind.hook)
    catalog.register(SESSION_KEY_REF, SessionKeyExecutor(clock), ModuleKind.executor)
    return catalog


class AccountGuardService:
    """Account authorization workflows backed by an :class:`AccountStore`.

    Every public method runs to completion under a per-account lock against a
    fresh :class:`AccountSession`; state is committed only when the whole
    operation succeeded, and an audit event is written afterwards.
    """

    def __init__(
        self,
        store: AccountStore,
        *,
        clock: Clock | None = None,
        catalog: ModuleCatalog | None = None,
        settings: Settings | None = None,
        throttle: Throttle | None = None,
        sink: OperationSink | None = None,
        require_user_presence: bool = True,
    ) -> None:
        """Store dependencies and build the per-component engines from settings."""
        settings = settings or get_settings()
        self._store = store
        self._clock = clock or SystemClock()
        self._throttle = throttle
        self.sink = sink or RecordingSink()
        self._credentials = CredentialStore()
        self._validation = ValidationEngine(require_user_presence=require_user_presence)
        self._timelock = PendingActionTimelock(
            settings.pending_action_delay_seconds,
            min_delay_seconds=settings.min_delay_seconds,
        )
        self._recovery = GuardianRecovery(
            default_delay_seconds=settings.recovery_delay_seconds,
            min_delay_seconds=settings.min_delay_seconds,
        )
        self._registry = ModuleRegistry(catalog or default_catalog(self._clock))
        self._locks: dict[str, Lock] = {}
        self._locks_guard = Lock()

    @property
    def catalog(self) -> ModuleCatalog:
        return self._registry.catalog

    # Account lifecycle

    def create_account(
        self,
        account_id: str,
        *,
        owner: str,
        primary_key: PublicKeyCoordinates,
        second_factor: PublicKeyCoordinates | None = None,
        second_factor_label: str = "",
        mfa_enabled: bool = False,
    ) -> CredentialState:
        """Bootstrap every state slice of a new account."""
        if not account_id:
            raise PolicyError("account id must not be empty")
        now = self._clock.now()
        with self._transaction(account_id, "create_account") as session:
            if session.exists():
                raise DuplicateError("account already exists")
            credentials = self._credentials.create(
                owner=owner,
                primary_key=primary_key,
                now=now,
                second_factor=second_factor,
                second_factor_label=second_factor_label,
                mfa_enabled=mfa_enabled,
            )
            session.put(CREDENTIALS, credentials)
            session.put(TIMELOCK, TimelockState())
            session.put(RECOVERY, self._recovery.new_state())
            session.put(REGISTRY, self._registry.new_state(now))
        self._audit(account_id, "account.created", owner, {"mfa_enabled": credentials.mfa_enabled})
        return credentials

    def get_credentials(self, account_id: str) -> CredentialState:
        with self._read(account_id) as session:
            return self._require_credentials(session)

    # Signatures

    def intent_for(self, account_id: str, action: str, params: dict[str, Any]) -> tuple[bytes, int]:
        """Return the digest to sign for ``action`` and the nonce it binds."""
        credentials = self.get_credentials(account_id)
        return intent_hash(account_id, credentials.nonce, action, params), credentials.nonce

    def is_valid_signature(self, account_id: str, digest: bytes, signature: bytes) -> bool:
        """Third-party query: does ``signature`` authorize ``digest`` for the account?

        No nonce is consumed and nothing is written.
        """
        with self._read(account_id) as session:
            credentials = self._require_credentials(session)
            return self._check_signature(session, credentials, digest, signature).accepted

    # Credentials

    def add_second_factor(
        self,
        account_id: str,
        public_key: PublicKeyCoordinates,
        auth: Authorization,
        *,
        label: str = "",
        device_id: str = "",
    ) -> SecondFactor:
        params = {"public_key": public_key.model_dump(), "label": label, "device_id": device_id}
        with self._transaction(account_id, "add_second_factor") as session:
            authority = self._authorize(session, auth, "add_second_factor", params)
            credentials = self._require_credentials(session)
            factor = self._credentials.add_second_factor(
                credentials, public_key, label=label, device_id=device_id, now=self._clock.now()
            )
        self._audit(account_id, "second_factor.added", authority.principal, {"factor_id": factor.id})
        return factor

    def remove_second_factor(self, account_id: str, factor_id: str, auth: Authorization) -> SecondFactor:
        params = {"factor_id": factor_id}
        with self._transaction(account_id, "remove_second_factor") as session:
            authority = self._authorize(session, auth, "remove_second_factor", params)
            factor = self._credentials.remove_second_factor(self._require_credentials(session), factor_id)
        self._audit(account_id, "second_factor.removed", authority.principal, {"factor_id": factor.id})
        return factor

    def enable_mfa(self, account_id: str, auth: Authorization) -> None:
        with self._transaction(account_id, "enable_mfa") as session:
            authority = self._authorize(session, auth, "enable_mfa", {})
            self._credentials.enable_mfa(self._require_credentials(session))
        self._audit(account_id, "mfa.enabled", authority.principal)

    def disable_mfa(self, account_id: str, auth: Authorization) -> None:
        with self._transaction(account_id, "disable_mfa") as session:
            authority = self._authorize(session, auth, "disable_mfa", {})
            self._credentials.disable_mfa(self._require_credentials(session))
        self._audit(account_id, "mfa.disabled", authority.principal)

    # Pending-action timelock

    def propose_action(
        self, account_id: str, payload: PendingActionPayload, auth: Authorization
    ) -> PendingAction:
        """Queue a sensitive credential mutation behind the pending-action delay."""
        self._check_payload(payload)
        params = payload.model_dump(mode="json")
        with self._transaction(account_id, "propose_action") as session:
            authority = self._authorize(session, auth, "propose_action", params)
            state = self._require(session, TIMELOCK, TimelockState)
            action = self._timelock.propose(state, account_id, payload, self._clock.now())
        self._audit(
            account_id,
            "timelock.proposed",
            authority.principal,
            {"action_id": action.id, "kind": payload.kind, "execute_after": action.execute_after},
        )
        return action

    def cancel_action(self, account_id: str, action_id: str, auth: Authorization) -> PendingAction:
        params = {"action_id": action_id}
        with self._transaction(account_id, "cancel_action") as session:
            authority = self._authorize(session, auth, "cancel_action", params)
            action = self._timelock.cancel(self._require(session, TIMELOCK, TimelockState), action_id)
        self._audit(account_id, "timelock.cancelled", authority.principal, {"action_id": action_id})
        return action

    def execute_action(self, account_id: str, action_id: str, caller: str | None = None) -> PendingAction:
        """Apply a due pending action. Anyone may call this."""
        with self._transaction(account_id, "execute_action") as session:
            credentials = self._require_credentials(session)
            state = self._require(session, TIMELOCK, TimelockState)
            action = self._timelock.execute(
                state,
                action_id,
                self._clock.now(),
                lambda payload: self._apply_payload(credentials, payload),
            )
        self._audit(
            account_id,
            "timelock.executed",
            caller,
            {"action_id": action_id, "kind": action.payload.kind},
        )
        return action

    def get_action(self, account_id: str, action_id: str) -> PendingAction:
        with self._read(account_id) as session:
            return self._timelock.get(self._require(session, TIMELOCK, TimelockState), action_id)

    def list_pending(self, account_id: str) -> list[PendingAction]:
        with self._read(account_id) as session:
            return self._timelock.pending(self._require(session, TIMELOCK, TimelockState))

    # Guardians and recovery

    def add_guardian(self, account_id: str, guardian: str, auth: Authorization) -> GuardianState:
        with self._transaction(account_id, "add_guardian") as session:
            authority = self._authorize(session, auth, "add_guardian", {"guardian": guardian})
            state = self._require(session, RECOVERY, GuardianState)
            self._recovery.add_guardian(state, guardian)
        self._audit(account_id, "guardian.added", authority.principal, {"guardian": guardian})
        return state

    def remove_guardian(self, account_id: str, guardian: str, auth: Authorization) -> GuardianState:
        with self._transaction(account_id, "remove_guardian") as session:
            authority = self._authorize(session, auth, "remove_guardian", {"guardian": guardian})
            state = self._require(session, RECOVERY, GuardianState)
            self._recovery.remove_guardian(state, guardian)
        self._audit(account_id, "guardian.removed", authority.principal, {"guardian": guardian})
        return state

    def set_threshold(self, account_id: str, threshold: int, auth: Authorization) -> GuardianState:
        with self._transaction(account_id, "set_threshold") as session:
            authority = self._authorize(session, auth, "set_threshold", {"threshold": threshold})
            state = self._require(session, RECOVERY, GuardianState)
            self._recovery.set_threshold(state, threshold)
        self._audit(account_id, "guardian.threshold_set", authority.principal, {"threshold": threshold})
        return state

    def set_recovery_delay(self, account_id: str, delay_seconds: int, auth: Authorization) -> GuardianState:
        params = {"delay_seconds": delay_seconds}
        with self._transaction(account_id, "set_recovery_delay") as session:
            authority = self._authorize(session, auth, "set_recovery_delay", params)
            state = self._require(session, RECOVERY, GuardianState)
            self._recovery.set_delay(state, delay_seconds)
        self._audit(account_id, "recovery.delay_set", authority.principal, params)
        return state

    def get_guardians(self, account_id: str) -> GuardianState:
        with self._read(account_id) as session:
            return self._require(session, RECOVERY, GuardianState)

    def is_guardian(self, account_id: str, principal: str) -> bool:
        return self._recovery.is_guardian(self.get_guardians(account_id), principal)

    def initiate_recovery(
        self,
        account_id: str,
        caller: str,
        *,
        new_primary_key: PublicKeyCoordinates | None = None,
        new_owner: str | None = None,
        new_second_factor: PublicKeyCoordinates | None = None,
    ) -> RecoveryRequest:
        """Open a recovery request carrying the caller's implicit approval.

        ``new_second_factor`` replaces every second factor on execution, which
        is how an MFA account that lost its passkey becomes usable again.
        """
        self._throttle_guardian(account_id, caller)
        if new_primary_key is not None and not new_primary_key.is_zero():
            ensure_primary_key(new_primary_key)
        if new_second_factor is not None and not new_second_factor.is_zero():
            ensure_second_factor_key(new_second_factor)
        with self._transaction(account_id, "initiate_recovery") as session:
            state = self._require(session, RECOVERY, GuardianState)
            request = self._recovery.initiate(
                state,
                caller,
                new_primary_key=new_primary_key,
                new_owner=new_owner,
                new_second_factor=new_second_factor,
                now=self._clock.now(),
            )
        self._audit(
            account_id,
            "recovery.initiated",
            caller,
            {"nonce": request.nonce, "threshold_met": request.threshold_met},
        )
        return request

    def approve_recovery(self, account_id: str, caller: str, nonce: int) -> RecoveryRequest:
        self._throttle_guardian(account_id, caller)
        with self._transaction(account_id, "approve_recovery") as session:
            state = self._require(session, RECOVERY, GuardianState)
            request = self._recovery.approve(state, caller, nonce, self._clock.now())
        self._audit(
            account_id,
            "recovery.approved",
            caller,
            {"nonce": nonce, "approval_count": request.approval_count},
        )
        return request

    def execute_recovery(self, account_id: str, nonce: int, caller: str | None = None) -> RecoveryRequest:
        """Apply a recovery whose delay has elapsed. Anyone may call this."""
        with self._transaction(account_id, "execute_recovery") as session:
            credentials = self._require_credentials(session)
            state = self._require(session, RECOVERY, GuardianState)
            request = self._recovery.execute(
                state,
                nonce,
                self._clock.now(),
                lambda req: self._apply_recovery(credentials, req),
            )
        self._audit(account_id, "recovery.executed", caller, {"nonce": nonce})
        return request

    def cancel_recovery(self, account_id: str, nonce: int, auth: Authorization) -> RecoveryRequest:
        """Cancel a recovery with the account's *current* credential."""
        with self._transaction(account_id, "cancel_recovery") as session:
            authority = self._authorize(session, auth, "cancel_recovery", {"nonce": nonce})
            request = self._recovery.cancel(self._require(session, RECOVERY, GuardianState), nonce)
        self._audit(account_id, "recovery.cancelled", authority.principal, {"nonce": nonce})
        return request

    def get_recovery_request(self, account_id: str, nonce: int) -> RecoveryRequest:
        return self._recovery.get_request(self.get_guardians(account_id), nonce)

    def has_approved(self, account_id: str, nonce: int, guardian: str) -> bool:
        return self._recovery.has_approved(self.get_guardians(account_id), nonce, guardian)

    # Modules

    def install_module(
        self,
        account_id: str,
        kind: ModuleKind,
        module_ref: str,
        auth: Authorization,
        config: dict[str, Any] | None = None,
    ) -> ModuleInstallation:
        config = dict(config or {})
        params = {"kind": int(kind), "module_ref": module_ref, "config": config}
        with self._transaction(account_id, "install_module") as session:
            authority = self._authorize(session, auth, "install_module", params)
            state = self._require(session, REGISTRY, RegistryState)
            installation = self._registry.install(
                session, state, kind, module_ref, config, self._clock.now()
            )
        self._audit(
            account_id,
            "module.installed",
            authority.principal,
            {"kind": kind.name, "module_ref": module_ref},
        )
        return installation

    def uninstall_module(
        self, account_id: str, kind: ModuleKind, module_ref: str, auth: Authorization
    ) -> None:
        params = {"kind": int(kind), "module_ref": module_ref}
        with self._transaction(account_id, "uninstall_module") as session:
            authority = self._authorize(session, auth, "uninstall_module", params)
            self._registry.uninstall(session, self._require(session, REGISTRY, RegistryState), kind, module_ref)
        self._audit(
            account_id,
            "module.uninstalled",
            authority.principal,
            {"kind": kind.name, "module_ref": module_ref},
        )

    def add_hook(
        self,
        account_id: str,
        hook_ref: str,
        auth: Authorization,
        config: dict[str, Any] | None = None,
    ) -> list[str]:
        """Append a hook to the chain; allowed for the account or the chain manager."""
        config = dict(config or {})
        with self._transaction(account_id, "add_hook") as session:
            state = self._require(session, REGISTRY, RegistryState)
            principal = self._authorize_hook_change(
                session, state, auth, "add_hook", {"hook_ref": hook_ref, "config": config}
            )
            self._registry.add_hook(session, state, hook_ref, config)
            hooks = list(self._registry.require_chain(state).hooks)
        self._audit(account_id, "hook.added", principal, {"hook_ref": hook_ref})
        return hooks

    def remove_hook(self, account_id: str, hook_ref: str, auth: Authorization) -> list[str]:
        with self._transaction(account_id, "remove_hook") as session:
            state = self._require(session, REGISTRY, RegistryState)
            principal = self._authorize_hook_change(
                session, state, auth, "remove_hook", {"hook_ref": hook_ref}
            )
            self._registry.remove_hook(session, state, hook_ref)
            hooks = list(self._registry.require_chain(state).hooks)
        self._audit(account_id, "hook.removed", principal, {"hook_ref": hook_ref})
        return hooks

    def get_registry(self, account_id: str) -> RegistryState:
        with self._read(account_id) as session:
            return self._require(session, REGISTRY, RegistryState)

    def module_state(self, account_id: str, module_ref: str) -> dict[str, Any]:
        with self._read(account_id) as session:
            self._require_credentials(session)
            return ModuleStateView(session, module_ref).snapshot()

    # Operations

    def execute_operation(
        self, account_id: str, operation: Operation, auth: Authorization
    ) -> InFlightOperation:
        """Run an account operation through hooks, authorization and the sink.

        Order: hook pre-checks (any may veto), authorization, apply, then the
        post-checks paired with the pre-check token.
        """
        params = _operation_params(operation)
        with self._transaction(account_id, "execute_operation") as session:
            registry = self._require(session, REGISTRY, RegistryState)
            context = self._registry.pre_check(session, registry, auth.caller, operation.value, operation.data)
            self._authorize(session, auth, "execute", params)
            in_flight = InFlightOperation(
                account_id=account_id,
                caller=auth.caller,
                operation=operation,
                hook_context=context.encode(),
            )
            self._apply_operation(session, in_flight)
        self._audit(account_id, "operation.executed", auth.caller, params)
        return in_flight

    def execute_from_executor(
        self,
        account_id: str,
        executor_ref: str,
        operation: Operation,
        caller: str | None = None,
    ) -> InFlightOperation:
        """Run an operation on behalf of an installed executor module.

        ``caller`` is the principal the executor vouches for (a session key,
        say); it defaults to the executor itself.
        """
        principal = caller or executor_ref
        params = {**_operation_params(operation), "executor": executor_ref}
        with self._transaction(account_id, "execute_from_executor") as session:
            registry = self._require(session, REGISTRY, RegistryState)
            if not self._registry.is_installed(registry, ModuleKind.executor, executor_ref):
                raise ModuleNotInstalledError(f"executor {executor_ref!r} not installed")
            executor = self._registry.executor(executor_ref)
            context = self._registry.pre_check(session, registry, principal, operation.value, operation.data)
            executor.check_execution(ModuleStateView(session, executor_ref), principal, operation)
            in_flight = InFlightOperation(
                account_id=account_id,
                caller=principal,
                operation=operation,
                hook_context=context.encode(),
            )
            self._apply_operation(session, in_flight)
        self._audit(account_id, "operation.executed", principal, params)
        return in_flight

    # Session keys

    def create_session_key(self, account_id: str, session_key: SessionKey, auth: Authorization) -> SessionKey:
        """Grant a session key through the installed session-key executor."""
        params = session_key.model_dump(mode="json")
        with self._transaction(account_id, "create_session_key") as session:
            authority = self._authorize(session, auth, "create_session_key", params)
            record = self._session_keys(session).create(ModuleStateView(session, SESSION_KEY_REF), session_key)
        self._audit(
            account_id,
            "session_key.created",
            authority.principal,
            {"key": record.key, "valid_until": record.valid_until},
        )
        return record

    def revoke_session_key(self, account_id: str, key: str, auth: Authorization) -> SessionKey:
        with self._transaction(account_id, "revoke_session_key") as session:
            authority = self._authorize(session, auth, "revoke_session_key", {"key": key})
            record = self._session_keys(session).revoke(ModuleStateView(session, SESSION_KEY_REF), key)
        self._audit(account_id, "session_key.revoked", authority.principal, {"key": key})
        return record

    def list_session_keys(self, account_id: str) -> list[SessionKey]:
        with self._read(account_id) as session:
            return self._session_keys(session).list_keys(ModuleStateView(session, SESSION_KEY_REF))

    def execute_with_session_key(
        self, account_id: str, session_key: str, operation: Operation
    ) -> InFlightOperation:
        """Run ``operation`` as the host-authenticated session-key principal."""
        return self.execute_from_executor(account_id, SESSION_KEY_REF, operation, caller=session_key)

    # Audit

    def list_audit_events(
        self,
        account_id: str,
        *,
        event_type: str | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditLogRecord], str | None]:
        """Return audit records for the account, newest first, with cursor pagination."""
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
        records, next_cursor_tuple = self._store.list_audit_events(
            account_id=account_id,
            event_type=event_type,
            limit=limit,
            cursor=decoded_cursor,
        )
        next_cursor = self._encode_cursor(next_cursor_tuple) if next_cursor_tuple else None
        return records, next_cursor

    # Internals

    @contextmanager
    def _transaction(self, account_id: str, operation: str) -> Iterator[AccountSession]:
        with self._lock_for(account_id):
            session = AccountSession(self._store, account_id)
            try:
                yield session
            except EngineError as exc:
                record_operation(operation, exc.code)
                logger.info("%s rejected for %s: %s", operation, account_id, exc)
                raise
            written = session.commit()
        record_operation(operation, "ok")
        logger.debug("%s committed %s for %s", operation, written, account_id)

    @contextmanager
    def _read(self, account_id: str) -> Iterator[AccountSession]:
        with self._lock_for(account_id):
            yield AccountSession(self._store, account_id)

    def _lock_for(self, account_id: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = Lock()
            return lock

    @staticmethod
    def _require(session: AccountSession, namespace: str, model: type) -> Any:
        record = session.get(namespace, model)
        if record is None:
            raise NotFoundError("account not found")
        return record

    def _require_credentials(self, session: AccountSession) -> CredentialState:
        return self._require(session, CREDENTIALS, CredentialState)

    def _authorize(
        self,
        session: AccountSession,
        auth: Authorization,
        action: str,
        params: dict[str, Any],
    ) -> AccountAuthority:
        credentials = self._require_credentials(session)
        if auth.signature is None:
            if auth.caller and auth.caller == session.account_id:
                return AccountAuthority(session.account_id, auth.caller, "self")
            raise AccountAuthorityRequiredError("a signature over the intent is required")

        digest = intent_hash(session.account_id, credentials.nonce, action, params)
        verdict = self._check_signature(session, credentials, digest, auth.signature)
        verdict.raise_for_rejection()
        credentials.nonce += 1
        return AccountAuthority(session.account_id, auth.caller or session.account_id, "signature")

    def _authorize_hook_change(
        self,
        session: AccountSession,
        registry: RegistryState,
        auth: Authorization,
        action: str,
        params: dict[str, Any],
    ) -> str:
        self._registry.require_chain(registry)
        if auth.signature is None and self._registry.is_manager(registry, auth.caller):
            return auth.caller
        try:
            return self._authorize(session, auth, action, params).principal
        except AccountAuthorityRequiredError:
            raise NotHookManagerError("caller is neither the account nor the hook manager") from None

    def _check_signature(
        self,
        session: AccountSession,
        credentials: CredentialState,
        digest: bytes,
        raw: bytes,
    ) -> Verdict:
        registry = self._require(session, REGISTRY, RegistryState)
        module_ref, payload = self._registry.route_signature(registry, raw)
        if module_ref != CREDENTIAL_VALIDATOR_REF:
            validator = self._registry.validator(module_ref)
            accepted = validator.validate_signature(ModuleStateView(session, module_ref), digest, payload)
            verdict = Verdict.accept() if accepted else Verdict.reject(InvalidSignatureError)
        elif self._registry.is_installed(registry, ModuleKind.validator, CREDENTIAL_VALIDATOR_REF):
            verdict = self._validation.validate(credentials, digest, payload)
        else:
            verdict = Verdict.reject(InvalidSignatureError)
        record_signature_check("accepted" if verdict.accepted else str(verdict.reason))
        return verdict

    def _apply_operation(self, session: AccountSession, in_flight: InFlightOperation) -> None:
        """Apply through the sink, then run the paired post-checks.

        The sink cannot be rolled back, so a post-check failure still commits
        the session: the consumed nonce and executor bookkeeping stay spent.
        """
        self.sink.apply(in_flight.account_id, in_flight.operation)
        context = HookContext.decode(in_flight.account_id, in_flight.hook_context)
        try:
            self._registry.post_check(session, context)
        except EngineError as exc:
            session.commit()
            logger.warning(
                "post-check failed after applying operation on %s: %s", in_flight.account_id, exc
            )
            self._audit(
                in_flight.account_id,
                "operation.post_check_failed",
                in_flight.caller,
                {**_operation_params(in_flight.operation), "reason": exc.code},
            )
            raise

    def _session_keys(self, session: AccountSession) -> SessionKeyExecutor:
        registry = self._require(session, REGISTRY, RegistryState)
        if not self._registry.is_installed(registry, ModuleKind.executor, SESSION_KEY_REF):
            raise ModuleNotInstalledError("session-key executor not installed")
        return cast(SessionKeyExecutor, self._registry.executor(SESSION_KEY_REF))

    def _check_payload(self, payload: PendingActionPayload) -> None:
        if isinstance(payload, RotatePrimaryKey):
            ensure_primary_key(payload.primary_key)
        elif isinstance(payload, TransferOwnership):
            if not payload.owner:
                raise PolicyError("owner must not be empty")
        elif isinstance(payload, AddSecondFactor):
            ensure_second_factor_key(payload.public_key)

    def _apply_payload(self, credentials: CredentialState, payload: PendingActionPayload) -> None:
        if isinstance(payload, RotatePrimaryKey):
            self._credentials.set_primary_key(credentials, payload.primary_key)
        elif isinstance(payload, TransferOwnership):
            self._credentials.set_owner(credentials, payload.owner)
        elif isinstance(payload, AddSecondFactor):
            self._credentials.add_second_factor(
                credentials,
                payload.public_key,
                label=payload.label,
                device_id=payload.device_id,
                now=self._clock.now(),
            )

    def _apply_recovery(self, credentials: CredentialState, request: RecoveryRequest) -> None:
        if request.new_primary_key is not None:
            self._credentials.set_primary_key(credentials, request.new_primary_key)
        if request.new_owner:
            self._credentials.set_owner(credentials, request.new_owner)
        if request.new_second_factor is not None:
            self._credentials.reset_second_factors(
                credentials, request.new_second_factor, label="recovery", now=self._clock.now()
            )

    def _throttle_guardian(self, account_id: str, caller: str) -> None:
        if self._throttle is not None and not self._throttle.allow(f"recovery:{account_id}:{caller}"):
            record_operation("recovery", RateLimitedError.code)
            raise RateLimitedError("too many recovery calls; retry later")

    def _audit(
        self,
        account_id: str,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._store.write_audit_event(
            account_id=account_id,
            event_type=event_type,
            actor=actor,
            metadata=metadata or {},
        )

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, audit_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            created_at = datetime.fromisoformat(data["created_at"])
            audit_id = int(data["audit_id"])
            return created_at, audit_id
        except (ValueError, KeyError, TypeError) as exc:
            raise ValueError("invalid cursor") from exc
