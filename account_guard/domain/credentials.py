"""Credential store: primary key, owner, second factors and the MFA flag."""

from __future__ import annotations

from .errors import (
    DuplicateError,
    LastFactorError,
    MfaFactorRequiredError,
    NotFoundError,
    PolicyError,
)
from ..schemas.credential import (
    CredentialState,
    PublicKeyCoordinates,
    SecondFactor,
    second_factor_id,
)
from ..security.primary_keys import ensure_primary_key
from ..security.webauthn import ensure_second_factor_key


class CredentialStore:
    """Mutations over a single account's ``CredentialState``.

    The store never persists anything itself; callers hand in the state record
    loaded for the current invocation and save it once the whole operation has
    succeeded. Every method validates all of its preconditions before touching
    the record.
    """

    def create(
        self,
        *,
        owner: str,
        primary_key: PublicKeyCoordinates,
        now: int,
        second_factor: PublicKeyCoordinates | None = None,
        second_factor_label: str = "",
        mfa_enabled: bool = False,
    ) -> CredentialState:
        """Build the initial credential record for a new account."""
        state = CredentialState(
            owner=owner,
            primary_key=ensure_primary_key(primary_key),
            created_at=now,
        )
        if second_factor is not None:
            self.add_second_factor(state, second_factor, label=second_factor_label, now=now)
        if mfa_enabled:
            self.enable_mfa(state)
        return state

    def set_primary_key(self, state: CredentialState, primary_key: PublicKeyCoordinates) -> None:
        state.primary_key = ensure_primary_key(primary_key)

    def set_owner(self, state: CredentialState, owner: str) -> None:
        if not owner:
            raise PolicyError("owner must not be empty")
        state.owner = owner

    def add_second_factor(
        self,
        state: CredentialState,
        public_key: PublicKeyCoordinates,
        *,
        label: str = "",
        device_id: str = "",
        now: int,
    ) -> SecondFactor:
        """Register (or re-activate) a second factor and return its record."""
        ensure_second_factor_key(public_key)
        factor_id = second_factor_id(public_key)
        existing = state.second_factors.get(factor_id)
        if existing is not None:
            if existing.active:
                raise DuplicateError("second factor already registered")
            existing.active = True
            existing.label = label
            existing.device_id = device_id
            existing.added_at = now
            return existing

        factor = SecondFactor(
            id=factor_id,
            x=public_key.x,
            y=public_key.y,
            label=label,
            device_id=device_id,
            added_at=now,
        )
        state.second_factors[factor_id] = factor
        state.factor_ids.append(factor_id)
        return factor

    def remove_second_factor(self, state: CredentialState, factor_id: str) -> SecondFactor:
        factor = state.second_factors.get(factor_id.lower())
        if factor is None or not factor.active:
            raise NotFoundError("second factor not found")
        if state.mfa_enabled and len(state.active_factors()) == 1:
            raise LastFactorError("cannot remove the last second factor while MFA is enabled")
        factor.active = False
        return factor

    def reset_second_factors(
        self,
        state: CredentialState,
        public_key: PublicKeyCoordinates,
        *,
        label: str = "",
        now: int,
    ) -> SecondFactor:
        """Make ``public_key`` the only active second factor.

        Used by recovery, where the old devices are presumed lost. The new
        factor is active before the method returns, so the MFA invariant holds.
        """
        ensure_second_factor_key(public_key)
        keep = second_factor_id(public_key)
        for factor in state.second_factors.values():
            if factor.id != keep:
                factor.active = False
        existing = state.second_factors.get(keep)
        if existing is not None and existing.active:
            return existing
        return self.add_second_factor(state, public_key, label=label, now=now)

    def enable_mfa(self, state: CredentialState) -> None:
        if not state.active_factors():
            raise MfaFactorRequiredError("MFA requires at least one active second factor")
        state.mfa_enabled = True

    def disable_mfa(self, state: CredentialState) -> None:
        state.mfa_enabled = False

    def find_active_factor(self, state: CredentialState, factor_id: str) -> SecondFactor | None:
        factor = state.second_factors.get(factor_id.lower())
        if factor is None or not factor.active:
            return None
        return factor
