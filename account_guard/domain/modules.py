"""Per-account module registry and the ordered hook chain.

Modules come in four kinds (validator, executor, fallback, hook). The
implementations live in a process-wide :class:`ModuleCatalog`; what is stored
per account is only which of them are installed, their configuration, and
each module's own namespaced state slice.

Hooks are not installed directly on the account. The account installs the
hook chain (kind ``hook``, ref ``hook-chain``) and hooks are then added to that
chain by the account or by the chain's manager. Pre-checks run over the
chain in order and return an explicit :class:`HookContext`; the post-check
runs over that token, never over the chain as it looks afterwards.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Protocol, cast, runtime_checkable

from .errors import (
    DuplicateError,
    LastValidatorError,
    ModuleAlreadyInstalledError,
    ModuleNotInstalledError,
    NotFoundError,
    StateError,
)
from .session import AccountSession, ModuleStateView
from ..schemas.modules import HookChainState, ModuleInstallation, ModuleKind, RegistryState

logger = logging.getLogger(__name__)

HOOK_CHAIN_REF = "hook-chain"
CREDENTIAL_VALIDATOR_REF = "credentials"
MODULE_ID_LENGTH = 32


def module_id(module_ref: str) -> bytes:
    """Routing prefix identifying a validator module inside a raw signature."""
    return hashlib.sha256(module_ref.encode("utf-8")).digest()


@dataclass(frozen=True, slots=True)
class Operation:
    """A state-changing call the account is asked to perform."""

    target: str
    value: int = 0
    data: bytes = b""


@runtime_checkable
class Module(Protocol):
    def on_install(self, view: ModuleStateView, config: dict[str, Any]) -> None: ...

    def on_uninstall(self, view: ModuleStateView) -> None: ...


@runtime_checkable
class ValidatorModule(Module, Protocol):
    def validate_signature(self, view: ModuleStateView, intent_hash: bytes, signature: bytes) -> bool: ...


@runtime_checkable
class ExecutorModule(Module, Protocol):
    def check_execution(self, view: ModuleStateView, caller: str, operation: Operation) -> None: ...


@runtime_checkable
class HookModule(Module, Protocol):
    def pre_check(self, view: ModuleStateView, caller: str, value: int, data: bytes) -> bytes: ...

    def post_check(self, view: ModuleStateView, context: bytes) -> None: ...


_KIND_PROTOCOLS: dict[ModuleKind, type] = {
    ModuleKind.validator: ValidatorModule,
    ModuleKind.executor: ExecutorModule,
    ModuleKind.fallback: Module,
    ModuleKind.hook: HookModule,
}


@dataclass(frozen=True, slots=True)
class HookContext:
    """Token pairing every pre-checked hook with the context it returned."""

    account_id: str
    entries: tuple[tuple[str, bytes], ...] = ()

    def encode(self) -> bytes:
        parts = [len(self.entries).to_bytes(2, "big")]
        for hook_ref, context in self.entries:
            ref = hook_ref.encode("utf-8")
            parts.append(len(ref).to_bytes(2, "big") + ref)
            parts.append(len(context).to_bytes(4, "big") + context)
        return b"".join(parts)

    @classmethod
    def decode(cls, account_id: str, blob: bytes) -> "HookContext":
        try:
            count = int.from_bytes(blob[0:2], "big")
            offset = 2
            entries: list[tuple[str, bytes]] = []
            for _ in range(count):
                ref_len = int.from_bytes(blob[offset : offset + 2], "big")
                offset += 2
                ref = blob[offset : offset + ref_len].decode("utf-8")
                offset += ref_len
                ctx_len = int.from_bytes(blob[offset : offset + 4], "big")
                offset += 4
                context = blob[offset : offset + ctx_len]
                if len(context) != ctx_len:
                    raise ValueError("truncated context")
                offset += ctx_len
                entries.append((ref, context))
        except (UnicodeDecodeError, ValueError) as exc:
            raise StateError("malformed hook context") from exc
        if len(blob) < 2 or offset != len(blob):
            raise StateError("malformed hook context")
        return cls(account_id=account_id, entries=tuple(entries))


class ModuleCatalog:
    """Module implementations available to every account, keyed by ref."""

    def __init__(self) -> None:
        self._modules: dict[str, tuple[frozenset[ModuleKind], Module]] = {}

    def register(self, module_ref: str, module: Module, *kinds: ModuleKind) -> None:
        if module_ref in self._modules or module_ref in (HOOK_CHAIN_REF, CREDENTIAL_VALIDATOR_REF):
            raise DuplicateError(f"module {module_ref!r} already registered")
        for kind in kinds:
            if not isinstance(module, _KIND_PROTOCOLS[kind]):
                raise TypeError(f"{type(module).__name__} does not implement the {kind.name} interface")
        self._modules[module_ref] = (frozenset(kinds), module)

    def get(self, module_ref: str, kind: ModuleKind) -> Module:
        entry = self._modules.get(module_ref)
        if entry is None or kind not in entry[0]:
            raise NotFoundError(f"no {kind.name} module named {module_ref!r}")
        return entry[1]

    def refs(self) -> list[str]:
        return sorted(self._modules)


class ModuleRegistry:
    """Install/uninstall lifecycle and hook chaining over ``RegistryState``.

    Authorization is decided by the caller; by the time a method here runs the
    request has already been authorized for the account.
    """

    def __init__(self, catalog: ModuleCatalog) -> None:
        self.catalog = catalog

    def new_state(self, now: int) -> RegistryState:
        state = RegistryState()
        key = RegistryState.key(ModuleKind.validator, CREDENTIAL_VALIDATOR_REF)
        state.installed[key] = ModuleInstallation(
            kind=ModuleKind.validator,
            module_ref=CREDENTIAL_VALIDATOR_REF,
            installed_at=now,
        )
        return state

    def install(
        self,
        session: AccountSession,
        state: RegistryState,
        kind: ModuleKind,
        module_ref: str,
        config: dict[str, Any],
        now: int,
    ) -> ModuleInstallation:
        if state.get(kind, module_ref) is not None:
            raise ModuleAlreadyInstalledError(f"{kind.name} {module_ref!r} already installed")

        if kind == ModuleKind.hook:
            if module_ref != HOOK_CHAIN_REF:
                raise NotFoundError("hooks are added to the hook chain, not installed directly")
            state.hook_chain = HookChainState(manager=config.get("manager"))
        elif module_ref == CREDENTIAL_VALIDATOR_REF:
            if kind != ModuleKind.validator:
                raise NotFoundError(f"no {kind.name} module named {module_ref!r}")
        else:
            module = self.catalog.get(module_ref, kind)
            module.on_install(ModuleStateView(session, module_ref), config)

        installation = ModuleInstallation(
            kind=kind, module_ref=module_ref, config=config, installed_at=now
        )
        state.installed[RegistryState.key(kind, module_ref)] = installation
        logger.info("installed %s module %s on %s", kind.name, module_ref, session.account_id)
        return installation

    def uninstall(
        self,
        session: AccountSession,
        state: RegistryState,
        kind: ModuleKind,
        module_ref: str,
    ) -> None:
        if state.get(kind, module_ref) is None:
            raise ModuleNotInstalledError(f"{kind.name} {module_ref!r} not installed")
        if kind == ModuleKind.validator and len(state.refs(ModuleKind.validator)) == 1:
            raise LastValidatorError("cannot uninstall the only validator")

        if kind == ModuleKind.hook:
            chain = state.hook_chain or HookChainState()
            for hook_ref in list(chain.hooks):
                self.catalog.get(hook_ref, ModuleKind.hook).on_uninstall(ModuleStateView(session, hook_ref))
            chain.hooks.clear()
            state.hook_chain = None
        elif module_ref != CREDENTIAL_VALIDATOR_REF:
            self.catalog.get(module_ref, kind).on_uninstall(ModuleStateView(session, module_ref))

        del state.installed[RegistryState.key(kind, module_ref)]
        logger.info("uninstalled %s module %s from %s", kind.name, module_ref, session.account_id)

    @staticmethod
    def is_installed(state: RegistryState, kind: ModuleKind, module_ref: str) -> bool:
        return state.get(kind, module_ref) is not None

    # Hook chain

    def require_chain(self, state: RegistryState) -> HookChainState:
        if state.hook_chain is None:
            raise ModuleNotInstalledError("hook chain not installed")
        return state.hook_chain

    def is_manager(self, state: RegistryState, principal: str | None) -> bool:
        chain = state.hook_chain
        return chain is not None and principal is not None and chain.manager == principal

    def add_hook(
        self,
        session: AccountSession,
        state: RegistryState,
        hook_ref: str,
        config: dict[str, Any],
    ) -> None:
        chain = self.require_chain(state)
        if hook_ref in chain.hooks:
            raise DuplicateError(f"hook {hook_ref!r} already in chain")
        hook = self.catalog.get(hook_ref, ModuleKind.hook)
        hook.on_install(ModuleStateView(session, hook_ref), config)
        chain.hooks.append(hook_ref)

    def remove_hook(self, session: AccountSession, state: RegistryState, hook_ref: str) -> None:
        chain = self.require_chain(state)
        try:
            index = chain.hooks.index(hook_ref)
        except ValueError:
            raise NotFoundError(f"hook {hook_ref!r} not in chain") from None
        self.catalog.get(hook_ref, ModuleKind.hook).on_uninstall(ModuleStateView(session, hook_ref))
        last = chain.hooks.pop()
        if last != hook_ref:
            chain.hooks[index] = last

    def pre_check(
        self,
        session: AccountSession,
        state: RegistryState,
        caller: str,
        value: int,
        data: bytes,
    ) -> HookContext:
        """Run every hook's pre-check in chain order; any hook may veto by raising."""
        entries: list[tuple[str, bytes]] = []
        hooks = list(state.hook_chain.hooks) if state.hook_chain else []
        for hook_ref in hooks:
            hook = cast(HookModule, self.catalog.get(hook_ref, ModuleKind.hook))
            context = hook.pre_check(ModuleStateView(session, hook_ref), caller, value, data)
            entries.append((hook_ref, bytes(context)))
        return HookContext(account_id=session.account_id, entries=tuple(entries))

    def post_check(self, session: AccountSession, context: HookContext) -> None:
        if context.account_id != session.account_id:
            raise StateError("hook context belongs to another account")
        for hook_ref, hook_context in context.entries:
            hook = cast(HookModule, self.catalog.get(hook_ref, ModuleKind.hook))
            hook.post_check(ModuleStateView(session, hook_ref), hook_context)

    # Validator routing

    def route_signature(self, state: RegistryState, raw: bytes) -> tuple[str, bytes]:
        """Pick the validator for ``raw`` from its optional 32-byte module prefix.

        Signatures without a recognised prefix go to the built-in credential
        validator unchanged.
        """
        if len(raw) > MODULE_ID_LENGTH:
            prefix = raw[:MODULE_ID_LENGTH]
            for module_ref in state.refs(ModuleKind.validator):
                if module_ref != CREDENTIAL_VALIDATOR_REF and module_id(module_ref) == prefix:
                    return module_ref, raw[MODULE_ID_LENGTH:]
        return CREDENTIAL_VALIDATOR_REF, raw

    def validator(self, module_ref: str) -> ValidatorModule:
        return cast(ValidatorModule, self.catalog.get(module_ref, ModuleKind.validator))

    def executor(self, module_ref: str) -> ExecutorModule:
        return cast(ExecutorModule, self.catalog.get(module_ref, ModuleKind.executor))
