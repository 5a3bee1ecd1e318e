from __future__ import annotations

from typing import Any, Callable

import pkcs11

from .config import HsmConfig
from .exceptions import HsmConfigurationError, UnknownSlotError
from .key_custody import KeyCustody, OrphanKeyPair
from .sessions import SessionManager
from .slots import SLOT_NOT_FOUND, SlotInfo, SlotRegistry


class Pkcs11Custodian:
    """
    Account key custody on PKCS#11 tokens.

    Private keys never leave the device. Key pairs are named by the EIP-55
    checksummed address derived from their public key, and slots are the
    integer ids reported by the module at initialization.

    Use as a context manager, or call initialize() and shutdown() around
    the process lifetime. Callers that interleave login/logout with key
    operations on the same slot from several threads are serialized per slot.
    """

    def __init__(
        self,
        config: HsmConfig,
        *,
        lib_factory: Callable[[str], Any] = pkcs11.lib,
    ) -> None:
        self._config = config
        self._registry = SlotRegistry(config.module_path, lib_factory=lib_factory)
        self._sessions = SessionManager(self._registry)
        self._custody = KeyCustody(
            self._sessions, find_batch_size=config.find_batch_size
        )

    def __enter__(self) -> "Pkcs11Custodian":
        self.initialize()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.shutdown()

    @property
    def initialized(self) -> bool:
        return self._registry.initialized

    def initialize(self) -> None:
        self._registry.initialize()

    def shutdown(self) -> None:
        self._registry.shutdown(self._sessions)

    def slots(self) -> tuple[SlotInfo, ...]:
        return self._registry.slots()

    def get_slot_index(self, label: str) -> int:
        return self._registry.get_slot_index(label)

    def default_slot(self) -> int:
        """Slot selected by HSM_SLOT, else by HSM_TOKEN_LABEL."""
        if self._config.slot_no is not None:
            if not self._registry.has_slot(self._config.slot_no):
                raise UnknownSlotError(f"Invalid slot index: {self._config.slot_no}")
            return self._config.slot_no
        if self._config.token_label:
            slot_id = self.get_slot_index(self._config.token_label)
            if slot_id == SLOT_NOT_FOUND:
                raise UnknownSlotError(
                    f"No slot holds a token labeled '{self._config.token_label}'."
                )
            return slot_id
        raise HsmConfigurationError(
            "Set either HSM_TOKEN_LABEL or HSM_SLOT to select a default slot."
        )

    def login(self, slot_id: int, pin: str) -> None:
        self._sessions.login(slot_id, pin)

    def logout(self, slot_id: int) -> None:
        self._sessions.logout(slot_id)

    def is_logged_in(self, slot_id: int) -> bool:
        return self._sessions.is_logged_in(slot_id)

    def generate_ec_keypair(self, slot_id: int) -> str:
        return self._custody.generate_ec_keypair(slot_id)

    def delete_ec_keypair(self, slot_id: int, address: str) -> None:
        self._custody.delete_ec_keypair(slot_id, address)

    def get_addresses(self, slot_id: int) -> list[str]:
        return self._custody.get_addresses(slot_id)

    def contains_address(self, slot_id: int, address: str) -> bool:
        return self._custody.contains_address(slot_id, address)

    def find_orphans(self, slot_id: int) -> list[OrphanKeyPair]:
        return self._custody.find_orphans(slot_id)

    def reconcile_orphans(self, slot_id: int) -> list[str]:
        return self._custody.reconcile_orphans(slot_id)
