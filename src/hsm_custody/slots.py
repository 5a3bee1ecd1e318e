from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

import pkcs11

from .exceptions import (
    HsmConfigurationError,
    HsmCustodyError,
    HsmProviderError,
    UnknownSlotError,
    format_exception,
)

if TYPE_CHECKING:
    from .sessions import SessionManager

SLOT_NOT_FOUND = -1

_logger = logging.getLogger("hsm_custody.slots")


@dataclass(frozen=True)
class SlotInfo:
    """A slot holding a token, as discovered at initialization."""

    slot_id: int
    label: str


class SlotRegistry:
    """
    Owns the loaded PKCS#11 module and the slot id <-> token label maps.

    The maps are filled once by initialize() and stay fixed until shutdown().
    """

    def __init__(
        self,
        module_path: str,
        *,
        lib_factory: Callable[[str], Any] = pkcs11.lib,
    ) -> None:
        self._module_path = module_path
        self._lib_factory = lib_factory
        self._lib: Any | None = None
        self._tokens: dict[int, pkcs11.Token] = {}
        self._slots: dict[int, SlotInfo] = {}
        self._labels: dict[str, int] = {}
        self._lifecycle_lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._lib is not None

    def initialize(self) -> None:
        with self._lifecycle_lock:
            if self._lib is not None:
                _logger.debug("PKCS#11 module already initialized.")
                return

            _logger.info("Loading PKCS#11 module path=%s", self._module_path)
            try:
                lib = self._lib_factory(self._module_path)
                discovered = [
                    (int(slot.slot_id), slot.get_token())
                    for slot in lib.get_slots(token_present=True)
                ]
            except Exception as exc:
                _logger.exception("Failed to initialize PKCS#11 module.")
                raise HsmProviderError(
                    f"Failed to initialize crypto module: {format_exception(exc)}"
                ) from exc

            tokens: dict[int, pkcs11.Token] = {}
            slots: dict[int, SlotInfo] = {}
            labels: dict[str, int] = {}
            for slot_id, token in discovered:
                label = str(token.label).strip()
                if label in labels:
                    self._finalize_quietly(lib)
                    raise HsmConfigurationError(
                        f"Token label '{label}' is used by slots {labels[label]} and {slot_id}; "
                        "labels must be unique per device."
                    )
                _logger.debug("Discovered slot=%s label=%s", slot_id, label)
                tokens[slot_id] = token
                slots[slot_id] = SlotInfo(slot_id=slot_id, label=label)
                labels[label] = slot_id

            self._lib = lib
            self._tokens = tokens
            self._slots = slots
            self._labels = labels
            _logger.info("PKCS#11 module initialized with %d slot(s).", len(slots))

    def shutdown(self, sessions: SessionManager | None = None) -> None:
        """
        Log out every retained session, then finalize the module.

        Logout failures do not stop finalization; the last one is raised once
        the module is released. A finalization failure takes precedence.
        """
        with self._lifecycle_lock:
            logout_error: HsmCustodyError | None = None
            if sessions is not None:
                try:
                    sessions.logout_all()
                except HsmCustodyError as exc:
                    logout_error = exc

            lib, self._lib = self._lib, None
            self._tokens = {}
            self._slots = {}
            self._labels = {}

            if lib is not None:
                try:
                    lib.finalize()
                except Exception as exc:
                    _logger.exception("Failed to finalize PKCS#11 module.")
                    raise HsmProviderError(
                        f"Failed to shutdown crypto module: {format_exception(exc)}"
                    ) from exc
                _logger.info("PKCS#11 module finalized.")

            if logout_error is not None:
                raise logout_error

    def slots(self) -> tuple[SlotInfo, ...]:
        return tuple(self._slots[slot_id] for slot_id in sorted(self._slots))

    def get_slot_index(self, label: str) -> int:
        return self._labels.get(label, SLOT_NOT_FOUND)

    def has_slot(self, slot_id: int) -> bool:
        return slot_id in self._tokens

    def token(self, slot_id: int) -> pkcs11.Token:
        try:
            return self._tokens[slot_id]
        except KeyError:
            raise UnknownSlotError(f"Invalid slot index: {slot_id}") from None

    @staticmethod
    def _finalize_quietly(lib: Any) -> None:
        try:
            lib.finalize()
        except Exception:
            _logger.exception("Failed to finalize PKCS#11 module after a discovery error.")
