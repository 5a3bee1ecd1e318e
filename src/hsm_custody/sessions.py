from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

import pkcs11
from pkcs11 import Attribute, ObjectClass

from .exceptions import (
    HsmCustodyError,
    HsmInvalidStateError,
    HsmProviderError,
    InvalidCredentialError,
    format_exception,
)
from .slots import SlotRegistry

_logger = logging.getLogger("hsm_custody.sessions")

# A private session object can only be created by an authenticated user.
_LOGIN_PROBE_TEMPLATE = {
    Attribute.CLASS: ObjectClass.DATA,
    Attribute.TOKEN: False,
    Attribute.PRIVATE: True,
    Attribute.LABEL: "hsm-custody-login-probe",
}


class SessionManager:
    """
    Session lifecycle per slot.

    Keeps at most one logged-in session per slot for privileged queries and
    hands out short-lived sessions for individual operations. Every public
    method holds the slot's lock for its whole device round trip.
    """

    def __init__(self, registry: SlotRegistry) -> None:
        self._registry = registry
        self._retained: dict[int, pkcs11.Session] = {}
        self._locks: dict[int, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def slot_lock(self, slot_id: int) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(slot_id)
            if lock is None:
                lock = self._locks[slot_id] = threading.RLock()
            return lock

    def has_retained_session(self, slot_id: int) -> bool:
        return slot_id in self._retained

    def login(self, slot_id: int, pin: str) -> None:
        if not pin:
            raise InvalidCredentialError("Invalid pin.")
        token = self._registry.token(slot_id)
        with self.slot_lock(slot_id):
            # Refused before device I/O; the token would report USER_ALREADY_LOGGED_IN.
            if slot_id in self._retained:
                raise HsmInvalidStateError(f"Slot {slot_id} already has a logged-in session.")
            try:
                session = token.open(rw=True, user_pin=pin)
            except Exception as exc:
                _logger.exception("Failed to login to slot=%s", slot_id)
                raise HsmProviderError(
                    f"Failed to login to slot {slot_id}: {format_exception(exc)}"
                ) from exc
            self._retained[slot_id] = session
        _logger.info("Logged in to slot=%s", slot_id)

    def logout(self, slot_id: int) -> None:
        with self.slot_lock(slot_id):
            session = self._retained.pop(slot_id, None)
            if session is None:
                raise HsmInvalidStateError(
                    f"Invalid slot index or session not open: {slot_id}"
                )
            try:
                # python-pkcs11 logs the user out before closing.
                session.close()
            except Exception as exc:
                _logger.exception("Failed to logout of slot=%s", slot_id)
                raise HsmProviderError(
                    f"Failed to logout of slot {slot_id}: {format_exception(exc)}"
                ) from exc
        _logger.info("Logged out of slot=%s", slot_id)

    def logout_all(self) -> None:
        last_error: HsmCustodyError | None = None
        for slot_id in sorted(self._retained):
            try:
                self.logout(slot_id)
            except HsmCustodyError as exc:
                last_error = exc
        if last_error is not None:
            raise last_error

    def is_logged_in(self, slot_id: int) -> bool:
        with self.ephemeral_session(slot_id) as session:
            try:
                probe = session.create_object(dict(_LOGIN_PROBE_TEMPLATE))
            except pkcs11.exceptions.UserNotLoggedIn:
                return False
            except Exception as exc:
                _logger.exception("Failed to determine user status of slot=%s", slot_id)
                raise HsmProviderError(
                    f"Failed to determine user status of slot {slot_id}: {format_exception(exc)}"
                ) from exc
            try:
                probe.destroy()
            except Exception as exc:
                _logger.exception("Failed to remove login probe object on slot=%s", slot_id)
                raise HsmProviderError(
                    f"Failed to determine user status of slot {slot_id}: {format_exception(exc)}"
                ) from exc
            return True

    @contextmanager
    def ephemeral_session(self, slot_id: int) -> Iterator[pkcs11.Session]:
        """
        Open a read/write session for one operation and always close it.

        An error raised by the operation propagates after the session is
        closed; a close failure on that path is logged instead of replacing it.
        """
        token = self._registry.token(slot_id)
        with self.slot_lock(slot_id):
            try:
                session = token.open(rw=True)
            except Exception as exc:
                _logger.exception("Failed to open session on slot=%s", slot_id)
                raise HsmProviderError(
                    f"Failed to open session on slot {slot_id}: {format_exception(exc)}"
                ) from exc
            _logger.debug("Opened session on slot=%s", slot_id)

            try:
                yield session
            except BaseException:
                try:
                    session.close()
                except Exception:
                    _logger.exception(
                        "Failed to close session on slot=%s after an operation error.", slot_id
                    )
                raise

            try:
                session.close()
            except Exception as exc:
                _logger.exception("Failed to close session on slot=%s", slot_id)
                raise HsmProviderError(
                    f"Failed to close session on slot {slot_id}: {format_exception(exc)}"
                ) from exc
            _logger.debug("Closed session on slot=%s", slot_id)
