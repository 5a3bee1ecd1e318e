from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    PROVIDER_FAULT = "provider_fault"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"


class HsmCustodyError(RuntimeError):
    """Base custody error."""

    kind: ErrorKind = ErrorKind.PROVIDER_FAULT


class HsmConfigurationError(HsmCustodyError):
    """Configuration or caller input is invalid or incomplete."""

    kind = ErrorKind.CONFIGURATION


class InvalidCredentialError(HsmConfigurationError):
    """A credential was rejected before reaching the token."""


class UnknownSlotError(HsmConfigurationError):
    """The slot id was not discovered at initialization."""


class HsmProviderError(HsmCustodyError):
    """The PKCS#11 provider or the device failed."""

    kind = ErrorKind.PROVIDER_FAULT


class HsmNotFoundError(HsmCustodyError):
    """No key objects match the requested address."""

    kind = ErrorKind.NOT_FOUND


class HsmInvalidStateError(HsmCustodyError):
    """The slot's session state does not allow the operation."""

    kind = ErrorKind.INVALID_STATE


def format_exception(exc: BaseException) -> str:
    details = str(exc).strip()
    if not details and getattr(exc, "args", None):
        details = ", ".join(str(a) for a in exc.args if a)
    if details:
        return f"{type(exc).__name__}: {details}"
    return type(exc).__name__
