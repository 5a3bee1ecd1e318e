"""PKCS#11-backed key custody for checksummed blockchain accounts."""

from .address_codec import (
    decode_point,
    derive_address,
    is_address,
    is_checksum_address,
    to_checksum_address,
    unwrap_ec_point,
)
from .config import HsmConfig
from .custodian import Pkcs11Custodian
from .exceptions import (
    ErrorKind,
    HsmConfigurationError,
    HsmCustodyError,
    HsmInvalidStateError,
    HsmNotFoundError,
    HsmProviderError,
    InvalidCredentialError,
    UnknownSlotError,
)
from .key_custody import KeyCustody, OrphanKeyPair
from .logging_utils import configure_logging
from .sessions import SessionManager
from .slots import SLOT_NOT_FOUND, SlotInfo, SlotRegistry

__all__ = [
    "SLOT_NOT_FOUND",
    "ErrorKind",
    "HsmConfig",
    "HsmConfigurationError",
    "HsmCustodyError",
    "HsmInvalidStateError",
    "HsmNotFoundError",
    "HsmProviderError",
    "InvalidCredentialError",
    "KeyCustody",
    "OrphanKeyPair",
    "Pkcs11Custodian",
    "SessionManager",
    "SlotInfo",
    "SlotRegistry",
    "UnknownSlotError",
    "configure_logging",
    "decode_point",
    "derive_address",
    "is_address",
    "is_checksum_address",
    "to_checksum_address",
    "unwrap_ec_point",
]
