from __future__ import annotations

import re

from asn1crypto import core
from Crypto.Hash import keccak
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

CURVE_NAME = "secp256k1"
ADDRESS_PREFIX = "0x"
ADDRESS_SIZE = 20
UNCOMPRESSED_POINT_SIZE = 65

_ADDRESS_PATTERN = re.compile(r"0x[0-9a-fA-F]{40}")


def keccak256(data: bytes) -> bytes:
    digest = keccak.new(digest_bits=256)
    digest.update(data)
    return digest.digest()


def is_address(value: object) -> bool:
    return isinstance(value, str) and _ADDRESS_PATTERN.fullmatch(value) is not None


def to_checksum_address(address: str) -> str:
    """
    Apply EIP-55 mixed-case encoding to a ``0x``-prefixed 40-hex address.

    Input casing is ignored; the result is the canonical checksummed form.
    """
    if not is_address(address):
        raise ValueError(f"Not a 0x-prefixed 40 hex character address: {address!r}")
    hex_lower = address[len(ADDRESS_PREFIX):].lower()
    address_hash = keccak256(hex_lower.encode("ascii")).hex()
    checksummed = "".join(
        char.upper() if int(address_hash[index], 16) >= 8 else char
        for index, char in enumerate(hex_lower)
    )
    return ADDRESS_PREFIX + checksummed


def is_checksum_address(value: object) -> bool:
    return is_address(value) and to_checksum_address(value) == value


def unwrap_ec_point(raw: bytes) -> bytes:
    """Strip the DER OCTET STRING around CKA_EC_POINT, if there is one."""
    try:
        return core.OctetString.load(raw, strict=True).native
    except ValueError:
        # Some providers report the bare point.
        return raw


def decode_point(raw: bytes) -> bytes:
    """
    Decode a CKA_EC_POINT value into the 65-byte uncompressed secp256k1 point.

    Accepts the DER-wrapped or bare form of a compressed or uncompressed
    point. Raises ValueError when no candidate is a point on the curve.
    """
    unwrapped = unwrap_ec_point(raw)
    candidates = [unwrapped] if unwrapped == raw else [unwrapped, raw]
    for candidate in candidates:
        try:
            public_key = ec.EllipticCurvePublicKey.from_encoded_point(
                ec.SECP256K1(), candidate
            )
        except ValueError:
            continue
        return public_key.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    raise ValueError(f"EC point is not a valid {CURVE_NAME} point.")


def derive_address(point: bytes) -> str:
    """Checksummed address of an uncompressed point: keccak256(X || Y)[-20:]."""
    if len(point) != UNCOMPRESSED_POINT_SIZE or point[0] != 0x04:
        raise ValueError(
            f"Expected a {UNCOMPRESSED_POINT_SIZE}-byte uncompressed point, got {len(point)} bytes."
        )
    digest = keccak256(point[1:])
    return to_checksum_address(ADDRESS_PREFIX + digest[-ADDRESS_SIZE:].hex())


def address_from_ec_point(raw: bytes) -> str:
    """Checksummed address of a raw CKA_EC_POINT value, DER-wrapped or bare."""
    return derive_address(decode_point(raw))
