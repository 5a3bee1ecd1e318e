from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from itertools import islice
from typing import Any, Callable, Mapping

import pkcs11
import pkcs11.util.ec as ec_util
from pkcs11 import Attribute, KeyType, ObjectClass

from .address_codec import CURVE_NAME, address_from_ec_point, is_address, to_checksum_address
from .config import DEFAULT_FIND_BATCH_SIZE
from .exceptions import (
    HsmConfigurationError,
    HsmNotFoundError,
    HsmProviderError,
    format_exception,
)
from .sessions import SessionManager

SECP256K1_EC_PARAMS = ec_util.encode_named_curve_parameters(CURVE_NAME)

# Labels a pair carries between generation and address labeling.
PENDING_PRIVATE_LABEL = "EC-private-key"
PENDING_PUBLIC_LABEL = "EC-public-key"

CREATION_ID_SIZE = 8

_logger = logging.getLogger("hsm_custody.custody")


@dataclass(frozen=True)
class OrphanKeyPair:
    """
    A generated key pair that never received its address label.

    ``shared_id`` marks a creation id carried by more than one pending pair.
    Such halves cannot be matched to each other and are never reconciled.
    """

    key_id: bytes
    has_private: bool
    has_public: bool
    shared_id: bool = False

    @property
    def complete(self) -> bool:
        return self.has_private and self.has_public


def creation_id_for(seconds: int) -> bytes:
    return seconds.to_bytes(CREATION_ID_SIZE, byteorder="big")


class KeyCustody:
    """
    Address-named secp256k1 key pairs on a token.

    Private keys are generated on the device as sensitive, non-extractable
    token objects. Each pair is labeled with the checksummed address derived
    from its public point, and that label is the only handle callers use.
    """

    def __init__(
        self,
        sessions: SessionManager,
        *,
        find_batch_size: int = DEFAULT_FIND_BATCH_SIZE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if find_batch_size < 1:
            raise ValueError("find_batch_size must be >= 1.")
        self._sessions = sessions
        self._find_batch_size = find_batch_size
        self._clock = clock

    def generate_ec_keypair(self, slot_id: int) -> str:
        with self._sessions.ephemeral_session(slot_id) as session:
            key_id = self._allocate_creation_id(session, slot_id)
            public_key, private_key = self._generate(session, slot_id, key_id)
            raw_point = self._read(
                public_key,
                Attribute.EC_POINT,
                f"Failed to read EC point of generated key pair {key_id.hex()}",
            )
            try:
                address = address_from_ec_point(raw_point)
            except ValueError as exc:
                _logger.exception(
                    "Failed to derive address slot=%s key_id=%s; key pair left unlabeled",
                    slot_id,
                    key_id.hex(),
                )
                raise HsmProviderError(
                    f"Failed to derive address of generated key pair: {format_exception(exc)}"
                ) from exc
            self._label_pair(slot_id, key_id, private_key, public_key, address)
        _logger.info(
            "Generated EC key pair slot=%s address=%s key_id=%s",
            slot_id,
            address,
            key_id.hex(),
        )
        return address

    def delete_ec_keypair(self, slot_id: int, address: str) -> None:
        if not is_address(address):
            raise HsmConfigurationError(f"Invalid address: {address!r}")
        with self._sessions.ephemeral_session(slot_id) as session:
            matches: list[Any] = []
            for candidate in self._candidate_labels(address):
                matches.extend(
                    self._find(
                        session,
                        {Attribute.LABEL: candidate},
                        limit=None,
                        message=f"Failed to delete key pair {address}",
                    )
                )
            if not matches:
                raise HsmNotFoundError(f"Failed to find key pair {address} on slot {slot_id}.")
            for destroyed, obj in enumerate(matches):
                try:
                    obj.destroy()
                except Exception as exc:
                    _logger.exception(
                        "Failed to destroy key object slot=%s address=%s (%d of %d destroyed)",
                        slot_id,
                        address,
                        destroyed,
                        len(matches),
                    )
                    raise HsmProviderError(
                        f"Failed to delete key pair {address}: {format_exception(exc)}"
                    ) from exc
        _logger.info(
            "Deleted key pair slot=%s address=%s objects=%d", slot_id, address, len(matches)
        )

    def get_addresses(self, slot_id: int) -> list[str]:
        with self._sessions.ephemeral_session(slot_id) as session:
            objects = self._find(
                session,
                {Attribute.CLASS: ObjectClass.PRIVATE_KEY},
                limit=self._find_batch_size,
                message="Failed to get list of addresses",
            )
            labels = [
                self._read(obj, Attribute.LABEL, "Failed to get list of addresses")
                for obj in objects
            ]
        if len(objects) >= self._find_batch_size:
            _logger.warning(
                "Private key listing on slot=%s stopped at the batch limit of %d.",
                slot_id,
                self._find_batch_size,
            )
        addresses = [label for label in labels if is_address(label)]
        _logger.debug("Listed %d address(es) on slot=%s", len(addresses), slot_id)
        return addresses

    def contains_address(self, slot_id: int, address: str) -> bool:
        if not is_address(address):
            return False
        with self._sessions.ephemeral_session(slot_id) as session:
            for candidate in self._candidate_labels(address):
                if self._find(
                    session,
                    {Attribute.CLASS: ObjectClass.PUBLIC_KEY, Attribute.LABEL: candidate},
                    limit=1,
                    message="Failed to determine if slot contains address",
                ):
                    return True
        return False

    def find_orphans(self, slot_id: int) -> list[OrphanKeyPair]:
        with self._sessions.ephemeral_session(slot_id) as session:
            pending = self._collect_pending(session)
        orphans: list[OrphanKeyPair] = []
        for key_id, halves in sorted(pending.items()):
            private_count = len(halves.get(ObjectClass.PRIVATE_KEY, ()))
            public_count = len(halves.get(ObjectClass.PUBLIC_KEY, ()))
            shared_id = max(private_count, public_count) > 1
            for index in range(max(private_count, public_count)):
                orphans.append(
                    OrphanKeyPair(
                        key_id=key_id,
                        has_private=index < private_count,
                        has_public=index < public_count,
                        shared_id=shared_id,
                    )
                )
        return orphans

    def reconcile_orphans(self, slot_id: int) -> list[str]:
        """
        Finish labeling key pairs whose generation stopped before the label step.

        Returns the recovered addresses. Pairs missing a half, and creation
        ids shared by several pending pairs, are left alone.
        """
        recovered: list[str] = []
        with self._sessions.ephemeral_session(slot_id) as session:
            for key_id, halves in sorted(self._collect_pending(session).items()):
                private_keys = halves.get(ObjectClass.PRIVATE_KEY, [])
                public_keys = halves.get(ObjectClass.PUBLIC_KEY, [])
                if len(private_keys) > 1 or len(public_keys) > 1:
                    _logger.warning(
                        "Skipping orphans sharing key_id=%s on slot=%s private=%d public=%d",
                        key_id.hex(),
                        slot_id,
                        len(private_keys),
                        len(public_keys),
                    )
                    continue
                if not private_keys or not public_keys:
                    _logger.warning(
                        "Skipping incomplete orphan slot=%s key_id=%s private=%s public=%s",
                        slot_id,
                        key_id.hex(),
                        bool(private_keys),
                        bool(public_keys),
                    )
                    continue
                private_key, public_key = private_keys[0], public_keys[0]
                raw_point = self._read(
                    public_key,
                    Attribute.EC_POINT,
                    f"Failed to read EC point of orphan {key_id.hex()}",
                )
                try:
                    address = address_from_ec_point(raw_point)
                except ValueError:
                    _logger.warning(
                        "Skipping orphan with a non-%s public key slot=%s key_id=%s",
                        CURVE_NAME,
                        slot_id,
                        key_id.hex(),
                    )
                    continue
                self._label_pair(slot_id, key_id, private_key, public_key, address)
                _logger.info(
                    "Recovered orphan key pair slot=%s key_id=%s address=%s",
                    slot_id,
                    key_id.hex(),
                    address,
                )
                recovered.append(address)
        return recovered

    def _generate(
        self, session: pkcs11.Session, slot_id: int, key_id: bytes
    ) -> tuple[pkcs11.PublicKey, pkcs11.PrivateKey]:
        try:
            parameters = session.create_domain_parameters(
                KeyType.EC,
                {Attribute.EC_PARAMS: SECP256K1_EC_PARAMS},
                local=True,
            )
            return parameters.generate_keypair(
                id=key_id,
                store=True,
                public_template={
                    Attribute.LABEL: PENDING_PUBLIC_LABEL,
                    Attribute.TOKEN: True,
                    Attribute.PRIVATE: False,
                    Attribute.VERIFY: True,
                    Attribute.DERIVE: False,
                },
                private_template={
                    Attribute.LABEL: PENDING_PRIVATE_LABEL,
                    Attribute.TOKEN: True,
                    Attribute.PRIVATE: True,
                    Attribute.SENSITIVE: True,
                    Attribute.EXTRACTABLE: False,
                    Attribute.SIGN: True,
                    Attribute.DERIVE: False,
                },
            )
        except Exception as exc:
            _logger.exception(
                "Failed to generate key pair slot=%s key_id=%s", slot_id, key_id.hex()
            )
            raise HsmProviderError(
                f"Failed to generate key pair: {format_exception(exc)}"
            ) from exc

    def _allocate_creation_id(self, session: pkcs11.Session, slot_id: int) -> bytes:
        # Generations within the same second would otherwise share an id.
        seconds = int(self._clock())
        while True:
            candidate = creation_id_for(seconds)
            in_use = self._find(
                session,
                {Attribute.ID: candidate},
                limit=1,
                message="Failed to allocate key pair identifier",
            )
            if not in_use:
                return candidate
            _logger.debug(
                "Creation id %s already used on slot=%s", candidate.hex(), slot_id
            )
            seconds += 1

    def _label_pair(
        self,
        slot_id: int,
        key_id: bytes,
        private_key: pkcs11.PrivateKey,
        public_key: pkcs11.PublicKey,
        address: str,
    ) -> None:
        try:
            private_key[Attribute.LABEL] = address
            public_key[Attribute.LABEL] = address
        except Exception as exc:
            _logger.exception(
                "Failed to label key pair slot=%s key_id=%s address=%s; pair left as orphan",
                slot_id,
                key_id.hex(),
                address,
            )
            raise HsmProviderError(
                f"Failed to label key pair {key_id.hex()} with {address}: {format_exception(exc)}"
            ) from exc

    def _collect_pending(
        self, session: pkcs11.Session
    ) -> dict[bytes, dict[ObjectClass, list[Any]]]:
        pending: dict[bytes, dict[ObjectClass, list[Any]]] = {}
        for object_class, label in (
            (ObjectClass.PRIVATE_KEY, PENDING_PRIVATE_LABEL),
            (ObjectClass.PUBLIC_KEY, PENDING_PUBLIC_LABEL),
        ):
            objects = self._find(
                session,
                {Attribute.CLASS: object_class, Attribute.LABEL: label},
                limit=None,
                message="Failed to search for orphan key pairs",
            )
            for obj in objects:
                key_id = bytes(
                    self._read(obj, Attribute.ID, "Failed to read orphan key identifier")
                )
                pending.setdefault(key_id, {}).setdefault(object_class, []).append(obj)
        return pending

    @staticmethod
    def _candidate_labels(address: str) -> list[str]:
        # Exact label first; pairs generated here carry the checksum form.
        checksummed = to_checksum_address(address)
        if checksummed == address:
            return [address]
        return [address, checksummed]

    @staticmethod
    def _find(
        session: pkcs11.Session,
        template: Mapping[Attribute, Any],
        *,
        limit: int | None,
        message: str,
    ) -> list[Any]:
        try:
            return list(islice(session.get_objects(dict(template)), limit))
        except Exception as exc:
            _logger.exception("%s (template=%s)", message, list(template))
            raise HsmProviderError(f"{message}: {format_exception(exc)}") from exc

    @staticmethod
    def _read(obj: Any, attribute: Attribute, message: str) -> Any:
        try:
            return obj[attribute]
        except Exception as exc:
            _logger.exception("%s (attribute=%s)", message, attribute)
            raise HsmProviderError(f"{message}: {format_exception(exc)}") from exc
