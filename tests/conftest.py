from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterator, Mapping

import pkcs11
import pytest
from asn1crypto import core
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from pkcs11 import Attribute, KeyType, ObjectClass

from hsm_custody import HsmConfig, Pkcs11Custodian

USER_PIN = "123456"


def encode_ec_point(private_value: int) -> bytes:
    """DER-wrapped uncompressed secp256k1 point for a private scalar."""
    point = (
        ec.derive_private_key(private_value, ec.SECP256K1())
        .public_key()
        .public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    )
    return core.OctetString(point).dump()


class FakeObject:
    def __init__(self, token: "FakeToken", attributes: Mapping[Attribute, Any]) -> None:
        self._token = token
        self.attributes = dict(attributes)

    def __getitem__(self, attribute: Attribute) -> Any:
        self._token.check("get_attribute")
        try:
            return self.attributes[attribute]
        except KeyError:
            raise pkcs11.exceptions.AttributeTypeInvalid() from None

    def __setitem__(self, attribute: Attribute, value: Any) -> None:
        self._token.check("set_attribute")
        self.attributes[attribute] = value

    def destroy(self) -> None:
        self._token.check("destroy")
        self._token.objects.remove(self)

    def matches(self, template: Mapping[Attribute, Any]) -> bool:
        return all(
            attribute in self.attributes and self.attributes[attribute] == value
            for attribute, value in template.items()
        )


class FakeDomainParameters:
    def __init__(self, session: "FakeSession", attributes: Mapping[Attribute, Any]) -> None:
        self._session = session
        self.attributes = dict(attributes)

    def generate_keypair(
        self,
        id: bytes | None = None,
        label: str | None = None,
        store: bool = False,
        public_template: Mapping[Attribute, Any] | None = None,
        private_template: Mapping[Attribute, Any] | None = None,
        **kwargs: Any,
    ) -> tuple[FakeObject, FakeObject]:
        token = self._session.token
        token.check("generate")
        if not token.logged_in:
            raise pkcs11.exceptions.UserNotLoggedIn()
        private_value = token.next_private_value()
        shared = {
            Attribute.KEY_TYPE: KeyType.EC,
            Attribute.ID: id,
            Attribute.EC_PARAMS: self.attributes[Attribute.EC_PARAMS],
        }
        public_key = FakeObject(
            token,
            {
                **shared,
                Attribute.CLASS: ObjectClass.PUBLIC_KEY,
                Attribute.EC_POINT: encode_ec_point(private_value),
                **(public_template or {}),
            },
        )
        private_key = FakeObject(
            token,
            {
                **shared,
                Attribute.CLASS: ObjectClass.PRIVATE_KEY,
                **(private_template or {}),
            },
        )
        token.objects.extend([public_key, private_key])
        token.generated.append((private_value, public_key, private_key))
        return public_key, private_key


class FakeSession:
    def __init__(self, token: "FakeToken", *, rw: bool, authenticated: bool) -> None:
        self.token = token
        self.rw = rw
        self.authenticated = authenticated
        self.closed = False

    def close(self) -> None:
        self.token.check("close")
        if self.authenticated:
            self.token.logged_in = False
        self.closed = True
        self.token.open_sessions.remove(self)

    def get_objects(self, attrs: Mapping[Attribute, Any] | None = None) -> Iterator[FakeObject]:
        self.token.check("find")
        template = attrs or {}
        return iter(
            [obj for obj in self.token.visible_objects() if obj.matches(template)]
        )

    def create_object(self, attrs: Mapping[Attribute, Any]) -> FakeObject:
        self.token.check("create_object")
        if attrs.get(Attribute.PRIVATE) and not self.token.logged_in:
            raise pkcs11.exceptions.UserNotLoggedIn()
        obj = FakeObject(self.token, attrs)
        self.token.objects.append(obj)
        return obj

    def create_domain_parameters(
        self, key_type: KeyType, attrs: Mapping[Attribute, Any], local: bool = False
    ) -> FakeDomainParameters:
        self.token.check("domain_parameters")
        assert key_type == KeyType.EC
        return FakeDomainParameters(self, attrs)


class FakeToken:
    """Token state shared by every session opened against it."""

    def __init__(self, label: str, pin: str = USER_PIN) -> None:
        self.label = label
        self.pin = pin
        self.objects: list[FakeObject] = []
        self.open_sessions: list[FakeSession] = []
        self.generated: list[tuple[int, FakeObject, FakeObject]] = []
        self.logged_in = False
        self.login_attempts = 0
        self.private_values: list[int] = []
        self._failures: dict[str, list[Exception]] = {}
        self._next_value = 1000

    def fail(self, operation: str, exc: Exception | None = None, times: int = 1) -> None:
        error = exc or pkcs11.exceptions.DeviceError()
        self._failures.setdefault(operation, []).extend([error] * times)

    def check(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def next_private_value(self) -> int:
        if self.private_values:
            return self.private_values.pop(0)
        self._next_value += 1
        return self._next_value

    def visible_objects(self) -> list[FakeObject]:
        return [
            obj
            for obj in self.objects
            if self.logged_in or not obj.attributes.get(Attribute.PRIVATE, False)
        ]

    def open(self, rw: bool = False, user_pin: str | None = None) -> FakeSession:
        self.check("open")
        if user_pin is not None:
            self.login_attempts += 1
            if self.logged_in:
                raise pkcs11.exceptions.UserAlreadyLoggedIn()
            if user_pin != self.pin:
                raise pkcs11.exceptions.PinIncorrect()
            self.logged_in = True
        session = FakeSession(self, rw=rw, authenticated=user_pin is not None)
        self.open_sessions.append(session)
        return session


class FakeSlot:
    def __init__(self, slot_id: int, token: FakeToken | None) -> None:
        self.slot_id = slot_id
        self._token = token

    def get_token(self) -> FakeToken:
        if self._token is None:
            raise pkcs11.exceptions.TokenNotPresent()
        return self._token


class FakeLib:
    def __init__(self, slots: list[FakeSlot]) -> None:
        self.slots = slots
        self.finalized = False
        self.fail_get_slots: Exception | None = None
        self.fail_finalize: Exception | None = None

    def get_slots(self, token_present: bool = False) -> list[FakeSlot]:
        if self.fail_get_slots is not None:
            raise self.fail_get_slots
        if token_present:
            return [slot for slot in self.slots if slot._token is not None]
        return list(self.slots)

    def finalize(self) -> None:
        if self.fail_finalize is not None:
            raise self.fail_finalize
        self.finalized = True


@pytest.fixture
def token_a() -> FakeToken:
    # Token labels come back space-padded from the module.
    return FakeToken("A" + " " * 31)


@pytest.fixture
def token_b() -> FakeToken:
    return FakeToken("B", pin="654321")


@pytest.fixture
def fake_lib(token_a: FakeToken, token_b: FakeToken) -> FakeLib:
    return FakeLib([FakeSlot(3, token_a), FakeSlot(7, token_b), FakeSlot(9, None)])


@pytest.fixture
def lib_factory(fake_lib: FakeLib) -> Callable[[str], FakeLib]:
    def factory(path: str) -> FakeLib:
        factory.paths.append(path)
        return fake_lib

    factory.paths = []
    return factory


@pytest.fixture
def module_path(tmp_path: Path) -> str:
    module = tmp_path / "libfake-pkcs11.so"
    module.write_bytes(b"")
    return str(module)


@pytest.fixture
def config(module_path: str) -> HsmConfig:
    return HsmConfig(module_path=module_path, token_label="A")


@pytest.fixture
def custodian(config: HsmConfig, lib_factory: Callable[[str], FakeLib]) -> Iterator[Pkcs11Custodian]:
    custodian = Pkcs11Custodian(config, lib_factory=lib_factory)
    custodian.initialize()
    yield custodian
    if custodian.initialized:
        custodian.shutdown()
