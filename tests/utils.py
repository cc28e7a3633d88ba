import hmac
import os
import struct

from cbor2 import CBORDecodeError
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from fido2.cose import ES256
from fido2.ctap import CtapError
from fido2.hid import CTAPHID
from fido2.utils import bytes2int, hmac_sha256, sha256
from fido2.webauthn import AttestedCredentialData, AuthenticatorData

from fido2_conformance import wire
from fido2_conformance.device import TestDevice
from fido2_conformance.input_parameters import MAX_CBOR_NESTING_DEPTH
from fido2_conformance.pin import (
    PIN_MAX_LENGTH,
    PIN_MIN_LENGTH,
    PIN_RETRIES,
    key_agreement_cose_key,
)
from fido2_conformance.procedures import RESET_WINDOW_SECONDS
from fido2_conformance.requests import Command
from fido2_conformance.status import Status

AAGUID = bytes.fromhex("f8a011f38c0a4d15800617111f9edc7d")

FLAG_UP = 0x01
FLAG_UV = 0x04
FLAG_AT = 0x40
FLAG_ED = 0x80


class cb_type(object):
    """Parameter of one of the given Python types, bool never counts as int."""

    def __init__(self, *types):
        self.types = types

    def verify(self, data):
        if isinstance(data, bool) and bool not in self.types:
            return Status.CBOR_UNEXPECTED_TYPE
        if self.types and not isinstance(data, self.types):
            return Status.CBOR_UNEXPECTED_TYPE
        return Status.SUCCESS


class cb_list(object):
    def __init__(self, element=None):
        self.element = element

    def verify(self, data):
        if not isinstance(data, list):
            return Status.CBOR_UNEXPECTED_TYPE
        if self.element is None:
            return Status.SUCCESS
        for d in data:
            ret = self.element.verify(d)
            if ret != Status.SUCCESS:
                return ret
        return Status.SUCCESS


class cb_map(object):
    def __init__(self, elements=()):
        # (key, type, required)
        self.elements = elements

    def verify(self, data):
        if not isinstance(data, dict):
            return Status.CBOR_UNEXPECTED_TYPE
        for key, element, required in self.elements:
            if key in data:
                ret = element.verify(data[key])
                if ret != Status.SUCCESS:
                    return ret
            elif required:
                return Status.MISSING_PARAMETER
        return Status.SUCCESS


cb_int = cb_type(int)
cb_bool = cb_type(bool)
cb_str = cb_type(str)
cb_bytes = cb_type(bytes)

RelyingPartyEntity = cb_map(
    [("id", cb_str, True), ("name", cb_str, False), ("icon", cb_str, False)]
)

UserEntity = cb_map(
    [
        ("id", cb_bytes, True),
        ("name", cb_str, False),
        ("displayName", cb_str, False),
        ("icon", cb_str, False),
    ]
)

CredentialParameters = cb_map([("type", cb_str, True), ("alg", cb_int, True)])

# unknown transports of any type are ignored
CredentialDescriptor = cb_map(
    [("type", cb_str, True), ("id", cb_bytes, True), ("transports", cb_list(), False)]
)

Options = cb_map([("rk", cb_bool, False), ("up", cb_bool, False), ("uv", cb_bool, False)])

MakeCredentialParameters = cb_map(
    [
        (1, cb_bytes, True),
        (2, RelyingPartyEntity, True),
        (3, UserEntity, True),
        (4, cb_list(CredentialParameters), True),
        (5, cb_list(CredentialDescriptor), False),
        (6, cb_map([("hmac-secret", cb_bool, False)]), False),
        (7, Options, False),
        (8, cb_bytes, False),
        (9, cb_int, False),
    ]
)

GetAssertionParameters = cb_map(
    [
        (1, cb_str, True),
        (2, cb_bytes, True),
        (3, cb_list(CredentialDescriptor), False),
        (4, cb_map(), False),
        (5, Options, False),
        (6, cb_bytes, False),
        (7, cb_int, False),
    ]
)

ClientPinParameters = cb_map(
    [
        (1, cb_int, True),
        (2, cb_int, True),
        (3, cb_map(), False),
        (4, cb_bytes, False),
        (5, cb_bytes, False),
        (6, cb_bytes, False),
        (9, cb_int, False),
        (10, cb_str, False),
    ]
)

PlatformKey = cb_map(
    [
        (1, cb_int, True),
        (3, cb_int, True),
        (-1, cb_int, True),
        (-2, cb_bytes, True),
        (-3, cb_bytes, True),
    ]
)


def aes_cbc(key, data, encrypt):
    cipher = Cipher(algorithms.AES(key), modes.CBC(b"\x00" * 16))
    ctx = cipher.encryptor() if encrypt else cipher.decryptor()
    return ctx.update(data) + ctx.finalize()


class Credential(object):
    def __init__(self, rp_id, user, resident):
        self.id = os.urandom(32)
        self.rp_id = rp_id
        self.user = user
        self.resident = resident
        self.private_key = ec.generate_private_key(ec.SECP256R1())


class FakeAuthenticator(object):
    """
    Software authenticator for the CTAP2 subset the series use: getInfo,
    makeCredential, getAssertion, reset and PIN protocol one. Plays the part
    of the HID device behind TestDevice.

    Touches are granted unless touch_next is cleared before a command.
    uptime only moves through delays of the test device. With strict=False
    wrongly typed parameters are accepted, like on a sloppy authenticator.
    """

    def __init__(
        self,
        max_resident=10,
        strict=True,
        versions=("FIDO_2_0", "FIDO_2_1_PRE"),
        extensions=("hmac-secret",),
    ):
        self.max_resident = max_resident
        self.strict = strict
        self.versions = list(versions)
        self.extensions = list(extensions)
        self.credentials = []
        self.pin_hash = None
        self.pin_retries = PIN_RETRIES
        self.counter = 0
        self.calls = []
        self.touch_next = True
        self.power_cycle()

    @property
    def is_2_1(self):
        return any(v.startswith("FIDO_2_1") for v in self.versions)

    def power_cycle(self):
        self.key_agreement_key = ec.generate_private_key(ec.SECP256R1())
        self.pin_token = os.urandom(32)
        self.consecutive_mismatches = 0
        self.uptime = 0

    def call(self, cmd, data=b"", event=None, on_keepalive=None):
        if cmd != CTAPHID.CBOR:
            raise CtapError(CtapError.ERR.INVALID_COMMAND)
        touched, self.touch_next = self.touch_next, True
        command, payload = data[0], data[1:]
        self.calls.append(command)

        status, response = self._dispatch(command, payload, touched)
        if status != Status.SUCCESS:
            return struct.pack(">B", status)
        if response is None:
            return b"\x00"
        return b"\x00" + wire.encode(response)

    def _dispatch(self, command, payload, touched):
        handlers = {
            Command.GET_INFO: self.get_info,
            Command.MAKE_CREDENTIAL: self.make_credential,
            Command.GET_ASSERTION: self.get_assertion,
            Command.CLIENT_PIN: self.client_pin,
            Command.RESET: self.reset,
        }
        handler = handlers.get(command)
        if handler is None:
            return Status.INVALID_COMMAND, None

        params = None
        if payload:
            try:
                params = wire.decode(payload)
            except (CBORDecodeError, UnicodeDecodeError):
                return Status.INVALID_CBOR, None
            if wire.nesting_depth(params) > MAX_CBOR_NESTING_DEPTH:
                return Status.INVALID_CBOR, None
        return handler(params, touched)

    def _verify(self, schema, params):
        ret = schema.verify(params)
        if ret == Status.CBOR_UNEXPECTED_TYPE and not self.strict:
            return Status.SUCCESS, {}
        return ret, None

    def get_info(self, params, touched):
        return (
            Status.SUCCESS,
            {
                1: self.versions,
                2: self.extensions,
                3: AAGUID,
                4: {
                    "rk": True,
                    "up": True,
                    "plat": False,
                    "clientPin": self.pin_hash is not None,
                },
                5: 1200,
                6: [1],
            },
        )

    def _check_pin_auth(self, params, auth_key, protocol_key, client_data_hash):
        """Returns the status and whether the request carries a valid pinAuth."""
        if auth_key not in params:
            return Status.SUCCESS, False
        if protocol_key not in params:
            return Status.MISSING_PARAMETER, False
        if len(params[auth_key]) == 0:
            if self.pin_hash is None:
                return Status.PIN_NOT_SET, False
            return Status.PIN_INVALID, False
        if params[protocol_key] != 1:
            if self.is_2_1:
                return Status.INVALID_PARAMETER, False
            return Status.PIN_AUTH_INVALID, False
        if self.pin_hash is None:
            return Status.PIN_NOT_SET, False
        expected = hmac_sha256(self.pin_token, client_data_hash)[:16]
        if not hmac.compare_digest(expected, params[auth_key]):
            return Status.PIN_AUTH_INVALID, False
        return Status.SUCCESS, True

    def _find(self, credential_id, rp_id):
        for credential in self.credentials:
            if credential.id == credential_id and credential.rp_id == rp_id:
                return credential
        return None

    def make_credential(self, params, touched):
        ret, response = self._verify(MakeCredentialParameters, params)
        if ret != Status.SUCCESS or response is not None:
            return ret, response

        rp_id = params[2]["id"]
        if not any(
            p["type"] == "public-key" and p["alg"] == ES256.ALGORITHM for p in params[4]
        ):
            return Status.UNSUPPORTED_ALGORITHM, None

        options = params.get(7, {})
        if options.get("up") is False or options.get("uv") is True:
            return Status.INVALID_OPTION, None
        resident = options.get("rk") is True

        ret, verified = self._check_pin_auth(params, 8, 9, params[1])
        if ret != Status.SUCCESS:
            return ret, None
        if self.pin_hash is not None and not verified:
            return Status.PUAT_REQUIRED, None

        for descriptor in params.get(5, []):
            if descriptor["type"] == "public-key" and self._find(
                descriptor["id"], rp_id
            ):
                return Status.CREDENTIAL_EXCLUDED, None

        user_id = params[3]["id"]
        replaced = [
            c
            for c in self.credentials
            if c.resident and c.rp_id == rp_id and c.user["id"] == user_id
        ]
        residents = len([c for c in self.credentials if c.resident])
        if resident and not replaced and residents >= self.max_resident:
            return Status.KEY_STORE_FULL, None

        if not touched:
            return Status.USER_ACTION_TIMEOUT, None

        if resident:
            for c in replaced:
                self.credentials.remove(c)
        credential = Credential(rp_id, params[3], resident)
        self.credentials.append(credential)

        extensions = None
        flags = FLAG_UP | FLAG_AT
        if verified:
            flags |= FLAG_UV
        if "hmac-secret" in self.extensions and params.get(6, {}).get("hmac-secret"):
            extensions = {"hmac-secret": True}
            flags |= FLAG_ED

        self.counter += 1
        credential_data = AttestedCredentialData.create(
            AAGUID,
            credential.id,
            ES256.from_cryptography_key(credential.private_key.public_key()),
        )
        auth_data = AuthenticatorData.create(
            sha256(rp_id.encode()), flags, self.counter, credential_data, extensions
        )
        return Status.SUCCESS, {1: "none", 2: bytes(auth_data), 3: {}}

    def get_assertion(self, params, touched):
        ret, response = self._verify(GetAssertionParameters, params)
        if ret != Status.SUCCESS or response is not None:
            return ret, response

        rp_id = params[1]
        options = params.get(5, {})
        if "rk" in options:
            return Status.UNSUPPORTED_OPTION, None
        if options.get("uv") is True:
            return Status.INVALID_OPTION, None
        up = options.get("up", True)

        ret, verified = self._check_pin_auth(params, 6, 7, params[2])
        if ret != Status.SUCCESS:
            return ret, None

        if 3 in params:
            credentials = []
            for descriptor in params[3]:
                credential = self._find(descriptor["id"], rp_id)
                if descriptor["type"] == "public-key" and credential:
                    credentials.append(credential)
        else:
            credentials = [
                c for c in reversed(self.credentials) if c.resident and c.rp_id == rp_id
            ]
        if not credentials:
            return Status.NO_CREDENTIALS, None

        if up and not touched:
            return Status.USER_ACTION_TIMEOUT, None

        credential = credentials[0]
        flags = 0
        if up:
            flags |= FLAG_UP
        if verified:
            flags |= FLAG_UV
        self.counter += 1
        auth_data = bytes(
            AuthenticatorData.create(sha256(rp_id.encode()), flags, self.counter)
        )
        signature = credential.private_key.sign(
            auth_data + params[2], ec.ECDSA(hashes.SHA256())
        )
        response = {
            1: {"type": "public-key", "id": credential.id},
            2: auth_data,
            3: signature,
        }
        if credential.resident:
            response[4] = {"id": credential.user["id"]}
        if 3 not in params and len(credentials) > 1:
            response[5] = len(credentials)
        return Status.SUCCESS, response

    def _shared_secret(self, platform_key):
        ret = PlatformKey.verify(platform_key)
        if ret != Status.SUCCESS:
            return ret, None
        if (platform_key[1], platform_key[3], platform_key[-1]) != (2, -25, 1):
            return Status.INVALID_PARAMETER, None
        try:
            peer = ec.EllipticCurvePublicNumbers(
                bytes2int(platform_key[-2]),
                bytes2int(platform_key[-3]),
                ec.SECP256R1(),
            ).public_key()
        except ValueError:
            return Status.INVALID_PARAMETER, None
        return Status.SUCCESS, sha256(self.key_agreement_key.exchange(ec.ECDH(), peer))

    def _decrypt_new_pin(self, shared_secret, new_pin_enc):
        if len(new_pin_enc) < 64 or len(new_pin_enc) % 16:
            return Status.PIN_POLICY_VIOLATION, None
        padded = aes_cbc(shared_secret, new_pin_enc, False)
        pin = padded.split(b"\x00", 1)[0]
        if not PIN_MIN_LENGTH <= len(pin) <= PIN_MAX_LENGTH:
            return Status.PIN_POLICY_VIOLATION, None
        return Status.SUCCESS, pin

    def _check_pin_hash(self, shared_secret, pin_hash_enc):
        self.pin_retries -= 1
        matches = False
        if len(pin_hash_enc) == 16:
            matches = aes_cbc(shared_secret, pin_hash_enc, False) == self.pin_hash
        if not matches:
            self.key_agreement_key = ec.generate_private_key(ec.SECP256R1())
            self.consecutive_mismatches += 1
            if self.pin_retries == 0:
                return Status.PIN_BLOCKED
            if self.consecutive_mismatches >= 3:
                return Status.PIN_AUTH_BLOCKED
            return Status.PIN_INVALID
        self.pin_retries = PIN_RETRIES
        self.consecutive_mismatches = 0
        return Status.SUCCESS

    def _pin_usable(self):
        if self.pin_hash is None:
            return Status.PIN_NOT_SET
        if self.pin_retries == 0:
            return Status.PIN_BLOCKED
        if self.consecutive_mismatches >= 3:
            return Status.PIN_AUTH_BLOCKED
        return Status.SUCCESS

    def client_pin(self, params, touched):
        ret, response = self._verify(ClientPinParameters, params)
        if ret != Status.SUCCESS or response is not None:
            return ret, response
        if params[1] != 1:
            return Status.INVALID_PARAMETER, None

        sub_command = params[2]
        if sub_command == 0x01:
            return Status.SUCCESS, {3: self.pin_retries}
        if sub_command == 0x02:
            public_key = self.key_agreement_key.public_key()
            return Status.SUCCESS, {1: key_agreement_cose_key(public_key)}

        required = {0x03: (3, 4, 5), 0x04: (3, 4, 5, 6), 0x05: (3, 6)}.get(sub_command)
        if required is None:
            return Status.INVALID_SUBCOMMAND, None
        if any(k not in params for k in required):
            return Status.MISSING_PARAMETER, None
        ret, shared_secret = self._shared_secret(params[3])
        if ret != Status.SUCCESS:
            return ret, None

        if sub_command == 0x03:
            if self.pin_hash is not None:
                return Status.NOT_ALLOWED, None
            expected = hmac_sha256(shared_secret, params[5])[:16]
            if not hmac.compare_digest(expected, params[4]):
                return Status.PIN_AUTH_INVALID, None
            ret, pin = self._decrypt_new_pin(shared_secret, params[5])
            if ret != Status.SUCCESS:
                return ret, None
            self.pin_hash = sha256(pin)[:16]
            self.pin_retries = PIN_RETRIES
            return Status.SUCCESS, None

        ret = self._pin_usable()
        if ret != Status.SUCCESS:
            return ret, None

        if sub_command == 0x04:
            expected = hmac_sha256(shared_secret, params[5] + params[6])[:16]
            if not hmac.compare_digest(expected, params[4]):
                return Status.PIN_AUTH_INVALID, None
            ret = self._check_pin_hash(shared_secret, params[6])
            if ret != Status.SUCCESS:
                return ret, None
            ret, pin = self._decrypt_new_pin(shared_secret, params[5])
            if ret != Status.SUCCESS:
                return ret, None
            self.pin_hash = sha256(pin)[:16]
            self.pin_token = os.urandom(32)
            return Status.SUCCESS, None

        ret = self._check_pin_hash(shared_secret, params[6])
        if ret != Status.SUCCESS:
            return ret, None
        return Status.SUCCESS, {2: aes_cbc(shared_secret, self.pin_token, True)}

    def reset(self, params, touched):
        if self.uptime > RESET_WINDOW_SECONDS:
            return Status.NOT_ALLOWED, None
        if not touched:
            return Status.USER_ACTION_TIMEOUT, None
        self.credentials = []
        self.pin_hash = None
        self.pin_retries = PIN_RETRIES
        self.key_agreement_key = ec.generate_private_key(ec.SECP256R1())
        self.pin_token = os.urandom(32)
        self.consecutive_mismatches = 0
        return Status.SUCCESS, None


class FakeTestDevice(TestDevice):
    """TestDevice in front of a FakeAuthenticator, replugs and waits are instant."""

    def __init__(self, authenticator=None):
        super().__init__()
        self.authenticator = authenticator or FakeAuthenticator()
        self.dev = self.authenticator
        self.replugs = 0

    def find_device(self, nfcInterfaceOnly=False):
        self.dev = self.authenticator

    def announce_user_presence(self, touch):
        self.authenticator.touch_next = touch

    def prompt_replug(self):
        self.replugs += 1
        self.authenticator.power_cycle()

    def delay(self, secs):
        self.authenticator.uptime += secs
