"""
Platform side of PIN protocol one.

All state lives in a PinSession that the caller owns and passes to every
transition function, so it is always visible which call changes what. The
authenticator throws its key agreement key away whenever a PIN hash does not
match, and the session mirrors that by dropping the shared secret.
"""

from enum import Enum

from cryptography.hazmat.primitives.asymmetric import ec
from fido2.cose import ES256
from fido2.ctap2.pin import PinProtocolV1
from fido2.utils import sha256

from .requests import ClientPinResult, ClientPinSubCommand, client_pin_template
from .responses import ProtocolViolation
from .status import Status

PIN = b"1234"
BAD_PIN = b"9876"
PIN_MIN_LENGTH = 4
PIN_MAX_LENGTH = 63
PADDED_PIN_LENGTH = 64
PIN_RETRIES = 8
AES_BLOCK_SIZE = 16

# Statuses after which the authenticator has regenerated its key agreement key.
# PIN_BLOCKED also ends the hash check that used up the last retry.
PIN_HASH_FAILURES = (Status.PIN_INVALID, Status.PIN_AUTH_BLOCKED, Status.PIN_BLOCKED)

# ECDH-ES+HKDF-256, the algorithm clientPIN key agreement keys are tagged with
KEY_AGREEMENT_ALGORITHM = -25


class PinState(Enum):
    NO_AGREEMENT = 0
    AGREED = 1
    PIN_ESTABLISHED = 2
    TOKEN_HELD = 3


class PinSession(object):
    """
    PIN protocol state of one test run. The PIN survives power cycles, the
    key agreement, shared secret and auth token only last for one.
    """

    def __init__(self, bad_pin=BAD_PIN):
        self.protocol = PinProtocolV1()
        self.platform_key_agreement = None
        self.shared_secret = None
        self.pin = None
        self.auth_token = None
        self.bad_pin = bad_pin

    @property
    def state(self):
        if self.shared_secret is None:
            return PinState.NO_AGREEMENT
        if self.auth_token is not None:
            return PinState.TOKEN_HELD
        if self.pin is not None:
            return PinState.PIN_ESTABLISHED
        return PinState.AGREED

    def invalidate_agreement(self):
        # A token is only valid together with the agreement it came from.
        self.platform_key_agreement = None
        self.shared_secret = None
        self.auth_token = None

    def power_cycle(self):
        self.invalidate_agreement()

    def forget_pin(self):
        self.invalidate_agreement()
        self.pin = None


def pad_pin(pin, length=PADDED_PIN_LENGTH):
    if len(pin) >= length:
        return pin
    return pin + b"\x00" * (length - len(pin))


def unpad_pin(padded_pin):
    return padded_pin.split(b"\x00", 1)[0]


def key_agreement_cose_key(public_key):
    """The COSE form clientPIN expects for a P-256 public key."""
    cose_key = dict(ES256.from_cryptography_key(public_key))
    cose_key[3] = KEY_AGREEMENT_ALGORITHM
    return cose_key


def generate_cose_key():
    return key_agreement_cose_key(ec.generate_private_key(ec.SECP256R1()).public_key())


def _send(device, sub_command, **fields):
    template = client_pin_template(sub_command, **fields)
    return device.send_cbor(template.command, template.parameters)


def get_pin_retries(device):
    return _send(device, ClientPinSubCommand.GET_PIN_RETRIES)


def compute_shared_secret(device, session):
    """
    Runs key agreement unless the session already holds a shared secret.
    Returns the status of the getKeyAgreement command.
    """
    if session.shared_secret is not None:
        return Status.SUCCESS

    outcome = _send(device, ClientPinSubCommand.GET_KEY_AGREEMENT)
    if outcome.is_error:
        return outcome.status

    peer_cose_key = outcome.get(ClientPinResult.KEY_AGREEMENT)
    if not isinstance(peer_cose_key, dict):
        raise ProtocolViolation("getKeyAgreement returned no COSE key")
    try:
        key_agreement, shared_secret = session.protocol.encapsulate(peer_cose_key)
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolViolation("unusable authenticator key: %s" % e)

    session.platform_key_agreement = dict(key_agreement)
    session.shared_secret = shared_secret
    session.auth_token = None
    return Status.SUCCESS


def attempt_set_pin(device, session, padded_pin):
    if len(padded_pin) % AES_BLOCK_SIZE:
        raise ValueError("Padded PIN length must be a multiple of the block size")

    status = compute_shared_secret(device, session)
    if status != Status.SUCCESS:
        return status

    new_pin_enc = session.protocol.encrypt(session.shared_secret, padded_pin)
    pin_auth = session.protocol.authenticate(session.shared_secret, new_pin_enc)
    outcome = _send(
        device,
        ClientPinSubCommand.SET_PIN,
        key_agreement=session.platform_key_agreement,
        pin_auth=pin_auth,
        new_pin_enc=new_pin_enc,
    )
    if not outcome.is_error:
        session.pin = unpad_pin(padded_pin)
    return outcome.status


def attempt_change_pin(device, session, padded_pin):
    if len(padded_pin) % AES_BLOCK_SIZE:
        raise ValueError("Padded PIN length must be a multiple of the block size")
    if session.pin is None:
        raise ValueError("Changing the PIN needs a PIN to be set")

    status = compute_shared_secret(device, session)
    if status != Status.SUCCESS:
        return status

    shared_secret = session.shared_secret
    pin_hash_enc = session.protocol.encrypt(shared_secret, sha256(session.pin)[:16])
    new_pin_enc = session.protocol.encrypt(shared_secret, padded_pin)
    pin_auth = session.protocol.authenticate(
        shared_secret, new_pin_enc + pin_hash_enc
    )
    outcome = _send(
        device,
        ClientPinSubCommand.CHANGE_PIN,
        key_agreement=session.platform_key_agreement,
        pin_auth=pin_auth,
        new_pin_enc=new_pin_enc,
        pin_hash_enc=pin_hash_enc,
    )
    if not outcome.is_error:
        session.pin = unpad_pin(padded_pin)
        session.auth_token = None
    elif outcome.status in PIN_HASH_FAILURES:
        session.invalidate_agreement()
    return outcome.status


def attempt_get_auth_token(device, session, pin, redo_key_agreement=True):
    """
    Asks for a PIN token with the given PIN. On a PIN hash failure the shared
    secret is gone on both sides; with redo_key_agreement the session agrees
    on a new one before returning, so the next call starts in sync.
    """
    status = compute_shared_secret(device, session)
    if status != Status.SUCCESS:
        return status

    pin_hash_enc = session.protocol.encrypt(session.shared_secret, sha256(pin)[:16])
    outcome = _send(
        device,
        ClientPinSubCommand.GET_PIN_TOKEN,
        key_agreement=session.platform_key_agreement,
        pin_hash_enc=pin_hash_enc,
    )
    if not outcome.is_error:
        token_enc = outcome.get(ClientPinResult.PIN_TOKEN)
        if not isinstance(token_enc, bytes) or len(token_enc) % AES_BLOCK_SIZE:
            raise ProtocolViolation("getPinToken returned no encrypted token")
        session.auth_token = session.protocol.decrypt(session.shared_secret, token_enc)
    elif outcome.status in PIN_HASH_FAILURES:
        session.invalidate_agreement()
        if redo_key_agreement:
            compute_shared_secret(device, session)
    return outcome.status


def pin_auth(session, client_data_hash):
    return session.protocol.authenticate(session.auth_token, client_data_hash)
