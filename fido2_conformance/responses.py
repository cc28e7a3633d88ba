"""
Fields of successful authenticator responses. Anything the series can't use
raises ProtocolViolation, never KeyError and friends.
"""

import struct

from fido2.webauthn import AuthenticatorData


class ProtocolViolation(Exception):
    """The authenticator answered successfully, but with an unusable response."""


def response_field(outcome, key, types, what):
    value = outcome.get(key)
    if not isinstance(value, types):
        raise ProtocolViolation("%s has no usable entry 0x%02X" % (what, key))
    return value


def authenticator_data(outcome, what):
    data = response_field(outcome, 0x02, bytes, what)
    try:
        return AuthenticatorData(data)
    except (ValueError, TypeError, KeyError, IndexError, struct.error) as e:
        raise ProtocolViolation("%s has malformed authenticator data: %s" % (what, e))
