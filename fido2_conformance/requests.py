import copy
import os
from enum import IntEnum

from fido2.cose import ES256
from fido2.ctap2 import Ctap2
from fido2.utils import sha256

Command = Ctap2.CMD

HOST = "examplo.org"
ORIGIN = "https://examplo.org"


class MakeCredentialKey(IntEnum):
    CLIENT_DATA_HASH = 0x01
    RP = 0x02
    USER = 0x03
    KEY_PARAMS = 0x04
    EXCLUDE_LIST = 0x05
    EXTENSIONS = 0x06
    OPTIONS = 0x07
    PIN_AUTH = 0x08
    PIN_PROTOCOL = 0x09


class GetAssertionKey(IntEnum):
    RP_ID = 0x01
    CLIENT_DATA_HASH = 0x02
    ALLOW_LIST = 0x03
    EXTENSIONS = 0x04
    OPTIONS = 0x05
    PIN_AUTH = 0x06
    PIN_PROTOCOL = 0x07


class ClientPinKey(IntEnum):
    PIN_PROTOCOL = 0x01
    SUB_COMMAND = 0x02
    KEY_AGREEMENT = 0x03
    PIN_AUTH = 0x04
    NEW_PIN_ENC = 0x05
    PIN_HASH_ENC = 0x06
    PERMISSIONS = 0x09
    PERMISSIONS_RP_ID = 0x0A


class ClientPinSubCommand(IntEnum):
    GET_PIN_RETRIES = 0x01
    GET_KEY_AGREEMENT = 0x02
    SET_PIN = 0x03
    CHANGE_PIN = 0x04
    GET_PIN_TOKEN = 0x05
    GET_PIN_UV_AUTH_TOKEN_USING_UV = 0x06
    GET_UV_RETRIES = 0x07
    GET_PIN_UV_AUTH_TOKEN_USING_PIN = 0x09


class ClientPinResult(IntEnum):
    KEY_AGREEMENT = 0x01
    PIN_TOKEN = 0x02
    PIN_RETRIES = 0x03
    POWER_CYCLE_STATE = 0x04
    UV_RETRIES = 0x05


class CommandTemplate(object):
    """
    Canonical parameter map of one command. The keys present define the
    command's parameters; the entries listed in optional (and, per outer key,
    in inner_optional) may be left out. Templates are never changed in place,
    all helpers return copies.
    """

    def __init__(self, command, parameters, name, optional=(), inner_optional=None):
        self.command = command
        self.parameters = parameters
        self.name = name
        self.optional = frozenset(optional)
        self.inner_optional = {
            k: frozenset(v) for k, v in (inner_optional or {}).items()
        }

    def required_keys(self):
        return [k for k in self.parameters if k not in self.optional]

    def is_optional(self, key, inner_key=None):
        if inner_key is None:
            return key in self.optional
        return inner_key in self.inner_optional.get(key, ())

    def with_entry(self, key, value):
        parameters = copy.deepcopy(self.parameters)
        parameters[key] = value
        return parameters

    def without(self, key):
        parameters = copy.deepcopy(self.parameters)
        del parameters[key]
        return parameters

    def copy(self):
        return copy.deepcopy(self.parameters)

    def __repr__(self):
        return "CommandTemplate(%s)" % self.name


def generate_rp():
    return {"id": "example_%s.org" % os.urandom(4).hex(), "name": "ExampleRP"}


def generate_user():
    user_id = os.urandom(16)
    name = "user_%s" % user_id[:4].hex()
    return {"id": user_id, "name": name, "displayName": name.title()}


def credential_descriptor(credential_id, transports=None):
    descriptor = {"type": "public-key", "id": credential_id}
    if transports is not None:
        descriptor["transports"] = transports
    return descriptor


class Empty(object):
    pass


class FidoRequest(object):
    """
    Builds makeCredential and getAssertion parameters. Pass another request
    as the first argument to inherit everything not given as a keyword.
    """

    FIELDS = (
        "challenge",
        "rp",
        "user",
        "key_params",
        "exclude_list",
        "allow_list",
        "extensions",
        "options",
        "pin_auth",
        "pin_protocol",
    )

    def __init__(self, request=None, **kwargs):
        for name in kwargs:
            if name not in self.FIELDS:
                raise TypeError("Unknown request field %s" % name)

        for name in self.FIELDS:
            if name in kwargs:
                value = kwargs[name]
            elif request is not None:
                value = getattr(request, name)
            else:
                value = Empty
            setattr(self, name, value)

        if self.challenge is Empty:
            self.challenge = os.urandom(32)
        if self.rp is Empty:
            self.rp = {"id": HOST, "name": "ExampleRP"}
        if self.user is Empty:
            self.user = generate_user()
        if self.key_params is Empty:
            self.key_params = [{"type": "public-key", "alg": ES256.ALGORITHM}]
        for name in self.FIELDS:
            if getattr(self, name) is Empty:
                setattr(self, name, None)

        self.cdh = sha256(self.challenge)

    @property
    def rp_id(self):
        return self.rp["id"]

    def _collect(self, pairs):
        return {int(k): v for k, v in pairs if v is not None}

    def toMC(self):
        """Template for authenticatorMakeCredential."""
        K = MakeCredentialKey
        parameters = self._collect(
            [
                (K.CLIENT_DATA_HASH, self.cdh),
                (K.RP, self.rp),
                (K.USER, self.user),
                (K.KEY_PARAMS, self.key_params),
                (K.EXCLUDE_LIST, self.exclude_list),
                (K.EXTENSIONS, self.extensions),
                (K.OPTIONS, self.options),
                (K.PIN_AUTH, self.pin_auth),
                (K.PIN_PROTOCOL, self.pin_protocol),
            ]
        )
        return CommandTemplate(
            Command.MAKE_CREDENTIAL,
            parameters,
            "makeCredential",
            optional=[
                K.EXCLUDE_LIST,
                K.EXTENSIONS,
                K.OPTIONS,
                K.PIN_AUTH,
                K.PIN_PROTOCOL,
            ],
            inner_optional={
                K.RP: ["name", "icon"],
                K.USER: ["name", "displayName", "icon"],
                K.EXCLUDE_LIST: ["transports"],
                K.EXTENSIONS: list(self.extensions or ()),
                K.OPTIONS: list(self.options or ()),
            },
        )

    def toGA(self):
        """Template for authenticatorGetAssertion."""
        K = GetAssertionKey
        parameters = self._collect(
            [
                (K.RP_ID, self.rp_id),
                (K.CLIENT_DATA_HASH, self.cdh),
                (K.ALLOW_LIST, self.allow_list),
                (K.EXTENSIONS, self.extensions),
                (K.OPTIONS, self.options),
                (K.PIN_AUTH, self.pin_auth),
                (K.PIN_PROTOCOL, self.pin_protocol),
            ]
        )
        return CommandTemplate(
            Command.GET_ASSERTION,
            parameters,
            "getAssertion",
            optional=[
                K.ALLOW_LIST,
                K.EXTENSIONS,
                K.OPTIONS,
                K.PIN_AUTH,
                K.PIN_PROTOCOL,
            ],
            inner_optional={
                K.ALLOW_LIST: ["transports"],
                K.EXTENSIONS: list(self.extensions or ()),
                K.OPTIONS: list(self.options or ()),
            },
        )


def client_pin_template(sub_command, pin_protocol=1, optional=(), **fields):
    """
    Template for one authenticatorClientPIN subcommand. Keyword arguments are
    ClientPinKey names in lower case, e.g. key_agreement=..., pin_auth=...
    """
    parameters = {
        ClientPinKey.PIN_PROTOCOL: pin_protocol,
        ClientPinKey.SUB_COMMAND: int(sub_command),
    }
    for name, value in fields.items():
        if value is not None:
            parameters[ClientPinKey[name.upper()]] = value
    return CommandTemplate(
        Command.CLIENT_PIN,
        {int(k): v for k, v in parameters.items()},
        "clientPIN %s" % ClientPinSubCommand(sub_command).name.lower(),
        optional=[int(ClientPinKey[name.upper()]) for name in optional],
    )
