import os

from . import pin
from .pin import (
    PIN,
    PIN_MAX_LENGTH,
    PIN_MIN_LENGTH,
    PIN_RETRIES,
    AES_BLOCK_SIZE,
    PADDED_PIN_LENGTH,
    PinSession,
    pad_pin,
    pin_auth,
)
from .requests import (
    HOST,
    ClientPinResult,
    Command,
    FidoRequest,
    credential_descriptor,
    generate_rp,
    generate_user,
)
from .responses import ProtocolViolation, authenticator_data, response_field
from .series import TestSeries, entry_point
from .status import Status, status_name
from .wire import encode, splice_bytes

# Reset is only allowed this long after power up.
RESET_WINDOW_SECONDS = 10

# Both are only used as unsupported values, no authenticator knows them.
UNKNOWN_ALGORITHM = -65537
UNSUPPORTED_PIN_PROTOCOL = 0xFF

FLAG_UP = 0x01
FLAG_UV = 0x04
FLAG_ED = 0x80

INVALID_UTF8_MARKER = "☃ invalid utf8 ☃"


def _pad_to_blocks(pin_bytes):
    blocks = -(-len(pin_bytes) // AES_BLOCK_SIZE)
    return pad_pin(pin_bytes, max(PADDED_PIN_LENGTH, blocks * AES_BLOCK_SIZE))


class SpecificationProcedure(TestSeries):
    """
    Walks the authenticator through the CTAP2 procedures: options, PIN
    protocol, reset and persistence. Most tests need a device without a PIN
    and end in that state again, those that can't leave it reset.

    The PIN protocol state is held in self.session and only changed through
    the functions of the pin module, see compute_shared_secret and friends.
    """

    def __init__(self, device, key_checker, counter_checker):
        super().__init__("Specification procedures")
        self.device = device
        self.key_checker = key_checker
        self.counter_checker = counter_checker
        self.session = PinSession()
        self._info = None

    @property
    def info(self):
        if self._info is None:
            outcome = self.device.get_info()
            self.assert_response(outcome, "getInfo")
            self.assert_condition(
                isinstance(outcome.value, dict), "getInfo returns a map"
            )
            self._info = outcome.value
        return self._info

    def _info_options(self):
        options = self.info.get(0x04)
        return options if isinstance(options, dict) else {}

    def _info_list(self, key):
        value = self.info.get(key)
        return value if isinstance(value, list) else []

    def send(self, template):
        return self.device.send_cbor(template.command, template.parameters)

    @entry_point
    def make_credential_exclude_list_test(self):
        credential_id = self.make_test_credential(HOST, False)
        excluded = [credential_descriptor(credential_id)]

        self._announce_presence(False, "excluded credential")
        outcome = self.send(FidoRequest(exclude_list=excluded).toMC())
        self.check_status_and_report(
            Status.CREDENTIAL_EXCLUDED,
            outcome.status,
            "makeCredential with an excluded credential is refused without touch",
        )

        unknown = [credential_descriptor(os.urandom(len(credential_id)))]
        outcome = self.send(FidoRequest(exclude_list=unknown).toMC())
        self.check_response_and_report(
            outcome, "makeCredential with an unknown credential in the exclude list"
        )

        outcome = self.send(FidoRequest(rp=generate_rp(), exclude_list=excluded).toMC())
        self.check_response_and_report(
            outcome, "excluded credential of another relying party is ignored"
        )

    @entry_point
    def make_credential_cose_algorithm_test(self):
        cases = [
            (
                [{"type": "public-key", "alg": UNKNOWN_ALGORITHM}],
                Status.UNSUPPORTED_ALGORITHM,
                "unknown algorithm",
            ),
            (
                [{"type": "unknown", "alg": -7}],
                Status.UNSUPPORTED_ALGORITHM,
                "unknown credential type",
            ),
            (
                [{"type": "public-key", "alg": "ES256"}],
                Status.CBOR_UNEXPECTED_TYPE,
                "algorithm given as text",
            ),
            (
                [
                    {"type": "public-key", "alg": UNKNOWN_ALGORITHM},
                    {"type": "public-key", "alg": -7},
                ],
                Status.SUCCESS,
                "unknown algorithm before ES256",
            ),
        ]
        for key_params, expected, description in cases:
            outcome = self.send(FidoRequest(key_params=key_params).toMC())
            self.check_status_and_report(
                expected, outcome.status, "makeCredential with %s" % description
            )

    @entry_point
    def make_credential_options_test(self):
        rk_expected = Status.SUCCESS
        if not self._info_options().get("rk"):
            rk_expected = Status.UNSUPPORTED_OPTION
        outcome = self.send(FidoRequest(options={"rk": True}).toMC())
        self.check_status_and_report(rk_expected, outcome.status, "makeCredential rk true")

        outcome = self.send(FidoRequest(options={"rk": False}).toMC())
        self.check_response_and_report(outcome, "makeCredential rk false")

        outcome = self.send(FidoRequest(options={"up": False}).toMC())
        self.check_status_and_report(
            Status.INVALID_OPTION, outcome.status, "makeCredential up false"
        )

        if self.get_info_has_uv_option():
            self.report_skipped("makeCredential uv true needs built-in verification")
        else:
            outcome = self.send(FidoRequest(options={"uv": True}).toMC())
            self.check_status_and_report(
                Status.INVALID_OPTION,
                outcome.status,
                "makeCredential uv true without uv support",
            )

        outcome = self.send(FidoRequest(options={"tetris": True}).toMC())
        self.check_response_and_report(outcome, "makeCredential ignores unknown option")

    @entry_point
    def make_credential_pin_auth_test(self, is_2_1):
        self.set_pin()
        self.get_auth_token()

        outcome = self.send(FidoRequest(options={"rk": True}).toMC())
        self.check_status_and_report(
            Status.PUAT_REQUIRED, outcome.status, "resident makeCredential needs pinAuth"
        )

        expected = Status.PUAT_REQUIRED
        if is_2_1 and self._info_options().get("makeCredUvNotRqd"):
            expected = Status.SUCCESS
        outcome = self.send(FidoRequest().toMC())
        self.check_status_and_report(
            expected, outcome.status, "makeCredential without pinAuth"
        )

        self._pin_auth_checks(FidoRequest(), FidoRequest.toMC, is_2_1, "makeCredential")

        req = FidoRequest()
        req = FidoRequest(req, pin_auth=pin_auth(self.session, req.cdh), pin_protocol=1)
        outcome = self.send(req.toMC())
        if self.check_response_and_report(outcome, "makeCredential with pinAuth"):
            self._check_flag(
                outcome, FLAG_UV, True, "makeCredential with pinAuth sets UV"
            )

        self.reset()
        self.check_pin_absence_by_make_credential()

    @entry_point
    def make_credential_multiple_keys_test(self, n):
        """Fills the key store with up to n resident keys, then resets."""
        rp = generate_rp()
        count = 0
        for _ in range(n):
            outcome = self.send(FidoRequest(rp=rp, options={"rk": True}).toMC())
            if outcome.status == Status.KEY_STORE_FULL:
                self.check_and_report(
                    True, "key store full after %d resident keys" % count
                )
                break
            if not self.check_response_and_report(
                outcome, "resident key number %d" % (count + 1)
            ):
                break
            count += 1
        else:
            self.check_and_report(True, "created %d resident keys" % count)

        self.reset()
        return count

    @entry_point
    def make_credential_physical_presence_test(self):
        self._announce_presence(False, "makeCredential")
        outcome = self.send(FidoRequest().toMC())
        self.check_status_and_report(
            Status.USER_ACTION_TIMEOUT,
            outcome.status,
            "makeCredential without touch times out",
        )

        self._announce_presence(True, "makeCredential")
        outcome = self.send(FidoRequest().toMC())
        if self.check_response_and_report(outcome, "makeCredential with touch"):
            self._check_flag(outcome, FLAG_UP, True, "makeCredential sets UP")

    @entry_point
    def make_credential_display_name_encoding_test(self):
        user = generate_user()
        user["displayName"] = "Display name " * 10
        outcome = self.send(FidoRequest(user=user).toMC())
        self.check_response_and_report(outcome, "makeCredential with long display name")

        # 66 bytes, cutting at 64 would split a character
        user = generate_user()
        user["displayName"] = "ü" * 33
        outcome = self.send(FidoRequest(user=user).toMC())
        self.check_response_and_report(
            outcome, "makeCredential with long multibyte display name"
        )

        user = generate_user()
        user["displayName"] = INVALID_UTF8_MARKER
        template = FidoRequest(user=user).toMC()
        marker_length = len(INVALID_UTF8_MARKER.encode("utf-8"))
        payload = splice_bytes(
            encode(template.parameters), INVALID_UTF8_MARKER, b"\xff" * marker_length
        )
        outcome = self.device.send_cbor(Command.MAKE_CREDENTIAL, payload)
        self.check_status_and_report(
            Status.INVALID_CBOR,
            outcome.status,
            "makeCredential with invalid UTF-8 display name",
        )

    @entry_point
    def make_credential_hmac_secret_test(self):
        if not self.get_info_is_hmac_secret_supported():
            self.report_skipped("hmac-secret is not supported")
            return

        outcome = self.send(FidoRequest(extensions={"hmac-secret": True}).toMC())
        if not self.check_response_and_report(outcome, "makeCredential with hmac-secret"):
            return
        if not self._check_flag(
            outcome, FLAG_ED, True, "makeCredential hmac-secret sets ED"
        ):
            return
        extensions = authenticator_data(outcome, "makeCredential").extensions
        self.check_and_report(
            isinstance(extensions, dict) and extensions.get("hmac-secret") is True,
            "makeCredential hmac-secret output is true",
        )

    @entry_point
    def get_assertion_options_test(self):
        credential_id = self.make_test_credential(HOST, False)
        allow_list = [credential_descriptor(credential_id)]

        req = FidoRequest(allow_list=allow_list, options={"up": False})
        outcome = self.send(req.toGA())
        if self._check_assertion(outcome, req, credential_id, "getAssertion up false"):
            self._check_flag(outcome, FLAG_UP, False, "getAssertion up false clears UP")

        req = FidoRequest(allow_list=allow_list, options={"up": True})
        outcome = self.send(req.toGA())
        if self._check_assertion(outcome, req, credential_id, "getAssertion up true"):
            self._check_flag(outcome, FLAG_UP, True, "getAssertion up true sets UP")

        for rk in (True, False):
            req = FidoRequest(allow_list=allow_list, options={"rk": rk})
            self.check_status_and_report(
                Status.UNSUPPORTED_OPTION,
                self.send(req.toGA()).status,
                "getAssertion rk %s" % str(rk).lower(),
            )

        if self.get_info_has_uv_option():
            self.report_skipped("getAssertion uv true needs built-in verification")
        else:
            req = FidoRequest(allow_list=allow_list, options={"uv": True})
            self.check_status_and_report(
                Status.INVALID_OPTION,
                self.send(req.toGA()).status,
                "getAssertion uv true without uv support",
            )

    @entry_point
    def get_assertion_residential_key_test(self):
        resident_rp = generate_rp()
        other_rp = generate_rp()
        resident_id = self.make_test_credential(resident_rp["id"], True)
        other_id = self.make_test_credential(other_rp["id"], False)

        req = FidoRequest(rp=resident_rp, options={"up": False})
        outcome = self.send(req.toGA())
        if self._check_assertion(
            outcome, req, resident_id, "getAssertion finds resident key"
        ):
            credential = outcome.get(0x01)
            self.check_and_report(
                isinstance(credential, dict) and credential.get("id") == resident_id,
                "getAssertion returns the resident credential",
            )

        req = FidoRequest(rp=other_rp, options={"up": False})
        self.check_status_and_report(
            Status.NO_CREDENTIALS,
            self.send(req.toGA()).status,
            "non-resident key needs an allow list",
        )

        req = FidoRequest(
            req, allow_list=[credential_descriptor(other_id)], options={"up": False}
        )
        self._check_assertion(
            self.send(req.toGA()), req, other_id, "getAssertion with allow list"
        )

    @entry_point
    def get_assertion_pin_auth_test(self, is_2_1):
        credential_id = self.make_test_credential(HOST, False)
        allow_list = [credential_descriptor(credential_id)]
        self.set_pin()
        self.get_auth_token()

        req = FidoRequest(allow_list=allow_list)
        outcome = self.send(req.toGA())
        if self._check_assertion(outcome, req, credential_id, "getAssertion without pinAuth"):
            self._check_flag(
                outcome, FLAG_UV, False, "getAssertion without pinAuth clears UV"
            )

        self._pin_auth_checks(
            FidoRequest(allow_list=allow_list), FidoRequest.toGA, is_2_1, "getAssertion"
        )

        req = FidoRequest(allow_list=allow_list)
        req = FidoRequest(req, pin_auth=pin_auth(self.session, req.cdh), pin_protocol=1)
        outcome = self.send(req.toGA())
        if self._check_assertion(outcome, req, credential_id, "getAssertion with pinAuth"):
            self._check_flag(
                outcome, FLAG_UV, True, "getAssertion with pinAuth sets UV"
            )

        self.reset()
        self.check_pin_absence_by_make_credential()

    @entry_point
    def get_assertion_physical_presence_test(self):
        credential_id = self.make_test_credential(HOST, False)
        req = FidoRequest(allow_list=[credential_descriptor(credential_id)])

        self._announce_presence(False, "getAssertion")
        self.check_status_and_report(
            Status.USER_ACTION_TIMEOUT,
            self.send(req.toGA()).status,
            "getAssertion without touch times out",
        )

        self._announce_presence(True, "getAssertion")
        outcome = self.send(req.toGA())
        if self._check_assertion(outcome, req, credential_id, "getAssertion with touch"):
            self._check_flag(outcome, FLAG_UP, True, "getAssertion sets UP")

    @entry_point
    def get_info_test(self):
        versions = self._info_list(0x01)
        self.check_and_report(
            any(str(v).startswith("FIDO_2") for v in versions),
            "getInfo lists a FIDO2 version",
        )
        aaguid = self.info.get(0x03)
        self.check_and_report(
            isinstance(aaguid, bytes) and len(aaguid) == 16, "getInfo AAGUID has 16 bytes"
        )
        self.assert_condition(
            1 in self._info_list(0x06), "getInfo lists PIN protocol 1"
        )

    def get_info_is_2_1_compliant(self):
        versions = self._info_list(0x01)
        return "FIDO_2_1" in versions or "FIDO_2_1_PRE" in versions

    def get_info_has_uv_option(self):
        return "uv" in self._info_options()

    def get_info_is_hmac_secret_supported(self):
        return "hmac-secret" in self._info_list(0x02)

    @entry_point
    def client_pin_requirements_test(self):
        self.reset()
        self.check_pin_absence_by_make_credential()

        self.set_pin(b"1" * (PIN_MIN_LENGTH - 1))
        self.set_pin(b"1" * (PIN_MAX_LENGTH + 1))
        self.set_pin(b"1" * PIN_MIN_LENGTH)
        self.check_pin_by_get_auth_token()

        self.check_status_and_report(
            Status.NOT_ALLOWED,
            self.attempt_set_pin(pad_pin(PIN)),
            "setPin while a PIN is set",
        )

        self.change_pin(b"1" * PIN_MAX_LENGTH)
        self.change_pin(b"1" * (PIN_MIN_LENGTH - 1))
        self.change_pin("üü".encode("utf-8"))
        self.check_pin_by_get_auth_token()
        self.change_pin(PIN)

        self.check_status_and_report(
            Status.PIN_INVALID,
            self.attempt_get_auth_token(self.session.bad_pin),
            "getPinToken with wrong PIN",
        )
        self.check_pin_by_get_auth_token()

    @entry_point
    def client_pin_retries_test(self):
        self.reset()
        self.set_pin()
        self.check_and_report(
            self.get_pin_retries() == PIN_RETRIES, "PIN retries start at %d" % PIN_RETRIES
        )

        for attempt in range(1, PIN_RETRIES + 1):
            if attempt == PIN_RETRIES:
                expected = Status.PIN_BLOCKED
            elif attempt % 3 == 0:
                expected = Status.PIN_AUTH_BLOCKED
            else:
                expected = Status.PIN_INVALID
            status = self.attempt_get_auth_token(self.session.bad_pin)
            self.check_status_and_report(
                expected, status, "wrong PIN attempt %d" % attempt
            )
            self.check_and_report(
                self.get_pin_retries() == PIN_RETRIES - attempt,
                "%d PIN retries left" % (PIN_RETRIES - attempt),
            )
            if status == Status.PIN_AUTH_BLOCKED:
                self.check_status_and_report(
                    Status.PIN_AUTH_BLOCKED,
                    self.attempt_get_auth_token(self.session.pin),
                    "correct PIN refused until power cycle",
                )
                self.prompt_replug_and_init()

        self.check_status_and_report(
            Status.PIN_BLOCKED,
            self.attempt_get_auth_token(self.session.pin),
            "correct PIN refused without retries",
        )

        self.reset()
        self.check_pin_absence_by_make_credential()

    @entry_point
    def reset_deletion_test(self):
        resident_rp = generate_rp()
        resident_id = self.make_test_credential(resident_rp["id"], True)
        credential_id = self.make_test_credential(HOST, False)
        if self.session.pin is None:
            self.set_pin()

        self.reset()

        req = FidoRequest(
            allow_list=[credential_descriptor(credential_id)], options={"up": False}
        )
        self.check_status_and_report(
            Status.NO_CREDENTIALS,
            self.send(req.toGA()).status,
            "credential is gone after reset",
        )
        req = FidoRequest(
            rp=resident_rp,
            allow_list=[credential_descriptor(resident_id)],
            options={"up": False},
        )
        self.check_status_and_report(
            Status.NO_CREDENTIALS,
            self.send(req.toGA()).status,
            "resident key is gone after reset",
        )
        self.check_status_and_report(
            Status.PIN_NOT_SET,
            self.attempt_get_auth_token(PIN),
            "PIN is gone after reset",
        )
        self.check_pin_absence_by_make_credential()

    @entry_point
    def reset_physical_presence_test(self):
        self.prompt_replug_and_init()
        self._announce_presence(False, "reset")
        outcome = self.device.reset()
        if not outcome.is_error:
            self.session.forget_pin()
        self.check_status_and_report(
            Status.USER_ACTION_TIMEOUT, outcome.status, "reset without touch is refused"
        )

        self.prompt_replug_and_init()
        self.device.delay(RESET_WINDOW_SECONDS + 1)
        self._announce_presence(True, "reset")
        outcome = self.device.reset()
        if not outcome.is_error:
            self.session.forget_pin()
        self.check_status_and_report(
            Status.NOT_ALLOWED,
            outcome.status,
            "reset later than %d seconds after power up is refused"
            % RESET_WINDOW_SECONDS,
        )

    @entry_point
    def persistence_test(self):
        credential_id = self.make_test_credential(HOST, True)
        if self.session.pin is None:
            self.set_pin()
        self.check_pin_by_get_auth_token()
        self.check_status_and_report(
            Status.PIN_INVALID,
            self.attempt_get_auth_token(self.session.bad_pin),
            "getPinToken with wrong PIN",
        )
        retries = self.get_pin_retries()

        self.prompt_replug_and_init()

        self.check_and_report(
            self.get_pin_retries() == retries, "PIN retries persist over replug"
        )
        req = FidoRequest(
            allow_list=[credential_descriptor(credential_id)], options={"up": False}
        )
        self._check_assertion(
            self.send(req.toGA()), req, credential_id, "credential persists over replug"
        )
        self.check_pin_by_get_auth_token()

        self.reset()

    def prompt_replug_and_init(self):
        self.report_manual_step("replug the authenticator")
        self.device.prompt_replug()
        self.session.power_cycle()

    def reset(self):
        """Power cycles, then resets. Only the returned status is checked."""
        self.prompt_replug_and_init()
        self._announce_presence(True, "reset")
        outcome = self.device.reset()
        if not outcome.is_error:
            self.session.forget_pin()
        return self.check_response_and_report(outcome, "reset")

    def make_test_credential(self, rp_id, use_residential_key):
        """Makes a credential, with pinAuth if a PIN is set. Returns its id."""
        req = FidoRequest(
            rp={"id": rp_id, "name": "ExampleRP"},
            options={"rk": use_residential_key},
        )
        if self.session.pin is not None:
            self.get_auth_token()
            req = FidoRequest(
                req, pin_auth=pin_auth(self.session, req.cdh), pin_protocol=1
            )
        outcome = self.send(req.toMC())
        test_name = "make test credential for %s" % rp_id
        self.assert_response(outcome, test_name)
        with self.violations_are_fatal(test_name):
            auth_data = authenticator_data(outcome, test_name)
        credential_data = auth_data.credential_data
        self.assert_condition(
            credential_data is not None, "test credential has attested data"
        )
        self.key_checker.register_credential(
            credential_data.credential_id, credential_data.public_key
        )
        self.counter_checker.register_counter(
            credential_data.credential_id, auth_data.counter
        )
        return credential_data.credential_id

    def get_pin_retries(self):
        outcome = pin.get_pin_retries(self.device)
        self.assert_response(outcome, "getPinRetries")
        retries = outcome.get(ClientPinResult.PIN_RETRIES)
        self.assert_condition(isinstance(retries, int), "getPinRetries returns a number")
        return retries

    def compute_shared_secret(self):
        with self.violations_are_fatal("key agreement"):
            status = pin.compute_shared_secret(self.device, self.session)
            self.assert_condition(
                status == Status.SUCCESS, "key agreement, got %s" % status_name(status)
            )

    def set_pin(self, pin_bytes=PIN):
        """
        Sets a PIN and reports the status. PINs outside the allowed length
        have to be refused.
        """
        status = self.attempt_set_pin(_pad_to_blocks(pin_bytes))
        return self._check_pin_policy(status, pin_bytes, "setPin")

    def attempt_set_pin(self, padded_pin):
        self.assert_condition(
            len(padded_pin) % AES_BLOCK_SIZE == 0,
            "padded PIN length is a multiple of %d" % AES_BLOCK_SIZE,
        )
        self.compute_shared_secret()
        with self.violations_are_fatal("setPin"):
            return pin.attempt_set_pin(self.device, self.session, padded_pin)

    def change_pin(self, new_pin):
        self.assert_condition(self.session.pin is not None, "a PIN is set to change")
        status = self.attempt_change_pin(_pad_to_blocks(new_pin))
        return self._check_pin_policy(status, new_pin, "changePin")

    def attempt_change_pin(self, padded_pin):
        self.assert_condition(
            len(padded_pin) % AES_BLOCK_SIZE == 0,
            "padded PIN length is a multiple of %d" % AES_BLOCK_SIZE,
        )
        self.assert_condition(self.session.pin is not None, "a PIN is set to change")
        self.compute_shared_secret()
        with self.violations_are_fatal("changePin"):
            return pin.attempt_change_pin(self.device, self.session, padded_pin)

    def get_auth_token(self):
        if self.session.pin is None:
            self.set_pin()
            self.assert_condition(self.session.pin is not None, "default PIN is set")
        status = self.attempt_get_auth_token(self.session.pin)
        self.assert_condition(
            status == Status.SUCCESS, "getPinToken, got %s" % status_name(status)
        )

    def attempt_get_auth_token(self, pin_bytes, redo_key_agreement=True):
        self.compute_shared_secret()
        with self.violations_are_fatal("getPinToken"):
            return pin.attempt_get_auth_token(
                self.device, self.session, pin_bytes, redo_key_agreement
            )

    def check_pin_by_get_auth_token(self):
        status = self.attempt_get_auth_token(self.session.pin or PIN)
        return self.check_status_and_report(
            Status.SUCCESS, status, "PIN is set, getPinToken works"
        )

    def check_pin_absence_by_make_credential(self):
        outcome = self.send(FidoRequest(options={"rk": True}).toMC())
        return self.check_response_and_report(
            outcome, "no PIN is set, resident makeCredential works without pinAuth"
        )

    def _check_pin_policy(self, status, pin_bytes, command_name):
        if PIN_MIN_LENGTH <= len(pin_bytes) <= PIN_MAX_LENGTH:
            expected = Status.SUCCESS
        else:
            expected = Status.PIN_POLICY_VIOLATION
        self.check_status_and_report(
            expected, status, "%s with %d byte PIN" % (command_name, len(pin_bytes))
        )
        return status

    def _pin_auth_checks(self, req, to_template, is_2_1, command_name):
        """Malformed pinAuth values on top of req, which has no pinAuth itself."""
        unsupported_protocol = (
            Status.INVALID_PARAMETER if is_2_1 else Status.PIN_AUTH_INVALID
        )
        cases = [
            (b"", 1, Status.PIN_INVALID, "empty pinAuth"),
            (b"\x55" * 16, 1, Status.PIN_AUTH_INVALID, "wrong pinAuth"),
            (b"\x55" * 16, None, Status.MISSING_PARAMETER, "pinAuth without protocol"),
            (
                b"\x55" * 16,
                UNSUPPORTED_PIN_PROTOCOL,
                unsupported_protocol,
                "unsupported PIN protocol",
            ),
        ]
        for auth, protocol, expected, description in cases:
            template = to_template(FidoRequest(req, pin_auth=auth, pin_protocol=protocol))
            outcome = self.send(template)
            self.check_status_and_report(
                expected, outcome.status, "%s with %s" % (command_name, description)
            )

    def _check_assertion(self, outcome, req, credential_id, test_name):
        if not self.check_response_and_report(outcome, test_name):
            return False
        with self.violations_are_fatal(test_name):
            auth_data = authenticator_data(outcome, test_name)
            signature = response_field(outcome, 0x03, bytes, test_name)
        self.assert_condition(
            self.key_checker.check_signature(
                credential_id, auth_data, req.cdh, signature
            ),
            "%s: signature verifies" % test_name,
        )
        self.assert_condition(
            self.counter_checker.register_counter(credential_id, auth_data.counter),
            "%s: signature counter increases" % test_name,
        )
        return True

    def _check_flag(self, outcome, flag, is_set, test_name):
        try:
            flags = authenticator_data(outcome, test_name).flags
        except ProtocolViolation as e:
            return self.check_and_report(False, "%s: %s" % (test_name, e))
        return self.check_and_report(bool(flags & flag) == is_set, test_name)

    def _announce_presence(self, touch, what):
        if not touch:
            self.report_manual_step("do not touch the authenticator for %s" % what)
        self.device.announce_user_presence(touch)
