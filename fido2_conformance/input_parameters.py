import os

from .pin import generate_cose_key
from .requests import (
    HOST,
    ClientPinSubCommand,
    Command,
    FidoRequest,
    GetAssertionKey,
    MakeCredentialKey,
    client_pin_template,
    credential_descriptor,
)
from .responses import authenticator_data
from .series import TestSeries, entry_point
from .status import Status
from .wire import (
    MAP_KEY_EXAMPLES,
    TYPE_EXAMPLES,
    WireKind,
    encode,
    kind_of,
    nest,
    nesting_depth,
)

# CTAP2 canonical CBOR allows at most four levels of nested maps and arrays.
MAX_CBOR_NESTING_DEPTH = 4

# pinUvAuthToken permission bit for makeCredential
PERMISSION_MAKE_CREDENTIAL = 0x01


class InputParameterTestSeries(TestSeries):
    """
    Systematically checks that all input parameters follow CTAP2.

    Wrongly typed values are tried for every command parameter, every entry
    of inner maps and the first element of inner arrays. Unexpected additional
    map keys and left out optional entries are only reported as warnings,
    since CTAP2 often allows them.

    Example:
        series = InputParameterTestSeries(device, KeyChecker(), CounterChecker())
        series.make_credential_bad_parameter_types_test()
        series.print_results()
    """

    def __init__(self, device, key_checker, counter_checker):
        super().__init__("Input parameter test series")
        self.device = device
        self.key_checker = key_checker
        self.counter_checker = counter_checker
        self.type_examples = TYPE_EXAMPLES
        self.map_key_examples = MAP_KEY_EXAMPLES
        self.cose_key_example = generate_cose_key()
        self.max_nesting_depth = MAX_CBOR_NESTING_DEPTH

    @entry_point
    def make_credential_bad_parameter_types_test(self):
        req = FidoRequest(
            exclude_list=[credential_descriptor(os.urandom(32))],
            extensions={},
            options={"rk": False},
        )
        self.test_bad_parameter_types(Command.MAKE_CREDENTIAL, req.toMC())

    @entry_point
    def make_credential_missing_parameter_test(self):
        self.test_missing_parameters(Command.MAKE_CREDENTIAL, FidoRequest().toMC())

    @entry_point
    def make_credential_relying_party_entity_test(self):
        rp = {"id": HOST, "name": "ExampleRP", "icon": "https://examplo.org/icon.png"}
        template = FidoRequest(rp=rp).toMC()
        self.test_bad_parameters_in_inner_map(
            Command.MAKE_CREDENTIAL, template, MakeCredentialKey.RP, rp, False
        )

    @entry_point
    def make_credential_user_entity_test(self):
        user = {
            "id": os.urandom(16),
            "name": "johnpsmith@example.com",
            "displayName": "John P. Smith",
            "icon": "https://pics.example.com/00/p/aBjjjpqPb.png",
        }
        template = FidoRequest(user=user).toMC()
        self.test_bad_parameters_in_inner_map(
            Command.MAKE_CREDENTIAL, template, MakeCredentialKey.USER, user, False
        )

    @entry_point
    def make_credential_exclude_list_test(self):
        descriptor = credential_descriptor(os.urandom(32), ["usb"])
        template = FidoRequest(exclude_list=[descriptor]).toMC()
        self.test_bad_parameters_in_inner_array(
            Command.MAKE_CREDENTIAL, template, MakeCredentialKey.EXCLUDE_LIST, descriptor
        )
        self.test_credential_descriptors_array_for_cbor_depth(
            Command.MAKE_CREDENTIAL, template, MakeCredentialKey.EXCLUDE_LIST, HOST
        )

    @entry_point
    def make_credential_extensions_test(self):
        outcome = self.send(FidoRequest(extensions={"tetris": True}).toMC())
        self.check_response_and_report(
            outcome, "makeCredential ignores the unknown extension tetris"
        )

        if "hmac-secret" not in self._supported_extensions():
            self.report_skipped("makeCredential hmac-secret extension types")
            return
        extensions = {"hmac-secret": True}
        template = FidoRequest(extensions=extensions).toMC()
        self.test_bad_parameters_in_inner_map(
            Command.MAKE_CREDENTIAL,
            template,
            MakeCredentialKey.EXTENSIONS,
            extensions,
            False,
        )

    @entry_point
    def get_assertion_bad_parameter_types_test(self):
        credential_id = self.make_test_credential(HOST, False)
        req = FidoRequest(
            allow_list=[credential_descriptor(credential_id)],
            extensions={},
            options={"up": False},
        )
        self.test_bad_parameter_types(Command.GET_ASSERTION, req.toGA())

    @entry_point
    def get_assertion_missing_parameter_test(self):
        self.test_missing_parameters(Command.GET_ASSERTION, FidoRequest().toGA())

    @entry_point
    def get_assertion_allow_list_test(self):
        credential_id = self.make_test_credential(HOST, False)
        descriptor = credential_descriptor(credential_id, ["usb"])
        template = FidoRequest(allow_list=[descriptor], options={"up": False}).toGA()
        self.test_bad_parameters_in_inner_array(
            Command.GET_ASSERTION, template, GetAssertionKey.ALLOW_LIST, descriptor
        )
        self.test_credential_descriptors_array_for_cbor_depth(
            Command.GET_ASSERTION, template, GetAssertionKey.ALLOW_LIST, HOST
        )

    @entry_point
    def get_assertion_extensions_test(self):
        credential_id = self.make_test_credential(HOST, False)
        allow_list = [credential_descriptor(credential_id)]
        for extensions in ({"tetris": True}, {"tetris": {1: b"\x00" * 32}}):
            req = FidoRequest(
                allow_list=allow_list, extensions=extensions, options={"up": False}
            )
            self.check_response_and_report(
                self.send(req.toGA()),
                "getAssertion ignores the unknown extension %r" % extensions,
            )

    @entry_point
    def client_pin_get_pin_retries_test(self):
        self._client_pin_test(client_pin_template(ClientPinSubCommand.GET_PIN_RETRIES))

    @entry_point
    def client_pin_get_key_agreement_test(self):
        self._client_pin_test(
            client_pin_template(ClientPinSubCommand.GET_KEY_AGREEMENT)
        )

    @entry_point
    def client_pin_set_pin_test(self):
        self._client_pin_test(
            client_pin_template(
                ClientPinSubCommand.SET_PIN,
                key_agreement=self.cose_key_example,
                pin_auth=os.urandom(16),
                new_pin_enc=os.urandom(64),
            )
        )

    @entry_point
    def client_pin_change_pin_test(self):
        self._client_pin_test(
            client_pin_template(
                ClientPinSubCommand.CHANGE_PIN,
                key_agreement=self.cose_key_example,
                pin_auth=os.urandom(16),
                new_pin_enc=os.urandom(64),
                pin_hash_enc=os.urandom(16),
            )
        )

    @entry_point
    def client_pin_get_pin_uv_auth_token_using_pin_test(self):
        self._client_pin_test(
            client_pin_template(
                ClientPinSubCommand.GET_PIN_TOKEN,
                key_agreement=self.cose_key_example,
                pin_hash_enc=os.urandom(16),
            )
        )

    @entry_point
    def client_pin_get_pin_uv_auth_token_using_uv_test(self):
        self._client_pin_test(
            client_pin_template(
                ClientPinSubCommand.GET_PIN_UV_AUTH_TOKEN_USING_UV,
                optional=["permissions_rp_id"],
                key_agreement=self.cose_key_example,
                permissions=PERMISSION_MAKE_CREDENTIAL,
                permissions_rp_id=HOST,
            )
        )

    @entry_point
    def client_pin_get_uv_retries_test(self):
        self._client_pin_test(client_pin_template(ClientPinSubCommand.GET_UV_RETRIES))

    def _client_pin_test(self, template):
        self.test_bad_parameter_types(Command.CLIENT_PIN, template)
        self.test_missing_parameters(Command.CLIENT_PIN, template)

    def _supported_extensions(self):
        outcome = self.device.get_info()
        self.assert_response(outcome, "getInfo for supported extensions")
        extensions = outcome.get(0x02)
        return extensions if isinstance(extensions, list) else []

    def send(self, template):
        return self.device.send_cbor(template.command, template.parameters)

    def make_test_credential(self, rp_id, use_residential_key):
        """Makes a credential for tests that need one, returns its id."""
        req = FidoRequest(
            rp={"id": rp_id, "name": "ExampleRP"},
            options={"rk": use_residential_key},
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

    def test_bad_parameter_types(self, command, template):
        """
        Tries every wrong kind for every parameter present in the template.
        Maps and the first element of arrays are checked one level deeper.
        """
        for key, value in template.parameters.items():
            value_kind = kind_of(value)
            for kind, example in self.type_examples.items():
                if kind == value_kind:
                    continue
                outcome = self.device.send_cbor(command, template.with_entry(key, example))
                self.check_status_and_report(
                    Status.CBOR_UNEXPECTED_TYPE,
                    outcome.status,
                    "%s: %s for parameter %r" % (template.name, kind.name, key),
                )
            if value_kind == WireKind.MAP:
                self.test_bad_parameters_in_inner_map(command, template, key, value, False)
            elif value_kind == WireKind.ARRAY and value:
                self.test_bad_parameters_in_inner_array(command, template, key, value[0])

        for kind, example in self.type_examples.items():
            if kind == WireKind.MAP:
                continue
            outcome = self.device.send_cbor(command, encode(example))
            self.check_status_and_report(
                Status.CBOR_UNEXPECTED_TYPE,
                outcome.status,
                "%s: %s instead of the parameter map" % (template.name, kind.name),
            )

    def test_missing_parameters(self, command, template):
        for key in template.required_keys():
            outcome = self.device.send_cbor(command, template.without(key))
            self.check_status_and_report(
                Status.MISSING_PARAMETER,
                outcome.status,
                "%s: missing parameter %r" % (template.name, key),
            )

    def test_bad_parameters_in_inner_map(
        self, command, template, outer_key, inner_map, wrapped_in_array
    ):
        """
        Checks entries of a map that is itself a command parameter, or the
        only element of an array parameter if wrapped_in_array is set:
        command:outer_key->inner_map[key] or command:outer_key->[inner_map[key]]
        """
        location = "%s: %r%s" % (
            template.name,
            outer_key,
            "[0]" if wrapped_in_array else "",
        )

        def place(mutated_map):
            return [mutated_map] if wrapped_in_array else mutated_map

        def send(mutated_map):
            return self.device.send_cbor(
                command, template.with_entry(outer_key, place(mutated_map))
            )

        for inner_key, inner_value in inner_map.items():
            value_kind = kind_of(inner_value)
            for kind, example in self.type_examples.items():
                if kind == value_kind:
                    continue
                mutated = dict(inner_map)
                mutated[inner_key] = example
                self.check_status_and_report(
                    Status.CBOR_UNEXPECTED_TYPE,
                    send(mutated).status,
                    "%s: %s for entry %r" % (location, kind.name, inner_key),
                )

        if not inner_map:
            return

        for kind, key_example in self.map_key_examples.items():
            if key_example in inner_map:
                continue
            mutated = dict(inner_map)
            mutated[key_example] = self.type_examples[WireKind.UNSIGNED]
            outcome = send(mutated)
            if outcome.is_error:
                self.warn(
                    "%s: unexpected %s key %r rejected with %s"
                    % (location, kind.name, key_example, outcome.status.name)
                )

        for inner_key in inner_map:
            mutated = dict(inner_map)
            del mutated[inner_key]
            outcome = send(mutated)
            if template.is_optional(outer_key, inner_key):
                if outcome.is_error:
                    self.warn(
                        "%s: leaving out optional entry %r rejected with %s"
                        % (location, inner_key, outcome.status.name)
                    )
            else:
                self.check_status_and_report(
                    Status.MISSING_PARAMETER,
                    outcome.status,
                    "%s: missing entry %r" % (location, inner_key),
                )

    def test_bad_parameters_in_inner_array(
        self, command, template, outer_key, element_template
    ):
        """
        Only the first array element is mutated, the others are assumed to be
        of the same type.
        """
        rest = list(template.parameters.get(outer_key, [])[1:])
        element_kind = kind_of(element_template)
        for kind, example in self.type_examples.items():
            if kind == element_kind:
                continue
            outcome = self.device.send_cbor(
                command, template.with_entry(outer_key, [example] + rest)
            )
            self.check_status_and_report(
                Status.CBOR_UNEXPECTED_TYPE,
                outcome.status,
                "%s: %s as element of %r" % (template.name, kind.name, outer_key),
            )
        if element_kind == WireKind.MAP:
            self.test_bad_parameters_in_inner_map(
                command, template, outer_key, element_template, True
            )

    def test_credential_descriptors_array_for_cbor_depth(
        self, command, template, map_key, relying_party_id
    ):
        """
        Unknown transports have to be ignored, so unexpected scalar types in
        the transports list are fine. Arrays and maps in there exceed the
        maximum nesting depth though and have to be rejected.
        """
        credential_id = self.make_test_credential(relying_party_id, False)

        def with_transports(transports):
            return template.with_entry(
                map_key, [credential_descriptor(credential_id, transports)]
            )

        baseline = self.device.send_cbor(command, with_transports(["usb"])).status
        base_depth = nesting_depth(with_transports(["usb"]))
        if base_depth > self.max_nesting_depth:
            self.report_skipped(
                "%s: descriptors already nest %d deep" % (template.name, base_depth)
            )
            return

        padding = self.max_nesting_depth - base_depth
        for kind, example in self.type_examples.items():
            if kind in (WireKind.ARRAY, WireKind.MAP):
                continue
            transports = ["usb", nest(example, padding)]
            outcome = self.device.send_cbor(command, with_transports(transports))
            self.check_status_and_report(
                baseline,
                outcome.status,
                "%s: unknown %s transport at depth %d"
                % (template.name, kind.name, self.max_nesting_depth),
            )

        for kind in (WireKind.ARRAY, WireKind.MAP):
            transports = ["usb", nest(self.type_examples[kind], padding)]
            parameters = with_transports(transports)
            depth = nesting_depth(parameters)
            test_name = "%s: %s transport at depth %d" % (template.name, kind.name, depth)
            outcome = self.device.send_cbor(command, parameters)
            if outcome.status == baseline:
                self.check_and_report(False, "%s is rejected" % test_name)
            else:
                self.check_status_and_report(Status.INVALID_CBOR, outcome.status, test_name)
