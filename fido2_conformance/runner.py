"""
Fixed order in which the series are run against one authenticator. Every
entry point is followed by a look at the abort signal, the remaining tests
of an aborted series are not run.
"""

from .checkers import CounterChecker, KeyChecker
from .input_parameters import InputParameterTestSeries
from .procedures import SpecificationProcedure

DEFAULT_CREDENTIAL_COUNT = 50


def _run(series, tests):
    for name, args in tests:
        getattr(series, name)(*args)
        if series.aborted:
            print("Stopping %s after %s" % (series.test_series_name, name))
            break
    series.print_results()
    return series


def run_input_parameter_tests(device, key_checker=None, counter_checker=None):
    series = InputParameterTestSeries(
        device, key_checker or KeyChecker(), counter_checker or CounterChecker()
    )
    tests = [
        (name, ())
        for name in (
            "make_credential_bad_parameter_types_test",
            "make_credential_missing_parameter_test",
            "make_credential_relying_party_entity_test",
            "make_credential_user_entity_test",
            "make_credential_exclude_list_test",
            "make_credential_extensions_test",
            "get_assertion_bad_parameter_types_test",
            "get_assertion_missing_parameter_test",
            "get_assertion_allow_list_test",
            "get_assertion_extensions_test",
            "client_pin_get_pin_retries_test",
            "client_pin_get_key_agreement_test",
            "client_pin_set_pin_test",
            "client_pin_change_pin_test",
            "client_pin_get_pin_uv_auth_token_using_pin_test",
            "client_pin_get_pin_uv_auth_token_using_uv_test",
            "client_pin_get_uv_retries_test",
        )
    ]
    return _run(series, tests)


def run_specification_procedures(
    device,
    key_checker=None,
    counter_checker=None,
    credential_count=DEFAULT_CREDENTIAL_COUNT,
):
    """
    Expects an authenticator without PIN. Some tests reset the device and
    need the tester to replug it.
    """
    series = SpecificationProcedure(
        device, key_checker or KeyChecker(), counter_checker or CounterChecker()
    )
    series.get_info_test()
    if series.aborted:
        series.print_results()
        return series
    is_2_1 = series.get_info_is_2_1_compliant()

    tests = [
        ("make_credential_exclude_list_test", ()),
        ("make_credential_cose_algorithm_test", ()),
        ("make_credential_options_test", ()),
        ("make_credential_physical_presence_test", ()),
        ("make_credential_display_name_encoding_test", ()),
        ("make_credential_hmac_secret_test", ()),
        ("make_credential_multiple_keys_test", (credential_count,)),
        ("make_credential_pin_auth_test", (is_2_1,)),
        ("get_assertion_options_test", ()),
        ("get_assertion_residential_key_test", ()),
        ("get_assertion_pin_auth_test", (is_2_1,)),
        ("get_assertion_physical_presence_test", ()),
        ("client_pin_requirements_test", ()),
        ("client_pin_retries_test", ()),
        ("reset_deletion_test", ()),
        ("reset_physical_presence_test", ()),
        ("persistence_test", ()),
    ]
    return _run(series, tests)
