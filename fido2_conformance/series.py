import contextlib
import functools

from .responses import ProtocolViolation
from .status import is_error, status_name


class FatalPrecondition(Exception):
    """A check whose failure makes every following result meaningless."""

    def __init__(self, test_name):
        super().__init__(test_name)
        self.test_name = test_name


def entry_point(method):
    """
    Marks a public test of a series. A fatal assertion inside stops the test
    and aborts the series; the caller sees this through the return value
    (None) and series.aborted. Entry points of an aborted series don't run.
    """

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        if self.aborted:
            print("[SKIP] %s, series aborted" % method.__name__)
            return None
        try:
            return method(self, *args, **kwargs)
        except FatalPrecondition as e:
            self.abort_reason = e.test_name
            return None

    return wrapper


class TestSeries(object):
    """
    Base class of all test series, counting results and printing a summary.

    Use the assert_* methods when the condition is critical for the rest of
    the run, and the check_*_and_report methods for everything that can be
    tolerated and only shows up in the statistics.
    """

    __test__ = False

    def __init__(self, test_series_name):
        self.test_series_name = test_series_name
        self.total_tests = 0
        self.successful_tests = 0
        self.warnings = 0
        self.manual_steps = 0
        self.skipped = 0
        self.abort_reason = None

    @property
    def aborted(self):
        return self.abort_reason is not None

    def assert_condition(self, condition, test_name):
        if not condition:
            print("[FATAL] %s" % test_name)
            raise FatalPrecondition(test_name)

    def assert_response(self, outcome, test_name):
        if outcome.is_error:
            print("[FATAL] %s, got %s" % (test_name, status_name(outcome.status)))
            raise FatalPrecondition(test_name)
        if outcome.is_undecodable:
            print("[FATAL] %s, got an undecodable response" % test_name)
            raise FatalPrecondition(test_name)

    @contextlib.contextmanager
    def violations_are_fatal(self, test_name):
        try:
            yield
        except ProtocolViolation as e:
            self.assert_condition(False, "%s: %s" % (test_name, e))

    def check_and_report(self, condition, test_name):
        self.total_tests += 1
        if condition:
            self.successful_tests += 1
            print("[PASS] %s" % test_name)
        else:
            print("[FAIL] %s" % test_name)
        return bool(condition)

    def check_response_and_report(self, outcome, test_name):
        if outcome.is_error:
            test_name = "%s, got %s" % (test_name, status_name(outcome.status))
        elif outcome.is_undecodable:
            test_name = "%s, got an undecodable response" % test_name
        return self.check_and_report(
            not outcome.is_error and not outcome.is_undecodable, test_name
        )

    def check_status_and_report(self, expected_status, returned_status, test_name):
        """
        Passes if both statuses are errors or both are success. Two different
        error codes still pass, but the difference is printed as a warning.
        """
        if is_error(expected_status) != is_error(returned_status):
            return self.check_and_report(
                False,
                "%s, expected %s, got %s"
                % (
                    test_name,
                    status_name(expected_status),
                    status_name(returned_status),
                ),
            )
        if expected_status != returned_status:
            self.warn(
                "%s, expected %s, got %s"
                % (
                    test_name,
                    status_name(expected_status),
                    status_name(returned_status),
                )
            )
        return self.check_and_report(True, test_name)

    def warn(self, message):
        self.warnings += 1
        print("[WARN] %s" % message)

    def report_manual_step(self, test_name):
        self.manual_steps += 1
        print("[MANUAL] %s" % test_name)

    def report_skipped(self, test_name):
        self.skipped += 1
        print("[SKIP] %s" % test_name)

    def print_results(self):
        print(
            "%s: %d/%d tests passed"
            % (self.test_series_name, self.successful_tests, self.total_tests)
        )
        if self.warnings or self.manual_steps or self.skipped:
            print(
                "  %d warnings, %d manual steps, %d skipped"
                % (self.warnings, self.manual_steps, self.skipped)
            )
        if self.aborted:
            print("  aborted at: %s" % self.abort_reason)
