from .checkers import CounterChecker, KeyChecker
from .device import TestDevice
from .input_parameters import InputParameterTestSeries
from .pin import PinSession
from .procedures import SpecificationProcedure
from .requests import FidoRequest
from .runner import run_input_parameter_tests, run_specification_procedures
from .series import FatalPrecondition, TestSeries
from .status import Outcome, Status
