import struct
import time

from cbor2 import CBORDecodeError
from fido2.ctap import CtapError
from fido2.hid import CtapHidDevice, CTAPHID, STATUS

from . import udp_backend, wire
from .requests import Command
from .status import Outcome, Status


class DeviceSelectCredential(object):
    """Keepalive handler asking the tester to touch the authenticator once."""

    def __init__(self, prompt="Please touch your authenticator"):
        self.prompt = prompt
        self.prompted = False

    def __call__(self, status):
        if status == STATUS.UPNEEDED and not self.prompted:
            print(self.prompt)
            self.prompted = True


class TestDevice(object):
    """
    Sends CTAP2 commands to one authenticator and hands back Outcomes. Every
    call blocks until the authenticator answers, there is no timeout here
    beyond the one of the transport.
    """

    __test__ = False

    def __init__(self):
        self.dev = None
        self.is_sim = False
        self.is_nfc = False
        self.nfc_interface_only = False

    def set_sim(self, b):
        self.is_sim = b
        if b:
            print("FORCE UDP")
            udp_backend.force_udp_backend()

    def find_device(self, nfcInterfaceOnly=False):
        dev = None
        self.nfc_interface_only = nfcInterfaceOnly
        if not nfcInterfaceOnly:
            print("--- HID ---")
            dev = next(CtapHidDevice.list_devices(), None)
        else:
            from fido2.pcsc import CtapPcscDevice

            print("--- NFC ---")
            dev = next(CtapPcscDevice.list_devices(), None)
            if dev:
                self.is_nfc = True

        if not dev:
            raise RuntimeError("No FIDO device found")
        self.dev = dev

    def send_cbor(self, command, parameters=None):
        """
        Sends one command. parameters is encoded as CBOR unless it already is
        bytes, which lets callers put hand-crafted payloads on the wire.
        """
        request = struct.pack(">B", command)
        if isinstance(parameters, bytes):
            request += parameters
        elif parameters is not None:
            request += wire.encode(parameters)

        try:
            response = self.dev.call(
                CTAPHID.CBOR, request, on_keepalive=DeviceSelectCredential()
            )
        except CtapError as e:
            return Outcome.error(e.code)

        status = response[0]
        if status != Status.SUCCESS:
            return Outcome.error(CtapError(status).code)
        if len(response) == 1:
            return Outcome.ok({})
        try:
            return Outcome.ok(wire.decode(response[1:]))
        except (CBORDecodeError, UnicodeDecodeError):
            print("Undecodable response: %s" % response[1:].hex())
            return Outcome.undecodable(response[1:])

    def get_info(self):
        return self.send_cbor(Command.GET_INFO)

    def reset(self):
        return self.send_cbor(Command.RESET)

    def announce_user_presence(self, touch):
        """
        Tells the tester whether to touch the authenticator for the next
        command. Not touching means waiting for the authenticator to time out.
        """
        if touch:
            print("Please touch your authenticator for the next request")
        else:
            print("Please DO NOT touch your authenticator for the next request")

    def prompt_replug(self):
        if self.is_sim:
            print("Sending restart command...")
            self.send_magic_reboot()
            self.delay(0.25)
            return

        print("Please unplug and replug your authenticator, then hit enter")
        input()
        self.find_device(self.nfc_interface_only)

    def send_magic_reboot(self):
        """
        For use in simulation and testing. Random bytes that authenticator
        should detect and then restart itself.
        """
        magic_cmd = (
            b"\xac\x10\x52\xca\x95\xe5\x69\xde\x69\xe0\x2e\xbf"
            + b"\xf3\x33\x48\x5f\x13\xf9\xb2\xda\x34\xc5\xa8\xa3"
            + b"\x40\x52\x66\x97\xa9\xab\x2e\x0b\x39\x4d\x8d\x04"
            + b"\x97\x3c\x13\x40\x05\xbe\x1a\x01\x40\xbf\xf6\x04"
            + b"\x5b\xb2\x6e\xb7\x7a\x73\xea\xa4\x78\x13\xf6\xb4"
            + b"\x9a\x72\x50\xdc"
        )
        self.dev._connection.write_packet(magic_cmd)

    def delay(self, secs):
        time.sleep(secs)
