from fido2.ctap import CtapError

# One success sentinel, everything else is an error code.
Status = CtapError.ERR


def is_error(status):
    return status != Status.SUCCESS


def status_name(status):
    return getattr(status, "name", "0x%02X" % status)


class Outcome(object):
    """
    Result of one device interaction: the decoded response value, the error
    status returned by the authenticator, or the raw bytes of a successful
    response that could not be decoded.
    """

    __slots__ = ("value", "status", "raw")

    def __init__(self, value=None, status=Status.SUCCESS, raw=None):
        self.value = value
        self.status = status
        self.raw = raw

    @classmethod
    def ok(cls, value):
        return cls(value=value)

    @classmethod
    def error(cls, status):
        if not is_error(status):
            raise ValueError("An error outcome needs an error status")
        return cls(status=status)

    @classmethod
    def undecodable(cls, raw):
        """A success status followed by bytes that are not CBOR."""
        return cls(raw=raw)

    @property
    def is_error(self):
        return is_error(self.status)

    @property
    def is_undecodable(self):
        return self.raw is not None

    def __getitem__(self, key):
        return self.value[key]

    def get(self, key, default=None):
        if self.is_error or not isinstance(self.value, dict):
            return default
        return self.value.get(key, default)

    def __repr__(self):
        if self.is_error:
            return "Outcome(%s)" % status_name(self.status)
        if self.is_undecodable:
            return "Outcome(undecodable %s)" % self.raw.hex()
        return "Outcome(%r)" % (self.value,)
