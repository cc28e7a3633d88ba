from enum import IntEnum

import cbor2


class WireKind(IntEnum):
    UNSIGNED = 0
    NEGATIVE = 1
    BYTE_STRING = 2
    TEXT_STRING = 3
    ARRAY = 4
    MAP = 5
    SIMPLE = 7
    FLOAT = 8


# Arbitrary example values, one per kind.
TYPE_EXAMPLES = {
    WireKind.UNSIGNED: 42,
    WireKind.NEGATIVE: -42,
    WireKind.BYTE_STRING: b"\x42",
    WireKind.TEXT_STRING: "42",
    WireKind.ARRAY: [42],
    WireKind.MAP: {42: 42},
    WireKind.SIMPLE: True,
    WireKind.FLOAT: 4.2,
}

# CBOR parsers do not have to accept every kind as a map key, so only these
# are used when unexpected keys are inserted into maps.
MAP_KEY_EXAMPLES = {
    kind: TYPE_EXAMPLES[kind]
    for kind in (WireKind.UNSIGNED, WireKind.NEGATIVE, WireKind.TEXT_STRING)
}


def kind_of(value):
    # bool is a subclass of int, so it has to be checked first
    if isinstance(value, bool) or value is None:
        return WireKind.SIMPLE
    if isinstance(value, int):
        return WireKind.UNSIGNED if value >= 0 else WireKind.NEGATIVE
    if isinstance(value, (bytes, bytearray)):
        return WireKind.BYTE_STRING
    if isinstance(value, str):
        return WireKind.TEXT_STRING
    if isinstance(value, (list, tuple)):
        return WireKind.ARRAY
    if isinstance(value, dict):
        return WireKind.MAP
    if isinstance(value, float):
        return WireKind.FLOAT
    raise TypeError("No CBOR kind for %r" % type(value))


def nesting_depth(value):
    """
    Number of nested containers, counting the outermost one. Scalars have a
    depth of 0, so a command parameter map holding only scalars has depth 1.
    """
    kind = kind_of(value)
    if kind == WireKind.ARRAY:
        return 1 + max([nesting_depth(v) for v in value] or [0])
    if kind == WireKind.MAP:
        children = [nesting_depth(k) for k in value] + [
            nesting_depth(v) for v in value.values()
        ]
        return 1 + max(children or [0])
    return 0


def nest(value, levels):
    """Wraps value into levels one-element arrays."""
    for _ in range(levels):
        value = [value]
    return value


def encode(value):
    return cbor2.dumps(value, canonical=True)


def decode(data):
    return cbor2.loads(data)


def splice_bytes(encoded, marker, replacement):
    """
    Replaces the UTF-8 text marker inside an encoded payload with raw bytes of
    the same length. Used to put byte sequences on the wire that no text
    string encoder would produce, like invalid UTF-8.
    """
    marker = marker.encode("utf-8")
    if len(marker) != len(replacement):
        raise ValueError("Replacement must keep the encoded length")
    if encoded.count(marker) != 1:
        raise ValueError("Marker must appear exactly once")
    return encoded.replace(marker, replacement)
