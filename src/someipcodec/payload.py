"""
Schema driven encoding and decoding of SOMEIP payloads.

A schema is a tree of field types (:class:`IntegerType`, :class:`StructType`, ...).
Decoding produces a tree of values (:class:`IntegerValue`, :class:`StructValue`,
...); :func:`encode_payload` is the inverse of :func:`decode_payload`.

Serialization follows the SOME/IP rules: scalars are big-endian unless declared
otherwise, strings carry a byte order mark and a terminating NUL character, length
fields count bytes (not elements), unions are encoded as length, type selector and
the selected element.

Schemas and values are immutable and may be shared between threads.
"""
from __future__ import annotations

import dataclasses
import functools
import struct
import typing
import warnings

from someipcodec.config import CodecConfig, DEFAULT_CONFIG
from someipcodec.header import IncompleteReadError, ParseError, SOMEIPHeader


class PayloadSchemaMismatchError(ParseError):
    pass


class CodecWarning(UserWarning):
    """
    issued when lenient decoding had to guess or skip data
    """


_LENGTH_FORMATS = {
    1: struct.Struct("!B"),
    2: struct.Struct("!H"),
    4: struct.Struct("!I"),
    8: struct.Struct("!Q"),
}

_BOMS = {
    "utf-8": b"\xef\xbb\xbf",
    "utf-16-be": b"\xfe\xff",
    "utf-16-le": b"\xff\xfe",
}


def _check_length_width(width: int, allow_none: bool = False) -> None:
    if width == 0 and allow_none:
        return
    if width not in _LENGTH_FORMATS:
        raise ValueError(f"length field width must be 1, 2, 4 or 8 bytes, got {width}")


def _lenient(msg: str) -> None:
    warnings.warn(msg, CodecWarning, stacklevel=3)


class _Cursor:
    """
    read position in a buffer. Cursors for length-delimited regions are `bounded`:
    running out of data inside such a region means the data does not match the
    schema, not that more input is needed.
    """

    def __init__(
        self,
        buf,
        start: int = 0,
        end: typing.Optional[int] = None,
        bounded: bool = False,
    ):
        self.buf = buf
        self.pos = start
        self.end = len(buf) if end is None else end
        self.bounded = bounded

    @property
    def remaining(self) -> int:
        return self.end - self.pos

    def _need(self, n: int, what: str) -> None:
        if self.remaining >= n:
            return
        if self.bounded:
            raise PayloadSchemaMismatchError(
                f"{what} needs {n} bytes, but only {self.remaining} remain in the"
                " enclosing length"
            )
        raise IncompleteReadError(
            f"{what} needs {n} bytes, got only {self.remaining}",
            needed=n - self.remaining,
        )

    def take(self, n: int, what: str) -> bytes:
        self._need(n, what)
        data = bytes(self.buf[self.pos : self.pos + n])
        self.pos += n
        return data

    def unpack(self, fmt: struct.Struct, what: str) -> typing.Tuple[typing.Any, ...]:
        self._need(fmt.size, what)
        values = fmt.unpack_from(self.buf, self.pos)
        self.pos += fmt.size
        return values

    def read_length(self, width: int, what: str) -> int:
        return self.unpack(_LENGTH_FORMATS[width], f"length of {what}")[0]

    def region(self, n: int, what: str) -> _Cursor:
        """
        returns a bounded cursor over the next `n` bytes and skips them here
        """
        self._need(n, what)
        sub = _Cursor(self.buf, self.pos, self.pos + n, bounded=True)
        self.pos += n
        return sub


def _write_length(out: bytearray, width: int, length: int, what: str) -> None:
    fmt = _LENGTH_FORMATS[width]
    if length >= 1 << (8 * width):
        raise PayloadSchemaMismatchError(
            f"{what} is {length} bytes long, too long for a {width} byte length field"
        )
    out += fmt.pack(length)


# values


@dataclasses.dataclass(frozen=True)
class IntegerValue:
    value: int


@dataclasses.dataclass(frozen=True)
class FloatValue:
    value: float


@dataclasses.dataclass(frozen=True)
class BooleanValue:
    value: bool


@dataclasses.dataclass(frozen=True)
class EnumValue:
    """
    :param value: the numeric value on the wire
    :param name: the name of the variant, None if the value is not defined in the
        schema (lenient decoding only)
    """

    value: int
    name: typing.Optional[str] = None


@dataclasses.dataclass(frozen=True)
class TextValue:
    value: str


@dataclasses.dataclass(frozen=True)
class BytesValue:
    value: bytes


@dataclasses.dataclass(frozen=True)
class ArrayValue:
    items: typing.Tuple[PayloadValue, ...]

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, index: int) -> PayloadValue:
        return self.items[index]


@dataclasses.dataclass(frozen=True)
class StructValue:
    """
    :param fields: (name, value) pairs in wire order
    """

    fields: typing.Tuple[typing.Tuple[str, PayloadValue], ...]

    def __getitem__(self, name: str) -> PayloadValue:
        for key, value in self.fields:
            if key == name:
                return value
        raise KeyError(name)

    def keys(self) -> typing.List[str]:
        return [key for key, _ in self.fields]


@dataclasses.dataclass(frozen=True)
class UnionValue:
    """
    :param tag: the type selector
    :param value: the selected element. Lenient decoding returns undefined
        elements as :class:`BytesValue`
    """

    tag: int
    value: PayloadValue


PayloadValue = typing.Union[
    IntegerValue,
    FloatValue,
    BooleanValue,
    EnumValue,
    TextValue,
    BytesValue,
    ArrayValue,
    StructValue,
    UnionValue,
]


def to_python(value: PayloadValue) -> typing.Any:
    """
    converts a decoded value to plain Python objects: structs become dicts, arrays
    become lists, unions become (tag, value) tuples and enums their name (or the
    number if undefined).
    """
    if isinstance(value, StructValue):
        return {name: to_python(v) for name, v in value.fields}
    if isinstance(value, ArrayValue):
        return [to_python(v) for v in value.items]
    if isinstance(value, UnionValue):
        return (value.tag, to_python(value.value))
    if isinstance(value, EnumValue):
        return value.value if value.name is None else value.name
    return value.value


def _expect(value: typing.Any, cls: typing.Type[typing.Any], schema: typing.Any):
    if not isinstance(value, cls):
        raise PayloadSchemaMismatchError(
            f"expected {cls.__name__} for {type(schema).__name__},"
            f" got {type(value).__name__}"
        )
    return value


# schema


@dataclasses.dataclass(frozen=True)
class IntegerType:
    bits: int = 32
    signed: bool = False
    little_endian: bool = False

    def __post_init__(self):
        if self.bits not in (8, 16, 32, 64):
            raise ValueError(f"integer width must be 8, 16, 32 or 64, got {self.bits}")

    @functools.cached_property
    def _format(self) -> struct.Struct:
        code = {8: "b", 16: "h", 32: "i", 64: "q"}[self.bits]
        if not self.signed:
            code = code.upper()
        return struct.Struct(("<" if self.little_endian else ">") + code)

    @property
    def value_range(self) -> range:
        if self.signed:
            return range(-(1 << (self.bits - 1)), 1 << (self.bits - 1))
        return range(0, 1 << self.bits)

    def _decode(self, cur: _Cursor, strict: bool) -> IntegerValue:
        return IntegerValue(self._read(cur))

    def _read(self, cur: _Cursor) -> int:
        return cur.unpack(self._format, f"{self.bits} bit integer")[0]

    def _encode(self, value: PayloadValue, out: bytearray) -> None:
        self._write(_expect(value, IntegerValue, self).value, out)

    def _write(self, number: int, out: bytearray) -> None:
        if number not in self.value_range:
            raise PayloadSchemaMismatchError(
                f"{number} out of range for"
                f" {'signed' if self.signed else 'unsigned'} {self.bits} bit integer"
            )
        out += self._format.pack(number)


@dataclasses.dataclass(frozen=True)
class FloatType:
    bits: int = 32
    little_endian: bool = False

    def __post_init__(self):
        if self.bits not in (32, 64):
            raise ValueError(f"float width must be 32 or 64, got {self.bits}")

    @functools.cached_property
    def _format(self) -> struct.Struct:
        return struct.Struct(
            ("<" if self.little_endian else ">") + ("f" if self.bits == 32 else "d")
        )

    def _decode(self, cur: _Cursor, strict: bool) -> FloatValue:
        return FloatValue(cur.unpack(self._format, f"{self.bits} bit float")[0])

    def _encode(self, value: PayloadValue, out: bytearray) -> None:
        number = _expect(value, FloatValue, self).value
        try:
            out += self._format.pack(number)
        except (struct.error, OverflowError) as exc:
            raise PayloadSchemaMismatchError(
                f"{number!r} does not fit a {self.bits} bit float"
            ) from exc


@dataclasses.dataclass(frozen=True)
class BooleanType:
    __format: typing.ClassVar[struct.Struct] = struct.Struct("!B")

    def _decode(self, cur: _Cursor, strict: bool) -> BooleanValue:
        (b,) = cur.unpack(self.__format, "boolean")
        if b > 1:
            if strict:
                raise PayloadSchemaMismatchError(f"bad boolean value {b:#x}")
            _lenient(f"boolean value {b:#x} decoded as True")
        return BooleanValue(bool(b))

    def _encode(self, value: PayloadValue, out: bytearray) -> None:
        out += self.__format.pack(1 if _expect(value, BooleanValue, self).value else 0)


@dataclasses.dataclass(frozen=True)
class EnumType:
    """
    :param variants: (value, name) pairs
    :param base: the integer type used on the wire
    """

    variants: typing.Tuple[typing.Tuple[int, str], ...]
    base: IntegerType = IntegerType(bits=8)

    @functools.cached_property
    def _names(self) -> typing.Dict[int, str]:
        return dict(self.variants)

    def _decode(self, cur: _Cursor, strict: bool) -> EnumValue:
        number = self.base._read(cur)
        name = self._names.get(number)
        if name is None:
            if strict:
                raise PayloadSchemaMismatchError(f"undefined enum value {number:#x}")
            _lenient(f"undefined enum value {number:#x}")
        return EnumValue(number, name)

    def _encode(self, value: PayloadValue, out: bytearray) -> None:
        enum_value = _expect(value, EnumValue, self)
        if enum_value.name is not None and self._names.get(enum_value.value) != (
            enum_value.name
        ):
            raise PayloadSchemaMismatchError(
                f"enum variant {enum_value.name}={enum_value.value:#x}"
                " is not defined in the schema"
            )
        self.base._write(enum_value.value, out)


@dataclasses.dataclass(frozen=True)
class StringType:
    """
    :param encoding: "utf-8", "utf-16-be" or "utf-16-le"
    :param length_width: width of the length field in bytes (1, 2, 4 or 8). Ignored
        for fixed length strings
    :param length: size in bytes for fixed length strings, which have no length
        field and are padded with NUL characters
    :param bom: strings start with a byte order mark and end with a NUL character
    """

    encoding: str = "utf-8"
    length_width: int = 4
    length: typing.Optional[int] = None
    bom: bool = True

    def __post_init__(self):
        if self.encoding not in _BOMS:
            raise ValueError(f"unsupported string encoding {self.encoding!r}")
        if self.length is None:
            _check_length_width(self.length_width)

    @property
    def _terminator(self) -> bytes:
        return b"\x00" if self.encoding == "utf-8" else b"\x00\x00"

    def _decode(self, cur: _Cursor, strict: bool) -> TextValue:
        if self.length is None:
            size = cur.read_length(self.length_width, "string")
            raw = cur.take(size, "string")
        else:
            raw = cur.take(self.length, "fixed length string")

        encoding = self.encoding
        if self.bom:
            # for UTF-16 the byte order mark decides the byte order
            candidates = (
                ("utf-8",) if encoding == "utf-8" else ("utf-16-be", "utf-16-le")
            )
            for enc in candidates:
                if raw.startswith(_BOMS[enc]):
                    encoding = enc
                    raw = raw[len(_BOMS[enc]) :]
                    break
            else:
                if strict:
                    raise PayloadSchemaMismatchError(
                        f"string is missing the {self.encoding} byte order mark"
                    )
                _lenient(f"string is missing the {self.encoding} byte order mark")

        if encoding != "utf-8" and len(raw) % 2:
            if strict:
                raise PayloadSchemaMismatchError(
                    f"{encoding} string with odd length {len(raw)}"
                )
            _lenient(f"{encoding} string with odd length {len(raw)}")
            raw = raw[:-1]

        try:
            text = raw.decode(encoding)
        except UnicodeDecodeError as exc:
            if strict:
                raise PayloadSchemaMismatchError(
                    f"string is not valid {encoding}: {exc}"
                ) from exc
            _lenient(f"string is not valid {encoding}: {exc}")
            text = raw.decode(encoding, errors="replace")

        text, sep, padding = text.partition("\x00")
        if self.bom and not sep:
            if strict:
                raise PayloadSchemaMismatchError("string is not NUL terminated")
            _lenient("string is not NUL terminated")
        if padding.strip("\x00"):
            if strict:
                raise PayloadSchemaMismatchError("string has data after the terminator")
            _lenient("string has data after the terminator")
        return TextValue(text)

    def _encode(self, value: PayloadValue, out: bytearray) -> None:
        text = _expect(value, TextValue, self).value
        if "\x00" in text:
            raise PayloadSchemaMismatchError("strings must not contain NUL characters")
        raw = text.encode(self.encoding)
        if self.bom:
            raw = _BOMS[self.encoding] + raw + self._terminator

        if self.length is None:
            _write_length(out, self.length_width, len(raw), "string")
            out += raw
            return

        if len(raw) > self.length:
            raise PayloadSchemaMismatchError(
                f"encoded string is {len(raw)} bytes, fixed length is {self.length}"
            )
        out += raw
        out += bytes(self.length - len(raw))


@dataclasses.dataclass(frozen=True)
class BytesType:
    """
    opaque bytes, with a length field or a fixed `length`
    """

    length_width: int = 4
    length: typing.Optional[int] = None

    def __post_init__(self):
        if self.length is None:
            _check_length_width(self.length_width)

    def _decode(self, cur: _Cursor, strict: bool) -> BytesValue:
        if self.length is None:
            size = cur.read_length(self.length_width, "bytes")
            return BytesValue(cur.take(size, "bytes"))
        return BytesValue(cur.take(self.length, "fixed length bytes"))

    def _encode(self, value: PayloadValue, out: bytearray) -> None:
        data = _expect(value, BytesValue, self).value
        if self.length is None:
            _write_length(out, self.length_width, len(data), "bytes")
        elif len(data) != self.length:
            raise PayloadSchemaMismatchError(
                f"expected {self.length} bytes, got {len(data)}"
            )
        out += data


@dataclasses.dataclass(frozen=True)
class ArrayType:
    """
    :param element: type of the array elements
    :param length: number of elements for fixed size arrays, which have no length
        field. None for dynamic arrays
    :param length_width: width of the length field of dynamic arrays in bytes. The
        length field counts bytes, not elements
    """

    element: FieldSpec
    length: typing.Optional[int] = None
    length_width: int = 4

    def __post_init__(self):
        if self.length is None:
            _check_length_width(self.length_width)
        elif self.length < 0:
            raise ValueError(f"array length must not be negative, got {self.length}")

    def _decode(self, cur: _Cursor, strict: bool) -> ArrayValue:
        if self.length is not None:
            return ArrayValue(
                tuple(self.element._decode(cur, strict) for _ in range(self.length))
            )

        size = cur.read_length(self.length_width, "array")
        region = cur.region(size, "array")
        items = []
        while region.remaining:
            start = region.pos
            items.append(self.element._decode(region, strict))
            if region.pos == start:
                raise PayloadSchemaMismatchError(
                    "array element type does not consume any bytes"
                )
        return ArrayValue(tuple(items))

    def _encode(self, value: PayloadValue, out: bytearray) -> None:
        items = _expect(value, ArrayValue, self).items
        if self.length is not None:
            if len(items) != self.length:
                raise PayloadSchemaMismatchError(
                    f"expected {self.length} array elements, got {len(items)}"
                )
            for item in items:
                self.element._encode(item, out)
            return

        body = bytearray()
        for item in items:
            self.element._encode(item, body)
        _write_length(out, self.length_width, len(body), "array")
        out += body


@dataclasses.dataclass(frozen=True)
class StructType:
    """
    :param fields: (name, type) pairs in wire order
    :param length_width: width of an optional length field in bytes, 0 if the
        struct has none. Bytes after the last known member inside the length are
        skipped, so that newer versions of a struct can be read.
    """

    fields: typing.Tuple[typing.Tuple[str, FieldSpec], ...]
    length_width: int = 0

    def __post_init__(self):
        _check_length_width(self.length_width, allow_none=True)
        names = [name for name, _ in self.fields]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate struct member names in {names}")

    def _decode(self, cur: _Cursor, strict: bool) -> StructValue:
        if self.length_width:
            size = cur.read_length(self.length_width, "struct")
            cur = cur.region(size, "struct")
        return StructValue(
            tuple((name, spec._decode(cur, strict)) for name, spec in self.fields)
        )

    def _encode(self, value: PayloadValue, out: bytearray) -> None:
        members = _expect(value, StructValue, self).fields
        names = [name for name, _ in members]
        expected = [name for name, _ in self.fields]
        if names != expected:
            raise PayloadSchemaMismatchError(
                f"struct members {names} do not match schema {expected}"
            )
        body = bytearray() if self.length_width else out
        for (name, spec), (_, member) in zip(self.fields, members):
            spec._encode(member, body)
        if self.length_width:
            _write_length(out, self.length_width, len(body), "struct")
            out += body


@dataclasses.dataclass(frozen=True)
class UnionType:
    """
    :param variants: (type selector, type) pairs
    :param selector: integer type of the type selector field
    :param length_width: width of the length field in bytes, 0 if the union has
        none. The length covers the selected element, not the type selector.
        Without a length field, undefined elements can not be skipped in lenient
        mode.
    """

    variants: typing.Tuple[typing.Tuple[int, FieldSpec], ...]
    selector: IntegerType = IntegerType(bits=32)
    length_width: int = 4

    def __post_init__(self):
        _check_length_width(self.length_width, allow_none=True)
        tags = [tag for tag, _ in self.variants]
        if len(set(tags)) != len(tags):
            raise ValueError(f"duplicate union type selectors in {tags}")

    @functools.cached_property
    def _by_tag(self) -> typing.Dict[int, FieldSpec]:
        return dict(self.variants)

    def _decode(self, cur: _Cursor, strict: bool) -> UnionValue:
        size = None
        if self.length_width:
            size = cur.read_length(self.length_width, "union")
        tag = self.selector._read(cur)
        region = cur if size is None else cur.region(size, "union")

        spec = self._by_tag.get(tag)
        if spec is None:
            if strict or size is None:
                raise PayloadSchemaMismatchError(f"undefined union type {tag:#x}")
            _lenient(f"undefined union type {tag:#x}, decoded as raw bytes")
            return UnionValue(tag, BytesValue(region.take(size, "union")))
        return UnionValue(tag, spec._decode(region, strict))

    def _encode(self, value: PayloadValue, out: bytearray) -> None:
        union = _expect(value, UnionValue, self)
        spec = self._by_tag.get(union.tag)
        body = bytearray()
        if spec is not None:
            spec._encode(union.value, body)
        elif isinstance(union.value, BytesValue) and self.length_width:
            # undefined element kept as raw bytes by lenient decoding
            body += union.value.value
        else:
            raise PayloadSchemaMismatchError(f"undefined union type {union.tag:#x}")

        if self.length_width:
            _write_length(out, self.length_width, len(body), "union")
        self.selector._write(union.tag, out)
        out += body


FieldSpec = typing.Union[
    IntegerType,
    FloatType,
    BooleanType,
    EnumType,
    StringType,
    BytesType,
    ArrayType,
    StructType,
    UnionType,
]


def decode_payload(buf: bytes, schema: FieldSpec, strict: bool = True) -> PayloadValue:
    """
    decodes a SOMEIP payload according to `schema`.

    :param buf: the payload bytes
    :param schema: type of the payload, usually a :class:`StructType` of the method
        arguments or event fields
    :param strict: if False, undefined union types are returned as raw
        :class:`BytesValue`, undefined enum values and malformed strings or booleans
        are decoded best-effort, and trailing bytes are ignored. Each case issues a
        :class:`CodecWarning`.
    :raises IncompleteReadError: if `buf` ends in the middle of a field
    :raises PayloadSchemaMismatchError: if `buf` does not match `schema`
    :return: the decoded value
    """
    cur = _Cursor(memoryview(buf))
    value = schema._decode(cur, strict)
    if cur.remaining:
        if strict:
            raise PayloadSchemaMismatchError(
                f"{cur.remaining} trailing bytes after payload"
            )
        _lenient(f"ignored {cur.remaining} trailing bytes after payload")
    return value


def encode_payload(value: PayloadValue, schema: FieldSpec) -> bytes:
    """
    encodes `value` according to `schema`.

    :raises PayloadSchemaMismatchError: if `value` does not fit `schema`
    :return: the payload bytes
    """
    out = bytearray()
    schema._encode(value, out)
    return bytes(out)


class SchemaRegistry:
    """
    Read-only lookup of payload schemas by service and method (or event) id.

    :param schemas: mapping of (service id, method id) to the payload schema
    :param config: the codec configuration. :meth:`decode` is lenient if
        :attr:`CodecConfig.strict_validation` is False
    """

    def __init__(
        self,
        schemas: typing.Mapping[typing.Tuple[int, int], FieldSpec],
        config: CodecConfig = DEFAULT_CONFIG,
    ):
        self._schemas = dict(schemas)
        self.config = config

    def __len__(self) -> int:
        return len(self._schemas)

    def __contains__(self, key: object) -> bool:
        return key in self._schemas

    def get(self, service_id: int, method_id: int) -> typing.Optional[FieldSpec]:
        return self._schemas.get((service_id, method_id))

    def decode(
        self, message: SOMEIPHeader, strict: typing.Optional[bool] = None
    ) -> PayloadValue:
        """
        decodes the payload of `message` with the schema registered for its service
        and method id.

        :param strict: overrides :attr:`CodecConfig.strict_validation` of the
            registry configuration
        :raises KeyError: if no schema is registered for the message
        :raises IncompleteReadError: see :func:`decode_payload`
        :raises PayloadSchemaMismatchError: see :func:`decode_payload`
        """
        schema = self.get(message.service_id, message.method_id)
        if schema is None:
            raise KeyError(
                f"no schema for service 0x{message.service_id:04x}"
                f" method 0x{message.method_id:04x}"
            )
        if strict is None:
            strict = self.config.strict_validation
        return decode_payload(message.payload, schema, strict=strict)
