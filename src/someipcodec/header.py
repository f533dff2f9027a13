from __future__ import annotations

import dataclasses
import enum
import struct
import typing


PROTOCOL_VERSION = 1
HEADER_SIZE = 16
# number of header bytes covered by the length field
LENGTH_COVERED = 8
TP_FLAG = 0x20
MESSAGE_TYPE_RESERVED_MASK = 0x5C

_LENGTH = struct.Struct("!I")


class ParseError(RuntimeError):
    pass


class IncompleteReadError(ParseError):
    """
    Not enough bytes to finish parsing. Recoverable by supplying more input.

    :param needed: number of additional bytes required (0 if unknown)
    """

    def __init__(self, msg: str, needed: int = 0):
        super().__init__(msg)
        self.needed = needed


class MalformedHeaderError(ParseError):
    pass


class UnsupportedMessageTypeError(MalformedHeaderError):
    pass


class SOMEIPMessageType(enum.IntEnum):
    REQUEST = 0x00
    REQUEST_NO_RETURN = 0x01
    NOTIFICATION = 0x02
    RESPONSE = 0x80
    ERROR = 0x81
    TP_REQUEST = 0x20
    TP_REQUEST_NO_RETURN = 0x21
    TP_NOTIFICATION = 0x22
    TP_RESPONSE = 0xA0
    TP_ERROR = 0xA1


class SOMEIPReturnCode(enum.IntEnum):
    E_OK = 0
    E_NOT_OK = 1
    E_UNKNOWN_SERVICE = 2
    E_UNKNOWN_METHOD = 3
    E_NOT_READY = 4
    E_NOT_REACHABLE = 5
    E_TIMEOUT = 6
    E_WRONG_PROTOCOL_VERSION = 7
    E_WRONG_INTERFACE_VERSION = 8
    E_MALFORMED_MESSAGE = 9
    E_WRONG_MESSAGE_TYPE = 10
    E_E2E_REPEATED = 0x0B
    E_E2E_WRONG_SEQUENCE = 0x0C
    E_E2E = 0x0D
    E_E2E_NOT_AVAILABLE = 0x0E
    E_E2E_NO_NEW_DATA = 0x0F


# return codes reserved for errors specific to a service or method
SERVICE_RETURN_CODES = range(0x20, 0x5F)

_T_MESSAGE_TYPE = typing.Union[SOMEIPMessageType, int]
_T_RETURN_CODE = typing.Union[SOMEIPReturnCode, int]


def _name(value: typing.Union[enum.IntEnum, int]) -> str:
    if isinstance(value, enum.IntEnum):
        return value.name
    return f"0x{value:02x}"


def is_tp(message_type: int) -> bool:
    return bool(message_type & TP_FLAG)


def peek_length(buf: bytes) -> typing.Optional[int]:
    """
    returns the length field of a SOMEIP header at the start of `buf`, or None if
    `buf` is too short to contain it.
    """
    if len(buf) < 8:
        return None
    return _LENGTH.unpack_from(buf, 4)[0]


@dataclasses.dataclass(frozen=True)
class SOMEIPHeader:
    """
    Represents a top-level SOMEIP packet (header and payload).

    :param length: the length field as seen on the wire. Only set on parsed
        instances, :meth:`build` always recomputes it from :attr:`payload`.
    :param warnings: problems that were tolerated while decoding in lenient mode
    """

    __format: typing.ClassVar[struct.Struct] = struct.Struct("!HHIHHBBBB")
    service_id: int
    method_id: int
    client_id: int
    session_id: int
    interface_version: int
    message_type: _T_MESSAGE_TYPE
    protocol_version: int = dataclasses.field(default=PROTOCOL_VERSION)
    return_code: _T_RETURN_CODE = dataclasses.field(default=SOMEIPReturnCode.E_OK)
    payload: bytes = dataclasses.field(default=b"")
    length: typing.Optional[int] = dataclasses.field(
        default=None, compare=False, repr=False
    )
    warnings: typing.Tuple[str, ...] = dataclasses.field(default=(), compare=False)

    @property
    def description(self):  # pragma: nocover
        return f"""service: 0x{self.service_id:04x}
method: 0x{self.method_id:04x}
client: 0x{self.client_id:04x}
session: 0x{self.session_id:04x}
protocol: {self.protocol_version}
interface: 0x{self.interface_version:02x}
message: {_name(self.message_type)}
return code: {_name(self.return_code)}
payload: {len(self.payload)} bytes"""

    def __str__(self):  # pragma: nocover
        return (
            f"service=0x{self.service_id:04x}, method=0x{self.method_id:04x},"
            f" client=0x{self.client_id:04x}, session=0x{self.session_id:04x},"
            f" protocol={self.protocol_version},"
            f" interface=0x{self.interface_version:02x},"
            f" message={_name(self.message_type)},"
            f" returncode={_name(self.return_code)},"
            f" payload: {len(self.payload)} bytes"
        )

    @property
    def message_id(self) -> int:
        return (self.service_id << 16) | self.method_id

    @property
    def request_id(self) -> int:
        """
        client and session id, used by callers to correlate responses to requests
        """
        return (self.client_id << 16) | self.session_id

    @property
    def is_tp(self) -> bool:
        return is_tp(self.message_type)

    @property
    def wire_size(self) -> int:
        """
        number of bytes this message occupies on the wire
        """
        return HEADER_SIZE + len(self.payload)

    @classmethod
    def parse_header(
        cls, buf: bytes, strict: bool = True, preserve_unknown: bool = True
    ) -> typing.Tuple[SOMEIPHeader, int]:
        """
        parses the fixed SOMEIP header at the start of `buf`, without the payload.

        :param buf: buffer starting with a SOMEIP header
        :param strict: reject message types and return codes outside the known
            enumerations. If False, unknown values are kept as plain ints and a
            warning is recorded on the returned header
        :param preserve_unknown: only used if `strict` is False. If this is also
            False, unknown values are rejected as in strict mode
        :raises IncompleteReadError: if `buf` is shorter than one SOMEIP header
        :raises UnsupportedMessageTypeError: for unknown message types
        :raises MalformedHeaderError: if the header contained invalid data, such as a
            wrong protocol version, an unknown return code or a length below 8
        :return: tuple (H, N) where H is the :class:`SOMEIPHeader` instance with empty
            payload and N is the number of payload bytes following the header
        """
        if len(buf) < cls.__format.size:
            raise IncompleteReadError(
                f"can not parse SOMEIP header, got only {len(buf)} bytes",
                needed=cls.__format.size - len(buf),
            )
        sid, mid, size, cid, sessid, pv, iv, mt_b, rc_b = cls.__format.unpack_from(buf)
        if pv != PROTOCOL_VERSION:
            raise MalformedHeaderError(
                f"bad someip protocol version 0x{pv:02x},"
                f" expected 0x{PROTOCOL_VERSION:02x}"
            )
        if size < LENGTH_COVERED:
            raise MalformedHeaderError(f"SOMEIP length must be at least 8, got {size}")

        lenient = not strict and preserve_unknown
        warnings: typing.List[str] = []

        mt: _T_MESSAGE_TYPE
        try:
            mt = SOMEIPMessageType(mt_b)
        except ValueError as exc:
            if not lenient:
                raise UnsupportedMessageTypeError(
                    f"bad someip message type {mt_b:#x}"
                ) from exc
            mt = mt_b
            warnings.append(f"unknown message type {mt_b:#x}")

        rc: _T_RETURN_CODE
        try:
            rc = SOMEIPReturnCode(rc_b)
        except ValueError as exc:
            if rc_b in SERVICE_RETURN_CODES:
                rc = rc_b
            elif lenient:
                rc = rc_b
                warnings.append(f"unknown return code {rc_b:#x}")
            else:
                raise MalformedHeaderError(f"bad someip return code {rc_b:#x}") from exc

        header = cls(
            service_id=sid,
            method_id=mid,
            client_id=cid,
            session_id=sessid,
            protocol_version=pv,
            interface_version=iv,
            message_type=mt,
            return_code=rc,
            length=size,
            warnings=tuple(warnings),
        )
        return header, size - LENGTH_COVERED

    @classmethod
    def parse(
        cls, buf: bytes, strict: bool = True, preserve_unknown: bool = True
    ) -> typing.Tuple[SOMEIPHeader, bytes]:
        """
        parses SOMEIP packet in `buf`

        :param buf: buffer containing SOMEIP packet
        :param strict: see :meth:`parse_header`
        :param preserve_unknown: see :meth:`parse_header`
        :raises IncompleteReadError: if the buffer did not contain enough data to unpack
            the SOMEIP packet. Either there was less data than one SOMEIP header length,
            or the size in the header was too big
        :raises MalformedHeaderError: if the packet contained invalid data, such as an
            unknown message type or return code
        :return: tuple (S, B) where S is the parsed :class:`SOMEIPHeader` instance and B
            is the unparsed rest of `buf`
        """
        header, payload_size = cls.parse_header(
            buf, strict=strict, preserve_unknown=preserve_unknown
        )
        buf_rest = buf[cls.__format.size :]
        if len(buf_rest) < payload_size:
            raise IncompleteReadError(
                f"packet too short, expected {HEADER_SIZE + payload_size},"
                f" got {len(buf)}",
                needed=payload_size - len(buf_rest),
            )
        payload_b = bytes(buf_rest[:payload_size])
        return dataclasses.replace(header, payload=payload_b), buf_rest[payload_size:]

    def build(self) -> bytes:
        """
        builds the byte representation of this SOMEIP packet. The length field is
        computed from the payload, a stored :attr:`length` is ignored.

        :raises struct.error: if any attribute was out of range for serialization
        :return: the byte representation
        """
        size = len(self.payload) + LENGTH_COVERED
        hdr = self.__format.pack(
            self.service_id,
            self.method_id,
            size,
            self.client_id,
            self.session_id,
            self.protocol_version,
            self.interface_version,
            int(self.message_type),
            int(self.return_code),
        )
        return hdr + self.payload
