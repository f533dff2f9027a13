"""
SOME/IP-TP: splitting large messages into segments and reassembling them.

Each TP segment is a regular SOMEIP message with the TP flag (0x20) set in its
message type. Its payload starts with a 4-byte TP header carrying the offset of the
segment data in the reassembled payload (top 28 bits, in units of 16 bytes) and a
more-segments flag (bit 0).
"""
from __future__ import annotations

import collections
import dataclasses
import logging
import struct
import time
import typing

from someipcodec.config import CodecConfig, DEFAULT_CONFIG
from someipcodec.header import (
    ParseError,
    SOMEIPHeader,
    SOMEIPMessageType,
    TP_FLAG,
    LENGTH_COVERED,
)

LOG = logging.getLogger("someipcodec.tp")

TP_OFFSET_UNIT = 16
TP_OFFSET_MASK = 0xFFFFFFF0
TP_RESERVED_MASK = 0x0E
TP_MORE_SEGMENTS = 0x01
# default maximum segment data length for UDP transport
DEFAULT_SEGMENT_SIZE = 1392

_T_KEY = typing.Tuple[int, int, int, int]


class SegmentationError(ParseError):
    """
    A TP reassembly failed and was dropped.

    :param key: the reassembly key (service, method, client, session), if known
    """

    def __init__(self, msg: str, key: typing.Optional[_T_KEY] = None):
        super().__init__(msg)
        self.key = key


def _with_tp(message_type: int) -> typing.Union[SOMEIPMessageType, int]:
    value = int(message_type) | TP_FLAG
    try:
        return SOMEIPMessageType(value)
    except ValueError:
        return value


def _without_tp(message_type: int) -> typing.Union[SOMEIPMessageType, int]:
    value = int(message_type) & ~TP_FLAG
    try:
        return SOMEIPMessageType(value)
    except ValueError:
        return value


def reassembly_key(message: SOMEIPHeader) -> _T_KEY:
    return (
        message.service_id,
        message.method_id,
        message.client_id,
        message.session_id,
    )


@dataclasses.dataclass(frozen=True)
class SOMEIPTPSegment:
    """
    Represents the TP header and data of one segment.

    :param offset: position of :attr:`data` in the reassembled payload, in bytes.
        Must be a multiple of :data:`TP_OFFSET_UNIT`
    :param more_segments: False for the last segment of a message
    :param data: the segment data
    :param reserved: reserved bits of the TP header as seen on the wire
    """

    __format: typing.ClassVar[struct.Struct] = struct.Struct("!I")
    offset: int
    more_segments: bool
    data: bytes = b""
    reserved: int = dataclasses.field(default=0, compare=False)

    @property
    def end(self) -> int:
        return self.offset + len(self.data)

    @classmethod
    def parse(cls, buf: bytes) -> SOMEIPTPSegment:
        """
        parses a TP segment from the payload of a TP message

        :param buf: the payload of a SOMEIP message with TP flag
        :raises SegmentationError: if `buf` is too short for a TP header
        :return: the parsed segment
        """
        if len(buf) < cls.__format.size:
            raise SegmentationError(
                f"TP payload too short for TP header, got only {len(buf)} bytes"
            )
        (value,) = cls.__format.unpack_from(buf)
        return cls(
            offset=value & TP_OFFSET_MASK,
            more_segments=bool(value & TP_MORE_SEGMENTS),
            data=bytes(buf[cls.__format.size :]),
            reserved=value & TP_RESERVED_MASK,
        )

    def build(self) -> bytes:
        """
        builds the payload of a TP message for this segment.

        :raises ValueError: if :attr:`offset` is not a multiple of 16
        :raises struct.error: if :attr:`offset` is out of range
        :return: the byte representation
        """
        if self.offset % TP_OFFSET_UNIT:
            raise ValueError(
                f"TP offset must be a multiple of {TP_OFFSET_UNIT}, got {self.offset}"
            )
        value = self.offset | (self.reserved & TP_RESERVED_MASK)
        if self.more_segments:
            value |= TP_MORE_SEGMENTS
        return self.__format.pack(value) + self.data


def segment_message(
    message: SOMEIPHeader, max_segment_size: int = DEFAULT_SEGMENT_SIZE
) -> typing.List[SOMEIPHeader]:
    """
    splits `message` into TP segments.

    :param message: the message to split. Its message type must not have the TP flag
    :param max_segment_size: maximum number of payload bytes per segment, rounded down
        to a multiple of 16
    :raises ValueError: if `message` already is a TP message or `max_segment_size`
        is below 16
    :return: TP messages, each carrying one segment
    """
    if message.is_tp:
        raise ValueError("message is already a TP segment")
    if max_segment_size < TP_OFFSET_UNIT:
        raise ValueError(
            f"max_segment_size must be at least {TP_OFFSET_UNIT},"
            f" got {max_segment_size}"
        )
    chunk = max_segment_size - max_segment_size % TP_OFFSET_UNIT
    message_type = _with_tp(message.message_type)
    payload = message.payload

    segments = []
    for offset in range(0, max(len(payload), 1), chunk):
        segment = SOMEIPTPSegment(
            offset=offset,
            more_segments=offset + chunk < len(payload),
            data=payload[offset : offset + chunk],
        )
        segments.append(
            dataclasses.replace(
                message,
                message_type=message_type,
                payload=segment.build(),
                length=None,
            )
        )
    return segments


class _Reassembly:
    def __init__(self, header: SOMEIPHeader, now: float):
        # first segment's header, used for the reassembled message
        self.header = header
        self.data = bytearray()
        # out-of-order segments by offset
        self.pending: typing.Dict[int, bytes] = {}
        self.total: typing.Optional[int] = None
        self.size = 0
        self.updated = now

    def describe(self) -> str:
        gaps = []
        frontier = len(self.data)
        for offset in sorted(self.pending):
            if offset > frontier:
                gaps.append(f"{frontier}:{offset}")
            frontier = max(frontier, offset + len(self.pending[offset]))
        if self.total is None:
            gaps.append(f"{frontier}:<unknown>")
        elif frontier < self.total:
            gaps.append(f"{frontier}:{self.total}")
        total = "unknown" if self.total is None else self.total
        return (
            f"{len(self.data)} contiguous bytes of {total},"
            f" missing [{', '.join(gaps)}]"
        )


class SegmentAssembler:
    """
    Reassembles TP segments into complete messages. One instance belongs to one
    connection (or one UDP peer); it is not safe to feed it from concurrent flows.

    Segments may arrive in any order. A reassembly is finished once all data up to
    the end of the last segment (more-segments flag cleared) was received without
    gaps. A reassembly with a gap is never finished, even after its last segment
    arrived: it is dropped once it idled for :attr:`CodecConfig.segment_timeout`
    seconds, or explicitly with :meth:`cancel`. Errors for gaps are only reported
    by :meth:`expire`, which should be called periodically.

    Reassemblies that are dropped while feeding a segment, because they timed out
    or were evicted to stay within :attr:`CodecConfig.max_reassemblies`, are also
    reported by the next :meth:`expire` call. At most `max_reassemblies` such
    errors are kept.

    :param config: the codec configuration
    :param clock: monotonic time source in seconds
    :param logger: name of the parent logger
    """

    def __init__(
        self,
        config: CodecConfig = DEFAULT_CONFIG,
        clock: typing.Callable[[], float] = time.monotonic,
        logger: str = "someipcodec",
    ):
        self.config = config
        self.clock = clock
        self.log = logging.getLogger(logger).getChild("tp")
        self._entries: typing.OrderedDict[
            _T_KEY, _Reassembly
        ] = collections.OrderedDict()
        self._dropped: typing.Deque[SegmentationError] = collections.deque(
            maxlen=config.max_reassemblies
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def _fail(self, key: _T_KEY, msg: str) -> SegmentationError:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self.log.warning(
                "dropping TP reassembly %s: %s (%s)",
                _fmt_key(key),
                msg,
                entry.describe(),
            )
        else:
            self.log.warning("dropping TP segment %s: %s", _fmt_key(key), msg)
        return SegmentationError(f"TP reassembly {_fmt_key(key)}: {msg}", key=key)

    def _create(self, key: _T_KEY, message: SOMEIPHeader, now: float) -> _Reassembly:
        while len(self._entries) >= self.config.max_reassemblies:
            old_key, old = self._entries.popitem(last=False)
            msg = (
                f"TP reassembly {_fmt_key(old_key)} evicted, too many reassemblies:"
                f" {old.describe()}"
            )
            self.log.warning("%s", msg)
            self._dropped.append(SegmentationError(msg, key=old_key))
        entry = _Reassembly(dataclasses.replace(message, payload=b""), now)
        self._entries[key] = entry
        return entry

    def feed(self, message: SOMEIPHeader) -> typing.Optional[SOMEIPHeader]:
        """
        adds one TP segment.

        :param message: a SOMEIP message with TP flag
        :raises ValueError: if `message` is not a TP message
        :raises SegmentationError: if the segment is inconsistent with previously
            received segments for the same message (duplicate or overlapping
            offsets, data beyond the last segment, changed header fields), the
            reassembly grew beyond the configured limits, or, in strict mode, the
            segment has reserved bits set or a bad length. The reassembly is dropped.
        :return: the reassembled message (TP flag cleared) once all segments were
            received, None otherwise
        """
        if not message.is_tp:
            raise ValueError(f"not a TP message: {message}")

        now = self.clock()
        key = reassembly_key(message)

        try:
            segment = SOMEIPTPSegment.parse(message.payload)
        except SegmentationError as exc:
            raise self._fail(key, str(exc)) from exc

        entry = self._entries.get(key)
        if entry is not None and now - entry.updated >= self.config.segment_timeout:
            msg = f"TP reassembly {_fmt_key(key)} timed out: {entry.describe()}"
            self.log.warning("%s, starting over", msg)
            self._dropped.append(SegmentationError(msg, key=key))
            del self._entries[key]
            entry = None

        if entry is None:
            entry = self._create(key, message, now)
        else:
            self._entries.move_to_end(key)
            first = entry.header
            if (
                first.message_type != message.message_type
                or first.interface_version != message.interface_version
                or first.return_code != message.return_code
            ):
                raise self._fail(key, f"header changed between segments: {message}")

        self._add(key, entry, segment)
        entry.updated = now

        if entry.total is None or len(entry.data) != entry.total:
            return None

        del self._entries[key]
        self.log.debug(
            "TP reassembly %s complete, %d bytes", _fmt_key(key), len(entry.data)
        )
        return dataclasses.replace(
            entry.header,
            message_type=_without_tp(entry.header.message_type),
            payload=bytes(entry.data),
            length=len(entry.data) + LENGTH_COVERED,
        )

    def _add(self, key: _T_KEY, entry: _Reassembly, segment: SOMEIPTPSegment) -> None:
        if self.config.strict_validation:
            if segment.reserved:
                raise self._fail(
                    key, f"reserved TP header bits set: {segment.reserved:#x}"
                )
            if segment.more_segments and len(segment.data) % TP_OFFSET_UNIT:
                raise self._fail(
                    key,
                    f"segment at offset {segment.offset} has length"
                    f" {len(segment.data)}, not a multiple of {TP_OFFSET_UNIT}",
                )
        if segment.more_segments and not segment.data:
            raise self._fail(key, f"empty segment at offset {segment.offset}")

        frontier = len(entry.data)
        if segment.offset < frontier:
            raise self._fail(
                key, f"duplicate or overlapping segment at offset {segment.offset}"
            )
        for offset, data in entry.pending.items():
            if offset < segment.end and segment.offset < offset + len(data):
                raise self._fail(
                    key, f"duplicate or overlapping segment at offset {segment.offset}"
                )

        if not segment.more_segments:
            if entry.total is not None:
                raise self._fail(
                    key,
                    f"second last segment at offset {segment.offset},"
                    f" message already ended at {entry.total}",
                )
            received_end = max(
                [frontier] + [o + len(d) for o, d in entry.pending.items()]
            )
            if received_end > segment.end:
                raise self._fail(
                    key,
                    f"last segment ends at {segment.end},"
                    f" but data up to {received_end} was received",
                )
            entry.total = segment.end
        elif entry.total is not None and segment.end > entry.total:
            raise self._fail(
                key,
                f"segment at offset {segment.offset} exceeds message end {entry.total}",
            )

        if entry.size + len(segment.data) > self.config.max_message_size:
            raise self._fail(
                key,
                f"reassembled size {entry.size + len(segment.data)} exceeds"
                f" max_message_size {self.config.max_message_size}",
            )

        if segment.offset > frontier:
            if len(entry.pending) >= self.config.max_pending_segments:
                raise self._fail(
                    key,
                    f"more than {self.config.max_pending_segments}"
                    " out-of-order segments",
                )
            entry.pending[segment.offset] = segment.data
        else:
            entry.data += segment.data
            while len(entry.data) in entry.pending:
                entry.data += entry.pending.pop(len(entry.data))
        entry.size += len(segment.data)

    def expire(
        self, now: typing.Optional[float] = None
    ) -> typing.List[SegmentationError]:
        """
        drops all reassemblies that did not receive a segment for
        :attr:`CodecConfig.segment_timeout` seconds.

        :param now: the current time, defaults to the assembler's clock
        :return: one error per dropped reassembly, describing the missing data.
            Includes reassemblies dropped by :meth:`feed` since the last call.
        """
        if now is None:
            now = self.clock()
        errors = list(self._dropped)
        self._dropped.clear()
        for key, entry in list(self._entries.items()):
            if now - entry.updated < self.config.segment_timeout:
                continue
            del self._entries[key]
            msg = f"TP reassembly {_fmt_key(key)} timed out: {entry.describe()}"
            self.log.warning("%s", msg)
            errors.append(SegmentationError(msg, key=key))
        return errors

    def cancel(self, key: _T_KEY) -> bool:
        """
        drops the reassembly for `key`, e.g. when its connection was closed.

        :return: True if there was a reassembly for `key`
        """
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self.log.debug(
            "cancelled TP reassembly %s (%s)", _fmt_key(key), entry.describe()
        )
        return True

    def cancel_all(self) -> int:
        """
        drops all reassemblies and errors not yet reported by :meth:`expire`.

        :return: the number of dropped reassemblies
        """
        count = len(self._entries)
        self._entries.clear()
        self._dropped.clear()
        return count


def _fmt_key(key: _T_KEY) -> str:
    return "service=0x{:04x}/method=0x{:04x}/client=0x{:04x}/session=0x{:04x}".format(
        *key
    )
