"""
Public encode and decode operations, combining framing, TP reassembly and
validation.

Stateless helpers (:func:`decode_frame`, :func:`encode_message`,
:func:`encode_segmented`) work on single messages. :class:`SOMEIPDecoder` keeps the
state of one connection: the framing buffer and the pending TP reassemblies.
Payloads are decoded on demand with :func:`decode_payload`, which takes its
leniency as the `strict` argument instead of a :class:`CodecConfig`; pass
`config.strict_validation` to follow a configuration, or use a
:class:`~someipcodec.payload.SchemaRegistry` built with the configuration.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import typing

from someipcodec.config import CodecConfig, DEFAULT_CONFIG
from someipcodec.framer import SOMEIPFramer, frame_size
from someipcodec.header import (
    HEADER_SIZE,
    IncompleteReadError,
    MalformedHeaderError,
    ParseError,
    SOMEIPHeader,
)
from someipcodec.payload import decode_payload, encode_payload
from someipcodec.tp import (
    DEFAULT_SEGMENT_SIZE,
    SegmentAssembler,
    SegmentationError,
    segment_message,
)
from someipcodec.validator import find_violations, validate

LOG = logging.getLogger("someipcodec")

__all__ = [
    "NeedMoreBytes",
    "DatagramError",
    "decode_frame",
    "encode_message",
    "encode_segmented",
    "decode_payload",
    "encode_payload",
    "SOMEIPDecoder",
    "SOMEIPReader",
]


@dataclasses.dataclass(frozen=True)
class NeedMoreBytes:
    """
    returned instead of a message when the input ends before the frame does

    :param needed: number of additional bytes required
    """

    needed: int


class DatagramError(ParseError):
    """
    Some messages of a datagram could not be decoded. Raised by
    :meth:`SOMEIPDecoder.feed_datagram` after the whole datagram was processed.

    :param errors: the errors, in datagram order
    :param messages: the complete messages decoded from the same datagram
    """

    def __init__(
        self,
        errors: typing.List[ParseError],
        messages: typing.List[SOMEIPHeader],
    ):
        super().__init__("; ".join(str(e) for e in errors))
        self.errors = errors
        self.messages = messages


def _check(
    message: SOMEIPHeader, config: CodecConfig, log: logging.Logger
) -> SOMEIPHeader:
    errors = find_violations(message, config)
    if not errors:
        return message
    if config.discard_invalid:
        raise errors[0]
    for error in errors:
        log.warning("forwarding invalid message (%s): %s", error, message)
    return dataclasses.replace(
        message, warnings=message.warnings + tuple(str(e) for e in errors)
    )


def _check_size(message: SOMEIPHeader, config: CodecConfig) -> None:
    if len(message.payload) > config.max_message_size:
        raise ValueError(
            f"payload size {len(message.payload)} exceeds"
            f" max_message_size {config.max_message_size}"
        )


def _parse(buf: bytes, config: CodecConfig) -> typing.Tuple[SOMEIPHeader, bytes]:
    return SOMEIPHeader.parse(
        buf,
        strict=config.strict_validation,
        preserve_unknown=config.preserve_unknown,
    )


def decode_frame(
    buf: bytes, config: CodecConfig = DEFAULT_CONFIG
) -> typing.Union[SOMEIPHeader, NeedMoreBytes]:
    """
    decodes the first SOMEIP message in `buf`. TP segments are returned as they are,
    use :class:`SOMEIPDecoder` to reassemble them. Bytes after the first message are
    ignored, the message's :attr:`~SOMEIPHeader.wire_size` tells where the next one
    starts.

    :raises MalformedHeaderError: if the header is invalid or declares a payload
        larger than :attr:`CodecConfig.max_message_size`
    :raises ValidationError: if the message fails validation and
        :attr:`CodecConfig.discard_invalid` is set
    :return: the message, or :class:`NeedMoreBytes` if `buf` ends before the frame
    """
    size = frame_size(buf, config)
    if size is None:
        return NeedMoreBytes(HEADER_SIZE - len(buf))
    if len(buf) < size:
        return NeedMoreBytes(size - len(buf))
    message, _ = _parse(buf[:size], config)
    return _check(message, config, LOG)


def encode_message(
    header: SOMEIPHeader,
    payload: typing.Optional[bytes] = None,
    config: CodecConfig = DEFAULT_CONFIG,
) -> bytes:
    """
    builds the wire representation of a message. The length field is always
    computed from the payload.

    :param header: the message header. Its payload is used if `payload` is None
    :param payload: the payload bytes
    :raises ValueError: if the payload is larger than
        :attr:`CodecConfig.max_message_size`
    :raises ValidationError: if :attr:`CodecConfig.strict_validation` is set and the
        message does not pass validation
    :raises struct.error: if any header field is out of range
    """
    message = dataclasses.replace(
        header,
        payload=header.payload if payload is None else bytes(payload),
        length=None,
    )
    _check_size(message, config)
    if config.strict_validation:
        validate(message, config)
    return message.build()


def encode_segmented(
    header: SOMEIPHeader,
    payload: typing.Optional[bytes] = None,
    max_segment_size: int = DEFAULT_SEGMENT_SIZE,
    config: CodecConfig = DEFAULT_CONFIG,
) -> typing.List[bytes]:
    """
    builds the wire representation of a message, split into TP segments if the
    payload is larger than `max_segment_size`.

    :raises ValueError: if the payload is larger than
        :attr:`CodecConfig.max_message_size`
    :raises ValidationError: see :func:`encode_message`
    :return: one buffer per SOMEIP message (segment) to send
    """
    message = dataclasses.replace(
        header,
        payload=header.payload if payload is None else bytes(payload),
        length=None,
    )
    _check_size(message, config)
    if len(message.payload) <= max_segment_size:
        return [encode_message(message, config=config)]
    return [
        encode_message(segment, config=config)
        for segment in segment_message(message, max_segment_size)
    ]


class SOMEIPDecoder:
    """
    Decoding state of one connection (or one UDP peer): buffers incomplete frames
    and TP segments until complete messages can be returned.

    Feed stream data with :meth:`feed` and take out messages with
    :meth:`read_message` or by iterating over the decoder. Errors are raised from
    the call that processes the offending frame; only that frame (or its TP
    reassembly) is dropped, so decoding may continue with the next call. A
    :exc:`~someipcodec.header.MalformedHeaderError` from the framer drops the
    buffered stream data, since the stream can not be resynchronized.

    :param config: the codec configuration
    :param clock: monotonic time source for TP timeouts
    :param logger: name of the logger
    """

    def __init__(
        self,
        config: CodecConfig = DEFAULT_CONFIG,
        clock: typing.Callable[[], float] = time.monotonic,
        logger: str = "someipcodec",
    ):
        self.config = config
        self.log = logging.getLogger(logger)
        self.framer = SOMEIPFramer(config, logger=logger)
        self.assembler = SegmentAssembler(config, clock=clock, logger=logger)

    @property
    def needed(self) -> int:
        """
        number of bytes missing to complete the next frame
        """
        return self.framer.needed

    def feed(self, data: bytes) -> None:
        self.framer.feed(data)

    def _process(self, message: SOMEIPHeader) -> typing.Optional[SOMEIPHeader]:
        message = _check(message, self.config, self.log)
        if not message.is_tp:
            return message
        assembled = self.assembler.feed(message)
        if assembled is None:
            return None
        return _check(assembled, self.config, self.log)

    def read_message(self) -> typing.Optional[SOMEIPHeader]:
        """
        returns the next complete message from the buffered stream data.

        :raises MalformedHeaderError: for invalid headers
        :raises SegmentationError: if a TP reassembly failed
        :raises ValidationError: for messages failing validation, if
            :attr:`CodecConfig.discard_invalid` is set
        :return: the message, or None if more data is needed
        """
        while True:
            frame = self.framer.next_frame()
            if frame is None:
                return None
            message, _ = _parse(frame, self.config)
            result = self._process(message)
            if result is not None:
                return result

    def __iter__(self) -> typing.Iterator[SOMEIPHeader]:
        while True:
            message = self.read_message()
            if message is None:
                return
            yield message

    def feed_datagram(self, data: bytes) -> typing.List[SOMEIPHeader]:
        """
        decodes all messages of one datagram. A datagram may carry several
        messages, each of which must be complete.

        A message that fails validation or TP reassembly does not stop the
        remaining messages from being decoded. An invalid or truncated header ends
        the datagram, since the following messages can not be located.

        :raises DatagramError: if any message failed, with
            :class:`~someipcodec.header.MalformedHeaderError`,
            :class:`~someipcodec.tp.SegmentationError` or
            :class:`~someipcodec.validator.ValidationError` (if
            :attr:`CodecConfig.discard_invalid` is set) in
            :attr:`DatagramError.errors` and the successfully decoded messages in
            :attr:`DatagramError.messages`
        :return: the complete messages, with TP messages reassembled
        """
        messages: typing.List[SOMEIPHeader] = []
        errors: typing.List[ParseError] = []
        while data:
            try:
                frame_size(data, self.config)
                message, data = _parse(data, self.config)
            except IncompleteReadError as exc:
                errors.append(
                    MalformedHeaderError(f"truncated SOMEIP message in datagram: {exc}")
                )
                break
            except MalformedHeaderError as exc:
                errors.append(exc)
                break
            try:
                result = self._process(message)
            except ParseError as exc:
                errors.append(exc)
                continue
            if result is not None:
                messages.append(result)
        if errors:
            raise DatagramError(errors, messages) from errors[0]
        return messages

    def expire(self) -> typing.List[SegmentationError]:
        """
        drops timed out TP reassemblies, see :meth:`SegmentAssembler.expire`
        """
        return self.assembler.expire()

    def close(self) -> None:
        """
        releases all buffered data and pending TP reassemblies
        """
        pending = self.framer.pending
        self.framer.clear()
        cancelled = self.assembler.cancel_all()
        if pending or cancelled:
            self.log.debug(
                "closed with %d buffered bytes and %d TP reassemblies",
                pending,
                cancelled,
            )


class SOMEIPReader:
    """
    Wrapper class around :class:`asyncio.StreamReader` that returns parsed and
    reassembled :class:`SOMEIPHeader` from :meth:`read`
    """

    chunk_size: typing.ClassVar[int] = 4096

    def __init__(
        self,
        reader: asyncio.StreamReader,
        decoder: typing.Optional[SOMEIPDecoder] = None,
    ):
        self.reader = reader
        self.decoder = decoder if decoder is not None else SOMEIPDecoder()

    async def read(self) -> typing.Optional[SOMEIPHeader]:
        """
        reads the next complete message. Waits until enough data is available.

        :raises IncompleteReadError: if the stream ended in the middle of a message
        :return: the message, or None at the end of the stream
        """
        while True:
            message = self.decoder.read_message()
            if message is not None:
                return message
            data = await self.reader.read(max(self.decoder.needed, self.chunk_size))
            if not data:
                if self.decoder.framer.pending:
                    raise IncompleteReadError(
                        "stream ended inside a SOMEIP message",
                        needed=self.decoder.needed,
                    )
                return None
            self.decoder.feed(data)

    def at_eof(self):
        return self.reader.at_eof() and not self.decoder.framer.pending
