from __future__ import annotations

import logging
import typing

from someipcodec.config import CodecConfig, DEFAULT_CONFIG
from someipcodec.header import (
    HEADER_SIZE,
    LENGTH_COVERED,
    MalformedHeaderError,
    peek_length,
)


def frame_size(
    buf: bytes, config: CodecConfig = DEFAULT_CONFIG
) -> typing.Optional[int]:
    """
    computes the size of the SOMEIP frame at the start of `buf` from its length
    field.

    :raises MalformedHeaderError: if the declared length is below 8, or the declared
        payload size exceeds :attr:`CodecConfig.max_message_size`
    :return: the frame size in bytes, or None if the length field is not complete
    """
    length = peek_length(buf)
    if length is None:
        return None
    if length < LENGTH_COVERED:
        raise MalformedHeaderError(f"SOMEIP length must be at least 8, got {length}")
    if length - LENGTH_COVERED > config.max_message_size:
        raise MalformedHeaderError(
            f"declared payload size {length - LENGTH_COVERED} exceeds"
            f" max_message_size {config.max_message_size}"
        )
    return LENGTH_COVERED + length


class SOMEIPFramer:
    """
    Splits a byte stream (usually TCP) into complete SOMEIP frames. Bytes can be
    passed in chunks of any size using :meth:`feed`; complete frames are taken out
    with :meth:`next_frame` or by iterating over the framer.

    Never blocks: if no complete frame is buffered, :attr:`needed` tells how many
    more bytes are required.
    """

    def __init__(
        self, config: CodecConfig = DEFAULT_CONFIG, logger: str = "someipcodec"
    ):
        self.config = config
        self.log = logging.getLogger(logger).getChild("framer")
        self._buf = bytearray()

    @property
    def pending(self) -> int:
        """
        number of buffered bytes that do not form a complete frame yet
        """
        return len(self._buf)

    @property
    def needed(self) -> int:
        """
        number of bytes missing to complete the next frame. If the length field was
        not received yet, this counts the bytes missing for a full header.
        """
        size = self._frame_size()
        if size is None:
            return HEADER_SIZE - len(self._buf)
        return max(size - len(self._buf), 0)

    def feed(self, data: bytes) -> None:
        self._buf += data

    def clear(self) -> None:
        self._buf.clear()

    def _frame_size(self) -> typing.Optional[int]:
        try:
            return frame_size(self._buf, self.config)
        except MalformedHeaderError:
            # a stream can not be resynchronized after a corrupt length
            self.log.warning("dropping %d buffered bytes", len(self._buf))
            self._buf.clear()
            raise

    def next_frame(self) -> typing.Optional[bytes]:
        """
        removes and returns the next complete frame from the buffer.

        :raises MalformedHeaderError: if the declared length is below 8 or above the
            configured maximum message size. The buffered data is dropped.
        :return: the frame (header and payload bytes), or None if more data is needed
        """
        size = self._frame_size()
        if size is None or len(self._buf) < size:
            return None
        frame = bytes(self._buf[:size])
        del self._buf[:size]
        self.log.debug("framed %d bytes, %d bytes pending", size, len(self._buf))
        return frame

    def __iter__(self) -> typing.Iterator[bytes]:
        while True:
            frame = self.next_frame()
            if frame is None:
                return
            yield frame
