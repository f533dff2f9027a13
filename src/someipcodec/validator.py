"""
Structural checks on parsed (and, for TP, reassembled) messages.
"""
from __future__ import annotations

import typing

from someipcodec.config import CodecConfig, DEFAULT_CONFIG
from someipcodec.header import (
    LENGTH_COVERED,
    MESSAGE_TYPE_RESERVED_MASK,
    PROTOCOL_VERSION,
    ParseError,
    SOMEIPHeader,
    SOMEIPMessageType,
    SOMEIPReturnCode,
    TP_FLAG,
)
from someipcodec.tp import TP_RESERVED_MASK


class ValidationError(ParseError):
    pass


class ProtocolVersionError(ValidationError):
    pass


class ReservedBitsError(ValidationError):
    pass


class ReturnCodeMismatchError(ValidationError):
    pass


class LengthMismatchError(ValidationError):
    pass


_REQUEST_TYPES = (
    SOMEIPMessageType.REQUEST,
    SOMEIPMessageType.REQUEST_NO_RETURN,
    SOMEIPMessageType.NOTIFICATION,
)


def find_violations(
    message: SOMEIPHeader, config: CodecConfig = DEFAULT_CONFIG
) -> typing.List[ValidationError]:
    """
    checks `message` for structural problems. Checks on reserved bits are skipped if
    :attr:`CodecConfig.strict_validation` is off.

    :return: one error per violation found, empty if the message is valid
    """
    errors: typing.List[ValidationError] = []

    if message.protocol_version != PROTOCOL_VERSION:
        errors.append(
            ProtocolVersionError(
                f"protocol version 0x{message.protocol_version:02x},"
                f" expected 0x{PROTOCOL_VERSION:02x}"
            )
        )

    message_type = int(message.message_type)
    if config.strict_validation:
        if message_type & MESSAGE_TYPE_RESERVED_MASK:
            errors.append(
                ReservedBitsError(
                    f"reserved message type bits set: {message_type:#04x}"
                )
            )
        if message_type & TP_FLAG and len(message.payload) >= 4:
            # TP header is the first 4 payload bytes, reserved bits in the last one
            reserved = message.payload[3] & TP_RESERVED_MASK
            if reserved:
                errors.append(
                    ReservedBitsError(f"reserved TP header bits set: {reserved:#x}")
                )

    base_type = message_type & ~TP_FLAG
    if base_type == SOMEIPMessageType.ERROR:
        if message.return_code == SOMEIPReturnCode.E_OK:
            errors.append(
                ReturnCodeMismatchError("ERROR message with return code E_OK")
            )
    elif base_type in _REQUEST_TYPES:
        if message.return_code != SOMEIPReturnCode.E_OK:
            errors.append(
                ReturnCodeMismatchError(
                    f"{SOMEIPMessageType(base_type).name} message with return code"
                    f" {int(message.return_code):#04x}, expected E_OK"
                )
            )

    if message.length is not None:
        expected = LENGTH_COVERED + len(message.payload)
        if message.length != expected:
            errors.append(
                LengthMismatchError(
                    f"length field {message.length} does not match payload size,"
                    f" expected {expected}"
                )
            )

    return errors


def validate(message: SOMEIPHeader, config: CodecConfig = DEFAULT_CONFIG) -> None:
    """
    :raises ValidationError: the first violation found by :func:`find_violations`
    """
    errors = find_violations(message, config)
    if errors:
        raise errors[0]
