"""
Codec settings shared by :mod:`someipcodec.framer`, :mod:`someipcodec.tp`,
:mod:`someipcodec.validator` and :mod:`someipcodec.codec`.

Loading these settings from files or the environment is left to the application.
"""
from __future__ import annotations

import dataclasses
import typing


_ALIASES = {
    "maxMessageSize": "max_message_size",
    "maxPendingSegments": "max_pending_segments",
    "segmentTimeout": "segment_timeout",
    "strictValidation": "strict_validation",
    "preserveUnknown": "preserve_unknown",
    "discardInvalid": "discard_invalid",
    "maxReassemblies": "max_reassemblies",
}


@dataclasses.dataclass(frozen=True)
class CodecConfig:
    """
    Immutable codec configuration. One instance may be shared by any number of
    connections.

    :param max_message_size: upper bound for the payload size of a single message,
        in bytes. Applies to the declared length of a frame and to the accumulated
        size of a TP reassembly
    :param max_pending_segments: how many out-of-order TP segments one reassembly
        may buffer
    :param segment_timeout: seconds after which an idle TP reassembly is dropped
    :param strict_validation: reject unknown enum values and set reserved bits. If
        False, those are tolerated and recorded as warnings
    :param preserve_unknown: only relevant if `strict_validation` is False. Keep
        unknown message types and return codes as raw values (True) or reject
        them like strict mode does (False)
    :param discard_invalid: raise on messages that fail validation (True), or
        forward them with the violation recorded in
        :attr:`~someipcodec.header.SOMEIPHeader.warnings` (False)
    :param max_reassemblies: number of concurrent TP reassemblies per connection,
        the least recently updated one is dropped when a new one would exceed it
    """

    max_message_size: int = 1024 * 1024
    max_pending_segments: int = 64
    segment_timeout: float = 5.0
    strict_validation: bool = True
    preserve_unknown: bool = True
    discard_invalid: bool = True
    max_reassemblies: int = 32

    def __post_init__(self):
        if self.max_message_size <= 0:
            raise ValueError(
                f"max_message_size must be positive, got {self.max_message_size}"
            )
        if self.max_pending_segments <= 0:
            raise ValueError(
                "max_pending_segments must be positive,"
                f" got {self.max_pending_segments}"
            )
        if self.segment_timeout <= 0:
            raise ValueError(
                f"segment_timeout must be positive, got {self.segment_timeout}"
            )
        if self.max_reassemblies <= 0:
            raise ValueError(
                f"max_reassemblies must be positive, got {self.max_reassemblies}"
            )

    @classmethod
    def from_dict(cls, options: typing.Mapping[str, typing.Any]) -> CodecConfig:
        """
        create a configuration from a mapping of option names to values. Option names
        may be given as attribute names (``max_message_size``) or in camel case
        (``maxMessageSize``).

        :raises ValueError: on unknown option names or invalid values
        """
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs = {}
        for key, value in options.items():
            name = _ALIASES.get(key, key)
            if name not in known:
                raise ValueError(f"unknown codec option {key!r}")
            if name in kwargs:
                raise ValueError(f"codec option {key!r} given more than once")
            kwargs[name] = value
        return cls(**kwargs)


DEFAULT_CONFIG = CodecConfig()
