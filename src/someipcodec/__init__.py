"""
SOME/IP message codec.

* :mod:`someipcodec.header`: the fixed 16 byte message header
* :mod:`someipcodec.framer`: splitting byte streams into messages
* :mod:`someipcodec.tp`: SOME/IP-TP segmentation and reassembly
* :mod:`someipcodec.validator`: structural checks on messages
* :mod:`someipcodec.payload`: schema driven payload serialization
* :mod:`someipcodec.codec`: the public encode and decode operations
"""
from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("someipcodec")
except PackageNotFoundError:  # pragma: nocover
    # package is not installed
    __version__ = "unknown"
