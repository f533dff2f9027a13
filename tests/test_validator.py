import logging
import unittest
from dataclasses import replace

import someipcodec.header as hdr
import someipcodec.validator as val
from someipcodec.config import CodecConfig

logging.captureWarnings(True)
logging.basicConfig(level=logging.DEBUG)


LENIENT = CodecConfig(strict_validation=False)


class TestValidator(unittest.TestCase):
    message = hdr.SOMEIPHeader(
        service_id=0x1234,
        method_id=0x0001,
        client_id=0x0010,
        session_id=0x0001,
        interface_version=1,
        message_type=hdr.SOMEIPMessageType.REQUEST,
        payload=b"\x01\x02",
    )

    def _violations(self, config=CodecConfig(), **kwargs):
        return val.find_violations(replace(self.message, **kwargs), config)

    def test_valid(self):
        self.assertEqual(val.find_violations(self.message), [])
        val.validate(self.message)
        self.assertEqual(self._violations(length=10), [])

        parsed, _ = hdr.SOMEIPHeader.parse(self.message.build())
        self.assertEqual(val.find_violations(parsed), [])

    def test_protocol_version(self):
        (error,) = self._violations(protocol_version=2)
        self.assertIsInstance(error, val.ProtocolVersionError)
        (error,) = self._violations(LENIENT, protocol_version=2)
        self.assertIsInstance(error, val.ProtocolVersionError)

    def test_message_type_reserved_bits(self):
        (error,) = self._violations(message_type=0x44)
        self.assertIsInstance(error, val.ReservedBitsError)
        self.assertEqual(self._violations(LENIENT, message_type=0x44), [])

    def test_tp_reserved_bits(self):
        payload = b"\x00\x00\x00\x05" + b"x" * 16
        kwargs = dict(message_type=hdr.SOMEIPMessageType.TP_REQUEST, payload=payload)
        (error,) = self._violations(**kwargs)
        self.assertIsInstance(error, val.ReservedBitsError)
        self.assertEqual(self._violations(LENIENT, **kwargs), [])

        kwargs["payload"] = b"\x00\x00\x00\x01" + b"x" * 16
        self.assertEqual(self._violations(**kwargs), [])

    def test_error_with_ok(self):
        (error,) = self._violations(message_type=hdr.SOMEIPMessageType.ERROR)
        self.assertIsInstance(error, val.ReturnCodeMismatchError)
        (error,) = self._violations(message_type=hdr.SOMEIPMessageType.TP_ERROR)
        self.assertIsInstance(error, val.ReturnCodeMismatchError)

        self.assertEqual(
            self._violations(
                message_type=hdr.SOMEIPMessageType.ERROR,
                return_code=hdr.SOMEIPReturnCode.E_UNKNOWN_METHOD,
            ),
            [],
        )

    def test_request_with_error_code(self):
        for message_type in (
            hdr.SOMEIPMessageType.REQUEST,
            hdr.SOMEIPMessageType.REQUEST_NO_RETURN,
            hdr.SOMEIPMessageType.NOTIFICATION,
        ):
            (error,) = self._violations(
                message_type=message_type,
                return_code=hdr.SOMEIPReturnCode.E_NOT_OK,
            )
            self.assertIsInstance(error, val.ReturnCodeMismatchError)
            self.assertIn(message_type.name, str(error))

    def test_response_with_error_code(self):
        self.assertEqual(
            self._violations(
                message_type=hdr.SOMEIPMessageType.RESPONSE,
                return_code=hdr.SOMEIPReturnCode.E_NOT_OK,
            ),
            [],
        )
        self.assertEqual(
            self._violations(
                message_type=hdr.SOMEIPMessageType.RESPONSE, return_code=0x30
            ),
            [],
        )

    def test_length_mismatch(self):
        (error,) = self._violations(length=11)
        self.assertIsInstance(error, val.LengthMismatchError)
        self.assertEqual(self._violations(length=None), [])

    def test_multiple(self):
        errors = self._violations(
            protocol_version=0,
            message_type=hdr.SOMEIPMessageType.ERROR,
            length=8,
        )
        self.assertEqual(
            [type(e) for e in errors],
            [
                val.ProtocolVersionError,
                val.ReturnCodeMismatchError,
                val.LengthMismatchError,
            ],
        )
        with self.assertRaises(val.ProtocolVersionError):
            val.validate(replace(self.message, protocol_version=0, length=8))

    def test_errors_are_parse_errors(self):
        with self.assertRaises(hdr.ParseError):
            val.validate(replace(self.message, length=0))
