import dataclasses
import itertools
import logging
import unittest

import someipcodec.header as hdr
import someipcodec.tp as tp
from someipcodec.config import CodecConfig

logging.captureWarnings(True)
logging.basicConfig(level=logging.DEBUG)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def _segment(offset, data, more=True, session_id=4, **kwargs):
    segment = tp.SOMEIPTPSegment(offset=offset, more_segments=more, data=data)
    fields = dict(
        service_id=1,
        method_id=2,
        client_id=3,
        session_id=session_id,
        interface_version=1,
        message_type=hdr.SOMEIPMessageType.TP_REQUEST,
        payload=segment.build(),
    )
    fields.update(kwargs)
    return hdr.SOMEIPHeader(**fields)


class TestSegment(unittest.TestCase):
    def test_parse(self):
        segment = tp.SOMEIPTPSegment.parse(b"\x00\x00\x00\x21AB")
        self.assertEqual(segment.offset, 32)
        self.assertTrue(segment.more_segments)
        self.assertEqual(segment.data, b"AB")
        self.assertEqual(segment.reserved, 0)
        self.assertEqual(segment.end, 34)
        self.assertEqual(segment.build(), b"\x00\x00\x00\x21AB")

    def test_parse_last(self):
        segment = tp.SOMEIPTPSegment.parse(b"\x12\x34\x56\x70")
        self.assertEqual(segment.offset, 0x12345670)
        self.assertFalse(segment.more_segments)
        self.assertEqual(segment.data, b"")

    def test_parse_reserved(self):
        segment = tp.SOMEIPTPSegment.parse(b"\x00\x00\x00\x1fX")
        self.assertEqual(segment.offset, 16)
        self.assertTrue(segment.more_segments)
        self.assertEqual(segment.reserved, 0x0E)
        self.assertEqual(segment.build(), b"\x00\x00\x00\x1fX")

    def test_parse_short(self):
        with self.assertRaises(tp.SegmentationError):
            tp.SOMEIPTPSegment.parse(b"\x00\x00\x00")

    def test_build_unaligned(self):
        with self.assertRaises(ValueError):
            tp.SOMEIPTPSegment(offset=17, more_segments=True, data=b"").build()


class TestAssembler(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.assembler = tp.SegmentAssembler(clock=self.clock)

    def _feed_all(self, segments):
        results = [self.assembler.feed(s) for s in segments]
        self.assertTrue(all(r is None for r in results[:-1]))
        return results[-1]

    def test_example_in_order(self):
        result = self._feed_all(
            [
                _segment(0, b"A" * 16),
                _segment(16, b"B" * 16, more=False),
            ]
        )
        self.assertEqual(result.payload, b"A" * 16 + b"B" * 16)
        self.assertIs(result.message_type, hdr.SOMEIPMessageType.REQUEST)
        self.assertEqual(result.length, 40)
        self.assertEqual(len(self.assembler), 0)

    def test_example_reversed(self):
        result = self._feed_all(
            [
                _segment(16, b"B" * 16, more=False),
                _segment(0, b"A" * 16),
            ]
        )
        self.assertEqual(result.payload, b"A" * 16 + b"B" * 16)

    def test_any_order(self):
        chunks = [bytes([i]) * 16 for i in range(4)] + [b"end"]
        segments = [
            _segment(i * 16, chunk, more=i < len(chunks) - 1)
            for i, chunk in enumerate(chunks)
        ]
        expected = b"".join(chunks)
        for order in itertools.permutations(segments):
            result = self._feed_all(order)
            self.assertEqual(result.payload, expected)
            self.assertEqual(len(self.assembler), 0)

    def test_result_header(self):
        result = self._feed_all(
            [
                _segment(
                    0,
                    b"x",
                    more=False,
                    message_type=hdr.SOMEIPMessageType.TP_ERROR,
                    return_code=hdr.SOMEIPReturnCode.E_NOT_OK,
                )
            ]
        )
        self.assertEqual(
            result,
            hdr.SOMEIPHeader(
                service_id=1,
                method_id=2,
                client_id=3,
                session_id=4,
                interface_version=1,
                message_type=hdr.SOMEIPMessageType.ERROR,
                return_code=hdr.SOMEIPReturnCode.E_NOT_OK,
                payload=b"x",
            ),
        )

    def test_interleaved_messages(self):
        self.assertIsNone(self.assembler.feed(_segment(0, b"a" * 16, session_id=1)))
        self.assertIsNone(self.assembler.feed(_segment(0, b"b" * 16, session_id=2)))
        self.assertEqual(len(self.assembler), 2)
        result = self.assembler.feed(_segment(16, b"B", more=False, session_id=2))
        self.assertEqual(result.payload, b"b" * 16 + b"B")
        result = self.assembler.feed(_segment(16, b"A", more=False, session_id=1))
        self.assertEqual(result.payload, b"a" * 16 + b"A")

    def test_gap_times_out(self):
        self.assembler.feed(_segment(0, b"A" * 16))
        self.assertIsNone(self.assembler.feed(_segment(32, b"C" * 16, more=False)))
        self.assertIn((1, 2, 3, 4), self.assembler)

        self.clock.now += 4.0
        self.assertEqual(self.assembler.expire(), [])

        self.clock.now += 1.0
        errors = self.assembler.expire()
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], tp.SegmentationError)
        self.assertEqual(errors[0].key, (1, 2, 3, 4))
        self.assertIn("16:32", str(errors[0]))
        self.assertEqual(len(self.assembler), 0)

    def test_stale_reassembly_starts_over(self):
        self.assembler.feed(_segment(0, b"A" * 16))
        self.clock.now += 10
        self.assertIsNone(self.assembler.feed(_segment(0, b"X" * 16)))
        result = self.assembler.feed(_segment(16, b"Y", more=False))
        self.assertEqual(result.payload, b"X" * 16 + b"Y")

        (error,) = self.assembler.expire()
        self.assertIsInstance(error, tp.SegmentationError)
        self.assertEqual(error.key, (1, 2, 3, 4))
        self.assertIn("timed out", str(error))
        self.assertEqual(self.assembler.expire(), [])

    def test_duplicate(self):
        self.assembler.feed(_segment(0, b"A" * 16))
        with self.assertRaises(tp.SegmentationError):
            self.assembler.feed(_segment(0, b"A" * 16))
        self.assertEqual(len(self.assembler), 0)

    def test_duplicate_pending(self):
        self.assembler.feed(_segment(32, b"C" * 16))
        with self.assertRaises(tp.SegmentationError):
            self.assembler.feed(_segment(32, b"C" * 16))
        self.assertEqual(len(self.assembler), 0)

    def test_overlap(self):
        self.assembler.feed(_segment(16, b"B" * 32))
        with self.assertRaises(tp.SegmentationError):
            self.assembler.feed(_segment(32, b"C" * 16, more=False))

    def test_second_last_segment(self):
        self.assembler.feed(_segment(32, b"C", more=False))
        with self.assertRaises(tp.SegmentationError):
            self.assembler.feed(_segment(16, b"B", more=False))

    def test_beyond_last_segment(self):
        self.assembler.feed(_segment(16, b"B", more=False))
        with self.assertRaises(tp.SegmentationError):
            self.assembler.feed(_segment(32, b"C" * 16))

    def test_last_segment_before_received_data(self):
        self.assembler.feed(_segment(32, b"C" * 16))
        with self.assertRaises(tp.SegmentationError):
            self.assembler.feed(_segment(16, b"B", more=False))

    def test_max_message_size(self):
        assembler = tp.SegmentAssembler(CodecConfig(max_message_size=40))
        assembler.feed(_segment(0, b"A" * 16))
        assembler.feed(_segment(16, b"B" * 16))
        with self.assertRaises(tp.SegmentationError):
            assembler.feed(_segment(32, b"C" * 16, more=False))
        self.assertEqual(len(assembler), 0)

    def test_max_pending_segments(self):
        assembler = tp.SegmentAssembler(CodecConfig(max_pending_segments=2))
        assembler.feed(_segment(16, b"B" * 16))
        assembler.feed(_segment(32, b"C" * 16))
        with self.assertRaises(tp.SegmentationError):
            assembler.feed(_segment(48, b"D" * 16))

    def test_max_reassemblies(self):
        assembler = tp.SegmentAssembler(
            CodecConfig(max_reassemblies=2), clock=self.clock
        )
        for session_id in (1, 2, 3):
            assembler.feed(_segment(0, b"A" * 16, session_id=session_id))
        self.assertEqual(len(assembler), 2)
        self.assertNotIn((1, 2, 3, 1), assembler)
        self.assertIn((1, 2, 3, 3), assembler)

        (error,) = assembler.expire()
        self.assertIsInstance(error, tp.SegmentationError)
        self.assertEqual(error.key, (1, 2, 3, 1))
        self.assertIn("evicted", str(error))
        self.assertEqual(assembler.expire(), [])

    def test_unreported_errors_bounded(self):
        assembler = tp.SegmentAssembler(
            CodecConfig(max_reassemblies=1), clock=self.clock
        )
        for session_id in range(1, 5):
            assembler.feed(_segment(0, b"A" * 16, session_id=session_id))
        (error,) = assembler.expire()
        self.assertEqual(error.key, (1, 2, 3, 3))

    def test_reserved_bits(self):
        message = _segment(0, b"A", more=False)
        payload = bytearray(message.payload)
        payload[3] |= 0x04
        message = dataclasses.replace(message, payload=bytes(payload))

        with self.assertRaises(tp.SegmentationError):
            self.assembler.feed(message)

        lenient = tp.SegmentAssembler(CodecConfig(strict_validation=False))
        self.assertEqual(lenient.feed(message).payload, b"A")

    def test_unaligned_segment_length(self):
        self.assembler.feed(_segment(0, b"A" * 16))
        with self.assertRaises(tp.SegmentationError):
            self.assembler.feed(_segment(16, b"B" * 15))

    def test_empty_segment(self):
        lenient = tp.SegmentAssembler(CodecConfig(strict_validation=False))
        with self.assertRaises(tp.SegmentationError):
            lenient.feed(_segment(0, b""))

    def test_header_changed(self):
        self.assembler.feed(_segment(0, b"A" * 16))
        with self.assertRaises(tp.SegmentationError):
            self.assembler.feed(_segment(16, b"B", more=False, interface_version=2))
        self.assertEqual(len(self.assembler), 0)

    def test_short_tp_payload(self):
        self.assembler.feed(_segment(0, b"A" * 16))
        message = _segment(16, b"", more=False)
        with self.assertRaises(tp.SegmentationError):
            self.assembler.feed(dataclasses.replace(message, payload=b"\x00"))
        self.assertEqual(len(self.assembler), 0)

    def test_not_tp(self):
        message = _segment(0, b"A", message_type=hdr.SOMEIPMessageType.REQUEST)
        with self.assertRaises(ValueError):
            self.assembler.feed(message)

    def test_cancel(self):
        self.assembler.feed(_segment(0, b"A" * 16))
        self.assertTrue(self.assembler.cancel((1, 2, 3, 4)))
        self.assertFalse(self.assembler.cancel((1, 2, 3, 4)))
        self.assertEqual(len(self.assembler), 0)

        self.assembler.feed(_segment(0, b"A" * 16, session_id=1))
        self.clock.now += 10
        # replaces the timed out reassembly
        self.assembler.feed(_segment(0, b"A" * 16, session_id=1))
        self.assembler.feed(_segment(0, b"A" * 16, session_id=2))
        self.assertEqual(self.assembler.cancel_all(), 2)
        self.assertEqual(len(self.assembler), 0)
        self.assertEqual(self.assembler.expire(), [])


class TestSegmentMessage(unittest.TestCase):
    message = hdr.SOMEIPHeader(
        service_id=0x1234,
        method_id=0x8005,
        client_id=0,
        session_id=7,
        interface_version=3,
        message_type=hdr.SOMEIPMessageType.NOTIFICATION,
        payload=bytes(range(100)),
    )

    def test_segments(self):
        segments = tp.segment_message(self.message, max_segment_size=40)
        self.assertEqual(len(segments), 4)
        for segment in segments:
            self.assertIs(segment.message_type, hdr.SOMEIPMessageType.TP_NOTIFICATION)

        parsed = [tp.SOMEIPTPSegment.parse(s.payload) for s in segments]
        self.assertEqual([p.offset for p in parsed], [0, 32, 64, 96])
        self.assertEqual([len(p.data) for p in parsed], [32, 32, 32, 4])
        self.assertEqual([p.more_segments for p in parsed], [True, True, True, False])

    def test_roundtrip(self):
        assembler = tp.SegmentAssembler()
        segments = tp.segment_message(self.message, max_segment_size=32)
        results = [assembler.feed(s) for s in reversed(segments)]
        self.assertEqual(results[-1], self.message)

    def test_empty_payload(self):
        message = dataclasses.replace(self.message, payload=b"")
        segments = tp.segment_message(message)
        self.assertEqual(len(segments), 1)
        self.assertEqual(tp.SegmentAssembler().feed(segments[0]), message)

    def test_bad_arguments(self):
        with self.assertRaises(ValueError):
            tp.segment_message(self.message, max_segment_size=8)
        segment = tp.segment_message(self.message)[0]
        with self.assertRaises(ValueError):
            tp.segment_message(segment)
