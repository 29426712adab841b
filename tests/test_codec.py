#!/usr/bin/env python
"""
test_codec.py - Codificación del flujo de operaciones
=====================================================

Tests de DeltaWriter / read_delta con cada tipo de compresión, terminación
por error y flujos corruptos o truncados.
"""

import io
import unittest

from rsync_sender import (
    CompressionRegistry,
    CompressionType,
    DeadlineExceededError,
    DeltaError,
    DeltaLiteral,
    DeltaMatch,
    DeltaWriter,
    FileIOError,
    ProtocolError,
    SyncCancelledError,
    ValidationError,
    generate_checksums,
    read_delta,
    sync,
    TOKEN_END,
)


def _encode(ops, block_size=1024, compression=CompressionType.NONE, close=True):
    buf = io.BytesIO()
    writer = DeltaWriter(buf, block_size, compression=compression)
    for op in ops:
        writer.write(op)
    if close:
        writer.close()
    return buf.getvalue()


class TestCompressionRegistry(unittest.TestCase):
    """Tests de compresión de literales"""

    def test_each_algorithm(self):
        data = b"compressible " * 200
        for comp_type in CompressionType:
            with self.subTest(compression=comp_type):
                packed = CompressionRegistry.compress(data, comp_type)
                self.assertEqual(CompressionRegistry.decompress(packed, comp_type), data)
                if comp_type != CompressionType.NONE:
                    self.assertLess(len(packed), len(data))

    def test_parse(self):
        self.assertIs(CompressionType.parse("zstd"), CompressionType.ZSTD)
        self.assertIs(CompressionType.parse(CompressionType.LZ4), CompressionType.LZ4)
        with self.assertRaises(ValidationError):
            CompressionType.parse("brotli")


class TestDeltaCodec(unittest.TestCase):
    """Tests del formato binario de operaciones"""

    OPS = [
        DeltaMatch(index=0, block_index=3),
        DeltaLiteral(index=1, data=b"literal payload " * 40),
        DeltaLiteral(index=2, data=b"x"),
        DeltaMatch(index=3, block_index=2 ** 40),
    ]

    def test_each_compression(self):
        for comp_type in CompressionType:
            with self.subTest(compression=comp_type):
                encoded = _encode(self.OPS, block_size=700, compression=comp_type)
                self.assertEqual(encoded[-1], TOKEN_END)
                block_size, operations = read_delta(io.BytesIO(encoded))
                self.assertEqual(block_size, 700)
                self.assertEqual(list(operations), self.OPS)

    def test_ordinals_reassigned(self):
        ops = [DeltaMatch(index=10, block_index=1), DeltaLiteral(index=42, data=b"x")]
        _, operations = read_delta(io.BytesIO(_encode(ops)))
        self.assertEqual([op.index for op in operations], [0, 1])

    def test_error_terminates_stream(self):
        """Test: un DeltaError cierra el flujo sin TOKEN_END"""
        ops = [DeltaLiteral(index=0, data=b"abc"),
               DeltaError(index=1, error=FileIOError("failed reading file: EIO"))]
        buf = io.BytesIO()
        writer = DeltaWriter(buf, 4)
        for op in ops:
            writer.write(op)
        self.assertTrue(writer.closed)
        writer.close()
        with self.assertRaises(ProtocolError):
            writer.write(DeltaLiteral(index=2, data=b"late"))
        self.assertNotEqual(buf.getvalue()[-1], TOKEN_END)
        self.assertEqual(writer.bytes_written, len(buf.getvalue()))

        _, operations = read_delta(io.BytesIO(buf.getvalue()))
        decoded = list(operations)
        self.assertEqual(decoded[0], ops[0])
        self.assertIsInstance(decoded[1], DeltaError)
        self.assertEqual(decoded[1].index, 1)
        self.assertIsInstance(decoded[1].error, FileIOError)
        self.assertEqual(str(decoded[1].error), "failed reading file: EIO")

    def test_cancellation_codes_survive(self):
        for error, expected in ((SyncCancelledError("stop"), SyncCancelledError),
                                (DeadlineExceededError(), DeadlineExceededError)):
            with self.subTest(error=error):
                encoded = _encode([DeltaError(index=0, error=error)], close=False)
                (decoded,) = list(read_delta(io.BytesIO(encoded))[1])
                self.assertIs(type(decoded.error), expected)
                self.assertTrue(decoded.cancelled)

    def test_foreign_exception_uses_generic_code(self):
        encoded = _encode([DeltaError(index=0, error=ValueError("odd"))], close=False)
        (decoded,) = list(read_delta(io.BytesIO(encoded))[1])
        self.assertEqual(decoded.error.code, 1)

    def test_bad_magic(self):
        with self.assertRaises(ProtocolError):
            read_delta(io.BytesIO(b"NOPE\x00\x04\x00\x00\x00\xff"))

    def test_unknown_compression_id(self):
        encoded = bytearray(_encode([]))
        encoded[4] = 9
        with self.assertRaises(ProtocolError):
            read_delta(io.BytesIO(bytes(encoded)))

    def test_truncated_header(self):
        with self.assertRaises(ProtocolError):
            read_delta(io.BytesIO(b"RSD1"))

    def test_truncated_stream(self):
        """Test: flujos truncados o sin TOKEN_END producen ProtocolError"""
        encoded = _encode(self.OPS)
        for cut in (1, 5, 20):
            with self.subTest(cut=cut):
                _, operations = read_delta(io.BytesIO(encoded[:-cut]))
                with self.assertRaises(ProtocolError):
                    list(operations)

    def test_unknown_token(self):
        encoded = _encode([], close=False) + b"\x17"
        _, operations = read_delta(io.BytesIO(encoded))
        with self.assertRaises(ProtocolError):
            list(operations)

    def test_corrupt_compressed_literal(self):
        encoded = _encode([], compression=CompressionType.ZLIB, close=False)
        encoded += b"\x00" + (4).to_bytes(4, "little") + b"junk" + bytes([TOKEN_END])
        _, operations = read_delta(io.BytesIO(encoded))
        with self.assertRaises(ProtocolError):
            list(operations)

    def test_rejects_non_operations(self):
        writer = DeltaWriter(io.BytesIO(), 4)
        with self.assertRaises(TypeError):
            writer.write("not an op")

    def test_sync_through_codec(self):
        """Test: sync -> DeltaWriter -> read_delta conserva las operaciones"""
        remote = b"0123456789" * 20
        local = remote[:100] + b"#" * 10 + remote[110:]
        checksums = list(generate_checksums(io.BytesIO(remote), block_size=10))
        with sync(io.BytesIO(local), checksums, block_size=10) as ops:
            original = list(ops)
        encoded = _encode(original, block_size=10, compression=CompressionType.LZ4)
        _, operations = read_delta(io.BytesIO(encoded))
        self.assertEqual(list(operations), original)


if __name__ == '__main__':
    unittest.main()
