#!/usr/bin/env python
"""
test_checksum_table.py - Checksums y tabla de búsqueda
======================================================

Tests del checksum débil (get_checksum1), del registro de checksums fuertes
y de la construcción de la tabla indexada por checksum débil.
"""

import hashlib
import struct
import unittest

import xxhash

from rsync_sender import (
    BlockChecksum,
    Checksum,
    ChecksumRegistry,
    ChecksumTable,
    ChecksumType,
    Config,
    SyncStats,
    ValidationError,
    validate_block_size,
    validate_checksum_seed,
    format_size,
    format_time,
    MAX_BLOCK_SIZE_LIMIT,
)


class TestWeakChecksum(unittest.TestCase):
    """Tests del checksum débil estilo rsync"""

    def test_known_value(self):
        """Test: "abc" -> s1=294, s2=586"""
        self.assertEqual(Checksum.rolling_checksum(b"abc"), 0x024A0126)

    def test_empty(self):
        self.assertEqual(Checksum.rolling_checksum(b""), 0)

    def test_offset_and_length(self):
        data = b"xxabcxx"
        self.assertEqual(Checksum.rolling_checksum(data, offset=2, length=3), 0x024A0126)

    def test_memoryview_input(self):
        """Test: acepta memoryview sin copiar"""
        buf = bytearray(b"abc")
        self.assertEqual(Checksum.rolling_checksum(memoryview(buf)), 0x024A0126)

    def test_wraps_at_16_bits(self):
        data = b"\xff" * 10000
        s1, s2 = Checksum.checksum_components(Checksum.rolling_checksum(data))
        self.assertEqual(s1, (255 * 10000) & 0xFFFF)
        expected_s2 = sum(255 * i for i in range(1, 10001)) & 0xFFFF
        self.assertEqual(s2, expected_s2)

    def test_rolling_update_matches_full_recompute(self):
        """Test: deslizar "abc" -> "bcd" equivale a recalcular"""
        s1, s2 = Checksum.checksum_components(Checksum.rolling_checksum(b"abc"))
        new_s1, new_s2 = Checksum.rolling_update(ord("a"), ord("d"), s1, s2, 3)
        self.assertEqual((new_s1, new_s2), (297, 592))
        self.assertEqual(
            Checksum.combine_checksum(new_s1, new_s2),
            Checksum.rolling_checksum(b"bcd"),
        )

    def test_rolling_update_over_window(self):
        data = bytes(range(7, 200))
        window = 16
        s1, s2 = Checksum.checksum_components(Checksum.rolling_checksum(data[:window]))
        for start in range(1, len(data) - window):
            s1, s2 = Checksum.rolling_update(data[start - 1], data[start + window - 1], s1, s2, window)
            self.assertEqual(
                Checksum.combine_checksum(s1, s2),
                Checksum.rolling_checksum(data[start:start + window]),
            )


class TestChecksumRegistry(unittest.TestCase):
    """Tests de los checksums fuertes"""

    def test_md5_unseeded(self):
        func = ChecksumRegistry.get_checksum_function(ChecksumType.MD5)
        self.assertEqual(func(b"hello"), hashlib.md5(b"hello").digest())

    def test_hashlib_seed_prefix(self):
        """Test: la semilla se antepone en little-endian"""
        func = ChecksumRegistry.get_checksum_function(ChecksumType.SHA1, seed=1234)
        expected = hashlib.sha1(struct.pack('<I', 1234) + b"hello").digest()
        self.assertEqual(func(b"hello"), expected)

    def test_xxhash_native_seed(self):
        func = ChecksumRegistry.get_checksum_function(ChecksumType.XXH64, seed=5)
        self.assertEqual(func(b"hello"), xxhash.xxh64(b"hello", seed=5).digest())
        func = ChecksumRegistry.get_checksum_function(ChecksumType.XXH3, seed=5)
        self.assertEqual(func(b"hello"), xxhash.xxh3_64(b"hello", seed=5).digest())
        func = ChecksumRegistry.get_checksum_function(ChecksumType.XXH128)
        self.assertEqual(func(b"hello"), xxhash.xxh3_128(b"hello").digest())

    def test_digest_lengths(self):
        for checksum_type in ChecksumType:
            with self.subTest(checksum_type=checksum_type):
                func = ChecksumRegistry.get_checksum_function(checksum_type)
                self.assertEqual(len(func(b"data")), ChecksumRegistry.get_digest_length(checksum_type))

    def test_parse(self):
        self.assertIs(ChecksumRegistry.parse("XXH3"), ChecksumType.XXH3)
        self.assertIs(ChecksumRegistry.parse(ChecksumType.SHA256), ChecksumType.SHA256)
        with self.assertRaises(ValidationError):
            ChecksumRegistry.parse("md4")

    def test_negative_seed_rejected(self):
        with self.assertRaises(ValidationError):
            ChecksumRegistry.get_checksum_function(ChecksumType.MD5, seed=-1)

    def test_checksum_bundle(self):
        cs = Checksum(block_size=8, checksum_type=ChecksumType.SHA256)
        self.assertEqual(cs.strong_checksum(memoryview(b"abc")), hashlib.sha256(b"abc").digest())


class TestValidation(unittest.TestCase):
    """Tests de validación de parámetros"""

    def test_block_size_limits(self):
        validate_block_size(1)
        validate_block_size(MAX_BLOCK_SIZE_LIMIT)
        for bad in (0, -1, MAX_BLOCK_SIZE_LIMIT + 1, True, 4.0):
            with self.subTest(block_size=bad):
                with self.assertRaises(ValidationError) as ctx:
                    validate_block_size(bad)
                self.assertEqual(ctx.exception.code, 1)

    def test_seed_limits(self):
        validate_checksum_seed(0)
        validate_checksum_seed(0xFFFFFFFF)
        with self.assertRaises(ValidationError):
            validate_checksum_seed(0x100000000)


class TestChecksumTable(unittest.TestCase):
    """Tests del constructor de la tabla de checksums"""

    def test_empty(self):
        table = ChecksumTable.build([])
        self.assertEqual(len(table), 0)
        self.assertEqual(table.lookup(123), ())
        self.assertEqual(table.warnings, 0)

    def test_buckets_keep_arrival_order(self):
        """Test: colisiones débiles se conservan en orden de llegada"""
        entries = [
            BlockChecksum(index=0, weak=7, strong=b"\x01" * 16),
            BlockChecksum(index=1, weak=9, strong=b"\x02" * 16),
            BlockChecksum(index=2, weak=7, strong=b"\x03" * 16),
        ]
        table = ChecksumTable.build(iter(entries))
        self.assertEqual(len(table), 3)
        self.assertEqual(table.num_buckets, 2)
        self.assertEqual([c.index for c in table.lookup(7)], [0, 2])
        self.assertIn(9, table)
        self.assertNotIn(8, table)

    def test_find_match_earliest_wins(self):
        entries = [
            BlockChecksum(index=4, weak=7, strong=b"same"),
            BlockChecksum(index=1, weak=7, strong=b"same"),
        ]
        table = ChecksumTable.build(entries)
        self.assertEqual(table.find_match(7, b"same").index, 4)
        self.assertIsNone(table.find_match(7, b"other"))
        self.assertIsNone(table.find_match(8, b"same"))

    def test_find_match_truncated_strong(self):
        """Test: checksums fuertes truncados (s2length) comparan por prefijo"""
        digest = hashlib.md5(b"block").digest()
        table = ChecksumTable.build([BlockChecksum(index=0, weak=1, strong=digest[:2])])
        self.assertEqual(table.find_match(1, digest).index, 0)

    def test_error_entry_is_warned_and_never_matchable(self):
        """Test: una entrada con error se trata como ausente aunque weak/strong parezcan válidos"""
        entry = BlockChecksum(index=3, weak=11, strong=b"abcd", error=IOError("disk hiccup"))
        good = BlockChecksum(index=4, weak=11, strong=b"efgh")
        with self.assertLogs('rsync-sender', level='WARNING') as logs:
            table = ChecksumTable.build([entry, good])
        self.assertEqual(table.warnings, 1)
        self.assertEqual([c.index for c in table.lookup(11)], [3, 4])
        self.assertIsNone(table.find_match(11, b"abcd"))
        self.assertEqual(table.find_match(11, b"efgh").index, 4)
        self.assertIn("disk hiccup", logs.output[0])

    def test_find_match_skips_faulty_candidates(self):
        """Test: un candidato con error nunca coincide, aunque esté en la tabla"""
        faulty = BlockChecksum(index=0, weak=11, strong=b"abcd", error=IOError("corrupt"))
        table = ChecksumTable({11: (faulty,)})
        self.assertIsNone(table.find_match(11, b"abcd"))

    def test_error_entry_without_weak_is_skipped(self):
        entry = BlockChecksum(index=0, weak=None, error=RuntimeError("producer died"))
        with self.assertLogs('rsync-sender', level='WARNING'):
            table = ChecksumTable.build([entry])
        self.assertEqual(table.warnings, 1)
        self.assertEqual(len(table), 0)

    def test_malformed_entries_are_skipped(self):
        """Test: entradas malformadas se reportan y se descartan"""
        entries = [
            BlockChecksum(index=0, weak=None, strong=b"x"),
            BlockChecksum(index=1, weak=0x100000000, strong=b"x"),
            BlockChecksum(index=2, weak=-1, strong=b"x"),
            BlockChecksum(index=3, weak=5, strong=b""),
            BlockChecksum(index=4, weak=5, strong=b"ok"),
        ]
        with self.assertLogs('rsync-sender', level='WARNING') as logs:
            table = ChecksumTable.build(entries)
        self.assertEqual(table.warnings, 4)
        self.assertEqual(len(logs.output), 4)
        self.assertEqual([c.index for c in table.lookup(5)], [4])

    def test_custom_logger(self):
        import logging
        custom = logging.getLogger('rsync-sender.tests.custom')
        with self.assertLogs(custom, level='WARNING'):
            ChecksumTable.build([BlockChecksum(index=0, weak=None)], logger=custom)

    def test_table_is_read_only(self):
        table = ChecksumTable.build([BlockChecksum(index=0, weak=1, strong=b"s")])
        with self.assertRaises(TypeError):
            table._buckets[2] = ()  # type: ignore[index]


class TestStatsAndConfig(unittest.TestCase):
    """Tests de estadísticas y configuración global"""

    def tearDown(self):
        Config.reset_defaults()

    def test_stats_ratios(self):
        stats = SyncStats(hash_hits=4, false_alarms=1, literal_data=25, matched_data=75)
        self.assertAlmostEqual(stats.efficiency, 0.75)
        self.assertAlmostEqual(stats.false_positive_rate, 0.25)
        self.assertEqual(SyncStats().efficiency, 0.0)
        self.assertEqual(SyncStats().false_positive_rate, 0.0)

    def test_reset_defaults(self):
        Config.DEFAULT_BLOCK_SIZE = 512
        Config.DEFAULT_CHECKSUM = ChecksumType.XXH3
        Config.reset_defaults()
        self.assertEqual(Config.DEFAULT_BLOCK_SIZE, 6144)
        self.assertIs(Config.DEFAULT_CHECKSUM, ChecksumType.MD5)
        self.assertEqual(Config.FEED_QUEUE_SIZE, 64)

    def test_format_helpers(self):
        self.assertEqual(format_size(512), "512 B")
        self.assertEqual(format_size(2048), "2.00 KB")
        self.assertEqual(format_time(0.5), "500.00ms")
        self.assertEqual(format_time(90), "1m 30.0s")
        self.assertEqual(format_time(2.5), "2.50s")
        self.assertEqual(format_size(1234567890), "1.15 GB")
        self.assertEqual(format_size(2 * 1024 ** 6), "2048.00 PB")


if __name__ == '__main__':
    unittest.main()
