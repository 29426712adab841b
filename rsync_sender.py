#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
rsync-sender: Sender Side of the rsync Delta Algorithm
======================================================

Produces the instruction stream that lets a remote peer rebuild a local file
from its own (older) copy, transferring only the blocks that changed.

Quick Start:
-----------
    >>> from rsync_sender import generate_checksums, sync, DeltaMatch
    >>>
    >>> # The peer computes checksums of its copy (normally remote)
    >>> with open("old.bin", "rb") as f:
    ...     checksums = list(generate_checksums(f, block_size=4096))
    >>>
    >>> # The sender scans its local copy against them
    >>> with open("new.bin", "rb") as f, sync(f, checksums, block_size=4096) as ops:
    ...     for op in ops:
    ...         transport.send(op)
    >>> print(ops.stats)

Pipeline:
--------
    1. Checksum table: remote {weak, strong} pairs indexed by weak checksum.
       Every bucket keeps all colliding candidates in arrival order.
    2. Scanner: the local file is read one fixed-size chunk at a time. A weak
       hit is confirmed with the strong checksum; anything unconfirmed is sent
       as literal data.
    3. Operation stream: a worker thread hands over one operation per request,
       so the consumer governs pacing. Failures and cancellation arrive as a
       single terminal DeltaError.

Matching happens at chunk-aligned offsets only. Inserted or deleted bytes
shift the alignment and turn the rest of the file into literal data.

CLI Usage:
---------
    $ rsync-sender signature old.bin -o old.sig
    $ rsync-sender delta old.sig new.bin -o new.delta --compress zstd
    $ rsync-sender inspect new.delta
    $ rsync-sender --help

Copyright:
---------
    Original rsync (C): Andrew Tridgell, Paul Mackerras, Wayne Davison
    Python implementation: Alejandro Sanchez (2024-2026)
    License: GPLv3+ with OpenSSL/xxhash exception

References:
----------
    [1] Tridgell (1999): PhD Thesis - https://www.samba.org/~tridge/phd_thesis.pdf
    [2] rsync source: https://github.com/WayneD/rsync
"""

from __future__ import annotations

__version__ = "0.3.0"
__author__ = "Alejandro Sanchez"
__email__ = "alesangreat@gmail.com"
__license__ = "GPL-3.0-or-later"
__copyright__ = "Copyright (C) 2024-2026 Alejandro Sanchez"

# Public API exports
__all__ = [
    # Entry points
    'sync',
    'scan_operations',
    'OperationStream',
    'CancellationToken',

    # Checksum table
    'ChecksumTable',

    # Data structures
    'BlockChecksum',
    'BlockOperation',
    'DeltaMatch',
    'DeltaLiteral',
    'DeltaError',
    'SyncStats',
    'SignatureHeader',

    # Checksums
    'Checksum',
    'ChecksumType',
    'ChecksumRegistry',

    # Remote-side collaborators
    'generate_checksums',
    'feed_checksums',
    'write_signature',
    'read_signature',

    # Operation stream codec
    'CompressionType',
    'CompressionRegistry',
    'DeltaWriter',
    'read_delta',

    # Streaming support
    'DataSource',
    'BytesDataSource',
    'FileDataSource',

    # Exceptions
    'RsyncError',
    'ValidationError',
    'FileIOError',
    'ProtocolError',
    'SyncCancelledError',
    'DeadlineExceededError',

    # Configuration
    'Config',
    'Colors',

    # Validation and utilities
    'validate_block_size',
    'validate_checksum_seed',
    'format_size',
    'format_time',

    # CLI
    'create_parser',
    'main',
]

import os
import sys
import json
import queue
import struct
import hashlib
import logging
import threading
import zlib
import time
import argparse
from itertools import accumulate
from types import MappingProxyType
from typing import (
    Optional, Tuple, List, Dict, Union, Any, Callable, Iterable, Iterator,
    BinaryIO, TextIO, ClassVar, Mapping, cast
)
from enum import Enum
from dataclasses import dataclass
from abc import ABC, abstractmethod

# Strong checksums and literal compression
import xxhash
import lz4.frame  # type: ignore[import]
import zstandard  # type: ignore[import]

_lz4_frame: Any = cast(Any, lz4.frame)
_zstandard: Any = cast(Any, zstandard)

logger = logging.getLogger('rsync-sender')

# ============================================================================
# CONSTANTS
# ============================================================================

MAX_BLOCK_SIZE = 0x20000  # 131072 bytes (protocol >= 30)
MAX_BLOCK_SIZE_LIMIT = MAX_BLOCK_SIZE * 10
MIN_BLOCK_SIZE = 1
MAX_WEAK_CHECKSUM = 0xFFFFFFFF

MD5_DIGEST_LEN = 16
SHA1_DIGEST_LEN = 20

# Exit codes (errcode.h)
RERR_SYNTAX = 1           # Syntax or usage error
RERR_PROTOCOL = 2         # Protocol incompatibility
RERR_FILEIO = 11          # Error in file I/O
RERR_SIGNAL = 20          # Received SIGUSR1 or SIGINT
RERR_TIMEOUT = 30         # Timeout in data send/receive

# Operation stream tokens
DELTA_MAGIC = b"RSD1"
TOKEN_LITERAL = 0x00        # Literal data follows
TOKEN_MATCH = 0x40          # Block match (index follows)
TOKEN_ERROR = 0xC0          # Terminal error (code + message follow)
TOKEN_END = 0xFF            # Normal end of stream


# ============================================================================
# TYPE DEFINITIONS
# ============================================================================

class ChecksumType(Enum):
    """
    Strong checksum algorithms usable for block verification.

    Wire Protocol Values (lib/md-defines.h):
        CSUM_MD5       = 5   -> ChecksumType.MD5
        CSUM_XXH64     = 6   -> ChecksumType.XXH64
        CSUM_XXH3_64   = 7   -> ChecksumType.XXH3
        CSUM_XXH3_128  = 8   -> ChecksumType.XXH128
        CSUM_SHA1      = 9   -> ChecksumType.SHA1
        CSUM_SHA256    = 10  -> ChecksumType.SHA256

    Both peers must agree on the algorithm (and seed); otherwise no strong
    checksum ever matches and every chunk is sent as literal data.
    """
    MD5 = "md5"        # CSUM_MD5, default
    SHA1 = "sha1"      # CSUM_SHA1
    SHA256 = "sha256"  # CSUM_SHA256
    XXH64 = "xxh64"    # CSUM_XXH64 (fast, 64-bit)
    XXH3 = "xxh3"      # CSUM_XXH3_64 (fastest, 64-bit)
    XXH128 = "xxh128"  # CSUM_XXH3_128 (fast, 128-bit)


WeakChecksumFunc = Callable[[Union[bytes, bytearray, memoryview]], int]
StrongChecksumFunc = Callable[[bytes], bytes]


# ============================================================================
# GLOBAL CONFIGURATION
# ============================================================================

class Config:
    """
    Global configuration for rsync-sender behavior.

    Values here are defaults only: explicit arguments to sync(),
    generate_checksums() and friends always take precedence.

    Attributes:
        DEFAULT_BLOCK_SIZE (int): Chunk size used when none is given. Must
            match the block size the remote peer used for its checksums.
        DEFAULT_CHECKSUM (ChecksumType): Strong checksum algorithm
        FEED_QUEUE_SIZE (int): Bound of the queue used by feed_checksums()
        COLLECT_STATS (bool): Track matches/hash hits/false alarms per scan
        VERBOSE_LOGGING (bool): Emit the match report at INFO instead of DEBUG
        USE_COLORS (bool): Enable colored CLI output (auto-disabled off a TTY)

    Example:
        >>> Config.DEFAULT_BLOCK_SIZE = 4096
        >>> Config.reset_defaults()
    """
    DEFAULT_BLOCK_SIZE: ClassVar[int] = 6 * 1024
    DEFAULT_CHECKSUM: ClassVar[ChecksumType] = ChecksumType.MD5
    FEED_QUEUE_SIZE: ClassVar[int] = 64
    COLLECT_STATS: ClassVar[bool] = True
    VERBOSE_LOGGING: ClassVar[bool] = False
    USE_COLORS: ClassVar[bool] = True

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults: Dict[str, object] = {
            "DEFAULT_BLOCK_SIZE": 6 * 1024,
            "DEFAULT_CHECKSUM": ChecksumType.MD5,
            "FEED_QUEUE_SIZE": 64,
            "COLLECT_STATS": True,
            "VERBOSE_LOGGING": False,
            "USE_COLORS": True,
        }
        for name, value in defaults.items():
            setattr(cls, name, value)


# ============================================================================
# SYNCHRONIZATION STATISTICS - Matching match.c tracking
# ============================================================================

@dataclass
class SyncStats:
    """
    Statistics from one scan.

    Mirrors the per-file counters of match.c (false_alarms, hash_hits,
    matches, data_transfer) plus a few sender-side extras.

    Attributes:
        matches: Chunks emitted as block references
        hash_hits: Chunks whose weak checksum was found in the table
        false_alarms: Weak hits that no strong checksum confirmed
        literal_data: Bytes emitted as literal data
        matched_data: Bytes covered by block references
        blocks_scanned: Chunks read from the local source
        checksum_warnings: Remote checksums that were faulty or malformed
        total_time_ms: Wall time of the scan in milliseconds
    """
    matches: int = 0
    hash_hits: int = 0
    false_alarms: int = 0
    literal_data: int = 0
    matched_data: int = 0
    blocks_scanned: int = 0
    checksum_warnings: int = 0
    total_time_ms: float = 0.0

    @property
    def efficiency(self) -> float:
        """Calculate sync efficiency (matched / total)."""
        total = self.literal_data + self.matched_data
        return self.matched_data / total if total > 0 else 0.0

    @property
    def false_positive_rate(self) -> float:
        """Calculate false positive rate from weak checksum."""
        if self.hash_hits == 0:
            return 0.0
        return self.false_alarms / self.hash_hits

    def __repr__(self) -> str:
        return (
            f"SyncStats(matches={self.matches}, false_alarms={self.false_alarms}, "
            f"hash_hits={self.hash_hits}, efficiency={self.efficiency:.1%})"
        )


# ============================================================================
# UTILITY FUNCTIONS - Formatting and helpers
# ============================================================================

_SIZE_UNITS = ('KB', 'MB', 'GB', 'TB', 'PB')


def format_size(size: int) -> str:
    """
    Byte count for humans, in binary units.

    Example:
        >>> format_size(1234567890)
        '1.15 GB'
    """
    if abs(size) < 1024:
        return f"{size} B"
    value = float(size)
    for unit in _SIZE_UNITS:
        value /= 1024.0
        if abs(value) < 1024.0 or unit == _SIZE_UNITS[-1]:
            break
    return f"{value:.2f} {unit}"


def format_time(seconds: float) -> str:
    """
    Scan duration for humans.

    Example:
        >>> format_time(0.00123)
        '1.23ms'
    """
    if seconds >= 60:
        minutes, rest = divmod(seconds, 60)
        return f"{int(minutes)}m {rest:.1f}s"
    if seconds >= 1:
        return f"{seconds:.2f}s"
    return f"{seconds * 1000:.2f}ms"


class Colors:
    """
    ANSI color codes for terminal output.

    Disabled on non-TTY streams or when Config.USE_COLORS = False, so piped
    output stays clean.
    """
    _RESET = '\033[0m'
    _BOLD = '\033[1m'
    _RED = '\033[91m'
    _GREEN = '\033[92m'
    _YELLOW = '\033[93m'
    _CYAN = '\033[96m'

    @classmethod
    def _is_enabled(cls) -> bool:
        if not Config.USE_COLORS:
            return False
        return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()

    @classmethod
    def _wrap(cls, code: str, text: str) -> str:
        if cls._is_enabled():
            return f"{code}{text}{cls._RESET}"
        return text

    @classmethod
    def success(cls, text: str) -> str:
        return cls._wrap(cls._GREEN, text)

    @classmethod
    def error(cls, text: str) -> str:
        return cls._wrap(cls._RED, text)

    @classmethod
    def warning(cls, text: str) -> str:
        return cls._wrap(cls._YELLOW, text)

    @classmethod
    def info(cls, text: str) -> str:
        return cls._wrap(cls._CYAN, text)

    @classmethod
    def bold(cls, text: str) -> str:
        return cls._wrap(cls._BOLD, text)


# ============================================================================
# CUSTOM EXCEPTIONS - Hierarchical exception system
# ============================================================================

class RsyncError(Exception):
    """
    Base exception for all rsync-sender errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code (matches rsync RERR_* codes where applicable)
    """
    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(RsyncError):
    """
    Raised when input validation fails.

    Invalid block sizes, seeds or checksum types are rejected before any
    scanning starts.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=RERR_SYNTAX)


class FileIOError(RsyncError):
    """
    Raised for local file I/O errors.

    During a scan this is never raised to the caller directly; it travels
    inside the terminal DeltaError and means the whole sync must restart.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=RERR_FILEIO)


class ProtocolError(RsyncError):
    """Raised for malformed signature files or operation streams."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=RERR_PROTOCOL)


class SyncCancelledError(RsyncError):
    """
    Raised (or carried by a terminal DeltaError) when the caller cancelled.

    Lets consumers tell "you asked for this" apart from a real failure.
    """
    def __init__(self, message: str = "sync cancelled", code: int = RERR_SIGNAL) -> None:
        super().__init__(message, code)


class DeadlineExceededError(SyncCancelledError):
    """Cancellation caused by a CancellationToken deadline."""
    def __init__(self, message: str = "sync deadline exceeded") -> None:
        super().__init__(message, code=RERR_TIMEOUT)


# ============================================================================
# DATA STRUCTURES
# ============================================================================
#
# BlockChecksum is the sender's view of one entry of the peer's sum_struct
# (rsync.h: struct sum_buf + its slice of sum2_array). Operations follow
# token.c: a match token carries a block number, a literal carries raw bytes.

@dataclass(frozen=True)
class BlockChecksum:
    """
    Checksum of one remote block.

    Attributes:
        index: Block ordinal on the remote side
        weak: 32-bit rolling checksum, or None if it could not be produced
        strong: Strong checksum digest (possibly a truncated s2length prefix)
        error: Failure captured while this entry was produced, if any

    Example:
        >>> BlockChecksum(index=0, weak=0x024A0126, strong=b'\\x00' * 16)
    """
    index: int
    weak: Optional[int]
    strong: bytes = b""
    error: Optional[BaseException] = None

    def __repr__(self) -> str:
        weak = f"0x{self.weak:08x}" if isinstance(self.weak, int) else repr(self.weak)
        text = f"BlockChecksum(index={self.index}, weak={weak}, strong={self.strong.hex()[:16]}"
        if self.error is not None:
            text += f", error={self.error!r}"
        return text + ")"

    @property
    def usable(self) -> bool:
        """True when the entry can be indexed: valid 32-bit weak and a strong sum."""
        weak = self.weak
        return (
            isinstance(weak, int) and not isinstance(weak, bool)
            and 0 <= weak <= MAX_WEAK_CHECKSUM
            and len(self.strong) > 0
        )


@dataclass(frozen=True)
class BlockOperation:
    """
    Base of the operations emitted by the scanner.

    Attributes:
        index: Zero-based ordinal of the operation in the output stream
    """
    index: int

    @property
    def is_terminal(self) -> bool:
        return False


@dataclass(frozen=True)
class DeltaMatch(BlockOperation):
    """
    Instructs the receiver to copy remote block `block_index` from its own file.

    Example:
        >>> if isinstance(op, DeltaMatch):
        ...     print(f"Copy block {op.block_index}")
    """
    block_index: int

    def __repr__(self) -> str:
        return f"DeltaMatch(index={self.index}, block={self.block_index})"


@dataclass(frozen=True)
class DeltaLiteral(BlockOperation):
    """
    Literal bytes that must be transferred in full.

    `data` is always a private copy, never a view on the scanner's buffer.
    """
    data: bytes

    def __repr__(self) -> str:
        preview = self.data[:20].hex() if len(self.data) <= 20 else self.data[:20].hex() + '...'
        return f"DeltaLiteral(index={self.index}, len={len(self.data)}, data={preview})"


@dataclass(frozen=True)
class DeltaError(BlockOperation):
    """
    Terminal failure marker. Nothing follows it in the stream.

    A consumer receiving one must stop and discard any partial
    reconstruction; the only recovery is a complete re-sync.
    """
    error: BaseException

    @property
    def is_terminal(self) -> bool:
        return True

    @property
    def cancelled(self) -> bool:
        """True if the scan stopped because the caller cancelled it."""
        return isinstance(self.error, SyncCancelledError)

    def __repr__(self) -> str:
        return f"DeltaError(index={self.index}, error={self.error!r})"


@dataclass(frozen=True)
class SignatureHeader:
    """Parameters the remote peer used to compute its checksums."""
    block_size: int
    checksum_type: ChecksumType = ChecksumType.MD5
    checksum_seed: int = 0


# ============================================================================
# INPUT VALIDATION
# ============================================================================

def validate_block_size(block_size: int) -> None:
    """
    Validate block size is within acceptable range.

    Raises:
        ValidationError: If block_size is invalid

    Example:
        >>> validate_block_size(4096)  # OK
        >>> validate_block_size(-1)  # Raises ValidationError
    """
    if isinstance(block_size, bool) or not isinstance(block_size, int):
        raise ValidationError(f"block_size must be an integer, got {type(block_size).__name__}")
    if block_size < MIN_BLOCK_SIZE:
        raise ValidationError(f"block_size must be positive, got {block_size}")
    if block_size > MAX_BLOCK_SIZE_LIMIT:
        raise ValidationError(
            f"block_size too large ({block_size}), maximum is {MAX_BLOCK_SIZE_LIMIT} bytes"
        )


def validate_checksum_seed(seed: int) -> None:
    """
    Validate checksum seed value.

    Raises:
        ValidationError: If seed is negative or out of range
    """
    if seed < 0:
        raise ValidationError(f"checksum_seed cannot be negative, got {seed}")
    if seed > 0xFFFFFFFF:  # 32-bit unsigned max
        raise ValidationError(f"checksum_seed too large ({seed}), maximum is {0xFFFFFFFF}")


# ============================================================================
# STREAMING DATA SOURCES - For handling files larger than available memory
# ============================================================================

class DataSource(ABC):
    """
    Byte source read one block at a time by the scanner and by
    generate_checksums().

    Subclasses only need readinto(): the caller owns the buffer, so a
    multi-gigabyte file is scanned through a single block-sized bytearray.
    Any binary file-like object works as well; a DataSource adds a known
    size and FileIOError reporting.

    Example:
        >>> with FileDataSource("new.bin") as source, sync(source, checksums) as ops:
        ...     for op in ops:
        ...         transport.send(op)
    """

    @abstractmethod
    def readinto(self, buffer: Union[bytearray, memoryview]) -> int:
        """Copy up to len(buffer) bytes into `buffer`; 0 means end of data."""
        raise NotImplementedError

    def size(self) -> int:
        """Total size in bytes, or -1 when unknown."""
        return -1

    def close(self) -> None:
        pass

    def __enter__(self) -> 'DataSource':
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class BytesDataSource(DataSource):
    """In-memory source, mostly for tests and local simulation."""

    def __init__(self, data: Union[bytes, bytearray]) -> None:
        self._data = memoryview(data)
        self._offset = 0

    def readinto(self, buffer: Union[bytearray, memoryview]) -> int:
        n = min(len(buffer), len(self._data) - self._offset)
        buffer[:n] = self._data[self._offset:self._offset + n]
        self._offset += n
        return n

    def size(self) -> int:
        return len(self._data)


class FileDataSource(DataSource):
    """
    File on disk, opened unbuffered on __enter__.

    The size is taken when the source is created, so a missing file fails
    before any output is produced.

    Raises:
        FileIOError: If the file cannot be stat'ed or opened
    """

    def __init__(self, filepath: str) -> None:
        self.filepath = os.fspath(filepath)
        self._file: Optional[BinaryIO] = None
        try:
            self._size = os.stat(self.filepath).st_size
        except OSError as e:
            raise FileIOError(f"Cannot access file {self.filepath}: {e}") from e

    def __enter__(self) -> 'FileDataSource':
        try:
            # Unbuffered: the block buffer is the only copy kept in memory.
            self._file = cast(BinaryIO, open(self.filepath, 'rb', buffering=0))
        except OSError as e:
            raise FileIOError(f"Cannot open file {self.filepath}: {e}") from e
        return self

    def readinto(self, buffer: Union[bytearray, memoryview]) -> int:
        if self._file is None:
            raise FileIOError(f"{self.filepath} is not open; use it as a context manager")
        return self._file.readinto(buffer)  # type: ignore[attr-defined]

    def size(self) -> int:
        return self._size

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    @property
    def is_open(self) -> bool:
        return self._file is not None


ByteSource = Union[DataSource, BinaryIO]


def _fill_block(source: Any, view: memoryview) -> int:
    """
    Read from `source` until `view` is full or the source hits EOF.

    Short reads (pipes, sockets) are retried so chunk boundaries always land
    on multiples of the block size, exactly where the peer computed its sums.
    """
    filled = 0
    size = len(view)
    readinto = getattr(source, 'readinto', None)
    while filled < size:
        if readinto is not None:
            n = readinto(view[filled:])
            if n is None:
                raise BlockingIOError("source has no data available (non-blocking read)")
        else:
            data = source.read(size - filled)
            n = len(data)
            view[filled:filled + n] = data
        if not n:
            break
        filled += n
    return filled


# ============================================================================
# CHECKSUM REGISTRY - Pluggable strong checksum primitives
# ============================================================================

class ChecksumRegistry:
    """
    Registry of available strong checksum algorithms.

    Abstracts hashlib and xxhash behind `bytes -> bytes` functions.

    Seeding follows rsync: hashlib algorithms get the seed prefixed as four
    little-endian bytes (CF_CHKSUM_SEED_FIX order), xxhash takes it natively.

    Example:
        >>> func = ChecksumRegistry.get_checksum_function(ChecksumType.MD5)
        >>> digest = func(b"Hello, World!")
    """

    @classmethod
    def get_checksum_function(
        cls,
        checksum_type: ChecksumType,
        seed: int = 0
    ) -> StrongChecksumFunc:
        """
        Get checksum function for given type.

        Args:
            checksum_type: The algorithm to use
            seed: Optional seed for the checksum (0 = unseeded)

        Returns:
            Function that takes bytes and returns checksum bytes

        Raises:
            ValueError: If checksum type is not supported
        """
        validate_checksum_seed(seed)
        if checksum_type in (ChecksumType.MD5, ChecksumType.SHA1, ChecksumType.SHA256):
            name = checksum_type.value
            if seed == 0:
                return lambda data: hashlib.new(name, data).digest()
            seed_bytes = struct.pack('<I', seed)
            return lambda data: hashlib.new(name, seed_bytes + data).digest()
        elif checksum_type == ChecksumType.XXH64:
            return lambda data: xxhash.xxh64(data, seed=seed).digest()
        elif checksum_type == ChecksumType.XXH3:
            return lambda data: xxhash.xxh3_64(data, seed=seed).digest()
        elif checksum_type == ChecksumType.XXH128:
            return lambda data: xxhash.xxh3_128(data, seed=seed).digest()
        else:
            raise ValueError(f"Unsupported checksum type: {checksum_type}")

    @staticmethod
    def get_digest_length(checksum_type: ChecksumType) -> int:
        """Get the digest length in bytes for a checksum type."""
        lengths = {
            ChecksumType.MD5: MD5_DIGEST_LEN,
            ChecksumType.SHA1: SHA1_DIGEST_LEN,
            ChecksumType.SHA256: 32,
            ChecksumType.XXH64: 8,
            ChecksumType.XXH3: 8,
            ChecksumType.XXH128: 16,
        }
        return lengths.get(checksum_type, 16)

    @staticmethod
    def parse(name: Union[str, ChecksumType]) -> ChecksumType:
        """Resolve a checksum name ("md5", "xxh3", ...) to a ChecksumType."""
        if isinstance(name, ChecksumType):
            return name
        try:
            return ChecksumType(str(name).lower())
        except ValueError:
            choices = ", ".join(t.value for t in ChecksumType)
            raise ValidationError(f"unknown checksum type {name!r} (choose from {choices})") from None


# ============================================================================
# COMPRESSION TYPES - Literal payload compression for the delta stream
# ============================================================================

class CompressionType(Enum):
    """
    Compression applied to literal payloads in a delta stream.

    The values are the ids written in the stream header, matching rsync's
    CPRES_* constants (rsync.h).
    """
    NONE = 0   # CPRES_NONE
    ZLIB = 1   # CPRES_ZLIB
    LZ4 = 3    # CPRES_LZ4
    ZSTD = 4   # CPRES_ZSTD

    @classmethod
    def parse(cls, name: Union[str, 'CompressionType']) -> 'CompressionType':
        if isinstance(name, CompressionType):
            return name
        try:
            return cls[str(name).upper()]
        except KeyError:
            choices = ", ".join(t.name.lower() for t in cls)
            raise ValidationError(f"unknown compression {name!r} (choose from {choices})") from None


class CompressionRegistry:
    """Registry of available compression algorithms.

    Supports zlib, lz4 (frame format) and zstandard. Each literal payload is
    compressed on its own so the stream can be decoded incrementally.
    """
    _zstd_compressors: Dict[int, Any] = {}
    _zstd_decompressor: Optional[Any] = None

    @classmethod
    def compress(cls, data: bytes, comp_type: CompressionType, level: Optional[int] = None) -> bytes:
        """Compress data using specified algorithm."""
        if level is None:
            level = cls.get_compression_level(comp_type)
        if comp_type == CompressionType.NONE:
            return data
        elif comp_type == CompressionType.ZLIB:
            return zlib.compress(data, level)
        elif comp_type == CompressionType.LZ4:
            return cast(bytes, _lz4_frame.compress(data, compression_level=level))
        elif comp_type == CompressionType.ZSTD:
            if level not in cls._zstd_compressors:
                cls._zstd_compressors[level] = _zstandard.ZstdCompressor(level=level)
            return cast(bytes, cls._zstd_compressors[level].compress(data))
        else:
            raise ValueError(f"Unsupported compression type: {comp_type}")

    @classmethod
    def decompress(cls, data: bytes, comp_type: CompressionType) -> bytes:
        """Decompress data using specified algorithm."""
        if comp_type == CompressionType.NONE:
            return data
        elif comp_type == CompressionType.ZLIB:
            return zlib.decompress(data)
        elif comp_type == CompressionType.LZ4:
            return cast(bytes, _lz4_frame.decompress(data))
        elif comp_type == CompressionType.ZSTD:
            if cls._zstd_decompressor is None:
                cls._zstd_decompressor = _zstandard.ZstdDecompressor()
            return cast(bytes, cls._zstd_decompressor.decompress(data))
        else:
            raise ValueError(f"Unsupported compression type: {comp_type}")

    @staticmethod
    def get_compression_level(comp_type: CompressionType) -> int:
        """Get default compression level for algorithm."""
        levels = {
            CompressionType.NONE: 0,
            CompressionType.ZLIB: 6,
            CompressionType.LZ4: 1,   # lz4 uses 0-16, 1 is fast
            CompressionType.ZSTD: 3,  # zstd uses 1-22, 3 is balanced
        }
        return levels.get(comp_type, 6)


# ============================================================================
# CHECKSUM IMPLEMENTATION - Weak and strong block checksums
#
# Key functions in rsync's C code:
#   - get_checksum1() in checksum.c: Rolling/weak checksum
#   - get_checksum2() in checksum.c: Strong checksum
# ============================================================================

class Checksum:
    """
    Weak and strong checksum primitives for one block size.

    1. Weak checksum (get_checksum1):
           s1 = Σ data[i] mod 2^16
           s2 = Σ s1_i mod 2^16   (sum of the running s1 values)
           checksum = (s2 << 16) | s1

    2. Strong checksum (get_checksum2): digest from ChecksumRegistry.

    Attributes:
        block_size: Size of blocks for checksum calculation
        checksum_type: Algorithm for strong checksums
        checksum_seed: Seed for strong checksums

    Example:
        >>> cs = Checksum(block_size=4096)
        >>> hex(cs.rolling_checksum(b"abc"))
        '0x24a0126'
    """

    def __init__(
        self,
        block_size: Optional[int] = None,
        checksum_type: Optional[ChecksumType] = None,
        checksum_seed: int = 0
    ) -> None:
        self.block_size = Config.DEFAULT_BLOCK_SIZE if block_size is None else block_size
        validate_block_size(self.block_size)
        self.checksum_type = checksum_type or Config.DEFAULT_CHECKSUM
        self.checksum_seed = checksum_seed
        self.strong_checksum_func = ChecksumRegistry.get_checksum_function(
            self.checksum_type, seed=checksum_seed
        )

    @staticmethod
    def rolling_checksum(
        data: Union[bytes, bytearray, memoryview],
        offset: int = 0,
        length: Optional[int] = None
    ) -> int:
        """
        Calculate rsync's weak checksum (Adler-32 variant, CHAR_OFFSET = 0).

        s2 is the sum of every running value of s1, so both sums are computed
        with C-level builtins instead of a per-byte Python loop.

        Args:
            data: Input bytes
            offset: Starting offset in data
            length: Number of bytes to process (None = rest of data)

        Returns:
            32-bit checksum as (s1 & 0xFFFF) | (s2 << 16)

        Reference:
            checksum.c: get_checksum1()
        """
        if length is None:
            length = len(data) - offset
        window = data[offset:offset + length]
        s1 = sum(window)
        s2 = sum(accumulate(window))
        return (s1 & 0xFFFF) | ((s2 & 0xFFFF) << 16)

    @staticmethod
    def rolling_update(
        old_byte: int,
        new_byte: int,
        old_s1: int,
        old_s2: int,
        length: int
    ) -> Tuple[int, int]:
        """
        Slide the window one byte: drop `old_byte`, append `new_byte`.

            s1_new = s1_old - old_byte + new_byte
            s2_new = s2_old - (length * old_byte) + s1_new

        Reference:
            match.c: hash_search() rolling update section
        """
        new_s1 = (old_s1 - old_byte + new_byte) & 0xFFFF
        new_s2 = (old_s2 - length * old_byte + new_s1) & 0xFFFF
        return new_s1, new_s2

    @staticmethod
    def combine_checksum(s1: int, s2: int) -> int:
        """Combine s1 and s2 components into 32-bit checksum."""
        return (s1 & 0xFFFF) | ((s2 & 0xFFFF) << 16)

    @staticmethod
    def checksum_components(checksum: int) -> Tuple[int, int]:
        """Extract s1 and s2 components from 32-bit checksum."""
        return checksum & 0xFFFF, (checksum >> 16) & 0xFFFF

    def strong_checksum(self, data: Union[bytes, bytearray, memoryview]) -> bytes:
        """Calculate strong checksum using configured algorithm."""
        return self.strong_checksum_func(bytes(data))


# ============================================================================
# CHECKSUM TABLE - Remote checksums indexed by weak checksum
# ============================================================================

class ChecksumTable:
    """
    Lookup table from weak checksum to every remote block sharing it.

    Weak checksums collide by design, so each bucket keeps all candidates in
    the order they arrived; that order decides which block a chunk is matched
    to when several candidates carry the same content. The table never
    changes once built and is safe to share with the scanner thread.

    Attributes:
        warnings: Number of faulty or malformed checksums seen while building

    Example:
        >>> table = ChecksumTable.build(checksums)
        >>> for candidate in table.lookup(weak):
        ...     print(candidate.index)
    """

    def __init__(
        self,
        buckets: Mapping[int, Tuple[BlockChecksum, ...]],
        warnings: int = 0
    ) -> None:
        self._buckets: Mapping[int, Tuple[BlockChecksum, ...]] = MappingProxyType(
            {weak: tuple(entries) for weak, entries in buckets.items()}
        )
        self._count = sum(len(entries) for entries in self._buckets.values())
        self.warnings = warnings

    @classmethod
    def build(
        cls,
        checksums: Iterable[BlockChecksum],
        *,
        logger: Optional[logging.Logger] = None
    ) -> 'ChecksumTable':
        """
        Drain `checksums` and index every usable entry.

        Entries carrying a captured error are reported as warnings. They stay
        in their bucket when the weak checksum is usable but find_match()
        never returns them, so the block counts as absent. Malformed entries
        are reported and skipped. Neither aborts the build: the worst outcome
        is that the affected block is sent again as literal data.
        """
        log = logger if logger is not None else logging.getLogger('rsync-sender')
        buckets: Dict[int, List[BlockChecksum]] = {}
        warnings = 0

        for entry in checksums:
            if entry.error is not None:
                # Worst case the involved data block is re-sent.
                warnings += 1
                log.warning("block checksum error (block %s): %s", entry.index, entry.error)
                if not entry.usable:
                    continue
            elif not entry.usable:
                warnings += 1
                log.warning(
                    "malformed block checksum (block %s): weak=%r, %d strong bytes",
                    entry.index, entry.weak, len(entry.strong)
                )
                continue

            buckets.setdefault(cast(int, entry.weak), []).append(entry)

        table = cls({weak: tuple(entries) for weak, entries in buckets.items()}, warnings=warnings)
        log.debug(
            "checksum table built: %d blocks in %d buckets, %d warnings",
            len(table), table.num_buckets, warnings
        )
        return table

    def lookup(self, weak: int) -> Tuple[BlockChecksum, ...]:
        """Candidates for `weak` in arrival order (empty tuple if none)."""
        return self._buckets.get(weak, ())

    def find_match(self, weak: int, strong: bytes) -> Optional[BlockChecksum]:
        """
        First candidate whose strong checksum equals `strong`.

        Candidates may store only a prefix of the digest (rsync's s2length),
        so the local digest is truncated to each candidate's length. Faulty
        candidates never match.
        """
        for candidate in self.lookup(weak):
            if candidate.error is None and strong[:len(candidate.strong)] == candidate.strong:
                return candidate
        return None

    @property
    def num_buckets(self) -> int:
        return len(self._buckets)

    def __contains__(self, weak: object) -> bool:
        return weak in self._buckets

    def __len__(self) -> int:
        return self._count

    def __repr__(self) -> str:
        return f"ChecksumTable(blocks={self._count}, buckets={self.num_buckets}, warnings={self.warnings})"


# ============================================================================
# CANCELLATION
# ============================================================================

class CancellationToken:
    """
    Cooperative cancellation signal carrying the reason for cancelling.

    The scanner polls it once per chunk; an in-flight read or hash is never
    interrupted. The first reason recorded wins.

    Example:
        >>> token = CancellationToken(timeout=30.0)
        >>> stream = sync(f, checksums, token=token)
        >>> token.cancel()  # from any thread
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        """
        Args:
            timeout: Seconds from now after which the token cancels itself
                with a DeadlineExceededError (None = no deadline)
        """
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._error: Optional[SyncCancelledError] = None
        self.deadline: Optional[float] = None
        if timeout is not None:
            self.deadline = time.monotonic() + timeout

    def cancel(self, error: Optional[BaseException] = None) -> None:
        """
        Request cancellation.

        Args:
            error: Why the sync is being cancelled. Anything that is not a
                SyncCancelledError is wrapped in one (kept as __cause__).
        """
        if error is None:
            error = SyncCancelledError("sync cancelled by caller")
        elif not isinstance(error, SyncCancelledError):
            wrapped = SyncCancelledError(f"sync cancelled: {error}")
            wrapped.__cause__ = error
            error = wrapped
        with self._lock:
            if self._error is None:
                self._error = error
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.cancel(DeadlineExceededError())
            return True
        return False

    @property
    def error(self) -> Optional[SyncCancelledError]:
        """The cancellation reason, or None while not cancelled."""
        if not self.cancelled:
            return None
        return self._error

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled (or `timeout` elapses); returns cancelled."""
        if self.deadline is not None:
            remaining = max(0.0, self.deadline - time.monotonic())
            timeout = remaining if timeout is None else min(timeout, remaining)
        self._event.wait(timeout)
        return self.cancelled


# ============================================================================
# DELTA SCANNER - Chunk-aligned block matching
# ============================================================================

def scan_operations(
    source: ByteSource,
    table: ChecksumTable,
    *,
    block_size: Optional[int] = None,
    strong_checksum: Optional[StrongChecksumFunc] = None,
    weak_checksum: Optional[WeakChecksumFunc] = None,
    token: Optional[CancellationToken] = None,
    stats: Optional[SyncStats] = None
) -> Iterator[BlockOperation]:
    """
    Scan `source` chunk by chunk and yield one operation per chunk.

    This is a pull-based generator: nothing is read until the next operation
    is requested, and cancellation is checked right before each read.

    Per chunk:
        1. Cancelled?  -> yield DeltaError(SyncCancelledError) and stop
        2. Read up to block_size bytes; EOF ends the scan, a read failure
           yields DeltaError(FileIOError) and stops
        3. Weak checksum not in table -> DeltaLiteral
        4. Weak hit -> strong checksum against each candidate in arrival
           order; first match -> DeltaMatch, none -> DeltaLiteral

    Args:
        source: DataSource or binary file-like object
        table: Remote checksums, fully built
        block_size: Chunk size; must equal the peer's block size
        strong_checksum: Digest function (default: Config.DEFAULT_CHECKSUM)
        weak_checksum: Weak checksum function (default: Checksum.rolling_checksum)
        token: Cancellation token (default: never cancelled)
        stats: SyncStats updated in place as the scan progresses

    Yields:
        DeltaMatch / DeltaLiteral, then optionally one terminal DeltaError

    Reference:
        match.c: hash_search(), matched()
    """
    block_size = Config.DEFAULT_BLOCK_SIZE if block_size is None else block_size
    validate_block_size(block_size)
    if strong_checksum is None:
        strong_checksum = ChecksumRegistry.get_checksum_function(Config.DEFAULT_CHECKSUM)
    if weak_checksum is None:
        weak_checksum = Checksum.rolling_checksum
    if token is None:
        token = CancellationToken()
    collect_stats = stats is not None and Config.COLLECT_STATS
    if stats is None:
        stats = SyncStats()

    buffer = bytearray(block_size)
    view = memoryview(buffer)
    index = 0
    started = time.perf_counter()
    logger.info(
        "scan started: block_size=%d, %d remote blocks in %d buckets",
        block_size, len(table), table.num_buckets
    )

    try:
        while True:
            error = token.error
            if error is not None:
                logger.info("scan cancelled after %d operations: %s", index, error)
                yield DeltaError(index=index, error=error)
                return

            try:
                n = _fill_block(source, view)
            except Exception as e:
                # The rest of the source can't be trusted: the peer must re-sync.
                failure = FileIOError(f"failed reading file: {e}")
                failure.__cause__ = e
                logger.warning("scan failed after %d operations: %s", index, failure)
                yield DeltaError(index=index, error=failure)
                return
            if n == 0:
                logger.info("scan completed: %d operations", index)
                return

            block = view[:n]
            weak = weak_checksum(block)
            op: BlockOperation
            candidate: Optional[BlockChecksum] = None

            if weak in table:
                if collect_stats:
                    stats.hash_hits += 1
                candidate = table.find_match(weak, strong_checksum(bytes(block)))
                if candidate is None and collect_stats:
                    stats.false_alarms += 1

            if candidate is not None:
                op = DeltaMatch(index=index, block_index=candidate.index)
                if collect_stats:
                    stats.matches += 1
                    stats.matched_data += n
            else:
                op = DeltaLiteral(index=index, data=bytes(block))
                if collect_stats:
                    stats.literal_data += n
            if collect_stats:
                stats.blocks_scanned += 1

            del block
            yield op
            index += 1
    finally:
        view.release()
        if collect_stats:
            stats.total_time_ms = (time.perf_counter() - started) * 1000.0
            _match_report(stats)


def _match_report(stats: SyncStats) -> None:
    """Log match statistics the way match.c:match_report() prints them."""
    level = logging.INFO if Config.VERBOSE_LOGGING else logging.DEBUG
    logger.log(
        level,
        "total: matches=%d  hash_hits=%d  false_alarms=%d data=%d",
        stats.matches, stats.hash_hits, stats.false_alarms, stats.literal_data
    )


# ============================================================================
# OPERATION STREAM - Scanner on a worker thread, pulled by the consumer
# ============================================================================

_REQUEST_NEXT = object()
_REQUEST_STOP = object()
_END_OF_STREAM = object()


class OperationStream:
    """
    Iterator over the operations produced by a scanner on its own thread.

    The handoff is a rendezvous of capacity one: the worker computes the next
    operation only when the consumer asks for it, so a slow consumer throttles
    the file scan and no chunk is ever read ahead of demand.

    Termination is either plain exhaustion (StopIteration) or exactly one
    DeltaError, after which the stream yields nothing more.

    Example:
        >>> with sync(f, checksums) as ops:
        ...     for op in ops:
        ...         if isinstance(op, DeltaError):
        ...             raise op.error
        ...         transport.send(op)
    """

    def __init__(
        self,
        operations: Iterator[BlockOperation],
        token: CancellationToken,
        stats: SyncStats,
        name: str = "rsync-sender-scan"
    ) -> None:
        self.token = token
        self.stats = stats
        self._operations = operations
        self._requests: queue.Queue = queue.Queue(maxsize=1)
        self._results: queue.Queue = queue.Queue(maxsize=1)
        self._received = 0
        self._finished = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            while self._requests.get() is _REQUEST_NEXT:
                try:
                    op = next(self._operations)
                except StopIteration:
                    self._results.put(_END_OF_STREAM)
                    return
                except Exception as e:
                    logger.exception("scanner failed unexpectedly")
                    failure = RsyncError(f"scanner failed: {e}")
                    failure.__cause__ = e
                    self._results.put(DeltaError(index=self._received, error=failure))
                    return
                self._results.put(op)
                if op.is_terminal:
                    return
        finally:
            close = getattr(self._operations, 'close', None)
            if close is not None:
                close()

    def __iter__(self) -> 'OperationStream':
        return self

    def __next__(self) -> BlockOperation:
        """Blocking receive of the next operation."""
        if self._finished:
            raise StopIteration
        self._requests.put(_REQUEST_NEXT)
        result = self._results.get()
        if result is _END_OF_STREAM:
            self._finished = True
            raise StopIteration
        op = cast(BlockOperation, result)
        self._received += 1
        if op.is_terminal:
            self._finished = True
        return op

    def cancel(self, error: Optional[BaseException] = None) -> None:
        """Cancel the scan; the next operation received is the terminal DeltaError."""
        self.token.cancel(error)

    def close(self) -> None:
        """
        Abandon the stream from the consuming thread.

        Cancels the token and stops the worker without producing any further
        operation.
        """
        if not self.token.cancelled:
            self.token.cancel()
        if not self._finished:
            self._finished = True
            self._requests.put(_REQUEST_STOP)
        self._thread.join()

    @property
    def done(self) -> bool:
        """True once the terminal condition has been delivered (or the stream closed)."""
        return self._finished

    def __enter__(self) -> 'OperationStream':
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def sync(
    source: ByteSource,
    checksums: Union[ChecksumTable, Iterable[BlockChecksum]],
    *,
    block_size: Optional[int] = None,
    checksum_type: Optional[Union[ChecksumType, str]] = None,
    checksum_seed: int = 0,
    strong_checksum: Optional[StrongChecksumFunc] = None,
    weak_checksum: Optional[WeakChecksumFunc] = None,
    token: Optional[CancellationToken] = None
) -> OperationStream:
    """
    Build the checksum table and start scanning `source` against it.

    The table is built on the caller's thread and must drain `checksums`
    completely before the scan starts: later chunks need every candidate of
    their bucket. The scan itself runs on a dedicated worker thread.

    Args:
        source: Local file (DataSource or binary file-like object)
        checksums: Remote checksums, or an already built ChecksumTable
        block_size: Chunk size; must equal the block size of the checksums
        checksum_type: Strong checksum algorithm of the remote checksums
        checksum_seed: Strong checksum seed of the remote checksums
        strong_checksum: Custom digest function (overrides checksum_type/seed)
        weak_checksum: Custom weak checksum function
        token: Cancellation token (a fresh one is created if omitted)

    Returns:
        OperationStream to iterate over

    Raises:
        ValidationError: If block size, seed or checksum type is invalid
    """
    block_size = Config.DEFAULT_BLOCK_SIZE if block_size is None else block_size
    validate_block_size(block_size)
    if strong_checksum is None:
        csum = ChecksumRegistry.parse(checksum_type or Config.DEFAULT_CHECKSUM)
        strong_checksum = ChecksumRegistry.get_checksum_function(csum, seed=checksum_seed)

    if isinstance(checksums, ChecksumTable):
        table = checksums
    else:
        table = ChecksumTable.build(checksums)

    token = token or CancellationToken()
    stats = SyncStats(checksum_warnings=table.warnings)
    operations = scan_operations(
        source, table,
        block_size=block_size,
        strong_checksum=strong_checksum,
        weak_checksum=weak_checksum,
        token=token,
        stats=stats,
    )
    return OperationStream(operations, token=token, stats=stats)


# ============================================================================
# REMOTE-SIDE COLLABORATORS - Checksum generation and delivery
# ============================================================================

def generate_checksums(
    source: ByteSource,
    block_size: Optional[int] = None,
    checksum_type: Optional[Union[ChecksumType, str]] = None,
    checksum_seed: int = 0,
    s2length: Optional[int] = None
) -> Iterator[BlockChecksum]:
    """
    Yield the checksum of every block of `source`, as the remote peer would.

    Args:
        source: DataSource or binary file-like object
        block_size: Block size (default: Config.DEFAULT_BLOCK_SIZE)
        checksum_type: Strong checksum algorithm
        checksum_seed: Strong checksum seed
        s2length: Keep only this many bytes of each strong checksum

    Yields:
        BlockChecksum objects with consecutive indices starting at 0

    Example:
        with FileDataSource("/path/to/basis.iso") as source:
            for block in generate_checksums(source, block_size=8192):
                print(f"Block {block.index}: {block.weak:08x}")
    """
    csum = ChecksumRegistry.parse(checksum_type or Config.DEFAULT_CHECKSUM)
    checksum = Checksum(block_size=block_size, checksum_type=csum, checksum_seed=checksum_seed)
    if s2length is not None and s2length <= 0:
        raise ValidationError(f"s2length must be positive, got {s2length}")

    buffer = bytearray(checksum.block_size)
    view = memoryview(buffer)
    index = 0
    try:
        while True:
            try:
                n = _fill_block(source, view)
            except OSError as e:
                raise FileIOError(f"failed reading basis file: {e}") from e
            if n == 0:
                break
            block = view[:n]
            strong = checksum.strong_checksum(block)
            yield BlockChecksum(
                index=index,
                weak=checksum.rolling_checksum(block),
                strong=strong[:s2length] if s2length else strong,
            )
            del block
            index += 1
    finally:
        view.release()


_FEED_DONE = object()
_FEED_POLL_INTERVAL = 0.05


def feed_checksums(
    producer: Iterable[BlockChecksum],
    maxsize: Optional[int] = None
) -> Iterator[BlockChecksum]:
    """
    Drain `producer` on a background thread and yield its checksums in order.

    Useful when checksums are decoded from a network stream: decoding runs
    concurrently while the table builder consumes. The bounded queue throttles
    the producer.

    If the producer raises, one last BlockChecksum with weak=None carrying the
    error is yielded; the table builder reports it as a warning and the sync
    goes on with the checksums received so far.

    Closing the returned iterator early stops the feed thread, closes the
    producer (when it is a generator) and waits for the thread to exit.
    """
    channel: queue.Queue = queue.Queue(maxsize=Config.FEED_QUEUE_SIZE if maxsize is None else maxsize)
    stop = threading.Event()
    produced = 0

    def _put(item: object) -> bool:
        while not stop.is_set():
            try:
                channel.put(item, timeout=_FEED_POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def _pump() -> None:
        nonlocal produced
        entries = iter(producer)
        try:
            for entry in entries:
                if not _put(entry):
                    return
                produced += 1
        except Exception as e:
            logger.error("checksum producer failed after %d entries: %s", produced, e)
            _put(BlockChecksum(index=produced, weak=None, error=e))
        finally:
            if stop.is_set():
                close = getattr(entries, 'close', None)
                if close is not None:
                    close()
            _put(_FEED_DONE)

    thread = threading.Thread(target=_pump, name="rsync-sender-feed", daemon=True)
    thread.start()
    try:
        while True:
            item = channel.get()
            if item is _FEED_DONE:
                break
            yield item
    finally:
        stop.set()
        while True:
            try:
                channel.get_nowait()
            except queue.Empty:
                break
        thread.join()
        logger.debug("checksum feed stopped after %d entries", produced)


# ============================================================================
# SIGNATURE FILES - JSON container for remote checksums
# ============================================================================

def write_signature(
    fp: TextIO,
    checksums: Iterable[BlockChecksum],
    *,
    block_size: int,
    checksum_type: Union[ChecksumType, str] = ChecksumType.MD5,
    checksum_seed: int = 0
) -> int:
    """
    Write checksums as a JSON signature document.

    Returns:
        Number of blocks written
    """
    csum = ChecksumRegistry.parse(checksum_type)
    blocks = [
        {'index': entry.index, 'weak': entry.weak, 'strong': entry.strong.hex()}
        for entry in checksums
    ]
    json.dump({
        'version': 1,
        'block_size': block_size,
        'checksum_type': csum.value,
        'checksum_seed': checksum_seed,
        'blocks': blocks,
    }, fp)
    return len(blocks)


def _decode_block(position: int, raw: Any) -> BlockChecksum:
    try:
        return BlockChecksum(
            index=int(raw['index']),
            weak=int(raw['weak']),
            strong=bytes.fromhex(raw['strong']),
        )
    except (KeyError, TypeError, ValueError) as e:
        weak: Optional[int] = None
        if isinstance(raw, dict) and isinstance(raw.get('weak'), int):
            weak = raw['weak']
        index = raw.get('index', position) if isinstance(raw, dict) else position
        return BlockChecksum(
            index=index if isinstance(index, int) else position,
            weak=weak,
            error=ProtocolError(f"undecodable checksum entry #{position}: {e!r}"),
        )


def read_signature(fp: TextIO) -> Tuple[SignatureHeader, Iterator[BlockChecksum]]:
    """
    Read a signature document written by write_signature().

    Individual entries that cannot be decoded come back as BlockChecksum
    objects with `error` set, so one bad entry costs one block of matching
    rather than the whole sync.

    Raises:
        ProtocolError: If the document or its header is unreadable
    """
    try:
        document = json.load(fp)
    except ValueError as e:
        raise ProtocolError(f"signature is not valid JSON: {e}") from e
    if not isinstance(document, dict):
        raise ProtocolError("signature must be a JSON object")
    try:
        header = SignatureHeader(
            block_size=int(document['block_size']),
            checksum_type=ChecksumType(document.get('checksum_type', ChecksumType.MD5.value)),
            checksum_seed=int(document.get('checksum_seed', 0)),
        )
        blocks = document['blocks']
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"invalid signature header: {e!r}") from e
    if not isinstance(blocks, list):
        raise ProtocolError("signature 'blocks' must be a list")
    try:
        validate_block_size(header.block_size)
    except ValidationError as e:
        raise ProtocolError(f"invalid signature header: {e}") from e

    return header, (_decode_block(position, raw) for position, raw in enumerate(blocks))


# ============================================================================
# OPERATION STREAM CODEC - Binary token stream (token.c style)
#
#   header:   b"RSD1" | u8 compression id | u32 block size
#   match:    0x40 | u64 block index
#   literal:  0x00 | u32 length | payload (compressed individually)
#   error:    0xC0 | u16 code | u32 length | utf-8 message   (terminal)
#   end:      0xFF                                           (terminal)
# ============================================================================

_HEADER = struct.Struct('<4sBI')
_U16 = struct.Struct('<H')
_U32 = struct.Struct('<I')
_U64 = struct.Struct('<Q')


class DeltaWriter:
    """
    Serialize BlockOperations for an external transport.

    Example:
        >>> with open("out.delta", "wb") as f:
        ...     writer = DeltaWriter(f, block_size=4096, compression=CompressionType.ZSTD)
        ...     for op in ops:
        ...         writer.write(op)
        ...     writer.close()
    """

    def __init__(
        self,
        fp: BinaryIO,
        block_size: int,
        compression: Union[CompressionType, str] = CompressionType.NONE
    ) -> None:
        validate_block_size(block_size)
        self.fp = fp
        self.block_size = block_size
        self.compression = CompressionType.parse(compression)
        self.bytes_written = 0
        self.closed = False
        self._write(_HEADER.pack(DELTA_MAGIC, self.compression.value, block_size))

    def _write(self, data: bytes) -> None:
        self.fp.write(data)
        self.bytes_written += len(data)

    def write(self, op: BlockOperation) -> None:
        if self.closed:
            raise ProtocolError("delta stream already terminated")
        if isinstance(op, DeltaMatch):
            self._write(bytes([TOKEN_MATCH]) + _U64.pack(op.block_index))
        elif isinstance(op, DeltaLiteral):
            payload = CompressionRegistry.compress(op.data, self.compression)
            self._write(bytes([TOKEN_LITERAL]) + _U32.pack(len(payload)) + payload)
        elif isinstance(op, DeltaError):
            code = getattr(op.error, 'code', 1)
            message = str(op.error).encode('utf-8')
            self._write(bytes([TOKEN_ERROR]) + _U16.pack(code) + _U32.pack(len(message)) + message)
            self.closed = True
        else:
            raise TypeError(f"not a block operation: {op!r}")

    def close(self) -> None:
        """Write the end token (no-op after a terminal error)."""
        if not self.closed:
            self._write(bytes([TOKEN_END]))
            self.closed = True


def _read_exact(fp: BinaryIO, size: int, what: str) -> bytes:
    data = fp.read(size)
    if len(data) != size:
        raise ProtocolError(f"truncated delta stream while reading {what}")
    return data


def _error_from_code(code: int, message: str) -> RsyncError:
    if code == RERR_TIMEOUT:
        return DeadlineExceededError(message)
    if code == RERR_SIGNAL:
        return SyncCancelledError(message)
    if code == RERR_FILEIO:
        return FileIOError(message)
    return RsyncError(message, code=code)


def read_delta(fp: BinaryIO) -> Tuple[int, Iterator[BlockOperation]]:
    """
    Decode a stream written by DeltaWriter.

    Returns:
        (block_size, iterator of operations). Ordinals are reassigned from 0.

    Raises:
        ProtocolError: On a bad header, an unknown token or truncation
    """
    magic, comp_id, block_size = _HEADER.unpack(_read_exact(fp, _HEADER.size, "header"))
    if magic != DELTA_MAGIC:
        raise ProtocolError(f"not a delta stream (magic {magic!r})")
    try:
        compression = CompressionType(comp_id)
    except ValueError:
        raise ProtocolError(f"unknown compression id {comp_id}") from None

    def _operations() -> Iterator[BlockOperation]:
        index = 0
        while True:
            token = _read_exact(fp, 1, "token")[0]
            if token == TOKEN_END:
                return
            if token == TOKEN_MATCH:
                (block_index,) = _U64.unpack(_read_exact(fp, 8, "block index"))
                yield DeltaMatch(index=index, block_index=block_index)
            elif token == TOKEN_LITERAL:
                (length,) = _U32.unpack(_read_exact(fp, 4, "literal length"))
                payload = _read_exact(fp, length, "literal data")
                try:
                    data = CompressionRegistry.decompress(payload, compression)
                except Exception as e:
                    raise ProtocolError(f"corrupt literal #{index}: {e}") from e
                yield DeltaLiteral(index=index, data=data)
            elif token == TOKEN_ERROR:
                (code,) = _U16.unpack(_read_exact(fp, 2, "error code"))
                (length,) = _U32.unpack(_read_exact(fp, 4, "error length"))
                message = _read_exact(fp, length, "error message").decode('utf-8', 'replace')
                yield DeltaError(index=index, error=_error_from_code(code, message))
                return
            else:
                raise ProtocolError(f"unknown token 0x{token:02x} at operation {index}")
            index += 1

    return block_size, _operations()


# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the rsync-sender CLI."""
    parser = argparse.ArgumentParser(
        prog='rsync-sender',
        description='Compute rsync-style deltas against a remote block signature.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "examples:\n"
            "  rsync-sender signature old.bin -o old.sig\n"
            "  rsync-sender delta old.sig new.bin -o new.delta --compress zstd\n"
            "  rsync-sender inspect new.delta\n"
        ),
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='increase verbosity (-vv for debug output)')
    parser.add_argument('--no-color', action='store_true', help='disable colored output')

    commands = parser.add_subparsers(dest='command', metavar='COMMAND')
    commands.required = True

    sig = commands.add_parser('signature', help='compute block checksums of a basis file')
    sig.add_argument('basis', help='file held by the receiving peer')
    sig.add_argument('-o', '--output', help='signature file (default: stdout)')
    sig.add_argument('-b', '--block-size', type=int, default=None,
                     help=f'block size in bytes (default: {Config.DEFAULT_BLOCK_SIZE})')
    sig.add_argument('--checksum', default=Config.DEFAULT_CHECKSUM.value,
                     choices=[t.value for t in ChecksumType], help='strong checksum algorithm')
    sig.add_argument('--seed', type=int, default=0, help='strong checksum seed')
    sig.add_argument('--s2length', type=int, default=None,
                     help='bytes of each strong checksum to keep')
    sig.set_defaults(func=cli_signature)

    delta = commands.add_parser('delta', help='compute the operations rebuilding NEWFILE')
    delta.add_argument('signature', help='signature file of the basis')
    delta.add_argument('newfile', help='local file to send')
    delta.add_argument('-o', '--output', help='delta file (default: discard, report only)')
    delta.add_argument('--compress', default='none',
                       choices=[t.name.lower() for t in CompressionType],
                       help='compression for literal data')
    delta.add_argument('--timeout', type=float, default=None,
                       help='abort the scan after this many seconds')
    delta.add_argument('--stats', action='store_true', help='print match statistics')
    delta.set_defaults(func=cli_delta)

    inspect = commands.add_parser('inspect', help='list the operations of a delta file')
    inspect.add_argument('delta', help='delta file')
    inspect.set_defaults(func=cli_inspect)

    return parser


def _configure_logging(verbosity: int) -> None:
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1 or Config.VERBOSE_LOGGING:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    logger.setLevel(level)


def cli_signature(args: argparse.Namespace) -> int:
    """Write the signature of a basis file."""
    block_size = Config.DEFAULT_BLOCK_SIZE if args.block_size is None else args.block_size
    validate_block_size(block_size)
    with FileDataSource(args.basis) as source:
        checksums = generate_checksums(
            source,
            block_size=block_size,
            checksum_type=args.checksum,
            checksum_seed=args.seed,
            s2length=args.s2length,
        )
        if args.output:
            with open(args.output, 'w', encoding='utf-8') as out:
                count = write_signature(out, checksums, block_size=block_size,
                                        checksum_type=args.checksum, checksum_seed=args.seed)
            print(Colors.success(f"{count} blocks written to {args.output}"), file=sys.stderr)
        else:
            write_signature(sys.stdout, checksums, block_size=block_size,
                            checksum_type=args.checksum, checksum_seed=args.seed)
            sys.stdout.write("\n")
    return 0


def cli_delta(args: argparse.Namespace) -> int:
    """Scan NEWFILE against a signature and write/report the operations."""
    try:
        with open(args.signature, 'r', encoding='utf-8') as f:
            header, checksums = read_signature(f)
            table = ChecksumTable.build(checksums)
    except OSError as e:
        raise FileIOError(f"Cannot read signature {args.signature}: {e}") from e

    token = CancellationToken(timeout=args.timeout)
    out: Optional[BinaryIO] = None
    writer: Optional[DeltaWriter] = None
    terminal: Optional[DeltaError] = None
    try:
        if args.output:
            try:
                out = open(args.output, 'wb')
            except OSError as e:
                raise FileIOError(f"Cannot create {args.output}: {e}") from e
            writer = DeltaWriter(out, header.block_size, compression=args.compress)

        with FileDataSource(args.newfile) as source, \
                sync(source, table,
                     block_size=header.block_size,
                     checksum_type=header.checksum_type,
                     checksum_seed=header.checksum_seed,
                     token=token) as ops:
            for op in ops:
                if writer is not None:
                    writer.write(op)
                if isinstance(op, DeltaError):
                    terminal = op
            stats = ops.stats
        if writer is not None:
            writer.close()
    finally:
        if out is not None:
            out.close()

    if args.stats or args.verbose:
        print(Colors.bold("Delta statistics:"))
        print(f"  Blocks scanned: {stats.blocks_scanned:,}")
        print(f"  Matches: {stats.matches:,} (hash hits {stats.hash_hits:,}, "
              f"false alarms {stats.false_alarms:,})")
        print(f"  Literal data: {format_size(stats.literal_data)}")
        print(f"  Matched data: {format_size(stats.matched_data)}")
        print(f"  Efficiency: {stats.efficiency:.1%}")
        if stats.checksum_warnings:
            print(Colors.warning(f"  Checksum warnings: {stats.checksum_warnings:,}"))
        print(f"  Time: {format_time(stats.total_time_ms / 1000.0)}")

    if terminal is not None:
        error = terminal.error
        print(Colors.error(f"rsync-sender: {error}"), file=sys.stderr)
        return getattr(error, 'code', 1)
    return 0


def cli_inspect(args: argparse.Namespace) -> int:
    """Print the operations stored in a delta file."""
    try:
        f = open(args.delta, 'rb')
    except OSError as e:
        raise FileIOError(f"Cannot open delta {args.delta}: {e}") from e
    with f:
        block_size, operations = read_delta(f)
        print(Colors.bold(f"block size: {block_size}"))
        for op in operations:
            print(repr(op))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.

    Returns:
        Exit code (0 for success, RsyncError.code on failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    if args.no_color:
        Config.USE_COLORS = False
    _configure_logging(args.verbose)

    try:
        return int(args.func(args))
    except RsyncError as e:
        print(Colors.error(f"rsync-sender: {e}"), file=sys.stderr)
        return e.code
    except KeyboardInterrupt:
        print(Colors.error("rsync-sender: interrupted"), file=sys.stderr)
        return RERR_SIGNAL


# Entry point when run as script
if __name__ == "__main__":
    sys.exit(main())
