"""Memory-mapped packet index files for fast random access to captures."""

from __future__ import annotations

import bisect
import ipaddress
import mmap
import os
import struct
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import BinaryIO, Iterable, Optional, Union

MAGIC_NUMBER = 0x57545049  # "WTPI"
CURRENT_VERSION = 1
HEADER_SIZE = 64
PACKET_ENTRY_SIZE = 48
CONNECTION_ENTRY_SIZE = 72

_HEADER = struct.Struct("<IIQQqq16s8x")
_PACKET = struct.Struct("<qIqHHIHH16x")
_CONNECTION = struct.Struct("<16s16sHHHBBQQIQ4x")
_TIMESTAMP = struct.Struct("<q")
_TIMESTAMP_OFFSET = 12

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

TimeLike = Union[int, datetime]
IPLike = Union[str, ipaddress.IPv4Address, ipaddress.IPv6Address]


class IndexFileError(Exception):
    """Base class of index file errors."""


class InvalidMagicError(IndexFileError):
    """The file does not start with the index magic number."""


class VersionMismatchError(IndexFileError):
    """The index was written with an unsupported format version."""


class CorruptedIndexError(IndexFileError):
    """The index file is truncated or otherwise malformed."""


class IndexNotOpenError(IndexFileError):
    """The index has been closed."""


class OutOfBoundsError(IndexFileError):
    """A packet or connection number lies outside the index."""


@dataclass(frozen=True)
class IndexHeader:
    """Header at the start of an index file."""

    magic: int = MAGIC_NUMBER
    version: int = CURRENT_VERSION
    packet_count: int = 0
    connection_count: int = 0
    created_at: int = 0
    pcap_file_size: int = 0
    pcap_file_md5: bytes = bytes(16)

    def pack(self) -> bytes:
        return _HEADER.pack(
            self.magic, self.version, self.packet_count, self.connection_count,
            self.created_at, self.pcap_file_size, bytes(self.pcap_file_md5),
        )

    @classmethod
    def unpack(cls, data: bytes) -> "IndexHeader":
        return cls(*_HEADER.unpack(data))


@dataclass(frozen=True)
class PacketIndexEntry:
    """One packet's record: where it lives in the capture and what it carries."""

    offset: int = 0
    length: int = 0
    timestamp: int = 0
    protocol: int = 0
    flags: int = 0
    conn_id: int = 0
    src_port: int = 0
    dst_port: int = 0

    def pack(self) -> bytes:
        return _PACKET.pack(
            self.offset, self.length, self.timestamp, self.protocol,
            self.flags, self.conn_id, self.src_port, self.dst_port,
        )

    @classmethod
    def unpack_from(cls, data, offset: int) -> "PacketIndexEntry":
        return cls(*_PACKET.unpack_from(data, offset))


@dataclass(frozen=True)
class ConnectionIndexEntry:
    """One connection's record; addresses are 16 bytes, IPv4 in the last four."""

    src_ip: bytes = bytes(16)
    dst_ip: bytes = bytes(16)
    src_port: int = 0
    dst_port: int = 0
    protocol: int = 0
    is_ipv6: int = 0
    state: int = 0
    first_packet: int = 0
    last_packet: int = 0
    packet_count: int = 0
    byte_count: int = 0

    def pack(self) -> bytes:
        return _CONNECTION.pack(
            bytes(self.src_ip).ljust(16, b"\x00")[:16],
            bytes(self.dst_ip).ljust(16, b"\x00")[:16],
            self.src_port, self.dst_port, self.protocol, self.is_ipv6,
            self.state, self.first_packet, self.last_packet,
            self.packet_count, self.byte_count,
        )

    @classmethod
    def unpack_from(cls, data, offset: int) -> "ConnectionIndexEntry":
        return cls(*_CONNECTION.unpack_from(data, offset))

    def addresses(self) -> tuple:
        """Source and destination as ipaddress objects."""
        if self.is_ipv6 == 1:
            return (ipaddress.IPv6Address(self.src_ip),
                    ipaddress.IPv6Address(self.dst_ip))
        return (ipaddress.IPv4Address(self.src_ip[12:16]),
                ipaddress.IPv4Address(self.dst_ip[12:16]))


def _to_nanos(value: TimeLike) -> int:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.astimezone()
        return (value - _EPOCH) // timedelta(microseconds=1) * 1000
    return int(value)


def _normalize_ip(ip: IPLike):
    address = ipaddress.ip_address(ip) if isinstance(ip, str) else ip
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


class PacketIndex:
    """Read access to a memory-mapped index file."""

    def __init__(self, file: BinaryIO, data: mmap.mmap) -> None:
        self._lock = threading.RLock()
        self._file: Optional[BinaryIO] = file
        self._data: Optional[mmap.mmap] = data
        self._header = self._read_header()
        self._packet_base = HEADER_SIZE
        self._conn_base = HEADER_SIZE + self._header.packet_count * PACKET_ENTRY_SIZE

    @classmethod
    def open(cls, path) -> "PacketIndex":
        """Open and validate an existing index file."""
        f = open(path, "rb")
        try:
            size = os.fstat(f.fileno()).st_size
            if size < HEADER_SIZE:
                raise CorruptedIndexError("corrupted index file")
            data = mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ)
        except BaseException:
            f.close()
            raise
        try:
            return cls(f, data)
        except BaseException:
            data.close()
            f.close()
            raise

    def _read_header(self) -> IndexHeader:
        header = IndexHeader.unpack(self._data[:HEADER_SIZE])
        if header.magic != MAGIC_NUMBER:
            raise InvalidMagicError("invalid index magic number")
        if header.version != CURRENT_VERSION:
            raise VersionMismatchError("index version mismatch")
        needed = (HEADER_SIZE + header.packet_count * PACKET_ENTRY_SIZE
                  + header.connection_count * CONNECTION_ENTRY_SIZE)
        if len(self._data) < needed:
            raise CorruptedIndexError("corrupted index file")
        return header

    def close(self) -> None:
        """Release the memory map and the file."""
        with self._lock:
            if self._data is not None:
                self._data.close()
                self._data = None
            if self._file is not None:
                self._file.close()
                self._file = None

    def __enter__(self) -> "PacketIndex":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _require_open(self) -> mmap.mmap:
        if self._data is None:
            raise IndexNotOpenError("index not open")
        return self._data

    def packet_count(self) -> int:
        """Number of indexed packets."""
        return self._header.packet_count

    def connection_count(self) -> int:
        """Number of indexed connections."""
        return self._header.connection_count

    def _packet_at(self, data, num: int) -> PacketIndexEntry:
        return PacketIndexEntry.unpack_from(data, self._packet_base + num * PACKET_ENTRY_SIZE)

    def _connection_at(self, data, num: int) -> ConnectionIndexEntry:
        return ConnectionIndexEntry.unpack_from(
            data, self._conn_base + num * CONNECTION_ENTRY_SIZE
        )

    def _packets(self, data) -> Iterable[PacketIndexEntry]:
        return (self._packet_at(data, i) for i in range(self._header.packet_count))

    def get_packet(self, packet_num: int) -> PacketIndexEntry:
        """The entry for packet number packet_num, counted from zero."""
        with self._lock:
            data = self._require_open()
            if not 0 <= packet_num < self._header.packet_count:
                raise OutOfBoundsError("index out of bounds")
            return self._packet_at(data, packet_num)

    def get_packet_range(self, start: int, end: int) -> list:
        """Entries for packets start up to, not including, end."""
        with self._lock:
            data = self._require_open()
            count = self._header.packet_count
            if start < 0 or start >= count or end > count or start > end:
                raise OutOfBoundsError("index out of bounds")
            return [self._packet_at(data, i) for i in range(start, end)]

    def get_connection(self, conn_num: int) -> ConnectionIndexEntry:
        """The entry for connection number conn_num, counted from zero."""
        with self._lock:
            data = self._require_open()
            if not 0 <= conn_num < self._header.connection_count:
                raise OutOfBoundsError("index out of bounds")
            return self._connection_at(data, conn_num)

    def search_by_time(self, start: TimeLike, end: TimeLike) -> list:
        """Packets with start <= timestamp <= end; times are datetimes or Unix nanoseconds."""
        with self._lock:
            data = self._require_open()
            start_ns, end_ns = _to_nanos(start), _to_nanos(end)
            count = self._header.packet_count

            def timestamp_at(i: int) -> int:
                offset = self._packet_base + i * PACKET_ENTRY_SIZE + _TIMESTAMP_OFFSET
                return _TIMESTAMP.unpack_from(data, offset)[0]

            first = bisect.bisect_left(range(count), start_ns, key=timestamp_at)
            results = []
            for i in range(first, count):
                entry = self._packet_at(data, i)
                if entry.timestamp > end_ns:
                    break
                results.append(entry)
            return results

    def search_by_ip(self, ip: IPLike) -> list:
        """Packets of every connection with ip as source or destination."""
        with self._lock:
            data = self._require_open()
            target = _normalize_ip(ip)
            matching = {
                i for i in range(self._header.connection_count)
                if target in map(_normalize_ip, self._connection_at(data, i).addresses())
            }
            return [e for e in self._packets(data) if e.conn_id in matching]

    def search_by_port(self, port: int) -> list:
        """Packets with port as source or destination port."""
        with self._lock:
            data = self._require_open()
            return [e for e in self._packets(data)
                    if e.src_port == port or e.dst_port == port]

    def search_by_protocol(self, protocol: int) -> list:
        """Packets with the given protocol identifier."""
        with self._lock:
            data = self._require_open()
            wanted = int(protocol)
            return [e for e in self._packets(data) if e.protocol == wanted]

    def header(self) -> IndexHeader:
        """The index header."""
        return self._header

    def verify(self, pcap_path) -> None:
        """Check that the capture file still has the size recorded in the index."""
        with self._lock:
            self._require_open()
            size = os.stat(pcap_path).st_size
            if size != self._header.pcap_file_size:
                raise IndexFileError(
                    f"pcap size mismatch: expected {self._header.pcap_file_size}, got {size}"
                )


def write_index(stream: BinaryIO, header: IndexHeader,
                packets: Iterable[PacketIndexEntry],
                connections: Iterable[ConnectionIndexEntry]) -> None:
    """Write a header, packet entries and connection entries to a binary stream."""
    stream.write(header.pack())
    for packet in packets:
        stream.write(packet.pack())
    for conn in connections:
        stream.write(conn.pack())