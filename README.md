# wiretap

Building blocks for network traffic analysis:

- **`wiretap.filters`**: include and exclude filters by domain name, IP
  address or CIDR range, and port or port range. Filters can be combined with
  AND or OR logic.
- **`wiretap.tlsdecrypt`**: decryption of captured TLS 1.2 (AES-GCM) and
  TLS 1.3 application-data records from known secrets. It also provides the
  key schedule primitives `hkdf_expand_label`, `prf12`, `p_hash` and
  `hmac_hash`.
- **`wiretap.packetindex`**: a compact binary index format for captures. Index
  files can be written, and read back through a memory map to look up packets
  and connections by number, time, IP, port and protocol.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Filtering traffic

```python
import ipaddress
from wiretap.filters import FilterConfig, build_filter

flt = build_filter(FilterConfig(
    include_domains=["*.example.com"],
    exclude_ips=["10.0.0.0/8"],
    include_ports=["443", "8000-8080"],
))

flt.match("api.example.com", ipaddress.ip_address("192.168.1.5"), 443)  # True
flt.match("api.example.com", "10.1.1.1", 443)                           # False
```

Every filter has a `match(domain, ip, port)` method. The `ip` argument may be
an `ipaddress` object, a string or `None`. A `Mode` (`INCLUDE` or `EXCLUDE`)
decides whether a hit is accepted or rejected.

Domain patterns come in three forms:

- exact names such as `example.com`, compared case-insensitively;
- wildcards such as `*.example.com`, which also match `example.com` itself;
- regular expressions between slashes such as `/^api\./`, matched anywhere in
  the name.

IP specifications are single addresses or CIDR ranges, IPv4 or IPv6. Port
specifications are numbers from 1 to 65535 or inclusive ranges such as
`8000-8080`.

When the domain is empty, the IP is `None` or the port is 0, the matching
filter accepts in `EXCLUDE` mode and rejects in `INCLUDE` mode.

`CompositeFilter(filters, Operator.AND | Operator.OR)` combines filters. An
empty composite accepts everything.

`build_filter` returns:

- `None` when nothing is configured;
- the single filter when only one is configured;
- otherwise an AND `CompositeFilter`.

Invalid patterns, addresses or ports raise `FilterError`, a `ValueError`.

## Decrypting TLS records

```python
from wiretap.tlsdecrypt import Decryptor, TLS_AES_128_GCM_SHA256

dec = Decryptor.for_tls13(TLS_AES_128_GCM_SHA256, client_traffic_secret, server_traffic_secret)
plaintext = dec.decrypt_record(record_bytes, from_client=True)
```

Either TLS 1.3 traffic secret may be `None`. Records from that direction then
cannot be decrypted.

For TLS 1.2, use `Decryptor.for_tls12(cipher_suite, master_secret,
client_random, server_random)`. Both randoms must be 32 bytes.

Supported cipher suites are listed in `SUPPORTED_CIPHER_SUITES`:

- TLS 1.3: the AES-GCM and ChaCha20-Poly1305 suites;
- TLS 1.2: the ECDHE-RSA, ECDHE-ECDSA and RSA AES-GCM suites.

`decrypt_record` takes a whole record, header included, and accepts only
application-data records. For TLS 1.3 it strips the padding and the inner
content type. Sequence numbers are counted per direction, so records must be
fed in order.

Failures raise subclasses of `TLSDecryptError`:

- `UnsupportedCipherError` for an unknown cipher suite or one of the wrong
  version;
- `InvalidRecordError` for a malformed record;
- `DecryptionError` when authentication fails;
- `TLSDecryptError` itself for a wrong record type or missing keys.

## Packet index files

```python
import io
from wiretap.packetindex import (
    ConnectionIndexEntry, IndexHeader, PacketIndex, PacketIndexEntry, write_index,
)

with open("capture.wtidx", "wb") as f:
    write_index(
        f,
        IndexHeader(packet_count=1, connection_count=1, pcap_file_size=1024),
        [PacketIndexEntry(offset=24, length=60, timestamp=1_000, protocol=6,
                          src_port=12345, dst_port=443)],
        [ConnectionIndexEntry(src_port=12345, dst_port=443, protocol=6,
                              packet_count=1, byte_count=60)],
    )

with PacketIndex.open("capture.wtidx") as idx:
    print(idx.packet_count(), idx.connection_count())
    for entry in idx.search_by_port(443):
        print(entry.offset, entry.length, entry.timestamp)
```

The file layout is fixed:

| Part | Size |
| --- | --- |
| Header | 64 bytes |
| Each packet entry | 48 bytes |
| Each connection entry | 72 bytes |

All fields are little-endian. Connection addresses are 16 bytes, with an IPv4
address in the last four. `ConnectionIndexEntry.addresses()` returns them as
`ipaddress` objects.

Lookups:

- `get_packet(n)`, `get_packet_range(start, end)` and `get_connection(n)`
  read entries by number, counted from 0.
- `search_by_time(start, end)` accepts `datetime` objects or Unix nanoseconds.
  It relies on packet entries being in time order.
- `search_by_ip`, `search_by_port` and `search_by_protocol` return every
  matching packet entry.
- `verify(pcap_path)` checks that the capture file still has the size
  recorded in the header. A mismatch raises `IndexFileError`.

Errors are subclasses of `IndexFileError`:

- `InvalidMagicError` for a bad magic number;
- `VersionMismatchError` for an unknown version;
- `CorruptedIndexError` for a file too short for its header or for the counts
  it declares;
- `OutOfBoundsError` for an entry number outside the index;
- `IndexNotOpenError` when a closed index is used.

## What this package does not do

- It does not capture packets or read pcap files. An index is built from
  entries you supply to `write_index`.
- It does not parse TLS handshakes or key log files. Secrets and randoms must
  be passed to `Decryptor` directly.
- It has no command-line tool and no user interface.