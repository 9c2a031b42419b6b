"""Decryption of TLS 1.2 (AEAD) and TLS 1.3 application data records."""

from __future__ import annotations

import hashlib
import hmac
import struct
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

RECORD_TYPE_CHANGE_CIPHER_SPEC = 20
RECORD_TYPE_ALERT = 21
RECORD_TYPE_HANDSHAKE = 22
RECORD_TYPE_APPLICATION_DATA = 23

TLS_AES_128_GCM_SHA256 = 0x1301
TLS_AES_256_GCM_SHA384 = 0x1302
TLS_CHACHA20_POLY1305_SHA256 = 0x1303

TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256 = 0xC02F
TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384 = 0xC030
TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256 = 0xC02B
TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384 = 0xC02C
TLS_RSA_WITH_AES_128_GCM_SHA256 = 0x009C
TLS_RSA_WITH_AES_256_GCM_SHA384 = 0x009D

_HASH_ALGORITHMS = {"sha256": hashes.SHA256, "sha384": hashes.SHA384}


class TLSDecryptError(Exception):
    """Base class of TLS decryption errors."""


class UnsupportedCipherError(TLSDecryptError):
    """The cipher suite is unknown or unsuitable for the requested decryptor."""


class DecryptionError(TLSDecryptError):
    """AEAD authentication or decryption failed."""


class InvalidRecordError(TLSDecryptError):
    """The TLS record is malformed."""


@dataclass(frozen=True)
class CipherSuiteInfo:
    """Parameters of a supported cipher suite."""

    id: int
    name: str
    key_len: int
    iv_len: int
    tag_len: int
    hash_name: str
    is_tls13: bool
    is_aead: bool = True
    is_chacha: bool = False


def _suite(id_: int, name: str, key_len: int, iv_len: int, hash_name: str,
           is_tls13: bool, is_chacha: bool = False) -> CipherSuiteInfo:
    return CipherSuiteInfo(
        id=id_, name=name, key_len=key_len, iv_len=iv_len, tag_len=16,
        hash_name=hash_name, is_tls13=is_tls13, is_chacha=is_chacha,
    )


SUPPORTED_CIPHER_SUITES: dict[int, CipherSuiteInfo] = {
    info.id: info
    for info in (
        _suite(TLS_AES_128_GCM_SHA256, "TLS_AES_128_GCM_SHA256", 16, 12, "sha256", True),
        _suite(TLS_AES_256_GCM_SHA384, "TLS_AES_256_GCM_SHA384", 32, 12, "sha384", True),
        _suite(TLS_CHACHA20_POLY1305_SHA256, "TLS_CHACHA20_POLY1305_SHA256",
               32, 12, "sha256", True, is_chacha=True),
        # TLS 1.2 AEAD suites use a 4-byte implicit IV plus an 8-byte explicit nonce.
        _suite(TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256,
               "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256", 16, 4, "sha256", False),
        _suite(TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384,
               "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384", 32, 4, "sha384", False),
        _suite(TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256,
               "TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256", 16, 4, "sha256", False),
        _suite(TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384,
               "TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384", 32, 4, "sha384", False),
        _suite(TLS_RSA_WITH_AES_128_GCM_SHA256,
               "TLS_RSA_WITH_AES_128_GCM_SHA256", 16, 4, "sha256", False),
        _suite(TLS_RSA_WITH_AES_256_GCM_SHA384,
               "TLS_RSA_WITH_AES_256_GCM_SHA384", 32, 4, "sha384", False),
    )
}


@dataclass(frozen=True)
class TrafficKeys:
    """Key and IV for one direction of traffic."""

    key: bytes
    iv: bytes


def hkdf_expand_label(hash_name: str, secret: bytes, label: str,
                      context: Optional[bytes], length: int) -> bytes:
    """HKDF-Expand-Label as defined for TLS 1.3."""
    full_label = b"tls13 " + label.encode()
    context = context or b""
    info = (
        struct.pack(">HB", length, len(full_label))
        + full_label
        + bytes([len(context)])
        + context
    )
    algorithm = _HASH_ALGORITHMS[hash_name]()
    return HKDFExpand(algorithm=algorithm, length=length, info=info).derive(secret)


def hmac_hash(hash_name: str, key: bytes, data: bytes) -> bytes:
    """HMAC of data under key with the named hash."""
    return hmac.new(key, data, hash_name).digest()


def p_hash(hash_name: str, secret: bytes, seed: bytes, length: int) -> bytes:
    """P_hash expansion from the TLS PRF."""
    out = bytearray()
    a = seed
    while len(out) < length:
        a = hmac_hash(hash_name, secret, a)
        out += hmac_hash(hash_name, secret, a + seed)
    return bytes(out[:length])


def prf12(hash_name: str, secret: bytes, label: bytes, seed: bytes, length: int) -> bytes:
    """The TLS 1.2 PRF."""
    return p_hash(hash_name, secret, bytes(label) + bytes(seed), length)


def _lookup_suite(cipher_suite: int) -> CipherSuiteInfo:
    try:
        return SUPPORTED_CIPHER_SUITES[cipher_suite]
    except KeyError:
        raise UnsupportedCipherError(
            f"unsupported cipher suite: 0x{cipher_suite:04x}"
        ) from None


class Decryptor:
    """Decrypts TLS application data records for both directions of a connection."""

    def __init__(self, cipher: Optional[CipherSuiteInfo],
                 client_keys: Optional[TrafficKeys] = None,
                 server_keys: Optional[TrafficKeys] = None,
                 tls13: bool = False) -> None:
        self._cipher = cipher
        self._client_keys = client_keys
        self._server_keys = server_keys
        self._tls13 = tls13
        self._client_seq = 0
        self._server_seq = 0

    @classmethod
    def for_tls13(cls, cipher_suite: int,
                  client_traffic_secret: Optional[bytes] = None,
                  server_traffic_secret: Optional[bytes] = None) -> "Decryptor":
        """Create a decryptor from TLS 1.3 application traffic secrets."""
        info = _lookup_suite(cipher_suite)
        if not info.is_tls13:
            raise UnsupportedCipherError(
                "unsupported cipher suite: not a TLS 1.3 cipher suite"
            )

        def derive(secret: Optional[bytes]) -> Optional[TrafficKeys]:
            if secret is None:
                return None
            return TrafficKeys(
                key=hkdf_expand_label(info.hash_name, secret, "key", None, info.key_len),
                iv=hkdf_expand_label(info.hash_name, secret, "iv", None, info.iv_len),
            )

        return cls(info, derive(client_traffic_secret),
                   derive(server_traffic_secret), tls13=True)

    @classmethod
    def for_tls12(cls, cipher_suite: int, master_secret: bytes,
                  client_random: bytes, server_random: bytes) -> "Decryptor":
        """Create a decryptor from a TLS 1.2 master secret and both randoms."""
        info = _lookup_suite(cipher_suite)
        if info.is_tls13:
            raise UnsupportedCipherError(
                "unsupported cipher suite: not a TLS 1.2 cipher suite"
            )
        if not info.is_aead:
            raise UnsupportedCipherError(
                "unsupported cipher suite: only AEAD cipher suites supported"
            )
        if len(client_random) != 32 or len(server_random) != 32:
            raise ValueError("client and server randoms must be 32 bytes")

        block_len = 2 * info.key_len + 2 * info.iv_len
        material = prf12(info.hash_name, master_secret, b"key expansion",
                         bytes(server_random) + bytes(client_random), block_len)
        k, v = info.key_len, info.iv_len
        client_key, server_key = material[:k], material[k:2 * k]
        client_iv = material[2 * k:2 * k + v]
        server_iv = material[2 * k + v:2 * k + 2 * v]
        return cls(info, TrafficKeys(client_key, client_iv),
                   TrafficKeys(server_key, server_iv), tls13=False)

    def decrypt_record(self, record: bytes, from_client: bool) -> bytes:
        """Decrypt one full TLS record (header included) and return its plaintext."""
        if len(record) < 5:
            raise InvalidRecordError("invalid TLS record")
        record_type = record[0]
        (record_len,) = struct.unpack(">H", record[3:5])
        if len(record) < 5 + record_len:
            raise InvalidRecordError("invalid TLS record")

        if self._tls13:
            if record_type != RECORD_TYPE_APPLICATION_DATA:
                raise TLSDecryptError(
                    f"unexpected record type for TLS 1.3: {record_type}"
                )
            return self._decrypt_tls13(record[5:5 + record_len], from_client)

        if record_type != RECORD_TYPE_APPLICATION_DATA:
            raise TLSDecryptError(f"unexpected record type: {record_type}")
        return self._decrypt_tls12(record, from_client)

    def _keys_and_next_seq(self, from_client: bool) -> tuple[TrafficKeys, int]:
        keys = self._client_keys if from_client else self._server_keys
        if keys is None:
            raise TLSDecryptError("no keys available for decryption")
        if from_client:
            seq = self._client_seq
            self._client_seq += 1
        else:
            seq = self._server_seq
            self._server_seq += 1
        return keys, seq

    def _decrypt_tls13(self, ciphertext: bytes, from_client: bool) -> bytes:
        keys, seq = self._keys_and_next_seq(from_client)
        seq_bytes = seq.to_bytes(8, "big").rjust(len(keys.iv), b"\x00")
        nonce = bytes(a ^ b for a, b in zip(keys.iv, seq_bytes))
        aad = bytes([RECORD_TYPE_APPLICATION_DATA, 0x03, 0x03]) + struct.pack(
            ">H", len(ciphertext) & 0xFFFF
        )
        plaintext = self._aead_decrypt(keys.key, nonce, ciphertext, aad)
        if not plaintext:
            raise TLSDecryptError("empty plaintext")
        plaintext = plaintext.rstrip(b"\x00")
        if not plaintext:
            raise TLSDecryptError("empty plaintext after removing padding")
        # The final byte is the inner content type.
        return plaintext[:-1]

    def _decrypt_tls12(self, record: bytes, from_client: bool) -> bytes:
        keys = self._client_keys if from_client else self._server_keys
        if keys is None:
            raise TLSDecryptError("no keys available for decryption")

        record_type = record[0]
        version, record_len = struct.unpack(">HH", record[1:5])
        payload = record[5:5 + record_len]
        if len(payload) < 8:
            raise InvalidRecordError("invalid TLS record")

        explicit_nonce, ciphertext = payload[:8], payload[8:]
        nonce = keys.iv[:4] + explicit_nonce
        plaintext_len = len(ciphertext) - self._cipher.tag_len
        if plaintext_len < 0:
            raise InvalidRecordError("invalid TLS record")

        _, seq = self._keys_and_next_seq(from_client)
        aad = struct.pack(">QBHH", seq, record_type, version, plaintext_len)
        return self._aead_decrypt(keys.key, nonce, ciphertext, aad)

    def _aead_decrypt(self, key: bytes, nonce: bytes, ciphertext: bytes,
                      aad: bytes) -> bytes:
        try:
            aead = ChaCha20Poly1305(key) if self._cipher.is_chacha else AESGCM(key)
            return aead.decrypt(nonce, ciphertext, aad)
        except (InvalidTag, ValueError) as exc:
            raise DecryptionError(f"decryption failed: {exc or 'authentication failed'}") from exc

    def has_client_keys(self) -> bool:
        """True if client-to-server records can be decrypted."""
        return self._client_keys is not None

    def has_server_keys(self) -> bool:
        """True if server-to-client records can be decrypted."""
        return self._server_keys is not None

    def cipher_name(self) -> str:
        """Name of the cipher suite, or "unknown"."""
        return self._cipher.name if self._cipher is not None else "unknown"

    def is_tls13(self) -> bool:
        """True for a TLS 1.3 decryptor."""
        return self._tls13