#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
locate & decode android apk signing blocks

apksiginfo locates the APK Signing Block of an APK (i.e. a ZIP file) without
reading the whole file into memory, reports which APK Signature Scheme blocks
(v2, v3, v3.1) it contains, and decodes the v2 block (signers, digests,
certificates, additional attributes, signatures, public keys), e.g. to show
certificate and public key fingerprints.

NB: signatures are NOT verified, use apksigner (or apksigtool) for that.


CLI
===

$ apksiginfo [--json] [--no-decode] [--no-strict] [--verbose] [--wrap] APK


API
===

#>> import apksiginfo
#>> apksiginfo.do_parse(apk, verbose=True)
#>> result = apksiginfo.parse_apk(apk)
#>> result.has_v2_block(), result.has_v3_block(), result.has_v3_1_block()
#>> result.v2_block().signers[0].signed_data.certificates[0].fingerprint


Searching
---------

>>> import apksiginfo as asi, io
>>> data = b"xx" + asi.EOCD_MAGIC + b"yy" + asi.EOCD_MAGIC + b"zz"
>>> asi.reverse_find(io.BytesIO(data), asi.EOCD_MAGIC)
8
>>> asi.reverse_find(io.BytesIO(data), asi.EOCD_MAGIC, start=7)
2
>>> asi.reverse_find(io.BytesIO(data), b"nope") is None
True


Length-prefixed sequences
-------------------------

>>> import apksiginfo as asi
>>> data = bytes.fromhex("01000000" "61" "02000000" "6263")
>>> asi.decode_sequence(data)
(b'a', b'bc')
>>> asi.decode_sequence(data, 5)
(b'a',)
>>> try:
...     asi.decode_sequence(data, 10)
... except asi.TruncatedSequence as e:
...     print(e)
Length-prefixed item at offset 5 overruns sequence: needs 2 byte(s), 1 remaining

"""

from __future__ import annotations

import os
import re
import sys
import textwrap

from binascii import hexlify
from dataclasses import dataclass
from hashlib import sha256
from typing import (cast, Any, BinaryIO, Callable, Dict, Iterator, List, Mapping, Optional,
                    TextIO, Tuple)

from asn1crypto.x509 import Certificate as X509Cert                 # type: ignore[import-untyped]

__version__ = "0.1.0"
NAME = "apksiginfo"

EOCD_MAGIC = b"\x50\x4b\x05\x06"
APK_SIG_BLOCK_MAGIC = b"APK Sig Block 42"

# offset of "offset of start of central directory" within the EOCD record
EOCD_CD_OFFSET_FIELD = 16

# size of block (uint64) + magic (16B); the size excludes the leading size field
SIZE_OF_BLOCK_MIN = 8 + 16

WINDOW_SIZE = 4096

# https://source.android.com/docs/security/features/apksigning/v2#apk-signing-block-format
APK_SIGNATURE_SCHEME_V2_BLOCK_ID = 0x7109871a
APK_SIGNATURE_SCHEME_V3_BLOCK_ID = 0xf05368c0
APK_SIGNATURE_SCHEME_V31_BLOCK_ID = 0x1b93ad61

SCHEME_BLOCK_IDS = (APK_SIGNATURE_SCHEME_V2_BLOCK_ID, APK_SIGNATURE_SCHEME_V3_BLOCK_ID,
                    APK_SIGNATURE_SCHEME_V31_BLOCK_ID)

# only used to name pairs in the output
PAIR_IDS = {
    APK_SIGNATURE_SCHEME_V2_BLOCK_ID: "APK SIGNATURE SCHEME v2 BLOCK",
    APK_SIGNATURE_SCHEME_V3_BLOCK_ID: "APK SIGNATURE SCHEME v3 BLOCK",
    APK_SIGNATURE_SCHEME_V31_BLOCK_ID: "APK SIGNATURE SCHEME v3.1 BLOCK",
    0x42726577: "VERITY PADDING BLOCK",
    0x504b4453: "DEPENDENCY INFO BLOCK",
    0x2146444e: "GOOGLE PLAY FROSTING BLOCK",
    0x2b09189e: "SOURCE STAMP v1 BLOCK",
    0x6dff800d: "SOURCE STAMP v2 BLOCK",
}

STRIPPING_PROTECTION_ATTR_ID = 0xbeeff00d
PROOF_OF_ROTATION_ATTR_ID = 0x3ba06f8c

ATTR_IDS = {
    STRIPPING_PROTECTION_ATTR_ID: "STRIPPING PROTECTION ATTR",
    PROOF_OF_ROTATION_ATTR_ID: "PROOF OF ROTATION STRUCT",
}

# https://android.googlesource.com/platform/tools/apksig
#   src/main/java/com/android/apksig/internal/apk/SignatureAlgorithm.java
SIGNATURE_ALGORITHM_IDS = {
    0x0101: "RSASSA-PSS with SHA2-256 digest, SHA2-256 MGF1, 32 bytes of salt, trailer: 0xbc",
    0x0102: "RSASSA-PSS with SHA2-512 digest, SHA2-512 MGF1, 64 bytes of salt, trailer: 0xbc",
    0x0103: "RSASSA-PKCS1-v1_5 with SHA2-256 digest",
    0x0104: "RSASSA-PKCS1-v1_5 with SHA2-512 digest",
    0x0201: "ECDSA with SHA2-256 digest",
    0x0202: "ECDSA with SHA2-512 digest",
    0x0301: "DSA with SHA2-256 digest",
    0x0421: "RSASSA-PKCS1-v1_5 with SHA2-256 digest, verity",
    0x0423: "ECDSA with SHA2-256 digest, verity",
    0x0425: "DSA with SHA2-256 digest, verity",
}

WRAP_COLUMNS = 80   # overridden in main() if $APKSIGINFO_WRAP_COLUMNS is set


class APKSigInfoError(Exception):
    """Base class for errors."""


class ParseError(APKSigInfoError):
    """Parse failure."""


class NotAnArchive(ParseError):
    """No ZIP end of central directory record (EOCD) found."""


class SigningBlockMissingOrMalformed(ParseError):
    """APK Signing Block missing or malformed."""


class TruncatedSequence(ParseError):
    """Length-prefixed item or sequence overruns its enclosing length."""


class IoBoundsViolation(ParseError):
    """Read beyond the end of the stream."""


class InvalidPattern(APKSigInfoError, ValueError):
    """Empty search pattern."""


@dataclass(frozen=True)
class APKSigInfoBase:
    """Base class for dataclasses."""

    def for_json(self) -> Mapping[str, Any]:
        """Convert to JSON: dict of all attributes not starting with _, plus _type."""
        d = {k: v for k, v in self.__dict__.items() if not k.startswith("_")}
        return dict(_type=self.__class__.__name__, **d)


@dataclass(frozen=True)
class SigningBlockPosition(APKSigInfoBase):
    """
    Offsets of the APK Signing Block (and EOCD) in the APK.

    The pair region spans [pairs_offset, size_offset).
    """
    eocd_offset: int
    cd_offset: int
    magic_offset: int
    size_offset: int
    size_of_block: int
    pairs_offset: int

    @property
    def pairs_end(self) -> int:
        """End of the pair region (i.e. the trailing size of block field)."""
        return self.size_offset

    @property
    def block_offset(self) -> int:
        """Start of the APK Signing Block (i.e. the leading size of block field)."""
        return self.pairs_offset - 8


@dataclass(frozen=True)
class PairInfo(APKSigInfoBase):
    """ID-value pair (w/o value) as found by scan_pairs()."""
    offset: int
    length: int
    id: int

    @property
    def name(self) -> str:
        """Block type name (or "UNKNOWN BLOCK")."""
        return PAIR_IDS.get(self.id, "UNKNOWN BLOCK")


@dataclass(frozen=True)
class Digest(APKSigInfoBase):
    """APK Signature Scheme v2 Block -> signer -> signed data -> digest."""
    signature_algorithm_id: int
    digest: bytes


@dataclass(frozen=True)
class Certificate(APKSigInfoBase):
    """
    APK Signature Scheme v2 Block -> signer -> signed data -> certificate.

    The DER data is opaque; .certificate_info() is best-effort (for display).
    """
    raw_data: bytes

    @property
    def fingerprint(self) -> str:
        """SHA-256 fingerprint (lowercase hex)."""
        return fingerprint(self.raw_data)

    def certificate_info(self) -> Optional[CertificateInfo]:
        """X.509 certificate info, or None if raw_data is not a valid certificate."""
        try:
            return x509_certificate_info(X509Cert.load(self.raw_data))
        except (ValueError, TypeError):
            return None

    def for_json(self) -> Mapping[str, Any]:
        """Convert to JSON."""
        return {**super().for_json(), "fingerprint": self.fingerprint}


@dataclass(frozen=True)
class CertificateInfo(APKSigInfoBase):
    """X.509 certificate info."""
    subject: str
    issuer: str
    serial_number: int


@dataclass(frozen=True)
class AdditionalAttribute(APKSigInfoBase):
    """APK Signature Scheme v2 Block -> signer -> signed data -> additional attribute."""
    id: int
    value: bytes

    @property
    def name(self) -> Optional[str]:
        return ATTR_IDS.get(self.id)


@dataclass(frozen=True)
class Signature(APKSigInfoBase):
    """APK Signature Scheme v2 Block -> signer -> signature."""
    signature_algorithm_id: int
    signature: bytes


@dataclass(frozen=True)
class PublicKey(APKSigInfoBase):
    """APK Signature Scheme v2 Block -> signer -> public key (SubjectPublicKeyInfo DER)."""
    raw_data: bytes

    @property
    def fingerprint(self) -> str:
        """SHA-256 fingerprint (lowercase hex)."""
        return fingerprint(self.raw_data)

    def for_json(self) -> Mapping[str, Any]:
        """Convert to JSON."""
        return {**super().for_json(), "fingerprint": self.fingerprint}


@dataclass(frozen=True)
class SignedData(APKSigInfoBase):
    """
    APK Signature Scheme v2 Block -> signer -> signed data.

    The first certificate is the signer's own certificate.
    """
    digests: Tuple[Digest, ...]
    certificates: Tuple[Certificate, ...]
    additional_attributes: Tuple[AdditionalAttribute, ...]


@dataclass(frozen=True)
class Signer(APKSigInfoBase):
    """APK Signature Scheme v2 Block -> signer."""
    signed_data: SignedData
    signatures: Tuple[Signature, ...]
    public_key: PublicKey


@dataclass(frozen=True)
class V2Block(APKSigInfoBase):
    """APK Signature Scheme v2 Block."""
    signers: Tuple[Signer, ...]

    @property
    def is_empty(self) -> bool:
        """Whether there are no signers (a format violation, but not a parse failure)."""
        return not self.signers


@dataclass(frozen=True)
class ParseResult(APKSigInfoBase):
    """
    Result of locating & scanning the APK Signing Block.

    The v2 block is kept as raw bytes (.v2_block_raw) and decoded on demand by
    .v2_block(); it is already decoded when parsed with decode=True.  For v3 and
    v3.1 only the offset of the block (right after the pair ID) is recorded.
    """
    position: SigningBlockPosition
    pairs: Tuple[PairInfo, ...]
    v2_block_raw: Optional[bytes] = None
    v3_offset: Optional[int] = None
    v31_offset: Optional[int] = None
    decoded_v2_block: Optional[V2Block] = None

    def has_v2_block(self) -> bool:
        return self.v2_block_raw is not None

    def has_v3_block(self) -> bool:
        return self.v3_offset is not None

    def has_v3_1_block(self) -> bool:
        return self.v31_offset is not None

    def v2_block(self) -> Optional[V2Block]:
        """
        Decoded v2 block (None if there is none).

        Raises ParseError if the v2 block is malformed.
        """
        if self.decoded_v2_block is not None:
            return self.decoded_v2_block
        if self.v2_block_raw is None:
            return None
        return decode_v2_block(self.v2_block_raw)

    def for_json(self) -> Mapping[str, Any]:
        """Convert to JSON (w/o .v2_block_raw)."""
        x = dict(has_v2_block=self.has_v2_block(), has_v3_block=self.has_v3_block(),
                 has_v3_1_block=self.has_v3_1_block())
        d = {k: v for k, v in super().for_json().items() if k != "v2_block_raw"}
        return {**d, **x}


def reverse_find(fh: BinaryIO, pattern: bytes, start: Optional[int] = None, *,
                 window_size: int = WINDOW_SIZE) -> Optional[int]:
    """
    Find the last occurrence of pattern in the stream that starts at or before
    offset start (default: anywhere in the stream).

    Reads the stream backwards in windows of max(window_size, len(pattern))
    bytes; the first len(pattern) - 1 bytes of the previous (higher) window are
    carried over so matches straddling windows are found.

    Returns the offset, or None when not found.  Raises InvalidPattern if the
    pattern is empty.

    >>> import apksiginfo as asi, io
    >>> fh = io.BytesIO(b"abcdef" * 3)
    >>> asi.reverse_find(fh, b"fab", window_size=4)
    11
    >>> asi.reverse_find(fh, b"fab", start=10, window_size=4)
    5
    >>> asi.reverse_find(fh, b"fab", start=4, window_size=4) is None
    True

    """
    if not pattern:
        raise InvalidPattern("Search pattern must not be empty")
    if start is not None and start < 0:
        return None
    end = fh.seek(0, os.SEEK_END)
    if start is not None:
        end = min(end, start + len(pattern))
    size, carry = max(window_size, len(pattern)), b""
    while end > 0:
        pos = max(0, end - size)
        window = _read_at(fh, pos, end - pos, "search window") + carry
        if (found := window.rfind(pattern)) != -1:
            return pos + found
        carry = window[:len(pattern) - 1]
        end = pos
    return None


def locate_signing_block(fh: BinaryIO) -> SigningBlockPosition:
    """
    Locate the APK Signing Block using the EOCD.

    Finds the EOCD (searching backwards from the end), reads the central
    directory offset from it, checks the APK Signing Block magic right before
    the central directory, reads the size of block right before the magic, and
    checks it against the leading size of block at the start of the block.

    Returns SigningBlockPosition.

    Raises NotAnArchive (no EOCD), SigningBlockMissingOrMalformed (no or
    invalid APK Signing Block), IoBoundsViolation (truncated stream).
    """
    eocd_offset = reverse_find(fh, EOCD_MAGIC)
    if eocd_offset is None:
        raise NotAnArchive("Expected end of central directory record (EOCD)")
    cd_offset = _read_uint_at(fh, eocd_offset + EOCD_CD_OFFSET_FIELD, 4,
                              "central directory offset")
    if cd_offset > eocd_offset:
        raise NotAnArchive(f"Central directory offset {cd_offset} after EOCD "
                           f"at offset {eocd_offset}")
    if cd_offset < SIZE_OF_BLOCK_MIN:
        raise SigningBlockMissingOrMalformed(
            f"No APK Signing Block: central directory offset {cd_offset} too small")
    magic_offset = cd_offset - len(APK_SIG_BLOCK_MAGIC)
    magic = _read_at(fh, magic_offset, len(APK_SIG_BLOCK_MAGIC), "APK Sig Block magic")
    if magic != APK_SIG_BLOCK_MAGIC:
        raise SigningBlockMissingOrMalformed(
            f"No APK Signing Block: expected magic {APK_SIG_BLOCK_MAGIC!r} "
            f"at offset {magic_offset}, found {magic!r}")
    size_offset = magic_offset - 8
    size_of_block = _read_uint_at(fh, size_offset, 8, "APK Sig Block size")
    if not SIZE_OF_BLOCK_MIN <= size_of_block <= cd_offset - 8:
        raise SigningBlockMissingOrMalformed(
            f"APK Sig Block size {size_of_block} at offset {size_offset} out of "
            f"range [{SIZE_OF_BLOCK_MIN}, {cd_offset - 8}]")
    pairs_offset = cd_offset - size_of_block
    leading_size = _read_uint_at(fh, pairs_offset - 8, 8, "APK Sig Block leading size")
    if leading_size != size_of_block:
        raise SigningBlockMissingOrMalformed(
            f"APK Sig Block sizes not equal: {leading_size} at offset {pairs_offset - 8}, "
            f"{size_of_block} at offset {size_offset}")
    return SigningBlockPosition(
        eocd_offset=eocd_offset, cd_offset=cd_offset, magic_offset=magic_offset,
        size_offset=size_offset, size_of_block=size_of_block, pairs_offset=pairs_offset)


# FIXME: slack between the last pair and the pair region end is not checked
def scan_pairs(fh: BinaryIO, position: SigningBlockPosition, *,
               strict: bool = True) -> ParseResult:
    """
    Scan the ID-value pairs of the APK Signing Block.

    Each pair is a uint64 length (of ID + value), a uint32 ID, and the value;
    the next pair starts at offset + 8 + length.  The v2 block is read into
    memory; for v3 and v3.1 only the offset after the ID is recorded; other
    pairs are skipped.

    With strict=True, a pair or v2 block that overruns its enclosing region,
    or a duplicate v2/v3/v3.1 pair, raises SigningBlockMissingOrMalformed;
    with strict=False these are tolerated (the last duplicate wins).

    Returns ParseResult.
    """
    pairs: List[PairInfo] = []
    found: Dict[int, int] = {}
    v2_block_raw = None
    offset, end = position.pairs_offset, position.pairs_end
    while offset < end:
        pair_len = _read_uint_at(fh, offset, 8, "pair length")
        pair_id = _read_uint(fh, 4, "pair ID")
        pair_end = offset + 8 + pair_len
        if strict:
            if pair_len < 4:
                raise SigningBlockMissingOrMalformed(
                    f"Pair at offset {offset}: length {pair_len} < 4")
            if pair_end > end:
                raise SigningBlockMissingOrMalformed(
                    f"Pair at offset {offset}: ends at {pair_end}, after pair region "
                    f"end {end}")
            if pair_id in found and pair_id in SCHEME_BLOCK_IDS:
                raise SigningBlockMissingOrMalformed(
                    f"Pair at offset {offset}: duplicate {PAIR_IDS[pair_id]} "
                    f"(first at offset {found[pair_id]})")
        if pair_id == APK_SIGNATURE_SCHEME_V2_BLOCK_ID:
            v2_len = _read_uint(fh, 4, "v2 block length")
            if strict and 4 + 4 + v2_len > pair_len:
                raise SigningBlockMissingOrMalformed(
                    f"v2 block at offset {offset + 12}: length {v2_len} overruns "
                    f"pair of length {pair_len}")
            v2_block_raw = _read(fh, v2_len, "v2 block")
        found.setdefault(pair_id, offset)
        pairs.append(PairInfo(offset, pair_len, pair_id))
        offset = pair_end
    v3_offset, v31_offset = (
        _last_value_offset(pairs, i) for i in (APK_SIGNATURE_SCHEME_V3_BLOCK_ID,
                                               APK_SIGNATURE_SCHEME_V31_BLOCK_ID))
    return ParseResult(position, tuple(pairs), v2_block_raw, v3_offset, v31_offset)


def _last_value_offset(pairs: List[PairInfo], pair_id: int) -> Optional[int]:
    offsets = [p.offset + 12 for p in pairs if p.id == pair_id]
    return offsets[-1] if offsets else None


def parse_stream(fh: BinaryIO, *, decode: bool = False, strict: bool = True) -> ParseResult:
    """
    Locate & scan the APK Signing Block of an APK opened as fh (seekable,
    binary).

    With decode=True, the v2 block is decoded as well (so any decoding errors
    are raised here instead of by ParseResult.v2_block()).

    Returns ParseResult.
    """
    result = scan_pairs(fh, locate_signing_block(fh), strict=strict)
    if decode and result.v2_block_raw is not None:
        return ParseResult(result.position, result.pairs, result.v2_block_raw,
                           result.v3_offset, result.v31_offset,
                           decode_v2_block(result.v2_block_raw))
    return result


def parse_apk(apkfile: str, *, decode: bool = False, strict: bool = True) -> ParseResult:
    """
    Locate & scan the APK Signing Block of apkfile (opened read-only).

    Uses parse_stream().
    """
    with open(apkfile, "rb") as fh:
        return parse_stream(fh, decode=decode, strict=strict)


def _read_at(fh: BinaryIO, offset: int, size: int, what: str) -> bytes:
    if offset < 0:
        raise IoBoundsViolation(f"{what}: negative offset {offset}")
    fh.seek(offset)
    return _read(fh, size, what)


def _read(fh: BinaryIO, size: int, what: str) -> bytes:
    offset = fh.tell()
    data = fh.read(size)
    if len(data) != size:
        raise IoBoundsViolation(f"{what}: expected {size} byte(s) at offset {offset}, "
                                f"found {len(data)}")
    return data


def _read_uint_at(fh: BinaryIO, offset: int, size: int, what: str) -> int:
    return int.from_bytes(_read_at(fh, offset, size, what), "little")


def _read_uint(fh: BinaryIO, size: int, what: str) -> int:
    return int.from_bytes(_read(fh, size, what), "little")


def read_length_prefixed_value(data: bytes, offset: int = 0,
                               end: Optional[int] = None) -> Tuple[bytes, int]:
    """
    Read length-prefixed value (length is little-endian, uint32) at offset,
    not reading past end (default: len(data)).

    Returns (value, offset after value); raises TruncatedSequence if the
    length or value does not fit.

    >>> import apksiginfo as asi
    >>> asi.read_length_prefixed_value(bytes.fromhex("03000000616263ff"))
    (b'abc', 7)

    """
    if end is None:
        end = len(data)
    if offset + 4 > end:
        raise TruncatedSequence(f"Length prefix at offset {offset} overruns sequence: "
                                f"needs 4 byte(s), {end - offset} remaining")
    value_len = int.from_bytes(data[offset:offset + 4], "little")
    value_end = offset + 4 + value_len
    if value_end > end:
        raise TruncatedSequence(f"Length-prefixed item at offset {offset} overruns sequence: "
                                f"needs {value_len} byte(s), {end - offset - 4} remaining")
    return bytes(data[offset + 4:value_end]), value_end


def split_sequence(data: bytes, declared_len: Optional[int] = None) -> Iterator[bytes]:
    """
    Yield the length-prefixed items of a sequence, consuming exactly
    declared_len (default: len(data)) bytes.
    """
    end = len(data) if declared_len is None else declared_len
    if end > len(data):
        raise TruncatedSequence(f"Sequence length {end} exceeds available {len(data)} byte(s)")
    offset = 0
    while offset < end:
        item, offset = read_length_prefixed_value(data, offset, end)
        yield item


def decode_sequence(data: bytes, declared_len: Optional[int] = None,
                    item_decoder: Callable[[bytes], Any] = bytes) -> Tuple[Any, ...]:
    """
    Decode a sequence of length-prefixed items using item_decoder.

    Returns a tuple of the decoded items.  Uses split_sequence().
    """
    return tuple(item_decoder(item) for item in split_sequence(data, declared_len))


def _read_uint32(data: bytes, offset: int, what: str) -> Tuple[int, int]:
    if offset + 4 > len(data):
        raise TruncatedSequence(f"{what}: expected 4 byte(s) at offset {offset}, "
                                f"found {len(data) - offset}")
    return int.from_bytes(data[offset:offset + 4], "little"), offset + 4


def _expect_end(data: bytes, offset: int, what: str) -> None:
    if offset != len(data):
        raise TruncatedSequence(f"{what}: {len(data) - offset} extraneous byte(s) "
                                f"at offset {offset}")


def decode_v2_block(data: bytes) -> V2Block:
    """
    Decode APK Signature Scheme v2 Block (the sequence of signers, w/o its
    length prefix).

    Returns V2Block; raises ParseError (TruncatedSequence) when malformed.
    """
    return V2Block(decode_sequence(data, item_decoder=decode_signer))


def decode_signer(data: bytes) -> Signer:
    """
    Decode APK Signature Scheme v2 Block -> signer.

    Returns Signer (with .signed_data, .signatures, .public_key).
    """
    signed_data, offset = read_length_prefixed_value(data)
    signatures, offset = read_length_prefixed_value(data, offset)
    public_key, offset = read_length_prefixed_value(data, offset)
    _expect_end(data, offset, "signer")
    return Signer(decode_signed_data(signed_data),
                  decode_sequence(signatures, item_decoder=decode_signature),
                  PublicKey(public_key))


# FIXME: the trailing uint32 is treated as opaque
def decode_signed_data(data: bytes) -> SignedData:
    """
    Decode APK Signature Scheme v2 Block -> signer -> signed data.

    Returns SignedData (with .digests, .certificates, .additional_attributes).
    """
    digests, offset = read_length_prefixed_value(data)
    certificates, offset = read_length_prefixed_value(data, offset)
    attributes, offset = read_length_prefixed_value(data, offset)
    _, offset = _read_uint32(data, offset, "signed data reserved field")
    _expect_end(data, offset, "signed data")
    return SignedData(decode_sequence(digests, item_decoder=decode_digest),
                      decode_sequence(certificates, item_decoder=Certificate),
                      decode_sequence(attributes, item_decoder=decode_additional_attribute))


def decode_digest(data: bytes) -> Digest:
    """Decode APK Signature Scheme v2 Block -> signer -> signed data -> digest."""
    sig_algo_id, offset = _read_uint32(data, 0, "digest signature algorithm ID")
    digest, offset = read_length_prefixed_value(data, offset)
    _expect_end(data, offset, "digest")
    return Digest(sig_algo_id, digest)


def decode_signature(data: bytes) -> Signature:
    """Decode APK Signature Scheme v2 Block -> signer -> signature."""
    sig_algo_id, offset = _read_uint32(data, 0, "signature algorithm ID")
    signature, offset = read_length_prefixed_value(data, offset)
    _expect_end(data, offset, "signature")
    return Signature(sig_algo_id, signature)


def decode_additional_attribute(data: bytes) -> AdditionalAttribute:
    """
    Decode APK Signature Scheme v2 Block -> signer -> signed data -> additional
    attribute.

    Returns AdditionalAttribute (with .id and the length-prefixed .value).

    >>> import apksiginfo as asi
    >>> asi.decode_additional_attribute(bytes.fromhex("0df0efbe" "04000000" "03000000"))
    AdditionalAttribute(id=3203395597, value=b'\\x03\\x00\\x00\\x00')
    >>> asi.decode_additional_attribute(bytes.fromhex("01000000" "02000000" "abcd"))
    AdditionalAttribute(id=1, value=b'\\xab\\xcd')

    """
    attr_id, offset = _read_uint32(data, 0, "additional attribute ID")
    value, offset = read_length_prefixed_value(data, offset)
    _expect_end(data, offset, "additional attribute")
    return AdditionalAttribute(attr_id, value)


def fingerprint(data: bytes, hasher: Callable[[bytes], Any] = sha256) -> str:
    """
    Fingerprint (lowercase hex) of e.g. a certificate or public key.

    >>> from apksiginfo import fingerprint
    >>> fingerprint(b"")[:16]
    'e3b0c44298fc1c14'

    """
    return cast(str, hasher(data).hexdigest())


def x509_certificate_info(cert: X509Cert) -> CertificateInfo:   # type: ignore[no-any-unimported]
    """X.509 certificate info."""
    return CertificateInfo(
        subject=cert.subject.human_friendly,
        issuer=cert.issuer.human_friendly,
        serial_number=cert.serial_number)


def aid_info(aid: int) -> str:
    """Signature algorithm ID info."""
    return SIGNATURE_ALGORITHM_IDS.get(aid, "UNKNOWN")


def show_parse_result(result: ParseResult, *, decode: bool = True, file: TextIO = sys.stdout,
                      verbose: bool = False, wrap: bool = False) -> None:
    """Print presence of blocks and decoded v2 block (if decode=True) to file (stdout)."""
    p = _printer(file, wrap)
    p("HAS v2 BLOCK:", _bool(result.has_v2_block()))
    p("HAS v3 BLOCK:", _bool(result.has_v3_block()))
    p("HAS v3.1 BLOCK:", _bool(result.has_v3_1_block()))
    if verbose:
        pos = result.position
        p("EOCD OFFSET:", pos.eocd_offset)
        p("CENTRAL DIRECTORY OFFSET:", pos.cd_offset)
        p("APK SIGNING BLOCK OFFSET:", pos.block_offset)
        p("APK SIGNING BLOCK SIZE:", pos.size_of_block)
        for pair in result.pairs:
            p("PAIR ID:", hex(pair.id))
            p("  " + pair.name)
            p("  PAIR OFFSET:", pair.offset)
            p("  PAIR LENGTH:", pair.length)
    block = result.v2_block() if decode else None
    if block is not None:
        show_v2_block(block, file=file, verbose=verbose, wrap=wrap)


def show_v2_block(block: V2Block, *, file: TextIO = sys.stdout, verbose: bool = False,
                  wrap: bool = False) -> None:
    """Print V2Block parse tree to file (stdout)."""
    p = _printer(file, wrap)
    p("APK SIGNATURE SCHEME v2 BLOCK")
    if block.is_empty:
        p("  NO SIGNERS")
    for i, signer in enumerate(block.signers):
        p("  SIGNER", i)
        p("    SIGNED DATA")
        for j, digest in enumerate(signer.signed_data.digests):
            p("      DIGEST", j)
            _show_aid(digest, 8, file=file, wrap=wrap)
            _show_hex(digest.digest, 8, file=file, wrap=wrap)
        for j, cert in enumerate(signer.signed_data.certificates):
            p("      CERTIFICATE", j)
            if verbose and (info := cert.certificate_info()) is not None:
                p("        X.509 SUBJECT:", repr(info.subject)[1:-1])
                p("        X.509 ISSUER:", repr(info.issuer)[1:-1])
                p("        X.509 SERIAL NUMBER:", hex(info.serial_number))
            p("        SHA256 FINGERPRINT (HEX):", cert.fingerprint)
        for j, attr in enumerate(signer.signed_data.additional_attributes):
            p("      ADDITIONAL ATTRIBUTE", j)
            p("        ADDITIONAL ATTRIBUTE ID:", hex(attr.id))
            if attr.name is not None:
                p("        " + attr.name)
            _show_hex(attr.value, 8, file=file, wrap=wrap)
        for j, sig in enumerate(signer.signatures):
            p("    SIGNATURE", j)
            _show_aid(sig, 6, file=file, wrap=wrap)
            if verbose:
                _show_hex(sig.signature, 6, file=file, wrap=wrap)
        p("    PUBLIC KEY")
        p("      SHA256 FINGERPRINT (HEX):", signer.public_key.fingerprint)
        if verbose:
            _show_hex(signer.public_key.raw_data, 6, file=file, wrap=wrap)


def _show_hex(data: bytes, indent: int, *, file: TextIO = sys.stdout,
              what: str = "VALUE", wrap: bool = False) -> None:
    """Print hex value (w/ indent etc.) to file (stdout)."""
    out = " " * indent + f"{what} (HEX): " + hexlify(data).decode()
    print(_wrap(out, indent, wrap), file=file)


def _show_aid(x: Any, indent: int, *, file: TextIO = sys.stdout,
              wrap: bool = False) -> None:
    """Print signature algorithm ID (w/ indent etc.) to file (stdout)."""
    aid = x.signature_algorithm_id
    out = " " * indent + f"SIGNATURE ALGORITHM ID: {hex(aid)} ({aid_info(aid)})"
    print(_wrap(out, indent, wrap), file=file)


def _bool(b: bool) -> str:
    return "true" if b else "false"


def _printer(file: TextIO, wrap: bool) -> Callable[..., None]:
    def p(*a: Any) -> None:
        print(_wrap(" ".join(map(str, a)), wrap=wrap), file=file)
    return p


def _wrap(s: str, indent: Optional[int] = None, wrap: bool = True) -> str:
    if not wrap:
        return s
    i = len(re.split("^( *)", s, 1)[1]) if indent is None else indent
    return "\n".join(textwrap.wrap(s, width=WRAP_COLUMNS, subsequent_indent=" " * (i + 2)))


def show_json(obj: APKSigInfoBase, *, file: TextIO = sys.stdout) -> None:
    """Print obj (e.g. a ParseResult) as JSON to file (stdout)."""
    import simplejson   # FIXME: casting None to str because of wrong type stub
    simplejson.dump(obj, file, indent=2, sort_keys=True, encoding=cast(str, None),
                    default=json_dump_default, for_json=True)
    print(file=file)


def json_dump_default(obj: Any) -> str:
    """
    Returns serializable version of bytes (hex str) for simplejson.dump().

    >>> import io, simplejson
    >>> from apksiginfo import json_dump_default
    >>> out = io.StringIO()
    >>> simplejson.dump(dict(foo=b"bar"), out, encoding=None, default=json_dump_default)
    >>> print(out.getvalue())
    {"foo": "626172"}

    """
    if isinstance(obj, bytes):
        return hexlify(obj).decode()
    raise TypeError(repr(obj) + " is not JSON serializable")


def _err(*a: str) -> None:
    sys.stdout.flush()
    print(*a, file=sys.stderr)
    sys.stderr.flush()


def do_parse(apk: str, *, json: bool = False, no_decode: bool = False,
             no_strict: bool = False, verbose: bool = False, wrap: bool = False) -> None:
    """
    Locate the APK Signing Block of the APK and output which blocks it contains
    and the decoded v2 block (w/ fingerprints) as a parse tree (indented with
    spaces) or JSON (when json=True).
    """
    result = parse_apk(apk, decode=not no_decode, strict=not no_strict)
    if json:
        show_json(result)
    else:
        show_parse_result(result, decode=not no_decode, verbose=verbose, wrap=wrap)


def main() -> None:
    """CLI; requires click."""

    global WRAP_COLUMNS
    if (columns := os.environ.get("APKSIGINFO_WRAP_COLUMNS", "")).isdigit():
        WRAP_COLUMNS = int(columns)

    import click

    @click.command(help="""
        apksiginfo - locate & decode android apk signing blocks

        Show which APK Signature Scheme blocks (v2, v3, v3.1) the APK contains
        and the decoded v2 block (w/ certificate & public key fingerprints).
    """)
    @click.option("--json", is_flag=True, help="JSON output.")
    @click.option("--no-decode", is_flag=True, help="Don't decode the v2 block.")
    @click.option("--no-strict", is_flag=True,
                  help="Tolerate pairs that overrun the APK Signing Block.")
    @click.option("-v", "--verbose", is_flag=True, help="Be verbose (no-op w/ --json).")
    @click.option("--wrap", is_flag=True, help="Wrap output (no-op w/ --json).")
    @click.argument("apk", type=click.Path(exists=True, dir_okay=False))
    @click.version_option(__version__)
    def cli(*args: Any, **kwargs: Any) -> None:
        do_parse(*args, **kwargs)

    try:
        cli(prog_name=NAME)
    except APKSigInfoError as e:
        _err(f"Error: {e}.")
        sys.exit(3)


if __name__ == "__main__":
    main()

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
