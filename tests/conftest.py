"""Shared builders for key export archives and fake collaborators."""

import io
import struct
import zipfile
from typing import Dict, Iterable, List, Optional

import pytest

from exposure_key_export import (
    EXPORT_HEADER,
    SignatureInfo,
    TEKSignature,
    TEKSignatureList,
    TemporaryExposureKey,
    TemporaryExposureKeyExport,
)
from immuni_keys_client import FetchError, KeyIndexMetadata


def make_export_payload(
    start_timestamp: Optional[int] = 1700000000,
    end_timestamp: Optional[int] = 1700036000,
    rolling_periods: Iterable[int] = (144, 144, 144),
    region: str = "222",
) -> bytes:
    export = TemporaryExposureKeyExport(region=region, batch_num=1, batch_size=1)
    if start_timestamp is not None:
        export.start_timestamp = start_timestamp
    if end_timestamp is not None:
        export.end_timestamp = end_timestamp
    for index, rolling_period in enumerate(rolling_periods):
        export.keys.append(
            TemporaryExposureKey(
                key_data=bytes([index]) * 16,
                rolling_start_interval_number=2833920 + index * 144,
                rolling_period=rolling_period,
            )
        )
    return EXPORT_HEADER + export.SerializeToString()


def make_signature_payload(algorithm: str = "1.2.840.10045.4.3.2") -> bytes:
    signatures = TEKSignatureList(
        signatures=[
            TEKSignature(
                signature_info=SignatureInfo(signature_algorithm=algorithm, verification_key_id="222"),
                batch_num=1,
                batch_size=1,
                signature=b"\x30\x45",
            )
        ]
    )
    return signatures.SerializeToString()


def make_archive(members: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def corrupt_member(archive: bytes, member_name: str) -> bytes:
    """Flip the leading compressed bytes of one member, leaving the directory intact."""
    with zipfile.ZipFile(io.BytesIO(archive)) as reader:
        info = reader.getinfo(member_name)
    name_length, extra_length = struct.unpack_from("<HH", archive, info.header_offset + 26)
    start = info.header_offset + 30 + name_length + extra_length
    damaged = bytearray(archive)
    for index in range(start, start + min(8, info.compress_size)):
        damaged[index] ^= 0xFF
    return bytes(damaged)


class FakeKeysClient:
    """In-memory stand-in for ImmuniKeysClient."""

    def __init__(self, oldest: int, newest: int, batches: Optional[Dict[int, bytes]] = None) -> None:
        self.metadata = KeyIndexMetadata(oldest=oldest, newest=newest)
        self.batches = dict(batches or {})
        self.fetched: List[int] = []
        self.metadata_calls = 0

    def fetch_metadata(self) -> KeyIndexMetadata:
        self.metadata_calls += 1
        return self.metadata

    def fetch_batch(self, batch_id: int) -> bytes:
        self.fetched.append(batch_id)
        if batch_id not in self.batches:
            raise FetchError(f"could not fetch url /v1/keys/{batch_id}, status code: 404, Not Found")
        return self.batches[batch_id]


@pytest.fixture
def export_archive():
    """A batch archive with three well-formed keys over a 10 hour window."""
    return make_archive({"export.bin": make_export_payload(), "export.sig": make_signature_payload()})
