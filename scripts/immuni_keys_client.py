#!/usr/bin/env python3
"""HTTP client for the Immuni diagnostic key distribution endpoints."""

from __future__ import annotations

import io
import json
import zipfile
import zlib
from dataclasses import dataclass
from typing import List, Optional

import requests

DEFAULT_BASE_URL = "https://get.immuni.gov.it"
DEFAULT_TIMEOUT_SECONDS = 60
EXPORT_MEMBER = "export.bin"
SIGNATURE_MEMBER = "export.sig"
USER_AGENT = "immuni-key-stats/1.0"


class FetchError(RuntimeError):
    pass


class MetadataError(ValueError):
    pass


class ArchiveCorruptError(RuntimeError):
    pass


class MemberNotFoundError(LookupError):
    def __init__(self, member_name: str, available: Optional[List[str]] = None) -> None:
        self.member_name = member_name
        self.available = list(available or [])
        super().__init__(f"{member_name} not found in archive (members: {', '.join(self.available) or '-'})")


@dataclass(frozen=True)
class KeyIndexMetadata:
    oldest: int
    newest: int


def _metadata_int(payload: dict, key: str) -> int:
    # Exact key first, then a case-insensitive match; absent or null reads as 0.
    value = payload.get(key)
    if key not in payload:
        for name, candidate in payload.items():
            if isinstance(name, str) and name.lower() == key.lower():
                value = candidate
                break
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise MetadataError(f"metadata field {key} must be an integer, got {value!r}")
    return value


def parse_key_index(payload: object) -> KeyIndexMetadata:
    """Map the ``/v1/keys/index`` JSON object; absent fields read as 0."""
    if not isinstance(payload, dict):
        raise MetadataError(f"metadata must be a JSON object, got {type(payload).__name__}")
    return KeyIndexMetadata(
        oldest=_metadata_int(payload, "Oldest"),
        newest=_metadata_int(payload, "Newest"),
    )


def _open_archive(archive_bytes: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(archive_bytes))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, ValueError) as exc:
        raise ArchiveCorruptError(f"could not read archive: {exc}") from exc


def extract_member_from_memory(archive_bytes: bytes, member_name: str) -> bytes:
    # Read ZIP payload bytes directly from memory.
    with _open_archive(archive_bytes) as archive:
        names = archive.namelist()
        if member_name not in names:
            raise MemberNotFoundError(member_name, names)
        try:
            with archive.open(member_name) as handle:
                return handle.read()
        except (zipfile.BadZipFile, zlib.error, EOFError, OSError, NotImplementedError, RuntimeError) as exc:
            raise ArchiveCorruptError(f"could not read {member_name} from archive: {exc}") from exc


class ImmuniKeysClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session if session is not None else requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})

    def index_url(self) -> str:
        return f"{self.base_url}/v1/keys/index"

    def batch_url(self, batch_id: int) -> str:
        return f"{self.base_url}/v1/keys/{batch_id}"

    def _get(self, url: str) -> bytes:
        try:
            response = self.session.get(url, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise FetchError(f"could not fetch url {url}: {exc}") from exc
        try:
            if response.status_code // 100 != 2:
                raise FetchError(
                    f"could not fetch url {url}, status code: {response.status_code}, {response.reason}"
                )
            return response.content
        except requests.RequestException as exc:
            raise FetchError(f"could not read url body ({url}): {exc}") from exc
        finally:
            response.close()

    def fetch_metadata(self) -> KeyIndexMetadata:
        url = self.index_url()
        body = self._get(url)
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise MetadataError(f"could not unmarshal metadata ({body[:200]!r}): {exc}") from exc
        return parse_key_index(payload)

    def fetch_batch(self, batch_id: int) -> bytes:
        return self._get(self.batch_url(batch_id))
