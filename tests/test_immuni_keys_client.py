"""
Unit tests for the key distribution client and archive extraction.
"""

import pytest
import requests

from conftest import corrupt_member, make_archive
from exposure_key_export import EXPORT_HEADER
from immuni_keys_client import (
    ArchiveCorruptError,
    FetchError,
    ImmuniKeysClient,
    KeyIndexMetadata,
    MemberNotFoundError,
    MetadataError,
    extract_member_from_memory,
    parse_key_index,
)


class FakeResponse:
    def __init__(self, status_code=200, content=b"", reason="OK"):
        self.status_code = status_code
        self.content = content
        self.reason = reason
        self.closed = False

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, responses=None, error=None):
        self.headers = {}
        self.responses = dict(responses or {})
        self.error = error
        self.calls = []

    def get(self, url, timeout=None):
        self.calls.append((url, timeout))
        if self.error is not None:
            raise self.error
        return self.responses[url]


class TestExtractMember:
    """Tests for extract_member_from_memory."""

    def test_returns_member_bytes(self):
        archive = make_archive({"export.bin": b"payload", "export.sig": b"sig"})

        assert extract_member_from_memory(archive, "export.bin") == b"payload"

    def test_missing_member(self):
        archive = make_archive({"export.sig": b"sig"})

        with pytest.raises(MemberNotFoundError) as exc_info:
            extract_member_from_memory(archive, "export.bin")

        assert exc_info.value.member_name == "export.bin"
        assert exc_info.value.available == ["export.sig"]

    def test_name_match_is_exact(self):
        archive = make_archive({"EXPORT.BIN": b"x", "dir/export.bin": b"y"})

        with pytest.raises(MemberNotFoundError):
            extract_member_from_memory(archive, "export.bin")

    def test_corrupt_archive(self):
        with pytest.raises(ArchiveCorruptError):
            extract_member_from_memory(b"not a zip file", "export.bin")

    def test_truncated_archive(self):
        archive = make_archive({"export.bin": b"payload" * 100})

        with pytest.raises(ArchiveCorruptError):
            extract_member_from_memory(archive[: len(archive) // 2], "export.bin")

    def test_damaged_deflate_stream(self):
        archive = make_archive({"export.bin": EXPORT_HEADER + b"x" * 4000})

        with pytest.raises(ArchiveCorruptError, match="export.bin"):
            extract_member_from_memory(corrupt_member(archive, "export.bin"), "export.bin")

    def test_damaged_member_leaves_others_readable(self):
        archive = make_archive({"export.bin": b"payload" * 50, "export.sig": b"sig" * 50})
        damaged = corrupt_member(archive, "export.sig")

        assert extract_member_from_memory(damaged, "export.bin") == b"payload" * 50
        with pytest.raises(ArchiveCorruptError):
            extract_member_from_memory(damaged, "export.sig")


class TestParseKeyIndex:
    """Tests for metadata mapping."""

    def test_reads_fields(self):
        assert parse_key_index({"Oldest": 3, "Newest": 7}) == KeyIndexMetadata(oldest=3, newest=7)

    def test_missing_fields_default_to_zero(self):
        assert parse_key_index({}) == KeyIndexMetadata(oldest=0, newest=0)
        assert parse_key_index({"Newest": 9}) == KeyIndexMetadata(oldest=0, newest=9)

    def test_inverted_range_is_not_checked_here(self):
        assert parse_key_index({"Oldest": 10, "Newest": 3}) == KeyIndexMetadata(oldest=10, newest=3)

    def test_null_fields_default_to_zero(self):
        assert parse_key_index({"Oldest": None, "Newest": 4}) == KeyIndexMetadata(oldest=0, newest=4)

    def test_keys_match_case_insensitively(self):
        assert parse_key_index({"oldest": 2, "NEWEST": 6}) == KeyIndexMetadata(oldest=2, newest=6)

    def test_exact_key_wins_over_case_variant(self):
        assert parse_key_index({"oldest": 1, "Oldest": 3, "Newest": 5}) == KeyIndexMetadata(oldest=3, newest=5)

    @pytest.mark.parametrize("payload", [[], "index", {"Oldest": "1"}, {"Newest": 1.5}, {"Oldest": True}])
    def test_rejects_malformed(self, payload):
        with pytest.raises(MetadataError):
            parse_key_index(payload)


class TestImmuniKeysClient:
    """Tests for ImmuniKeysClient."""

    def test_urls(self):
        client = ImmuniKeysClient(base_url="https://example.test/", session=FakeSession())

        assert client.index_url() == "https://example.test/v1/keys/index"
        assert client.batch_url(42) == "https://example.test/v1/keys/42"

    def test_fetch_batch(self):
        response = FakeResponse(content=b"zip-bytes")
        session = FakeSession({"https://example.test/v1/keys/5": response})
        client = ImmuniKeysClient(base_url="https://example.test", timeout_seconds=7, session=session)

        assert client.fetch_batch(5) == b"zip-bytes"
        assert session.calls == [("https://example.test/v1/keys/5", 7)]
        assert response.closed

    def test_sets_user_agent(self):
        session = FakeSession()
        ImmuniKeysClient(session=session)

        assert "User-Agent" in session.headers

    @pytest.mark.parametrize("status_code", [204, 200, 299])
    def test_any_2xx_is_success(self, status_code):
        session = FakeSession({"https://example.test/v1/keys/1": FakeResponse(status_code, b"ok")})
        client = ImmuniKeysClient(base_url="https://example.test", session=session)

        assert client.fetch_batch(1) == b"ok"

    @pytest.mark.parametrize("status_code", [304, 404, 500])
    def test_non_2xx_is_fatal(self, status_code):
        session = FakeSession({"https://example.test/v1/keys/1": FakeResponse(status_code, b"", "Nope")})
        client = ImmuniKeysClient(base_url="https://example.test", session=session)

        with pytest.raises(FetchError, match=f"status code: {status_code}"):
            client.fetch_batch(1)

    def test_transport_error_is_fatal(self):
        session = FakeSession(error=requests.ConnectionError("connection refused"))
        client = ImmuniKeysClient(base_url="https://example.test", session=session)

        with pytest.raises(FetchError, match="connection refused"):
            client.fetch_batch(1)
        assert len(session.calls) == 1

    def test_fetch_metadata(self):
        session = FakeSession(
            {"https://example.test/v1/keys/index": FakeResponse(content=b'{"Oldest": 12, "Newest": 40}')}
        )
        client = ImmuniKeysClient(base_url="https://example.test", session=session)

        assert client.fetch_metadata() == KeyIndexMetadata(oldest=12, newest=40)

    def test_fetch_metadata_invalid_json(self):
        session = FakeSession({"https://example.test/v1/keys/index": FakeResponse(content=b"<html>")})
        client = ImmuniKeysClient(base_url="https://example.test", session=session)

        with pytest.raises(MetadataError, match="could not unmarshal metadata"):
            client.fetch_metadata()
