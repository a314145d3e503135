#!/usr/bin/env python3
"""Fetch every published Immuni key batch and report aggregate key statistics.

Usage:
    python scripts/immuni_key_stats.py
    python scripts/immuni_key_stats.py --base-url https://get.immuni.gov.it --summary-json out/summary.json
    python scripts/immuni_key_stats.py --config config.yaml

Batches are processed one at a time in ascending id order. Any fetch,
archive or decode failure aborts the run; batches without ``export.bin``
are skipped.
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import os
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml
from tqdm import tqdm

from exposure_key_export import (
    ExportDecodeError,
    HeaderMismatchError,
    decode_export,
    decode_signature_list,
    signature_algorithms,
    validate_key,
)
from immuni_keys_client import (
    DEFAULT_BASE_URL,
    DEFAULT_TIMEOUT_SECONDS,
    EXPORT_MEMBER,
    SIGNATURE_MEMBER,
    ArchiveCorruptError,
    FetchError,
    ImmuniKeysClient,
    KeyIndexMetadata,
    MemberNotFoundError,
    MetadataError,
    extract_member_from_memory,
)

LOGGER = logging.getLogger("immuni_key_stats")
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
KEYS_PER_REPORT = 14

STATUS_OK = "ok"
STATUS_SKIPPED = "skipped"
STATUS_FATAL = "fatal"

STAGE_FETCHING = "fetching"
STAGE_EXTRACTING = "extracting"
STAGE_DECODING = "decoding"
STAGE_VALIDATING = "validating"

FATAL_BATCH_ERRORS = (FetchError, ArchiveCorruptError, HeaderMismatchError, ExportDecodeError)


class PipelineAborted(RuntimeError):
    def __init__(self, batch_id: int, stage: str, cause: Optional[BaseException]) -> None:
        self.batch_id = batch_id
        self.stage = stage
        self.cause = cause
        super().__init__(f"batch {batch_id} failed while {stage}: {cause}")


@dataclass(frozen=True)
class BatchReport:
    batch_id: int
    start: datetime
    end: datetime
    key_count: int
    anomalies: int = 0
    region: str = ""
    batch_num: Optional[int] = None
    batch_size: Optional[int] = None
    signature_algorithms: Tuple[str, ...] = ()

    @property
    def window_hours(self) -> float:
        return (self.end - self.start).total_seconds() / 3600


@dataclass(frozen=True)
class BatchOutcome:
    batch_id: int
    status: str
    stage: str
    report: Optional[BatchReport] = None
    reason: Optional[str] = None
    error: Optional[BaseException] = field(default=None, compare=False)


@dataclass(frozen=True)
class RunSummary:
    oldest: int
    newest: int
    total_keys: int = 0
    first_timestamp: Optional[datetime] = None
    last_timestamp: Optional[datetime] = None
    batches_processed: int = 0
    batches_skipped: int = 0
    anomalies: int = 0

    @property
    def report_estimate(self) -> int:
        return self.total_keys // KEYS_PER_REPORT

    @property
    def window(self) -> Optional[timedelta]:
        if self.first_timestamp is None or self.last_timestamp is None:
            return None
        return self.last_timestamp - self.first_timestamp

    def window_days_hours(self) -> Optional[Tuple[int, int]]:
        window = self.window
        if window is None:
            return None
        hours = window.total_seconds() / 3600
        return int(hours / 24), int(math.fmod(int(hours), 24))

    def as_dict(self) -> Dict[str, Any]:
        window = self.window
        return {
            "oldest": self.oldest,
            "newest": self.newest,
            "total_keys": self.total_keys,
            "report_estimate": self.report_estimate,
            "keys_per_report": KEYS_PER_REPORT,
            "first_timestamp": self.first_timestamp.isoformat() if self.first_timestamp else None,
            "last_timestamp": self.last_timestamp.isoformat() if self.last_timestamp else None,
            "window_hours": round(window.total_seconds() / 3600, 1) if window is not None else None,
            "batches_processed": self.batches_processed,
            "batches_skipped": self.batches_skipped,
            "anomalies": self.anomalies,
        }


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _log_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if value is None:
        return "null"
    if isinstance(value, datetime):
        return value.isoformat()
    text = str(value)
    if re.fullmatch(r"[A-Za-z0-9._:/+\-]+", text):
        return text
    return json.dumps(text, ensure_ascii=True)


def log_event(event: str, level: int = logging.INFO, **fields: object) -> None:
    parts = [event]
    for key, value in fields.items():
        parts.append(f"{key}={_log_value(value)}")
    LOGGER.log(level, " ".join(parts))


def unix_to_datetime(seconds: int) -> datetime:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise ExportDecodeError(f"timestamp out of range: {seconds}") from exc


def format_window(summary: RunSummary) -> str:
    days_hours = summary.window_days_hours()
    if days_hours is None:
        return "unknown"
    days, hours = days_hours
    return f"{days}d {hours}h"


def batch_id_range(metadata: KeyIndexMetadata) -> range:
    if metadata.oldest > metadata.newest:
        raise MetadataError(
            f"meta oldest cannot be > than newest (oldest={metadata.oldest}, newest={metadata.newest})"
        )
    return range(metadata.oldest, metadata.newest + 1)


def _read_signature_algorithms(archive_bytes: bytes, batch_id: int) -> Tuple[str, ...]:
    try:
        payload = extract_member_from_memory(archive_bytes, SIGNATURE_MEMBER)
    except MemberNotFoundError:
        return ()
    except ArchiveCorruptError as exc:
        log_event("BATCH_SIGNATURE_UNREADABLE", logging.WARNING, batch=batch_id, error=str(exc))
        return ()
    try:
        signatures = decode_signature_list(payload)
    except ExportDecodeError as exc:
        log_event("BATCH_SIGNATURE_UNREADABLE", logging.WARNING, batch=batch_id, error=str(exc))
        return ()
    return tuple(signature_algorithms(signatures))


def process_batch(client: Any, batch_id: int) -> BatchOutcome:
    """Fetch, extract, decode and validate a single batch.

    Failures come back as a ``fatal`` outcome instead of being raised so the
    caller decides how to propagate them; a missing ``export.bin`` is a
    ``skipped`` outcome.
    """
    stage = STAGE_FETCHING
    try:
        archive_bytes = client.fetch_batch(batch_id)
        stage = STAGE_EXTRACTING
        try:
            payload = extract_member_from_memory(archive_bytes, EXPORT_MEMBER)
        except MemberNotFoundError as exc:
            return BatchOutcome(batch_id=batch_id, status=STATUS_SKIPPED, stage=stage, reason=str(exc))
        stage = STAGE_DECODING
        export = decode_export(payload)
        start = unix_to_datetime(export.start_timestamp)
        end = unix_to_datetime(export.end_timestamp)
    except FATAL_BATCH_ERRORS as exc:
        return BatchOutcome(batch_id=batch_id, status=STATUS_FATAL, stage=stage, reason=str(exc), error=exc)

    # export.sig is advisory; its failures never change the outcome.
    algorithms = _read_signature_algorithms(archive_bytes, batch_id)

    stage = STAGE_VALIDATING
    anomalies = 0
    for index, key in enumerate(export.keys):
        result = validate_key(key)
        if not result.ok:
            anomalies += 1
            log_event(
                "KEY_ANOMALY",
                logging.WARNING,
                batch=batch_id,
                key_index=index,
                rolling_period=key.rolling_period,
                reason=result.reason,
            )

    report = BatchReport(
        batch_id=batch_id,
        start=start,
        end=end,
        key_count=len(export.keys),
        anomalies=anomalies,
        region=export.region,
        batch_num=export.batch_num if export.HasField("batch_num") else None,
        batch_size=export.batch_size if export.HasField("batch_size") else None,
        signature_algorithms=algorithms,
    )
    return BatchOutcome(batch_id=batch_id, status=STATUS_OK, stage=stage, report=report)


def accumulate(summary: RunSummary, outcome: BatchOutcome) -> RunSummary:
    if outcome.status == STATUS_FATAL:
        raise PipelineAborted(outcome.batch_id, outcome.stage, outcome.error)
    if outcome.status == STATUS_SKIPPED or outcome.report is None:
        return replace(summary, batches_skipped=summary.batches_skipped + 1)

    report = outcome.report
    updated = replace(
        summary,
        total_keys=summary.total_keys + report.key_count,
        batches_processed=summary.batches_processed + 1,
        anomalies=summary.anomalies + report.anomalies,
    )
    if outcome.batch_id == summary.oldest:
        updated = replace(updated, first_timestamp=report.start)
    if outcome.batch_id == summary.newest:
        updated = replace(updated, last_timestamp=report.end)
    return updated


def log_batch(outcome: BatchOutcome) -> None:
    if outcome.status == STATUS_SKIPPED:
        log_event("BATCH_SKIPPED", batch=outcome.batch_id, reason=outcome.reason)
        return
    report = outcome.report
    if report is None:
        return
    LOGGER.info("======== BEGIN Key Batch %4d ========", report.batch_id)
    LOGGER.info("batch start timestamp: %s", report.start.isoformat())
    LOGGER.info("batch end timestamp: %s", report.end.isoformat())
    LOGGER.info("time window size: %.1f hours", report.window_hours)
    LOGGER.info("number of keys: %d", report.key_count)
    LOGGER.info("======== END Key Batch %4d ========", report.batch_id)
    if report.signature_algorithms:
        log_event(
            "BATCH_SIGNATURE",
            level=logging.DEBUG,
            batch=report.batch_id,
            algorithms=",".join(report.signature_algorithms),
        )
    log_event(
        "BATCH_DONE",
        batch=report.batch_id,
        keys=report.key_count,
        anomalies=report.anomalies,
        region=report.region or None,
        batch_num=report.batch_num,
        batch_size=report.batch_size,
    )


def run_pipeline(client: Any, progress: bool = True) -> RunSummary:
    metadata = client.fetch_metadata()
    log_event("METADATA", oldest=metadata.oldest, newest=metadata.newest)
    batch_ids = batch_id_range(metadata)

    summary = RunSummary(oldest=metadata.oldest, newest=metadata.newest)
    for batch_id in tqdm(batch_ids, desc="Batches", unit="batch", disable=not progress):
        log_event("BATCH_FETCH", level=logging.DEBUG, batch=batch_id)
        outcome = process_batch(client, batch_id)
        summary = accumulate(summary, outcome)
        log_batch(outcome)
    return summary


def log_summary(summary: RunSummary) -> None:
    LOGGER.info("total number of keys: %d", summary.total_keys)
    LOGGER.info("unique number of reports assuming %d TEK per report: %d", KEYS_PER_REPORT, summary.report_estimate)
    LOGGER.info("total time window: %s", format_window(summary))
    missing = [
        side
        for side, timestamp in (("oldest", summary.first_timestamp), ("newest", summary.last_timestamp))
        if timestamp is None
    ]
    if missing:
        LOGGER.warning("time window unknown: %s batch had no %s", " and ".join(missing), EXPORT_MEMBER)
    log_event(
        "RUN_SUMMARY",
        total_keys=summary.total_keys,
        reports=summary.report_estimate,
        window=format_window(summary),
        processed=summary.batches_processed,
        skipped=summary.batches_skipped,
        anomalies=summary.anomalies,
    )


def write_summary_json(path: Path, summary: RunSummary) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = summary.as_dict()
    payload["status"] = "completed"
    payload["finished_at"] = utc_now_iso()
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    tmp_path.replace(path)
    log_event("SUMMARY_WRITTEN", path=path)


def _parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    raise SystemExit(f"Cannot parse boolean from value '{value}'.")


def load_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise SystemExit(f"Config file not found: {path}")
    suffix = path.suffix.lower()
    raw = path.read_text(encoding="utf-8")
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(raw)
    elif suffix == ".json":
        data = json.loads(raw)
    else:
        raise SystemExit("Unsupported config file extension. Use .yaml/.yml or .json.")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SystemExit("Config root must be a mapping/object.")
    return data


def flatten_config(data: Dict[str, Any]) -> Dict[str, Any]:
    flattened: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            for nested_key, nested_value in value.items():
                flattened[f"{key}_{nested_key}"] = nested_value
        else:
            flattened[key] = value
    return flattened


def config_to_parser_defaults(config_data: Dict[str, Any]) -> Dict[str, Any]:
    cfg = flatten_config(config_data)
    key_map = {
        "base_url": "base_url",
        "network_base_url": "base_url",
        "timeout_seconds": "timeout_seconds",
        "network_timeout_seconds": "timeout_seconds",
        "summary_json": "summary_json",
        "output_summary_json": "summary_json",
        "log_level": "log_level",
        "logging_log_level": "log_level",
    }
    defaults: Dict[str, Any] = {}
    for source_key, target_key in key_map.items():
        if source_key in cfg:
            defaults[target_key] = cfg[source_key]
    if "timeout_seconds" in defaults:
        try:
            defaults["timeout_seconds"] = float(defaults["timeout_seconds"])
        except (TypeError, ValueError) as exc:
            raise SystemExit("Config key 'timeout_seconds' must be a number.") from exc
    if "log_level" in defaults:
        defaults["log_level"] = str(defaults["log_level"]).upper()
    if "progress" in cfg:
        defaults["progress"] = _parse_bool(cfg["progress"])
    return defaults


def _env_timeout() -> float:
    raw = os.getenv("IMMUNI_TIMEOUT_SECONDS")
    if not raw:
        return float(DEFAULT_TIMEOUT_SECONDS)
    try:
        return float(raw)
    except ValueError as exc:
        raise SystemExit(f"IMMUNI_TIMEOUT_SECONDS must be a number, got '{raw}'.") from exc


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--config", type=Path)
    pre_args, _ = pre_parser.parse_known_args(argv)

    parser = argparse.ArgumentParser(description="Aggregate statistics over published Immuni key batches.")
    parser.add_argument("--config", type=Path, help="YAML or JSON config file providing option defaults.")
    parser.add_argument(
        "--base-url",
        default=os.getenv("IMMUNI_BASE_URL", DEFAULT_BASE_URL),
        help="Key distribution base URL. Falls back to IMMUNI_BASE_URL.",
    )
    parser.add_argument(
        "--timeout-seconds",
        type=float,
        default=_env_timeout(),
        help="HTTP timeout in seconds. Falls back to IMMUNI_TIMEOUT_SECONDS.",
    )
    parser.add_argument("--summary-json", type=Path, help="Write the final run summary to this JSON file.")
    parser.add_argument("--no-progress", dest="progress", action="store_false", help="Disable the progress bar.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level.",
    )
    if pre_args.config is not None:
        parser.set_defaults(**config_to_parser_defaults(load_config_file(pre_args.config)))
    args = parser.parse_args(argv)
    if args.timeout_seconds <= 0:
        raise SystemExit("--timeout-seconds must be greater than 0.")
    if args.summary_json is not None:
        args.summary_json = Path(args.summary_json)
    return args


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level, logging.INFO), format=LOG_FORMAT)

    LOGGER.info("Base URL: %s", args.base_url)
    client = ImmuniKeysClient(base_url=args.base_url, timeout_seconds=args.timeout_seconds)
    try:
        summary = run_pipeline(client, progress=args.progress)
    except (FetchError, MetadataError, PipelineAborted) as exc:
        raise SystemExit(f"Run aborted: {exc}") from exc

    log_summary(summary)
    if args.summary_json is not None:
        write_summary_json(args.summary_json, summary)


if __name__ == "__main__":
    main()
