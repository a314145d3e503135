#!/usr/bin/env python3
"""Decode Exposure Notification key export payloads (``export.bin``/``export.sig``).

File layout follows the published exposure key file format:
a 16 byte ``EK Export v1`` header followed by a protobuf (proto2)
``TemporaryExposureKeyExport`` message. Message classes are built at import
time from descriptors declared below, so no protoc step is needed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError

EXPORT_HEADER = b"EK Export v1    "
EXPORT_HEADER_LENGTH = len(EXPORT_HEADER)
EXPECTED_ROLLING_PERIOD = 144
UNEXPECTED_ROLLING_PERIOD = "unexpected rolling period"

PROTO_PACKAGE = "exposure_notification"

_Field = descriptor_pb2.FieldDescriptorProto


class HeaderMismatchError(ValueError):
    def __init__(self, header: bytes) -> None:
        self.header = bytes(header)
        super().__init__(f"header not recognized: {self.header.hex()}")


class ExportDecodeError(ValueError):
    pass


@dataclass(frozen=True)
class KeyValidation:
    ok: bool
    reason: Optional[str] = None


def _add_field(
    message: descriptor_pb2.DescriptorProto,
    name: str,
    number: int,
    field_type: int,
    *,
    repeated: bool = False,
    type_name: Optional[str] = None,
    default: Optional[str] = None,
) -> None:
    field = message.field.add()
    field.name = name
    field.number = number
    field.type = field_type
    field.label = _Field.LABEL_REPEATED if repeated else _Field.LABEL_OPTIONAL
    if type_name:
        field.type_name = f".{PROTO_PACKAGE}.{type_name}"
    if default is not None:
        field.default_value = default


def _export_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    proto = descriptor_pb2.FileDescriptorProto()
    proto.name = "exposure_key_export.proto"
    proto.package = PROTO_PACKAGE
    proto.syntax = "proto2"

    signature_info = proto.message_type.add()
    signature_info.name = "SignatureInfo"
    _add_field(signature_info, "verification_key_version", 3, _Field.TYPE_STRING)
    _add_field(signature_info, "verification_key_id", 4, _Field.TYPE_STRING)
    _add_field(signature_info, "signature_algorithm", 5, _Field.TYPE_STRING)

    key = proto.message_type.add()
    key.name = "TemporaryExposureKey"
    report_type = key.enum_type.add()
    report_type.name = "ReportType"
    for number, name in enumerate(
        (
            "UNKNOWN",
            "CONFIRMED_TEST",
            "CONFIRMED_CLINICAL_DIAGNOSIS",
            "SELF_REPORT",
            "RECURSIVE",
            "REVOKED",
        )
    ):
        value = report_type.value.add()
        value.name = name
        value.number = number
    _add_field(key, "key_data", 1, _Field.TYPE_BYTES)
    _add_field(key, "transmission_risk_level", 2, _Field.TYPE_INT32)
    _add_field(key, "rolling_start_interval_number", 3, _Field.TYPE_INT32)
    _add_field(key, "rolling_period", 4, _Field.TYPE_INT32, default=str(EXPECTED_ROLLING_PERIOD))
    _add_field(key, "report_type", 5, _Field.TYPE_ENUM, type_name="TemporaryExposureKey.ReportType")
    _add_field(key, "days_since_onset_of_symptoms", 6, _Field.TYPE_SINT32)

    export = proto.message_type.add()
    export.name = "TemporaryExposureKeyExport"
    _add_field(export, "start_timestamp", 1, _Field.TYPE_FIXED64)
    _add_field(export, "end_timestamp", 2, _Field.TYPE_FIXED64)
    _add_field(export, "region", 3, _Field.TYPE_STRING)
    _add_field(export, "batch_num", 4, _Field.TYPE_INT32)
    _add_field(export, "batch_size", 5, _Field.TYPE_INT32)
    _add_field(export, "signature_infos", 6, _Field.TYPE_MESSAGE, repeated=True, type_name="SignatureInfo")
    _add_field(export, "keys", 7, _Field.TYPE_MESSAGE, repeated=True, type_name="TemporaryExposureKey")
    _add_field(export, "revised_keys", 8, _Field.TYPE_MESSAGE, repeated=True, type_name="TemporaryExposureKey")

    signature = proto.message_type.add()
    signature.name = "TEKSignature"
    _add_field(signature, "signature_info", 1, _Field.TYPE_MESSAGE, type_name="SignatureInfo")
    _add_field(signature, "batch_num", 2, _Field.TYPE_INT32)
    _add_field(signature, "batch_size", 3, _Field.TYPE_INT32)
    _add_field(signature, "signature", 4, _Field.TYPE_BYTES)

    signature_list = proto.message_type.add()
    signature_list.name = "TEKSignatureList"
    _add_field(signature_list, "signatures", 1, _Field.TYPE_MESSAGE, repeated=True, type_name="TEKSignature")
    return proto


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(_export_file_descriptor().SerializeToString())


def _message_class(name: str):
    return message_factory.GetMessageClass(_POOL.FindMessageTypeByName(f"{PROTO_PACKAGE}.{name}"))


SignatureInfo = _message_class("SignatureInfo")
TemporaryExposureKey = _message_class("TemporaryExposureKey")
TemporaryExposureKeyExport = _message_class("TemporaryExposureKeyExport")
TEKSignature = _message_class("TEKSignature")
TEKSignatureList = _message_class("TEKSignatureList")


def decode_export(payload: bytes):
    """Validate the export header and decode the remaining bytes.

    Raises ``HeaderMismatchError`` when the first 16 bytes are not the
    export magic (including payloads shorter than the header) and
    ``ExportDecodeError`` when the protobuf body is malformed or lacks the
    start/end timestamps.
    """
    header = payload[:EXPORT_HEADER_LENGTH]
    if header != EXPORT_HEADER:
        raise HeaderMismatchError(header)

    export = TemporaryExposureKeyExport()
    try:
        export.ParseFromString(payload[EXPORT_HEADER_LENGTH:])
    except DecodeError as exc:
        raise ExportDecodeError(f"failed to unmarshal key export: {exc}") from exc

    missing = [name for name in ("start_timestamp", "end_timestamp") if not export.HasField(name)]
    if missing:
        raise ExportDecodeError(f"key export is missing {', '.join(missing)}")
    return export


def decode_signature_list(payload: bytes):
    signatures = TEKSignatureList()
    try:
        signatures.ParseFromString(payload)
    except DecodeError as exc:
        raise ExportDecodeError(f"failed to unmarshal signature list: {exc}") from exc
    return signatures


def signature_algorithms(signatures) -> List[str]:
    algorithms: List[str] = []
    for signature in signatures.signatures:
        algorithm = signature.signature_info.signature_algorithm
        if algorithm and algorithm not in algorithms:
            algorithms.append(algorithm)
    return algorithms


def validate_key(key) -> KeyValidation:
    # Unset rolling_period reads as the proto2 default.
    if key.rolling_period != EXPECTED_ROLLING_PERIOD:
        return KeyValidation(ok=False, reason=UNEXPECTED_ROLLING_PERIOD)
    return KeyValidation(ok=True)
