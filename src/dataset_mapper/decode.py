"""dataset_mapper.decode

Message payload -> ordered batch of mapping records.

Wire format is a JSON array whose element shape depends on the mode:

  resolve  [{"stableId": "EGAF001", "datasetId": "EGAD001"}, ...]
  direct   [{"fileId": "42", "datasetId": "EGAD001"}, ...]

Decoding is all-or-nothing: either every element parses or ParseError is
raised and no records are returned.  Unknown extra keys are ignored.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

from dataset_mapper.shared import MapperError

# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------

MODE_RESOLVE = "resolve"
MODE_DIRECT = "direct"
VALID_MODES = (MODE_RESOLVE, MODE_DIRECT)

_ID_KEY_BY_MODE = {
    MODE_RESOLVE: "stableId",
    MODE_DIRECT: "fileId",
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ParseError(MapperError):
    """Raised when a payload is not a valid batch for the configured mode."""

    def __init__(self, message: str, index: int | None = None) -> None:
        self.index = index
        if index is not None:
            message = f"element {index}: {message}"
        super().__init__(message)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StableIdMapping:
    """resolve-mode record: the file is named by its stable identifier."""

    stable_id: str
    dataset_id: str


@dataclass(frozen=True)
class FileIdMapping:
    """direct-mode record: the file is already named by its internal id."""

    file_id: str
    dataset_id: str


MappingRecord = Union[StableIdMapping, FileIdMapping]


@dataclass(frozen=True)
class ResolvedMapping:
    file_id: int
    dataset_id: str


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _require_str(element: dict[str, Any], key: str, index: int) -> str:
    if key not in element:
        raise ParseError(f"missing key {key!r}", index)
    value = element[key]
    if not isinstance(value, str):
        raise ParseError(
            f"{key!r} must be a string, got {type(value).__name__}", index
        )
    # JSON \u escapes can produce lone surrogates that no store can encode.
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise ParseError(f"{key!r} is not valid UTF-8 text: {exc.reason}", index) from exc
    return value


def _decode_element(element: Any, mode: str, index: int) -> MappingRecord:
    if not isinstance(element, dict):
        raise ParseError(
            f"expected an object, got {type(element).__name__}", index
        )
    id_key = _ID_KEY_BY_MODE[mode]
    ident = _require_str(element, id_key, index)
    dataset_id = _require_str(element, "datasetId", index)
    if not ident:
        raise ParseError(f"{id_key!r} is empty", index)

    if mode == MODE_RESOLVE:
        return StableIdMapping(stable_id=ident, dataset_id=dataset_id)

    # Base-10 digits only; int() alone would accept " 42", "+42" and "4_2".
    if not ident.isascii() or not ident.isdigit():
        raise ParseError(f"'fileId' is not an integer: {ident!r}", index)
    return FileIdMapping(file_id=ident, dataset_id=dataset_id)


def decode_batch(payload: bytes | str, mode: str) -> list[MappingRecord]:
    """Parse one delivery payload into its ordered list of mapping records.

    Raises:
        ParseError: if the payload is not UTF-8 JSON, is not an array, holds
            a string with a lone surrogate escape, or has an element that does
            not match the shape selected by ``mode``.
        ValueError: if ``mode`` is not one of VALID_MODES.
    """
    if mode not in VALID_MODES:
        raise ValueError(f"unknown mode {mode!r}; expected one of {VALID_MODES}")

    if isinstance(payload, (bytes, bytearray)):
        try:
            text = bytes(payload).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError(f"payload is not UTF-8: {exc}") from exc
    else:
        text = payload

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"payload is not valid JSON: {exc}") from exc

    if not isinstance(data, list):
        raise ParseError(f"expected a JSON array, got {type(data).__name__}")

    return [_decode_element(el, mode, idx) for idx, el in enumerate(data)]


def to_resolved(record: FileIdMapping) -> ResolvedMapping:
    """direct-mode identity transform: the decoded id is already the file id."""
    return ResolvedMapping(file_id=int(record.file_id), dataset_id=record.dataset_id)
