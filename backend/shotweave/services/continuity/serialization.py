"""Session document (de)serialization for the session stores.

Datetimes are stored as integer epoch milliseconds under ``<field>_ms`` and
unset optional fields are left out of the document entirely, so a partial
merge can never overwrite stored data with nulls.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from shotweave.schemas.continuity import ContinuitySession, utcnow

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)

DATE_FIELDS = frozenset({"created_at", "updated_at", "extracted_at", "generated_at"})

# Session columns kept outside the unified payload
UNIFIED_COLUMNS = ("id", "user_id", "name", "status", "version", "created_at_ms", "updated_at_ms")


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // _ONE_MS


def from_epoch_ms(value: Any) -> datetime:
    """Epoch milliseconds to an aware datetime; malformed input becomes now."""
    if isinstance(value, bool):
        logger.warning(f"Malformed stored timestamp {value!r}, substituting now")
        return utcnow()
    try:
        return EPOCH + timedelta(milliseconds=int(value))
    except (TypeError, ValueError, OverflowError):
        logger.warning(f"Malformed stored timestamp {value!r}, substituting now")
        return utcnow()


def _encode(value: Any) -> Any:
    if isinstance(value, dict):
        encoded = {}
        for key, item in value.items():
            if item is None:
                continue
            if isinstance(item, datetime):
                encoded[f"{key}_ms"] = to_epoch_ms(item)
            else:
                encoded[key] = _encode(item)
        return encoded
    if isinstance(value, list):
        return [_encode(item) for item in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        decoded = {}
        for key, item in value.items():
            if key.endswith("_ms") and key[:-3] in DATE_FIELDS:
                decoded[key[:-3]] = from_epoch_ms(item)
            else:
                decoded[key] = _decode(item)
        return decoded
    if isinstance(value, list):
        return [_decode(item) for item in value]
    return value


def serialize_session(session: ContinuitySession) -> dict:
    return _encode(session.model_dump(exclude_none=True))


def deserialize_session(document: dict) -> ContinuitySession:
    return ContinuitySession.model_validate(_decode(document))


def split_unified(document: dict) -> tuple[dict, dict]:
    """Split a serialized session into unified-table columns and payload."""
    columns = {key: document[key] for key in UNIFIED_COLUMNS if key in document}
    payload = {key: value for key, value in document.items() if key not in UNIFIED_COLUMNS}
    return columns, payload
