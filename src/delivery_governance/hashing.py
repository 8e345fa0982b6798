"""Deterministic hashing of structured values.

Every reproducible key in the governance core (inputs_hash, run_key, step
idempotency keys, audit payload hashes, lawbook content hashes) is derived
here. Canonical form:

- mapping keys are sorted recursively; sequences keep their order
- compact separators, UTF-8, no ASCII escaping
- datetimes → ISO 8601, UUIDs/Paths/Decimals → str, enums → value,
  pydantic models → model_dump(mode="json"), sets → sorted lists

Nothing time- or randomness-dependent ever enters the digest.
"""

import enum
import hashlib
import json
import re
import uuid
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from pathlib import PurePath
from typing import Any

from pydantic import BaseModel

from delivery_governance.errors import ValidationError

_IDEMPOTENCY_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_:-]+$")
IDEMPOTENCY_KEY_MAX_LENGTH = 256


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, enum.Enum):
        return _normalize(value.value)
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json"))
    if isinstance(value, Mapping):
        return {str(key): _normalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_normalize(item) for item in value), key=stable_json)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (uuid.UUID, Decimal, PurePath)):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    raise TypeError(f"Cannot canonicalize value of type {type(value).__name__}")


def stable_json(value: Any) -> str:
    """Serialize a structured value to canonical JSON.

    Args:
        value: Any JSON-like structure (dicts, lists, scalars, pydantic models).

    Returns:
        Canonical JSON string — equal for semantically equal values.

    Raises:
        TypeError: If the value contains a type with no canonical form.
    """
    return json.dumps(
        _normalize(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def to_json_value(value: Any) -> Any:
    """Return the JSON-native form of a value, as stored in JSON columns."""
    return json.loads(stable_json(value))


def stable_hash(value: Any) -> str:
    """Return the SHA-256 hex digest of the canonical JSON form of a value."""
    return hashlib.sha256(stable_json(value).encode("utf-8")).hexdigest()


def compute_inputs_hash(inputs: Mapping[str, Any] | None) -> str:
    """Hash the run-level inputs of a playbook request (None hashes as {})."""
    return stable_hash(dict(inputs or {}))


def compute_run_key(incident_key: str, playbook_id: str, inputs_hash: str) -> str:
    """Build the idempotency key of a remediation run.

    Format: ``<incident_key>:<playbook_id>:<inputs_hash>``
    """
    return f"{incident_key}:{playbook_id}:{inputs_hash}"


def compute_step_idempotency_key(
    action_type: str,
    incident_key: str,
    params: Mapping[str, Any] | None,
) -> str:
    """Build the idempotency key of a single remediation step.

    Format: ``<action_type>:<incident_key>:<params_hash>``
    """
    return f"{action_type}:{incident_key}:{compute_inputs_hash(params)}"


def check_idempotency_key_format(key: str, max_length: int = IDEMPOTENCY_KEY_MAX_LENGTH) -> str:
    """Validate an idempotency key before it is persisted.

    Keys may contain only ASCII letters, digits, hyphen, underscore and colon,
    and must not exceed max_length characters.

    Args:
        key: The run_key or step idempotency key.
        max_length: Maximum allowed length.

    Returns:
        The key unchanged.

    Raises:
        ValidationError: If the key is empty, too long, or has invalid characters.
    """
    if not key:
        raise ValidationError("Idempotency key must not be empty", field="idempotency_key")
    if len(key) > max_length:
        raise ValidationError(
            f"Idempotency key exceeds max length of {max_length} characters (actual: {len(key)})",
            field="idempotency_key",
        )
    if not _IDEMPOTENCY_KEY_PATTERN.match(key):
        raise ValidationError(
            "Idempotency key contains invalid characters "
            "(only alphanumeric, hyphen, underscore, colon allowed)",
            field="idempotency_key",
        )
    return key
