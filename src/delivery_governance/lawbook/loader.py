"""Lawbook document loading from YAML or JSON."""

import json
from pathlib import Path
from typing import Any

import pydantic
import yaml

from delivery_governance.errors import ValidationError
from delivery_governance.lawbook.schema import LawbookDocument
from delivery_governance.observability import get_logger

logger = get_logger(__name__)


def parse_lawbook(data: Any) -> LawbookDocument:
    """Validate a parsed mapping as a lawbook document.

    Args:
        data: Mapping produced by a YAML/JSON parser or built in code.

    Returns:
        The validated LawbookDocument.

    Raises:
        ValidationError: If the data is not a mapping or fails schema validation.
    """
    if isinstance(data, LawbookDocument):
        return data
    if not isinstance(data, dict):
        raise ValidationError("Lawbook document must be a mapping", field="lawbook")
    try:
        return LawbookDocument.model_validate(data)
    except pydantic.ValidationError as exc:
        reasons = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
        raise ValidationError("Invalid lawbook document", field="lawbook", reasons=reasons) from exc


def load_lawbook(path: Path | str) -> LawbookDocument:
    """Load a lawbook from a .yaml, .yml or .json file.

    Args:
        path: File to read.

    Returns:
        The validated LawbookDocument.

    Raises:
        ValidationError: If the file cannot be parsed or fails validation.
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ValidationError(f"Lawbook file {path.name} could not be parsed: {exc}", field="lawbook") from exc

    lawbook = parse_lawbook(data)
    logger.info(
        "Lawbook loaded",
        path=str(path),
        lawbook_id=lawbook.lawbook_id,
        lawbook_version=lawbook.lawbook_version,
        lawbook_hash=lawbook.content_hash[:12],
    )
    return lawbook
