"""Cluster document loading.

File size is checked before reading and the YAML is parsed with safe_load
only. Pydantic errors are flattened into one readable message.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_DOCUMENT_FILE_SIZE_BYTES
from .models import ClusterDocument

logger = logging.getLogger(__name__)


class DocumentLoadError(Exception):
    """Raised when the cluster document cannot be read or parsed."""

    pass


def load_cluster_document(path: Path) -> ClusterDocument:
    """Load a cluster document from YAML.

    Args:
        path: Path to the document (e.g. nebari-config.yaml).

    Returns:
        Parsed document. Structural validation is a separate step.

    Raises:
        DocumentLoadError: If the file is missing, too large, not YAML,
            or does not match the document model.
    """
    if not path.exists():
        raise DocumentLoadError(f"Cluster document not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise DocumentLoadError(f"Failed to stat cluster document {path}: {e}") from e

    if file_size > MAX_DOCUMENT_FILE_SIZE_BYTES:
        raise DocumentLoadError(
            f"Cluster document exceeds maximum size of {MAX_DOCUMENT_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise DocumentLoadError(f"Failed to read cluster document {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise DocumentLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise DocumentLoadError(f"Cluster document must contain a YAML mapping: {path}")

    try:
        document = ClusterDocument.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")

        error_list = "\n".join(errors)
        raise DocumentLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info(
        "Loaded cluster document",
        extra={"path": str(path), "project_name": document.project_name},
    )
    return document
