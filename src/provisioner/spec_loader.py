"""Manifest file loading with validation.

SECURITY: File size is checked before reading. Input validation is
performed at the boundary so reconcilers only ever see valid specs.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import Manifest

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def load_manifest(path: Path) -> Manifest:
    """Load and validate a desired-state manifest from YAML.

    Both a flat document and a Kubernetes-style wrapper
    (apiVersion/kind/metadata/spec) are accepted.

    Args:
        path: Manifest file.

    Returns:
        Validated manifest.

    Raises:
        SpecLoadError: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Manifest file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Manifest file must contain a YAML mapping: {path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        manifest_data = raw_data.get("spec") or {}
        if not isinstance(manifest_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")
    else:
        manifest_data = raw_data

    try:
        manifest = Manifest.model_validate(manifest_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info("Loaded manifest with %d resources from %s", manifest.resource_count, path)
    return manifest
