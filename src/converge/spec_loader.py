"""Definition file loading with validation.

All file operations enforce size limits. Input validation is performed at
the boundary so that malformed definitions abort before any provider call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_DEFINITION_FILE_SIZE_BYTES
from .models import DefinitionDocument

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = (".yaml", ".yml")


class ParseError(Exception):
    """Raised when a definition file cannot be loaded or fails validation."""

    pass


@dataclass(frozen=True)
class LoadedDefinitions:
    """All documents found under a definitions path, merged."""

    documents: tuple[DefinitionDocument, ...]
    variables: dict[str, Any]
    sources: tuple[Path, ...]


def _definition_files(path: Path) -> list[Path]:
    if path.is_file():
        return [path]
    if path.is_dir():
        return sorted(
            p for p in path.iterdir() if p.is_file() and p.suffix in DEFINITION_SUFFIXES
        )
    raise ParseError(f"Definitions path not found: {path}")


def _format_validation_error(source: Path, error: ValidationError) -> str:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}")
    return f"Validation failed for {source}:\n" + "\n".join(errors)


def parse_definition(content: str, source: Path) -> list[DefinitionDocument]:
    """Parse YAML text into validated documents.

    A file may contain several YAML documents separated by ``---``. Each one
    is either a Kubernetes-style wrapper (apiVersion/kind/metadata/spec) or
    the flat spec body.

    Raises:
        ParseError: On invalid YAML or a document failing validation.
    """
    try:
        raw_documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid YAML in {source}: {e}") from e

    documents: list[DefinitionDocument] = []
    for raw_data in raw_documents:
        if not isinstance(raw_data, dict):
            raise ParseError(f"Definition must be a YAML mapping: {source}")

        if "apiVersion" in raw_data and "spec" in raw_data:
            spec_data = raw_data.get("spec") or {}
            if not isinstance(spec_data, dict):
                raise ParseError(f"Spec section must be a mapping: {source}")
        elif "resources" in raw_data or "variables" in raw_data:
            spec_data = raw_data
        else:
            raise ParseError(
                f"Definition in {source} has neither a 'spec' section "
                f"nor top-level 'resources'/'variables'"
            )

        try:
            documents.append(DefinitionDocument.model_validate(spec_data))
        except ValidationError as e:
            raise ParseError(_format_validation_error(source, e)) from e

    return documents


def load_definitions(path: Path) -> LoadedDefinitions:
    """Load and validate all definition files under ``path``.

    Args:
        path: A definitions directory (``*.yaml``/``*.yml``, not recursive)
            or a single file.

    Returns:
        The validated documents and the merged variable table.

    Raises:
        ParseError: If any file cannot be read, parsed or validated, or two
            files declare the same variable.
    """
    documents: list[DefinitionDocument] = []
    variables: dict[str, Any] = {}
    variable_sources: dict[str, Path] = {}
    sources = _definition_files(path)

    for source in sources:
        try:
            file_size = source.stat().st_size
        except OSError as e:
            raise ParseError(f"Failed to stat definition file {source}: {e}") from e

        if file_size > MAX_DEFINITION_FILE_SIZE_BYTES:
            raise ParseError(
                f"Definition file exceeds maximum size of "
                f"{MAX_DEFINITION_FILE_SIZE_BYTES} bytes: {source}"
            )

        try:
            content = source.read_text(encoding="utf-8")
        except OSError as e:
            raise ParseError(f"Failed to read definition file {source}: {e}") from e

        for document in parse_definition(content, source):
            for key, value in document.variables.items():
                if key in variables:
                    raise ParseError(
                        f"Variable '{key}' declared in both "
                        f"{variable_sources[key]} and {source}"
                    )
                variables[key] = value
                variable_sources[key] = source
            documents.append(document)

    logger.info(
        "Loaded definitions",
        extra={
            "path": str(path),
            "files": len(sources),
            "blocks": sum(len(d.resources) for d in documents),
        },
    )
    return LoadedDefinitions(
        documents=tuple(documents),
        variables=variables,
        sources=tuple(sources),
    )
