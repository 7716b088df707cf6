"""Pipeline definition loading.

This module provides helpers for reading a pipeline definition from a YAML
or JSON file and validating it against the schema.
"""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from sdk_pipeline.errors import PipelineConfigError
from sdk_pipeline.pipeline.schema import PipelineDefinition


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_pipeline_definition(data: dict[str, Any]) -> PipelineDefinition:
    """Validate raw definition data.

    Raises:
        PipelineConfigError: If data does not match the schema.
    """
    try:
        return PipelineDefinition.model_validate(data)
    except ValidationError as e:
        raise PipelineConfigError(f"Invalid pipeline definition: {e}") from e


def load_pipeline_definition(path: Path) -> PipelineDefinition:
    """Load and validate a pipeline definition file.

    Files ending in ``.json`` are parsed as JSON, anything else as YAML.

    Args:
        path: Path to the definition file.

    Returns:
        Validated PipelineDefinition.

    Raises:
        PipelineConfigError: If the file is missing, unparsable or invalid.
    """
    try:
        if path.suffix.lower() == ".json":
            data = load_json(path)
        else:
            data = load_yaml(path)
    except FileNotFoundError as e:
        raise PipelineConfigError(f"Pipeline definition not found: {path}") from e
    except (yaml.YAMLError, json.JSONDecodeError, ValueError) as e:
        raise PipelineConfigError(f"Cannot parse {path}: {e}") from e

    return parse_pipeline_definition(data)


__all__ = [
    "load_json",
    "load_pipeline_definition",
    "load_yaml",
    "parse_pipeline_definition",
]
