"""Configuration loading, validation and merging for gdl.

Configuration is a nested dictionary. Values come from three layers, later
layers winning: ``DEFAULT_CONFIG``, an optional YAML file, and command-line
overrides (dot-notation keys such as ``"retrieval.parallel"``).
"""

from pathlib import Path
from typing import Any, Optional

import yaml
from jsonschema import Draft7Validator

from gdl.lib.errors import ConfigurationError

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "schemas" / "config.schema.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "cache": {
        "dir": ".",
        "refresh": False,
    },
    "taxonomy": {
        "dump_dir": "taxdump",
        "url": "https://ftp.ncbi.nih.gov/pub/taxonomy/taxdump.tar.gz",
    },
    "catalog": {
        "source": "refseq",
        "path": None,
    },
    "retrieval": {
        "parallel": 1,
        "format": "fna",
        "out_dir": ".",
        "force": False,
        "timeout": 300,
        "max_retries": 3,
        "base_delay": 1.0,
        "max_delay": 60.0,
        "chunk_size": 1 << 16,
    },
    "logging": {
        "level": "INFO",
        "dir": None,
    },
}


def get_config_value(config: dict, key: str, default: Any = None) -> Any:
    """Get a nested configuration value using dot notation.

    Args:
        config: Configuration dictionary
        key: Dot-separated key path (e.g., "retrieval.parallel")
        default: Default value if key not found

    Examples:
        >>> get_config_value({"retrieval": {"parallel": 4}}, "retrieval.parallel")
        4
        >>> get_config_value({}, "missing.key", "default")
        'default'
    """
    value = config
    for k in key.split("."):
        if isinstance(value, dict) and k in value:
            value = value[k]
        else:
            return default
    return value


def set_config_value(config: dict, key: str, value: Any) -> None:
    """Set a nested configuration value using dot notation.

    Examples:
        >>> config = {"retrieval": {"parallel": 1}}
        >>> set_config_value(config, "retrieval.parallel", 8)
        >>> config["retrieval"]["parallel"]
        8
    """
    keys = key.split(".")
    current = config
    for k in keys[:-1]:
        if k not in current:
            current[k] = {}
        current = current[k]
    current[keys[-1]] = value


def merge_cli_config(base_config: dict, cli_overrides: dict) -> dict:
    """Merge command-line overrides into a base configuration.

    Overrides may use dot notation for nested keys. Override values equal to
    ``None`` mean "flag not given" and leave the base value in place.

    Examples:
        >>> base = {"retrieval": {"parallel": 1, "format": "fna"}}
        >>> merge_cli_config(base, {"retrieval.parallel": 4})["retrieval"]
        {'parallel': 4, 'format': 'fna'}
    """
    result = _deep_copy_dict(base_config)

    for key, value in cli_overrides.items():
        if value is None:
            continue
        if "." in key:
            set_config_value(result, key, value)
        elif isinstance(value, dict) and key in result and isinstance(result[key], dict):
            result[key] = merge_cli_config(result[key], value)
        else:
            result[key] = value

    return result


def _deep_copy_dict(d: dict) -> dict:
    """Create a deep copy of a dictionary."""
    result = {}
    for key, value in d.items():
        if isinstance(value, dict):
            result[key] = _deep_copy_dict(value)
        elif isinstance(value, list):
            result[key] = [_deep_copy_dict(v) if isinstance(v, dict) else v for v in value]
        else:
            result[key] = value
    return result


def load_yaml(path: Path) -> Any:
    """Load a YAML file and return its contents."""
    with open(path) as f:
        return yaml.safe_load(f)


def load_config(config_path: Optional[str | Path] = None) -> dict:
    """Load configuration, layering a YAML file over the defaults.

    Args:
        config_path: Optional path to a YAML configuration file

    Returns:
        Validated configuration dictionary

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    if config_path is None:
        return _deep_copy_dict(DEFAULT_CONFIG)

    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}",
            details="Pass an existing YAML file to --config",
        )

    try:
        user_config = load_yaml(config_path) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError("YAML parsing error", details=str(e)) from e

    if not isinstance(user_config, dict):
        raise ConfigurationError(
            "Configuration root must be a mapping",
            details=f"{config_path} contains a {type(user_config).__name__}",
        )

    validate_config(user_config)
    return merge_cli_config(DEFAULT_CONFIG, user_config)


def format_validation_error(error_message: str, schema_path: str = "") -> str:
    """Format a JSON Schema validation error as a user-friendly message."""
    suggestions = {
        "is not one of": "Use one of the allowed values",
        "is not of type": "Ensure the value has the correct type",
        "less than the minimum": "Use a value greater than or equal to the minimum",
        "additional properties": "Remove unknown fields from configuration",
    }

    suggestion = ""
    for key, msg in suggestions.items():
        if key in error_message.lower():
            suggestion = msg
            break

    lines = ["Configuration validation failed:"]
    if schema_path:
        lines.append(f"  Location: {schema_path}")
    lines.append(f"  Error: {error_message}")
    if suggestion:
        lines.append(f"  Suggestion: {suggestion}")

    return "\n".join(lines)


def validate_config(config: dict, schema_path: Path = SCHEMA_PATH) -> None:
    """Validate a configuration dictionary against the JSON Schema.

    Raises:
        ConfigurationError: With every schema violation listed in details
    """
    schema = load_yaml(schema_path)
    validator = Draft7Validator(schema)

    errors = sorted(validator.iter_errors(config), key=lambda e: list(e.absolute_path))
    if not errors:
        return

    messages = []
    for error in errors:
        location = " -> ".join(str(p) for p in error.absolute_path) or "(root)"
        messages.append(format_validation_error(error.message, location))

    raise ConfigurationError(
        f"{len(errors)} configuration error(s)",
        details="\n".join(messages),
    )
