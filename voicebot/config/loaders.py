"""Reading the YAML config file and the optional .env beside the project."""

import os
from pathlib import Path
from typing import Any, Dict

import yaml
from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def project_path(path: str) -> str:
    """Return `path` unchanged when absolute, else anchored at the project root."""
    candidate = Path(path)
    if candidate.is_absolute():
        return str(candidate)
    return str(PROJECT_ROOT / candidate)


def read_dotenv(path: str = ".env") -> bool:
    """Export a dotenv file without overriding variables already set.

    Returns False when there is no such file.
    """
    resolved = project_path(path)
    if not Path(resolved).is_file():
        return False
    return load_dotenv(resolved, override=False)


def read_yaml(path: str) -> Dict[str, Any]:
    """Parse a YAML file after expanding $VAR / ${VAR} references.

    Unset variables stay as written. An empty file yields {}.

    Raises:
        FileNotFoundError: no file at `path`
        yaml.YAMLError: the expanded text is not valid YAML
    """
    source = Path(path)
    if not source.is_file():
        raise FileNotFoundError(f"Voicebot config not found: {path}")
    text = os.path.expandvars(source.read_text(encoding="utf-8"))
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise yaml.YAMLError(f"Invalid YAML in {path} (parsing failed): {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise yaml.YAMLError(f"Top level of {path} must be a mapping, got {type(data).__name__}")
    return data
