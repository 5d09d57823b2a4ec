"""
Credentials come from the environment, never from YAML.

ARI username/password and the OpenAI key found in the config file are
overwritten with the environment value (or None), so a checked-in YAML can
not leak into a running dialer.
"""

import os
from typing import Any, Dict, Optional, Sequence, Tuple

# (section path, field, environment variables in priority order)
SECRET_FIELDS: Tuple[Tuple[Tuple[str, ...], str, Tuple[str, ...]], ...] = (
    (("asterisk",), "username", ("ASTERISK_ARI_USERNAME", "ARI_USERNAME")),
    (("asterisk",), "password", ("ASTERISK_ARI_PASSWORD", "ARI_PASSWORD")),
    (("providers", "openai"), "api_key", ("OPENAI_API_KEY",)),
)

# Operator-facing text that may reference ${VAR}
EXPANDED_TEXT_FIELDS = ("greeting", "system_prompt")


def first_env(names: Sequence[str]) -> Optional[str]:
    """First non-blank value among the named environment variables."""
    for name in names:
        value = os.getenv(name)
        if value and value.strip():
            return value
    return None


def section(config_data: Dict[str, Any], *keys: str) -> Dict[str, Any]:
    """Walk (and create) nested mappings, replacing non-dict values with {}."""
    node = config_data
    for key in keys:
        child = node.get(key)
        child = dict(child) if isinstance(child, dict) else {}
        node[key] = child
        node = child
    return node


def inject_secrets(config_data: Dict[str, Any]) -> None:
    """Overwrite every credential field in place from the environment."""
    for keys, field, env_names in SECRET_FIELDS:
        section(config_data, *keys)[field] = first_env(env_names)

    asterisk = section(config_data, "asterisk")
    asterisk["host"] = os.getenv("ASTERISK_HOST") or asterisk.get("host") or "127.0.0.1"


def expand_text_fields(config_data: Dict[str, Any]) -> None:
    conversation = section(config_data, "conversation")
    for key in EXPANDED_TEXT_FIELDS:
        value = conversation.get(key)
        if isinstance(value, str) and value.strip():
            conversation[key] = os.path.expandvars(value)
