"""
Configuration system for the voicebot dialer.

`load_config` runs the load pipeline:
1. .env + YAML file with environment variable expansion
2. credential injection from the environment only
3. environment overrides for operator-tuned knobs
4. pydantic validation into `AppConfig`
"""

import os
from typing import List, Tuple

from voicebot.config.defaults import (
    apply_audio_defaults,
    apply_conversation_defaults,
    apply_dispatcher_defaults,
    apply_trunk_defaults,
)
from voicebot.config.loaders import project_path, read_dotenv, read_yaml
from voicebot.config.schema import (
    AGIConfig,
    AnalysisConfig,
    AppConfig,
    AsteriskConfig,
    AudioConfig,
    ConversationConfig,
    DispatcherConfig,
    HealthConfig,
    OpenAIProviderConfig,
    RepromptConfig,
)
from voicebot.config.security import expand_text_fields, inject_secrets

DEFAULT_CONFIG_PATH = "config/voicebot.yaml"

__all__ = [
    "AGIConfig",
    "AnalysisConfig",
    "AppConfig",
    "AsteriskConfig",
    "AudioConfig",
    "ConversationConfig",
    "DispatcherConfig",
    "HealthConfig",
    "OpenAIProviderConfig",
    "RepromptConfig",
    "load_config",
    "validate_production_config",
]


def load_config(path: str = None) -> AppConfig:
    """
    Load and validate configuration from YAML file.

    Args:
        path: Path to YAML configuration file (absolute or relative to project
            root). Defaults to $VOICEBOT_CONFIG or config/voicebot.yaml.

    Returns:
        Validated AppConfig instance

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        yaml.YAMLError: If YAML parsing fails
        pydantic.ValidationError: If required values (e.g. ARI credentials) are missing
    """
    read_dotenv()
    path = project_path(path or os.getenv("VOICEBOT_CONFIG", DEFAULT_CONFIG_PATH))
    config_data = read_yaml(path)

    inject_secrets(config_data)
    expand_text_fields(config_data)

    apply_dispatcher_defaults(config_data)
    apply_conversation_defaults(config_data)
    apply_audio_defaults(config_data)
    apply_trunk_defaults(config_data)

    return AppConfig(**config_data)


def validate_production_config(config: AppConfig) -> Tuple[List[str], List[str]]:
    """Validate configuration before the dialer starts placing calls.

    Args:
        config: AppConfig instance to validate

    Returns:
        (errors, warnings): errors block startup, warnings are logged only
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not config.providers.openai.api_key:
        errors.append("OPENAI_API_KEY is not set; speech and text generation are unavailable")

    if config.asterisk.control_mode not in ("ari", "agi"):
        errors.append(f"Invalid asterisk.control_mode: {config.asterisk.control_mode} (must be ari or agi)")

    if "{number}" not in config.asterisk.endpoint_template:
        errors.append("asterisk.endpoint_template must contain the {number} placeholder")

    if config.asterisk.control_mode == "agi" and not (1024 <= config.agi.port <= 65535):
        errors.append(f"AGI port {config.agi.port} out of valid range (1024-65535)")

    if config.dispatcher.unanswered_timeout_sec <= config.asterisk.originate_timeout_sec:
        warnings.append(
            "dispatcher.unanswered_timeout_sec should exceed asterisk.originate_timeout_sec "
            "so the platform gives up ringing before the slot is reclaimed"
        )

    if config.conversation.max_turns < 1:
        errors.append("conversation.max_turns must be at least 1")

    if config.health.enabled and config.health.host not in ("127.0.0.1", "localhost", "::1"):
        warnings.append(f"Health endpoint bound to {config.health.host}; /metrics is unauthenticated")

    if config.dispatcher.max_concurrent_calls > 20:
        warnings.append(
            f"max_concurrent_calls={config.dispatcher.max_concurrent_calls} is high; "
            "check trunk capacity and provider rate limits"
        )

    return errors, warnings
