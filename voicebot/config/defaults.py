"""
Default value application for configuration.

Environment variables take precedence over YAML for the handful of knobs
operators tune per deployment without editing the config file.
"""

import os
from typing import Any, Dict


def _env_int(name: str):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def apply_dispatcher_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply dispatcher overrides from the environment.

    Environment variables:
    - VOICEBOT_CONCURRENT_CALLS: maximum simultaneous calls (default: 2)

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    dispatcher = config_data.get('dispatcher') or {}
    concurrent = _env_int('VOICEBOT_CONCURRENT_CALLS')
    if concurrent is not None:
        dispatcher['max_concurrent_calls'] = concurrent
    config_data['dispatcher'] = dispatcher


def apply_conversation_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply conversation overrides from the environment.

    Environment variables:
    - VOICEBOT_MAX_CALL_DURATION: per-call elapsed-time cap in seconds (default: 300)

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    conversation = config_data.get('conversation') or {}
    duration = _env_int('VOICEBOT_MAX_CALL_DURATION')
    if duration is not None:
        conversation['max_call_duration_sec'] = duration
    config_data['conversation'] = conversation


def apply_audio_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply audio path overrides from the environment.

    Environment variables:
    - VOICEBOT_RECORDING_PATH: where AGI-mode recordings are written

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    audio = config_data.get('audio') or {}
    recording_path = os.getenv('VOICEBOT_RECORDING_PATH')
    if recording_path:
        audio['agi_recordings_dir'] = recording_path
    config_data['audio'] = audio


def apply_trunk_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply outbound trunk overrides from the environment.

    Environment variables:
    - TRUNK_CALLER_ID: caller id presented on originated calls

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    asterisk = config_data.get('asterisk') or {}
    caller_id = os.getenv('TRUNK_CALLER_ID')
    if caller_id:
        asterisk['caller_id'] = caller_id
    config_data['asterisk'] = asterisk
