"""
Config file reading: project-relative paths, .env export and YAML with
environment references.
"""

import os

import pytest
import yaml

from voicebot.config.loaders import PROJECT_ROOT, project_path, read_dotenv, read_yaml


class TestProjectPath:
    def test_absolute_path_kept(self):
        assert project_path("/etc/voicebot/dialer.yaml") == "/etc/voicebot/dialer.yaml"

    def test_relative_path_anchored_at_project_root(self):
        result = project_path("config/voicebot.yaml")

        assert os.path.isabs(result)
        assert result == str(PROJECT_ROOT / "config" / "voicebot.yaml")

    def test_shipped_config_present(self):
        assert os.path.isfile(project_path("config/voicebot.yaml"))


class TestReadDotenv:
    def test_absent_file(self, tmp_path):
        assert read_dotenv(str(tmp_path / "nothing.env")) is False

    def test_exported_values_not_overridden(self, tmp_path, monkeypatch):
        """A value exported by the operator beats the file."""
        env_file = tmp_path / ".env"
        env_file.write_text("VOICEBOT_DOTENV_A=archivo\nVOICEBOT_DOTENV_B=solo-archivo\n")
        monkeypatch.setenv("VOICEBOT_DOTENV_A", "entorno")
        monkeypatch.delenv("VOICEBOT_DOTENV_B", raising=False)

        assert read_dotenv(str(env_file)) is True

        assert os.environ["VOICEBOT_DOTENV_A"] == "entorno"
        assert os.environ["VOICEBOT_DOTENV_B"] == "solo-archivo"
        monkeypatch.delenv("VOICEBOT_DOTENV_B")


class TestReadYaml:
    def test_nested_sections(self, tmp_path):
        config_file = tmp_path / "dialer.yaml"
        config_file.write_text(
            "dispatcher:\n"
            "  max_concurrent_calls: 2\n"
            "conversation:\n"
            "  language: es\n"
            "  closing_phrases: [adios, hasta luego]\n"
        )

        data = read_yaml(str(config_file))

        assert data["dispatcher"]["max_concurrent_calls"] == 2
        assert data["conversation"]["closing_phrases"] == ["adios", "hasta luego"]

    def test_environment_references_expanded_before_parsing(self, tmp_path, monkeypatch):
        """Expanded numbers are typed by the YAML parser."""
        monkeypatch.setenv("VOICEBOT_TEST_AGI_PORT", "4573")
        monkeypatch.setenv("VOICEBOT_TEST_TRUNK", "trunk-mx")
        config_file = tmp_path / "dialer.yaml"
        config_file.write_text("agi:\n  port: ${VOICEBOT_TEST_AGI_PORT}\nasterisk:\n  trunk: $VOICEBOT_TEST_TRUNK\n")

        data = read_yaml(str(config_file))

        assert data["agi"]["port"] == 4573
        assert data["asterisk"]["trunk"] == "trunk-mx"

    def test_unset_reference_kept_verbatim(self, tmp_path):
        config_file = tmp_path / "dialer.yaml"
        config_file.write_text("greeting: ${VOICEBOT_NEVER_SET}\n")

        assert read_yaml(str(config_file)) == {"greeting": "${VOICEBOT_NEVER_SET}"}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="not found"):
            read_yaml(str(tmp_path / "missing.yaml"))

    def test_bad_indentation(self, tmp_path):
        config_file = tmp_path / "broken.yaml"
        config_file.write_text("a: 1\n  b: 2\n    c: 3\n")

        with pytest.raises(yaml.YAMLError, match="parsing"):
            read_yaml(str(config_file))

    def test_top_level_list_rejected(self, tmp_path):
        config_file = tmp_path / "list.yaml"
        config_file.write_text("- uno\n- dos\n")

        with pytest.raises(yaml.YAMLError, match="mapping"):
            read_yaml(str(config_file))

    def test_empty_file(self, tmp_path):
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")

        assert read_yaml(str(config_file)) == {}
