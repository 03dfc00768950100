"""Tests for configuration loading."""

import json

import pytest
import yaml

from workitem_migrator.config import Config, FieldMapEntry


CONFIG_YAML = """
jira:
  url: https://jira.example.com
  user: tester
  project: PRJ
devops:
  url: https://dev.azure.com/org
  project: Target
  base_area_path: Imported
workspace:
  path: {workspace}
mapping:
  type_map:
    - source: Story
      target: User Story
  field_map:
    - source: description
      target: Microsoft.VSTS.TCM.ReproSteps
      for: Bug
    - source: description
      target: System.Description
      not_for: [Bug]
      mapper: MapRendered
migration:
  fetch_retries: 5
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML.format(workspace=tmp_path / "ws"), encoding="utf-8")
    return path


def test_from_file_takes_secrets_from_environment(config_file, monkeypatch):
    """Secrets missing from the file come from the environment."""
    monkeypatch.setenv("JIRA_API_TOKEN", "jira-secret")
    monkeypatch.setenv("DEVOPS_PAT", "devops-secret")

    config = Config.from_file(config_file)

    assert config.jira.api_token.get_secret_value() == "jira-secret"
    assert config.devops.pat.get_secret_value() == "devops-secret"
    assert config.devops.base_area_path == "Imported"
    assert config.migration.fetch_retries == 5
    assert config.workspace.journal_path == config_file.parent / "ws" / "journal.db"


def test_field_rules_accept_for_key(config_file, monkeypatch):
    """Type-specific rules use the ``for`` key."""
    monkeypatch.setenv("JIRA_API_TOKEN", "t")
    monkeypatch.setenv("DEVOPS_PAT", "p")

    repro, description = Config.from_file(config_file).mapping.field_map

    assert repro.applies_to("Bug")
    assert not repro.is_common
    assert description.is_common
    assert not description.applies_to("Bug")


def test_field_rule_defaults():
    """A rule without types applies to all of them."""
    rule = FieldMapEntry(source="summary", target="System.Title")
    assert rule.is_common
    assert rule.source_type == "id"


def test_unsupported_format(tmp_path):
    """Only YAML and JSON files are read."""
    path = tmp_path / "config.toml"
    path.write_text("", encoding="utf-8")

    with pytest.raises(ValueError):
        Config.from_file(path)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        Config.from_file(tmp_path / "missing.yaml")


def test_to_file_redacts_secrets(config, tmp_path):
    """Saved configurations never hold secrets."""
    yaml_path = tmp_path / "out" / "config.yaml"
    json_path = tmp_path / "out" / "config.json"

    config.to_file(yaml_path)
    config.to_file(json_path)

    saved = yaml.safe_load(yaml_path.read_text(encoding="utf-8"))
    assert saved["jira"]["api_token"] == "***REDACTED***"
    assert saved["devops"]["pat"] == "***REDACTED***"
    assert json.loads(json_path.read_text(encoding="utf-8"))["devops"]["pat"] == "***REDACTED***"


def test_safe_dump_has_no_secrets(config):
    dumped = config.safe_dump()
    assert "api_token" not in dumped["jira"]
    assert "pat" not in dumped["devops"]


def test_validate_paths(config, tmp_path):
    """Missing mapping files and an empty type map are reported."""
    config.workspace.user_mapping_file = tmp_path / "users.txt"

    errors = config.validate_paths()

    assert len(errors) == 2
    assert any("users.txt" in e for e in errors)
