"""Configuration management for the migration tool."""

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class JiraConfig(BaseModel):
    """Configuration for the Jira source."""

    url: str = Field(description="Jira base URL")
    user: str = Field(description="Jira user name or e-mail")
    api_token: SecretStr = Field(description="Jira API token or password")
    project: str = Field(description="Jira project key")
    query: Optional[str] = Field(
        default=None,
        description="JQL selecting the issues to export (defaults to the whole project)",
    )
    board_id: Optional[int] = Field(default=None, description="Agile board used for sprints")
    epic_link_field: str = Field(default="Epic Link", description="Epic link field name")
    sprint_field: str = Field(default="Sprint", description="Sprint field name")
    using_jira_cloud: bool = Field(default=True, description="Use accountId identities")
    batch_size: int = Field(default=50, ge=1, le=1000, description="Search page size")
    rate_limit: int = Field(default=300, ge=1, description="Requests per minute")
    timeout: int = Field(default=30, ge=5, description="Request timeout in seconds")

    @property
    def jql(self) -> str:
        """Get the effective JQL query."""
        return self.query or f'project = "{self.project}" ORDER BY key ASC'


class DevOpsConfig(BaseModel):
    """Configuration for the Azure DevOps target."""

    url: str = Field(description="Organization URL, e.g. https://dev.azure.com/org")
    pat: SecretStr = Field(description="Personal access token")
    project: str = Field(description="Target project name")
    process_template: str = Field(default="Agile", description="Process for a new project")
    base_area_path: str = Field(default="", description="Area path prefix")
    base_iteration_path: str = Field(default="", description="Iteration path prefix")
    ignore_failed_links: bool = Field(
        default=False, description="Report unresolved link targets as warnings"
    )
    api_version: str = Field(default="7.0", description="REST API version")
    timeout: int = Field(default=60, ge=5, description="Request timeout in seconds")


class WorkspaceConfig(BaseModel):
    """Configuration for the migration workspace."""

    path: Path = Field(default=Path("workspace"), description="Workspace directory")
    attachments_folder: str = Field(default="attachments", description="Attachment folder")
    sprints_folder: str = Field(default="sprints", description="Iteration record folder")
    journal_file: str = Field(default="journal.db", description="Journal database file")
    user_mapping_file: Optional[Path] = Field(
        default=None, description="File with source=target user mappings"
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: Path) -> Path:
        """Ensure path is absolute."""
        if not v.is_absolute():
            return Path.cwd() / v
        return v

    @property
    def attachments_path(self) -> Path:
        return self.path / self.attachments_folder

    @property
    def journal_path(self) -> Path:
        return self.path / self.journal_file


class TypeMapEntry(BaseModel):
    """Maps a Jira issue type to a work item type."""

    source: str
    target: str


class FieldMapEntry(BaseModel):
    """Maps one Jira field to one work item field."""

    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(description="Jira field id or name")
    source_type: str = Field(default="id", pattern="^(id|name)$")
    target: str = Field(description="Work item field reference name")
    for_types: Union[str, List[str]] = Field(default="All", alias="for")
    not_for: List[str] = Field(default_factory=list)
    mapper: Optional[str] = Field(default=None, description="Built-in value mapper")
    mapping: Dict[str, str] = Field(default_factory=dict, description="Value translation")

    def applies_to(self, wi_type: str) -> bool:
        """Check whether the rule is type-specific for the given type."""
        if wi_type in self.not_for:
            return False
        types = [self.for_types] if isinstance(self.for_types, str) else self.for_types
        return wi_type in types

    @property
    def is_common(self) -> bool:
        types = [self.for_types] if isinstance(self.for_types, str) else self.for_types
        return "All" in types


class LinkMapEntry(BaseModel):
    """Maps a Jira link type name to a relation type."""

    source: str
    target: str
    inward_target: Optional[str] = None


class MappingConfig(BaseModel):
    """Configuration for type, field and link mapping."""

    type_map: List[TypeMapEntry] = Field(default_factory=list)
    field_map: List[FieldMapEntry] = Field(default_factory=list)
    link_map: List[LinkMapEntry] = Field(default_factory=list)


class MigrationConfig(BaseModel):
    """Configuration for migration behavior."""

    continue_on_critical: bool = Field(
        default=False, description="Keep going after critical errors"
    )
    fetch_retries: int = Field(default=3, ge=1, description="Fetch/create attempts per revision")
    retry_pause_seconds: float = Field(default=1.0, ge=0, description="Pause between attempts")
    project_poll_interval: float = Field(default=5.0, ge=0, description="Operation poll interval")
    project_poll_timeout: float = Field(default=30.0, ge=0, description="Operation poll timeout")
    download_attachments: bool = Field(default=True, description="Export attachment content")


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    console: bool = Field(default=True, description="Enable console logging")
    file: Optional[Path] = Field(default=None, description="Log file path")
    format: str = Field(
        default="text",
        pattern="^(json|text)$",
        description="Log format (json or text)",
    )
    rotation_size: int = Field(
        default=10 * 1024 * 1024,  # 10MB
        ge=1024 * 1024,
        description="Log rotation size in bytes",
    )
    retention_days: int = Field(default=30, ge=1, description="Log retention in days")


class Config(BaseSettings):
    """Main configuration for the migration tool."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    jira: JiraConfig
    devops: DevOpsConfig
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    mapping: MappingConfig = Field(default_factory=MappingConfig)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: Path) -> "Config":
        """Load configuration from YAML or JSON file.

        Secrets missing from the file are taken from ``JIRA_API_TOKEN`` and
        ``DEVOPS_PAT``.

        Args:
            path: Path to configuration file

        Returns:
            Config instance

        Raises:
            ValueError: If file format is not supported
        """
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, "r") as f:
            if path.suffix in [".yml", ".yaml"]:
                data = yaml.safe_load(f) or {}
            elif path.suffix == ".json":
                data = json.load(f)
            else:
                raise ValueError(f"Unsupported configuration file format: {path.suffix}")

        for section, key, env_name in (
            ("jira", "api_token", "JIRA_API_TOKEN"),
            ("devops", "pat", "DEVOPS_PAT"),
        ):
            if section in data and not data[section].get(key):
                value = os.getenv(env_name)
                if value:
                    data[section][key] = value

        return cls(**data)

    def to_file(self, path: Path) -> None:
        """Save configuration to YAML or JSON file.

        Args:
            path: Path to save configuration file
        """
        data = self.model_dump(mode="json", by_alias=True)
        data["jira"]["api_token"] = "***REDACTED***"
        data["devops"]["pat"] = "***REDACTED***"

        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            if path.suffix in [".yml", ".yaml"]:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            elif path.suffix == ".json":
                json.dump(data, f, indent=2)
            else:
                raise ValueError(f"Unsupported configuration file format: {path.suffix}")

    def validate_paths(self) -> List[str]:
        """Validate that all referenced files exist.

        Returns:
            List of error messages for missing paths
        """
        errors = []

        mapping_file = self.workspace.user_mapping_file
        if mapping_file and not mapping_file.exists():
            errors.append(f"User mapping file not found: {mapping_file}")

        if not self.mapping.type_map:
            errors.append("Type map is empty, no issue would be exported")

        return errors

    def safe_dump(self) -> Dict[str, Any]:
        """Dump configuration without secrets."""
        return self.model_dump(
            mode="json",
            exclude={"jira": {"api_token"}, "devops": {"pat"}},
        )


def load_config(
    config_file: Optional[Path] = None,
    env_file: Optional[Path] = None,
) -> Config:
    """Load configuration from file and environment.

    Args:
        config_file: Optional path to configuration file
        env_file: Optional path to .env file

    Returns:
        Config instance
    """
    if env_file and env_file.exists():
        from dotenv import load_dotenv

        load_dotenv(env_file)
    elif Path(".env").exists():
        from dotenv import load_dotenv

        load_dotenv(Path(".env"))

    if config_file and config_file.exists():
        return Config.from_file(config_file)

    # Environment variables only
    return Config()  # type: ignore[call-arg]
