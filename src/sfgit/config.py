"""Run configuration and batch-file loading.

The configuration is read once at startup into an immutable
:class:`PipelineConfig` and handed to every stage explicitly. Keys are
accepted in the camelCase spelling used by ``config.json`` files as well as
their snake_case attribute names.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    StrictBool,
    ValidationError,
    field_validator,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config.json"
DEFAULT_BATCH_FILE = "changeSetNames.json"
DEFAULT_LOG_FILE = "log.txt"
DEFAULT_WATCH_SUFFIXES: tuple[str, ...] = (
    ".xml",
    ".cls",
    ".trigger",
    ".page",
    ".component",
    ".resource",
    ".js",
    ".html",
    ".css",
)


class ConfigError(ValueError):
    """Raised when required configuration is missing or malformed."""


class BatchFileError(ValueError):
    """Raised when a batch list file cannot be used."""


def _alias(*names: str) -> Any:
    return AliasChoices(*names)


class PipelineConfig(BaseModel):
    """Immutable settings for one run of the publishing pipeline."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    # Core pipeline settings
    project_root: str = Field(validation_alias=_alias("projectRoot", "project_root", "projectName"))
    download_root: str = Field(
        validation_alias=_alias("downloadRoot", "download_root", "downloadedPackagesFolder")
    )
    salesforce_username: str = Field(
        validation_alias=_alias("salesforceUsername", "salesforce_username", "username")
    )
    skip_existing_work: StrictBool = Field(
        default=True,
        validation_alias=_alias("skipExistingWork", "skip_existing_work", "skipExistingChangeSets"),
    )
    auto_create_pull_request: StrictBool = Field(
        default=False,
        validation_alias=_alias("autoCreatePullRequest", "auto_create_pull_request"),
    )
    autofill_pull_request_details: StrictBool = Field(
        default=True,
        validation_alias=_alias("autofillPullRequestDetails", "autofill_pull_request_details"),
    )
    open_pull_request_url: StrictBool = Field(
        default=False,
        validation_alias=_alias("openPullRequestUrl", "open_pull_request_url"),
    )

    # Relocation of retrieved content into the project tree
    copy_to_project: StrictBool = Field(
        default=False, validation_alias=_alias("copyToProject", "copy_to_project")
    )
    project_source_dir: str = Field(
        default="force-app/main/default",
        validation_alias=_alias("projectSourceDir", "project_source_dir"),
    )
    watch_suffixes: tuple[str, ...] = Field(
        default=DEFAULT_WATCH_SUFFIXES,
        validation_alias=_alias("watchSuffixes", "watch_suffixes"),
    )

    # Repository / org setup
    salesforce_login_url: str = Field(
        default="https://login.salesforce.com",
        validation_alias=_alias("salesforceLoginURL", "salesforce_login_url"),
    )
    github_repo_url: str = Field(default="", validation_alias=_alias("githubRepoUrl", "github_repo_url"))
    git_username: str = Field(default="", validation_alias=_alias("gitUsername", "git_username"))
    github_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias=_alias("githubPersonalAccessToken", "github_token"),
    )

    # Files and binaries
    batch_file: str = Field(
        default=DEFAULT_BATCH_FILE,
        validation_alias=_alias("changesetJSONFile", "batch_file"),
    )
    log_file: str = Field(default=DEFAULT_LOG_FILE, validation_alias=_alias("logFile", "log_file"))
    # Inactivity timeout in seconds. 0 waits indefinitely.
    command_timeout_seconds: int = Field(
        default=0,
        ge=0,
        validation_alias=_alias("commandTimeoutSeconds", "command_timeout_seconds"),
    )
    sfdx_binary: str = Field(default="sfdx", validation_alias=_alias("sfdxBinary", "sfdx_binary"))
    git_binary: str = Field(default="git", validation_alias=_alias("gitBinary", "git_binary"))
    gh_binary: str = Field(default="gh", validation_alias=_alias("ghBinary", "gh_binary"))

    # Directory the config was loaded from; relative paths resolve against it.
    base_dir: str = Field(default=".", exclude=True)

    @field_validator("project_root", "download_root", "salesforce_username")
    @classmethod
    def _require_non_empty(cls, value: str) -> str:
        cleaned = str(value or "").strip()
        if not cleaned:
            raise ValueError("must be a non-empty string")
        return cleaned

    @field_validator("watch_suffixes", mode="before")
    @classmethod
    def _normalize_suffixes(cls, value: Any) -> tuple[str, ...]:
        if isinstance(value, str):
            value = [part for part in value.split(",")]
        suffixes: list[str] = []
        for raw in value or []:
            suffix = str(raw or "").strip().lower()
            if not suffix:
                continue
            if not suffix.startswith("."):
                suffix = "." + suffix
            if suffix not in suffixes:
                suffixes.append(suffix)
        if not suffixes:
            raise ValueError("at least one file suffix is required")
        return tuple(suffixes)

    # -- resolved paths --

    @property
    def project_path(self) -> Path:
        root = Path(self.project_root).expanduser()
        if not root.is_absolute():
            root = Path(self.base_dir) / root
        return root.resolve()

    @property
    def download_path(self) -> Path:
        """Download root; relative values live inside the project working tree."""
        root = Path(self.download_root).expanduser()
        if not root.is_absolute():
            root = self.project_path / root
        return root.resolve()

    @property
    def source_path(self) -> Path:
        return (self.project_path / self.project_source_dir).resolve()

    @property
    def log_path(self) -> Path:
        path = Path(self.log_file).expanduser()
        if not path.is_absolute():
            path = Path(self.base_dir) / path
        return path.resolve()

    @property
    def batch_path(self) -> Path:
        path = Path(self.batch_file).expanduser()
        if not path.is_absolute():
            path = Path(self.base_dir) / path
        return path.resolve()

    def to_display_dict(self) -> dict[str, Any]:
        """Return the configuration with secrets masked, keyed by file aliases."""
        payload = self.model_dump(mode="json")
        payload["github_token"] = "********" if self.github_token.get_secret_value() else ""
        return payload


_FILE_KEYS: dict[str, str] = {
    "project_root": "projectRoot",
    "download_root": "downloadRoot",
    "salesforce_username": "salesforceUsername",
    "skip_existing_work": "skipExistingWork",
    "auto_create_pull_request": "autoCreatePullRequest",
    "autofill_pull_request_details": "autofillPullRequestDetails",
    "open_pull_request_url": "openPullRequestUrl",
    "copy_to_project": "copyToProject",
    "project_source_dir": "projectSourceDir",
    "watch_suffixes": "watchSuffixes",
    "salesforce_login_url": "salesforceLoginURL",
    "github_repo_url": "githubRepoUrl",
    "git_username": "gitUsername",
    "github_token": "githubPersonalAccessToken",
    "batch_file": "changesetJSONFile",
    "log_file": "logFile",
    "command_timeout_seconds": "commandTimeoutSeconds",
    "sfdx_binary": "sfdxBinary",
    "git_binary": "gitBinary",
    "gh_binary": "ghBinary",
}


def _format_validation_error(exc: ValidationError) -> str:
    problems: list[str] = []
    for error in exc.errors():
        loc = ".".join(str(part) for part in error.get("loc", ())) or "(root)"
        problems.append(f"{loc}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def config_from_mapping(data: dict[str, Any], *, base_dir: str | Path = ".") -> PipelineConfig:
    """Validate a raw mapping into a :class:`PipelineConfig`."""
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a JSON object")
    payload = dict(data)
    payload["base_dir"] = str(Path(base_dir).resolve())
    try:
        return PipelineConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration: {_format_validation_error(exc)}") from exc


def load_config(path: str | Path = DEFAULT_CONFIG_FILE) -> PipelineConfig:
    """Load and validate the configuration file.

    Raises :class:`ConfigError` when the file is missing, unreadable, not
    JSON, or lacks a required setting.
    """
    config_path = Path(path).expanduser()
    if not config_path.is_file():
        raise ConfigError(f"configuration file not found: {config_path}")
    try:
        raw = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"could not read configuration file {config_path}: {exc}") from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"configuration file {config_path} is not valid JSON: {exc}") from exc
    config = config_from_mapping(data, base_dir=config_path.resolve().parent)
    logger.debug("Loaded configuration from %s", config_path)
    return config


def save_config(config: PipelineConfig, path: str | Path = DEFAULT_CONFIG_FILE) -> Path:
    """Persist ``config`` to ``path`` atomically using the file's camelCase keys."""
    target = Path(path).expanduser()
    payload: dict[str, Any] = {}
    dumped = config.model_dump(mode="json")
    for attr, key in _FILE_KEYS.items():
        payload[key] = dumped.get(attr)
    payload["githubPersonalAccessToken"] = config.github_token.get_secret_value()

    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{target.name}.", suffix=".tmp", dir=str(target.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, indent=2) + "\n")
        tmp_path.replace(target)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)
    return target


def load_batch_file(path: str | Path) -> list[str]:
    """Return the work-unit labels listed in a JSON batch file.

    Labels keep their file order. Blank entries are dropped.
    """
    batch_path = Path(path).expanduser()
    if not batch_path.is_file():
        raise BatchFileError(f"batch file not found: {batch_path}")
    try:
        data = json.loads(batch_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise BatchFileError(f"could not parse batch file {batch_path}: {exc}") from exc
    if not isinstance(data, list):
        raise BatchFileError(f"batch file {batch_path} must contain a JSON array of names")

    labels: list[str] = []
    for index, item in enumerate(data):
        if not isinstance(item, str):
            raise BatchFileError(f"batch entry #{index + 1} is not a string: {item!r}")
        label = item.strip()
        if label:
            labels.append(label)
    return labels


def split_labels(raw: str) -> list[str]:
    """Split a comma-separated list of labels typed by the user."""
    return [part.strip() for part in str(raw or "").split(",") if part.strip()]
