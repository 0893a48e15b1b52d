"""Configuration for monobump.

Settings are read once per invocation and passed around as an immutable
:class:`ReleaseConfig`. They come from ``monobump.toml`` at the workspace
root, or from a ``"monobump"`` key in the root package.json, and fall
back to defaults for anything not set.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
import tomlkit
from tomlkit.exceptions import ParseError as TOMLParseError

from .errors import ConfigError
from .versions import BumpKind

CONFIG_FILE = "monobump.toml"
PACKAGE_JSON_KEY = "monobump"

Strategy = Literal["independent", "conventional", "unified", "manual"]
ChangesetFormat = Literal["json", "yaml", "toml"]
RepoProvider = Literal["github", "gitlab", "bitbucket", "custom"]
ChangelogFormat = Literal["conventional", "keep-a-changelog"]

DEFAULT_SECTION = "Other"

DEFAULT_CHANGELOG_TEMPLATE = "## [{version}] - {date}"


class TypeConfig(BaseModel):
    """How one conventional commit type is classified."""

    model_config = ConfigDict(frozen=True)

    bump: BumpKind = BumpKind.PATCH
    section: str = DEFAULT_SECTION
    show: bool = True


def default_types() -> dict[str, TypeConfig]:
    return {
        "feat": TypeConfig(bump=BumpKind.MINOR, section="Features"),
        "fix": TypeConfig(bump=BumpKind.PATCH, section="Bug Fixes"),
        "perf": TypeConfig(bump=BumpKind.PATCH, section="Performance Improvements"),
        "revert": TypeConfig(bump=BumpKind.PATCH, section="Reverts"),
        "refactor": TypeConfig(bump=BumpKind.PATCH, section="Code Refactoring"),
        "docs": TypeConfig(bump=BumpKind.NONE, section="Documentation"),
        "style": TypeConfig(bump=BumpKind.NONE, section="Styles", show=False),
        "test": TypeConfig(bump=BumpKind.NONE, section="Tests", show=False),
        "build": TypeConfig(bump=BumpKind.NONE, section="Build System", show=False),
        "ci": TypeConfig(bump=BumpKind.NONE, section="Continuous Integration", show=False),
        "chore": TypeConfig(bump=BumpKind.NONE, section="Chores", show=False),
    }


class IndependentConfig(BaseModel):
    """Which promotions the independent strategy performs."""

    model_config = ConfigDict(frozen=True)

    major_if_breaking: bool = True
    minor_if_feature: bool = True
    patch_otherwise: bool = True


def default_dependency_bumps() -> dict[BumpKind, BumpKind]:
    return {
        BumpKind.MAJOR: BumpKind.PATCH,
        BumpKind.MINOR: BumpKind.PATCH,
        BumpKind.PATCH: BumpKind.PATCH,
    }


class ReleaseConfig(BaseModel):
    """Top-level configuration."""

    model_config = ConfigDict(frozen=True)

    strategy: Strategy = "independent"
    harmonize_cycles: bool = True
    independent: IndependentConfig = Field(default_factory=IndependentConfig)
    dependency_bumps: dict[BumpKind, BumpKind] = Field(default_factory=default_dependency_bumps)

    snapshot_hash_length: int = Field(default=7, ge=4, le=40)
    allow_snapshot_on_main: bool = False
    release_branches: list[str] = Field(default_factory=lambda: ["main", "master", "develop"])

    types: dict[str, TypeConfig] = Field(default_factory=default_types)
    default_bump: BumpKind = BumpKind.PATCH

    changeset_dir: Path = Path("changesets")
    changeset_format: ChangesetFormat = "json"
    available_environments: list[str] = Field(default_factory=list)

    repo_provider: RepoProvider = "github"
    repo_url: str | None = None
    changelog_template: str = DEFAULT_CHANGELOG_TEMPLATE
    changelog_format: ChangelogFormat = "conventional"
    changelog_path: Path = Path("CHANGELOG.md")
    tag_pattern: str = "*"

    @field_validator("types", mode="before")
    @classmethod
    def _merge_types(cls, value: Any) -> Any:
        """User type tables extend the defaults rather than replace them."""
        if isinstance(value, dict):
            merged: dict[str, Any] = dict(default_types())
            merged.update(value)
            return merged
        return value

    @field_validator("dependency_bumps", mode="before")
    @classmethod
    def _merge_dependency_bumps(cls, value: Any) -> Any:
        if isinstance(value, dict):
            merged: dict[Any, Any] = dict(default_dependency_bumps())
            merged.update({BumpKind(k): BumpKind(v) for k, v in value.items()})
            return merged
        return value

    def type_config(self, commit_type: str | None) -> TypeConfig:
        """Classification for ``commit_type``; unknown types use the default."""
        if commit_type is not None and commit_type in self.types:
            return self.types[commit_type]
        return TypeConfig(bump=self.default_bump, section=DEFAULT_SECTION, show=True)

    def is_release_branch(self, branch: str) -> bool:
        return branch in self.release_branches

    def changeset_path(self, root: Path) -> Path:
        return self.changeset_dir if self.changeset_dir.is_absolute() else root / self.changeset_dir


def _plain(value: Any) -> Any:
    """Convert tomlkit containers into plain Python values."""
    if hasattr(value, "unwrap"):
        return value.unwrap()
    return value


def load_config_file(path: Path) -> dict[str, Any]:
    try:
        doc = tomlkit.parse(path.read_text(encoding="utf-8"))
    except TOMLParseError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}", path=path) from e
    data = _plain(doc)
    # Allow either a top-level table or a [monobump] section
    return data.get("monobump", data)


def extract_package_json_config(root: Path) -> dict[str, Any]:
    path = root / "package.json"
    if not path.exists():
        return {}
    try:
        doc = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}", path=path) from e
    section = doc.get(PACKAGE_JSON_KEY, {}) if isinstance(doc, dict) else {}
    return section if isinstance(section, dict) else {}


def load_config(root: Path, overrides: dict[str, Any] | None = None) -> ReleaseConfig:
    """Load configuration for the workspace at ``root``.

    Args:
        root: Workspace root directory.
        overrides: Values that take precedence over the file (CLI flags).

    Raises:
        ConfigError: If the configuration cannot be parsed or is invalid.
    """
    config_path = root / CONFIG_FILE
    if config_path.exists():
        data = load_config_file(config_path)
    else:
        config_path = root / "package.json"
        data = extract_package_json_config(root)

    data = {**data, **(overrides or {})}
    try:
        return ReleaseConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}", path=config_path) from e
