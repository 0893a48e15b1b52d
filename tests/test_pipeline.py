"""Tests for monobump.pipeline."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest
from conftest import FakeGit, FrozenClock

from monobump.errors import (
    CancelledError,
    GitUnavailableError,
    InvalidBranchError,
    NoChangesError,
    WorkspaceInconsistentError,
)
from monobump.pipeline import (
    CancellationToken,
    ReleaseContext,
    affected_packages,
    apply_plan,
    build_plan,
    collect_changes,
    find_last_tag,
    load_context,
    package_changelog,
    record_changeset,
    render_changelogs,
    snapshot_plan,
)
from monobump.planner import (
    Change,
    ChangeType,
    ConventionalStrategy,
    IndependentStrategy,
    ManualStrategy,
    Plan,
    ReasonKind,
    UnifiedStrategy,
    VersionSuggestion,
)
from monobump.registry import StaticRegistry
from monobump.versions import BumpKind


def _manifest(root: Path, name: str) -> dict:
    return json.loads((root / "packages" / name / "package.json").read_text())


@pytest.fixture
def history(fake_git: FakeGit) -> FakeGit:
    """A feature on a, a breaking fix on c and an unstructured commit on b."""
    fake_git.add_commit("feat: add parser", ["packages/a/index.js"])
    fake_git.add_commit("fix!: drop legacy api", ["packages/c/index.js"])
    fake_git.add_commit("wip", ["packages/b/index.js"])
    return fake_git


@pytest.fixture
def ctx(abc_workspace: Path, history: FakeGit, clock: FrozenClock) -> ReleaseContext:
    return load_context(abc_workspace, git=history, clock=clock)


class TestLoadContext:
    def test_discovers_workspace(self, ctx: ReleaseContext, abc_workspace: Path) -> None:
        """The context carries workspace, graph and default config."""
        assert ctx.root == abc_workspace.resolve()
        assert ctx.workspace.names() == {"a", "b", "c"}
        assert ctx.graph.dependencies("b") == ["a"]
        assert ctx.config.strategy == "independent"
        assert ctx.registry is None

    def test_overrides(self, abc_workspace: Path, fake_git: FakeGit) -> None:
        """Config overrides are applied when loading."""
        ctx = load_context(abc_workspace, overrides={"harmonize_cycles": False}, git=fake_git)
        assert not ctx.config.harmonize_cycles

    def test_cancelled_before_start(self, abc_workspace: Path, fake_git: FakeGit) -> None:
        """A cancelled token stops loading before discovery."""
        token = CancellationToken()
        token.cancel()
        with pytest.raises(CancelledError, match="discovery"):
            load_context(abc_workspace, git=fake_git, token=token)

    def test_repo_url_from_remote(self, ctx: ReleaseContext, history: FakeGit) -> None:
        """The repository URL is derived from the origin remote."""
        assert ctx.repo_url() is None
        history.remote = "git@github.com:acme/tools.git"
        assert ctx.repo_url() == "https://github.com/acme/tools"


class TestCollectChanges:
    def test_changes_per_package(self, ctx: ReleaseContext) -> None:
        """Commits become typed changes for the packages they touch."""
        collected = collect_changes(ctx)
        by_package = {c.package: c for c in collected.changes}
        assert by_package["a"].type is ChangeType.FEATURE
        assert by_package["c"].type is ChangeType.FIX
        assert by_package["c"].breaking
        assert by_package["b"].type is ChangeType.OTHER
        assert sorted(collected.commits) == ["a", "b", "c"]
        assert len(collected.commit_shas()) == 3

    def test_non_conventional_warning(self, ctx: ReleaseContext) -> None:
        """Unstructured commits produce a warning."""
        collected = collect_changes(ctx)
        (warning,) = collected.warnings
        assert warning.code == "non_conventional_commit"
        assert warning.detail.endswith(": wip")

    def test_since_last_tag(self, ctx: ReleaseContext, history: FakeGit) -> None:
        """Only commits after the last release tag are read."""
        history.tag("v1.0.0")
        history.add_commit("fix: later", ["packages/a/util.js"])
        assert find_last_tag(ctx) == "v1.0.0"
        collected = collect_changes(ctx)
        assert [(c.package, c.type) for c in collected.changes] == [("a", ChangeType.FIX)]

    def test_git_unavailable_marks_everything(self, ctx: ReleaseContext, history: FakeGit) -> None:
        """Without git every package gets an unknown change."""
        history.unavailable = True
        collected = collect_changes(ctx)
        assert [c.package for c in collected.changes] == ["a", "b", "c"]
        assert all(c.type is ChangeType.OTHER for c in collected.changes)
        assert [w.code for w in collected.warnings] == ["git_unavailable"]

    def test_unknown_from_ref(self, ctx: ReleaseContext) -> None:
        """An unknown ref is treated like missing git."""
        collected = collect_changes(ctx, from_ref="nope")
        assert [w.code for w in collected.warnings] == ["git_unavailable"]

    def test_files_outside_packages_ignored(self, abc_workspace: Path, fake_git: FakeGit) -> None:
        """Commits touching no package produce no change."""
        fake_git.add_commit("docs: readme", ["README.md"])
        ctx = load_context(abc_workspace, git=fake_git)
        assert collect_changes(ctx).changes == []

    def test_cancelled(self, ctx: ReleaseContext) -> None:
        """Collection honours the cancellation token."""
        ctx.token.cancel()
        with pytest.raises(CancelledError):
            collect_changes(ctx)


class TestBuildPlan:
    def test_independent_from_history(self, ctx: ReleaseContext) -> None:
        """The independent plan follows commit types and propagates to b."""
        plan = build_plan(ctx, IndependentStrategy())
        assert plan.packages() == ["a", "b", "c"]
        assert plan.get("a").to_version == "1.1.0"
        assert plan.get("c").to_version == "2.0.0"
        b = plan.get("b")
        assert b.to_version == "1.0.1"
        assert b.requirement_updates == {"a": "^1.1.0"}
        assert [w.code for w in plan.warnings] == ["non_conventional_commit"]

    def test_explicit_changes_skip_history(self, ctx: ReleaseContext, history: FakeGit) -> None:
        """Given changes are used as is and git is not read."""
        history.unavailable = True
        plan = build_plan(ctx, IndependentStrategy(), changes=[Change(package="c", type=ChangeType.FIX)])
        assert plan.packages() == ["c"]
        assert plan.warnings == []

    def test_conventional_from_ref(self, ctx: ReleaseContext, history: FakeGit) -> None:
        """The conventional strategy reads history from its own ref."""
        first = history.commits[0].sha
        plan = build_plan(ctx, ConventionalStrategy(from_ref=first))
        assert plan.get("a") is None
        assert plan.get("c").bump is BumpKind.MAJOR

    def test_independent_from_ref(self, ctx: ReleaseContext, history: FakeGit) -> None:
        """An explicit ref bounds history for the independent strategy too."""
        history.tag("v1.0.0")
        plan = build_plan(ctx, IndependentStrategy(), from_ref=history.commits[1].sha)
        assert plan.packages() == ["b"]

    def test_nothing_to_release(self, abc_workspace: Path, fake_git: FakeGit) -> None:
        """No commits means NoChangesError."""
        ctx = load_context(abc_workspace, git=fake_git)
        with pytest.raises(NoChangesError):
            build_plan(ctx, IndependentStrategy())

    def test_no_git_patches_everything(self, ctx: ReleaseContext, history: FakeGit) -> None:
        """Without git every package gets a patch."""
        history.unavailable = True
        plan = build_plan(ctx, IndependentStrategy())
        assert {s.package: s.to_version for s in plan} == {"a": "1.0.1", "b": "1.0.1", "c": "1.0.1"}
        assert "git_unavailable" in {w.code for w in plan.warnings}
        assert plan.get("a").reasons[0].kind is ReasonKind.OTHER

    def test_unified_ignores_history(self, ctx: ReleaseContext, history: FakeGit) -> None:
        """The unified strategy does not need git."""
        history.unavailable = True
        plan = build_plan(ctx, UnifiedStrategy(version="3.0.0"))
        assert {s.to_version for s in plan} == {"3.0.0"}
        assert plan.warnings == []

    def test_registry_versions_resolve_conflicts(
        self, make_workspace: Callable[..., Path], fake_git: FakeGit
    ) -> None:
        """Published versions can satisfy otherwise conflicting ranges."""
        root = make_workspace(
            {
                "a": {"version": "1.0.0"},
                "b": {"version": "1.0.0", "dependencies": {"a": "^2.0.0"}},
            }
        )
        manual = ManualStrategy(versions={"b": "1.1.0"})

        offline = build_plan(load_context(root, git=fake_git), manual)
        assert [w.code for w in offline.warnings] == ["version_conflict"]

        registry = StaticRegistry({"a": ["2.1.0"]})
        online = build_plan(load_context(root, git=fake_git, registry=registry), manual)
        assert online.warnings == []


class TestSnapshotPlan:
    def test_feature_branch(self, ctx: ReleaseContext, history: FakeGit) -> None:
        """Feature branches get snapshot versions carrying the short SHA."""
        plan = snapshot_plan(ctx, build_plan(ctx, IndependentStrategy()))
        short = history.commits[-1].sha[:7]
        assert plan.get("a").to_version == f"1.1.0-0.0-{short}"
        assert plan.get("a").from_version == "1.0.0"

    def test_release_branch(self, ctx: ReleaseContext, history: FakeGit) -> None:
        """Release branches keep the plain plan."""
        history.branch = "main"
        plan = build_plan(ctx, IndependentStrategy())
        assert snapshot_plan(ctx, plan) == plan

    def test_hash_length(self, abc_workspace: Path, history: FakeGit) -> None:
        """The SHA length follows the configuration."""
        ctx = load_context(abc_workspace, overrides={"snapshot_hash_length": 12}, git=history)
        plan = snapshot_plan(ctx, build_plan(ctx, IndependentStrategy()))
        assert plan.get("c").to_version == f"2.0.0-0.0-{history.commits[-1].sha[:12]}"

    def test_git_unavailable_keeps_plan(self, ctx: ReleaseContext, history: FakeGit) -> None:
        """Without git the plan is kept and a warning added."""
        plan = build_plan(ctx, IndependentStrategy())
        history.unavailable = True
        snapped = snapshot_plan(ctx, plan)
        assert snapped.suggestions == plan.suggestions
        assert snapped.warnings[-1].code == "git_unavailable"


class TestApplyPlan:
    def test_writes_versions_and_requirements(self, ctx: ReleaseContext, abc_workspace: Path) -> None:
        """Manifests get the new versions and rewritten ranges."""
        applied = apply_plan(ctx.workspace, build_plan(ctx, IndependentStrategy()))
        assert set(applied) == {"a", "b", "c"}
        assert _manifest(abc_workspace, "a")["version"] == "1.1.0"
        b = _manifest(abc_workspace, "b")
        assert b["version"] == "1.0.1"
        assert b["dependencies"] == {"a": "^1.1.0", "lodash": "^4.17.0"}

    def test_dependents_outside_plan(self, ctx: ReleaseContext, abc_workspace: Path) -> None:
        """Dependents outside the plan still get their ranges rewritten."""
        plan = Plan(
            suggestions=[
                VersionSuggestion(
                    package="a", from_version="1.0.0", to_version="2.0.0", bump=BumpKind.MAJOR
                )
            ]
        )
        applied = apply_plan(ctx.workspace, plan)
        assert applied["b"].old == applied["b"].new == "1.0.0"
        assert applied["b"].requirements == {"a": "^2.0.0"}
        assert _manifest(abc_workspace, "b")["dependencies"]["a"] == "^2.0.0"
        assert "c" not in applied

    def test_cancelled(self, ctx: ReleaseContext, abc_workspace: Path) -> None:
        """A cancelled apply writes nothing."""
        plan = build_plan(ctx, IndependentStrategy())
        token = CancellationToken()
        token.cancel()
        with pytest.raises(CancelledError):
            apply_plan(ctx.workspace, plan, token)
        assert _manifest(abc_workspace, "a")["version"] == "1.0.0"


class TestAffectedPackages:
    def test_reverse_closure(self, ctx: ReleaseContext, history: FakeGit) -> None:
        """Affected packages are the changed ones plus their dependents."""
        history.tag("v1.0.0")
        history.add_commit("fix: a", ["packages/a/index.js"])
        report = affected_packages(ctx)
        assert report.complete
        assert report.changed == ["a"]
        assert report.affected == ["a", "b"]

    def test_explicit_refs(self, ctx: ReleaseContext, history: FakeGit) -> None:
        """An explicit base ref limits the changed set."""
        report = affected_packages(ctx, from_ref=history.commits[1].sha)
        assert report.changed == ["b"]
        assert report.affected == ["b"]

    def test_incomplete_without_base(self, ctx: ReleaseContext) -> None:
        """Without a base every package is affected and the report is incomplete."""
        report = affected_packages(ctx)
        assert not report.complete
        assert report.affected == ["a", "b", "c"]

    def test_incomplete_when_git_fails(self, ctx: ReleaseContext) -> None:
        """A git failure marks the report incomplete."""
        report = affected_packages(ctx, from_ref="missing")
        assert not report.complete
        assert report.changed == report.affected


class TestRecordChangeset:
    def test_create_then_update(self, ctx: ReleaseContext, history: FakeGit, clock: FrozenClock) -> None:
        """The first call creates the changeset, later ones merge into it."""
        collected = collect_changes(ctx)
        plan = build_plan(ctx, IndependentStrategy(), collected=collected)
        created = record_changeset(ctx, plan, collected, author="dev@example.com")
        assert created.branch == "feature/login"
        assert created.package_names() == ["a", "b", "c"]
        assert (ctx.root / "changesets" / "feature-login.json").is_file()

        clock.advance(minutes=1)
        sha = history.add_commit("fix: polish", ["packages/a/index.js"])
        collected = collect_changes(ctx)
        updated = record_changeset(ctx, build_plan(ctx, IndependentStrategy(), collected=collected), collected)
        assert updated.commits[-1] == sha
        assert len(updated.commits) == 4
        assert updated.created_at == created.created_at
        assert updated.updated_at > created.updated_at

    def test_release_branch_rejected(self, ctx: ReleaseContext, history: FakeGit) -> None:
        """Changesets cannot be recorded on release branches."""
        history.branch = "main"
        with pytest.raises(InvalidBranchError):
            record_changeset(ctx, build_plan(ctx, IndependentStrategy()))

    def test_branch_needs_git(self, ctx: ReleaseContext, history: FakeGit) -> None:
        """The branch comes from git unless given explicitly."""
        plan = build_plan(ctx, IndependentStrategy())
        history.unavailable = True
        with pytest.raises(GitUnavailableError):
            record_changeset(ctx, plan)
        assert record_changeset(ctx, plan, branch="feature/offline").branch == "feature/offline"


class TestChangelogs:
    def test_render_changelogs(self, ctx: ReleaseContext, abc_workspace: Path) -> None:
        """Every planned package gets a block merged into its changelog."""
        collected = collect_changes(ctx)
        plan = build_plan(ctx, IndependentStrategy(), collected=collected)
        blocks = render_changelogs(ctx, plan, collected)
        assert sorted(blocks) == ["a", "b", "c"]
        text = (abc_workspace / "packages" / "a" / "CHANGELOG.md").read_text()
        assert "## [1.1.0] - " in text
        assert "- add parser " in text

    def test_dry_run_writes_nothing(self, ctx: ReleaseContext, abc_workspace: Path) -> None:
        """Dry runs return the blocks without touching files."""
        collected = collect_changes(ctx)
        plan = build_plan(ctx, IndependentStrategy(), collected=collected)
        blocks = render_changelogs(ctx, plan, collected, dry_run=True)
        assert "### Features" in blocks["a"]
        assert not (abc_workspace / "packages" / "a" / "CHANGELOG.md").exists()

    def test_package_changelog(self, ctx: ReleaseContext, abc_workspace: Path) -> None:
        """A package changelog lists only that package's commits."""
        block = package_changelog(ctx, "2.0.0", package="c")
        assert block.startswith("## [2.0.0] - ")
        assert "drop legacy api" in block
        assert "add parser" not in block
        assert (abc_workspace / "packages" / "c" / "CHANGELOG.md").is_file()

    def test_root_changelog(self, ctx: ReleaseContext, abc_workspace: Path) -> None:
        """The root changelog lists every commit."""
        block = package_changelog(ctx, "5.0.0", dry_run=True)
        assert "add parser" in block
        assert "drop legacy api" in block
        assert not (abc_workspace / "CHANGELOG.md").exists()

    def test_unknown_package(self, ctx: ReleaseContext) -> None:
        """Unknown packages are rejected."""
        with pytest.raises(WorkspaceInconsistentError):
            package_changelog(ctx, "1.0.0", package="ghost")
