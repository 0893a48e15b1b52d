"""Release coordinator: discover → collect changes → plan → write.

This module owns the per-invocation state (workspace, dependency graph,
git access, configuration) and composes the pure core:

1. Discover the workspace and build the dependency graph
2. Read commits since the last release and attribute them to packages
3. Plan version bumps
4. Optionally write manifests, the branch changeset and changelogs

Git and registry failures never abort a command; they are downgraded to
plan warnings and the run continues with less information.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .changelog import ChangelogRenderer, normalize_remote_url, write_changelog
from .changes import PackageCommits, attribute_commits, changed_packages
from .changesets import (
    Changeset,
    ChangesetStore,
    Clock,
    apply_plan_to_changeset,
    changeset_from_plan,
    utc_now,
)
from .commits import CommitParser, ParsedCommit
from .config import ReleaseConfig, load_config
from .errors import CancelledError, GitUnavailableError, WorkspaceInconsistentError
from .git import GitFacade, GitRepository
from .graph import DependencyGraph
from .manifest import write_package
from .models import VersionChange
from .planner import (
    Change,
    ChangeType,
    ConventionalStrategy,
    IndependentStrategy,
    Plan,
    PlanWarning,
    Strategy,
    changes_from_commits,
    plan_release,
)
from .registry import CachedRegistry, Registry
from .shell import info, step
from .versions import Snapshot, resolve_version
from .workspace import Workspace

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation checked between coarse steps."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, stage: str) -> None:
        if self._event.is_set():
            raise CancelledError(f"Cancelled after {stage}")


@dataclass
class ReleaseContext:
    """Everything one command invocation works with."""

    root: Path
    config: ReleaseConfig
    workspace: Workspace
    graph: DependencyGraph
    git: GitFacade | None = None
    registry: CachedRegistry | None = None
    token: CancellationToken = field(default_factory=CancellationToken)
    clock: Clock = utc_now
    parser: CommitParser = field(default_factory=CommitParser)

    def changeset_store(self) -> ChangesetStore:
        return ChangesetStore.from_config(
            self.config, self.root, known_packages=self.workspace.names(), clock=self.clock
        )

    def repo_url(self) -> str | None:
        if self.config.repo_url:
            return self.config.repo_url
        if self.git is None:
            return None
        return normalize_remote_url(self.git.remote_url())


def load_context(
    root: Path,
    *,
    overrides: Mapping[str, object] | None = None,
    git: GitFacade | None = None,
    registry: Registry | None = None,
    token: CancellationToken | None = None,
    clock: Clock = utc_now,
) -> ReleaseContext:
    """Discover the workspace at ``root`` and load its configuration."""
    step("Discovering workspace packages")
    root = Path(root).resolve()
    config = load_config(root, dict(overrides or {}))
    workspace = Workspace.discover(root)
    graph = DependencyGraph.from_workspace(workspace)

    for name in graph.topological_order():
        pkg = graph.package(name)
        deps = graph.dependencies(name)
        suffix = f" → [{', '.join(deps)}]" if deps else ""
        info(f"{name} {pkg.version} ({pkg.path}){suffix}")

    ctx = ReleaseContext(
        root=root,
        config=config,
        workspace=workspace,
        graph=graph,
        git=git if git is not None else GitRepository(root),
        registry=CachedRegistry(registry) if registry is not None else None,
        token=token or CancellationToken(),
        clock=clock,
    )
    ctx.token.check("discovery")
    return ctx


def find_last_tag(ctx: ReleaseContext) -> str | None:
    """Most recent tag matching the configured pattern, if git can tell."""
    if ctx.git is None:
        return None
    try:
        tag = ctx.git.get_last_tag_matching(ctx.config.tag_pattern)
    except GitUnavailableError as e:
        logger.warning("Cannot list tags: %s", e)
        return None
    return tag.name if tag else None


@dataclass
class CollectedChanges:
    """Changes found in git history, per package."""

    changes: list[Change] = field(default_factory=list)
    commits: dict[str, PackageCommits] = field(default_factory=dict)
    warnings: list[PlanWarning] = field(default_factory=list)

    def commit_shas(self) -> list[str]:
        seen: dict[str, None] = {}
        for entry in self.commits.values():
            for commit in entry.commits:
                seen.setdefault(commit.sha, None)
        return list(seen)


def _everything_changed(ctx: ReleaseContext, reason: str) -> CollectedChanges:
    return CollectedChanges(
        changes=[
            Change(package=name, type=ChangeType.OTHER, description=reason)
            for name in sorted(ctx.workspace.names())
        ],
        warnings=[PlanWarning(code="git_unavailable", detail=reason)],
    )


def collect_changes(
    ctx: ReleaseContext, from_ref: str | None = None, to_ref: str = "HEAD"
) -> CollectedChanges:
    """Read commits in ``from_ref..to_ref`` and turn them into changes.

    Defaults ``from_ref`` to the last release tag. When history cannot be
    read every package is treated as changed.
    """
    step("Collecting changes")
    if ctx.git is None:
        return _everything_changed(ctx, "git is not available")

    from_ref = from_ref or find_last_tag(ctx)
    info(f"since {from_ref or '<beginning of history>'}")
    try:
        commits = ctx.git.commits_between(from_ref, to_ref)
        attributed = attribute_commits(commits, ctx.git, ctx.workspace, ctx.parser)
    except GitUnavailableError as e:
        logger.warning("Git history unavailable: %s", e)
        return _everything_changed(ctx, str(e))

    result = CollectedChanges(commits=attributed)
    for name, entry in attributed.items():
        result.changes.extend(changes_from_commits(name, entry.commits, ctx.config))
        info(f"{name}: {len(entry.commits)} commit(s)")

    reported: set[str] = set()
    for entry in attributed.values():
        for commit in entry.commits:
            if not commit.is_conventional and commit.sha not in reported:
                reported.add(commit.sha)
                result.warnings.append(
                    PlanWarning(
                        code="non_conventional_commit",
                        detail=f"{commit.short_sha}: {commit.description}",
                    )
                )
    ctx.token.check("commit parsing")
    return result


def build_plan(
    ctx: ReleaseContext,
    strategy: Strategy,
    *,
    harmonize_cycles: bool | None = None,
    changes: Iterable[Change] | None = None,
    collected: CollectedChanges | None = None,
    from_ref: str | None = None,
) -> Plan:
    """Plan a release for the workspace.

    Independent and conventional strategies read changes from git unless
    ``changes`` is given; unified and manual strategies ignore history.
    History starts at ``from_ref``, else the conventional strategy's own
    ``from_ref``, else the last release tag.
    """
    warnings: list[PlanWarning] = []
    change_list: list[Change] = []
    if isinstance(strategy, IndependentStrategy | ConventionalStrategy):
        if changes is not None:
            change_list = list(changes)
        else:
            if collected is None:
                if from_ref is None and isinstance(strategy, ConventionalStrategy):
                    from_ref = strategy.from_ref
                collected = collect_changes(ctx, from_ref)
            change_list = collected.changes
            warnings.extend(collected.warnings)

    published = {}
    if ctx.registry is not None:
        published = ctx.registry.published_versions(ctx.graph.nodes)

    step("Planning versions")
    plan = plan_release(
        ctx.graph,
        change_list,
        strategy,
        harmonize_cycles=(
            ctx.config.harmonize_cycles if harmonize_cycles is None else harmonize_cycles
        ),
        dependency_bumps=ctx.config.dependency_bumps,
        conflicts=ctx.graph.find_conflicts(published),
        warnings=warnings,
    )
    for suggestion in plan.suggestions:
        info(f"{suggestion.package}: {suggestion.from_version} → {suggestion.to_version}")
    ctx.token.check("planning")
    return plan


def snapshot_plan(ctx: ReleaseContext, plan: Plan) -> Plan:
    """Rewrite targets as snapshot versions when off a release branch."""
    if ctx.git is None:
        return plan
    try:
        branch = ctx.git.current_branch()
        sha = ctx.git.current_sha()
    except GitUnavailableError as e:
        logger.warning("Cannot resolve snapshot versions: %s", e)
        return plan.model_copy(
            update={"warnings": [*plan.warnings, PlanWarning(code="git_unavailable", detail=str(e))]}
        )

    suggestions = []
    for suggestion in plan.suggestions:
        resolved = resolve_version(
            suggestion.to_version,
            branch=branch,
            commit=sha,
            release_branches=ctx.config.release_branches,
            allow_snapshot_on_main=ctx.config.allow_snapshot_on_main,
            hash_length=ctx.config.snapshot_hash_length,
        )
        if isinstance(resolved, Snapshot):
            suggestion = suggestion.model_copy(update={"to_version": str(resolved)})
        suggestions.append(suggestion)
    return plan.model_copy(update={"suggestions": suggestions})


def apply_plan(
    workspace: Workspace, plan: Plan, token: CancellationToken | None = None
) -> dict[str, VersionChange]:
    """Write planned versions and updated requirements to every manifest.

    Any package declaring a dependency on a bumped package gets its
    specifier rewritten, even when it is not itself in the plan.
    """
    step("Updating manifests")
    targets = {s.package: s.to_version for s in plan.suggestions}
    order = plan.packages() + sorted(workspace.names() - set(targets))
    applied: dict[str, VersionChange] = {}
    for name in order:
        pkg = workspace.get(name)
        if pkg is None:
            continue
        requirements: dict[str, str] = {}
        for dep in pkg.dependencies:
            if dep.name not in targets or dep.name == name:
                continue
            new_spec = dep.parsed().rewrite(targets[dep.name])
            if new_spec != dep.requirement:
                requirements[dep.name] = new_spec
        new_version = targets.get(name)
        if new_version is None and not requirements:
            continue
        if token is not None:
            token.check(f"writing {name}")
        write_package(workspace.package_dir(pkg), new_version, requirements)
        applied[name] = VersionChange(
            old=pkg.version, new=new_version or pkg.version, requirements=requirements
        )
        info(f"{name}: {pkg.version} → {new_version or pkg.version}")
    return applied


@dataclass
class AffectedReport:
    """Packages touched directly, and everything that depends on them."""

    changed: list[str]
    affected: list[str]
    complete: bool = True


def affected_packages(
    ctx: ReleaseContext, from_ref: str | None = None, to_ref: str = "HEAD"
) -> AffectedReport:
    """Directly changed packages plus their reverse-dependency closure.

    Without a readable history every package is reported as affected and
    ``complete`` is False.
    """
    step("Detecting affected packages")
    from_ref = from_ref or find_last_tag(ctx)
    changed: dict[str, list[str]] | None = None
    if ctx.git is not None and from_ref is not None:
        changed = changed_packages(ctx.git, ctx.workspace, from_ref, to_ref)
    if changed is None:
        everything = ctx.graph.topological_order()
        return AffectedReport(changed=everything, affected=everything, complete=False)

    for name in changed:
        info(f"{name}: changed")
    closure = ctx.graph.affected(changed)
    return AffectedReport(
        changed=sorted(changed),
        affected=ctx.graph.topological_order(closure),
    )


def current_branch(ctx: ReleaseContext) -> str:
    if ctx.git is None:
        raise GitUnavailableError("git is not available to determine the branch")
    return ctx.git.current_branch()


def record_changeset(
    ctx: ReleaseContext,
    plan: Plan,
    collected: CollectedChanges | None = None,
    *,
    branch: str | None = None,
    author: str = "",
    target_environments: Iterable[str] = (),
) -> Changeset:
    """Create or refresh the changeset of ``branch`` from ``plan``."""
    step("Recording changeset")
    branch = branch or current_branch(ctx)
    store = ctx.changeset_store()
    collected = collected or CollectedChanges()
    ctx.token.check(f"changeset for {branch}")

    if store.exists(branch):
        existing = store.load(branch)
        commits = list(dict.fromkeys([*existing.commits, *collected.commit_shas()]))
        merged = apply_plan_to_changeset(existing, plan).model_copy(update={"commits": commits})
        return store.update(merged)

    draft = changeset_from_plan(
        branch,
        author,
        plan,
        changes=collected.changes,
        commits=collected.commit_shas(),
        target_environments=target_environments,
    )
    created = store.create(
        branch,
        author,
        draft.target_environments,
        packages=draft.packages,
        commits=draft.commits,
    )
    return created


def render_changelogs(
    ctx: ReleaseContext,
    plan: Plan,
    collected: CollectedChanges,
    *,
    dry_run: bool = False,
) -> dict[str, str]:
    """Render (and unless ``dry_run`` write) a changelog block per package.

    Returns:
        ``{package: rendered block}`` for packages with something to list.
    """
    step("Writing changelogs")
    renderer = ChangelogRenderer(ctx.config, repo_url=ctx.repo_url())
    blocks: dict[str, str] = {}
    for suggestion in plan.suggestions:
        entry = collected.commits.get(suggestion.package)
        commits: list[ParsedCommit] = entry.commits if entry else []
        block = renderer.render(suggestion.to_version, commits, package=suggestion.package)
        if not block:
            continue
        blocks[suggestion.package] = block
        if dry_run:
            continue
        ctx.token.check(f"changelog for {suggestion.package}")
        pkg = ctx.workspace.get(suggestion.package)
        if pkg is not None:
            path = ctx.workspace.package_dir(pkg) / ctx.config.changelog_path
            write_changelog(path, block)
            info(f"{suggestion.package}: {path}")
    return blocks


def package_changelog(
    ctx: ReleaseContext,
    version: str,
    *,
    package: str | None = None,
    from_ref: str | None = None,
    dry_run: bool = False,
) -> str:
    """Render one changelog block for ``package`` (or the whole repository).

    Returns:
        The rendered block; empty when there were no commits.
    """
    if ctx.git is None:
        raise GitUnavailableError("git is not available to read history")
    from_ref = from_ref or find_last_tag(ctx)
    commits = ctx.git.commits_between(from_ref, "HEAD")
    if package is not None:
        pkg = ctx.workspace.get(package)
        if pkg is None:
            raise WorkspaceInconsistentError(f"Unknown package {package!r}")
        attributed = attribute_commits(commits, ctx.git, ctx.workspace, ctx.parser)
        entry = attributed.get(package)
        parsed: list[ParsedCommit] = entry.commits if entry else []
        path = ctx.workspace.package_dir(pkg) / ctx.config.changelog_path
    else:
        parsed = ctx.parser.parse_all(commits)
        path = ctx.root / ctx.config.changelog_path
    ctx.token.check("commit parsing")

    renderer = ChangelogRenderer(ctx.config, repo_url=ctx.repo_url())
    block = renderer.render(version, parsed, package=package)
    if block and not dry_run:
        ctx.token.check("changelog")
        write_changelog(path, block)
    return block
