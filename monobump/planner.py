"""Version bump planning.

Turns per-package change intents into an ordered release plan:

1. Seed a bump per package from its changes (or from the target versions
   of the unified / manual strategies).
2. Propagate bumps to dependents until nothing changes.
3. Optionally harmonize dependency cycles so every member of a cycle gets
   the same bump.
4. Compute target versions, dependency requirement rewrites, and order the
   result topologically.

The planner is pure: it reads an in-memory :class:`DependencyGraph` and
never touches the disk or git.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .config import ReleaseConfig, default_dependency_bumps
from .errors import (
    DowngradeError,
    InvalidStrategyError,
    InvalidVersionError,
    NoChangesError,
    WorkspaceInconsistentError,
)
from .graph import Conflict, DependencyGraph
from .versions import BumpKind, apply_bump, bump_between, parse_version


class ChangeType(str, Enum):
    FEATURE = "feature"
    FIX = "fix"
    OTHER = "other"


class Change(BaseModel):
    """One intended change to a package, from a commit or entered by hand."""

    model_config = ConfigDict(frozen=True)

    package: str
    type: ChangeType = ChangeType.OTHER
    description: str = ""
    breaking: bool = False
    commit: str | None = None


class ReasonKind(str, Enum):
    FEATURE = "feature"
    FIX = "fix"
    OTHER = "other"
    BREAKING = "breaking"
    DEPENDENCY = "dependency"
    MANUAL = "manual"
    CYCLE = "cycle"


class BumpReason(BaseModel):
    """Why a package is in the plan.

    ``detail`` holds the change description for feature / fix / other /
    breaking reasons, the causing package for dependency updates, and the
    cycle peer for harmonization.
    """

    model_config = ConfigDict(frozen=True)

    kind: ReasonKind
    detail: str | None = None

    @classmethod
    def dependency_update(cls, cause: str) -> BumpReason:
        return cls(kind=ReasonKind.DEPENDENCY, detail=cause)

    @classmethod
    def cycle_harmonization(cls, peer: str) -> BumpReason:
        return cls(kind=ReasonKind.CYCLE, detail=peer)

    def to_dict(self) -> dict[str, str]:
        data = {"kind": self.kind.value}
        if self.detail is not None:
            data["detail"] = self.detail
        return data


# Strategies


class _PromotionFlags(BaseModel):
    major_if_breaking: bool = True
    minor_if_feature: bool = True
    patch_otherwise: bool = True


class IndependentStrategy(_PromotionFlags):
    kind: Literal["independent"] = "independent"


class ConventionalStrategy(_PromotionFlags):
    """Changes derived from conventional commits since ``from_ref``."""

    kind: Literal["conventional"] = "conventional"
    from_ref: str | None = None


class UnifiedStrategy(BaseModel):
    """Every package moves to the same version."""

    kind: Literal["unified"] = "unified"
    version: str


class ManualStrategy(BaseModel):
    """Explicit per-package target versions."""

    kind: Literal["manual"] = "manual"
    versions: dict[str, str]


Strategy = Annotated[
    IndependentStrategy | ConventionalStrategy | UnifiedStrategy | ManualStrategy,
    Field(discriminator="kind"),
]


class VersionSuggestion(BaseModel):
    """A planned version change for one package.

    Attributes:
        requirement_updates: For each internal dependency that is also in
            the plan, the rewritten specifier this package should declare.
    """

    package: str
    from_version: str
    to_version: str
    bump: BumpKind
    reasons: list[BumpReason] = Field(default_factory=list)
    cycle_group: list[str] | None = None
    requirement_updates: dict[str, str] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "package": self.package,
            "from": self.from_version,
            "to": self.to_version,
            "bump": self.bump.value,
            "reasons": [r.to_dict() for r in self.reasons],
        }
        if self.cycle_group is not None:
            data["cycle_group"] = list(self.cycle_group)
        if self.requirement_updates:
            data["requirement_updates"] = dict(self.requirement_updates)
        return data


class PlanWarning(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    detail: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "detail": self.detail}


class Plan(BaseModel):
    """Version suggestions in dependency order, plus non-fatal warnings."""

    suggestions: list[VersionSuggestion] = Field(default_factory=list)
    warnings: list[PlanWarning] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.suggestions)

    def __iter__(self):
        return iter(self.suggestions)

    @property
    def is_empty(self) -> bool:
        return not self.suggestions

    def packages(self) -> list[str]:
        return [s.package for s in self.suggestions]

    def get(self, package: str) -> VersionSuggestion | None:
        for suggestion in self.suggestions:
            if suggestion.package == package:
                return suggestion
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "suggestions": [s.to_dict() for s in self.suggestions],
            "warnings": [w.to_dict() for w in self.warnings],
        }

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


def conflict_warnings(conflicts: Iterable[Conflict]) -> list[PlanWarning]:
    return [PlanWarning(code="version_conflict", detail=c.describe()) for c in conflicts]


class _State:
    """Mutable bookkeeping while the plan is being computed."""

    def __init__(self) -> None:
        self.kind: dict[str, BumpKind] = {}
        self.reasons: dict[str, list[BumpReason]] = {}
        self.fixed: dict[str, str] = {}

    def get(self, name: str) -> BumpKind:
        return self.kind.get(name, BumpKind.NONE)

    def add_reason(self, name: str, reason: BumpReason) -> None:
        reasons = self.reasons.setdefault(name, [])
        if reason not in reasons:
            reasons.append(reason)

    def raise_to(self, name: str, kind: BumpKind, reason: BumpReason) -> bool:
        """Raise ``name`` to at least ``kind``; fixed versions never move."""
        if name in self.fixed or kind <= self.get(name):
            return False
        self.kind[name] = kind
        self.add_reason(name, reason)
        return True


def _parse_target(package: str, version: str) -> Any:
    try:
        return parse_version(version)
    except InvalidVersionError as e:
        raise InvalidStrategyError(f"Invalid target version {version!r} for {package}") from e


def _seed_targets(
    graph: DependencyGraph, state: _State, targets: Mapping[str, str], detail: str | None
) -> None:
    for name in sorted(targets):
        if name not in graph.nodes:
            raise InvalidStrategyError(f"Unknown package {name!r} in version map")
        current = parse_version(graph.package(name).version)
        target = _parse_target(name, targets[name])
        if target.compare(current) < 0:
            raise DowngradeError(name, str(current), str(target))
        kind = bump_between(current, target)
        if kind is BumpKind.NONE:
            continue
        state.kind[name] = kind
        state.fixed[name] = str(target)
        state.add_reason(name, BumpReason(kind=ReasonKind.MANUAL, detail=detail))


def _contribution(change: Change, flags: _PromotionFlags) -> tuple[BumpKind, BumpReason]:
    """Bump contributed by one change under the promotion flags.

    A breaking change without ``major_if_breaking`` goes through the same
    feature / patch checks as any other change of its type and keeps its
    breaking reason. A patch fallback is recorded as a fix, or as other.
    """
    description = change.description or None
    breaking = BumpReason(kind=ReasonKind.BREAKING, detail=description) if change.breaking else None
    if breaking and flags.major_if_breaking:
        return BumpKind.MAJOR, breaking

    if change.type is ChangeType.FEATURE and flags.minor_if_feature:
        return BumpKind.MINOR, breaking or BumpReason(kind=ReasonKind.FEATURE, detail=description)

    fallback = ReasonKind.FIX if change.type is ChangeType.FIX else ReasonKind.OTHER
    reason = breaking or BumpReason(kind=fallback, detail=description)
    if flags.patch_otherwise:
        return BumpKind.PATCH, reason
    return BumpKind.NONE, reason


def _seed_changes(
    graph: DependencyGraph, state: _State, changes: Iterable[Change], flags: _PromotionFlags
) -> None:
    for change in changes:
        kind, reason = _contribution(change, flags)
        if kind is BumpKind.NONE:
            continue
        if kind > state.get(change.package):
            state.kind[change.package] = kind
        state.add_reason(change.package, reason)


def _propagate(
    graph: DependencyGraph, state: _State, dependency_bumps: Mapping[BumpKind, BumpKind]
) -> bool:
    """Raise dependents of bumped packages until a fixpoint is reached.

    Returns True if any package changed.
    """
    changed_any = False
    queue = sorted(n for n, k in state.kind.items() if k > BumpKind.NONE)
    while queue:
        name = queue.pop(0)
        required = dependency_bumps.get(state.get(name), BumpKind.NONE)
        if required is BumpKind.NONE:
            continue
        for dependent in graph.dependents(name):
            if dependent == name:
                continue
            if state.raise_to(dependent, required, BumpReason.dependency_update(name)):
                changed_any = True
                queue.append(dependent)
    return changed_any


def _harmonize(graph: DependencyGraph, state: _State) -> tuple[bool, dict[str, list[str]]]:
    """Give every member of a bumped cycle the cycle's strongest bump."""
    changed_any = False
    groups: dict[str, list[str]] = {}
    for cycle in graph.cycles:
        kinds = {m: state.get(m) for m in cycle}
        strongest = max(kinds.values(), key=lambda k: k.rank)
        if strongest is BumpKind.NONE:
            continue
        peer = next(m for m in cycle if kinds[m] is strongest)
        for member in cycle:
            groups[member] = list(cycle)
            if state.raise_to(member, strongest, BumpReason.cycle_harmonization(peer)):
                changed_any = True
    return changed_any, groups


def plan_release(
    graph: DependencyGraph,
    changes: Iterable[Change] = (),
    strategy: Strategy | None = None,
    *,
    harmonize_cycles: bool = True,
    dependency_bumps: Mapping[BumpKind, BumpKind] | None = None,
    conflicts: Iterable[Conflict] = (),
    warnings: Iterable[PlanWarning] = (),
) -> Plan:
    """Compute the release plan.

    Args:
        graph: Dependency graph of the workspace snapshot.
        changes: Change intents (used by the independent and conventional
            strategies).
        strategy: How bumps are chosen. Defaults to independent with all
            promotions enabled.
        harmonize_cycles: Equalize bumps across dependency cycles.
        dependency_bumps: Bump given to dependents for each bump kind.
        conflicts: Requirement conflicts to report as warnings.
        warnings: Extra warnings to carry on the plan.

    Raises:
        NoChangesError: Nothing was requested, or no package ends up bumped.
        DowngradeError: A target version is lower than the current one.
        InvalidStrategyError: Unknown strategy, bad target version, or a
            version map naming an unknown package.
        WorkspaceInconsistentError: A change names an unknown package.
    """
    strategy = strategy or IndependentStrategy()
    dependency_bumps = dependency_bumps or default_dependency_bumps()
    changes = list(changes)
    state = _State()

    if isinstance(strategy, UnifiedStrategy):
        target = _parse_target("all packages", strategy.version)
        _seed_targets(
            graph,
            state,
            {name: str(target) for name in graph.nodes},
            detail=f"unified {target}",
        )
        if not graph.nodes:
            raise NoChangesError("Workspace has no packages")
    elif isinstance(strategy, ManualStrategy):
        if not strategy.versions:
            raise NoChangesError("No manual versions were given")
        _seed_targets(graph, state, strategy.versions, detail=None)
    elif isinstance(strategy, IndependentStrategy | ConventionalStrategy):
        unknown = sorted({c.package for c in changes} - graph.nodes)
        if unknown:
            raise WorkspaceInconsistentError(
                f"Changes reference unknown package(s): {', '.join(unknown)}"
            )
        if not changes:
            raise NoChangesError()
        _seed_changes(graph, state, changes, strategy)
    else:
        raise InvalidStrategyError(f"Unsupported strategy: {strategy!r}")

    groups: dict[str, list[str]] = {}
    # Harmonizing can raise cycle members, which then propagates further
    while True:
        _propagate(graph, state, dependency_bumps)
        if not harmonize_cycles:
            break
        harmonized, groups = _harmonize(graph, state)
        if not harmonized:
            break

    selected = {n for n, k in state.kind.items() if k > BumpKind.NONE}
    if not selected:
        raise NoChangesError("No package needs a new version")
    targets: dict[str, str] = {}
    for name in selected:
        if name in state.fixed:
            targets[name] = state.fixed[name]
        else:
            current = parse_version(graph.package(name).version)
            targets[name] = str(apply_bump(current, state.kind[name]))

    suggestions: list[VersionSuggestion] = []
    for name in graph.topological_order(selected):
        pkg = graph.package(name)
        current = parse_version(pkg.version)
        target = parse_version(targets[name])
        if target.compare(current) < 0:
            raise DowngradeError(name, pkg.version, targets[name])
        suggestions.append(
            VersionSuggestion(
                package=name,
                from_version=pkg.version,
                to_version=targets[name],
                bump=state.kind[name],
                reasons=state.reasons.get(name, []),
                cycle_group=groups.get(name),
                requirement_updates=_requirement_updates(graph, name, targets),
            )
        )

    plan_warnings = list(warnings) + conflict_warnings(conflicts)
    plan_warnings += [
        PlanWarning(code="self_dependency", detail=f"{name} depends on itself")
        for name in graph.self_loops
    ]
    return Plan(suggestions=suggestions, warnings=plan_warnings)


def _requirement_updates(
    graph: DependencyGraph, name: str, targets: Mapping[str, str]
) -> dict[str, str]:
    """Rewritten specifiers for ``name``'s dependencies that are being bumped."""
    updates: dict[str, str] = {}
    for dependency in graph.dependencies(name):
        if dependency not in targets or dependency == name:
            continue
        for dep in graph.package(name).requirements_on(dependency):
            new_spec = dep.parsed().rewrite(targets[dependency])
            if new_spec != dep.requirement:
                updates[dependency] = new_spec
    return updates


def changes_from_commits(
    package: str, commits: Iterable[Any], config: ReleaseConfig
) -> list[Change]:
    """Turn parsed commits attributed to ``package`` into change intents.

    Commit types whose configured bump is ``none`` produce no change unless
    the commit is breaking; types bumping major are treated as breaking.
    """
    result: list[Change] = []
    for commit in commits:
        rule = commit.classify(config)
        breaking = commit.breaking or rule.bump is BumpKind.MAJOR
        if rule.bump is BumpKind.NONE and not breaking:
            continue
        if rule.bump >= BumpKind.MINOR:
            change_type = ChangeType.FEATURE
        elif commit.type == "fix":
            change_type = ChangeType.FIX
        else:
            change_type = ChangeType.OTHER
        result.append(
            Change(
                package=package,
                type=change_type,
                description=commit.breaking_description if breaking else commit.description,
                breaking=breaking,
                commit=commit.sha or None,
            )
        )
    return result


def strategy_from_options(
    name: str,
    *,
    version: str | None = None,
    versions: Mapping[str, str] | None = None,
    from_ref: str | None = None,
    flags: Mapping[str, bool] | None = None,
) -> Strategy:
    """Build a strategy from CLI / config values.

    Raises:
        InvalidStrategyError: For unknown names or missing parameters.
    """
    flags = dict(flags or {})
    if name == "independent":
        return IndependentStrategy(**flags)
    if name == "conventional":
        return ConventionalStrategy(from_ref=from_ref, **flags)
    if name == "unified":
        if not version:
            raise InvalidStrategyError("The unified strategy needs a target version")
        return UnifiedStrategy(version=version)
    if name == "manual":
        if not versions:
            raise InvalidStrategyError("The manual strategy needs at least one name=version")
        return ManualStrategy(versions=dict(versions))
    raise InvalidStrategyError(f"Unknown strategy {name!r}")
