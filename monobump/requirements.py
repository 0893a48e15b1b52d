"""Version requirement parsing.

Dependency specifiers in package.json come in many shapes: npm semver
ranges (``^1.2.3``, ``~1.2``, ``1.x``, ``>=1 <2``, ``1.0.0 - 2.0.0``,
``a || b``), workspace protocols (``workspace:^``), local paths
(``file:../x``), git and GitHub references, npm aliases
(``npm:name@^1``), JSR packages (``jsr:@scope/pkg@^1``), tarball URLs
and dist-tags (``latest``). Any other ``<protocol>:`` specifier
(``catalog:``, ``patch:``, ``exec:``) is kept as is.

Only the semver part is evaluated. Everything else is opaque: it accepts
any version of an internal package and never conflicts for an external
one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

import semver

from .errors import InvalidRequirementError
from .versions import parse_version

_PARTIAL_RE = re.compile(
    r"^[v=]*(?P<major>\d+|[xX*])"
    r"(?:\.(?P<minor>\d+|[xX*]))?"
    r"(?:\.(?P<patch>\d+|[xX*]))?"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?"
    r"(?:\+(?P<build>[0-9A-Za-z.-]+))?$"
)
_COMPARATOR_RE = re.compile(r"^(?P<op><=|>=|<|>|=|\^|~>|~)?\s*(?P<version>\S+)$")
_HYPHEN_RE = re.compile(r"^\s*(?P<low>\S+)\s+-\s+(?P<high>\S+)\s*$")
_GITHUB_SHORTHAND_RE = re.compile(r"^[\w.-]+/[\w.-]+(?:#.+)?$")
_TAG_RE = re.compile(r"^[A-Za-z][\w.-]*$")
_PROTOCOL_RE = re.compile(r"^[A-Za-z][\w+.-]*:")


class RequirementKind(str, Enum):
    """How a dependency specifier resolves."""

    SEMVER = "semver"
    WORKSPACE = "workspace"
    FILE = "file"
    LINK = "link"
    PORTAL = "portal"
    GIT = "git"
    GITHUB = "github"
    NPM_ALIAS = "npm"
    JSR = "jsr"
    URL = "url"
    TAG = "tag"
    OTHER = "other"

    @property
    def is_workspace_only(self) -> bool:
        return self is RequirementKind.WORKSPACE

    @property
    def is_local(self) -> bool:
        return self in (RequirementKind.FILE, RequirementKind.LINK, RequirementKind.PORTAL)


@dataclass(frozen=True)
class _Partial:
    major: int | None
    minor: int | None
    patch: int | None
    pre: str | None = None

    @property
    def is_any(self) -> bool:
        return self.major is None

    def floor(self) -> semver.Version:
        return semver.Version(
            self.major or 0, self.minor or 0, self.patch or 0, prerelease=self.pre
        )


def _parse_partial(text: str) -> _Partial:
    match = _PARTIAL_RE.match(text)
    if not match:
        raise InvalidRequirementError(text, "not a version")

    def num(group: str) -> int | None:
        value = match.group(group)
        if value is None or value in ("x", "X", "*"):
            return None
        return int(value)

    major, minor, patch = num("major"), num("minor"), num("patch")
    # "1.x.3" is treated as "1.x"
    if major is None:
        minor = patch = None
    elif minor is None:
        patch = None
    return _Partial(major, minor, patch, match.group("pre"))


def _upper(major: int, minor: int = 0, patch: int = 0) -> semver.Version:
    """Exclusive upper bound that also excludes prereleases of the bound."""
    return semver.Version(major, minor, patch, prerelease="0")


@dataclass(frozen=True)
class Comparator:
    op: str
    version: semver.Version

    def test(self, version: semver.Version) -> bool:
        cmp = version.compare(self.version)
        if self.op == ">=":
            return cmp >= 0
        if self.op == ">":
            return cmp > 0
        if self.op == "<=":
            return cmp <= 0
        if self.op == "<":
            return cmp < 0
        return cmp == 0

    def __str__(self) -> str:
        return f"{self.op}{self.version}"


def _any() -> list[Comparator]:
    return [Comparator(">=", semver.Version(0, 0, 0))]


def _desugar_xrange(p: _Partial) -> list[Comparator]:
    if p.is_any:
        return _any()
    if p.minor is None:
        return [Comparator(">=", p.floor()), Comparator("<", _upper(p.major + 1))]
    if p.patch is None:
        return [
            Comparator(">=", p.floor()),
            Comparator("<", _upper(p.major, p.minor + 1)),
        ]
    return [Comparator("=", p.floor())]


def _desugar_tilde(p: _Partial) -> list[Comparator]:
    if p.is_any:
        return _any()
    if p.minor is None:
        return [Comparator(">=", p.floor()), Comparator("<", _upper(p.major + 1))]
    return [Comparator(">=", p.floor()), Comparator("<", _upper(p.major, p.minor + 1))]


def _desugar_caret(p: _Partial) -> list[Comparator]:
    if p.is_any:
        return _any()
    floor = p.floor()
    if p.minor is None:
        return [Comparator(">=", floor), Comparator("<", _upper(p.major + 1))]
    if p.major > 0:
        return [Comparator(">=", floor), Comparator("<", _upper(p.major + 1))]
    if p.patch is None:
        if p.minor == 0:
            return [Comparator(">=", floor), Comparator("<", _upper(0, 1))]
        return [Comparator(">=", floor), Comparator("<", _upper(0, p.minor + 1))]
    if p.minor > 0:
        return [Comparator(">=", floor), Comparator("<", _upper(0, p.minor + 1))]
    return [Comparator(">=", floor), Comparator("<", _upper(0, 0, p.patch + 1))]


def _desugar_operator(op: str, p: _Partial) -> list[Comparator]:
    if p.is_any:
        # ">*" and "<*" match nothing; everything else matches anything
        if op in (">", "<"):
            return [Comparator("<", semver.Version(0, 0, 0, prerelease="0"))]
        return _any()
    if op == ">":
        if p.minor is None:
            return [Comparator(">=", semver.Version(p.major + 1, 0, 0))]
        if p.patch is None:
            return [Comparator(">=", semver.Version(p.major, p.minor + 1, 0))]
        return [Comparator(">", p.floor())]
    if op == ">=":
        return [Comparator(">=", p.floor())]
    if op == "<":
        if p.patch is None:
            return [Comparator("<", semver.Version(p.major, p.minor or 0, 0, prerelease="0"))]
        return [Comparator("<", p.floor())]
    if op == "<=":
        if p.minor is None:
            return [Comparator("<", _upper(p.major + 1))]
        if p.patch is None:
            return [Comparator("<", _upper(p.major, p.minor + 1))]
        return [Comparator("<=", p.floor())]
    return _desugar_xrange(p)


def _desugar_hyphen(low: _Partial, high: _Partial) -> list[Comparator]:
    comparators = [] if low.is_any else [Comparator(">=", low.floor())]
    if high.is_any:
        return comparators or _any()
    if high.minor is None:
        comparators.append(Comparator("<", _upper(high.major + 1)))
    elif high.patch is None:
        comparators.append(Comparator("<", _upper(high.major, high.minor + 1)))
    else:
        comparators.append(Comparator("<=", high.floor()))
    return comparators


def _parse_comparator_set(text: str) -> list[Comparator]:
    text = text.strip()
    if text in ("", "*", "x", "X"):
        return _any()
    hyphen = _HYPHEN_RE.match(text)
    if hyphen:
        return _desugar_hyphen(
            _parse_partial(hyphen.group("low")), _parse_partial(hyphen.group("high"))
        )

    # Allow a space between operator and version (">= 1.2.0")
    tokens = re.sub(r"(<=|>=|<|>|=|\^|~>|~)\s+", r"\1", text).split()
    comparators: list[Comparator] = []
    for token in tokens:
        match = _COMPARATOR_RE.match(token)
        if not match:
            raise InvalidRequirementError(text)
        op = match.group("op") or ""
        partial = _parse_partial(match.group("version"))
        if op == "^":
            comparators.extend(_desugar_caret(partial))
        elif op in ("~", "~>"):
            comparators.extend(_desugar_tilde(partial))
        elif op in ("", "="):
            comparators.extend(_desugar_xrange(partial))
        else:
            comparators.extend(_desugar_operator(op, partial))
    return comparators


@dataclass(frozen=True)
class Range:
    """A union (``||``) of intersections of comparators."""

    raw: str
    sets: tuple[tuple[Comparator, ...], ...]

    @classmethod
    def parse(cls, text: str) -> Range:
        sets = tuple(tuple(_parse_comparator_set(part)) for part in text.split("||"))
        return cls(raw=text.strip(), sets=sets)

    def test(self, version: semver.Version) -> bool:
        return any(_test_set(comparators, version) for comparators in self.sets)

    def __str__(self) -> str:
        return " || ".join(" ".join(str(c) for c in s) for s in self.sets)


def _test_set(comparators: tuple[Comparator, ...], version: semver.Version) -> bool:
    if not all(c.test(version) for c in comparators):
        return False
    if version.prerelease is None:
        return True
    # A prerelease only matches when a comparator opts into the same tuple
    return any(
        c.version.prerelease is not None
        and (c.version.major, c.version.minor, c.version.patch)
        == (version.major, version.minor, version.patch)
        for c in comparators
    )


@dataclass(frozen=True)
class VersionRequirement:
    """A parsed dependency specifier.

    Attributes:
        raw: The specifier exactly as declared in the manifest.
        kind: Which protocol the specifier uses.
        range: The semver range to evaluate, if the specifier carries one
            (plain ranges, ``workspace:^1.2.0``, ``npm:x@^1``, ``jsr:@s/x@^1``).
        alias: Target package name for ``npm:`` and ``jsr:`` specifiers.
        ref: Git ref / branch for git and GitHub specifiers.
    """

    raw: str
    kind: RequirementKind
    range: Range | None = None
    alias: str | None = None
    ref: str | None = None
    operator: str = field(default="", compare=False)

    @classmethod
    def parse(cls, spec: str) -> VersionRequirement:
        """Classify and parse a dependency specifier.

        Raises:
            InvalidRequirementError: If a semver range cannot be parsed.
        """
        raw = spec.strip()
        if raw.startswith("workspace:"):
            inner = raw[len("workspace:") :]
            if inner in ("", "*", "^", "~"):
                return cls(raw, RequirementKind.WORKSPACE, operator=inner or "*")
            return cls(
                raw,
                RequirementKind.WORKSPACE,
                range=Range.parse(inner),
                operator=_leading_operator(inner),
            )
        for prefix, kind in (
            ("file:", RequirementKind.FILE),
            ("link:", RequirementKind.LINK),
            ("portal:", RequirementKind.PORTAL),
        ):
            if raw.startswith(prefix):
                return cls(raw, kind)
        if raw.startswith("npm:"):
            name, inner = _split_alias(raw[len("npm:") :])
            return cls(
                raw,
                RequirementKind.NPM_ALIAS,
                range=Range.parse(inner) if inner else None,
                alias=name,
                operator=_leading_operator(inner),
            )
        if raw.startswith("jsr:"):
            name, inner = _split_alias(raw[len("jsr:") :])
            return cls(
                raw,
                RequirementKind.JSR,
                range=Range.parse(inner) if inner else None,
                alias=name,
                operator=_leading_operator(inner),
            )
        if raw.startswith(("git+", "git://", "git@")) or raw.endswith(".git"):
            return cls(raw, RequirementKind.GIT, ref=_fragment(raw))
        if raw.startswith(("github:", "gitlab:", "bitbucket:")) or _GITHUB_SHORTHAND_RE.match(
            raw
        ):
            return cls(raw, RequirementKind.GITHUB, ref=_fragment(raw))
        if raw.startswith(("http://", "https://")):
            return cls(raw, RequirementKind.URL)
        if _PROTOCOL_RE.match(raw):
            return cls(raw, RequirementKind.OTHER)
        if _TAG_RE.match(raw) and not _PARTIAL_RE.match(raw):
            return cls(raw, RequirementKind.TAG)
        return cls(
            raw,
            RequirementKind.SEMVER,
            range=Range.parse(raw),
            operator=_leading_operator(raw),
        )

    @property
    def is_opaque(self) -> bool:
        """True when the specifier carries no evaluable semver range."""
        return self.range is None

    def satisfied_by(self, version: semver.Version | str) -> bool:
        """Check whether ``version`` satisfies this requirement.

        Opaque specifiers (workspace shorthands, paths, git, URLs, tags)
        accept every version.
        """
        if self.range is None:
            return True
        if isinstance(version, str):
            version = parse_version(version)
        return self.range.test(version)

    def check_context(self, *, monorepo: bool) -> None:
        """Reject workspace protocols outside a monorepo."""
        if self.kind.is_workspace_only and not monorepo:
            raise InvalidRequirementError(
                self.raw, "workspace protocol is only valid inside a monorepo"
            )

    def rewrite(self, new_version: str) -> str:
        """Return the specifier updated to accept ``new_version``.

        The declared operator is preserved (``^1.0.0`` → ``^2.0.0``,
        ``~1.0.0`` → ``~2.0.0``, ``1.0.0`` → ``2.0.0``). Workspace
        shorthands, wildcards, tags and non-registry specifiers are
        returned unchanged. Compound ranges collapse to a caret range.
        """
        if self.range is None or self.kind not in (
            RequirementKind.SEMVER,
            RequirementKind.WORKSPACE,
            RequirementKind.NPM_ALIAS,
            RequirementKind.JSR,
        ):
            return self.raw
        inner = self.range.raw
        if inner in ("", "*", "x", "X"):
            return self.raw
        if _is_simple(inner) and not _is_partial(inner):
            new_inner = f"{self.operator}{new_version}"
        else:
            new_inner = f"^{new_version}"
        if self.kind is RequirementKind.WORKSPACE:
            return f"workspace:{new_inner}"
        if self.kind is RequirementKind.NPM_ALIAS:
            return f"npm:{self.alias}@{new_inner}"
        if self.kind is RequirementKind.JSR:
            return f"jsr:{self.alias}@{new_inner}"
        return new_inner

    def __str__(self) -> str:
        return self.raw


def _leading_operator(text: str) -> str:
    match = re.match(r"^\s*(\^|~>|~|>=|<=|>|<|=)?", text)
    return match.group(1) or "" if match else ""


def _is_simple(text: str) -> bool:
    return "||" not in text and len(text.split()) == 1 and bool(
        _COMPARATOR_RE.match(text.strip())
    )


def _is_partial(text: str) -> bool:
    """True for wildcard or short versions like "1.x" or "1.2"."""
    match = _PARTIAL_RE.match(text.lstrip("^~<>="))
    return match is None or match.group("patch") is None or bool(
        re.search(r"[xX*]", text)
    )


def _split_alias(text: str) -> tuple[str, str]:
    """Split ``name@range`` keeping the leading ``@`` of scoped names."""
    at = text.rfind("@")
    if at <= 0:
        return text, ""
    return text[:at], text[at + 1 :]


def _fragment(text: str) -> str | None:
    return text.split("#", 1)[1] if "#" in text else None


def parse_requirement(spec: str) -> VersionRequirement:
    return VersionRequirement.parse(spec)


def max_satisfying(
    candidates: list[semver.Version], requirements: list[VersionRequirement]
) -> semver.Version | None:
    """Highest candidate accepted by every requirement, or ``None``."""
    accepted = [v for v in candidates if all(r.satisfied_by(v) for r in requirements)]
    return max(accepted, default=None)
