"""CLI entry point for monobump."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version
from pathlib import Path

from .changesets import ChangesetPackage, ReleaseInfo, utc_now
from .errors import InvalidStrategyError, MonobumpError
from .pipeline import (
    ReleaseContext,
    affected_packages,
    apply_plan,
    build_plan,
    current_branch,
    load_context,
    package_changelog,
    snapshot_plan,
)
from .planner import Plan, strategy_from_options
from .shell import fatal
from .versions import BumpKind

try:
    __version__ = pkg_version("monobump")
except PackageNotFoundError:
    __version__ = "0.0.0"


def _context(args: argparse.Namespace) -> ReleaseContext:
    return load_context(Path(args.root))


def _emit_json(data: object) -> None:
    print(json.dumps(data, indent=2))


def _parse_assignments(values: list[str] | None, sep: str, what: str) -> dict[str, str]:
    """Parse repeated ``name<sep>value`` options into a dict."""
    result: dict[str, str] = {}
    for value in values or []:
        name, found, rhs = value.rpartition(sep)
        if not found or not name or not rhs:
            raise InvalidStrategyError(f"Expected NAME{sep}{what}, got {value!r}")
        result[name] = rhs
    return result


def _print_plan(plan: Plan) -> None:
    if plan.is_empty:
        print("Nothing to release.")
    for s in plan.suggestions:
        reasons = ", ".join(
            f"{r.kind.value}({r.detail})" if r.detail else r.kind.value for r in s.reasons
        )
        cycle = f" [cycle: {', '.join(s.cycle_group)}]" if s.cycle_group else ""
        print(f"{s.package}: {s.from_version} → {s.to_version} ({s.bump.value}; {reasons}){cycle}")
    for w in plan.warnings:
        print(f"warning [{w.code}]: {w.detail}", file=sys.stderr)


def cmd_plan(args: argparse.Namespace) -> None:
    """Compute (and optionally apply) a version plan."""
    ctx = _context(args)
    manual = _parse_assignments(args.set, "=", "VERSION")
    name = args.strategy
    if name is None:
        if manual:
            name = "manual"
        elif args.version:
            name = "unified"
        else:
            name = ctx.config.strategy
    strategy = strategy_from_options(
        name,
        version=args.version,
        versions=manual,
        from_ref=args.from_ref,
        flags=ctx.config.independent.model_dump(),
    )
    harmonize = False if args.no_harmonize else None
    plan = build_plan(ctx, strategy, harmonize_cycles=harmonize, from_ref=args.from_ref)
    if args.snapshot:
        plan = snapshot_plan(ctx, plan)
    if args.write:
        apply_plan(ctx.workspace, plan, ctx.token)

    if args.json:
        print(plan.to_json())
    else:
        _print_plan(plan)


def _changeset_packages(values: list[str] | None) -> list[ChangesetPackage]:
    packages = []
    for name, bump in _parse_assignments(values, ":", "BUMP").items():
        try:
            kind = BumpKind(bump)
        except ValueError:
            raise InvalidStrategyError(f"Unknown bump {bump!r} for {name}") from None
        packages.append(ChangesetPackage(name=name, bump=kind))
    return packages


def _branch(args: argparse.Namespace, ctx: ReleaseContext) -> str:
    return args.branch or current_branch(ctx)


def cmd_changeset(args: argparse.Namespace) -> None:
    """Manage the changeset of a branch."""
    ctx = _context(args)
    store = ctx.changeset_store()
    action = args.action

    if action == "list":
        environment = args.env[0] if args.env else None
        records = store.list(package=args.package, status=args.status, environment=environment)
        if args.json:
            _emit_json([c.to_dict() for c in records])
            return
        for c in records:
            print(f"{c.branch} ({c.status}): {', '.join(c.package_names()) or '-'}")
        return

    if action == "history":
        records = store.history(package=args.package)
        if args.json:
            _emit_json([c.to_dict() for c in records])
            return
        for c in records:
            when = c.release.applied_at.isoformat() if c.release else "-"
            print(f"{c.branch} released {when}: {', '.join(c.package_names()) or '-'}")
        return

    branch = _branch(args, ctx)
    if action == "create":
        changeset = store.create(
            branch,
            args.author or os.environ.get("USER", ""),
            args.env or [],
            packages=_changeset_packages(args.package_bump),
            commits=args.commit or [],
        )
        print(f"✓ Created changeset for {branch}", file=sys.stderr)
    elif action == "show":
        changeset = store.load(branch)
    elif action == "update":
        changeset = store.load(branch)
        packages = {p.name: p for p in changeset.packages}
        for pkg in _changeset_packages(args.package_bump):
            if pkg.name in packages:
                pkg = packages[pkg.name].model_copy(update={"bump": pkg.bump})
            packages[pkg.name] = pkg
        changeset = changeset.model_copy(
            update={
                "packages": list(packages.values()),
                "commits": list(dict.fromkeys([*changeset.commits, *(args.commit or [])])),
                "target_environments": list(
                    dict.fromkeys([*changeset.target_environments, *(args.env or [])])
                ),
            }
        )
        changeset = store.update(changeset)
        print(f"✓ Updated changeset for {branch}", file=sys.stderr)
    elif action == "archive":
        changeset = store.load(branch)
        sha = ctx.git.current_sha() if ctx.git is not None else ""
        release = ReleaseInfo(
            applied_at=utc_now(),
            applied_by=args.author or os.environ.get("USER", ""),
            git_commit=sha,
            versions={p.name: p.to_version for p in changeset.packages if p.to_version},
        )
        store.validate(changeset, ready=True)
        path = store.archive(branch, release)
        print(f"✓ Archived changeset for {branch} to {path}")
        return
    elif action == "delete":
        store.delete(branch)
        print(f"✓ Deleted changeset for {branch}")
        return
    else:  # pragma: no cover - argparse restricts choices
        raise MonobumpError(f"Unknown changeset action {action!r}")

    if action == "show" or args.json:
        _emit_json(changeset.to_dict())


def cmd_changelog(args: argparse.Namespace) -> None:
    """Render a changelog block and merge it into CHANGELOG.md."""
    ctx = _context(args)
    block = package_changelog(
        ctx,
        args.version,
        package=args.package,
        from_ref=args.from_ref,
        dry_run=args.dry_run,
    )
    if not block:
        print("No commits to add to the changelog.", file=sys.stderr)
        return
    if args.dry_run:
        print(block)
    else:
        print(f"✓ Updated changelog for {args.package or 'repository'}")


def cmd_affected(args: argparse.Namespace) -> None:
    """List packages changed since a ref, and their dependents."""
    ctx = _context(args)
    report = affected_packages(ctx, args.from_ref, args.to_ref)
    if args.json:
        _emit_json(
            {"changed": report.changed, "affected": report.affected, "complete": report.complete}
        )
        return
    for name in report.affected:
        marker = "*" if name in report.changed else " "
        print(f"{marker} {name}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="monobump",
        description="Version planning, changesets and changelogs for JavaScript monorepos.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--root", default=".", help="Workspace root directory. (default: %(default)s)"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # plan subcommand
    plan_parser = subparsers.add_parser("plan", help="Compute the next versions.")
    plan_parser.add_argument(
        "--strategy",
        choices=["independent", "conventional", "unified", "manual"],
        default=None,
        help="Bump strategy. Defaults to the configured one.",
    )
    plan_parser.add_argument(
        "--version", dest="version", default=None, help="Target version for the unified strategy."
    )
    plan_parser.add_argument(
        "--set",
        action="append",
        metavar="NAME=VERSION",
        help="Explicit version for one package (repeatable; implies --strategy manual).",
    )
    plan_parser.add_argument("--from-ref", default=None, help="Read commits since this ref.")
    plan_parser.add_argument(
        "--no-harmonize", action="store_true", help="Do not equalize bumps across cycles."
    )
    plan_parser.add_argument("--json", action="store_true", help="Print the plan as JSON.")
    plan_parser.add_argument(
        "--write", action="store_true", help="Write new versions to package.json files."
    )
    plan_parser.add_argument(
        "--snapshot", action="store_true", help="Use snapshot versions off release branches."
    )
    plan_parser.set_defaults(func=cmd_plan)

    # changeset subcommand
    cs_parser = subparsers.add_parser("changeset", help="Manage branch changesets.")
    cs_parser.add_argument(
        "action", choices=["create", "show", "list", "update", "archive", "delete", "history"]
    )
    cs_parser.add_argument("--branch", default=None, help="Branch (default: current branch).")
    cs_parser.add_argument("--author", default=None, help="Author recorded on the changeset.")
    cs_parser.add_argument(
        "--env", action="append", help="Target environment (repeatable; filter for list)."
    )
    cs_parser.add_argument(
        "--bump",
        dest="package_bump",
        action="append",
        metavar="NAME:BUMP",
        help="Package and bump kind, e.g. auth:minor (repeatable).",
    )
    cs_parser.add_argument("--commit", action="append", help="Commit SHA to record (repeatable).")
    cs_parser.add_argument("--package", default=None, help="Filter list/history by package.")
    cs_parser.add_argument(
        "--status", choices=["draft", "ready", "released"], default=None, help="Filter list."
    )
    cs_parser.add_argument("--json", action="store_true", help="Print records as JSON.")
    cs_parser.set_defaults(func=cmd_changeset)

    # changelog subcommand
    cl_parser = subparsers.add_parser("changelog", help="Update CHANGELOG.md.")
    cl_parser.add_argument("--package", default=None, help="Package to render (default: root).")
    cl_parser.add_argument("--version", dest="version", required=True, help="Release version.")
    cl_parser.add_argument("--from-ref", default=None, help="Read commits since this ref.")
    cl_parser.add_argument(
        "--dry-run", action="store_true", help="Print the block instead of writing it."
    )
    cl_parser.set_defaults(func=cmd_changelog)

    # affected subcommand
    af_parser = subparsers.add_parser("affected", help="List affected packages.")
    af_parser.add_argument("--from-ref", default=None, help="Base ref (default: last tag).")
    af_parser.add_argument("--to-ref", default="HEAD", help="Head ref. (default: %(default)s)")
    af_parser.add_argument("--json", action="store_true", help="Print the report as JSON.")
    af_parser.set_defaults(func=cmd_affected)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        args.func(args)
    except MonobumpError as e:
        if getattr(args, "json", False):
            _emit_json({"error": {"code": e.code, "message": e.message}})
        fatal(e.message, e.exit_code)
    return 0
