"""Entry point for `python -m speclock` and the `speclock` CLI script."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from speclock.config import ProjectConfig
from speclock.errors import SpeclockError
from speclock.models import UnitState
from speclock.pipeline import Compiler
from speclock.registry import UnitRegistry
from speclock.settings import RuntimeSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="speclock", description="Hash-locked code generation")
    parser.add_argument("--project-root", type=Path, default=Path.cwd(), help="Directory holding the config file")
    parser.add_argument("--config", type=Path, default=None, help="Config file (default: SPECLOCK_CONFIG or speclock.json)")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (default: SPECLOCK_LOG_LEVEL or INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    compile_cmd = sub.add_parser("compile", help="Generate candidate checkpoints")
    compile_cmd.add_argument("units", nargs="*", help="Unit ids (default: all)")
    compile_cmd.add_argument("--force", action="store_true", help="Bypass the response cache")
    compile_cmd.add_argument("--save", action="store_true", help="Test and activate each compiled unit")

    test_cmd = sub.add_parser("test", help="Run examples and gates against a checkpoint")
    test_cmd.add_argument("unit")
    test_cmd.add_argument("--hash", dest="h_chk", default=None)

    save_cmd = sub.add_parser("save", help="Test and activate a checkpoint")
    save_cmd.add_argument("unit")
    save_cmd.add_argument("--hash", dest="h_chk", default=None)

    sub.add_parser("status", help="Show drift status per unit")
    sub.add_parser("check", help="Exit non-zero if any unit is missing or drifted")
    return parser.parse_args(argv)


def build_compiler(args: argparse.Namespace, settings: RuntimeSettings) -> Compiler:
    root = args.project_root.resolve()
    config_path = args.config if args.config is not None else settings.config_file(root)
    config = ProjectConfig.load(config_path)
    sources = [config.resolve_path(source) for source in config.project.sources]
    registry = UnitRegistry.from_files(sources, root=config.root, metadata=config.unit_metadata())
    return Compiler(registry, config)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        print(f"invalid environment: {exc}", file=sys.stderr)
        return 1
    logging.basicConfig(
        level=getattr(logging, args.log_level or settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        compiler = build_compiler(args, settings)
    except (OSError, SyntaxError, ValueError, SpeclockError) as exc:
        logging.error("Unable to load project: %s", exc)
        return 1

    if args.command == "compile":
        report = compiler.compile_batch(args.units or None, force=args.force, save=args.save, workers=settings.workers)
        print(report.render_table())
        return 0 if report.ok else 1

    if args.command in {"status", "check"}:
        statuses = compiler.status()
        for status in statuses:
            detail = status.reason or (status.active_checkpoint or "")[:12]
            print(f"{status.unit_id}  {status.state.value}  {detail}".rstrip())
        return 0 if all(status.state is UnitState.OK for status in statuses) else 1

    try:
        if args.command == "test":
            report = compiler.test_unit(args.unit, args.h_chk)
            for failure in report.failures:
                print(f"{failure.source}  {failure.name}  {failure.message}")
            print(f"passed={report.passed}")
            return 0 if report.passed else 1
        compiler.save_unit(args.unit, args.h_chk)
    except (SpeclockError, ValueError) as exc:
        logging.error("%s", exc)
        return 1
    print(f"saved={args.unit}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
