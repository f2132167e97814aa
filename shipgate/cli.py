"""
shipgate command line.

Examples:
  shipgate run ./my-service --profile full
  shipgate run ./my-service --stages secret_scan,sast,build
  shipgate secret-scan ./my-service
  shipgate deploy ./my-service --artifact image_ref=registry:5000/app:1.0
  shipgate stages
  shipgate profiles

Exit codes: 0 when the run completed (warnings included), 1 when a hard
gate aborted it, 2 on invalid configuration.
"""

import argparse
import logging
import sys
from typing import List, Optional, Tuple

from . import __version__
from .config_loader import build_unified_config, list_available_profiles, load_secrets
from .exceptions import ConfigurationError
from .pipeline.orchestrator import PipelineOrchestrator
from .pipeline.stages import STAGE_CLASSES, build_default_stages

logger = logging.getLogger(__name__)

EXIT_COMPLETED = 0
EXIT_ABORTED = 1
EXIT_CONFIG_ERROR = 2

_EPILOG = """
Examples:
  shipgate run ./my-service --profile quick
  shipgate secret-scan ./my-service
  shipgate deploy ./my-service --artifact image_ref=registry:5000/app:1.0
"""


def _artifact(value: str) -> Tuple[str, str]:
    name, sep, artifact = value.partition("=")
    if not sep or not name.strip() or not artifact:
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got '{value}'")
    return name.strip(), artifact


def _add_run_arguments(parser: argparse.ArgumentParser, with_stages: bool) -> None:
    parser.add_argument(
        "target",
        nargs="?",
        default=".",
        help="Path to the source tree (default: current directory)",
    )
    parser.add_argument("--profile", help="Configuration profile (e.g. quick, full)")
    if with_stages:
        parser.add_argument(
            "--stages",
            help="Comma-separated stage names to run (default: profile selection)",
        )
    parser.add_argument(
        "--severity",
        choices=["low", "medium", "high", "critical"],
        help="Minimum severity that counts as a finding",
    )
    parser.add_argument("--target-env", dest="target_env", help="Target environment")
    parser.add_argument("--image-name", dest="image_name", help="Image repository name")
    parser.add_argument("--tag", help="Image tag")
    parser.add_argument("--report-dir", dest="report_dir", help="Report output directory")
    parser.add_argument(
        "--no-export",
        dest="export_reports",
        action="store_const",
        const=False,
        default=None,
        help="Do not write report documents to disk",
    )
    parser.add_argument(
        "--readiness-timeout",
        dest="readiness_timeout",
        type=float,
        help="Seconds to wait for each backing service",
    )
    parser.add_argument(
        "--artifact",
        action="append",
        type=_artifact,
        default=[],
        metavar="NAME=VALUE",
        help="Seed an artifact produced outside this run (repeatable)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shipgate",
        description="Security-gated build and deploy pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=_EPILOG,
    )
    parser.add_argument("--version", action="version", version=f"shipgate {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command")
    subparsers.required = True

    run_parser = subparsers.add_parser("run", help="Run all configured stages")
    _add_run_arguments(run_parser, with_stages=True)

    for cls in STAGE_CLASSES:
        stage_parser = subparsers.add_parser(
            cls.name.replace("_", "-"),
            help=f"Run only {cls.display_name.split(': ', 1)[-1]}",
        )
        _add_run_arguments(stage_parser, with_stages=False)
        stage_parser.set_defaults(single_stage=cls.name)

    subparsers.add_parser("stages", help="List the stage catalog")
    subparsers.add_parser("profiles", help="List available configuration profiles")
    return parser


def _print_stages() -> None:
    for cls in STAGE_CLASSES:
        services = ",".join(sorted(k.value for k in cls.required_services)) or "-"
        print(f"{cls.phase_number:>4g}  {cls.name:<18} {cls.policy.value:<14} {services}")


def _run(args: argparse.Namespace) -> int:
    single_stage = getattr(args, "single_stage", None)
    if single_stage:
        args.stages = single_stage

    try:
        config = build_unified_config(cli_args=args, repo_path=args.target, strict=True)
        secrets = load_secrets()
        orchestrator = PipelineOrchestrator(
            stages=build_default_stages(config),
            config=config,
            secrets=secrets,
        )
        report, error = orchestrator.run(args.target, artifacts=dict(args.artifact))
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        print(f"shipgate: configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    print(report.render_markdown())
    if error is not None:
        logger.error("Pipeline aborted at %s: %s", error.stage_name, error)
    return EXIT_COMPLETED if report.completed else EXIT_ABORTED


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command == "stages":
        _print_stages()
        return EXIT_COMPLETED
    if args.command == "profiles":
        for name in list_available_profiles():
            print(name)
        return EXIT_COMPLETED
    return _run(args)


if __name__ == "__main__":
    sys.exit(main())
