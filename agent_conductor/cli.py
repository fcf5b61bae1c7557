"""Command-line interface for running delegations and pipelines."""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from .models.core import CapabilityProfile, PipelineStep
from .orchestration.session import (
    OrchestrationSession, create_dispatcher_session, create_pipeline_session
)
from .utils.config import ConductorConfig, LauncherConfig, get_config, load_config_from_file
from .utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


def positive_float(value: str) -> float:
    """argparse type for deadlines: a float greater than zero."""
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be greater than 0, got {value}")
    return number


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list (defaults to sys.argv)

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="agent-conductor",
        description="Run child coding agents as delegated roles or as a fixed pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List the roles defined in a profile file
  agent-conductor roles --profiles roles.json

  # Delegate one task to one role
  agent-conductor delegate scout "Find where sessions are persisted" --profiles roles.json

  # Run scout, then builder with a custom template
  agent-conductor pipeline "Add a --dry-run flag" --profiles roles.json \\
      --step scout --step "builder:Plan: {previous}\\nTask: {task}"
        """
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON")
    parser.add_argument(
        "--config",
        type=Path,
        help="Configuration file (default: conductor.json plus CONDUCTOR_* environment variables)"
    )
    parser.add_argument(
        "--timeout",
        type=positive_float,
        help="Deadline in seconds for each child agent (default: none)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    roles_parser = subparsers.add_parser("roles", help="List available roles")
    roles_parser.add_argument("--profiles", type=Path, required=True, help="JSON file of role profiles")

    delegate_parser = subparsers.add_parser("delegate", help="Run one task on one role")
    delegate_parser.add_argument("role", help="Role name")
    delegate_parser.add_argument("task", help="Task text")
    delegate_parser.add_argument("--profiles", type=Path, required=True, help="JSON file of role profiles")

    pipeline_parser = subparsers.add_parser("pipeline", help="Run a fixed sequence of roles")
    pipeline_parser.add_argument("task", help="Original task text")
    pipeline_parser.add_argument("--profiles", type=Path, required=True, help="JSON file of role profiles")
    pipeline_parser.add_argument(
        "--step",
        dest="steps",
        action="append",
        required=True,
        metavar="ROLE[:TEMPLATE]",
        help="Pipeline step, in order; TEMPLATE may use {previous} and {task} (default: {previous})"
    )

    return parser.parse_args(argv)


def load_profiles(path: Path) -> List[CapabilityProfile]:
    """Read role profiles from a JSON list, or an object with a "profiles" list.

    Raises:
        ValueError: The file is unreadable or a profile is invalid
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ValueError(f"Cannot read profiles file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Profiles file {path} is not valid JSON: {e}") from e

    if isinstance(data, dict):
        data = data.get("profiles", [])
    if not isinstance(data, list):
        raise ValueError(f"Profiles file {path} must contain a list of profiles")

    try:
        return [CapabilityProfile(**item) for item in data]
    except (TypeError, ValidationError) as e:
        raise ValueError(f"Invalid profile in {path}: {e}") from e


def parse_step(value: str) -> PipelineStep:
    """ROLE or ROLE:TEMPLATE. Escaped newlines in the template are expanded."""
    role, sep, template = value.partition(":")
    if not sep or not template:
        return PipelineStep(role_name=role.strip())
    return PipelineStep(role_name=role.strip(), template=template.replace("\\n", "\n"))


def build_config(args: argparse.Namespace) -> ConductorConfig:
    config = load_config_from_file(args.config) if args.config else get_config()
    if args.timeout is not None:
        # rebuilt rather than copied so the field constraints apply
        launcher = LauncherConfig(**{**config.launcher.model_dump(), "dispatch_timeout_seconds": args.timeout})
        config = config.model_copy(update={"launcher": launcher})
    return config


def print_status(session: OrchestrationSession):
    summary = session.render_status()
    if summary:
        print("\n" + summary, file=sys.stderr)


async def run_command(args: argparse.Namespace, config: Optional[ConductorConfig] = None) -> int:
    """Run the selected command.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    config = config or build_config(args)

    try:
        profiles = load_profiles(args.profiles)
        steps = [parse_step(step) for step in args.steps] if args.command == "pipeline" else []
    except (ValueError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.command == "roles":
        if not profiles:
            print("No roles defined.")
        for profile in profiles:
            tools = ", ".join(profile.capability_set) or "no tools"
            print(f"  {profile.name:20} {profile.description or '-'} [{tools}]")
        return 0

    try:
        if args.command == "delegate":
            session = create_dispatcher_session(profiles, config=config)
        else:
            session = create_pipeline_session(profiles, steps, config=config)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    async with session:
        if args.command == "delegate":
            result = await session.invoke(role=args.role, task=args.task)
        else:
            result = await session.invoke(task=args.task)
        print(result.text)
        print_status(session)

    logger.debug("Command finished", command=args.command, **result.details)
    return 0 if result.success else 1


def main(argv: Optional[List[str]] = None):
    """Main entry point for the CLI."""
    args = parse_arguments(argv)
    config = build_config(args)
    configure_logging(
        level="DEBUG" if args.verbose else config.log_level,
        json_format=args.json_logs or config.json_logging
    )

    exit_code = asyncio.run(run_command(args, config))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
