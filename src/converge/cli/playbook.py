"""
Playbook CLI entrypoint for converge-playbook.

Usage:
    converge-playbook --version
    converge-playbook --help
    converge-playbook -i inventory playbook.yml
"""

import argparse
import getpass
import json
import platform
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from converge import __version__
from converge.config import load_config
from converge.engine.errors import ConvergeError, ExitCode
from converge.logging import configure_logging


def get_version_string() -> str:
    """Generate a detailed version string."""
    python_version = platform.python_version()
    os_info = f"{platform.system()} {platform.release()}"
    return (
        f"converge-playbook {__version__}\n"
        f"  python: {python_version}\n"
        f"  platform: {os_info}"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for converge-playbook."""
    parser = argparse.ArgumentParser(
        prog="converge-playbook",
        description="Converge hosts on the state declared in playbooks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  converge-playbook -i inventory.ini site.yml
  converge-playbook -i hosts playbook.yml --check
  converge-playbook -i inventory/ deploy.yml -e version=1.2 -v
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=get_version_string(),
    )

    parser.add_argument(
        "playbook",
        nargs="*",
        help="Playbook file(s) to run",
    )

    parser.add_argument(
        "-i", "--inventory",
        dest="inventory",
        action="append",
        default=[],
        help="Inventory file, directory or script (can be repeated)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=None,
        help="Increase verbosity (-v, -vv, -vvv)",
    )

    parser.add_argument(
        "-C", "--check",
        action="store_true",
        default=None,
        help="Run in check mode (dry run)",
    )

    parser.add_argument(
        "-D", "--diff",
        action="store_true",
        default=None,
        help="Show differences when changing files",
    )

    parser.add_argument(
        "-l", "--limit",
        dest="limit",
        default=None,
        help="Limit to specific hosts/groups",
    )

    parser.add_argument(
        "-t", "--tags",
        dest="tags",
        default=None,
        help="Only run tasks tagged with these values (comma separated)",
    )

    parser.add_argument(
        "--skip-tags",
        dest="skip_tags",
        default=None,
        help="Skip tasks tagged with these values (comma separated)",
    )

    parser.add_argument(
        "-f", "--forks",
        dest="forks",
        type=int,
        default=None,
        help="Number of hosts processed in parallel (default: 5)",
    )

    parser.add_argument(
        "-T", "--timeout",
        dest="timeout",
        type=float,
        default=None,
        help="Cancel the run after this many seconds",
    )

    parser.add_argument(
        "-e", "--extra-vars",
        dest="extra_vars",
        action="append",
        default=[],
        help="Extra variables as key=value, JSON or @file (can be repeated)",
    )

    parser.add_argument(
        "--vault-password-file",
        dest="vault_password_files",
        action="append",
        default=[],
        help="Vault password file (can be repeated)",
    )

    parser.add_argument(
        "-J", "--ask-vault-pass",
        dest="ask_vault_pass",
        action="store_true",
        help="Prompt for the vault password",
    )

    parser.add_argument(
        "--force-handlers",
        dest="force_handlers",
        action="store_true",
        default=None,
        help="Run notified handlers even on hosts that failed",
    )

    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Config file (default: $CONVERGE_CONFIG, ./converge.cfg or ~/.converge.cfg)",
    )

    parser.add_argument(
        "--json",
        action="store_true",
        default=None,
        help="Output results in JSON format",
    )

    return parser


def _split(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [part.strip() for part in value.split(',') if part.strip()]


def _parse_extra_vars(extra_vars_list: List[str]) -> Dict[str, Any]:
    """Parse extra vars from command line."""
    result: Dict[str, Any] = {}
    for item in extra_vars_list:
        item = item.strip()

        # @path loads a YAML/JSON file
        if item.startswith('@'):
            path = Path(item[1:])
            try:
                file_vars = yaml.safe_load(path.read_text(encoding='utf-8'))
            except (OSError, yaml.YAMLError) as e:
                raise ConvergeError(f"Cannot load extra vars from {path}: {e}")
            if not isinstance(file_vars, dict):
                raise ConvergeError(f"Extra vars file {path} must contain a mapping")
            result.update(file_vars)
            continue

        # Try JSON first
        if item.startswith('{'):
            try:
                result.update(json.loads(item))
                continue
            except json.JSONDecodeError:
                pass

        # key=value pairs, space separated
        for pair in item.split():
            if '=' not in pair:
                raise ConvergeError(f"Invalid extra var '{pair}', expected key=value")
            key, _, value = pair.partition('=')
            # Parse value as JSON for complex types
            try:
                result[key.strip()] = json.loads(value)
            except json.JSONDecodeError:
                result[key.strip()] = value

    return result


def main(args: Optional[List[str]] = None) -> int:
    """Main entrypoint for converge-playbook CLI."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    # If no playbook provided, show help
    if not parsed.playbook:
        parser.print_help()
        return 0

    # Validate inventory is provided
    if not parsed.inventory:
        print("ERROR: Inventory (-i/--inventory) is required", file=sys.stderr)
        return int(ExitCode.PARSE_ERROR)

    try:
        extra_vars = _parse_extra_vars(parsed.extra_vars)
        config = load_config(
            {
                'forks': parsed.forks,
                'timeout': parsed.timeout,
                'check_mode': parsed.check,
                'diff_mode': parsed.diff,
                'verbosity': parsed.verbose,
                'limit': parsed.limit,
                'tags': _split(parsed.tags),
                'skip_tags': _split(parsed.skip_tags),
                'force_handlers': parsed.force_handlers,
                'json_output': parsed.json,
                'vault_password_files': parsed.vault_password_files or None,
            },
            config_file=Path(parsed.config) if parsed.config else None,
        )
    except ConvergeError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return int(ExitCode.PARSE_ERROR)

    config.extra_vars.update(extra_vars)
    configure_logging(config.verbosity)

    vault_password = None
    if parsed.ask_vault_pass:
        vault_password = getpass.getpass("Vault password: ")

    # Create and run the playbook runner
    from converge.engine.runner import PlaybookRunner

    try:
        runner = PlaybookRunner.from_config(
            parsed.inventory,
            parsed.playbook,
            config,
            vault_password=vault_password,
        )
    except ConvergeError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return int(ExitCode.GENERIC_ERROR)

    return runner.run()


if __name__ == "__main__":
    sys.exit(main())
