"""
Inventory CLI entrypoint for converge-inventory.

Usage:
    converge-inventory --version
    converge-inventory --help
    converge-inventory -i inventory --list
    converge-inventory -i inventory --host <hostname>
    converge-inventory -i inventory --graph [group]
"""

import argparse
import json
import platform
import sys
from typing import Any, List, Optional

import yaml

from converge import __version__
from converge.engine.errors import ConvergeError, ExitCode, ParseError
from converge.engine.inventory import InventoryManager
from converge.engine.vault import EncryptedValue, VaultLib, VaultSecret
from converge.logging import configure_logging


def get_version_string() -> str:
    """Generate a detailed version string."""
    python_version = platform.python_version()
    os_info = f"{platform.system()} {platform.release()}"
    return (
        f"converge-inventory {__version__}\n"
        f"  python: {python_version}\n"
        f"  platform: {os_info}"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for converge-inventory."""
    parser = argparse.ArgumentParser(
        prog="converge-inventory",
        description="Show the resolved inventory",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  converge-inventory -i inventory.ini --list
  converge-inventory -i hosts --host webserver1
  converge-inventory -i inventory/ --graph
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=get_version_string(),
    )

    parser.add_argument(
        "-i", "--inventory",
        dest="inventory",
        action="append",
        default=[],
        help="Inventory file, directory or script (can be repeated)",
    )

    parser.add_argument(
        "--list",
        action="store_true",
        dest="list_hosts",
        help="Output all hosts info (JSON)",
    )

    parser.add_argument(
        "--host",
        dest="host",
        default=None,
        help="Output specific host info (JSON)",
    )

    parser.add_argument(
        "--graph",
        nargs="?",
        const="all",
        default=None,
        metavar="GROUP",
        help="Output inventory graph, starting at GROUP (default: all)",
    )

    parser.add_argument(
        "-y", "--yaml",
        action="store_true",
        help="Output in YAML format",
    )

    parser.add_argument(
        "--vault-password-file",
        dest="vault_password_files",
        action="append",
        default=[],
        help="Vault password file (can be repeated)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity",
    )

    return parser


def _plain(data: Any) -> Any:
    """Make inventory data printable; vaulted values stay encrypted."""
    if isinstance(data, EncryptedValue):
        return {'__converge_vault': data.ciphertext}
    if isinstance(data, dict):
        return {str(k): _plain(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_plain(v) for v in data]
    return data


def _dump(data: Any, as_yaml: bool) -> str:
    if as_yaml:
        return yaml.safe_dump(_plain(data), default_flow_style=False, sort_keys=False).rstrip()
    return json.dumps(_plain(data), indent=2, default=str)


def main(args: Optional[List[str]] = None) -> int:
    """Main entrypoint for converge-inventory CLI."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    # If no action specified, show help
    if not parsed.list_hosts and not parsed.host and parsed.graph is None:
        parser.print_help()
        return 0

    if not parsed.inventory:
        print("ERROR: Inventory (-i/--inventory) is required", file=sys.stderr)
        return int(ExitCode.PARSE_ERROR)

    configure_logging(parsed.verbose)

    try:
        vault = VaultLib([VaultSecret.from_file(path) for path in parsed.vault_password_files])
        inventory = InventoryManager.resolve(parsed.inventory, vault=vault)
    except ParseError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return int(ExitCode.PARSE_ERROR)
    except ConvergeError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return int(ExitCode.GENERIC_ERROR)

    if parsed.list_hosts:
        print(_dump(inventory.list_inventory(), parsed.yaml))
        return 0

    if parsed.host:
        if parsed.host not in inventory.hosts:
            print(f"ERROR: Host not found: {parsed.host}", file=sys.stderr)
            return int(ExitCode.GENERIC_ERROR)
        print(_dump(inventory.get_host_vars(parsed.host), parsed.yaml))
        return 0

    if parsed.graph not in inventory.groups:
        print(f"ERROR: Group not found: {parsed.graph}", file=sys.stderr)
        return int(ExitCode.GENERIC_ERROR)
    print(inventory.graph(parsed.graph))
    return 0


if __name__ == "__main__":
    sys.exit(main())
