"""
Vault CLI entrypoint for converge-vault.

Usage:
    converge-vault encrypt FILE... --vault-password-file PASSFILE
    converge-vault decrypt FILE... --vault-password-file PASSFILE
    converge-vault encrypt_string VALUE --name db_password
"""

import argparse
import getpass
import platform
import sys
from pathlib import Path
from typing import List, Optional

from converge import __version__
from converge.engine.errors import ExitCode, VaultError
from converge.engine.vault import VaultLib, VaultSecret, decode_plaintext, is_encrypted
from converge.logging import configure_logging


def get_version_string() -> str:
    """Generate a detailed version string."""
    python_version = platform.python_version()
    os_info = f"{platform.system()} {platform.release()}"
    return (
        f"converge-vault {__version__}\n"
        f"  python: {python_version}\n"
        f"  platform: {os_info}"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for converge-vault."""
    parser = argparse.ArgumentParser(
        prog="converge-vault",
        description="Encrypt and decrypt vault data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  converge-vault encrypt group_vars/all/secrets.yml --vault-password-file .pass
  converge-vault decrypt group_vars/all/secrets.yml --vault-password-file .pass
  converge-vault encrypt_string 's3cret' --name db_password --vault-password-file .pass
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=get_version_string(),
    )

    parser.add_argument(
        "--vault-password-file",
        dest="vault_password_file",
        default=None,
        help="File holding the vault password (prompted for when omitted)",
    )

    parser.add_argument(
        "--vault-id",
        dest="vault_id",
        default=None,
        help="Label recorded in the envelope header",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity",
    )

    subparsers = parser.add_subparsers(dest="action")

    encrypt = subparsers.add_parser("encrypt", help="Encrypt files in place")
    encrypt.add_argument("files", nargs="+", help="Files to encrypt")

    decrypt = subparsers.add_parser("decrypt", help="Decrypt files in place")
    decrypt.add_argument("files", nargs="+", help="Files to decrypt")
    decrypt.add_argument("--output", default=None, help="Write plaintext here ('-' for stdout)")

    encrypt_string = subparsers.add_parser("encrypt_string", help="Encrypt a value for use in YAML")
    encrypt_string.add_argument("value", nargs="?", default=None, help="Value to encrypt (read from stdin if omitted)")
    encrypt_string.add_argument("-n", "--name", default=None, help="Variable name for the YAML snippet")

    return parser


def _get_secret(parsed: argparse.Namespace, confirm: bool) -> VaultSecret:
    vault_id = parsed.vault_id or 'default'
    if parsed.vault_password_file:
        return VaultSecret.from_file(parsed.vault_password_file, vault_id=vault_id)

    password = getpass.getpass("Vault password: ")
    if confirm and getpass.getpass("Confirm vault password: ") != password:
        raise VaultError("Passwords do not match")
    if not password:
        raise VaultError("A vault password is required")
    return VaultSecret(password, vault_id=vault_id)


def format_encrypted_string(ciphertext: str, name: Optional[str] = None) -> str:
    """Render an envelope as a ``!vault`` YAML scalar."""
    body = "\n".join("  " + line for line in ciphertext.strip().splitlines())
    if name:
        return f"{name}: !vault |\n{body}"
    return f"!vault |\n{body}"


def _encrypt_files(vault: VaultLib, files: List[str], vault_id: Optional[str]) -> None:
    for name in files:
        path = Path(name)
        content = path.read_bytes()
        if is_encrypted(content):
            raise VaultError(f"{path} is already encrypted")
        path.write_text(vault.encrypt(content, vault_id=vault_id), encoding='utf-8')
        print(f"Encryption successful: {path}", file=sys.stderr)


def _decrypt_files(vault: VaultLib, files: List[str], output: Optional[str]) -> None:
    for name in files:
        path = Path(name)
        plaintext = vault.decrypt_file(path)
        if output == '-':
            sys.stdout.write(decode_plaintext(plaintext))
        elif output:
            Path(output).write_bytes(plaintext)
        else:
            path.write_bytes(plaintext)
            print(f"Decryption successful: {path}", file=sys.stderr)


def main(args: Optional[List[str]] = None) -> int:
    """Main entrypoint for converge-vault CLI."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.action:
        parser.print_help()
        return 0

    configure_logging(parsed.verbose)

    try:
        secret = _get_secret(parsed, confirm=parsed.action != 'decrypt')
        vault = VaultLib([secret])

        if parsed.action == 'encrypt':
            _encrypt_files(vault, parsed.files, parsed.vault_id)
        elif parsed.action == 'decrypt':
            _decrypt_files(vault, parsed.files, parsed.output)
        else:
            value = parsed.value if parsed.value is not None else sys.stdin.read().rstrip('\n')
            print(format_encrypted_string(vault.encrypt(value, vault_id=parsed.vault_id), parsed.name))
    except VaultError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return int(ExitCode.GENERIC_ERROR)
    except OSError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return int(ExitCode.GENERIC_ERROR)

    return 0


if __name__ == "__main__":
    sys.exit(main())
