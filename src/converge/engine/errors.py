# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Error Classes.

All custom exceptions for clear error handling and exit codes.
Run-level structural errors (inventory, playbook) derive from ParseError and
abort before any task is scheduled; everything else is scoped to a single
host and task.
"""

from __future__ import annotations

import enum
from typing import List


class ExitCode(enum.IntEnum):
    """Process exit codes for the converge CLIs."""

    SUCCESS = 0
    GENERIC_ERROR = 1
    HOST_FAILED = 2
    PARSE_ERROR = 3
    UNSUPPORTED_FEATURE = 4
    INTERRUPTED = 130


class ConvergeError(Exception):
    """Base exception for all converge errors."""

    exit_code: int = ExitCode.GENERIC_ERROR

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n  Details: {self.details}"
        return self.message


class ParseError(ConvergeError):
    """Error parsing inventory, playbook, or other input files."""

    exit_code: int = ExitCode.PARSE_ERROR

    def __init__(
        self,
        message: str,
        file_path: str | None = None,
        line: int | None = None,
        details: str | None = None,
    ) -> None:
        self.file_path = file_path
        self.line = line
        location = ""
        if file_path:
            location = f" in {file_path}"
            if line:
                location += f" at line {line}"
        super().__init__(f"Parse error{location}: {message}", details)


class UnsupportedFeatureError(ConvergeError):
    """Error when a playbook uses a keyword the engine does not implement."""

    exit_code: int = ExitCode.UNSUPPORTED_FEATURE

    def __init__(self, feature: str, suggestion: str | None = None) -> None:
        self.feature = feature
        msg = f"Unsupported feature: {feature}"
        if suggestion:
            msg += f"\n  Suggestion: {suggestion}"
        super().__init__(msg)


class InventoryError(ParseError):
    """Error in inventory file or host resolution."""

    def __init__(self, message: str, file_path: str | None = None) -> None:
        super().__init__(message, file_path=file_path)


class InventoryCycleError(InventoryError):
    """The group parent/child graph contains a cycle."""

    def __init__(self, cycle: List[str], file_path: str | None = None) -> None:
        self.cycle = cycle
        super().__init__(
            f"Group cycle detected: {' -> '.join(cycle)}",
            file_path=file_path,
        )


class DuplicateHostError(InventoryError):
    """The same host was declared twice with incompatible connection attributes."""

    def __init__(
        self,
        host: str,
        attribute: str,
        first: object,
        second: object,
        file_path: str | None = None,
    ) -> None:
        self.host = host
        self.attribute = attribute
        super().__init__(
            f"Host '{host}' declared twice with conflicting {attribute}: "
            f"{first!r} != {second!r}",
            file_path=file_path,
        )


class UnknownGroupError(InventoryError):
    """A host selector names neither a known group nor a known host."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Host selector references unknown group or host: {name}")


class VariableError(ConvergeError):
    """Error resolving a variable for a host."""

    exit_code: int = ExitCode.HOST_FAILED


class TemplateError(ConvergeError):
    """Error rendering a Jinja2 template."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(
        self,
        message: str,
        template: str | None = None,
        variable: str | None = None,
    ) -> None:
        self.template = template
        self.variable = variable

        details = None
        if template:
            # Truncate long templates
            truncated = template[:100] + "..." if len(template) > 100 else template
            details = f"Template: {truncated}"

        super().__init__(f"Template error: {message}", details)


class TemplateSyntaxError(TemplateError):
    """Malformed template or condition expression."""


class TemplateTypeError(TemplateError):
    """A filter or operator was applied to an incompatible value kind."""


class UndefinedVariableError(TemplateError, VariableError):
    """A template referenced a variable that no source defines."""


class ModuleError(ConvergeError):
    """Error executing a module on a host."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(
        self,
        module: str,
        host: str,
        message: str,
        rc: int | None = None,
        stdout: str | None = None,
        stderr: str | None = None,
    ) -> None:
        self.module = module
        self.host = host
        self.rc = rc
        self.stdout = stdout
        self.stderr = stderr

        details_parts = []
        if rc is not None:
            details_parts.append(f"rc={rc}")
        if stderr:
            details_parts.append(f"stderr: {stderr[:200]}")

        super().__init__(
            f"Module '{module}' failed on {host}: {message}",
            "; ".join(details_parts) if details_parts else None
        )


class ConnectivityError(ConvergeError):
    """The connection provider could not reach a host."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(
        self,
        host: str,
        message: str,
        connection_type: str | None = None,
        details: str | None = None,
    ) -> None:
        self.host = host
        self.connection_type = connection_type
        conn_info = f" ({connection_type})" if connection_type else ""
        super().__init__(f"Connection to {host}{conn_info} failed: {message}", details)


class UnknownHandlerError(ConvergeError):
    """A task notified a handler name that no handler defines or listens for."""

    exit_code: int = ExitCode.PARSE_ERROR

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"The requested handler '{name}' was not found")


class VaultError(ConvergeError):
    """Error encrypting or decrypting vault data."""


class VaultBadKeyError(VaultError):
    """No configured vault secret can decrypt the data."""


class VaultCorruptError(VaultError):
    """Vault data is malformed or uses an unknown format tag."""
