"""
Converge Configuration

Run settings, layered from lowest to highest precedence:

    dataclass defaults < converge.cfg [defaults] < CONVERGE_* environment < CLI flags

The config file is the first of ``$CONVERGE_CONFIG``, ``./converge.cfg`` and
``~/.converge.cfg`` that exists.
"""

import configparser
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from converge.engine.errors import ParseError

logger = logging.getLogger(__name__)

CONFIG_ENV = "CONVERGE_CONFIG"
ENV_PREFIX = "CONVERGE_"
CONFIG_SECTION = "defaults"

TRUE_VALUES = ('1', 'true', 'yes', 'on')
FALSE_VALUES = ('0', 'false', 'no', 'off', '')


@dataclass
class RunConfig:
    """
    Settings for a playbook run.

    Attributes:
        forks: Number of hosts processed in parallel
        timeout: Run-wide timeout in seconds (None = no timeout)
        check_mode: Dry run; modules without check mode support are skipped
        diff_mode: Ask modules to report differences
        verbosity: -v count (0 warnings only, 3 trace)
        limit: Host pattern further restricting every play
        tags: Only run tasks with these tags
        skip_tags: Skip tasks with these tags
        extra_vars: Variables with the highest precedence
        loop_fail_fast: Stop a loop at its first failed item
        force_handlers: Flush handlers even on hosts that failed
        vault_password_files: Files holding vault passwords
        json_output: Print one JSON document instead of the play log
    """

    forks: int = 5
    timeout: Optional[float] = None
    check_mode: bool = False
    diff_mode: bool = False
    verbosity: int = 0
    limit: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    skip_tags: List[str] = field(default_factory=list)
    extra_vars: Dict[str, Any] = field(default_factory=dict)
    loop_fail_fast: bool = False
    force_handlers: bool = False
    vault_password_files: List[str] = field(default_factory=list)
    json_output: bool = False

    def update(self, values: Mapping[str, Any], source: str = '') -> 'RunConfig':
        """Apply raw values (strings from files or the environment, or typed values)."""
        known = {f.name: f for f in fields(self)}
        for key, value in values.items():
            if key not in known:
                logger.debug("Ignoring unknown setting '%s' from %s", key, source or 'overrides')
                continue
            if value is None:
                continue
            setattr(self, key, _coerce(key, value, known[key].type, source))
        return self


def _coerce(key: str, value: Any, annotation: Any, source: str) -> Any:
    if not isinstance(value, str):
        return value

    text = value.strip()
    kind = str(annotation)
    try:
        if annotation is bool:
            lowered = text.lower()
            if lowered in TRUE_VALUES:
                return True
            if lowered in FALSE_VALUES:
                return False
            raise ValueError(f"not a boolean: {value!r}")
        if annotation is int:
            return int(text)
        if 'float' in kind:
            return float(text) if text else None
        if 'List' in kind:
            return [part.strip() for part in text.split(',') if part.strip()]
        if 'Dict' in kind:
            raise ValueError("cannot be set from a string")
    except ValueError as e:
        raise ParseError(f"Invalid value for '{key}': {e}", file_path=source or None)
    return text or None


def find_config_file(cwd: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> Optional[Path]:
    """Return the config file in effect, or None."""
    env_path = (os.environ if environ is None else environ).get(CONFIG_ENV)
    if env_path:
        return Path(env_path).expanduser()

    for candidate in ((cwd or Path.cwd()) / "converge.cfg", Path.home() / ".converge.cfg"):
        if candidate.is_file():
            return candidate
    return None


def read_config_file(path: Path) -> Dict[str, str]:
    """Read the [defaults] section of a converge.cfg file."""
    parser = configparser.ConfigParser(interpolation=None)
    try:
        with open(path, encoding='utf-8') as f:
            parser.read_file(f)
    except OSError as e:
        raise ParseError(f"Cannot read config file: {e}", file_path=str(path))
    except configparser.Error as e:
        raise ParseError(f"Invalid config file: {e}", file_path=str(path))

    if not parser.has_section(CONFIG_SECTION):
        return {}
    return dict(parser.items(CONFIG_SECTION))


def read_environment(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Collect CONVERGE_<SETTING> variables, e.g. CONVERGE_FORKS=10."""
    environ = os.environ if environ is None else environ
    values = {}
    for name, value in environ.items():
        if name.startswith(ENV_PREFIX) and name != CONFIG_ENV:
            values[name[len(ENV_PREFIX):].lower()] = value
    return values


def load_config(
    overrides: Optional[Mapping[str, Any]] = None,
    config_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RunConfig:
    """
    Build the effective run configuration.

    Args:
        overrides: Values given on the command line (None entries are ignored)
        config_file: Explicit config file; looked up when not given
        environ: Environment to read CONVERGE_* variables from

    Returns:
        RunConfig with every layer applied
    """
    config = RunConfig()

    path = config_file or find_config_file(environ=environ)
    if path is not None:
        if not path.is_file():
            raise ParseError("Config file not found", file_path=str(path))
        logger.debug("Using config file %s", path)
        config.update(read_config_file(path), source=str(path))

    config.update(read_environment(environ), source='environment')

    if overrides:
        config.update(overrides, source='command line')

    if config.forks < 1:
        raise ParseError(f"forks must be at least 1, got {config.forks}")
    return config
