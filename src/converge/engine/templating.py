"""
Converge Templating Engine

Jinja2-based templating with Ansible-like behavior:

- a string that is exactly one ``{{ expr }}`` evaluates to the native value
  (lists stay lists, ints stay ints); anything else renders to a string
- variables whose values are themselves templates are rendered on lookup
- encrypted values are decrypted the first time a template dereferences them
- undefined variables are errors unless guarded with ``default`` or ``is defined``

Conditions (``when``, ``changed_when``, ``failed_when``) use the Jinja2
expression grammar: literals, variable references with ``.attr`` and
``[key]``, comparisons, ``in`` / ``not in``, ``and`` / ``or`` / ``not``,
parentheses, tests (``is defined``, ``is none``, ``is string``, ...) and
filters.
"""

import base64
import contextlib
import json
import logging
import os
import re
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import yaml
from jinja2 import ChainableUndefined, Environment, StrictUndefined, Undefined
from jinja2 import TemplateError as JinjaTemplateError
from jinja2 import TemplateSyntaxError as JinjaSyntaxError
from jinja2 import UndefinedError
from jinja2.runtime import Context
from jinja2.utils import missing

from converge.engine.errors import (
    ConvergeError,
    TemplateError,
    TemplateSyntaxError,
    TemplateTypeError,
    UndefinedVariableError,
    VaultBadKeyError,
)
from converge.engine.vault import EncryptedValue, VaultLib

logger = logging.getLogger(__name__)

SINGLE_EXPRESSION = re.compile(r'^\{\{(?P<expr>(?:(?!\{\{|\}\}).)*)\}\}$', re.DOTALL)
UNDEFINED_NAME = re.compile(r"'([^']+)' is undefined")


class UnsafeText(str):
    """Text that must never be templated (command output, registered results)."""


def wrap_unsafe(data: Any) -> Any:
    """Mark every string in ``data`` as UnsafeText."""
    if isinstance(data, str) and not isinstance(data, UnsafeText):
        return UnsafeText(data)
    if isinstance(data, dict):
        return {k: wrap_unsafe(v) for k, v in data.items()}
    if isinstance(data, list):
        return [wrap_unsafe(v) for v in data]
    return data


def has_template(value: Any) -> bool:
    """Return True if value is a string that contains template markers."""
    return (
        isinstance(value, str)
        and not isinstance(value, UnsafeText)
        and ('{{' in value or '{%' in value)
    )


class ConvergeUndefined(ChainableUndefined, StrictUndefined):
    """Undefined that allows ``a.b.c is defined`` but fails on any real use."""


def _text(value: Any, name: str) -> str:
    """Coerce a scalar for a string filter; collections are a type error."""
    if isinstance(value, (str, int, float, Undefined)):
        return str(value)
    raise TypeError(f"The '{name}' filter expects a string, got {type(value).__name__}")


def _filter_to_yaml(value: Any) -> str:
    """Convert value to YAML string."""
    return yaml.safe_dump(value, default_flow_style=False)


def _filter_from_yaml(value: str) -> Any:
    return yaml.safe_load(str(value))


def _filter_bool(value: Any) -> bool:
    """Convert value to boolean."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ('true', 'yes', '1', 'on')
    return bool(value)


def _filter_basename(path: str) -> str:
    """Get basename of a path."""
    return os.path.basename(_text(path, 'basename'))


def _filter_dirname(path: str) -> str:
    """Get directory name of a path."""
    return os.path.dirname(_text(path, 'dirname'))


def _filter_regex_replace(value: str, pattern: str, replacement: str = '', ignorecase: bool = False) -> str:
    """Regex replacement in string."""
    flags = re.IGNORECASE if ignorecase else 0
    return re.sub(pattern, replacement, _text(value, 'regex_replace'), flags=flags)


def _filter_regex_search(value: str, pattern: str, ignorecase: bool = False) -> Optional[str]:
    """Return the first match of pattern in value, or None."""
    flags = re.IGNORECASE if ignorecase else 0
    match = re.search(pattern, _text(value, 'regex_search'), flags=flags)
    return match.group(0) if match else None


def _filter_b64decode(value: str) -> str:
    """Decode base64 encoded string."""
    return base64.b64decode(value).decode('utf-8')


def _filter_b64encode(value: str) -> str:
    """Encode string to base64."""
    if isinstance(value, bytes):
        return base64.b64encode(value).decode('utf-8')
    return base64.b64encode(value.encode('utf-8')).decode('utf-8')


def _filter_unique(value: Any) -> List[Any]:
    seen: List[Any] = []
    for item in value:
        if item not in seen:
            seen.append(item)
    return seen


def _filter_mandatory(value: Any, msg: Optional[str] = None) -> Any:
    if isinstance(value, Undefined):
        if msg:
            raise UndefinedError(msg)
        value._fail_with_undefined_error()
    return value


def _filter_combine(*dicts: Mapping[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for d in dicts:
        result.update(d)
    return result


def _result_flag(flag: str) -> Callable[[Any], bool]:
    def test(value: Any) -> bool:
        if not isinstance(value, Mapping):
            raise TypeError(f"The '{flag}' test expects a task result, got {type(value).__name__}")
        return bool(value.get(flag, False))
    return test


# Export custom filters as a dictionary for reuse
CUSTOM_FILTERS: Dict[str, Callable[..., Any]] = {
    'lower': lambda x: _text(x, 'lower').lower(),
    'upper': lambda x: _text(x, 'upper').upper(),
    'replace': lambda s, old, new: _text(s, 'replace').replace(old, new),
    'trim': lambda x: _text(x, 'trim').strip(),
    'to_json': lambda x: json.dumps(x),
    'to_nice_json': lambda x: json.dumps(x, indent=4, sort_keys=True),
    'from_json': lambda x: json.loads(x),
    'to_yaml': _filter_to_yaml,
    'from_yaml': _filter_from_yaml,
    'bool': _filter_bool,
    'int': lambda x: int(x),
    'float': lambda x: float(x),
    'string': lambda x: str(x),
    'length': lambda x: len(x),
    'join': lambda x, sep='': sep.join(str(i) for i in x),
    'first': lambda x: x[0] if x else None,
    'last': lambda x: x[-1] if x else None,
    'unique': _filter_unique,
    'basename': _filter_basename,
    'dirname': _filter_dirname,
    'regex_replace': _filter_regex_replace,
    'regex_search': _filter_regex_search,
    'b64decode': _filter_b64decode,
    'b64encode': _filter_b64encode,
    'mandatory': _filter_mandatory,
    'combine': _filter_combine,
}

CUSTOM_TESTS: Dict[str, Callable[..., bool]] = {
    'changed': _result_flag('changed'),
    'failed': _result_flag('failed'),
    'skipped': _result_flag('skipped'),
    'succeeded': lambda r: not _result_flag('failed')(r),
    'success': lambda r: not _result_flag('failed')(r),
}


class _LazyContext(Context):
    """Template context that finishes values (decrypt, nested render) on lookup."""

    def resolve_or_missing(self, key: str) -> Any:
        value = super().resolve_or_missing(key)
        if value is missing:
            return value
        return self.environment.templar.finalize_lookup(key, value)


class _ConvergeEnvironment(Environment):
    context_class = _LazyContext

    def __init__(self, templar: 'TemplateEngine', **options: Any):
        super().__init__(**options)
        self.templar = templar

    def getattr(self, obj: Any, attribute: str) -> Any:
        return self.templar.finalize_lookup(attribute, super().getattr(obj, attribute))

    def getitem(self, obj: Any, argument: Any) -> Any:
        return self.templar.finalize_lookup(argument, super().getitem(obj, argument))


class TemplateEngine:
    """
    Jinja2 templating engine with Ansible-like behavior.

    One engine is created per run; it carries the run's vault so encrypted
    variables can be decrypted when a template touches them. Rendering has
    no side effects.
    """

    def __init__(self, vault: Optional[VaultLib] = None):
        self.vault = vault
        self.env = _ConvergeEnvironment(
            self,
            undefined=ConvergeUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self.env.filters.update(CUSTOM_FILTERS)
        self.env.tests.update(CUSTOM_TESTS)

        self._frames: List[Dict[str, Any]] = []
        self._resolving: List[Tuple[Any, str]] = []
        self._decrypted: Dict[str, str] = {}
        self._expressions: Dict[str, Any] = {}

    def render(self, template_str: str, variables: Mapping[str, Any]) -> str:
        """
        Render a template string with variables.

        Args:
            template_str: String potentially containing {{ }} expressions
            variables: Mapping of variables for rendering

        Returns:
            Rendered string

        Raises:
            TemplateSyntaxError: Malformed template
            UndefinedVariableError: Template references an undefined variable
            TemplateTypeError: Filter or operator applied to the wrong kind of value
        """
        if not isinstance(template_str, str):
            return template_str

        # Fast path: no template markers
        if not has_template(template_str):
            return template_str

        with self._translate_errors(template_str), self._frame(variables) as frame:
            template = self.env.from_string(template_str)
            return template.render(frame)

    def template(self, value: str, variables: Mapping[str, Any]) -> Any:
        """Render a string, returning the native value for a single ``{{ expr }}``."""
        if not has_template(value):
            return value

        match = SINGLE_EXPRESSION.match(value)
        if not match:
            return self.render(value, variables)

        result = self.evaluate(match.group('expr').strip(), variables, source=value)
        if isinstance(result, (dict, list)):
            with self._translate_errors(value):
                result = self.render_recursive(result, variables)
        return result

    def evaluate(self, expression: str, variables: Mapping[str, Any], source: Optional[str] = None) -> Any:
        """Evaluate a bare Jinja2 expression and return its native value."""
        source = source or expression
        with self._translate_errors(source), self._frame(variables) as frame:
            compiled = self._expressions.get(expression)
            if compiled is None:
                compiled = self.env.compile_expression(expression, undefined_to_none=False)
                self._expressions[expression] = compiled
            result = compiled(frame)
            if isinstance(result, Undefined):
                result._fail_with_undefined_error()
            return result

    def render_recursive(self, data: Any, variables: Mapping[str, Any]) -> Any:
        """
        Recursively render templates in a data structure.

        Args:
            data: Data structure (dict, list, or scalar)
            variables: Mapping of variables for rendering

        Returns:
            Data structure with all templates rendered and encrypted
            leaves decrypted
        """
        if isinstance(data, EncryptedValue):
            return self.decrypt(data)

        if isinstance(data, str):
            return self.template(data, variables)

        if isinstance(data, dict):
            return {
                self.render(k, variables) if isinstance(k, str) else k:
                self.render_recursive(v, variables)
                for k, v in data.items()
            }

        if isinstance(data, (list, tuple)):
            return [self.render_recursive(item, variables) for item in data]

        # Return other types as-is (int, float, bool, None)
        return data

    def evaluate_when(self, condition: Any, variables: Mapping[str, Any]) -> bool:
        """
        Evaluate a 'when' condition.

        Args:
            condition: Jinja2 expression (without {{ }}), a boolean, or a
                list of conditions that must all hold

        Returns:
            Boolean result of the condition

        Raises:
            TemplateError: If condition is invalid
        """
        if condition is None or condition == '':
            return True

        if isinstance(condition, bool):
            return condition

        if isinstance(condition, (list, tuple)):
            return all(self.evaluate_when(c, variables) for c in condition)

        if not isinstance(condition, str):
            return bool(condition)

        expression = condition.strip()
        match = SINGLE_EXPRESSION.match(expression)
        if match:
            expression = match.group('expr').strip()

        return self._to_bool(self.evaluate(expression, variables, source=condition))

    def decrypt(self, value: EncryptedValue, name: Optional[str] = None) -> str:
        """Decrypt an encrypted value with the run's vault."""
        if value.ciphertext in self._decrypted:
            return self._decrypted[value.ciphertext]
        if self.vault is None:
            raise VaultBadKeyError(
                f"Attempting to decrypt {name or 'a value'} but no vault secrets were provided"
            )
        logger.debug("Decrypting vaulted value %s", name or '')
        plaintext = value.decrypt(self.vault)
        self._decrypted[value.ciphertext] = plaintext
        return plaintext

    def finalize_lookup(self, key: Any, value: Any) -> Any:
        """Decrypt or render a value that a template just looked up."""
        if isinstance(value, EncryptedValue):
            return self.decrypt(value, name=str(key))

        if not has_template(value) or not self._frames:
            return value

        marker = (key, value)
        if marker in self._resolving:
            raise TemplateError(
                f"recursive loop detected in template string: {key}",
                template=value,
                variable=str(key),
            )
        self._resolving.append(marker)
        try:
            return self.template(value, self._frames[-1])
        finally:
            self._resolving.pop()

    @contextlib.contextmanager
    def _frame(self, variables: Mapping[str, Any]) -> Iterator[Dict[str, Any]]:
        if hasattr(variables, 'to_dict'):
            frame = variables.to_dict()
        elif isinstance(variables, dict):
            frame = variables
        else:
            frame = dict(variables)
        self._frames.append(frame)
        try:
            yield frame
        finally:
            self._frames.pop()

    @contextlib.contextmanager
    def _translate_errors(self, template_str: str) -> Iterator[None]:
        try:
            yield
        except ConvergeError:
            raise
        except UndefinedError as e:
            match = UNDEFINED_NAME.search(str(e))
            raise UndefinedVariableError(
                str(e),
                template=template_str,
                variable=match.group(1) if match else None,
            ) from e
        except JinjaSyntaxError as e:
            raise TemplateSyntaxError(f"Template syntax error: {e}", template=template_str) from e
        except (TypeError, ValueError, AttributeError) as e:
            raise TemplateTypeError(str(e), template=template_str) from e
        except RecursionError as e:
            raise TemplateError("recursive loop detected in template", template=template_str) from e
        except JinjaTemplateError as e:
            raise TemplateError(str(e), template=template_str) from e

    def _to_bool(self, value: Any) -> bool:
        """Convert a value to boolean (Ansible-style)."""
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            value_lower = value.lower().strip()
            if value_lower in ('true', 'yes', '1', 'on'):
                return True
            if value_lower in ('false', 'no', '0', 'off', ''):
                return False
            # Non-empty strings are truthy
            return bool(value.strip())
        return bool(value)
