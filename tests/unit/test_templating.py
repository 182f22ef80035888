"""
Tests for the Jinja2 template engine and condition evaluation.
"""

import pytest

from converge.engine.errors import (
    TemplateError,
    TemplateSyntaxError,
    TemplateTypeError,
    UndefinedVariableError,
    VaultBadKeyError,
)
from converge.engine.templating import TemplateEngine, UnsafeText, wrap_unsafe
from converge.engine.variables import Tier, VariableBag
from converge.engine.vault import EncryptedValue, VaultLib, VaultSecret


@pytest.fixture
def templar():
    return TemplateEngine()


class TestRender:
    """Rendering strings and data structures."""

    def test_plain_string_passthrough(self, templar):
        """Strings without markers are returned unchanged."""
        assert templar.template("no templates here", {}) == "no templates here"

    def test_interpolation(self, templar):
        """Mixed text renders to a string."""
        assert templar.template("port {{ port }}", {"port": 80}) == "port 80"

    def test_single_expression_keeps_native_type(self, templar):
        """A lone {{ expr }} evaluates to its native value."""
        assert templar.template("{{ ports }}", {"ports": [80, 443]}) == [80, 443]
        assert templar.template("{{ count + 1 }}", {"count": 2}) == 3
        assert templar.template("{{ enabled }}", {"enabled": False}) is False

    def test_render_recursive(self, templar):
        """Dicts and lists are rendered leaf by leaf."""
        data = {"name": "{{ pkg }}", "opts": ["{{ flag }}", 3], "state": "present"}
        result = templar.render_recursive(data, {"pkg": "nginx", "flag": "-y"})
        assert result == {"name": "nginx", "opts": ["-y", 3], "state": "present"}

    def test_nested_variable_templates(self, templar):
        """A variable whose value is a template is rendered on lookup."""
        variables = {"base": "/srv", "app_dir": "{{ base }}/app", "log": "{{ app_dir }}/log"}
        assert templar.template("{{ log }}", variables) == "/srv/app/log"

    def test_renders_variable_bag(self, templar):
        """A VariableBag can be used directly as the template context."""
        bag = VariableBag().with_layer(Tier.PLAY, {"who": "world"})
        assert templar.render("hello {{ who }}", bag) == "hello world"

    def test_unsafe_text_is_not_templated(self, templar):
        """Registered output containing braces is left alone."""
        output = wrap_unsafe({"stdout": "{{ not_a_var }}"})
        assert isinstance(output["stdout"], UnsafeText)
        assert templar.template("{{ result.stdout }}", {"result": output}) == "{{ not_a_var }}"

    def test_filters(self, templar):
        """Common filters are available."""
        variables = {"items": ["b", "a", "b"], "name": " Web "}
        assert templar.template("{{ items | unique | join(',') }}", variables) == "b,a"
        assert templar.template("{{ name | trim | lower }}", variables) == "web"
        assert templar.template("{{ '/etc/nginx/nginx.conf' | basename }}", {}) == "nginx.conf"


class TestUndefined:
    """Undefined variables and defaults."""

    def test_undefined_is_error(self, templar):
        """An undefined reference fails with the variable name."""
        with pytest.raises(UndefinedVariableError) as exc_info:
            templar.template("{{ missing }}", {})
        assert exc_info.value.variable == "missing"

    def test_undefined_in_text(self, templar):
        """Undefined names inside text fail as well."""
        with pytest.raises(UndefinedVariableError):
            templar.render("value: {{ missing }}", {})

    def test_default_filter(self, templar):
        """default() guards undefined names."""
        assert templar.template("{{ missing | default('x') }}", {}) == "x"

    def test_is_defined(self, templar):
        """Nested attribute chains can be tested for definedness."""
        assert templar.evaluate("a.b.c is defined", {}) is False
        assert templar.evaluate("a is defined", {"a": 1}) is True


class TestTemplateErrors:
    """Syntax, type and recursion errors."""

    def test_syntax_error(self, templar):
        """Malformed templates raise TemplateSyntaxError."""
        with pytest.raises(TemplateSyntaxError):
            templar.template("{{ foo( }}", {"foo": 1})

    def test_type_error(self, templar):
        """Operators on the wrong kinds raise TemplateTypeError."""
        with pytest.raises(TemplateTypeError):
            templar.template("{{ name + 1 }}", {"name": "web"})

    @pytest.mark.parametrize("expression", [
        "{{ xs | upper }}",
        "{{ xs | trim }}",
        "{{ xs | replace('1', '2') }}",
        "{{ xs | basename }}",
        "{{ config | lower }}",
        "{{ config | regex_replace('a', 'b') }}",
    ])
    def test_string_filter_on_collection(self, templar, expression):
        """String filters reject lists and mappings."""
        with pytest.raises(TemplateTypeError):
            templar.template(expression, {"xs": [1, 2], "config": {"port": 80}})

    def test_string_filter_on_number(self, templar):
        """Numbers are accepted by string filters."""
        assert templar.template("{{ port | replace('0', '1') }}", {"port": 8080}) == "8181"

    def test_recursive_loop(self, templar):
        """Variables that reference each other are detected."""
        with pytest.raises(TemplateError, match="recursive loop detected"):
            templar.template("{{ a }}", {"a": "{{ b }}", "b": "{{ a }}"})

    def test_self_reference(self, templar):
        """A variable that references itself is a loop too."""
        with pytest.raises(TemplateError, match="recursive loop detected"):
            templar.template("{{ x }}", {"x": "{{ x }}-suffix"})


class TestVaultedValues:
    """Encrypted values are decrypted lazily."""

    def _encrypted(self, plaintext: str) -> EncryptedValue:
        vault = VaultLib([VaultSecret("pw")])
        return EncryptedValue(vault.encrypt(plaintext))

    def test_decrypt_on_use(self):
        """A template that uses an encrypted value sees the plaintext."""
        templar = TemplateEngine(VaultLib([VaultSecret("pw")]))
        variables = {"db_password": self._encrypted("s3cret")}

        assert templar.template("pw={{ db_password }}", variables) == "pw=s3cret"

    def test_unused_secret_needs_no_key(self):
        """Values that are never dereferenced are never decrypted."""
        templar = TemplateEngine()
        variables = {"db_password": self._encrypted("s3cret"), "user": "app"}

        assert templar.template("{{ user }}", variables) == "app"

    def test_missing_key_on_use(self):
        """Using an encrypted value without a vault is a bad key error."""
        templar = TemplateEngine()
        with pytest.raises(VaultBadKeyError):
            templar.template("{{ token }}", {"token": self._encrypted("abc")})

    def test_wrong_key_on_use(self):
        """Using an encrypted value with the wrong password is a bad key error."""
        templar = TemplateEngine(VaultLib([VaultSecret("other")]))
        with pytest.raises(VaultBadKeyError):
            templar.template("{{ token }}", {"token": self._encrypted("abc")})

    def test_nested_encrypted_attribute(self):
        """Encrypted values inside dicts are decrypted on attribute access."""
        templar = TemplateEngine(VaultLib([VaultSecret("pw")]))
        variables = {"db": {"password": self._encrypted("inner")}}

        assert templar.template("{{ db.password }}", variables) == "inner"
        assert templar.render_recursive({"pw": variables["db"]["password"]}, {}) == {"pw": "inner"}


class TestConditions:
    """when / changed_when / failed_when evaluation."""

    @pytest.mark.parametrize("condition,expected", [
        (None, True),
        ("", True),
        (True, True),
        (False, False),
        ("os == 'debian'", True),
        ("os != 'debian'", False),
        ("{{ os == 'debian' }}", True),
        ("'web' in group_names", True),
        ("'db' not in group_names", True),
        ("port > 80 and os == 'debian'", False),
        ("port > 80 or os == 'debian'", True),
        ("not (port == 80)", False),
        ("missing is not defined", True),
        ("flag", False),
        (["os == 'debian'", "port == 80"], True),
        (["os == 'debian'", "port == 81"], False),
    ])
    def test_evaluate_when(self, templar, condition, expected):
        """Conditions follow the Jinja2 expression grammar."""
        variables = {"os": "debian", "port": 80, "group_names": ["web"], "flag": "no"}
        assert templar.evaluate_when(condition, variables) is expected

    def test_result_tests(self, templar):
        """Task results support the changed/failed/succeeded tests."""
        variables = {"result": {"changed": True, "failed": False}}
        assert templar.evaluate_when("result is changed", variables) is True
        assert templar.evaluate_when("result is failed", variables) is False
        assert templar.evaluate_when("result is succeeded", variables) is True

    def test_undefined_in_condition(self, templar):
        """An undefined name in a condition is an error, not False."""
        with pytest.raises(UndefinedVariableError):
            templar.evaluate_when("nope == 1", {})
