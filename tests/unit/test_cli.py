"""Unit tests for CLI modules."""

import json

import pytest

from converge import __version__
from converge.cli import inventory, playbook, vault
from converge.engine.vault import EncryptedValue, VaultLib, VaultSecret, is_encrypted, load_yaml


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep user config files and CONVERGE_* variables out of CLI runs."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    for name in ("CONVERGE_CONFIG", "CONVERGE_FORKS", "CONVERGE_TIMEOUT", "CONVERGE_CHECK_MODE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def password_file(write_file):
    return write_file(".vault_pass", "s3cret\n")


class TestPlaybookCLI:
    """Tests for playbook CLI."""

    def test_create_parser(self):
        parser = playbook.create_parser()
        assert parser.prog == "converge-playbook"

    def test_version_string(self):
        version = playbook.get_version_string()
        assert __version__ in version

    def test_no_args_shows_help(self, capsys):
        assert playbook.main([]) == 0
        assert "usage" in capsys.readouterr().out

    def test_inventory_required(self, write_file):
        """A playbook without -i is a usage error."""
        site = write_file("site.yml", "- hosts: all\n  tasks: []\n")
        assert playbook.main([str(site)]) == 3

    def test_extra_vars_forms(self, write_file):
        """key=value, JSON and @file extra vars are merged in order."""
        vars_file = write_file("extra.yml", "region: eu\n")

        result = playbook._parse_extra_vars([
            "port=8080 name=web",
            '{"debug": true}',
            f"@{vars_file}",
        ])

        assert result == {"port": 8080, "name": "web", "debug": True, "region": "eu"}

    def test_bad_extra_vars(self, write_file):
        """Malformed extra vars fail before anything runs."""
        inv = write_file("hosts.ini", "localhost\n")
        site = write_file("site.yml", "- hosts: all\n  tasks: []\n")

        assert playbook.main(["-i", str(inv), str(site), "-e", "novalue"]) == 3

    def test_run_localhost_json(self, write_file, capsys):
        """A playbook against localhost runs and reports JSON."""
        inv = write_file("hosts.ini", "localhost\n")
        site = write_file("site.yml", """
            - hosts: localhost
              tasks:
                - debug:
                    msg: "{{ greeting }}"
        """)

        code = playbook.main(["-i", str(inv), str(site), "-e", "greeting=hello", "--json"])

        assert code == 0
        report = json.loads(capsys.readouterr().out)
        assert report["plays"][0]["tasks"][0]["msg"] == "hello"

    def test_play_log(self, write_file, capsys):
        """Without --json the play log and recap are printed."""
        inv = write_file("hosts.ini", "localhost\n")
        site = write_file("site.yml", """
            - name: Greet
              hosts: localhost
              tasks:
                - name: Say hello
                  debug:
                    msg: hello
        """)

        assert playbook.main(["-i", str(inv), str(site)]) == 0

        out = capsys.readouterr().out
        assert "PLAY [Greet]" in out
        assert "TASK [Say hello]" in out
        assert "ok: [localhost] => hello" in out
        assert "PLAY RECAP" in out

    @pytest.mark.parametrize("content,expected", [
        ("- hosts: localhost\n  tasks:\n    - fail: msg=no\n", 2),
        ("- hosts: localhost\n  tasks: [\n", 3),
        ("- hosts: nowhere\n  tasks: []\n", 3),
        ("- hosts: localhost\n  tasks:\n    - block: []\n", 4),
    ])
    def test_exit_codes(self, write_file, content, expected):
        """Exit codes distinguish host failures, parse errors and unsupported features."""
        inv = write_file("hosts.ini", "localhost\n")
        site = write_file("site.yml", content)

        assert playbook.main(["-i", str(inv), str(site)]) == expected

    def test_json_error(self, write_file, capsys):
        """Parse errors are reported as a JSON document in JSON mode."""
        inv = write_file("hosts.ini", "localhost\n")
        site = write_file("site.yml", "- hosts: localhost\n  tasks: [\n")

        assert playbook.main(["-i", str(inv), str(site), "--json"]) == 3

        error = json.loads(capsys.readouterr().out)
        assert error["error_type"] == "parse_error"
        assert error["exit_code"] == 3

    def test_config_file_forks(self, write_file):
        """Settings come from converge.cfg in the working directory."""
        write_file("converge.cfg", "[defaults]\nforks = 0\n")
        inv = write_file("hosts.ini", "localhost\n")
        site = write_file("site.yml", "- hosts: all\n  tasks: []\n")

        assert playbook.main(["-i", str(inv), str(site)]) == 3
        assert playbook.main(["-i", str(inv), str(site), "-f", "2"]) == 0


class TestInventoryCLI:
    """Tests for inventory CLI."""

    INVENTORY = "[web]\nweb1 http_port=8080\nweb2\n[db]\ndb1\n[prod:children]\nweb\ndb\n"

    def test_create_parser(self):
        parser = inventory.create_parser()
        assert parser.prog == "converge-inventory"

    def test_list_returns_json(self, write_file, capsys):
        inv = write_file("hosts.ini", self.INVENTORY)

        assert inventory.main(["-i", str(inv), "--list"]) == 0

        data = json.loads(capsys.readouterr().out)
        assert data["web"]["hosts"] == ["web1", "web2"]
        assert data["_meta"]["hostvars"]["web1"]["http_port"] == 8080

    def test_host_returns_json(self, write_file, capsys):
        inv = write_file("hosts.ini", self.INVENTORY)

        assert inventory.main(["-i", str(inv), "--host", "web1"]) == 0

        assert json.loads(capsys.readouterr().out)["http_port"] == 8080

    def test_unknown_host(self, write_file):
        inv = write_file("hosts.ini", self.INVENTORY)
        assert inventory.main(["-i", str(inv), "--host", "nope"]) == 1

    def test_graph(self, write_file, capsys):
        inv = write_file("hosts.ini", self.INVENTORY)

        assert inventory.main(["-i", str(inv), "--graph", "prod"]) == 0

        out = capsys.readouterr().out
        assert out.startswith("@prod:")
        assert "  |--@web:" in out
        assert "    |--web1" in out

    def test_cycle_is_parse_error(self, write_file):
        inv = write_file("hosts.ini", "[a:children]\nb\n[b:children]\na\n")
        assert inventory.main(["-i", str(inv), "--list"]) == 3

    def test_vaulted_vars_stay_encrypted(self, write_file, password_file, capsys):
        """--list never prints decrypted secrets."""
        envelope = VaultLib([VaultSecret("s3cret")]).encrypt("hunter2")
        body = "\n".join("  " + line for line in envelope.splitlines())
        write_file("inventory/hosts.ini", "[web]\nweb1\n")
        write_file("inventory/host_vars/web1.yml", f"db_password: !vault |\n{body}\n")

        assert inventory.main(["-i", "inventory", "--list", "--vault-password-file", str(password_file)]) == 0

        out = capsys.readouterr().out
        assert "hunter2" not in out
        assert "__converge_vault" in out


class TestVaultCLI:
    """Tests for vault CLI."""

    def test_create_parser(self):
        parser = vault.create_parser()
        assert parser.prog == "converge-vault"

    def test_encrypt_decrypt_file(self, write_file, password_file):
        """Files are encrypted and decrypted in place."""
        secrets = write_file("secrets.yml", "api_key: abc\n")

        assert vault.main(["--vault-password-file", str(password_file), "encrypt", str(secrets)]) == 0
        assert is_encrypted(secrets.read_text())

        assert vault.main(["--vault-password-file", str(password_file), "decrypt", str(secrets)]) == 0
        assert secrets.read_text() == "api_key: abc\n"

    def test_encrypt_twice_fails(self, write_file, password_file):
        secrets = write_file("secrets.yml", "api_key: abc\n")
        vault.main(["--vault-password-file", str(password_file), "encrypt", str(secrets)])

        assert vault.main(["--vault-password-file", str(password_file), "encrypt", str(secrets)]) == 1

    def test_decrypt_wrong_password(self, write_file, password_file):
        secrets = write_file("secrets.yml", VaultLib([VaultSecret("other")]).encrypt("x: 1\n"))

        assert vault.main(["--vault-password-file", str(password_file), "decrypt", str(secrets)]) == 1

    def test_encrypt_string(self, password_file, capsys):
        """encrypt_string prints a YAML snippet that loads back as a vaulted value."""
        code = vault.main([
            "--vault-password-file", str(password_file),
            "encrypt_string", "hunter2", "--name", "db_password",
        ])

        assert code == 0
        snippet = capsys.readouterr().out
        value = load_yaml(snippet)["db_password"]
        assert isinstance(value, EncryptedValue)
        assert value.decrypt(VaultLib([VaultSecret("s3cret")])) == "hunter2"
