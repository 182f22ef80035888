"""
Tests for inventory parsing, validation and host patterns.
"""

import json
import stat
import sys
from pathlib import Path

import pytest

from converge.engine.errors import (
    DuplicateHostError,
    InventoryCycleError,
    InventoryError,
    UnknownGroupError,
)
from converge.engine.inventory import InventoryManager


WEB_DB_INVENTORY = """
[webservers]
web1 ansible_host=10.0.0.1
web2 ansible_host=10.0.0.2

[dbservers]
db1

[prod:children]
webservers
dbservers

[webservers:vars]
http_port=8080
"""


class TestINIInventoryParser:
    """Test INI inventory file parsing."""

    def test_parse_simple_host(self, tmp_path: Path):
        """Test parsing a simple host."""
        inventory_file = tmp_path / "inventory.ini"
        inventory_file.write_text("localhost\n")

        mgr = InventoryManager()
        mgr.parse(str(inventory_file))

        hosts = mgr.get_hosts("all")
        assert len(hosts) == 1
        assert hosts[0].name == "localhost"
        assert hosts[0].connection == "local"

    def test_parse_host_with_vars(self, tmp_path: Path):
        """Test parsing hosts with inline variables."""
        inventory_file = tmp_path / "inventory.ini"
        inventory_file.write_text(
            "web1 ansible_host=192.168.1.10 ansible_user=admin ansible_port=2222\n"
        )

        mgr = InventoryManager()
        mgr.parse(str(inventory_file))

        host = mgr.get_hosts("all")[0]
        assert host.address == "192.168.1.10"
        assert host.user == "admin"
        assert host.port == 2222
        assert host.connection == "ssh"

    def test_groups_and_children(self, inventory_from):
        """Child groups contribute their hosts to the parent."""
        inv = inventory_from(WEB_DB_INVENTORY)

        assert [h.name for h in inv.get_hosts("webservers")] == ["web1", "web2"]
        assert [h.name for h in inv.get_hosts("prod")] == ["web1", "web2", "db1"]
        assert inv.groups["webservers"].parents == ["prod"]
        assert inv.groups["prod"].parents == ["all"]

    def test_group_vars_section(self, inventory_from):
        """[group:vars] values are typed."""
        inv = inventory_from(WEB_DB_INVENTORY)
        assert inv.groups["webservers"].vars == {"http_port": 8080}

    def test_host_range_expansion(self, inventory_from):
        """web[01:03] expands to three zero-padded hosts."""
        inv = inventory_from("[web]\nweb[01:03].example.com\n")
        assert [h.name for h in inv.get_hosts("web")] == [
            "web01.example.com",
            "web02.example.com",
            "web03.example.com",
        ]

    def test_ungrouped_hosts(self, inventory_from):
        """Hosts outside any group land in 'ungrouped'."""
        inv = inventory_from("loner\n[web]\nweb1\n")
        assert [h.name for h in inv.get_hosts("ungrouped")] == ["loner"]
        assert inv.group_names(inv.hosts["loner"]) == ["ungrouped"]
        assert inv.group_names(inv.hosts["web1"]) == ["web"]

    def test_missing_file(self, tmp_path: Path):
        """A missing inventory path is an InventoryError."""
        with pytest.raises(InventoryError, match="does not exist"):
            InventoryManager.resolve(tmp_path / "nope.ini")


class TestYAMLInventory:
    """Test the hierarchical YAML/JSON schema."""

    def test_nested_children_and_vars(self, write_file):
        """Children nest with their own hosts and vars."""
        path = write_file("hosts.yml", """
            all:
              vars:
                ntp: pool.ntp.org
              children:
                webservers:
                  hosts:
                    web1:
                      ansible_host: 10.0.0.1
                    web2:
                  vars:
                    http_port: 80
                dbservers:
                  hosts:
                    db1: {}
        """)

        inv = InventoryManager.resolve(path)

        assert [h.name for h in inv.get_hosts("all")] == ["web1", "web2", "db1"]
        assert inv.hosts["web1"].address == "10.0.0.1"
        assert inv.groups["all"].vars == {"ntp": "pool.ntp.org"}
        assert inv.get_host_vars("web2") == {"ntp": "pool.ntp.org", "http_port": 80}

    def test_json_dynamic_form(self, write_file):
        """The dynamic-inventory JSON form is accepted as a file."""
        path = write_file("inventory.json", json.dumps({
            "web": {"hosts": ["web1"], "vars": {"role": "frontend"}},
            "db": ["db1"],
            "_meta": {"hostvars": {"web1": {"ansible_user": "deploy"}}},
        }))

        inv = InventoryManager.resolve(path)

        assert inv.hosts["web1"].user == "deploy"
        assert [h.name for h in inv.get_hosts("db")] == ["db1"]

    def test_callable_source(self):
        """A Python callable can supply inventory data."""
        def source():
            return {"app": {"hosts": {"app1": {"tier": "gold"}}}}

        inv = InventoryManager.resolve(source)

        assert inv.hosts["app1"].get_variable("tier") == "gold"


class TestVarsDirectories:
    """Test group_vars/ and host_vars/ loading."""

    def test_group_and_host_vars(self, write_file, tmp_path: Path):
        """Vars files next to the inventory are merged in."""
        write_file("inventory/hosts.ini", "[web]\nweb1\n")
        write_file("inventory/group_vars/web.yml", "http_port: 80\n")
        write_file("inventory/group_vars/all/main.yml", "env: prod\n")
        write_file("inventory/host_vars/web1.yml", "http_port: 8080\n")

        inv = InventoryManager.resolve(tmp_path / "inventory")

        assert inv.groups["web"].vars == {"http_port": 80}
        assert inv.groups["all"].vars == {"env": "prod"}
        assert inv.get_host_vars("web1") == {"env": "prod", "http_port": 8080}


class TestInventoryValidation:
    """Cycle, duplicate and unknown group handling."""

    def test_cycle_is_rejected(self, inventory_from):
        """A group that is its own ancestor fails the load and names the cycle."""
        with pytest.raises(InventoryCycleError) as exc_info:
            inventory_from("""
                [a:children]
                b

                [b:children]
                c

                [c:children]
                a
            """)

        assert set(exc_info.value.cycle) == {"a", "b", "c"}
        assert exc_info.value.cycle[0] == exc_info.value.cycle[-1]

    def test_self_cycle_is_rejected(self, inventory_from):
        """A group listed as its own child is a cycle too."""
        with pytest.raises(InventoryCycleError):
            inventory_from("[loop:children]\nloop\n")

    def test_conflicting_duplicate_host(self, inventory_from):
        """The same host with two addresses is rejected."""
        with pytest.raises(DuplicateHostError) as exc_info:
            inventory_from("""
                [web]
                node1 ansible_host=10.0.0.1

                [db]
                node1 ansible_host=10.0.0.2
            """)

        assert exc_info.value.host == "node1"
        assert exc_info.value.attribute == "ansible_host"

    def test_compatible_duplicate_host_merges(self, inventory_from):
        """Compatible re-declarations merge memberships and vars."""
        inv = inventory_from("""
            [web]
            node1 ansible_host=10.0.0.1

            [db]
            node1 ansible_host=10.0.0.1 db_port=5432
        """)

        host = inv.hosts["node1"]
        assert host.groups == ["web", "db"]
        assert host.get_variable("db_port") == 5432

    def test_unknown_group_in_strict_mode(self, inventory_from):
        """A plain name that is neither group nor host is an error for play selectors."""
        inv = inventory_from(WEB_DB_INVENTORY)

        with pytest.raises(UnknownGroupError):
            inv.get_hosts("nonexistent", strict=True)
        assert inv.get_hosts("nonexistent") == []

    def test_wildcard_may_match_nothing(self, inventory_from):
        """Wildcards and regexes are allowed to select zero hosts."""
        inv = inventory_from(WEB_DB_INVENTORY)

        assert inv.get_hosts("cache*", strict=True) == []
        assert inv.get_hosts("~^cache", strict=True) == []

    def test_membership_frozen_after_resolve(self, inventory_from):
        """Group membership cannot change once the inventory is resolved."""
        inv = inventory_from(WEB_DB_INVENTORY)

        with pytest.raises(InventoryError):
            inv.hosts["web1"].add_group("dbservers")
        with pytest.raises(InventoryError):
            inv.parse(lambda: {"x": ["y"]})


class TestHostPatterns:
    """Host selection patterns."""

    @pytest.mark.parametrize("pattern,expected", [
        ("all", ["web1", "web2", "db1"]),
        ("*", ["web1", "web2", "db1"]),
        ("web1", ["web1"]),
        ("webservers:dbservers", ["web1", "web2", "db1"]),
        ("db1,web2", ["db1", "web2"]),
        ("prod:&webservers", ["web1", "web2"]),
        ("prod:!web1", ["web2", "db1"]),
        ("web*", ["web1", "web2"]),
        ("~db\\d", ["db1"]),
    ])
    def test_patterns(self, inventory_from, pattern, expected):
        """Patterns select the expected hosts, in the order the terms name them."""
        inv = inventory_from(WEB_DB_INVENTORY)
        assert [h.name for h in inv.get_hosts(pattern)] == expected


class TestGroupAncestors:
    """Ancestor ordering used for variable precedence."""

    def test_nearest_group_last(self, inventory_from):
        """Ancestors run from 'all' to the nearest group."""
        inv = inventory_from("""
            [web]
            web1

            [frontend:children]
            web

            [site:children]
            frontend
        """)

        names = [g.name for g in inv.get_group_ancestors("web1")]
        assert names == ["all", "site", "frontend", "web"]

    def test_same_depth_uses_priority(self, inventory_from):
        """Sibling groups order by ansible_group_priority, then name."""
        inv = inventory_from("""
            [alpha]
            node

            [beta]
            node

            [alpha:vars]
            ansible_group_priority=10
        """)

        names = [g.name for g in inv.get_group_ancestors("node")]
        assert names == ["all", "beta", "alpha"]


class TestInventoryReporting:
    """--list and --graph output."""

    def test_list_inventory_shape(self, inventory_from):
        """list_inventory matches the dynamic inventory JSON shape."""
        inv = inventory_from(WEB_DB_INVENTORY)
        data = inv.list_inventory()

        assert data["webservers"]["hosts"] == ["web1", "web2"]
        assert data["prod"]["children"] == ["webservers", "dbservers"]
        assert data["_meta"]["hostvars"]["web1"] == {"ansible_host": "10.0.0.1"}

    def test_graph(self, inventory_from):
        """graph renders the group tree."""
        inv = inventory_from("[web]\nweb1\n")
        lines = inv.graph().splitlines()

        assert lines[0] == "@all:"
        assert "  |--@web:" in lines
        assert "    |--web1" in lines


@pytest.mark.skipif(sys.platform == 'win32', reason="Dynamic inventory via execute bit not supported on Windows")
class TestDynamicInventory:
    """Tests for dynamic inventory scripts."""

    def _script(self, tmp_path: Path, body: str) -> Path:
        script = tmp_path / "inventory.py"
        script.write_text(f"#!{sys.executable}\n{body}")
        script.chmod(script.stat().st_mode | stat.S_IXUSR)
        return script

    def test_script_with_meta(self, tmp_path: Path):
        """Executable scripts are run with --list."""
        script = self._script(tmp_path, '''
import json, sys
if sys.argv[1] == "--list":
    print(json.dumps({
        "webservers": {"hosts": ["web1.example.com"], "vars": {"http_port": 80}},
        "_meta": {"hostvars": {"web1.example.com": {"ansible_user": "admin"}}},
    }))
''')

        inv = InventoryManager.resolve(script)

        host = inv.hosts["web1.example.com"]
        assert host.user == "admin"
        assert inv.groups["webservers"].vars["http_port"] == 80

    def test_script_without_meta_is_asked_per_host(self, tmp_path: Path):
        """Old-style scripts answer --host for each host."""
        script = self._script(tmp_path, '''
import json, sys
if sys.argv[1] == "--list":
    print(json.dumps({"db": ["db1"]}))
else:
    print(json.dumps({"role": "primary"}))
''')

        inv = InventoryManager.resolve(script)

        assert inv.hosts["db1"].get_variable("role") == "primary"

    def test_script_failure(self, tmp_path: Path):
        """A failing script is an InventoryError."""
        script = self._script(tmp_path, "import sys\nsys.exit(3)\n")

        with pytest.raises(InventoryError, match="exited with 3"):
            InventoryManager.resolve(script)
