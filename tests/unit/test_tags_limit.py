"""
Tests for tags and limit filtering.
"""

import pytest

from converge.engine.playbook import PlaybookParser
from converge.engine.scheduler import select_by_tags


class TestTagsParsing:
    """Test that tags are parsed onto tasks."""

    def test_task_has_tags(self, write_file):
        """Lists and single strings are both accepted."""
        playbook = write_file("playbook.yml", """
            - hosts: all
              tasks:
                - name: Untagged task
                  debug:
                    msg: "No tags"
                - name: Tagged task
                  debug:
                    msg: "Has tags"
                  tags:
                    - deploy
                    - config
                - name: Single tag
                  debug:
                    msg: "One tag"
                  tags: setup
        """)

        tasks = PlaybookParser(playbook).parse()[0].tasks

        assert tasks[0].tags == []
        assert set(tasks[1].tags) == {"deploy", "config"}
        assert tasks[2].tags == ["setup"]

    def test_comma_separated_tags(self, write_file):
        """A comma-separated string is split into tags."""
        playbook = write_file("playbook.yml", """
            - hosts: all
              tasks:
                - debug: msg=hi
                  tags: "web, db"
        """)

        assert PlaybookParser(playbook).parse()[0].tasks[0].tags == ["web", "db"]


class TestSelectByTags:
    """Test --tags / --skip-tags selection."""

    @pytest.mark.parametrize("task_tags,only,skip,expected", [
        ([], [], [], True),
        (["deploy"], [], [], True),
        (["deploy"], ["deploy"], [], True),
        (["deploy"], ["config"], [], False),
        ([], ["config"], [], False),
        (["deploy", "config"], ["config"], [], True),
        (["deploy"], [], ["deploy"], False),
        (["deploy"], ["deploy"], ["deploy"], False),
        (["always"], ["config"], [], True),
        (["always"], ["config"], ["always"], False),
        (["never"], [], [], False),
        (["never", "debug"], [], [], False),
        (["never", "debug"], ["debug"], [], True),
        (["never"], ["never"], [], True),
        (["never", "debug"], ["all"], [], False),
        (["web"], ["tagged"], [], True),
        ([], ["tagged"], [], False),
        ([], ["untagged"], [], True),
        (["web"], ["untagged"], [], False),
        (["web"], [], ["tagged"], False),
        ([], [], ["untagged"], False),
        (["web"], ["all"], [], True),
    ])
    def test_selection(self, task_tags, only, skip, expected):
        """Selection follows the special tag rules."""
        assert select_by_tags(task_tags, only, skip) is expected


class TestLimit:
    """Test --limit narrowing of play hosts."""

    @pytest.mark.parametrize("limit,expected", [
        ("web1", ["web1"]),
        ("webservers:!web2", ["web1", "web3"]),
        ("web*", ["web1", "web2", "web3"]),
        ("db1", []),
    ])
    def test_limit_patterns(self, write_file, make_runner, limit, expected):
        """The limit is intersected with every play's selection."""
        inventory = write_file("hosts.ini", "[webservers]\nweb1\nweb2\nweb3\n[db]\ndb1\n")
        playbook = write_file("site.yml", "- hosts: webservers\n  tasks:\n    - ping:\n")

        runner = make_runner(inventory, playbook, limit=limit)
        selections = runner.load()

        assert [h.name for h in selections[0][2]] == expected
