# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge: declarative configuration-management engine.

Runs Ansible-style playbooks against an inventory of hosts: every host
converges on the declared state through its own ordered task list, with
hosts processed in parallel.

Features:
    - INI, YAML, JSON and dynamic inventories with group_vars/host_vars
    - Tiered variable precedence and Jinja2 templating
    - Per-host handlers, loops, conditionals and check mode
    - Ansible-vault compatible secrets
    - Local and SSH (asyncssh) connections

This package exposes the release metadata; the engine lives in
``converge.engine``.
"""

from __future__ import annotations

from converge.release import __version__, __author__, __codename__

__all__ = [
    "__version__",
    "__author__",
    "__codename__",
]
