"""Heuristic pre-checks for shell commands proposed by a model.

This is not a sandbox: it refuses the obviously dangerous and keeps
commands inside the selected workspace's trust level.
"""

from __future__ import annotations

import os
import re
from typing import Literal

from assistant_runs.storage.models import WorkspaceRecord

AccessMode = Literal["scoped", "root"]

_MUTATING_PATTERNS = [
    re.compile(r"(^|\s)(rm|mv|cp|chmod|chown|chgrp|touch|mkdir|rmdir|truncate|dd)(\s|$)", re.I),
    re.compile(r"(^|\s)(sed\s+-i|perl\s+-pi|awk\s+-i|ed\s)", re.I),
    re.compile(r"(^|\s)(git\s+(add|commit|reset|clean|rebase|merge|cherry-pick|push|tag|branch\s+-D))(\s|$)", re.I),
    re.compile(r"(^|\s)(npm|pnpm|yarn|bun)\s+(install|add|remove|update|up|upgrade|uninstall)(\s|$)", re.I),
    re.compile(r"(^|\s)(cargo\s+add|go\s+get\s+-u|pip\s+install|pip3\s+install)(\s|$)", re.I),
    re.compile(r"(^|\s)(tee\s+|cat\s+>)", re.I),
    re.compile(r"(>>?|<<)\s*[^|&]"),
]

_HIGH_RISK_PATTERNS = [
    re.compile(r"(^|\s)sudo(\s|$)", re.I),
    re.compile(r"rm\s+-rf\s+/$", re.I),
    re.compile(r"rm\s+-rf\s+/\s", re.I),
    re.compile(r":\(\)\s*\{\s*:\|:\s*&\s*\};\s*:"),
    re.compile(r"mkfs\.", re.I),
]


class CommandPolicyError(Exception):
    pass


def is_sub_path(parent: str, candidate: str) -> bool:
    parent = os.path.abspath(parent)
    candidate = os.path.abspath(candidate)
    try:
        return os.path.commonpath([parent, candidate]) == parent
    except ValueError:
        return False


def is_likely_mutating(command: str) -> bool:
    normalized = command.strip()
    return any(pattern.search(normalized) for pattern in _MUTATING_PATTERNS)


def is_high_risk(command: str) -> bool:
    return any(pattern.search(command) for pattern in _HIGH_RISK_PATTERNS)


def enforce_command_policy(
    command: str,
    cwd: str,
    access_mode: AccessMode,
    workspace: WorkspaceRecord | None,
) -> None:
    command = command.strip()
    if not command:
        raise CommandPolicyError("Refusing to run an empty shell command.")
    if is_high_risk(command):
        raise CommandPolicyError("Blocked high-risk command by policy.")

    trust_level = workspace.trust_level if workspace is not None else None
    if trust_level == "untrusted":
        raise CommandPolicyError("Shell execution is disabled for untrusted workspaces.")

    if access_mode == "scoped":
        if workspace is None:
            raise CommandPolicyError("Scoped execution requires a selected workspace.")
        root = os.path.abspath(workspace.root_path)
        resolved_cwd = os.path.abspath(cwd)
        if not is_sub_path(root, resolved_cwd):
            raise CommandPolicyError(f'Scoped execution blocked: cwd "{resolved_cwd}" is outside workspace root.')

    if trust_level == "read_only" and is_likely_mutating(command):
        raise CommandPolicyError("Blocked mutating command in read-only workspace.")

    if access_mode == "root" and workspace is not None and trust_level != "trusted":
        raise CommandPolicyError("Root mode is allowed only for trusted workspaces.")
