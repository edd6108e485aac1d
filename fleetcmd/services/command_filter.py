"""Command denylist and kind classification.

Destructive patterns are rejected at submission time regardless of role.
Kind classification decides whether a command runs inside the server's
application directory.
"""

from __future__ import annotations

import re
import shlex

from fleetcmd.config import settings
from fleetcmd.models.commands import CommandKind
from fleetcmd.models.servers import Server

# ── ALWAYS-DENIED patterns ────────────────────────────────────────────────
DENY_PATTERNS: list[re.Pattern[str]] = [
    re.compile(
        r"\brm\s+(-{1,2}[a-z-]+\s+)*(-[a-z]*r[a-z]*|--recursive)\s+(-{1,2}[a-z-]+\s+)*/+(\s|\*|$)",
        re.I,
    ),
    re.compile(r"\brm\s+(-{1,2}[a-z-]+\s+)*--no-preserve-root\b", re.I),
    re.compile(r"\bmkfs(\.\w+)?\b", re.I),
    re.compile(r"\bdd\b.*\bof=/dev/(sd|nvme|hd|vd|xvd|mmcblk)", re.I),
    re.compile(r">\s*/dev/(sd|nvme|hd|vd|xvd)[a-z0-9]*\b", re.I),
    re.compile(r"^\s*(sudo\s+)?(shutdown|reboot|halt|poweroff)\b", re.I),
    re.compile(r"^\s*(sudo\s+)?init\s+[06]\b", re.I),
    re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"),
    re.compile(
        r"\bch(mod|own)\s+(-{1,2}[a-zA-Z-]+\s+)*(-[a-zA-Z]*R[a-zA-Z]*|--recursive)\s+"
        r"(-{1,2}[a-zA-Z-]+\s+)*\S+\s+/+(\s|$)",
    ),
    re.compile(r"\bwipefs\b", re.I),
]

# ── Kind classification ───────────────────────────────────────────────────
KIND_PATTERNS: list[tuple[CommandKind, re.Pattern[str]]] = [
    (CommandKind.artisan, re.compile(r"^\s*php(\d+(\.\d+)?)?\s+artisan\b", re.I)),
    (CommandKind.composer, re.compile(r"^\s*composer(\.phar)?\b", re.I)),
    (CommandKind.git, re.compile(r"^\s*git\b", re.I)),
    (
        CommandKind.system,
        re.compile(
            r"^\s*(sudo\s+)?(systemctl|service|journalctl|df|du|free|uptime|top|ps"
            r"|uname|whoami|hostname|nginx|php-fpm\S*|supervisorctl|crontab|tail"
            r"|cat|ls|apt|apt-get|yum|dnf)\b",
            re.I,
        ),
    ),
]

# Kinds that run from the server's application directory
WORKDIR_KINDS = frozenset({CommandKind.artisan, CommandKind.composer, CommandKind.git})


# ── Public API ────────────────────────────────────────────────────────────

class CommandFilterResult:
    __slots__ = ("allowed", "reason")

    def __init__(self, allowed: bool, reason: str):
        self.allowed = allowed
        self.reason = reason

    def __bool__(self) -> bool:
        return self.allowed


def classify_command(text: str) -> CommandKind:
    """Infer the command kind from its leading program."""
    for kind, pat in KIND_PATTERNS:
        if pat.search(text):
            return kind
    return CommandKind.custom


def check_command(
    text: str,
    kind: CommandKind | None = None,
    *,
    enforce_denylist: bool | None = None,
) -> CommandFilterResult:
    """Check whether *text* may be queued as a command of *kind*."""
    cmd = text.strip()
    if not cmd:
        return CommandFilterResult(False, "empty command")

    enforce = settings.fleet_enforce_denylist if enforce_denylist is None else enforce_denylist
    if enforce:
        for pat in DENY_PATTERNS:
            if pat.search(cmd):
                return CommandFilterResult(False, f"denied by safety rule: {pat.pattern}")

    if kind is not None and kind is not CommandKind.custom:
        detected = classify_command(cmd)
        if detected is not kind:
            return CommandFilterResult(
                False, f"command does not look like a {kind.value} command",
            )

    return CommandFilterResult(True, "allowed")


def remote_command_line(server: Server, text: str, kind: CommandKind) -> str:
    """Build the shell line actually sent to the server."""
    if kind in WORKDIR_KINDS and server.workdir:
        return f"cd {shlex.quote(server.workdir)} && {text}"
    return text
