"""Dangerous shell command detection.

Pure functions, no I/O. A match only means the command needs a second,
explicit confirmation before it reaches the terminal.
"""

from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass
class SafetyVerdict:
    dangerous: bool
    reason: str
    command: str = ""
    matched_pattern: str = ""


_I = re.IGNORECASE

# (pattern, category) in match order
_DANGEROUS_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # file deletion
    (re.compile(r"\brm\s+(?:\S+\s+)*(-[a-zA-Z]*[rRf][a-zA-Z]*|--force|--recursive)(?:\s|$)"), "recursive or forced delete"),
    (re.compile(r"\brm\s+.*\*"), "wildcard delete"),
    (re.compile(r"\brm\s+(?:\S+\s+)*/(?!tmp\b)[a-zA-Z]*(?:\s|$)"), "delete under a root path"),
    (re.compile(r"\bsudo\s+rm\b"), "privileged delete"),
    (re.compile(r"\bfind\s+.*-delete\b"), "find -delete"),
    (re.compile(r"\bfind\s+.*-exec\s+rm\b"), "find -exec rm"),
    # filesystem and devices
    (re.compile(r"\bmkfs\b"), "filesystem format"),
    (re.compile(r"\bdd\s+.*\bof="), "raw disk write"),
    (re.compile(r">\s*/dev/(sd|hd|nvme|disk|vd)"), "raw device overwrite"),
    # power state
    (re.compile(r"\b(shutdown|reboot|halt|poweroff)\b"), "power state change"),
    # process killing
    (re.compile(r"\bkill\s+-9\s+-1\b"), "kill all processes"),
    (re.compile(r"\bkillall\s"), "killall"),
    (re.compile(r"\bpkill\s+-9\b"), "pkill -9"),
    # permissions
    (re.compile(r"\bchmod\s+(-R\s+)?777\b"), "world-writable permissions"),
    (re.compile(r"\bchown\s+-R\b"), "recursive chown"),
    (re.compile(r"\bchmod\s+-R\b"), "recursive chmod"),
    # git
    (re.compile(r"\bgit\s+push\s+.*--force\b"), "git force push"),
    (re.compile(r"\bgit\s+push\s+(.*\s)?-f\b"), "git force push"),
    (re.compile(r"\bgit\s+reset\s+--hard\b"), "git hard reset"),
    (re.compile(r"\bgit\s+clean\s+-[a-zA-Z]*f"), "git clean"),
    (re.compile(r"\bgit\s+branch\s+-D\b"), "git branch force delete"),
    (re.compile(r"\bgit\s+checkout\s+\.\s*$"), "git discard changes"),
    (re.compile(r"\bgit\s+restore\s+\.\s*$"), "git discard changes"),
    # databases
    (re.compile(r"\b(drop|truncate)\s+(database|table|schema|collection)\b", _I), "destructive SQL"),
    (re.compile(r"\bdelete\s+from\s+\w+\s*(;|[\"']|$)", _I), "DELETE without WHERE"),
    (re.compile(r"\bdb\.\w+\.(drop|remove)\s*\("), "MongoDB drop"),
    # package removal
    (re.compile(r"\bnpm\s+(uninstall|remove|rm)\s+-g\b"), "global package removal"),
    (re.compile(r"\bpip3?\s+uninstall\b"), "package removal"),
    (re.compile(r"\bbrew\s+uninstall\b"), "package removal"),
    # containers
    (re.compile(r"\bdocker\s+(rm|rmi)\b"), "container removal"),
    (re.compile(r"\bdocker\s+system\s+prune\b"), "docker prune"),
    (re.compile(r"\bdocker\s+volume\s+rm\b"), "volume removal"),
    (re.compile(r"\bkubectl\s+delete\b"), "kubernetes delete"),
    # remote code
    (re.compile(r"\b(curl|wget)\s+.*\|\s*(sudo\s+)?(ba|z)?sh\b"), "remote script piped to shell"),
    (re.compile(r"\bcurl\s+.*\|\s*python[0-9.]*\b"), "remote script piped to python"),
    (re.compile(r"\beval\s*\("), "eval"),
    # misc
    (re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"), "fork bomb"),
    (re.compile(r"\bmv\s+.*\s/dev/null\b"), "move to /dev/null"),
    (re.compile(r">\s*/etc/"), "overwrite under /etc"),
    (re.compile(r"\blaunchctl\s+(unload|remove)\b"), "service removal"),
    (re.compile(r"\bsystemctl\s+(disable|mask|stop)\b"), "service removal"),
    (re.compile(r"\bunset\s+-f\b"), "environment tampering"),
    (re.compile(r"\benv\s+-i\b"), "environment tampering"),
]

_SAFE_SUDO_READS = frozenset(
    [
        "cat", "ls", "less", "head", "tail", "grep", "find", "which", "whoami", "id",
        "ps", "top", "df", "du", "mount", "lsof", "stat", "file", "wc", "sort", "uniq", "diff",
    ]
)

_SUDO_RE = re.compile(r"\bsudo\s+(?:-\S+\s+)*(\S+)")
_REDIRECT_RE = re.compile(r"(?<![>|0-9&])>\s*([^\s>|&]+)")
_SYSTEM_PATH_RE = re.compile(r"^/(etc|usr|bin|sbin|lib|boot|sys|proc)/")
_DOTFILE_RE = re.compile(r"/\.(bash|zsh|fish|profile|gitconfig|ssh)")


def _normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text.strip())


def _sudo_modification(command: str) -> bool:
    m = _SUDO_RE.search(command)
    if not m:
        return False
    return m.group(1).rsplit("/", 1)[-1] not in _SAFE_SUDO_READS


def _destructive_redirect(command: str) -> str:
    m = _REDIRECT_RE.search(command)
    if not m:
        return ""
    target = m.group(1)
    if _SYSTEM_PATH_RE.search(target) or _DOTFILE_RE.search(target):
        return target
    return ""


def check_command(
    command: str,
    custom_patterns: list[str] | None = None,
) -> SafetyVerdict:
    if not command or not command.strip():
        return SafetyVerdict(dangerous=False, reason="")

    normalized = _normalize_whitespace(command)

    for pattern, category in _DANGEROUS_PATTERNS:
        if pattern.search(normalized):
            return SafetyVerdict(
                dangerous=True,
                reason=f"Dangerous command ({category}): {command}",
                command=command,
                matched_pattern=pattern.pattern,
            )

    if _sudo_modification(normalized):
        return SafetyVerdict(
            dangerous=True,
            reason=f"Privileged modification: {command}",
            command=command,
            matched_pattern="sudo",
        )

    target = _destructive_redirect(normalized)
    if target:
        return SafetyVerdict(
            dangerous=True,
            reason=f"Redirect overwrites {target}: {command}",
            command=command,
            matched_pattern=">",
        )

    if custom_patterns:
        for raw_pattern in custom_patterns:
            try:
                matched = re.compile(raw_pattern, re.IGNORECASE).search(normalized) is not None
            except re.error:
                matched = raw_pattern.lower() in normalized.lower()
            if matched:
                return SafetyVerdict(
                    dangerous=True,
                    reason=f"Custom pattern matched: {command}",
                    command=command,
                    matched_pattern=raw_pattern,
                )

    return SafetyVerdict(dangerous=False, reason="", command=command)


def is_dangerous(command: str, custom_patterns: list[str] | None = None) -> bool:
    return check_command(command, custom_patterns).dangerous
