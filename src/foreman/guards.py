"""Guard synthesis: capability → ordered tool-interception rules.

A guard rule intercepts one tool (its ``matcher``) before it runs. Each
rule is an ordered table of checks; the first check whose pattern matches
decides the outcome, otherwise the rule's default applies. The same table
is rendered into the shell command the agent runtime executes as a
PreToolUse hook, and can be evaluated in-process via ``evaluate``.

Order of the full list handed to an agent:

1. the danger guard (Bash: pushes to main, hard resets, foreign branches)
2. file-tool blocks for read-only roles (Write / Edit / NotebookEdit)
3. the Bash file guard for read-only roles (safe prefixes, then denials)
4. the universal blocks on native team/sub-agent primitives
"""

from __future__ import annotations

import enum
import json
import re
import shlex
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Iterable, Sequence

from foreman.models import IMPLEMENTATION_CAPABILITIES, Capability

BASH_TOOL = "Bash"
FILE_TOOLS = ("Write", "Edit", "NotebookEdit")

# Native primitives that would let an agent coordinate outside the audited
# mail/sling channel. Every capability gets all of these blocked.
NATIVE_TEAM_TOOLS: tuple[tuple[str, str], ...] = (
    ("Task", "Use foreman sling to dispatch sub-agents; native Task spawning is disabled"),
    ("TeamCreate", "Use foreman sling to create agents; native teams are disabled"),
    ("TeamDelete", "Use foreman stop to retire agents; native teams are disabled"),
    ("SendMessage", "Use foreman mail send to message other agents"),
    ("TaskCreate", "Track work through beads and foreman mail; native task tools are disabled"),
    ("TaskUpdate", "Track work through beads and foreman mail; native task tools are disabled"),
    ("TaskList", "Use foreman status to see other agents; native task tools are disabled"),
    ("TaskGet", "Use foreman status to see other agents; native task tools are disabled"),
    ("TaskOutput", "Use foreman mail check to read results; native task tools are disabled"),
    ("TaskStop", "Use foreman stop to stop agents; native task tools are disabled"),
)
NATIVE_TEAM_TOOL_COUNT = len(NATIVE_TEAM_TOOLS)

# Read-only commands every role may run through Bash.
SAFE_BASH_PREFIXES: tuple[str, ...] = (
    "foreman ",
    "bd ",
    "mulch ",
    "git status",
    "git log",
    "git diff",
    "git show",
    "git blame",
    "git branch",
    "pytest",
    "ruff check",
)

# Capability-specific additions to the safe list.
CAPABILITY_SAFE_PREFIXES: dict[Capability, tuple[str, ...]] = {
    Capability.COORDINATOR: ("git add", "git commit"),
}

# (name, pattern) pairs that mutate the filesystem or history.
FILE_MUTATION_PATTERNS: tuple[tuple[str, str], ...] = (
    ("sed in-place edit", r"\bsed\s+(-[a-zA-Z]*i|--in-place)"),
    ("tee", r"\btee\b"),
    ("editor", r"\b(vi|vim|nano|emacs)\b"),
    ("mv", r"\bmv\s"),
    ("cp", r"\bcp\s"),
    ("rm", r"\brm\s"),
    ("mkdir", r"\bmkdir\s"),
    ("touch", r"\btouch\s"),
    ("chmod/chown", r"\b(chmod|chown)\s"),
    ("append redirect", r">>"),
    (
        "package install",
        r"\b(pip3?|uv|poetry|npm|bun|yarn|pnpm)\s+(install|add|remove|uninstall|update|upgrade)\b",
    ),
    (
        "git history mutation",
        r"\bgit\s+(add|commit|push|merge|rebase|reset|checkout|cherry-pick|stash|tag|restore|rm|mv|switch)\b",
    ),
)

_BRANCH_CREATE = r"\bgit\s+(checkout\s+-[bB]|switch\s+-[cC]|branch)\s+"

# Extracts tool_input.command from the hook's JSON payload on stdin.
_READ_COMMAND = (
    "INPUT=$(cat); "
    "CMD=$(printf '%s' \"$INPUT\" | sed -n 's/.*\"command\": *\"\\([^\"]*\\)\".*/\\1/p' | head -n 1);"
)

_ERE_SPECIAL = re.compile(r"([\\.\[\]{}()*+?^$|])")


def ere_escape(text: str) -> str:
    """Escape text for use inside both a POSIX ERE and a Python regex."""
    return _ERE_SPECIAL.sub(r"\\\1", text)


class Effect(str, enum.Enum):
    ALLOW = "allow"
    BLOCK = "block"


@dataclass(frozen=True)
class GuardDecision:
    blocked: bool
    reason: str = ""
    matcher: str = ""
    check: str = ""

    def to_hook_output(self) -> str:
        """The single line a blocking hook prints."""
        return json.dumps({"decision": "block", "reason": self.reason}, separators=(",", ":"))


@dataclass(frozen=True)
class GuardCheck:
    """One (predicate, outcome) row. Patterns compile once at construction."""

    name: str
    pattern: str
    effect: Effect
    unless: str | None = None
    reason: str | None = None
    _compiled: re.Pattern = field(init=False, repr=False, compare=False)
    _compiled_unless: re.Pattern | None = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_compiled", re.compile(self.pattern))
        object.__setattr__(
            self, "_compiled_unless", re.compile(self.unless) if self.unless else None
        )

    def matches(self, text: str) -> bool:
        if not self._compiled.search(text):
            return False
        if self._compiled_unless is not None and self._compiled_unless.search(text):
            return False
        return True

    def render(self, block_line: str) -> str:
        test = f"printf '%s' \"$CMD\" | grep -qE {shlex.quote(self.pattern)}"
        if self.unless:
            test += f" && ! printf '%s' \"$CMD\" | grep -qE {shlex.quote(self.unless)}"
        if self.effect is Effect.ALLOW:
            return f"if {test}; then exit 0; fi;"
        return f"if {test}; then echo {shlex.quote(block_line)}; exit 0; fi;"


@dataclass(frozen=True)
class GuardRule:
    """Ordered checks on one intercepted tool; first match wins."""

    matcher: str
    reason: str
    checks: tuple[GuardCheck, ...] = ()
    default: Effect = Effect.ALLOW

    @property
    def is_unconditional(self) -> bool:
        return not self.checks

    def _block(self, check: GuardCheck | None) -> GuardDecision:
        reason = (check.reason if check and check.reason else None) or self.reason
        return GuardDecision(
            blocked=True,
            reason=reason,
            matcher=self.matcher,
            check=check.name if check else "",
        )

    def evaluate(self, command: str = "") -> GuardDecision:
        for check in self.checks:
            if check.matches(command):
                if check.effect is Effect.BLOCK:
                    return self._block(check)
                return GuardDecision(blocked=False, matcher=self.matcher, check=check.name)
        if self.default is Effect.BLOCK:
            return self._block(None)
        return GuardDecision(blocked=False, matcher=self.matcher)

    def render(self) -> str:
        """Shell command implementing this rule as a hook."""
        if self.is_unconditional:
            if self.default is Effect.BLOCK:
                return f"echo {shlex.quote(self._block(None).to_hook_output())}"
            return "exit 0"

        parts = [_READ_COMMAND]
        for check in self.checks:
            parts.append(check.render(self._block(check).to_hook_output()))
        if self.default is Effect.BLOCK:
            parts.append(f"echo {shlex.quote(self._block(None).to_hook_output())};")
        parts.append("exit 0;")
        return " ".join(parts)

    def to_hook(self) -> dict:
        return {"matcher": self.matcher, "hooks": [{"type": "command", "command": self.render()}]}


def evaluate_guards(rules: Iterable[GuardRule], tool_name: str, command: str = "") -> GuardDecision:
    """Run ``tool_name`` through ``rules`` in order; the first block wins."""
    for rule in rules:
        if rule.matcher != tool_name:
            continue
        decision = rule.evaluate(command)
        if decision.blocked:
            return decision
    return GuardDecision(blocked=False, matcher=tool_name)


# ── Synthesis ────────────────────────────────────────────────────────────────


def _label_of(capability: Capability | str | None) -> str:
    if isinstance(capability, Capability):
        return capability.value
    return (capability or "").strip().lower() or Capability.UNRECOGNIZED.value


def is_implementation(
    capability: Capability | str | None, elevated_labels: Sequence[str] = ()
) -> bool:
    """Whether the role writes files (and so skips the read-only guards)."""
    cap = Capability.parse(capability)
    if cap is Capability.UNRECOGNIZED:
        return _label_of(capability) not in {label.lower() for label in elevated_labels}
    return cap in IMPLEMENTATION_CAPABILITIES


def _team_tool_guards() -> list[GuardRule]:
    return [
        GuardRule(matcher=tool, reason=reason, default=Effect.BLOCK)
        for tool, reason in NATIVE_TEAM_TOOLS
    ]


def build_file_guard(label: str, extra_safe_prefixes: Sequence[str] = ()) -> GuardRule:
    """Bash guard for read-only roles: allow safe prefixes, deny mutations, else allow."""
    reason = f"{label} agents cannot modify files"
    checks: list[GuardCheck] = []
    for prefix in (*SAFE_BASH_PREFIXES, *extra_safe_prefixes):
        checks.append(
            GuardCheck(name=f"safe: {prefix.strip()}", pattern=rf"^\s*{ere_escape(prefix)}", effect=Effect.ALLOW)
        )
    for name, pattern in FILE_MUTATION_PATTERNS:
        checks.append(
            GuardCheck(
                name=name,
                pattern=pattern,
                effect=Effect.BLOCK,
                reason=f"{reason} ({name} is not permitted)",
            )
        )
    return GuardRule(matcher=BASH_TOOL, reason=reason, checks=tuple(checks), default=Effect.ALLOW)


@lru_cache(maxsize=64)
def _capability_guards(
    label: str, implementation: bool, extra_safe_prefixes: tuple[str, ...]
) -> tuple[GuardRule, ...]:
    rules: list[GuardRule] = []
    if not implementation:
        reason = (
            f"{label} agents cannot modify files. "
            "Report findings with foreman mail send instead."
        )
        rules.extend(GuardRule(matcher=tool, reason=reason, default=Effect.BLOCK) for tool in FILE_TOOLS)
        rules.append(build_file_guard(label, extra_safe_prefixes))
    rules.extend(_team_tool_guards())
    return tuple(rules)


def guards_for(
    capability: Capability | str | None,
    extra_safe_prefixes: Sequence[str] | None = None,
    elevated_labels: Sequence[str] = (),
) -> list[GuardRule]:
    """Ordered capability guards: 14 for read-only roles, 10 for implementation roles."""
    cap = Capability.parse(capability)
    label = _label_of(capability)
    extras = (*CAPABILITY_SAFE_PREFIXES.get(cap, ()), *(extra_safe_prefixes or ()))
    return list(
        _capability_guards(label, is_implementation(capability, elevated_labels), tuple(extras))
    )


def danger_guards(agent_name: str, namespace: str = "foreman") -> list[GuardRule]:
    """The single Bash guard every agent gets, scoped to its own branch namespace."""
    own_prefix = ere_escape(f"{namespace}/{agent_name}/")
    checks = (
        GuardCheck(
            name="push to canonical branch",
            pattern=r"\bgit\s+push\b.*( |:)(main|master)( |$)",
            effect=Effect.BLOCK,
            reason="Pushing to main or master is not allowed; the merge queue integrates branches",
        ),
        GuardCheck(
            name="hard reset",
            pattern=r"\bgit\s+reset\b.*--hard",
            effect=Effect.BLOCK,
            reason="git reset --hard is not allowed",
        ),
        GuardCheck(
            name="foreign branch",
            pattern=_BRANCH_CREATE + r"[^ -]",
            unless=_BRANCH_CREATE + own_prefix,
            effect=Effect.BLOCK,
            reason=f"Branches must be created under {namespace}/{agent_name}/",
        ),
    )
    return [
        GuardRule(
            matcher=BASH_TOOL,
            reason=f"Dangerous command blocked for {agent_name}",
            checks=checks,
            default=Effect.ALLOW,
        )
    ]


def pre_tool_guards(
    agent_name: str,
    capability: Capability | str | None = None,
    *,
    namespace: str = "foreman",
    extra_safe_prefixes: Sequence[str] | None = None,
    elevated_labels: Sequence[str] = (),
) -> list[GuardRule]:
    """Everything prepended to an agent's PreToolUse hooks, in evaluation order."""
    return [
        *danger_guards(agent_name, namespace),
        *guards_for(capability or Capability.BUILDER, extra_safe_prefixes, elevated_labels),
    ]
