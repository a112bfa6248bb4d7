from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from ralph.config import RalphConfig

ModeName = Literal["build", "plan", "plan-work"]

JSON_MARKER = "--json"
PLAN_TOKEN = "plan"
PLAN_WORK_TOKEN = "plan-work"
BUILD_TOKEN = "build"

USAGE_HINT = (
    'Usage: ralph run [--json] [plan | plan-work "description of the work"] [max_iterations]'
)


class UsageError(RuntimeError):
    """Raised for an invalid invocation or a violated mode precondition."""

    def __init__(self, message: str, *, hint: str | None = USAGE_HINT) -> None:
        super().__init__(message)
        self.hint = hint


@dataclass(frozen=True, slots=True)
class Mode:
    name: ModeName
    scope: str | None = None

    def __post_init__(self) -> None:
        if self.name == "plan-work" and not (self.scope or "").strip():
            raise UsageError("plan-work requires a work description")
        if self.name != "plan-work" and self.scope is not None:
            raise ValueError(f"{self.name} mode does not take a scope")

    @classmethod
    def build(cls) -> Mode:
        return cls("build")

    @classmethod
    def plan(cls) -> Mode:
        return cls("plan")

    @classmethod
    def scoped_plan(cls, scope: str) -> Mode:
        return cls("plan-work", scope)

    @property
    def is_build(self) -> bool:
        return self.name == "build"

    @property
    def is_scoped(self) -> bool:
        return self.name == "plan-work"


@dataclass(frozen=True, slots=True)
class ModeSelection:
    mode: Mode
    payload_source: str
    max_iterations: int
    json_output: bool = False


def _is_count(token: str) -> bool:
    return token.isascii() and token.isdigit()


def _parse_bound(tokens: Sequence[str], index: int, default: int) -> int:
    if len(tokens) <= index:
        return default
    token = tokens[index]
    if not _is_count(token):
        raise UsageError(f"max_iterations must be a non-negative integer, got {token!r}")
    return int(token)


def resolve_mode(tokens: Sequence[str], config: RalphConfig) -> ModeSelection:
    """Resolve raw invocation tokens into a mode, payload document and bound.

    Rules are applied in order: an optional leading ``--json`` marker, then
    ``plan-work <scope> [N]``, ``plan [N]``, a bare count, ``build [N]``, and
    finally build mode with no bound for anything else.
    """
    args = list(tokens)
    json_output = False
    if args and args[0] == JSON_MARKER:
        json_output = True
        args = args[1:]

    prompts = config.prompts
    head = args[0] if args else None

    if head == PLAN_WORK_TOKEN:
        if len(args) < 2 or not args[1].strip():
            raise UsageError(
                "plan-work requires a work description",
                hint='Usage: ralph run plan-work "description of the work"',
            )
        bound = _parse_bound(args, 2, config.loop.plan_work_max_iterations)
        return ModeSelection(Mode.scoped_plan(args[1]), prompts.plan_work, bound, json_output)

    if head == PLAN_TOKEN:
        bound = _parse_bound(args, 1, 0)
        return ModeSelection(Mode.plan(), prompts.plan, bound, json_output)

    if head is not None and _is_count(head):
        return ModeSelection(Mode.build(), prompts.build, int(head), json_output)

    if head == BUILD_TOKEN:
        bound = _parse_bound(args, 1, 0)
        return ModeSelection(Mode.build(), prompts.build, bound, json_output)

    return ModeSelection(Mode.build(), prompts.build, 0, json_output)


def check_branch_allowed(mode: Mode, branch: str, protected_branches: Sequence[str]) -> None:
    if not mode.is_scoped:
        return
    if branch in protected_branches:
        raise UsageError(
            f"plan-work should be run on a work branch, not {branch}",
            hint="Create a work branch first: git checkout -b ralph/your-work",
        )
