"""Service lifecycle states and the output heuristics that drive transitions.

Remote tools report success in free text, not exit codes. Every phrase the
reconciler depends on lives in the rule table below so the coupling to exact
tool wording (and to the localized Windows task scheduler messages) stays in
one place.
"""
from __future__ import annotations

from dataclasses import dataclass


class Status:
    PULL = "Pull"
    BUILD = "Build"
    DEPLOY = "Deploy"
    RUNNING = "Running"
    STOPPED = "Stopped"

    ALL = (PULL, BUILD, DEPLOY, RUNNING, STOPPED)
    EXPECTABLE = (RUNNING, STOPPED)


class SubStatus:
    IN_PROGRESS = "In Progress"
    DONE = "Done"
    ERROR = "Error"

    ALL = (IN_PROGRESS, DONE, ERROR)


# ProcessId of a service that is not running.
NO_PROCESS = -1


class ReconcileError(Exception):
    pass


class PhaseError(ReconcileError):
    """A remote command ran but its output did not look like success."""

    def __init__(self, phase: str, output: str):
        super().__init__(output)
        self.phase = phase
        self.output = output


@dataclass(frozen=True)
class OutcomeRule:
    """Substring predicate over command output.

    Matches when every `all_of` phrase is present, at least one `any_of`
    phrase is present (if any are listed) and no `none_of` phrase is present.
    A `none_of` hit always wins.
    """

    all_of: tuple[str, ...] = ()
    any_of: tuple[str, ...] = ()
    none_of: tuple[str, ...] = ()

    def matches(self, output: str) -> bool:
        if any(p in output for p in self.none_of):
            return False
        if self.any_of and not any(p in output for p in self.any_of):
            return False
        return all(p in output for p in self.all_of)


RULES: dict[str, OutcomeRule] = {
    # git pull --rebase --autostash
    "pull": OutcomeRule(
        any_of=("rebased and updated", "branch master is up to date"),
        none_of=("autostash resulted in conflicts",),
    ),
    # yarn install / yarn build, each checked on its own
    "build_step": OutcomeRule(all_of=("Done in ",)),
    # go test needs `go mod tidy` first
    "deploy_missing_module": OutcomeRule(all_of=("no required module provides package",)),
    # go mod tidy
    "deploy_tidy": OutcomeRule(none_of=("error",)),
    # go test
    "deploy": OutcomeRule(all_of=("PASS", "ok")),
    # SCHTASKS create && run && delete, zh-CN console messages
    "start": OutcomeRule(all_of=("成功创建", "尝试运行", "被成功删除")),
}


def rule(name: str) -> OutcomeRule:
    return RULES[name]
