from __future__ import annotations

import re

from .db import Machine
from .remote import RemoteExecutor, run_on


CENSUS_COMMAND = 'wmic process where (name="cmd.exe") get CommandLine, ProcessID'

SHELL_PATH = r"c:\windows\system32\cmd.exe"
SHELL_RUN_FLAG = "/c"
MIN_TOKENS = 5

BAT_NAME_RE = re.compile(r"\\Desktop\\(.*?)\.bat")


def parse_bat_name(launch_path: str) -> str | None:
    """Return the script name between ``\\Desktop\\`` and ``.bat``, or None.

    ``C:\\Users\\X\\Desktop\\myservice.bat`` -> ``myservice``
    """
    m = BAT_NAME_RE.search(launch_path)
    return m.group(1) if m else None


def parse_census(output: str) -> dict[str, int]:
    """Map script name -> process id from `wmic` CommandLine/ProcessID rows.

    Rows of any other shape are ignored. A script seen twice keeps the pid of
    its last row.
    """
    found: dict[str, int] = {}
    for line in output.replace("\r", "").split("\n"):
        tokens = [t for t in line.split(" ") if t]
        if len(tokens) < MIN_TOKENS or tokens[0].lower() != SHELL_PATH or tokens[1] != SHELL_RUN_FLAG:
            continue

        name = parse_bat_name(tokens[2])
        if name is None:
            continue
        try:
            pid = int(tokens[-1])
        except ValueError:
            continue
        found[name] = pid
    return found


def take_census(executor: RemoteExecutor, machine: Machine) -> dict[str, int]:
    return parse_census(run_on(executor, machine, CENSUS_COMMAND))


def apply_census(machine: Machine, observed: dict[str, int]) -> bool:
    """Set every service to Running/pid or Stopped/-1. Returns True if anything changed."""
    changed = False
    for svc in machine.ordered_services():
        if svc.observe(observed.get(svc.name)):
            changed = True
    return changed
