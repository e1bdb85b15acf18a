import dataclasses
import sys
import threading
import time

import pytest


# Ensure project root is importable (so `import msr` and `main.py` work without installing)
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from msr import db  # noqa: E402
from msr.db import Machine, Service  # noqa: E402
from msr.runtime import RuntimeState  # noqa: E402
from msr.status import NO_PROCESS, Status  # noqa: E402


class FakeExecutor:
    """Scripted remote shell.

    `responses` maps a substring of the command to its output. A list value is
    consumed one item per call (the last item repeats). An exception value is
    raised instead of returned, and a callable is called with the command.
    `delays` maps a substring to seconds the command takes.
    """

    def __init__(self, responses=None, delays=None):
        self.responses = dict(responses or {})
        self.delays = dict(delays or {})
        self.commands = []
        self._lock = threading.Lock()

    def execute(self, host, username, secret, command):
        value = ""
        with self._lock:
            self.commands.append(command)
            for key, candidate in self.responses.items():
                if key in command:
                    if isinstance(candidate, list):
                        candidate = candidate.pop(0) if len(candidate) > 1 else candidate[0]
                    value = candidate
                    break
        for key, seconds in self.delays.items():
            if key in command:
                time.sleep(seconds)
        if isinstance(value, Exception):
            raise value
        if callable(value):
            return value(command)
        return value

    def ran(self, fragment):
        return [c for c in self.commands if fragment in c]


def wmic_row(name, pid):
    # `wmic ... get CommandLine, ProcessID` pads the columns with spaces and
    # cmd.exe quotes the script path.
    return f'C:\\Windows\\system32\\cmd.exe /c ""C:\\Users\\Administrator\\Desktop\\{name}.bat" "     {pid}  '


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "settings", dataclasses.replace(db.settings, db_path=str(tmp_path / "msr-test.db")))
    db.init_db()
    yield


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def runtime():
    return RuntimeState()


@pytest.fixture
def machine():
    m = Machine(
        owner="alice",
        name="box1",
        ip="10.0.0.5",
        username="Administrator",
        password="s3cret",
        services={
            0: Service(no=0, name="casnode", expected_status=Status.RUNNING, status=Status.STOPPED, process_id=NO_PROCESS),
            1: Service(no=1, name="casdoor", expected_status=Status.STOPPED, status=Status.RUNNING, process_id=4321),
        },
    )
    assert db.add_machine(m)
    return db.get_machine(m.id)
