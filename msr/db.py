from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from .settings import settings
from .status import NO_PROCESS, Status, SubStatus


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one for a missing
    bind-mounted file), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "msr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS machines (
              owner TEXT NOT NULL,
              name TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              ip TEXT NOT NULL,
              username TEXT NOT NULL,
              password TEXT NOT NULL,
              services TEXT NOT NULL, -- JSON array, one object per service
              PRIMARY KEY (owner, name)
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              machine TEXT,
              service_name TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def log_event(level: str, message: str, machine: str | None = None, service_name: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, machine, service_name, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), machine, service_name, message),
        )


@dataclass
class Service:
    no: int
    name: str
    expected_status: str = Status.STOPPED
    status: str = ""
    sub_status: str = ""
    message: str = ""
    process_id: int = NO_PROCESS

    def set_status(self, status: str, sub_status: str, message: str = "") -> None:
        """The only place status and sub status change together."""
        self.status = status
        self.sub_status = sub_status
        self.message = message
        if status != Status.RUNNING:
            self.process_id = NO_PROCESS

    def revert(self, phase: str, prev: tuple[str, str, str, int]) -> None:
        """Undo entering `phase` after the host could not be reached.

        Status and process id go back only while they still hold what entering
        the phase wrote; a census that ran meanwhile keeps its observation.
        """
        if self.sub_status != SubStatus.IN_PROGRESS:
            return
        status, sub_status, message, process_id = prev
        self.sub_status = sub_status
        self.message = message
        if self.status == phase and self.process_id in (NO_PROCESS, process_id):
            self.status = status
            self.process_id = process_id

    def observe(self, process_id: int | None) -> bool:
        """Apply a census observation. Returns True if anything changed."""
        if process_id is not None:
            status, pid = Status.RUNNING, process_id
        else:
            status, pid = Status.STOPPED, NO_PROCESS
        if self.status == status and self.process_id == pid:
            return False
        self.status = status
        self.process_id = pid
        return True


@dataclass
class Machine:
    owner: str
    name: str
    ip: str
    username: str
    password: str
    services: dict[int, Service] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def id(self) -> str:
        return machine_id(self.owner, self.name)

    def ordered_services(self) -> list[Service]:
        return [self.services[no] for no in sorted(self.services)]


def machine_id(owner: str, name: str) -> str:
    return f"{owner}/{name}"


def split_machine_id(mid: str) -> tuple[str, str]:
    owner, sep, name = mid.partition("/")
    if not sep or not owner or not name:
        raise ValueError(f"Invalid machine id {mid!r}, expected 'owner/name'.")
    return owner, name


def _dump_services(machine: Machine) -> str:
    return json.dumps([asdict(s) for s in machine.ordered_services()], ensure_ascii=False)


def _row_to_machine(row: sqlite3.Row) -> Machine:
    services = {}
    for raw in json.loads(row["services"]):
        svc = Service(**raw)
        services[svc.no] = svc
    return Machine(
        owner=row["owner"],
        name=row["name"],
        ip=row["ip"],
        username=row["username"],
        password=row["password"],
        services=services,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def machine_to_dict(machine: Machine, redact: bool = True) -> dict[str, Any]:
    out = asdict(machine)
    out["id"] = machine.id
    out["services"] = [asdict(s) for s in machine.ordered_services()]
    if redact:
        out["password"] = "***"
    return out


def add_machine(machine: Machine) -> bool:
    """Insert a new machine. Returns False if the id is already taken."""
    with connect() as conn:
        try:
            conn.execute(
                """
                INSERT INTO machines (owner, name, created_at, updated_at, ip, username, password, services)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    machine.owner,
                    machine.name,
                    machine.created_at,
                    machine.updated_at,
                    machine.ip,
                    machine.username,
                    machine.password,
                    _dump_services(machine),
                ),
            )
        except sqlite3.IntegrityError:
            return False
    return True


def get_machine(mid: str) -> Machine | None:
    owner, name = split_machine_id(mid)
    with connect() as conn:
        row = conn.execute("SELECT * FROM machines WHERE owner=? AND name=?", (owner, name)).fetchone()
        return _row_to_machine(row) if row else None


def update_machine(owner: str, name: str, machine: Machine) -> bool:
    """Replace the whole record stored under (owner, name). Returns False if absent."""
    machine.updated_at = utc_now()
    with connect() as conn:
        cur = conn.execute(
            """
            UPDATE machines
            SET owner=?, name=?, updated_at=?, ip=?, username=?, password=?, services=?
            WHERE owner=? AND name=?
            """,
            (
                machine.owner,
                machine.name,
                machine.updated_at,
                machine.ip,
                machine.username,
                machine.password,
                _dump_services(machine),
                owner,
                name,
            ),
        )
        return cur.rowcount > 0


def delete_machine(owner: str, name: str) -> bool:
    with connect() as conn:
        cur = conn.execute("DELETE FROM machines WHERE owner=? AND name=?", (owner, name))
        return cur.rowcount > 0


def list_machines(owner: str | None = None) -> list[Machine]:
    with connect() as conn:
        if owner:
            rows = conn.execute("SELECT * FROM machines WHERE owner=? ORDER BY name", (owner,)).fetchall()
        else:
            rows = conn.execute("SELECT * FROM machines ORDER BY owner, name").fetchall()
        return [_row_to_machine(r) for r in rows]


def latest_events(limit: int = 100, machine: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if machine:
            rows = conn.execute(
                "SELECT * FROM events WHERE machine=? ORDER BY id DESC LIMIT ?", (machine, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
