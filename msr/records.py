from __future__ import annotations

from typing import Callable

from . import db
from .db import Machine, Service
from .runtime import RuntimeState


def update_service(runtime: RuntimeState, machine_id: str, no: int, mutate: Callable[[Service], None]) -> Service | None:
    """Load the machine fresh, apply `mutate` to service `no`, persist the whole machine.

    Runs entirely under the machine lock, so concurrent updates to other
    services of the same machine are never lost. Returns the updated service,
    or None if the machine or service no longer exists.
    """
    with runtime.machine_lock(machine_id):
        machine = db.get_machine(machine_id)
        if machine is None:
            return None
        svc = machine.services.get(no)
        if svc is None:
            return None
        mutate(svc)
        if not db.update_machine(machine.owner, machine.name, machine):
            return None
        return svc


def set_service_status(
    runtime: RuntimeState,
    machine: Machine,
    service: Service,
    status: str,
    sub_status: str,
    message: str = "",
) -> bool:
    """Set status/sub status/message on the stored record and on `service`."""
    service.set_status(status, sub_status, message)
    stored = update_service(runtime, machine.id, service.no, lambda s: s.set_status(status, sub_status, message))
    return stored is not None


def set_expected_status(runtime: RuntimeState, machine_id: str, no: int, expected: str) -> Service | None:
    def _apply(s: Service) -> None:
        s.expected_status = expected

    return update_service(runtime, machine_id, no, _apply)
