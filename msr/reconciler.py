from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from threading import Event, Thread

from . import db
from .actions import ActionDispatcher
from .alerts import send_alert
from .census import apply_census, take_census
from .db import Machine, Service
from .remote import RemoteExecutor
from .runtime import MachineBusy, PassRecord, RuntimeState
from .settings import settings
from .status import ReconcileError, Status


class Reconciler:
    """Continuously reconciles expected service state with observed state."""

    def __init__(self, runtime: RuntimeState, executor: RemoteExecutor):
        self.runtime = runtime
        self.executor = executor
        self.dispatcher = ActionDispatcher(runtime, executor)
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciler started")
        while not self._stop.is_set():
            try:
                self._tick()
            except Exception as e:
                db.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")
            self._stop.wait(max(1, settings.poll_interval_s))

    def _tick(self) -> None:
        machines = db.list_machines()
        if not machines:
            return
        workers = max(1, min(settings.max_parallel_machines, len(machines)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            list(pool.map(self._reconcile_machine, [m.id for m in machines]))

    def _reconcile_machine(self, machine_id: str) -> None:
        started = time.time()
        try:
            machine = self.sync_observed_state(machine_id)
            if machine is None:
                return
            self.run_one_cycle(machine)
        except MachineBusy:
            db.log_event("INFO", "Skipped scheduled pass, another pass is running", machine=machine_id)
            return
        except ReconcileError as e:
            db.log_event("WARN", f"Reconciliation pass failed: {e}", machine=machine_id)
            self.runtime.record_pass(PassRecord(machine=machine_id, kind="cycle", ok=False, message=str(e)))
            return
        ms = int((time.time() - started) * 1000)
        self.runtime.record_pass(PassRecord(machine=machine_id, kind="cycle", ok=True, message=f"{ms} ms"))

    def sync_observed_state(self, machine_id: str) -> Machine | None:
        """Refresh Running/Stopped and process ids from a process census.

        The census runs outside the machine lock; loading, applying and
        persisting run inside it. Persists only if something changed.
        Returns the refreshed machine, or None if it does not exist.
        Raises TransportError if the census command could not be run.
        """
        machine = db.get_machine(machine_id)
        if machine is None:
            return None
        observed = take_census(self.executor, machine)

        with self.runtime.machine_lock(machine_id):
            machine = db.get_machine(machine_id)
            if machine is None:
                return None
            before = {no: (s.status, s.process_id) for no, s in machine.services.items()}
            changed = apply_census(machine, observed)
            if changed:
                db.update_machine(machine.owner, machine.name, machine)

        if changed:
            self._report_changes(machine, before)
        self.runtime.record_pass(PassRecord(machine=machine_id, kind="sync", ok=True, changed=changed))
        return machine

    def run_one_cycle(self, machine: Machine) -> Machine:
        """Start/stop services as needed, then observe again.

        Holds the machine's pass guard for the whole cycle and decides from
        the stored record, not from `machine`, so a caller's stale snapshot
        never triggers an action a finished pass already took.
        Each action persists its own status changes under the machine lock.
        Raises MachineBusy if another pass is running on the machine.
        """
        with self.runtime.machine_pass(machine.id):
            current = db.get_machine(machine.id)
            if current is None:
                return machine
            self.dispatcher.dispatch(current)
            refreshed = self.sync_observed_state(machine.id)
        return refreshed if refreshed is not None else current

    def run_action(self, action: str, machine_id: str, no: int) -> Service | None:
        """Run one phase on a service now, under the machine's pass guard.

        Returns the updated service, or None if the machine or service does
        not exist. Raises MachineBusy, PhaseError or TransportError.
        """
        with self.runtime.machine_pass(machine_id):
            machine = db.get_machine(machine_id)
            if machine is None:
                return None
            svc = machine.services.get(no)
            if svc is None:
                return None
            self.dispatcher.run_phase(action, machine, svc)
            return svc

    def _report_changes(self, machine: Machine, before: dict[int, tuple[str, int]]) -> None:
        for svc in machine.ordered_services():
            prev_status, prev_pid = before.get(svc.no, ("", -1))
            if (prev_status, prev_pid) == (svc.status, svc.process_id):
                continue
            if svc.status == Status.RUNNING:
                db.log_event("INFO", f"Observed running (pid {svc.process_id})", machine=machine.id, service_name=svc.name)
                continue
            db.log_event("INFO", "Observed stopped", machine=machine.id, service_name=svc.name)
            if prev_status == Status.RUNNING and svc.expected_status == Status.RUNNING:
                db.log_event("WARN", f"Process {prev_pid} exited unexpectedly", machine=machine.id, service_name=svc.name)
                send_alert(machine.id, svc.name, "Service stopped", f"Process {prev_pid} is no longer running.")
