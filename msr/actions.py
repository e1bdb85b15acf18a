from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from . import db
from .alerts import send_alert
from .db import Machine, Service
from .records import set_service_status, update_service
from .remote import RemoteExecutor, TransportError, run_on, validate_service_name
from .runtime import RuntimeState
from .settings import settings
from .status import PhaseError, ReconcileError, Status, SubStatus, rule


def pull_command(name: str) -> str:
    return f"cd {settings.repo_root}/{name} && git pull --rebase --autostash"


def build_commands(name: str) -> tuple[str, str]:
    web = f"{settings.repo_root}/{name}/web"
    return f"cd {web} && yarn install", f"cd {web} && yarn build"


def deploy_commands(name: str) -> tuple[str, str]:
    """(test, tidy)"""
    return (
        f"cd {settings.repo_root}/{name}/oss && go test",
        f"cd {settings.repo_root}/{name} && go mod tidy",
    )


def start_command(name: str) -> str:
    # One-off scheduled task launching the service's startup shortcut, then run and remove it.
    shortcut = f"{settings.startup_dir}\\{name}.bat - 快捷方式.lnk"
    create = (
        f'SCHTASKS /Create /SC ONCE /ST "00:00" /TN "{name}" '
        f"/TR \"CMD /C START '' '{shortcut}' /K CD /D '%CD%'\""
    )
    run = f'SCHTASKS /Run /TN "{name}"'
    delete = f'SCHTASKS /Delete /TN "{name}" /F'
    return f"{create} && {run} && {delete}"


def stop_command(process_id: int) -> str:
    return f"taskkill /T /F /PID {int(process_id)}"


class ActionDispatcher:
    """Runs lifecycle phases for services and decides which one a service needs."""

    def __init__(self, runtime: RuntimeState, executor: RemoteExecutor):
        self.runtime = runtime
        self.executor = executor

    # --- phases

    def pull(self, machine: Machine, service: Service) -> None:
        with self._phase(machine, service, Status.PULL):
            output = self._run(machine, pull_command(service.name))
            self._conclude(machine, service, Status.PULL, rule("pull").matches(output), output)

    def build(self, machine: Machine, service: Service) -> None:
        install, build = build_commands(service.name)
        with self._phase(machine, service, Status.BUILD):
            output = self._run(machine, install)
            if not rule("build_step").matches(output):
                self._fail(machine, service, Status.BUILD, output)
            output = self._run(machine, build)
            self._conclude(machine, service, Status.BUILD, rule("build_step").matches(output), output)

    def deploy(self, machine: Machine, service: Service) -> None:
        test, tidy = deploy_commands(service.name)
        with self._phase(machine, service, Status.DEPLOY):
            output = self._run(machine, test)
            if rule("deploy_missing_module").matches(output):
                tidy_output = self._run(machine, tidy)
                if not rule("deploy_tidy").matches(tidy_output):
                    self._fail(machine, service, Status.DEPLOY, tidy_output)
                output = self._run(machine, test)
            self._conclude(machine, service, Status.DEPLOY, rule("deploy").matches(output), output)

    def start(self, machine: Machine, service: Service) -> None:
        with self._phase(machine, service, Status.RUNNING):
            output = self._run(machine, start_command(service.name))
            self._conclude(machine, service, Status.RUNNING, rule("start").matches(output), output)

    def stop(self, machine: Machine, service: Service) -> None:
        # Read the pid before the status update resets it.
        pid = service.process_id
        with self._phase(machine, service, Status.STOPPED):
            # taskkill on a pid that is already gone is still a stop.
            self._run(machine, stop_command(pid))
            self._conclude(machine, service, Status.STOPPED, True, "")

    def run_phase(self, action: str, machine: Machine, service: Service) -> None:
        handler = {
            "pull": self.pull,
            "build": self.build,
            "deploy": self.deploy,
            "start": self.start,
            "stop": self.stop,
        }.get(action)
        if handler is None:
            raise ValueError(f"Unknown action '{action}'.")
        handler(machine, service)

    # --- automatic dispatch

    @staticmethod
    def needed_action(service: Service) -> str | None:
        if service.expected_status == Status.RUNNING and service.status == Status.STOPPED:
            return "start"
        if service.expected_status == Status.STOPPED and service.status == Status.RUNNING:
            return "stop"
        return None

    def dispatch(self, machine: Machine) -> list[tuple[int, str, bool]]:
        """Start or stop every service whose status differs from the expected one.

        Phase failures are already recorded on the service; they are logged
        here and do not stop the remaining services.
        Returns (service no, action, succeeded) for each action taken.
        """
        taken: list[tuple[int, str, bool]] = []
        for svc in machine.ordered_services():
            action = self.needed_action(svc)
            if action is None:
                continue
            try:
                self.run_phase(action, machine, svc)
                taken.append((svc.no, action, True))
            except ReconcileError:
                taken.append((svc.no, action, False))
            except ValueError as e:
                db.log_event("ERROR", f"Skipped {action}: {e}", machine=machine.id, service_name=svc.name)
                taken.append((svc.no, action, False))
        return taken

    # --- helpers

    @contextmanager
    def _phase(self, machine: Machine, service: Service, phase: str) -> Iterator[None]:
        validate_service_name(service.name)
        prev = (service.status, service.sub_status, service.message, service.process_id)
        self._set(machine, service, phase, SubStatus.IN_PROGRESS)
        db.log_event("INFO", f"{phase} started", machine=machine.id, service_name=service.name)
        try:
            yield
        except TransportError as e:
            db.log_event("ERROR", f"{phase} could not reach host: {e}", machine=machine.id, service_name=service.name)
            if settings.transport_error_marks_error:
                self._set(machine, service, phase, SubStatus.ERROR, str(e))
            else:
                self._restore(machine, service, phase, prev)
            raise

    def _run(self, machine: Machine, command: str) -> str:
        return run_on(self.executor, machine, command)

    def _conclude(self, machine: Machine, service: Service, phase: str, ok: bool, output: str) -> None:
        if not ok:
            self._fail(machine, service, phase, output)
        self._set(machine, service, phase, SubStatus.DONE)
        db.log_event("INFO", f"{phase} done", machine=machine.id, service_name=service.name)

    def _fail(self, machine: Machine, service: Service, phase: str, output: str) -> None:
        self._set(machine, service, phase, SubStatus.ERROR, output)
        db.log_event("ERROR", f"{phase} failed: {output}", machine=machine.id, service_name=service.name)
        send_alert(machine.id, service.name, f"{phase} failed", output)
        raise PhaseError(phase, output)

    def _set(self, machine: Machine, service: Service, status: str, sub_status: str, message: str = "") -> None:
        set_service_status(self.runtime, machine, service, status, sub_status, message)

    def _restore(self, machine: Machine, service: Service, phase: str, prev: tuple[str, str, str, int]) -> None:
        stored = update_service(self.runtime, machine.id, service.no, lambda s: s.revert(phase, prev))
        if stored is None:
            service.revert(phase, prev)
            return
        service.status, service.sub_status = stored.status, stored.sub_status
        service.message, service.process_id = stored.message, stored.process_id
