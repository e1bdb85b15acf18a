import dataclasses

import pytest

from conftest import wmic_row
from msr import actions, db
from msr.actions import ActionDispatcher, start_command, stop_command
from msr.reconciler import Reconciler
from msr.records import update_service
from msr.remote import TransportError
from msr.status import NO_PROCESS, PhaseError, Status, SubStatus


START_OK = (
    "成功: 成功创建计划任务 \"casnode\"。\r\n"
    "成功: 尝试运行 \"casnode\"。\r\n"
    "成功: 计划的任务 \"casnode\" 被成功删除。\r\n"
)


@pytest.fixture
def dispatcher(runtime, executor):
    return ActionDispatcher(runtime, executor)


def _stored(machine, no):
    return db.get_machine(machine.id).services[no]


def test_pull_done(dispatcher, executor, machine):
    executor.responses["git pull"] = "Successfully rebased and updated refs/heads/master.\n"
    svc = machine.services[0]
    dispatcher.pull(machine, svc)

    stored = _stored(machine, 0)
    assert (stored.status, stored.sub_status, stored.message) == (Status.PULL, SubStatus.DONE, "")
    assert executor.commands == ["cd C:/github_repos/casnode && git pull --rebase --autostash"]


def test_pull_conflict_beats_success_phrase(dispatcher, executor, machine):
    out = "Successfully rebased and updated refs/heads/master.\nApplying autostash resulted in conflicts.\n"
    executor.responses["git pull"] = out
    with pytest.raises(PhaseError) as exc:
        dispatcher.pull(machine, machine.services[0])

    assert exc.value.output == out
    stored = _stored(machine, 0)
    assert (stored.status, stored.sub_status, stored.message) == (Status.PULL, SubStatus.ERROR, out)


def test_build_first_step_failure_short_circuits(dispatcher, executor, machine):
    executor.responses["yarn install"] = "error An unexpected error occurred."
    executor.responses["yarn build"] = "Done in 3.00s."

    with pytest.raises(PhaseError):
        dispatcher.build(machine, machine.services[0])

    stored = _stored(machine, 0)
    assert (stored.status, stored.sub_status) == (Status.BUILD, SubStatus.ERROR)
    assert stored.message == "error An unexpected error occurred."
    assert executor.ran("yarn install")
    assert not executor.ran("yarn build")


def test_build_both_steps_done(dispatcher, executor, machine):
    executor.responses["yarn install"] = "Done in 10.1s."
    executor.responses["yarn build"] = "Done in 55.2s."
    dispatcher.build(machine, machine.services[0])

    stored = _stored(machine, 0)
    assert (stored.status, stored.sub_status) == (Status.BUILD, SubStatus.DONE)
    assert executor.commands == [
        "cd C:/github_repos/casnode/web && yarn install",
        "cd C:/github_repos/casnode/web && yarn build",
    ]


def test_build_second_step_failure(dispatcher, executor, machine):
    executor.responses["yarn install"] = "Done in 10.1s."
    executor.responses["yarn build"] = "Failed to compile."
    with pytest.raises(PhaseError):
        dispatcher.build(machine, machine.services[0])
    stored = _stored(machine, 0)
    assert (stored.status, stored.sub_status, stored.message) == (Status.BUILD, SubStatus.ERROR, "Failed to compile.")


def test_deploy_recovers_from_missing_module(dispatcher, executor, machine):
    executor.responses["go test"] = [
        "oss.go:5:2: no required module provides package github.com/x/y",
        "PASS\nok  \tgithub.com/casbin/casnode/oss\t0.3s",
    ]
    executor.responses["go mod tidy"] = "go: finding module for package github.com/x/y"

    dispatcher.deploy(machine, machine.services[0])

    stored = _stored(machine, 0)
    assert (stored.status, stored.sub_status) == (Status.DEPLOY, SubStatus.DONE)
    assert len(executor.ran("go test")) == 2
    assert executor.ran("go mod tidy") == ["cd C:/github_repos/casnode && go mod tidy"]


def test_deploy_tidy_error_fails_immediately(dispatcher, executor, machine):
    executor.responses["go test"] = "no required module provides package github.com/x/y"
    executor.responses["go mod tidy"] = "go: error loading module requirements"

    with pytest.raises(PhaseError) as exc:
        dispatcher.deploy(machine, machine.services[0])

    assert exc.value.output == "go: error loading module requirements"
    stored = _stored(machine, 0)
    assert (stored.status, stored.sub_status) == (Status.DEPLOY, SubStatus.ERROR)
    assert stored.message == "go: error loading module requirements"
    assert len(executor.ran("go test")) == 1


def test_deploy_test_failure(dispatcher, executor, machine):
    executor.responses["go test"] = "--- FAIL: TestOss (0.00s)\nFAIL"
    with pytest.raises(PhaseError):
        dispatcher.deploy(machine, machine.services[0])
    assert not executor.ran("go mod tidy")
    assert _stored(machine, 0).sub_status == SubStatus.ERROR


def test_start_done(dispatcher, executor, machine):
    executor.responses["SCHTASKS"] = START_OK
    dispatcher.start(machine, machine.services[0])

    stored = _stored(machine, 0)
    assert (stored.status, stored.sub_status, stored.message) == (Status.RUNNING, SubStatus.DONE, "")
    assert executor.commands == [start_command("casnode")]


def test_start_missing_delete_confirmation_is_error(dispatcher, executor, machine):
    out = START_OK.replace("被成功删除", "")
    executor.responses["SCHTASKS"] = out
    with pytest.raises(PhaseError):
        dispatcher.start(machine, machine.services[0])

    stored = _stored(machine, 0)
    assert (stored.status, stored.sub_status, stored.message) == (Status.RUNNING, SubStatus.ERROR, out)


def test_start_command_shape():
    cmd = start_command("casnode")
    create, run, delete = cmd.split(" && ")
    assert create.startswith('SCHTASKS /Create /SC ONCE /ST "00:00" /TN "casnode" /TR "CMD /C START')
    assert "\\casnode.bat - 快捷方式.lnk" in create
    assert "'%CD%'" in create
    assert run == 'SCHTASKS /Run /TN "casnode"'
    assert delete == 'SCHTASKS /Delete /TN "casnode" /F'


def test_stop_always_done(dispatcher, executor, machine):
    executor.responses["taskkill"] = 'ERROR: The process "4321" not found.'
    svc = machine.services[1]
    dispatcher.stop(machine, svc)

    assert executor.commands == [stop_command(4321)] == ["taskkill /T /F /PID 4321"]
    stored = _stored(machine, 1)
    assert (stored.status, stored.sub_status) == (Status.STOPPED, SubStatus.DONE)
    assert stored.process_id == NO_PROCESS


def test_transport_error_restores_previous_status(dispatcher, executor, machine):
    executor.responses["git pull"] = TransportError("10.0.0.5", "timed out")
    before = _stored(machine, 1)

    with pytest.raises(TransportError):
        dispatcher.pull(machine, machine.services[1])

    after = _stored(machine, 1)
    assert (after.status, after.sub_status, after.message, after.process_id) == (
        before.status,
        before.sub_status,
        before.message,
        before.process_id,
    )
    assert any("could not reach host" in e["message"] for e in db.latest_events(machine=machine.id))


def test_transport_error_keeps_pid_observed_during_phase(runtime, executor, machine):
    reconciler = Reconciler(runtime, executor)
    executor.responses["wmic"] = wmic_row("casdoor", 9999)

    def pull_hangs_then_drops(command):
        # casdoor restarted while the pull was in flight
        reconciler.sync_observed_state(machine.id)
        raise TransportError("10.0.0.5", "timed out")

    executor.responses["git pull"] = pull_hangs_then_drops
    svc = machine.services[1]

    with pytest.raises(TransportError):
        reconciler.dispatcher.pull(machine, svc)

    stored = _stored(machine, 1)
    assert (stored.status, stored.sub_status, stored.message, stored.process_id) == (Status.RUNNING, "", "", 9999)
    assert (svc.status, svc.sub_status, svc.process_id) == (Status.RUNNING, "", 9999)


def test_transport_error_during_stop_keeps_observed_process(dispatcher, executor, runtime, machine):
    # The census that ran during the stop still saw the old process.
    def kill_drops(command):
        update_service(runtime, machine.id, 1, lambda s: s.observe(4321))
        raise TransportError("10.0.0.5", "Connection reset")

    executor.responses["taskkill"] = kill_drops

    with pytest.raises(TransportError):
        dispatcher.stop(machine, machine.services[1])

    stored = _stored(machine, 1)
    assert (stored.status, stored.sub_status, stored.process_id) == (Status.RUNNING, "", 4321)


def test_transport_error_can_mark_error(dispatcher, executor, machine, monkeypatch):
    monkeypatch.setattr(actions, "settings", dataclasses.replace(actions.settings, transport_error_marks_error=True))
    executor.responses["SCHTASKS"] = TransportError("10.0.0.5", "Authentication failed.")

    with pytest.raises(TransportError):
        dispatcher.start(machine, machine.services[0])

    stored = _stored(machine, 0)
    assert (stored.status, stored.sub_status) == (Status.RUNNING, SubStatus.ERROR)
    assert "Authentication failed." in stored.message


def test_run_phase_rejects_unknown_action(dispatcher, machine):
    with pytest.raises(ValueError):
        dispatcher.run_phase("reboot", machine, machine.services[0])


def test_needed_action():
    from msr.db import Service

    assert ActionDispatcher.needed_action(Service(no=0, name="a", expected_status=Status.RUNNING, status=Status.STOPPED)) == "start"
    assert ActionDispatcher.needed_action(Service(no=0, name="a", expected_status=Status.STOPPED, status=Status.RUNNING)) == "stop"
    assert ActionDispatcher.needed_action(Service(no=0, name="a", expected_status=Status.RUNNING, status=Status.RUNNING)) is None
    assert ActionDispatcher.needed_action(Service(no=0, name="a", expected_status=Status.RUNNING, status=Status.PULL)) is None
    assert ActionDispatcher.needed_action(Service(no=0, name="a", expected_status=Status.STOPPED, status="")) is None


def test_dispatch_starts_and_stops(dispatcher, executor, machine):
    executor.responses["SCHTASKS"] = START_OK
    taken = dispatcher.dispatch(machine)

    assert taken == [(0, "start", True), (1, "stop", True)]
    assert executor.ran("SCHTASKS") and executor.ran("taskkill /T /F /PID 4321")
    assert not executor.ran("git pull")
    stored = db.get_machine(machine.id)
    assert (stored.services[0].status, stored.services[0].sub_status) == (Status.RUNNING, SubStatus.DONE)
    assert (stored.services[1].status, stored.services[1].sub_status) == (Status.STOPPED, SubStatus.DONE)


def test_dispatch_continues_after_failure(dispatcher, executor, machine):
    executor.responses["SCHTASKS"] = "ERROR: Access is denied."
    taken = dispatcher.dispatch(machine)

    assert taken == [(0, "start", False), (1, "stop", True)]
    stored = db.get_machine(machine.id)
    assert stored.services[0].sub_status == SubStatus.ERROR
    assert stored.services[0].message == "ERROR: Access is denied."
