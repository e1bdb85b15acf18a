from __future__ import annotations

import secrets
from dataclasses import asdict
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from msr import db
from msr.api_models import ExpectedStatusRequest, MachineRequest
from msr.db import Machine, Service, machine_id, machine_to_dict
from msr.reconciler import Reconciler
from msr.records import set_expected_status
from msr.remote import SSHExecutor, TransportError, validate_service_name
from msr.runtime import MachineBusy, RuntimeState
from msr.settings import settings
from msr.status import PhaseError

app = FastAPI(title="Machine Service Reconciler")
security = HTTPBasic()

runtime = RuntimeState()
reconciler = Reconciler(runtime, SSHExecutor.from_settings())

ACTIONS = ("pull", "build", "deploy", "start", "stop")


def get_current_username(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    ok_user = secrets.compare_digest(credentials.username, settings.admin_user)
    ok_pass = secrets.compare_digest(credentials.password, settings.admin_password)
    if not (ok_user and ok_pass):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


def _load(owner: str, name: str) -> Machine:
    machine = db.get_machine(machine_id(owner, name))
    if machine is None:
        raise HTTPException(status_code=404, detail=f"Unknown machine '{owner}/{name}'.")
    return machine


def _service(machine: Machine, no: int) -> Service:
    svc = machine.services.get(no)
    if svc is None:
        raise HTTPException(status_code=404, detail=f"Unknown service {no} on '{machine.id}'.")
    return svc


@app.on_event("startup")
def startup() -> None:
    db.init_db()
    if settings.reconcile_enabled:
        reconciler.start()


@app.on_event("shutdown")
def shutdown() -> None:
    reconciler.stop()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/machines")
def list_machines(owner: str | None = None, username: str = Depends(get_current_username)) -> list[dict[str, Any]]:
    return [machine_to_dict(m) for m in db.list_machines(owner)]


@app.post("/machines", status_code=status.HTTP_201_CREATED)
def create_machine(req: MachineRequest, username: str = Depends(get_current_username)) -> dict[str, Any]:
    services: dict[int, Service] = {}
    for s in req.services:
        try:
            validate_service_name(s.name)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if s.no in services:
            raise HTTPException(status_code=400, detail=f"Duplicate service number {s.no}.")
        services[s.no] = Service(no=s.no, name=s.name, expected_status=s.expected_status)

    machine = Machine(
        owner=req.owner,
        name=req.name,
        ip=req.ip,
        username=req.username,
        password=req.password,
        services=services,
    )
    if not db.add_machine(machine):
        raise HTTPException(status_code=409, detail=f"Machine '{machine.id}' already exists.")
    db.log_event("INFO", f"Machine registered by {username}", machine=machine.id)
    return machine_to_dict(machine)


@app.get("/machines/{owner}/{name}")
def get_machine(owner: str, name: str, username: str = Depends(get_current_username)) -> dict[str, Any]:
    """Machine with Running/Stopped refreshed from a live process census."""
    _load(owner, name)
    try:
        machine = reconciler.sync_observed_state(machine_id(owner, name))
    except TransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if machine is None:
        raise HTTPException(status_code=404, detail=f"Unknown machine '{owner}/{name}'.")
    return machine_to_dict(machine)


@app.delete("/machines/{owner}/{name}")
def delete_machine(owner: str, name: str, username: str = Depends(get_current_username)) -> dict[str, Any]:
    mid = machine_id(owner, name)
    with runtime.machine_lock(mid):
        deleted = db.delete_machine(owner, name)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Unknown machine '{mid}'.")
    runtime.forget(mid)
    db.log_event("INFO", f"Machine deleted by {username}", machine=mid)
    return {"deleted": mid}


@app.put("/machines/{owner}/{name}/services/{no}/expected")
def put_expected_status(
    owner: str,
    name: str,
    no: int,
    req: ExpectedStatusRequest,
    username: str = Depends(get_current_username),
) -> dict[str, Any]:
    svc = set_expected_status(runtime, machine_id(owner, name), no, req.expected_status)
    if svc is None:
        raise HTTPException(status_code=404, detail=f"Unknown service {no} on '{owner}/{name}'.")
    db.log_event(
        "INFO",
        f"Expected status set to {req.expected_status} by {username}",
        machine=machine_id(owner, name),
        service_name=svc.name,
    )
    return asdict(svc)


@app.post("/machines/{owner}/{name}/services/{no}/{action}")
def run_action(owner: str, name: str, no: int, action: str, username: str = Depends(get_current_username)) -> dict[str, Any]:
    if action not in ACTIONS:
        raise HTTPException(status_code=400, detail=f"Unknown action '{action}'. Use one of: {', '.join(ACTIONS)}.")
    machine = _load(owner, name)
    svc = _service(machine, no)
    db.log_event("INFO", f"{action} requested by {username}", machine=machine.id, service_name=svc.name)
    try:
        done = reconciler.run_action(action, machine.id, no)
    except MachineBusy as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except PhaseError as e:
        return {"ok": False, "message": e.output, "service": asdict(_service(_load(owner, name), no))}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if done is None:
        raise HTTPException(status_code=404, detail=f"Unknown service {no} on '{machine.id}'.")
    return {"ok": True, "message": "", "service": asdict(done)}


@app.post("/machines/{owner}/{name}/reconcile")
def reconcile(owner: str, name: str, username: str = Depends(get_current_username)) -> dict[str, Any]:
    mid = machine_id(owner, name)
    _load(owner, name)
    try:
        machine = reconciler.sync_observed_state(mid)
        if machine is None:
            raise HTTPException(status_code=404, detail=f"Unknown machine '{mid}'.")
        machine = reconciler.run_one_cycle(machine)
    except MachineBusy as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return machine_to_dict(machine)


@app.get("/events")
def events(limit: int = 100, machine: str | None = None, username: str = Depends(get_current_username)) -> list[dict[str, Any]]:
    return db.latest_events(max(1, min(1000, limit)), machine=machine)
