from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class ServiceSpec(BaseModel):
    no: int = Field(..., ge=0, description="Stable service number, unique within the machine")
    name: str = Field(..., description="Service name; also the .bat script name on the desktop")
    expected_status: Literal["Running", "Stopped"] = "Stopped"


class MachineRequest(BaseModel):
    owner: str = Field(..., min_length=1, pattern=r"^[^/]+$")
    name: str = Field(..., min_length=1, pattern=r"^[^/]+$")
    ip: str = Field(..., min_length=1, description="Host name or address reachable over SSH")
    username: str = Field(..., min_length=1)
    password: str = Field(..., description="SSH password")
    services: list[ServiceSpec] = Field(default_factory=list)


class ExpectedStatusRequest(BaseModel):
    expected_status: Literal["Running", "Stopped"]
