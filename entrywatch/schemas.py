from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class JobExecutionLogRead(BaseModel):
    job_name: str
    executed_at: datetime
    status: Literal["success", "error"]
    message: str
    details: dict[str, Any] | None = None

    model_config = ConfigDict(from_attributes=True)


class UnitOutcomeRead(BaseModel):
    unit: str
    unit_id: str = Field(alias="unitId")
    notified_users: list[str] = Field(default_factory=list, alias="notifiedUsers")
    skipped_users: list[str] = Field(default_factory=list, alias="skippedUsers")
    failed_users: list[str] = Field(default_factory=list, alias="failedUsers")

    model_config = ConfigDict(populate_by_name=True)


class SweepRunResponse(BaseModel):
    job_name: str
    day: date
    status: Literal["success"] = "success"
    message: str
    missing_units: int
    sent: int
    skipped: int
    failed: int
    units: list[UnitOutcomeRead] = Field(default_factory=list)
