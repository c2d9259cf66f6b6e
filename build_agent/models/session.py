from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SessionState(str, Enum):
    idle = "idle"
    env_set = "env-set"
    dir_prepared = "dir-prepared"
    cloned = "cloned"
    checked_out = "checked-out"
    dependencies_installed = "dependencies-installed"
    running_script = "running-script"
    done = "done"
    error = "error"
    cancelled = "cancelled"


TERMINAL_STATES = {SessionState.done, SessionState.cancelled}


class StageStatus(str, Enum):
    pending = "pending"
    building = "building"
    success = "success"
    failed = "failed"


# Allowed forward moves; anything else is a regression or a skip.
_STAGE_TRANSITIONS = {
    StageStatus.pending: {StageStatus.building},
    StageStatus.building: {StageStatus.success, StageStatus.failed},
    StageStatus.success: set(),
    StageStatus.failed: set(),
}


class Stage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    build: Any = None
    name: str
    status: StageStatus = StageStatus.pending
    start_at: int | None = Field(default=None, alias="startAt")
    done_at: int | None = Field(default=None, alias="doneAt")

    def can_move_to(self, status: StageStatus) -> bool:
        return status in _STAGE_TRANSITIONS[self.status]

    def to_record(self) -> dict[str, Any]:
        """Serialize the way the master stores stages on a build record."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Credential(BaseModel):
    type: str
    data: dict[str, Any] = {}

    @property
    def username(self) -> str | None:
        return self.data.get("username")

    @property
    def password(self) -> str | None:
        return self.data.get("password")


class Job(BaseModel):
    """The subset of the master's job document the agent reads."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = ""
    slug: str = ""
    repo_url: str = Field(default="", alias="repoUrl")
    branch: str = "master"
    cd_file_path: str = Field(default="cd.js", alias="cdFilePath")
    credential: Credential | None = None
    install_command: str | None = Field(default=None, alias="installCommand")
    script_command: list[str] | None = Field(default=None, alias="scriptCommand")


class BuildSession(BaseModel):
    id: str
    state: SessionState = SessionState.idle
    workspace: str | None = None
    stages: list[Stage] = []
