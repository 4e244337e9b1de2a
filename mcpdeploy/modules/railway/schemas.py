from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Optional
from datetime import datetime

TERMINAL_DEPLOYMENT_STATUSES = ("SUCCESS", "FAILED", "CRASHED", "REMOVED")


class RailwayModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RailwayProject(RailwayModel):
    id: str
    name: str
    description: Optional[str] = None
    team_id: Optional[str] = Field(default=None, alias="teamId")
    is_public: Optional[bool] = Field(default=None, alias="isPublic")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class RailwayService(RailwayModel):
    id: str
    name: str
    project_id: Optional[str] = Field(default=None, alias="projectId")
    template_service_id: Optional[str] = Field(default=None, alias="templateServiceId")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class RailwayEnvironment(RailwayModel):
    id: str
    name: str
    project_id: Optional[str] = Field(default=None, alias="projectId")
    is_ephemeral: Optional[bool] = Field(default=None, alias="isEphemeral")


class RailwayDomain(RailwayModel):
    id: str
    domain: str


class RailwayDeployment(RailwayModel):
    id: str
    status: str
    service_id: Optional[str] = Field(default=None, alias="serviceId")
    environment_id: Optional[str] = Field(default=None, alias="environmentId")
    url: Optional[str] = Field(default=None, alias="staticUrl")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DEPLOYMENT_STATUSES


class DeployConfig(BaseModel):
    service_name: str
    github_repo: str
    branch: str = "main"
    environment_variables: Dict[str, str] = {}
