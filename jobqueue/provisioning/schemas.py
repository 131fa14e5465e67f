"""
Provision project payload and result schemas.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

AVAILABLE_REGIONS = ("us-east-1", "us-west-2", "eu-west-1", "ap-southeast-1")


class ServiceFlags(BaseModel):
    """Services to register the project with."""

    auth: bool = False
    realtime: bool = False
    storage: bool = False

    def enabled(self) -> list[str]:
        return [name for name, on in self.model_dump().items() if on]


class ApiKeyOptions(BaseModel):
    count: int = Field(default=1, ge=1, le=10, description="Keys to generate")
    prefix: str = Field(
        default="nm", min_length=1, max_length=20, pattern=r"^[a-z0-9_]+$"
    )


class ProvisionProjectPayload(BaseModel):
    """Payload for the ``provision_project`` job type."""

    model_config = ConfigDict(extra="ignore")

    project_id: str = Field(..., min_length=1, description="Project to provision")
    region: str = Field(..., description="Target region")
    services: ServiceFlags = Field(default_factory=ServiceFlags)
    api_keys: ApiKeyOptions = Field(default_factory=ApiKeyOptions)
    owner_id: str | None = None
    organization_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("project_id")
    @classmethod
    def validate_project_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("project_id cannot be blank")
        return v.strip()


class DatabaseInfo(BaseModel):
    host: str
    port: int
    database_name: str
    schema_name: str


class ServiceRegistration(BaseModel):
    enabled: bool = True
    tenant_id: str
    endpoint: str
    bucket_name: str | None = None


class ApiKeyInfo(BaseModel):
    key_id: str
    key_prefix: str


class ProvisionProjectResult(BaseModel):
    """Result stored on the completed job."""

    project_id: str
    region: str
    database: DatabaseInfo
    services: dict[str, ServiceRegistration] = Field(default_factory=dict)
    api_keys: list[ApiKeyInfo] = Field(default_factory=list)
    stages: list[str] = Field(default_factory=list)
