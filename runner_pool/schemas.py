from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SetupRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    pool_id: str = Field(min_length=1)
    tags: dict[str, str] = Field(default_factory=dict)
    correlation_id: str = ""
    log_key: str = ""
    setup_request: dict[str, Any] = Field(default_factory=dict)


class SetupResponse(BaseModel):
    instance_id: str
    ip_address: str


class ExecStepRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    ip_address: str = ""
    instance_id: str = ""
    pool_id: str = Field(min_length=1)
    correlation_id: str = ""
    start_step_request: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _stage_or_address(self) -> "ExecStepRequest":
        if not self.id and not self.ip_address:
            raise ValueError("either parameter 'id' or 'ip_address' must be provided")
        if not self.start_step_request.get("id"):
            raise ValueError("start_step_request.id must be provided")
        return self


class DestroyRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    instance_id: str = ""
    pool_id: str = Field(min_length=1)
    correlation_id: str = ""

    @model_validator(mode="after")
    def _stage_or_instance(self) -> "DestroyRequest":
        if not self.id and not self.instance_id:
            raise ValueError("either parameter 'id' or 'instance_id' must be provided")
        return self


class PoolOwnerResponse(BaseModel):
    owner: bool
