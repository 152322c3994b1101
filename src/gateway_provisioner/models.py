"""Pydantic models for provisioning requests with validation.

These models provide:
1. Type-safe parsing of CLI options and YAML request files
2. Validation at the boundary (fail fast, before any resource exists)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import InvalidRequestError

DEFAULT_ROLE_NAME = "lambda_basic_execution"
DEFAULT_HANDLER = "handler.api_handler"
DEFAULT_STAGE_NAME = "api"
DEFAULT_MEMORY_SIZE_MB = 512

ARTIFACT_SUFFIXES = (".zip", ".jar")


class FunctionRequest(BaseModel):
    """Immutable input for a function-only run (role and function, no API)."""

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    function_name: Annotated[
        str, Field(alias="functionName", pattern=r"^[A-Za-z0-9_-]{1,64}$")
    ]
    runtime: Annotated[str, Field(pattern=r"^[a-z][a-z0-9.-]{0,63}$")]
    artifact: Path
    memory_size: Annotated[int, Field(alias="memorySize", ge=128, le=10240)] = (
        DEFAULT_MEMORY_SIZE_MB
    )
    role_name: Annotated[str, Field(alias="roleName", pattern=r"^[\w+=,.@-]{1,64}$")] = (
        DEFAULT_ROLE_NAME
    )
    handler: Annotated[str, Field(min_length=1, max_length=128)] = DEFAULT_HANDLER
    description: str | None = None

    @property
    def run_name(self) -> str:
        """Name a saved run state is filed under."""
        return self.function_name

    @field_validator("handler")
    @classmethod
    def validate_handler_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    @field_validator("artifact")
    @classmethod
    def validate_artifact(cls, v: Path) -> Path:
        if v.suffix.lower() not in ARTIFACT_SUFFIXES:
            raise ValueError(f"artifact must be one of {ARTIFACT_SUFFIXES}: {v}")
        return v


class ProvisioningRequest(FunctionRequest):
    """Immutable input for one provisioning run."""

    api_name: Annotated[str, Field(alias="apiName", min_length=1, max_length=1024)]
    stage_name: Annotated[str, Field(alias="stageName", pattern=r"^[A-Za-z0-9_-]{1,128}$")] = (
        DEFAULT_STAGE_NAME
    )

    @property
    def run_name(self) -> str:
        return self.api_name

    @field_validator("api_name")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


def parse_request(
    data: dict[str, Any], model: type[FunctionRequest] = ProvisioningRequest
) -> FunctionRequest:
    """Build a request from raw values, mapping validation errors.

    Args:
        data: Field values keyed by field name or alias.
        model: Request model to validate against.

    Returns:
        Validated request.

    Raises:
        InvalidRequestError: If any field fails validation.
    """
    try:
        return model.model_validate(data)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise InvalidRequestError(f"Invalid provisioning request: {details}") from e
