"""Request file loading with validation.

Request files are small YAML mappings. Both a flat layout and a
Kubernetes-style wrapper (apiVersion/kind/spec) are accepted:

```yaml
apiVersion: gateway-provisioner/v1
kind: LambdaApi
spec:
  functionName: MyHttpLambda
  apiName: my-api
  runtime: python3.12
  artifact: build/deploy.zip
```
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import MAX_REQUEST_FILE_SIZE_BYTES
from .errors import InvalidRequestError
from .models import FunctionRequest, ProvisioningRequest, parse_request

logger = logging.getLogger(__name__)


class RequestLoadError(InvalidRequestError):
    """Raised when a request file cannot be loaded or fails validation."""

    pass


def load_request(
    request_path: Path,
    overrides: dict[str, Any] | None = None,
    model: type[FunctionRequest] = ProvisioningRequest,
) -> FunctionRequest:
    """Load and validate a provisioning request from YAML.

    A relative artifact path is resolved against the request file's directory.

    Args:
        request_path: Path to the YAML request file.
        overrides: Values that take precedence over the file (e.g. CLI options).
        model: Request model to validate against (function-only runs use
            FunctionRequest).

    Returns:
        Validated request.

    Raises:
        RequestLoadError: If the file cannot be read or fails validation.
    """
    if not request_path.exists():
        raise RequestLoadError(f"Request file not found: {request_path}")

    try:
        file_size = request_path.stat().st_size
    except OSError as e:
        raise RequestLoadError(f"Failed to stat request file {request_path}: {e}") from e

    if file_size > MAX_REQUEST_FILE_SIZE_BYTES:
        raise RequestLoadError(
            f"Request file exceeds maximum size of {MAX_REQUEST_FILE_SIZE_BYTES} bytes: "
            f"{request_path}"
        )

    try:
        content = request_path.read_text(encoding="utf-8")
    except OSError as e:
        raise RequestLoadError(f"Failed to read request file {request_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise RequestLoadError(f"Invalid YAML in {request_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise RequestLoadError(f"Request file must contain a YAML mapping: {request_path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        request_data = raw_data.get("spec", {})
        if not isinstance(request_data, dict):
            raise RequestLoadError(f"Spec section must be a mapping: {request_path}")
    else:
        request_data = dict(raw_data)

    # Overrides replace both the snake_case and the camelCase spelling
    fields = model.model_fields
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        alias = fields[key].alias if key in fields and fields[key].alias else key
        request_data.pop(key, None)
        request_data[alias] = value

    artifact = request_data.get("artifact")
    if isinstance(artifact, str) and not Path(artifact).is_absolute():
        request_data["artifact"] = str(request_path.parent / artifact)

    try:
        request = parse_request(request_data, model)
    except InvalidRequestError as e:
        raise RequestLoadError(f"Validation failed for {request_path}: {e}") from e

    logger.info(
        "Loaded provisioning request from %s",
        request_path,
        extra={"run_name": request.run_name, "function_name": request.function_name},
    )
    return request
