"""AWS implementation of the resource client using boto3.

One handler per resource kind, talking to IAM, Lambda, API Gateway and STS.
Provider errors are translated into the provisioning error taxonomy:

- throttling, 5xx and connection failures -> TransientError
- conflict / already exists -> AlreadyExistsError
- not found during lookup -> resource absent
- not found during delete -> already gone, treated as success
- anything else -> PermanentError

The SDK's own retries are disabled so that retry policy lives in one place
(calls.ProviderCaller).
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

from .client import ResourceClient, ResourceHandler
from .config import Config
from .errors import AlreadyExistsError, PermanentError, ProvisioningError, TransientError
from .graph import ResourceKind

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "ServiceException",
        "InternalFailure",
        "InternalServerError",
        "ConcurrentModification",
        "ConcurrentModificationException",
    }
)
ALREADY_EXISTS_ERROR_CODES = frozenset(
    {"EntityAlreadyExists", "ResourceConflictException", "ConflictException"}
)
NOT_FOUND_ERROR_CODES = frozenset(
    {"NoSuchEntity", "ResourceNotFoundException", "NotFoundException"}
)

# A freshly created IAM role takes a few seconds to become assumable by Lambda
ROLE_PROPAGATION_MARKER = "cannot be assumed"

LAMBDA_INTEGRATION_URI = (
    "arn:aws:apigateway:{region}:lambda:path/2015-03-31/functions/{function_arn}/invocations"
)
EXECUTE_API_SOURCE_ARN = "arn:aws:execute-api:{region}:{account}:{rest_api_id}/*/*/*"
INVOKE_URL = "https://{rest_api_id}.execute-api.{region}.amazonaws.com/{stage_name}"

MAX_ARTIFACT_SIZE_BYTES = 50 * 1024 * 1024  # Lambda direct upload limit


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def _is_not_found(error: ClientError) -> bool:
    return _error_code(error) in NOT_FOUND_ERROR_CODES


def translate_error(error: Exception, operation: str) -> ProvisioningError:
    """Map a boto3/botocore exception onto the provisioning taxonomy."""
    if isinstance(error, ClientError):
        code = _error_code(error)
        message = str(error.response.get("Error", {}).get("Message", error))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)

        if code in TRANSIENT_ERROR_CODES or (isinstance(status, int) and status >= 500):
            return TransientError(f"{operation}: {code}: {message}")
        if code == "InvalidParameterValueException" and ROLE_PROPAGATION_MARKER in message:
            return TransientError(f"{operation}: role not yet assumable: {message}")
        if code in ALREADY_EXISTS_ERROR_CODES:
            return AlreadyExistsError(f"{operation}: {code}: {message}")
        return PermanentError(f"{operation}: {code}: {message}")

    if isinstance(error, (BotoConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return TransientError(f"{operation}: {type(error).__name__}: {error}")

    return PermanentError(f"{operation}: {type(error).__name__}: {error}")


@contextmanager
def translated_errors(operation: str) -> Iterator[None]:
    """Re-raise SDK exceptions as provisioning errors."""
    try:
        yield
    except (ClientError, BotoCoreError) as e:
        raise translate_error(e, operation) from e


class _AwsHandler(ResourceHandler):
    def __init__(self, aws: AwsResourceClient) -> None:
        self._aws = aws


class RoleHandler(_AwsHandler):
    """IAM execution role for the function."""

    kind = ResourceKind.ROLE
    supports_lookup = True

    def exists(self, name: str) -> str | None:
        iam = self._aws.client("iam")
        try:
            return iam.get_role(RoleName=name)["Role"]["Arn"]
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise translate_error(e, f"get role {name}") from e

    def create(self, params: Mapping[str, Any]) -> str:
        iam = self._aws.client("iam")
        try:
            response = iam.create_role(
                RoleName=params["name"],
                AssumeRolePolicyDocument=json.dumps(params["assume_role_policy"]),
            )
        except ClientError as e:
            error = translate_error(e, f"create role {params['name']}")
            if isinstance(error, AlreadyExistsError):
                error.existing_id = self.exists(params["name"])
            raise error from e
        return response["Role"]["Arn"]

    def delete(self, external_id: str, params: Mapping[str, Any]) -> None:
        iam = self._aws.client("iam")
        try:
            iam.delete_role(RoleName=params["name"])
        except ClientError as e:
            if not _is_not_found(e):
                raise translate_error(e, f"delete role {params['name']}") from e


class FunctionHandler(_AwsHandler):
    """Lambda function built from the request's artifact."""

    kind = ResourceKind.FUNCTION
    supports_lookup = True

    def exists(self, name: str) -> str | None:
        lam = self._aws.client("lambda")
        try:
            return lam.get_function(FunctionName=name)["Configuration"]["FunctionArn"]
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise translate_error(e, f"get function {name}") from e

    def create(self, params: Mapping[str, Any]) -> str:
        artifact = Path(params["artifact"])
        try:
            size = artifact.stat().st_size
            if size > MAX_ARTIFACT_SIZE_BYTES:
                raise PermanentError(
                    f"Artifact {artifact} exceeds {MAX_ARTIFACT_SIZE_BYTES} bytes ({size})"
                )
            code = artifact.read_bytes()
        except OSError as e:
            raise PermanentError(f"Cannot read artifact {artifact}: {e}") from e

        kwargs: dict[str, Any] = {
            "FunctionName": params["name"],
            "Runtime": params["runtime"],
            "Role": params["role_arn"],
            "Handler": params["handler"],
            "Code": {"ZipFile": code},
            "MemorySize": params["memory_size"],
        }
        if params.get("description"):
            kwargs["Description"] = params["description"]

        lam = self._aws.client("lambda")
        try:
            response = lam.create_function(**kwargs)
        except ClientError as e:
            error = translate_error(e, f"create function {params['name']}")
            if isinstance(error, AlreadyExistsError):
                error.existing_id = self.exists(params["name"])
            raise error from e
        return response["FunctionArn"]

    def delete(self, external_id: str, params: Mapping[str, Any]) -> None:
        lam = self._aws.client("lambda")
        try:
            lam.delete_function(FunctionName=params["name"])
        except ClientError as e:
            if not _is_not_found(e):
                raise translate_error(e, f"delete function {params['name']}") from e


class RestApiHandler(_AwsHandler):
    """API Gateway REST API."""

    kind = ResourceKind.API
    supports_lookup = True

    def exists(self, name: str) -> str | None:
        apigw = self._aws.client("apigateway")
        matches: list[str] = []
        with translated_errors(f"list rest apis for {name}"):
            for page in apigw.get_paginator("get_rest_apis").paginate():
                matches.extend(item["id"] for item in page.get("items", []) if item["name"] == name)

        if len(matches) > 1:
            raise PermanentError(
                f"{len(matches)} REST APIs are named '{name}' ({matches}); cannot pick one"
            )
        return matches[0] if matches else None

    def create(self, params: Mapping[str, Any]) -> str:
        kwargs: dict[str, Any] = {"name": params["name"]}
        if params.get("description"):
            kwargs["description"] = params["description"]

        apigw = self._aws.client("apigateway")
        with translated_errors(f"create rest api {params['name']}"):
            response = apigw.create_rest_api(**kwargs)
        return response["id"]

    def delete(self, external_id: str, params: Mapping[str, Any]) -> None:
        apigw = self._aws.client("apigateway")
        try:
            apigw.delete_rest_api(restApiId=external_id)
        except ClientError as e:
            if not _is_not_found(e):
                raise translate_error(e, f"delete rest api {external_id}") from e


class PathResourceHandler(_AwsHandler):
    """API Gateway path resource.

    The root resource ("/") comes with the API: "creating" it resolves its
    id and deleting it is a no-op.
    """

    kind = ResourceKind.PATH_RESOURCE

    def create(self, params: Mapping[str, Any]) -> str:
        apigw = self._aws.client("apigateway")
        rest_api_id = params["rest_api_id"]

        if params.get("path") == "/":
            with translated_errors(f"get root resource of {rest_api_id}"):
                for page in apigw.get_paginator("get_resources").paginate(restApiId=rest_api_id):
                    for item in page.get("items", []):
                        if item.get("path") == "/":
                            return item["id"]
            raise PermanentError(f"REST API {rest_api_id} has no root resource")

        with translated_errors(f"create resource {params['path_part']} in {rest_api_id}"):
            response = apigw.create_resource(
                restApiId=rest_api_id,
                parentId=params["parent_id"],
                pathPart=params["path_part"],
            )
        return response["id"]

    def delete(self, external_id: str, params: Mapping[str, Any]) -> None:
        if params.get("path") == "/":
            return
        apigw = self._aws.client("apigateway")
        try:
            apigw.delete_resource(restApiId=params["rest_api_id"], resourceId=external_id)
        except ClientError as e:
            if not _is_not_found(e):
                raise translate_error(e, f"delete resource {external_id}") from e


class MethodHandler(_AwsHandler):
    kind = ResourceKind.METHOD

    def create(self, params: Mapping[str, Any]) -> str:
        apigw = self._aws.client("apigateway")
        with translated_errors(f"put method {params['http_method']} on {params['resource_id']}"):
            apigw.put_method(
                restApiId=params["rest_api_id"],
                resourceId=params["resource_id"],
                httpMethod=params["http_method"],
                authorizationType=params["authorization_type"],
                requestParameters=dict(params.get("request_parameters") or {}),
            )
        return f"{params['resource_id']}/{params['http_method']}"

    def delete(self, external_id: str, params: Mapping[str, Any]) -> None:
        apigw = self._aws.client("apigateway")
        try:
            apigw.delete_method(
                restApiId=params["rest_api_id"],
                resourceId=params["resource_id"],
                httpMethod=params["http_method"],
            )
        except ClientError as e:
            if not _is_not_found(e):
                raise translate_error(e, f"delete method {external_id}") from e


class IntegrationHandler(_AwsHandler):
    """AWS_PROXY integration forwarding every request to the function."""

    kind = ResourceKind.INTEGRATION

    def create(self, params: Mapping[str, Any]) -> str:
        function_arn = params["function_arn"]
        uri = LAMBDA_INTEGRATION_URI.format(
            region=self._aws.region_for(function_arn), function_arn=function_arn
        )

        apigw = self._aws.client("apigateway")
        with translated_errors(f"put integration on {params['resource_id']}"):
            apigw.put_integration(
                restApiId=params["rest_api_id"],
                resourceId=params["resource_id"],
                httpMethod=params["http_method"],
                type=params["type"],
                integrationHttpMethod=params["integration_http_method"],
                uri=uri,
                contentHandling=params["content_handling"],
                cacheKeyParameters=list(params.get("cache_key_parameters") or []),
            )
        return f"{params['resource_id']}/{params['http_method']}/integration"

    def delete(self, external_id: str, params: Mapping[str, Any]) -> None:
        apigw = self._aws.client("apigateway")
        try:
            apigw.delete_integration(
                restApiId=params["rest_api_id"],
                resourceId=params["resource_id"],
                httpMethod=params["http_method"],
            )
        except ClientError as e:
            if not _is_not_found(e):
                raise translate_error(e, f"delete integration {external_id}") from e


class MethodResponseHandler(_AwsHandler):
    kind = ResourceKind.METHOD_RESPONSE

    def create(self, params: Mapping[str, Any]) -> str:
        apigw = self._aws.client("apigateway")
        with translated_errors(f"put method response on {params['resource_id']}"):
            apigw.put_method_response(
                restApiId=params["rest_api_id"],
                resourceId=params["resource_id"],
                httpMethod=params["http_method"],
                statusCode=params["status_code"],
                responseModels=dict(params.get("response_models") or {}),
            )
        return f"{params['resource_id']}/{params['http_method']}/{params['status_code']}"

    def delete(self, external_id: str, params: Mapping[str, Any]) -> None:
        apigw = self._aws.client("apigateway")
        try:
            apigw.delete_method_response(
                restApiId=params["rest_api_id"],
                resourceId=params["resource_id"],
                httpMethod=params["http_method"],
                statusCode=params["status_code"],
            )
        except ClientError as e:
            if not _is_not_found(e):
                raise translate_error(e, f"delete method response {external_id}") from e


class DeploymentHandler(_AwsHandler):
    """Deployment of the API to a named stage."""

    kind = ResourceKind.DEPLOYMENT

    def create(self, params: Mapping[str, Any]) -> str:
        apigw = self._aws.client("apigateway")
        with translated_errors(f"deploy {params['rest_api_id']} to {params['stage_name']}"):
            response = apigw.create_deployment(
                restApiId=params["rest_api_id"],
                stageName=params["stage_name"],
            )
        return response["id"]

    def delete(self, external_id: str, params: Mapping[str, Any]) -> None:
        # A deployment referenced by a stage cannot be deleted
        apigw = self._aws.client("apigateway")
        rest_api_id = params["rest_api_id"]
        try:
            apigw.delete_stage(restApiId=rest_api_id, stageName=params["stage_name"])
        except ClientError as e:
            if not _is_not_found(e):
                raise translate_error(e, f"delete stage {params['stage_name']}") from e
        try:
            apigw.delete_deployment(restApiId=rest_api_id, deploymentId=external_id)
        except ClientError as e:
            if not _is_not_found(e):
                raise translate_error(e, f"delete deployment {external_id}") from e


class PermissionHandler(_AwsHandler):
    """Resource policy statement letting API Gateway invoke the function."""

    kind = ResourceKind.PERMISSION

    @staticmethod
    def statement_id(params: Mapping[str, Any]) -> str:
        return f"api-{params['rest_api_id']}-{params['root_resource_id']}"

    def create(self, params: Mapping[str, Any]) -> str:
        statement_id = self.statement_id(params)
        source_arn = EXECUTE_API_SOURCE_ARN.format(
            region=self._aws.region,
            account=self._aws.account_id(),
            rest_api_id=params["rest_api_id"],
        )

        lam = self._aws.client("lambda")
        with translated_errors(f"add permission {statement_id}"):
            lam.add_permission(
                FunctionName=params["function_name"],
                StatementId=statement_id,
                Action=params["action"],
                Principal=params["principal"],
                SourceArn=source_arn,
            )
        return statement_id

    def delete(self, external_id: str, params: Mapping[str, Any]) -> None:
        lam = self._aws.client("lambda")
        try:
            lam.remove_permission(FunctionName=params["function_name"], StatementId=external_id)
        except ClientError as e:
            if not _is_not_found(e):
                raise translate_error(e, f"remove permission {external_id}") from e


HANDLER_CLASSES: tuple[type[_AwsHandler], ...] = (
    RoleHandler,
    FunctionHandler,
    RestApiHandler,
    PathResourceHandler,
    MethodHandler,
    IntegrationHandler,
    MethodResponseHandler,
    DeploymentHandler,
    PermissionHandler,
)


class AwsResourceClient(ResourceClient):
    """Resource client backed by boto3.

    Service clients are created lazily and cached, so a client obtained via
    client() is the one the handlers use. Handlers run on worker threads
    and a boto3 Session is not thread-safe, so every use of the session
    happens under a lock.
    """

    def __init__(self, config: Config, session: boto3.session.Session | None = None) -> None:
        self._config = config
        self._session = session or boto3.session.Session(region_name=config.region)
        self._clients: dict[str, Any] = {}
        self._account_id: str | None = None
        self._lock = threading.RLock()
        self._handlers = {cls.kind: cls(self) for cls in HANDLER_CLASSES}

    @property
    def region(self) -> str:
        region = self._config.region or self._session.region_name
        if not region:
            raise PermanentError("No AWS region configured. Set AWS_REGION or AWS_DEFAULT_REGION.")
        return region

    def client(self, service_name: str) -> Any:
        """Get or create a boto3 client for a service."""
        with self._lock:
            if service_name not in self._clients:
                boto_config = BotoConfig(
                    retries={"max_attempts": 1, "mode": "standard"},
                    connect_timeout=self._config.call_timeout_seconds,
                    read_timeout=self._config.call_timeout_seconds,
                )
                self._clients[service_name] = self._session.client(
                    service_name,
                    region_name=self.region,
                    endpoint_url=self._config.endpoint_url,
                    config=boto_config,
                )
            return self._clients[service_name]

    def account_id(self) -> str:
        """AWS account id of the caller, looked up once."""
        with self._lock:
            if self._account_id is None:
                with translated_errors("get caller identity"):
                    identity = self.client("sts").get_caller_identity()
                self._account_id = identity["Account"]
            return self._account_id

    def region_for(self, arn: str) -> str:
        """Region embedded in an ARN, falling back to the configured region."""
        parts = arn.split(":")
        if len(parts) > 3 and parts[0] == "arn" and parts[3]:
            return parts[3]
        return self.region

    def handler(self, kind: ResourceKind) -> ResourceHandler:
        return self._handlers[kind]

    def describe_endpoint(self, rest_api_id: str, stage_name: str) -> str | None:
        return INVOKE_URL.format(rest_api_id=rest_api_id, region=self.region, stage_name=stage_name)
