"""Dependency graph builder for the Lambda + API Gateway proxy deployment.

Produces the fixed graph below. Pure functions: no I/O, no provider calls.
A function-only run uses just the first two nodes.

```
role
function              <- role
api
root-resource         <- api
proxy-resource        <- api, root-resource
root-method           <- api, root-resource
root-integration      <- root-method, function
root-method-response  <- root-method
proxy-method          <- proxy-resource
proxy-integration     <- proxy-method, function
proxy-method-response <- proxy-method
deployment            <- every method and integration
permission            <- deployment, function
```
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from .errors import InvalidRequestError
from .graph import Ref, ResourceGraph, ResourceKind, ResourceNode
from .models import FunctionRequest, ProvisioningRequest

logger = logging.getLogger(__name__)

ROLE = "role"
FUNCTION = "function"
API = "api"
ROOT_RESOURCE = "root-resource"
PROXY_RESOURCE = "proxy-resource"
DEPLOYMENT = "deployment"
PERMISSION = "permission"

# Resources created up front and reused by everything else
PREREQUISITE_IDS = frozenset({ROLE, FUNCTION, API})

PROXY_PATH_PART = "{proxy+}"
HTTP_METHOD = "ANY"
PROXY_REQUEST_PARAMETER = "method.request.path.proxy"

LAMBDA_ASSUME_ROLE_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Action": "sts:AssumeRole",
            "Effect": "Allow",
            "Principal": {"Service": "lambda.amazonaws.com"},
        }
    ],
}


def method_ids(prefix: str) -> tuple[str, str, str]:
    """Logical ids of the method, integration and method response for a path."""
    return f"{prefix}-method", f"{prefix}-integration", f"{prefix}-method-response"


def validate_request(request: FunctionRequest) -> None:
    """Re-validate a request, catching instances built without validation.

    Raises:
        InvalidRequestError: If the request is structurally invalid.
    """
    try:
        type(request).model_validate(request.model_dump())
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid provisioning request: {e}") from e


def _add_function_nodes(graph: ResourceGraph, request: FunctionRequest) -> None:
    graph.add_node(
        ResourceNode(
            logical_id=ROLE,
            kind=ResourceKind.ROLE,
            params={
                "name": request.role_name,
                "assume_role_policy": LAMBDA_ASSUME_ROLE_POLICY,
            },
        )
    )
    graph.add_node(
        ResourceNode(
            logical_id=FUNCTION,
            kind=ResourceKind.FUNCTION,
            depends_on=(ROLE,),
            params={
                "name": request.function_name,
                "role_arn": Ref(ROLE),
                "runtime": request.runtime,
                "handler": request.handler,
                "artifact": str(request.artifact),
                "memory_size": request.memory_size,
                "description": request.description or "",
            },
        )
    )


def build_function_graph(request: FunctionRequest) -> ResourceGraph:
    """Build the two-node graph for a function without an API.

    The role is reused when it already exists, like every lookup kind.

    Raises:
        InvalidRequestError: If the request is invalid. No graph is produced.
    """
    validate_request(request)

    graph = ResourceGraph()
    _add_function_nodes(graph, request)
    graph.validate()

    logger.debug(
        "Built function graph",
        extra={"function_name": request.function_name, "node_count": len(graph)},
    )
    return graph


def graph_for_request(request: FunctionRequest) -> ResourceGraph:
    """Full API graph for a ProvisioningRequest, function graph otherwise."""
    if isinstance(request, ProvisioningRequest):
        return build_graph(request)
    return build_function_graph(request)


def build_graph(request: ProvisioningRequest) -> ResourceGraph:
    """Build the provisioning graph for a request.

    Args:
        request: Validated provisioning request.

    Returns:
        Validated resource graph in declaration order.

    Raises:
        InvalidRequestError: If the request is invalid. No graph is produced.
    """
    validate_request(request)

    graph = ResourceGraph()
    _add_function_nodes(graph, request)
    graph.add_node(
        ResourceNode(
            logical_id=API,
            kind=ResourceKind.API,
            params={"name": request.api_name, "description": request.description or ""},
        )
    )
    graph.add_node(
        ResourceNode(
            logical_id=ROOT_RESOURCE,
            kind=ResourceKind.PATH_RESOURCE,
            depends_on=(API,),
            params={"rest_api_id": Ref(API), "path": "/"},
        )
    )
    graph.add_node(
        ResourceNode(
            logical_id=PROXY_RESOURCE,
            kind=ResourceKind.PATH_RESOURCE,
            depends_on=(API, ROOT_RESOURCE),
            params={
                "rest_api_id": Ref(API),
                "parent_id": Ref(ROOT_RESOURCE),
                "path_part": PROXY_PATH_PART,
            },
        )
    )

    deployment_deps: list[str] = []
    for prefix, resource_id in (("root", ROOT_RESOURCE), ("proxy", PROXY_RESOURCE)):
        method_id, integration_id, response_id = method_ids(prefix)
        method_deps = (API, resource_id) if prefix == "root" else (resource_id,)
        target = {
            "rest_api_id": Ref(API),
            "resource_id": Ref(resource_id),
            "http_method": HTTP_METHOD,
        }

        graph.add_node(
            ResourceNode(
                logical_id=method_id,
                kind=ResourceKind.METHOD,
                depends_on=method_deps,
                params={
                    **target,
                    "authorization_type": "NONE",
                    "request_parameters": {PROXY_REQUEST_PARAMETER: True},
                },
            )
        )
        graph.add_node(
            ResourceNode(
                logical_id=integration_id,
                kind=ResourceKind.INTEGRATION,
                depends_on=(method_id, FUNCTION),
                params={
                    **target,
                    "function_arn": Ref(FUNCTION),
                    "integration_http_method": "POST",
                    "type": "AWS_PROXY",
                    "content_handling": "CONVERT_TO_TEXT",
                    "cache_key_parameters": [PROXY_REQUEST_PARAMETER],
                },
            )
        )
        graph.add_node(
            ResourceNode(
                logical_id=response_id,
                kind=ResourceKind.METHOD_RESPONSE,
                depends_on=(method_id,),
                params={
                    **target,
                    "status_code": "200",
                    "response_models": {"application/json": "Empty"},
                },
            )
        )
        deployment_deps.extend([method_id, integration_id])

    graph.add_node(
        ResourceNode(
            logical_id=DEPLOYMENT,
            kind=ResourceKind.DEPLOYMENT,
            depends_on=tuple(deployment_deps),
            params={"rest_api_id": Ref(API), "stage_name": request.stage_name},
        )
    )
    graph.add_node(
        ResourceNode(
            logical_id=PERMISSION,
            kind=ResourceKind.PERMISSION,
            depends_on=(DEPLOYMENT, FUNCTION),
            params={
                "function_name": request.function_name,
                "rest_api_id": Ref(API),
                "root_resource_id": Ref(ROOT_RESOURCE),
                "action": "lambda:InvokeFunction",
                "principal": "apigateway.amazonaws.com",
            },
        )
    )

    graph.validate()

    logger.debug(
        "Built provisioning graph",
        extra={"api_name": request.api_name, "node_count": len(graph)},
    )
    return graph
