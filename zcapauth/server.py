"""
zcapauth HTTP API.

Refresh policy management and capability refresh for profiles. Every route
lives under ``{base_path}/{profile_id}/zcaps`` and requires a capability
invocation rooted in the profile:

    POST   /policies                                create a policy
    GET    /policies                                list policies
    GET    /policies/{delegate_id}                  read a policy
    POST   /policies/{delegate_id}                  update a policy
    DELETE /policies/{delegate_id}                  delete a policy
    POST   /policies/{delegate_id}/refresh          refresh a capability
    GET    /policies/{delegate_id}/refresh/policy   delegate-visible policy

Usage:
    uvicorn --factory zcapauth.server:create_app_from_env
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from zcapauth import __version__
from zcapauth.capability import encode_uri_component
from zcapauth.config import get_profile_path
from zcapauth.context import AuthorizationContext
from zcapauth.errors import (
    NotAllowedError,
    OperationError,
    ValidationError,
    ZcapError,
)
from zcapauth.invocation import ExpectedValues, InvocationResult
from zcapauth.policies import Policy
from zcapauth.schemas import CreatePolicyBody, RefreshableZcap, UpdatePolicyBody

logger = logging.getLogger(__name__)


def get_request_target(request: Request) -> str:
    """Raw path and query of a request, exactly as the client signed it."""
    raw_path = request.scope.get("raw_path") or request.scope["path"].encode("utf-8")
    target = raw_path.split(b"?", 1)[0].decode("latin-1")
    query = request.scope.get("query_string", b"")
    if query:
        target += "?" + query.decode("latin-1")
    return target


def _get_context(request: Request) -> AuthorizationContext:
    return request.app.state.context


async def authorize_profile_zcap_request(request: Request, profile_id: str) -> InvocationResult:
    """Require a capability invocation rooted in ``profile_id``."""
    context = _get_context(request)
    target = get_request_target(request)
    body = await request.body()
    result = await context.invocation_authorizer.authorize(
        method=request.method,
        request_target=target,
        headers=request.headers,
        body=body or None,
        expected=ExpectedValues(
            host=context.host,
            root_invocation_target=get_profile_path(
                profile_id, context.base_uri, context.base_path
            ),
            target=f"{context.base_uri.rstrip('/')}{target}",
        ),
        get_root_controller=lambda root_id, root_target: profile_id,
    )
    request.state.zcap = result
    return result


# =============================================================================
# Routes
# =============================================================================

router = APIRouter(dependencies=[Depends(authorize_profile_zcap_request)])


@router.post("/policies", status_code=201)
async def create_policy(request: Request, profile_id: str, body: CreatePolicyBody):
    """Create a refresh policy for one of the profile's delegates."""
    context = _get_context(request)
    policy = Policy.from_dict(body.policy.to_policy_dict())
    if policy.controller != profile_id:
        raise NotAllowedError(
            "Permission denied; policy controller does not match HTTP route.", public=True
        )

    if context.policy_limit != -1:
        count = await context.policy_store.count(profile_id)
        if count >= context.policy_limit:
            raise NotAllowedError(
                "Permission denied; Maximum policies per profile "
                f'"{context.policy_limit}" already reached.',
                public=True,
            )

    stored = await context.policy_store.insert(policy)
    location = (
        f"{context.base_uri.rstrip('/')}{get_request_target(request).split('?', 1)[0]}"
        f"/{encode_uri_component(policy.delegate)}"
    )
    return JSONResponse(
        status_code=201, content={"policy": stored.to_dict()}, headers={"Location": location}
    )


@router.get("/policies")
async def list_policies(request: Request, profile_id: str):
    context = _get_context(request)
    policies = await context.policy_store.find(profile_id, limit=context.policy_list_limit)
    return {"results": [{"policy": policy.to_dict()} for policy in policies]}


@router.get("/policies/{delegate_id}")
async def get_policy(request: Request, profile_id: str, delegate_id: str):
    policy = await _get_context(request).policy_store.get(profile_id, delegate_id)
    return {"policy": policy.to_dict()}


@router.post("/policies/{delegate_id}")
async def update_policy(request: Request, profile_id: str, delegate_id: str, body: UpdatePolicyBody):
    """Update a policy; ``sequence`` must match the stored policy."""
    policy = Policy.from_dict(body.policy.to_policy_dict())
    if policy.controller != profile_id or policy.delegate != delegate_id:
        raise NotAllowedError(
            "Permission denied; policy controller or delegate do not match HTTP route.",
            public=True,
        )
    stored = await _get_context(request).policy_store.update(policy)
    return {"policy": stored.to_dict()}


@router.delete("/policies/{delegate_id}")
async def delete_policy(request: Request, profile_id: str, delegate_id: str):
    deleted = await _get_context(request).policy_store.remove(profile_id, delegate_id)
    return {"deleted": deleted}


@router.post("/policies/{delegate_id}/refresh")
async def refresh_zcap(
    request: Request,
    profile_id: str,
    delegate_id: str,
    capability: Dict[str, Any] = Body(...),
):
    """
    Refresh a capability the profile delegated.

    The submitted capability must be controlled by the invoker and must
    verify as a direct delegation from the profile's root capability.
    """
    context = _get_context(request)
    try:
        RefreshableZcap.model_validate(capability)
    except PydanticValidationError as e:
        raise ValidationError(
            "A validation error occurred in the 'refreshableZcap' validator.",
            details={"errors": _format_errors(e.errors())},
            cause=e,
        )

    invoker = request.state.zcap.controller
    if capability["controller"] != invoker:
        raise NotAllowedError(
            f'The controller "{capability["controller"]}" of the capability to be '
            f'refreshed must equal the invoked capability\'s controller "{invoker}".',
            public=True,
        )

    await context.chain_verifier.verify_refreshable_delegation(capability, profile_id)
    return await context.refreshed_zcap_cache.get_refreshed_zcap(profile_id, capability)


@router.api_route("/policies/{delegate_id}/refresh/policy", methods=["GET", "POST"])
async def get_viewable_refresh_policy(request: Request, profile_id: str, delegate_id: str):
    """Only ``refresh: false`` or the refresh constraints, never the full policy."""
    policy = await _get_context(request).policy_store.get(profile_id, delegate_id)
    return {"policy": policy.to_viewable_dict()}


# =============================================================================
# Error handling
# =============================================================================


def _format_errors(errors) -> list:
    return [
        {"loc": [str(part) for part in error.get("loc", ())], "message": error.get("msg", "")}
        for error in errors
    ]


async def handle_zcap_error(request: Request, exc: ZcapError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ValidationError(
        "A validation error occurred.", details={"errors": _format_errors(exc.errors())}
    )
    return JSONResponse(status_code=error.http_status, content=error.to_dict())


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error in {request.method} {request.url.path}")
    error = OperationError("An unexpected error occurred.")
    return JSONResponse(status_code=error.http_status, content=error.to_dict())


# =============================================================================
# Application
# =============================================================================


def create_app(context: Optional[AuthorizationContext] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        context: Shared collaborators (default: built from the environment).
    """
    context = context or AuthorizationContext.from_env()

    app = FastAPI(
        title="zcapauth",
        description="Capability authorization and zcap refresh for profiles",
        version=__version__,
    )
    app.state.context = context

    # authorization uses HTTP signatures + capabilities, not cookies
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Location"],
    )

    app.add_exception_handler(ZcapError, handle_zcap_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.include_router(router, prefix=f"{context.base_path}/{{profile_id}}/zcaps")
    logger.info(f"zcapauth serving {context.base_uri}{context.base_path} (host {context.host})")
    return app


def create_app_from_env() -> FastAPI:
    return create_app(AuthorizationContext.from_env())
