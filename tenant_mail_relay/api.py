"""
FastAPI application factory and HTTP schemas for the tenant mail relay.

The module exposes a `create_app` function that builds the REST API in front
of :class:`tenant_mail_relay.core.RelayCore`. Administrative endpoints
(domains, SMTP credentials, commands, metrics) are protected by an optional
API token carried in the ``X-API-Token`` header. Message submission is
authorized by the per-domain bearer token in the ``Authorization`` header.
"""

from typing import Optional, Dict, Any, List, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Header, Query, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field, ConfigDict

from .core import RelayCore

app = FastAPI(title="Tenant Mail Relay")
service: RelayCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None

ERROR_STATUS = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "unauthorized": status.HTTP_401_UNAUTHORIZED,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "transport": status.HTTP_502_BAD_GATEWAY,
    "persistence": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the relay."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class DomainPayload(BaseModel):
    """Domain to register."""
    domain: str


class DomainResponse(CommandStatus):
    """Registered domain together with its bearer token."""
    domain: str
    token: str


class DomainListEntry(BaseModel):
    domain: str
    created_at: int


class DomainsResponse(CommandStatus):
    domains: List[DomainListEntry]


class SmtpPayload(BaseModel):
    """New SMTP credentials; both fields are required."""
    user: str
    pass_: str = Field(alias="pass")
    model_config = ConfigDict(populate_by_name=True)


class SmtpStatusResponse(CommandStatus):
    configured: bool
    user: str
    host: str
    port: int


class EmailPayload(BaseModel):
    """Message accepted by ``POST /email``."""
    model_config = ConfigDict(populate_by_name=True)
    from_: str = Field(alias="from")
    to: List[str]
    subject: str
    body: str
    html: Optional[str] = None


class SubmitResponse(CommandStatus):
    id: str
    status: str


class HealthResponse(CommandStatus):
    status: str
    queue_size: int
    archive_size: int


def _require_service() -> RelayCore:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def _check(result: Dict[str, Any]) -> Dict[str, Any]:
    """Raise the HTTP error matching a failed command result."""
    if isinstance(result, dict) and result.get("ok") is True:
        return result
    code = result.get("error_code") if isinstance(result, dict) else None
    detail = {"error": result.get("error") if isinstance(result, dict) else None, "error_code": code}
    raise HTTPException(status_code=ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST), detail=detail)


def create_app(
    svc: RelayCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`tenant_mail_relay.core.RelayCore` that implements
        the business logic for each command.
    api_token:
        Optional secret protecting the administrative endpoints. When
        provided, the ``X-API-Token`` header must match this value.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    global service
    service = svc

    # Use custom lifespan if provided, otherwise use the global app
    if lifespan is not None:
        api = FastAPI(title="Tenant Mail Relay", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    app.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.get("/health", response_model=HealthResponse, response_model_exclude_none=True)
    async def health():
        """Return queue and archive sizes."""
        result = _check(await _require_service().handle_command("health", {}))
        return HealthResponse.model_validate(result)

    @api.post(
        "/domains",
        response_model=DomainResponse,
        response_model_exclude_none=True,
        status_code=status.HTTP_201_CREATED,
        dependencies=[auth_dependency],
    )
    async def register_domain(payload: DomainPayload):
        """Register a domain and return its bearer token."""
        result = _check(await _require_service().handle_command("registerDomain", payload.model_dump()))
        return DomainResponse.model_validate(result)

    @api.get("/domains", response_model=DomainsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_domains():
        """List registered domains ordered by name."""
        result = _check(await _require_service().handle_command("listDomains", {}))
        return DomainsResponse.model_validate(result)

    @api.delete("/domains/{domain}", status_code=status.HTTP_204_NO_CONTENT, dependencies=[auth_dependency])
    async def delete_domain(domain: str):
        """Remove a domain; its token stops working immediately."""
        _check(await _require_service().handle_command("deleteDomain", {"domain": domain}))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @api.get("/smtp", response_model=SmtpStatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def smtp_status():
        """Report whether SMTP credentials are configured."""
        result = _check(await _require_service().handle_command("transportStatus", {}))
        return SmtpStatusResponse.model_validate(result)

    @api.post("/smtp", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def set_smtp(payload: SmtpPayload):
        """Persist new SMTP credentials and use them for the next send."""
        result = _check(
            await _require_service().handle_command("setTransport", {"user": payload.user, "pass": payload.pass_})
        )
        return BasicOkResponse.model_validate(result)

    @api.post("/email", response_model=SubmitResponse, response_model_exclude_none=True)
    async def send_email(
        payload: EmailPayload,
        response: Response,
        authorization: Optional[str] = Header(default=None),
        sync: bool = Query(default=False),
        save: bool = Query(default=True),
    ):
        """Queue a message, or send it immediately with ``?sync=true``."""
        data = {
            "token": authorization,
            "from": payload.from_,
            "to": payload.to,
            "subject": payload.subject,
            "body": payload.body,
            "html": payload.html,
            "sync": sync,
            "save": save,
        }
        result = _check(await _require_service().handle_command("submit", data))
        response.status_code = status.HTTP_200_OK if sync else status.HTTP_202_ACCEPTED
        return SubmitResponse.model_validate(result)

    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Wake the delivery worker without waiting for the poll interval."""
        result = await _require_service().handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the relay."""
        return Response(content=_require_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
