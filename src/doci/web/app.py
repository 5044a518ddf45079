"""FastAPI surface for the DOCI registry."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
import structlog
from fastapi import Body, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from doci.errors import DociError, InternalError, NotFound, Unauthorized
from doci.log import configure_logging
from doci.models import RegistrationRequest
from doci.settings import Settings, get_settings
from doci.wiring import Services, build_services, needs_http_client

logger = structlog.get_logger(__name__)


class EscrowCreate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    payer_ref: Optional[str] = None
    manuscript_ref: str | int
    amount: int
    required_approvals: int


class EscrowFund(BaseModel):
    amount: int


def create_app(
    settings: Optional[Settings] = None,
    *,
    services: Optional[Services] = None,
) -> FastAPI:
    """Factory used by uvicorn."""
    settings = settings or get_settings()
    configure_logging(settings.log_level, json_format=settings.log_json)

    client: httpx.AsyncClient | None = None
    if services is None:
        if needs_http_client(settings):
            client = httpx.AsyncClient(timeout=30)
        services = build_services(settings, client=client)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        if client is not None:
            await client.aclose()

    app = FastAPI(title="DOCI Registry", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(DociError)
    async def doci_error_handler(request: Request, exc: DociError) -> JSONResponse:
        logger.info("api.error", path=request.url.path, kind=exc.kind, status=exc.status_code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def request_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = [
            f"{'.'.join(str(part) for part in error['loc'][1:])}: {error['msg']}"
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "ValidationError", "message": "; ".join(messages) or "Invalid request"},
        )

    def current_user(request: Request) -> Optional[str]:
        value = request.headers.get(settings.auth_header)
        return value.strip() if value and value.strip() else None

    def require_user(user: Optional[str] = Depends(current_user)) -> str:
        if not user:
            raise Unauthorized("Authentication required")
        return user

    @app.get("/resolve/{prefix}/{suffix:path}")
    async def resolve(
        request: Request,
        prefix: str,
        suffix: str,
        user: Optional[str] = Depends(current_user),
    ) -> JSONResponse:
        context: dict[str, Any] = {
            "client": request.client.host if request.client else None,
            "user_agent": request.headers.get("user-agent"),
            "user_id": user,
        }
        try:
            resolution = await services.resolution.resolve(prefix, suffix, context)
        except NotFound as exc:
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"exists": False, "message": exc.message},
            )
        except InternalError as exc:
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"exists": False, "message": exc.message},
            )
        return JSONResponse(content=resolution.to_wire())

    @app.post("/identifiers", status_code=status.HTTP_201_CREATED)
    async def register(
        payload: RegistrationRequest, user: str = Depends(require_user)
    ) -> dict[str, Any]:
        identifier = await services.registration.register(
            kind=payload.kind,
            namespace_prefix=payload.namespace_prefix,
            owner_user_id=payload.owner_user_id,
            metadata=payload.metadata,
            suffix=payload.suffix,
            caller_user_id=user,
        )
        return identifier.to_wire()

    @app.get("/identifiers")
    async def list_identifiers(owner: Optional[str] = None, user: str = Depends(require_user)) -> list[dict[str, Any]]:
        items = await services.registration.list_for_owner(owner or user, user)
        return [item.to_wire() for item in items]

    @app.get("/identifiers/{identifier_id}")
    async def get_identifier(
        identifier_id: int, user: Optional[str] = Depends(current_user)
    ) -> dict[str, Any]:
        identifier = await services.registration.view(identifier_id, user)
        return identifier.to_wire()

    @app.patch("/identifiers/{identifier_id}")
    async def patch_identifier(
        identifier_id: int,
        patch: dict[str, Any] = Body(...),
        user: str = Depends(require_user),
    ) -> dict[str, Any]:
        identifier = await services.registration.update(identifier_id, user, patch)
        return identifier.to_wire()

    @app.post("/identifiers/{identifier_id}/revoke")
    async def revoke_identifier(identifier_id: int, user: str = Depends(require_user)) -> dict[str, Any]:
        identifier = await services.registration.revoke(identifier_id, user)
        return identifier.to_wire()

    @app.post("/identifiers/{identifier_id}/anchor")
    async def anchor_identifier(identifier_id: int, user: str = Depends(require_user)) -> dict[str, Any]:
        identifier = await services.registration.anchor(identifier_id, user)
        return identifier.to_wire()

    @app.get("/identifiers/{identifier_id}/stats")
    async def identifier_stats(
        identifier_id: int, user: Optional[str] = Depends(current_user)
    ) -> dict[str, Any]:
        stats = await services.registration.stats(identifier_id, user)
        return stats.to_wire()

    @app.post("/escrows", status_code=status.HTTP_201_CREATED)
    async def create_escrow(payload: EscrowCreate, user: str = Depends(require_user)) -> dict[str, Any]:
        account = await asyncio.to_thread(
            services.escrow.create,
            payer_ref=payload.payer_ref or user,
            manuscript_ref=str(payload.manuscript_ref),
            amount=payload.amount,
            required_approvals=payload.required_approvals,
        )
        return account.to_wire()

    @app.get("/escrows/{escrow_id}")
    async def get_escrow(escrow_id: int) -> dict[str, Any]:
        account = await asyncio.to_thread(services.escrow.get, escrow_id)
        payload = account.to_wire()
        transfers = await asyncio.to_thread(services.escrow.transfers, escrow_id)
        payload["transfers"] = [
            {
                "destination": entry.destination_ref,
                "amount": entry.amount,
                "reason": entry.reason,
            }
            for entry in transfers
        ]
        return payload

    @app.post("/escrows/{escrow_id}/fund")
    async def fund_escrow(escrow_id: int, payload: EscrowFund, user: str = Depends(require_user)) -> dict[str, Any]:
        account = await asyncio.to_thread(services.escrow.fund, escrow_id, payload.amount)
        return account.to_wire()

    @app.post("/escrows/{escrow_id}/approve")
    async def approve_escrow(escrow_id: int, user: str = Depends(require_user)) -> dict[str, Any]:
        account = await asyncio.to_thread(services.escrow.approve, escrow_id, user)
        return account.to_wire()

    @app.post("/escrows/{escrow_id}/release")
    async def release_escrow(escrow_id: int, user: str = Depends(require_user)) -> dict[str, Any]:
        account = await asyncio.to_thread(services.escrow.release, escrow_id)
        return account.to_wire()

    @app.post("/escrows/{escrow_id}/refund")
    async def refund_escrow(escrow_id: int, user: str = Depends(require_user)) -> dict[str, Any]:
        account = await asyncio.to_thread(services.escrow.refund, escrow_id, user)
        return account.to_wire()

    return app
