"""FastAPI server setup for the control API."""

from typing import List, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from ..errors import (
    ConvergenceConflict,
    InvalidRoute,
    ProxyControllerError,
    RootRouteInUse,
    RootRouteMissing,
    RouteError,
    RouteNotFound,
)
from ..proxy.convergence import ConvergenceReport
from ..proxy.routes import ROOT_PREFIX, build_route
from ..shared.logger import log_info, log_warning
from .models import CertificateRow, ErrorResponse, HealthStatus, ReportResponse, RouteRequest, RouteRow

ERROR_STATUS = {
    RouteNotFound: 404,
    RootRouteMissing: 409,
    RootRouteInUse: 409,
    ConvergenceConflict: 409,
    InvalidRoute: 422,
}


def status_for(error: ProxyControllerError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status
    return 500


def _report(report: Optional[ConvergenceReport]) -> ReportResponse:
    return ReportResponse(**report.model_dump()) if report else ReportResponse()


def create_routes_router() -> APIRouter:
    """Create router for route management."""
    router = APIRouter(tags=["routes"])

    @router.get("/", response_model=List[RouteRow])
    async def list_routes(request: Request):
        """List applied routes and declared routes awaiting a certificate."""
        return request.app.state.controller.list()

    @router.post("/", response_model=ReportResponse, status_code=201)
    async def declare_route(request: Request, body: RouteRequest):
        route = build_route(**body.model_dump())
        report = await request.app.state.controller.declare(route)
        return _report(report)

    @router.delete("/{host}", response_model=ReportResponse)
    async def remove_route(request: Request, host: str, path_prefix: str = Query(ROOT_PREFIX)):
        report = await request.app.state.controller.remove(host, path_prefix)
        return _report(report)

    return router


def create_certificates_router() -> APIRouter:
    """Create router for certificate introspection."""
    router = APIRouter(tags=["certificates"])

    @router.get("/", response_model=List[CertificateRow])
    async def list_certificates(request: Request):
        return request.app.state.controller.certificates()

    return router


def create_api_app(controller) -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title="Proxy Route Controller API",
        description="Route declaration and certificate management API",
        version="1.0.0",
    )
    app.state.controller = controller

    @app.exception_handler(RouteError)
    async def route_error_handler(request: Request, exc: RouteError):
        status = status_for(exc)
        log_warning(f"{request.method} {request.url.path} rejected: {exc}", component="api",
                    status=status, error_type=type(exc).__name__)
        body = ErrorResponse(
            error=type(exc).__name__,
            detail=str(exc),
            host=exc.host,
            path_prefix=exc.path_prefix
        )
        return JSONResponse(status_code=status, content=body.model_dump())

    @app.get("/health", response_model=HealthStatus)
    async def health_check(request: Request):
        """Health check endpoint."""
        controller = request.app.state.controller
        redis_status = "disabled"
        if controller.storage:
            redis_status = "healthy" if await controller.storage.health_check() else "unhealthy"

        return HealthStatus(
            status="healthy" if redis_status != "unhealthy" else "degraded",
            scheduler=controller.scheduler.is_running(),
            redis=redis_status,
            routes=len(controller.table),
            hosts_applied=len(controller.state.hosts()),
            certificates=len(controller.engine.assignments())
        )

    @app.post("/reconcile", response_model=ReportResponse)
    async def reconcile(request: Request, retry_failed: bool = Query(False)):
        """Run a full convergence pass."""
        report = await request.app.state.controller.reconcile(retry_failed=retry_failed)
        log_info("Manual reconciliation", component="api", mutations=report.mutations,
                 failed=len(report.failed))
        return _report(report)

    app.include_router(create_routes_router(), prefix="/routes")
    app.include_router(create_certificates_router(), prefix="/certificates")

    return app
