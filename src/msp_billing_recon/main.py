"""MSP billing reconciliation service entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from msp_billing_recon.adapters.repositories import ProductMappingRepository, SqlUnitOfWork, VendorProductRepository
from msp_billing_recon.api.router import router
from msp_billing_recon.core.services import ProductMappingService
from msp_billing_recon.database import dispose_database, init_database
from msp_billing_recon.errors import ReconciliationError
from msp_billing_recon.observability import configure_logging, get_logger
from msp_billing_recon.settings import Settings
from msp_billing_recon.sources import VendorSourceRegistry

logger = get_logger(__name__)
settings = Settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    configure_logging(settings)
    logger.info(
        "msp-billing-recon starting",
        service=settings.service_name,
        psa_match_mode=settings.psa_match_mode,
        bulk_vendor_fetch=settings.bulk_vendor_fetch,
    )
    session_factory = init_database(settings)
    async with session_factory() as session:
        service = ProductMappingService(
            mapping_repo=ProductMappingRepository(session),
            vendor_product_repo=VendorProductRepository(session),
            uow=SqlUnitOfWork(session),
        )
        await service.seed_known_products()
    # Vendor count sources are registered by the deployment once their clients are configured
    if not hasattr(app.state, "source_registry"):
        app.state.source_registry = VendorSourceRegistry()
    yield
    await dispose_database()
    logger.info("msp-billing-recon shutting down")


async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    """Render engine errors as {"error": code, "message": ...}."""
    logger.info(
        "request_failed",
        path=request.url.path,
        error_code=exc.error_code.value,
        status_code=exc.status_code,
        error=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error_code.value, "message": exc.message},
    )


def create_app(registry: VendorSourceRegistry | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        registry: Vendor count sources to serve with. When omitted an empty
            registry is installed at startup.
    """
    app = FastAPI(title="msp-billing-recon", version="0.1.0", lifespan=lifespan)
    if registry is not None:
        app.state.source_registry = registry
    app.add_exception_handler(ReconciliationError, reconciliation_error_handler)  # type: ignore[arg-type]
    app.include_router(router, prefix="/api/v1")

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.service_name}

    return app


app = create_app()
