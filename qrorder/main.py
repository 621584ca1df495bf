"""
FastAPI Application Entry Point

QR Table Ordering - cart and order engine behind the table QR codes.

Endpoints:
    Current clients (session in the x-session-id header):
        - POST   /api/customer/session: Get or create the table's session
        - GET    /api/customer/cart: Current cart
        - POST   /api/customer/cart: Add an item
        - DELETE /api/customer/cart: Clear the cart
        - PATCH  /api/customer/cart/items/{line_item_id}: Change a line
        - DELETE /api/customer/cart/items/{line_item_id}: Remove a line
        - GET    /api/customer/orders: Orders of this session
        - POST   /api/customer/orders: Place the cart as an order

    Older clients (session in the URL path or the JSON body):
        - GET    /api/cart/{session_id}
        - DELETE /api/cart/{session_id}
        - POST   /api/cart
        - PATCH  /api/cart/items/{line_item_id}
        - DELETE /api/cart/items/{line_item_id}
        - POST   /api/orders

    Staff:
        - GET   /api/admin/orders
        - GET   /api/admin/orders/{order_id}
        - PATCH /api/admin/orders/{order_id}/status
        - GET   /api/admin/carts/{session_id}
        - POST  /api/admin/cache/flush
        - POST  /api/admin/sessions/expire
        - POST  /api/admin/tables/{table_number}/reset

    - GET /health: System health check

Every response that touches a session carries the canonical id in the
x-session-id header; clients replace their stored id with it.

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import sys
import logging
from datetime import datetime
from typing import Any, Optional
from contextlib import asynccontextmanager

from fastapi import Body, FastAPI, Depends, Query, Request, Response, Header
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from qrorder.core.config import get_settings, setup_logging
from qrorder.core.exceptions import OrderingError
from qrorder.schemas import (
    CartItemAdd,
    CartItemUpdate,
    CartResponse,
    ErrorResponse,
    HealthResponse,
    MaintenanceResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatusUpdate,
    PlaceOrderRequest,
    PlacedOrderResponse,
    SessionCreate,
    SessionResponse,
)
from qrorder.services.cart import CartMutation
from qrorder.services.compat import select_session
from qrorder.services.engine import OrderingEngine
from qrorder.services.orders import PlacedOrder
from qrorder.services.sessions import ResolvedSession

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

SESSION_HEADER = "x-session-id"

STATUS_BY_CATEGORY = {
    "validation": 400,
    "not_found": 404,
    "retryable": 503,
    "storage": 409,
}


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.

    `app.state.settings` may be set before startup to run against other
    settings (tests, one-off maintenance servers).
    """
    app_settings = getattr(app.state, "settings", None) or settings

    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {app_settings.app_name}")
    logger.info(f"   Version: {app_settings.app_version}")
    logger.info(f"   Environment: {app_settings.env_mode.value}")
    logger.info(f"   Debug: {app_settings.debug}")
    logger.info("=" * 60)

    engine = OrderingEngine.build(None if app_settings is settings else app_settings)
    await engine.start()
    app.state.engine = engine
    logger.info("✅ Database initialized")
    logger.info(f"✅ Cache Backend: {engine.cache.backend.provider_name}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await engine.close()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Cart and order engine for QR table ordering. Serves current clients "
        "(x-session-id header) and older clients (session id in path or body) "
        "side by side."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[SESSION_HEADER],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def get_engine(request: Request) -> OrderingEngine:
    return request.app.state.engine


async def resolve_request_session(
    engine: OrderingEngine,
    header_id: Optional[str] = None,
    path_id: Optional[str] = None,
    body_id: Optional[str] = None,
    header_table: Optional[str] = None,
    body_table: Optional[str] = None,
) -> ResolvedSession:
    """Pick the session source by precedence and resolve it."""
    selection = select_session(
        header_id,
        path_id,
        body_id,
        header_table=header_table,
        body_table=body_table,
    )
    return await engine.sessions.resolve(selection)


def with_session_header(response: Response, session_id: str) -> None:
    response.headers[SESSION_HEADER] = session_id


async def add_item(
    engine: OrderingEngine,
    resolved: ResolvedSession,
    payload: CartItemAdd,
    response: Response,
) -> CartResponse:
    mutation = await engine.carts.add(
        resolved,
        payload.menu_item_id,
        quantity=payload.quantity,
        selections=payload.selections,
        special_instructions=payload.special_instructions,
    )
    return mutation_result(mutation, response)


async def update_item(
    engine: OrderingEngine,
    resolved: ResolvedSession,
    line_item_id: int,
    payload: CartItemUpdate,
    response: Response,
) -> CartResponse:
    changes: dict[str, Any] = {
        "quantity": payload.quantity,
        "selections": payload.selections,
    }
    if "special_instructions" in payload.model_fields_set:
        changes["special_instructions"] = payload.special_instructions
    mutation = await engine.carts.update(resolved, line_item_id, **changes)
    return mutation_result(mutation, response)


def mutation_result(mutation: CartMutation, response: Response) -> CartResponse:
    with_session_header(response, mutation.session_id)
    return mutation.cart


async def place(
    engine: OrderingEngine,
    resolved: ResolvedSession,
    payload: PlaceOrderRequest,
    response: Response,
) -> PlacedOrderResponse:
    placed: PlacedOrder = await engine.orders.place_order(
        resolved,
        table_number=resolved.table_number,
        customer_name=payload.customer_name,
        notes=payload.notes,
    )
    with_session_header(response, placed.session_id)

    message = "Order placed successfully!"
    if placed.warnings:
        message = "Order placed; some prices changed since the items were added."

    return PlacedOrderResponse(
        message=message,
        session_id=placed.session_id,
        order=placed.order,
        warnings=[warning.to_response() for warning in placed.warnings],
    )


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍽️ Welcome to {settings.restaurant_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(engine: OrderingEngine = Depends(get_engine)) -> HealthResponse:
    """Verify the durable store and the cache are reachable."""
    db_status = "healthy" if await engine.database_ok() else "unhealthy"

    cache_status = "healthy" if await engine.cache.ping() else "unhealthy"
    if cache_status != "healthy":
        logger.error("Cache health check failed")

    overall = "operational" if db_status == cache_status == "healthy" else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        cache=cache_status,
        cache_backend=engine.cache.backend.provider_name,
        timestamp=datetime.now(),
    )


# =============================================================================
# CUSTOMER ENDPOINTS (x-session-id header)
# =============================================================================

@app.post(
    "/api/customer/session",
    response_model=SessionResponse,
    tags=["Customer"],
    summary="Start or resume the table session (QR scan)",
)
async def start_session(
    response: Response,
    payload: Optional[SessionCreate] = Body(None),
    x_table_number: Optional[str] = Header(None, alias="x-table-number"),
    engine: OrderingEngine = Depends(get_engine),
) -> SessionResponse:
    table_number = x_table_number or (payload.table_number if payload else None)
    if table_number == "undefined":
        table_number = None

    resolved = await engine.sessions.start_session(table_number)
    with_session_header(response, resolved.session_id)
    return SessionResponse(
        session_id=resolved.session_id,
        format=resolved.format.value,
        table_number=resolved.table_number,
        is_new=resolved.is_new,
    )


@app.get(
    "/api/customer/cart",
    response_model=CartResponse,
    tags=["Customer"],
)
async def get_customer_cart(
    response: Response,
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    x_table_number: Optional[str] = Header(None, alias="x-table-number"),
    engine: OrderingEngine = Depends(get_engine),
) -> CartResponse:
    resolved = await resolve_request_session(
        engine, header_id=x_session_id, header_table=x_table_number
    )
    with_session_header(response, resolved.session_id)
    return await engine.carts.get(resolved)


@app.post(
    "/api/customer/cart",
    response_model=CartResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Customer"],
)
async def add_to_customer_cart(
    payload: CartItemAdd,
    response: Response,
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    x_table_number: Optional[str] = Header(None, alias="x-table-number"),
    engine: OrderingEngine = Depends(get_engine),
) -> CartResponse:
    resolved = await resolve_request_session(
        engine,
        header_id=x_session_id,
        body_id=payload.session_id,
        header_table=x_table_number,
        body_table=payload.table_number,
    )
    return await add_item(engine, resolved, payload, response)


@app.delete(
    "/api/customer/cart",
    response_model=CartResponse,
    tags=["Customer"],
)
async def clear_customer_cart(
    response: Response,
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    engine: OrderingEngine = Depends(get_engine),
) -> CartResponse:
    resolved = await resolve_request_session(engine, header_id=x_session_id)
    return mutation_result(await engine.carts.clear(resolved), response)


@app.patch(
    "/api/customer/cart/items/{line_item_id}",
    response_model=CartResponse,
    tags=["Customer"],
)
async def update_customer_cart_item(
    line_item_id: int,
    payload: CartItemUpdate,
    response: Response,
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    engine: OrderingEngine = Depends(get_engine),
) -> CartResponse:
    resolved = await resolve_request_session(
        engine, header_id=x_session_id, body_id=payload.session_id
    )
    return await update_item(engine, resolved, line_item_id, payload, response)


@app.delete(
    "/api/customer/cart/items/{line_item_id}",
    response_model=CartResponse,
    tags=["Customer"],
)
async def remove_customer_cart_item(
    line_item_id: int,
    response: Response,
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    engine: OrderingEngine = Depends(get_engine),
) -> CartResponse:
    resolved = await resolve_request_session(engine, header_id=x_session_id)
    return mutation_result(await engine.carts.remove(resolved, line_item_id), response)


@app.get(
    "/api/customer/orders",
    response_model=list[OrderResponse],
    tags=["Customer"],
)
async def customer_orders(
    response: Response,
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    engine: OrderingEngine = Depends(get_engine),
) -> list[OrderResponse]:
    resolved = await resolve_request_session(engine, header_id=x_session_id)
    with_session_header(response, resolved.session_id)
    return await engine.orders.get_orders_by_session(resolved)


@app.post(
    "/api/customer/orders",
    response_model=PlacedOrderResponse,
    status_code=201,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Customer"],
    summary="Place the cart as an order",
)
async def place_customer_order(
    response: Response,
    payload: Optional[PlaceOrderRequest] = Body(None),
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    x_table_number: Optional[str] = Header(None, alias="x-table-number"),
    engine: OrderingEngine = Depends(get_engine),
) -> PlacedOrderResponse:
    payload = payload or PlaceOrderRequest()
    resolved = await resolve_request_session(
        engine,
        header_id=x_session_id,
        body_id=payload.session_id,
        header_table=x_table_number,
        body_table=payload.table_number,
    )
    logger.info(f"Placing order for session {resolved.session_id}")
    return await place(engine, resolved, payload, response)


# =============================================================================
# LEGACY ENDPOINTS (session id in URL path or JSON body)
# =============================================================================

@app.get(
    "/api/cart/{session_id}",
    response_model=CartResponse,
    tags=["Legacy"],
)
async def get_cart(
    session_id: str,
    response: Response,
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    engine: OrderingEngine = Depends(get_engine),
) -> CartResponse:
    resolved = await resolve_request_session(engine, header_id=x_session_id, path_id=session_id)
    with_session_header(response, resolved.session_id)
    return await engine.carts.get(resolved)


@app.delete(
    "/api/cart/{session_id}",
    response_model=CartResponse,
    tags=["Legacy"],
)
async def clear_cart(
    session_id: str,
    response: Response,
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    engine: OrderingEngine = Depends(get_engine),
) -> CartResponse:
    resolved = await resolve_request_session(engine, header_id=x_session_id, path_id=session_id)
    return mutation_result(await engine.carts.clear(resolved), response)


@app.post(
    "/api/cart",
    response_model=CartResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Legacy"],
)
async def add_to_cart(
    payload: CartItemAdd,
    response: Response,
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    x_table_number: Optional[str] = Header(None, alias="x-table-number"),
    engine: OrderingEngine = Depends(get_engine),
) -> CartResponse:
    resolved = await resolve_request_session(
        engine,
        header_id=x_session_id,
        body_id=payload.session_id,
        header_table=x_table_number,
        body_table=payload.table_number,
    )
    return await add_item(engine, resolved, payload, response)


@app.patch(
    "/api/cart/items/{line_item_id}",
    response_model=CartResponse,
    tags=["Legacy"],
)
async def update_cart_item(
    line_item_id: int,
    payload: CartItemUpdate,
    response: Response,
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    engine: OrderingEngine = Depends(get_engine),
) -> CartResponse:
    resolved = await resolve_request_session(
        engine, header_id=x_session_id, body_id=payload.session_id
    )
    return await update_item(engine, resolved, line_item_id, payload, response)


@app.delete(
    "/api/cart/items/{line_item_id}",
    response_model=CartResponse,
    tags=["Legacy"],
)
async def remove_cart_item(
    line_item_id: int,
    response: Response,
    session_id: Optional[str] = Query(None, alias="sessionId"),
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    engine: OrderingEngine = Depends(get_engine),
) -> CartResponse:
    # DELETE bodies are dropped by some proxies; old clients send sessionId as a query param
    resolved = await resolve_request_session(engine, header_id=x_session_id, body_id=session_id)
    return mutation_result(await engine.carts.remove(resolved, line_item_id), response)


@app.post(
    "/api/orders",
    response_model=PlacedOrderResponse,
    status_code=201,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Legacy"],
)
async def place_order(
    payload: PlaceOrderRequest,
    response: Response,
    x_session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    x_table_number: Optional[str] = Header(None, alias="x-table-number"),
    engine: OrderingEngine = Depends(get_engine),
) -> PlacedOrderResponse:
    resolved = await resolve_request_session(
        engine,
        header_id=x_session_id,
        body_id=payload.session_id,
        header_table=x_table_number,
        body_table=payload.table_number,
    )
    logger.info(f"Placing order for session {resolved.session_id}")
    return await place(engine, resolved, payload, response)


# =============================================================================
# ADMIN ENDPOINTS
# =============================================================================

@app.get(
    "/api/admin/orders",
    response_model=OrderListResponse,
    tags=["Admin"],
    summary="List Orders",
)
async def list_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    status: Optional[str] = Query(None),
    engine: OrderingEngine = Depends(get_engine),
) -> OrderListResponse:
    """Retrieve paginated list of orders, newest first."""
    total, orders = await engine.orders.list_orders(status=status, skip=skip, limit=limit)
    return OrderListResponse(total=total, orders=orders)


@app.get(
    "/api/admin/orders/{order_id}",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Admin"],
)
async def get_order(
    order_id: int,
    engine: OrderingEngine = Depends(get_engine),
) -> OrderResponse:
    """Get a specific order by ID."""
    return await engine.orders.get_order_by_id(order_id)


@app.patch(
    "/api/admin/orders/{order_id}/status",
    response_model=OrderResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Admin"],
)
async def update_order_status(
    order_id: int,
    payload: OrderStatusUpdate,
    engine: OrderingEngine = Depends(get_engine),
) -> OrderResponse:
    return await engine.orders.update_order_status(order_id, payload.status)


@app.get(
    "/api/admin/carts/{session_id}",
    response_model=CartResponse,
    tags=["Admin"],
)
async def inspect_cart(
    session_id: str,
    engine: OrderingEngine = Depends(get_engine),
) -> CartResponse:
    """Read any session's cart without resolving or migrating it."""
    return await engine.carts.get(session_id)


@app.post(
    "/api/admin/cache/flush",
    response_model=MaintenanceResponse,
    tags=["Admin"],
)
async def flush_cache(engine: OrderingEngine = Depends(get_engine)) -> MaintenanceResponse:
    removed = await engine.flush_cache()
    return MaintenanceResponse(message="Cache flushed", affected=removed)


@app.post(
    "/api/admin/sessions/expire",
    response_model=MaintenanceResponse,
    tags=["Admin"],
)
async def expire_sessions(engine: OrderingEngine = Depends(get_engine)) -> MaintenanceResponse:
    expired = await engine.sessions.expire_inactive()
    return MaintenanceResponse(message="Inactive sessions expired", affected=len(expired))


@app.post(
    "/api/admin/tables/{table_number}/reset",
    response_model=MaintenanceResponse,
    tags=["Admin"],
)
async def reset_table(
    table_number: str,
    engine: OrderingEngine = Depends(get_engine),
) -> MaintenanceResponse:
    """Expire every active session of a table (guests left)."""
    reset = await engine.sessions.reset_table(table_number)
    return MaintenanceResponse(message=f"Table {table_number} reset", affected=len(reset))


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderingError)
async def ordering_exception_handler(request: Request, exc: OrderingError) -> JSONResponse:
    """Map engine error kinds to HTTP status codes."""
    status_code = STATUS_BY_CATEGORY.get(exc.category, 400)
    if status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")

    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "qrorder.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )
