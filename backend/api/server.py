# api/server.py
# ============================================================================
# TRUCKSY PAYMENTS — FASTAPI SERVER
# ============================================================================
# Thin HTTP surface over CheckoutService. The caller's user id arrives in the
# X-User-Id header (authentication lives in front of this service).
# ============================================================================

import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import get_settings
from errors import TrucksyError
from log import configure_logging
from pipeline.checkout import CheckoutService, create_checkout_service
from schemas.domain import LineRequest, OrderStatus, OrderView, SubscriptionSnapshot

logger = structlog.get_logger(component="server")

START_TIME = datetime.utcnow()


# ============================================================================
# RESPONSE MODELS
# ============================================================================

class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


class MessageResponse(BaseModel):
    message: str


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_checkout(request: Request) -> CheckoutService:
    return request.app.state.checkout


def current_user_id(x_user_id: int = Header(..., alias="X-User-Id")) -> int:
    return x_user_id


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(checkout: Optional[CheckoutService] = None) -> FastAPI:
    """
    Build the app. Tests pass a ready CheckoutService; otherwise one is
    built from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        configure_logging(settings.log_level)
        logger.info("server_starting", storage_backend=settings.storage_backend)

        if checkout is None:
            app.state.checkout = await create_checkout_service(settings)
        else:
            app.state.checkout = checkout

        yield

        await app.state.checkout.event_bus.drain()
        if checkout is None:
            await app.state.checkout.close()
            if settings.storage_backend == "postgres":
                from database import close_database
                await close_database()
        logger.info("server_stopped")

    app = FastAPI(
        title="Trucksy Payments",
        description="Order and subscription payments with gateway reconciliation",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.exception_handler(TrucksyError)
    async def trucksy_error_handler(request: Request, exc: TrucksyError):
        logger.info("request_failed",
                    path=request.url.path,
                    code=exc.code,
                    kind=exc.kind)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    # ------------------------------------------------------------------------
    # HEALTH
    # ------------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        uptime = (datetime.utcnow() - START_TIME).total_seconds()
        return HealthResponse(status="healthy", version="1.0.0", uptime_seconds=uptime)

    # ------------------------------------------------------------------------
    # ORDERS
    # ------------------------------------------------------------------------

    @app.post("/api/v1/order/add/{truck_id}")
    async def add_order(
        truck_id: int,
        lines: List[LineRequest],
        user_id: int = Depends(current_user_id),
        checkout: CheckoutService = Depends(get_checkout),
    ):
        initiation = await checkout.create_order(user_id, truck_id, lines)
        return {
            "orderId": initiation.subject_id,
            "amount": initiation.amount_minor,
            "callbackUrl": initiation.callback_url,
            "payment": initiation.gateway_response,
        }

    @app.get("/api/v1/order/callback/{order_id}")
    async def order_callback(
        order_id: int,
        id: str,
        status: Optional[str] = None,
        message: Optional[str] = None,
        checkout: CheckoutService = Depends(get_checkout),
    ):
        result = await checkout.handle_order_callback(order_id, id, status, message)
        return {
            "orderId": result.subject_id,
            "paymentId": result.payment_id,
            "status": result.status_text,
            "totalPrice": result.amount_minor,
            "outcome": result.outcome.value,
        }

    @app.get("/api/v1/order/payment/status/{payment_id}")
    async def payment_status(payment_id: str, checkout: CheckoutService = Depends(get_checkout)):
        payment = await checkout.get_payment_status(payment_id)
        return payment.model_dump()

    @app.put("/api/v1/order/status/ready/{truck_id}/{order_id}", response_model=MessageResponse)
    async def mark_ready(
        truck_id: int,
        order_id: int,
        user_id: int = Depends(current_user_id),
        checkout: CheckoutService = Depends(get_checkout),
    ):
        await checkout.advance_order_status(user_id, truck_id, order_id, OrderStatus.READY)
        return MessageResponse(message="Order status changed to READY")

    @app.put("/api/v1/order/status/completed/{truck_id}/{order_id}", response_model=MessageResponse)
    async def mark_completed(
        truck_id: int,
        order_id: int,
        user_id: int = Depends(current_user_id),
        checkout: CheckoutService = Depends(get_checkout),
    ):
        await checkout.advance_order_status(user_id, truck_id, order_id, OrderStatus.COMPLETED)
        return MessageResponse(message="Order status changed to COMPLETED")

    @app.get("/api/v1/order/foodtruck/{truck_id}", response_model=List[OrderView])
    async def truck_orders(
        truck_id: int,
        user_id: int = Depends(current_user_id),
        checkout: CheckoutService = Depends(get_checkout),
    ):
        return await checkout.list_orders_for_truck(user_id, truck_id)

    @app.get("/api/v1/order/client", response_model=List[OrderView])
    async def client_orders(
        user_id: int = Depends(current_user_id),
        checkout: CheckoutService = Depends(get_checkout),
    ):
        return await checkout.list_orders_for_client(user_id)

    @app.get("/api/v1/order/foodtruck/{truck_id}/{order_id}", response_model=OrderView)
    async def truck_order(
        truck_id: int,
        order_id: int,
        user_id: int = Depends(current_user_id),
        checkout: CheckoutService = Depends(get_checkout),
    ):
        return await checkout.get_order_for_truck(user_id, truck_id, order_id)

    # ------------------------------------------------------------------------
    # OWNER SUBSCRIPTION
    # ------------------------------------------------------------------------

    @app.post("/api/v1/owner/subscribe")
    async def subscribe(
        user_id: int = Depends(current_user_id),
        checkout: CheckoutService = Depends(get_checkout),
    ):
        initiation = await checkout.subscribe(user_id)
        return {
            "ownerId": initiation.subject_id,
            "amount": initiation.amount_minor,
            "callbackUrl": initiation.callback_url,
            "payment": initiation.gateway_response,
        }

    @app.get("/api/v1/owner/callback/{owner_id}")
    async def subscription_callback(
        owner_id: int,
        id: str,
        status: Optional[str] = None,
        message: Optional[str] = None,
        checkout: CheckoutService = Depends(get_checkout),
    ):
        result = await checkout.handle_subscription_callback(owner_id, id, status, message)
        body = result.subscription.model_dump(mode="json")
        body.update({"paymentId": result.payment_id, "outcome": result.outcome.value})
        return body

    @app.get("/api/v1/owner/subscription/status", response_model=SubscriptionSnapshot)
    async def subscription_status(
        user_id: int = Depends(current_user_id),
        checkout: CheckoutService = Depends(get_checkout),
    ):
        return await checkout.get_subscription_status(user_id)

    @app.put("/api/v1/owner/subscription/cancel", response_model=MessageResponse)
    async def cancel_subscription(
        user_id: int = Depends(current_user_id),
        checkout: CheckoutService = Depends(get_checkout),
    ):
        await checkout.cancel_subscription(user_id)
        return MessageResponse(message="Subscription cancelled")

    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=get_settings().port,
        log_level="info",
    )
