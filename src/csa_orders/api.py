"""HTTP surface for members and the farm's admin tooling.

Routes are thin: they translate query/body values, call the ordering core and
shape JSON. Domain rejections (:class:`core_logic.OrderingError`) are rendered
as ``{"code": ..., "extra": ...}`` with the status code the error carries.
Order changes for one member are serialized with
:class:`order_queue.IdentitySerializer` and persisted before responding.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from . import core_logic, data_manager, log, notifications
from .constants import ErrorCode
from .order_queue import IdentitySerializer


class ConfirmationEmailsRequest(BaseModel):
    sheetId: Any = None


def serialize_products(products: Mapping[int, core_logic.ProductView]) -> Dict[str, Any]:
    """Render a product map as the ``{"products": [...]}`` response body."""

    return {
        "products": [
            {
                "id": str(product_id),
                "name": product.name,
                "imageUrl": product.image_url,
                "price": float(product.price),
                "available": product.available,
                "ordered": product.ordered,
            }
            for product_id, product in products.items()
        ]
    }


def serialize_user(user: data_manager.UserRow) -> Dict[str, Any]:
    return {
        "email": user.email,
        "name": user.name,
        "location": user.location,
        "balance": float(user.balance) if user.balance is not None else None,
    }


def _parse_id(raw: str) -> Optional[int]:
    try:
        return int(raw)
    except ValueError:
        return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_quantity(value: Any) -> bool:
    """Accept JSON numbers that are non-negative whole values."""

    return _is_number(value) and value >= 0 and float(value).is_integer()


async def _read_ordered(request: Request) -> Any:
    """Return ``ordered`` from a JSON object body, or ``None``.

    Bodies that are empty, not JSON, or not an object yield ``None`` so the
    caller answers with ``badInput``.
    """

    try:
        payload = await request.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload.get("ordered")


def build_app(
    context: core_logic.RuntimeContext,
    ses_client_factory: Optional[Callable[[], Any]] = None,
    serializer: Optional[IdentitySerializer] = None,
) -> FastAPI:
    """Create the FastAPI application bound to a runtime context.

    Args:
        context (core_logic.RuntimeContext): Loaded workbook and settings.
        ses_client_factory (Callable | None): Builds the SES client used by the
            confirmation email endpoint. Defaults to a boto3 client for the
            configured region.
        serializer (IdentitySerializer | None): Per-member serialization of
            order changes. A fresh one is created when omitted.
    """

    settings = context.settings
    serializer = serializer or IdentitySerializer()
    if ses_client_factory is None:
        def ses_client_factory() -> Any:
            return notifications.create_ses_client(settings.email)

    app = FastAPI(title=f"{settings.farm_name} orders")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allow_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(core_logic.OrderingError)
    async def ordering_error_handler(request: Request, exc: core_logic.OrderingError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"code": exc.code.value, "extra": exc.extra},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        log.exception("Unhandled error serving %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"code": "serverError"})

    @app.get("/users/{user_id}")
    def get_user(user_id: str):
        try:
            user = core_logic.get_user(context, user_id)
        except core_logic.UnknownUserError as exc:
            return JSONResponse(status_code=404, content={"code": exc.code.value})
        return serialize_user(user)

    @app.get("/products")
    def get_products(userId: str):
        return serialize_products(core_logic.get_products(context, userId))

    @app.put("/products/{product_id}")
    async def set_product_order(product_id: str, request: Request, userId: str = ""):
        # Unknown members get 401 before the body is looked at.
        await run_in_threadpool(core_logic.get_user, context, userId)

        ordered = await _read_ordered(request)
        if not _is_quantity(ordered):
            return JSONResponse(
                status_code=400,
                content={
                    "code": ErrorCode.BAD_INPUT.value,
                    "message": "Must specify 'ordered' as a non-negative number",
                },
            )

        parsed_id = _parse_id(product_id)
        if parsed_id is None:
            raise core_logic.ProductNotFoundError()

        def change() -> Dict[int, core_logic.ProductView]:
            products = core_logic.set_ordered(context, userId, parsed_id, int(ordered))
            core_logic.persist_context(context)
            return products

        products = await run_in_threadpool(serializer.run, userId, change)
        return serialize_products(products)


    @app.get("/orders")
    def list_orders(userId: str):
        orders = sorted(
            core_logic.list_past_orders(context, userId),
            key=lambda order: order.date,
            reverse=True,
        )
        return {"orders": [{"id": order.id, "date": order.date.isoformat()} for order in orders]}

    @app.get("/orders/{order_id}")
    def get_order(order_id: str, userId: str):
        sheet_id = _parse_id(order_id)
        ledger = core_logic.get_ledger_by_id(context, sheet_id) if sheet_id is not None else None
        if ledger is None:
            return JSONResponse(status_code=404, content={"error": "Order not found"})

        view = core_logic.compute_view(context, userId, ledger)
        return {
            "products": [
                {
                    "name": product.name,
                    "imageUrl": product.image_url,
                    "price": float(product.price),
                    "ordered": product.ordered,
                }
                for product in view.products.values()
            ]
        }

    @app.post("/admin/confirmation-emails")
    def send_confirmation_emails(body: Optional[ConfirmationEmailsRequest] = None):
        sheet_id = body.sheetId if body is not None else None
        if not sheet_id:
            return JSONResponse(status_code=400, content={"error": "No sheet specified"})
        if not _is_number(sheet_id):
            return JSONResponse(status_code=400, content={"error": "Sheet id must be a number"})

        # Sheets are addressed by id rather than title; ids are harder to guess
        # and only sheets tagged as ledgers resolve.
        ledger = core_logic.get_ledger_by_id(context, int(sheet_id)) if float(sheet_id).is_integer() else None
        if ledger is None:
            return JSONResponse(status_code=400, content={"error": "Orders sheet not found"})

        users = core_logic.get_users(context, core_logic.get_users_with_orders(context, ledger))
        locations = core_logic.get_locations(context)
        failed_sends = notifications.send_confirmation_emails(
            ses_client_factory(), settings.email, users, locations
        )
        if failed_sends:
            log.error("Failed sends: %s", " ".join(failed_sends))
        return {"failedSends": failed_sends}

    return app


def create_app(config_path: Optional[Path] = None) -> FastAPI:
    """Load the runtime context from ``config.ini`` and build the app."""

    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return build_app(context)
