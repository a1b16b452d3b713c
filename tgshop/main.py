import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from tgshop import config
from tgshop.bot import APPLICATIONS, process_webhook_update
from tgshop.cache import cache, revalidate_tags
from tgshop.db import PostgresStore, init_db
from tgshop.errors import InvalidInitData, ItemNotFound, OrderNotFound, StockAdjustmentError
from tgshop.models import TAG_ITEMS, TAG_MINI_APP_ITEMS, OrderStatus
from tgshop.orders import (
    CREATE_ORDER_FAILED,
    create_order,
    get_order_details,
    list_user_orders,
    mark_order_paid,
    update_order_status,
)
from tgshop.schemas import (
    CreateOrderRequest,
    MarkPaidRequest,
    StockAdjustmentRequest,
    UpdateStatusRequest,
    ValidateCartRequest,
)
from tgshop.stock import adjust_stock, validate_cart_stock
from tgshop.store import MemoryStore
from tgshop.telegram_auth import validate_init_data

logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
log = logging.getLogger("tgshop.api")

_store = None


def get_store():
    global _store
    if _store is None:
        if config.DATABASE_URL:
            _store = PostgresStore()
        else:
            log.warning("DATABASE_URL is not set, using in-memory storage")
            _store = MemoryStore()
    return _store


@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.DATABASE_URL:
        init_db()
    yield
    for application in APPLICATIONS.values():
        await application.shutdown()
    APPLICATIONS.clear()


app = FastAPI(title="Telegram storefront", lifespan=lifespan)


def telegram_identity(store, project_id, init_data, fallback):
    """initData from the mini app wins over a user object in the request body."""
    if not init_data:
        return fallback
    project = store.get_project(project_id)
    token = project.get("telegram_bot_token") if project else ""
    try:
        return validate_init_data(init_data, token, max_age=config.INIT_DATA_MAX_AGE)
    except InvalidInitData as e:
        log.warning("rejected initData for project %s: %s", project_id, e)
        raise HTTPException(status_code=403, detail=str(e))


# ----------------------
# MINI APP
# ----------------------
@app.get("/api/projects/{project_id}/items")
def mini_app_items(project_id: str, store=Depends(get_store)):
    items = cache.get_or_set(
        f"mini-app-items:{project_id}",
        lambda: store.list_items(project_id, active_only=True),
        tags=(TAG_ITEMS, TAG_MINI_APP_ITEMS),
    )
    return {"success": True, "data": items}


@app.post("/api/projects/{project_id}/cart/validate")
def validate_cart(project_id: str, req: ValidateCartRequest, store=Depends(get_store)):
    result = validate_cart_stock(store, [i.to_line() for i in req.items], project_id)
    return {"success": True, "data": result.to_dict()}


@app.post("/api/projects/{project_id}/orders")
def place_order(
    project_id: str,
    req: CreateOrderRequest,
    store=Depends(get_store),
    x_telegram_init_data: Optional[str] = Header(None),
):
    fallback = req.telegram_user.to_user() if req.telegram_user else None
    telegram_user = telegram_identity(store, project_id, x_telegram_init_data, fallback)

    result = create_order(
        store,
        project_id,
        [i.to_line() for i in req.items],
        req.customer_info.to_info(),
        req.payment_method,
        telegram_user=telegram_user,
        delivery_notes=req.delivery_notes,
    )
    if result.success:
        return result.to_dict()

    if result.stock_errors is not None:
        status_code = 409
    elif result.error == CREATE_ORDER_FAILED:
        status_code = 500
    else:
        status_code = 400
    return JSONResponse(result.to_dict(), status_code=status_code)


@app.get("/api/projects/{project_id}/orders")
def user_orders(
    project_id: str,
    telegram_user_id: int,
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    store=Depends(get_store),
):
    data = list_user_orders(store, project_id, telegram_user_id, status=status, page=page, limit=limit)
    return {"success": True, "data": data}


# ----------------------
# ORDERS (dashboard)
# ----------------------
@app.get("/api/orders/{order_id}")
def order_details(order_id: str, store=Depends(get_store)):
    try:
        return {"success": True, "data": get_order_details(store, order_id)}
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")


@app.post("/api/orders/{order_id}/paid")
def order_paid(order_id: str, req: MarkPaidRequest, store=Depends(get_store)):
    try:
        order = mark_order_paid(store, order_id, payment_reference=req.payment_reference)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"success": True, "data": order}


@app.post("/api/orders/{order_id}/status")
def order_status(order_id: str, req: UpdateStatusRequest, store=Depends(get_store)):
    try:
        order = update_order_status(store, order_id, req.status, notes=req.notes)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"success": True, "data": order}


# ----------------------
# STOCK (dashboard)
# ----------------------
@app.post("/api/items/{item_id}/stock")
def item_stock_adjust(item_id: str, req: StockAdjustmentRequest, store=Depends(get_store)):
    try:
        quantity = adjust_stock(store, item_id, req.adjustment, notes=req.notes)
    except ItemNotFound:
        raise HTTPException(status_code=404, detail="Item not found")
    except StockAdjustmentError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "data": {"stock_quantity": quantity}}


@app.get("/api/items/{item_id}/stock-movements")
def item_stock_movements(item_id: str, store=Depends(get_store)):
    if not store.get_item(item_id):
        raise HTTPException(status_code=404, detail="Item not found")
    return {"success": True, "data": store.list_stock_movements(item_id)}


# ----------------------
# CACHE / TELEGRAM
# ----------------------
@app.get("/api/revalidate")
def revalidate(tag: Optional[str] = None):
    if not tag:
        return JSONResponse({"message": "No tag provided"}, status_code=400)
    revalidate_tags(tag)
    return {"message": f"{tag} revalidated"}


@app.post("/api/webhook/{project_id}")
async def telegram_webhook(project_id: str, request: Request, store=Depends(get_store)):
    payload = await request.json()
    if not await process_webhook_update(store, project_id, payload):
        raise HTTPException(status_code=404, detail="Bot is not configured for this project")
    return {"ok": True}
