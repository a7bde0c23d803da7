import logging
import os
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, select, text
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

import cart as cart_store
import users
from auth import get_current_user, require_admin
from chatbot import ChatbotClient, DailyQueryCounter
from config import settings
from database import engine, get_db, init_db
from errors import NotFoundError, ShopError
from models import Product, User
from notifier import Notifier
from orders import ACTOR_USER, OrderService
from payments import SIGNATURE_HEADER, PaymentProvider, default_providers
from schemas import (
    CartAdd,
    CartOut,
    CartQuantity,
    CartRemove,
    ChatRequest,
    ChatResponse,
    InitiatePayment,
    OrderOut,
    OrderSummaryOut,
    PaymentRedirect,
    PlaceOrder,
    ProductOut,
    ShippingAddress,
    StatusUpdate,
)

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("shop")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="Shop API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ShopError)
def shop_error_handler(request: Request, exc: ShopError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# -----------------
# Collaborators
# -----------------
_notifier = Notifier.from_settings()
_providers = default_providers()
_chatbot = ChatbotClient.from_settings()


def get_notifier() -> Notifier:
    return _notifier


def get_providers() -> Dict[str, PaymentProvider]:
    return _providers


def get_chatbot() -> ChatbotClient:
    return _chatbot


def get_order_service(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    providers: Dict[str, PaymentProvider] = Depends(get_providers),
) -> OrderService:
    return OrderService(db, notifier, providers, dispatch=background_tasks.add_task)


def get_query_counter(db: Session = Depends(get_db)) -> DailyQueryCounter:
    return DailyQueryCounter(db, settings.chatbot_daily_limit)


@app.get("/")
def root():
    return {"name": "Shop API", "status": "ok"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "tables": [],
    }
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        response["database"] = "✅ Connected"
        response["tables"] = inspect(engine).get_table_names()
    except Exception as e:
        response["database"] = f"⚠️ {str(e)[:80]}"
    return response


# -----------------
# Products Endpoints
# -----------------
@app.get("/api/products", response_model=List[ProductOut])
def list_products(limit: int = 100, db: Session = Depends(get_db)):
    return db.scalars(select(Product).order_by(Product.id).limit(limit)).all()


@app.get("/api/products/{product_id}", response_model=ProductOut)
def get_product(product_id: int, db: Session = Depends(get_db)):
    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found")
    return product


# -----------------
# Cart Endpoints
# -----------------
@app.get("/api/cart", response_model=CartOut)
def get_cart(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"cart": cart_store.list_cart(db, user.id)}


@app.post("/api/cart/add", response_model=CartOut)
def add_to_cart(payload: CartAdd, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"cart": cart_store.add_to_cart(db, user.id, payload.product_id, payload.quantity)}


@app.post("/api/cart/remove", response_model=CartOut)
def remove_from_cart(payload: CartRemove, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"cart": cart_store.remove_from_cart(db, user.id, payload.product_id)}


@app.put("/api/cart/items/{product_id}", response_model=CartOut)
def set_cart_quantity(
    product_id: int,
    payload: CartQuantity,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"cart": cart_store.set_quantity(db, user.id, product_id, payload.quantity)}


# -----------------
# Profile Endpoints
# -----------------
@app.get("/api/users/me/shipping", response_model=ShippingAddress)
def get_shipping(user: User = Depends(get_current_user)):
    return user.shipping_snapshot()


@app.put("/api/users/me/shipping", response_model=ShippingAddress)
def update_shipping(payload: ShippingAddress, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return users.update_shipping_address(db, user.id, payload.model_dump())


# --------------
# Orders Endpoints
# --------------
@app.post("/api/orders", response_model=OrderSummaryOut, status_code=201)
def place_order(
    payload: PlaceOrder,
    user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    return service.place_order(user.id, payload.payment_method)._asdict()


@app.get("/api/orders", response_model=List[OrderOut])
def list_orders(user: User = Depends(get_current_user), service: OrderService = Depends(get_order_service)):
    return service.list_orders(user.id)


@app.get("/api/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: int, user: User = Depends(get_current_user), service: OrderService = Depends(get_order_service)):
    return service.get_order(order_id, user.id)


@app.post("/api/orders/{order_id}/cancel", response_model=OrderOut)
def cancel_order(order_id: int, user: User = Depends(get_current_user), service: OrderService = Depends(get_order_service)):
    return service.cancel_order(order_id, user.id, ACTOR_USER)


# --------------
# Payments Endpoints
# --------------
@app.post("/api/payments/initiate", response_model=PaymentRedirect)
def initiate_payment(
    payload: InitiatePayment,
    user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    return service.initiate_payment(payload.order_id, user.id, payload.amount)


@app.post("/api/payments/webhook")
async def payment_webhook(request: Request, service: OrderService = Depends(get_order_service)):
    raw_body = await request.body()
    result = await run_in_threadpool(service.reconcile_payment, raw_body, request.headers.get(SIGNATURE_HEADER))
    return {"success": True, "result": result}


# --------------
# Admin Endpoints
# --------------
@app.get("/api/admin/orders", response_model=List[OrderOut])
def admin_list_orders(
    status: Optional[str] = None,
    limit: int = 100,
    _: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    return service.list_all_orders(status=status, limit=limit)


@app.get("/api/admin/orders/{order_id}", response_model=OrderOut)
def admin_get_order(order_id: int, _: User = Depends(require_admin), service: OrderService = Depends(get_order_service)):
    return service.get_order(order_id)


@app.patch("/api/admin/orders/{order_id}/status", response_model=OrderOut)
def admin_update_status(
    order_id: int,
    payload: StatusUpdate,
    _: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    return service.update_status(order_id, payload.status)


# --------------
# Chatbot Endpoint
# --------------
@app.post("/api/chatbot/message", response_model=ChatResponse)
def chatbot_message(
    req: ChatRequest,
    user: User = Depends(get_current_user),
    counter: DailyQueryCounter = Depends(get_query_counter),
    chatbot: ChatbotClient = Depends(get_chatbot),
):
    used = counter.hit(user.id)
    reply = chatbot.generate(req.message.strip())
    return ChatResponse(reply=reply, used_model=chatbot.model, queries_today=used, daily_limit=counter.limit)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
