import logging
import os
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, EmailStr, Field

import carts
import orders
import products
from auth import authenticate, create_access_token, decode_session, register
from config import setup_logging
from database import get_store
from errors import Conflict, NotFound, StoreUnavailable, StorefrontError, ValidationFailure
from schemas import Cart, CartItem, Order, OrderStatus, Product, ProductCreate, ReportSummary, Session, UserCreate, UserSnapshot
from seed import bootstrap, seed_catalog

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    bootstrap()
    yield


app = FastAPI(title="Horizon Stores API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

ERROR_STATUS = {
    NotFound: 404,
    Conflict: 409,
    ValidationFailure: 422,
    StoreUnavailable: 503,
}


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    code = ERROR_STATUS.get(type(exc), 500)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=code, content={"detail": exc.message})


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

def get_session(token: str = Depends(oauth2_scheme)) -> Session:
    session = decode_session(token)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session


def get_admin_session(session: Session = Depends(get_session)) -> Session:
    if not session.is_admin:
        raise HTTPException(status_code=403, detail="Admins only")
    return session


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str
    user: UserSnapshot


class AddToCartRequest(BaseModel):
    product_id: str
    quantity: int = 1


class UpdateCartItemRequest(BaseModel):
    quantity: int


class CheckoutRequest(BaseModel):
    idempotency_key: Optional[str] = Field(None, description="Client key that makes a retried checkout safe")


class StatusUpdate(BaseModel):
    status: OrderStatus


class PaymentUpdate(BaseModel):
    received: bool


@app.get("/")
def read_root():
    return {"message": "Horizon Stores API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        info = get_store().ping()
        response["database"] = f"✅ Connected & Working ({info['backend']})"
        response["database_name"] = info["database_name"]
        response["connection_status"] = "Connected"
        response["collections"] = info["collections"]
    except StoreUnavailable as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


@app.post("/seed")
def seed(_: Session = Depends(get_admin_session)):
    return {"status": "ok", "products_added": seed_catalog()}


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

@app.post("/auth/register", response_model=Token, status_code=201)
def register_user(payload: UserCreate):
    user = register(payload)
    return {"access_token": create_access_token(user), "token_type": "bearer", "user": user.snapshot()}


@app.post("/auth/login", response_model=Token)
def login(payload: LoginRequest):
    user = authenticate(str(payload.email), payload.password)
    if user is None:
        raise HTTPException(status_code=401, detail="Incorrect email or password")
    return {"access_token": create_access_token(user), "token_type": "bearer", "user": user.snapshot()}


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

@app.get("/products", response_model=List[Product])
def list_products(q: Optional[str] = None, category: Optional[str] = None):
    return products.filter_products(q, category)


@app.get("/products/{product_id}", response_model=Product)
def get_product(product_id: str):
    product = products.get_product_by_id(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.post("/admin/products", response_model=Product, status_code=201)
def create_product(product: ProductCreate, _: Session = Depends(get_admin_session)):
    return products.add_product(product)


@app.post("/admin/products/bulk", response_model=List[Product], status_code=201)
def bulk_create_products(rows: List[dict], _: Session = Depends(get_admin_session)):
    return products.add_products(rows)


@app.put("/admin/products/{product_id}", response_model=Product)
def update_product(product_id: str, product: ProductCreate, _: Session = Depends(get_admin_session)):
    return products.update_product({**product.model_dump(), "id": product_id})


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------

@app.get("/cart", response_model=Cart)
def get_cart(session: Session = Depends(get_session)):
    return carts.get_or_create_cart(session.user_id)


@app.post("/cart/items", response_model=CartItem, status_code=201)
def add_cart_item(payload: AddToCartRequest, session: Session = Depends(get_session)):
    cart = carts.get_or_create_cart(session.user_id)
    return carts.add_to_cart(cart.id, payload.product_id, payload.quantity)


@app.patch("/cart/items/{item_id}", response_model=Cart)
def update_cart_item(item_id: str, payload: UpdateCartItemRequest, session: Session = Depends(get_session)):
    cart = carts.get_or_create_cart(session.user_id)
    carts.update_cart_item(item_id, payload.quantity, cart_id=cart.id)
    return carts.get_or_create_cart(session.user_id)


@app.delete("/cart/items/{item_id}", response_model=Cart)
def delete_cart_item(item_id: str, session: Session = Depends(get_session)):
    cart = carts.get_or_create_cart(session.user_id)
    carts.remove_cart_item(item_id, cart_id=cart.id)
    return carts.get_or_create_cart(session.user_id)


# ---------------------------------------------------------------------------
# Checkout / Orders
# ---------------------------------------------------------------------------

@app.post("/checkout", response_model=Order, status_code=201)
def checkout(payload: Optional[CheckoutRequest] = None, session: Session = Depends(get_session)):
    key = payload.idempotency_key if payload else None
    return orders.checkout(session.user_id, idempotency_key=key)


@app.get("/orders", response_model=List[Order])
def my_orders(session: Session = Depends(get_session)):
    return orders.get_user_orders(session.user_id)


@app.get("/admin/orders", response_model=List[Order])
def all_orders(_: Session = Depends(get_admin_session)):
    return orders.get_orders()


@app.patch("/admin/orders/{order_id}/status", response_model=Order)
def set_order_status(order_id: str, payload: StatusUpdate, _: Session = Depends(get_admin_session)):
    return orders.update_order_status(order_id, payload.status)


@app.patch("/admin/orders/{order_id}/payment", response_model=Order)
def set_payment_status(order_id: str, payload: PaymentUpdate, _: Session = Depends(get_admin_session)):
    return orders.update_payment_status(order_id, payload.received)


@app.get("/admin/reports", response_model=ReportSummary)
def sales_report(start: date, end: date, _: Session = Depends(get_admin_session)):
    return orders.build_report(start, end)


@app.get("/admin/orders/range", response_model=List[Order])
def orders_in_range(start: datetime, end: datetime, _: Session = Depends(get_admin_session)):
    return orders.get_orders_for_date_range(start, end)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
