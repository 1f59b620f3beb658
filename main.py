import logging
import os
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query as Param, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError

from aggregator import PERIODS, DashboardFeed, DashboardView, Report, build_dashboard, build_report, period_days, wallet_totals
from auth import AdminAuth, AdminSession, AuthError
from catalog import categories, edit_product_fields, is_available_on, new_product_fields, sort_catalog, weekday_of
from config import Settings
from customers import apply_wallet_adjustment, order_counts, recent_orders, with_customer_names
from database import DocumentStore, Query, StoreUnavailable
from lifecycle import advance, normalize_status, status_label, timeline
from promotions import coupon_status, normalize_code
from schemas import Coupon, ProductInput

logger = logging.getLogger(__name__)


async def _log_auth_change(session: Optional[AdminSession]):
    if session is None:
        logger.info("Admin signed out")
    else:
        logger.info("Admin %s signed in", session.email)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    store = getattr(app.state, "store", None)
    owned = store is None
    if owned:
        store = DocumentStore.from_settings(settings)
        app.state.store = store
    app.state.settings = settings
    app.state.auth = AdminAuth(store)
    app.state.auth.on_auth_state_change(_log_auth_change)
    try:
        yield
    finally:
        if owned:
            store.close()
            app.state.store = None


app = FastAPI(title="Meat & Grocery Admin API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreUnavailable)
async def store_unavailable(request: Request, exc: StoreUnavailable):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_auth(request: Request) -> AdminAuth:
    return request.app.state.auth


def _token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return authorization.strip()


async def require_admin(authorization: Optional[str] = Header(None), auth: AdminAuth = Depends(get_auth)) -> AdminSession:
    token = _token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing admin token")
    session = await auth.current_session(token)
    if session is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return session


def _period(period: str) -> str:
    try:
        period_days(period)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return period


def _text(value) -> str:
    # customer-app documents may store numbers where strings are expected
    return "" if value is None else str(value).lower()


# ===================== Public Endpoints =====================
@app.get("/")
def root():
    return {"message": "Meat & Grocery Admin API running"}


@app.get("/test")
async def test_database(store: DocumentStore = Depends(get_store)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if store.available:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["collections"] = (await store.collection_names())[:10]
        else:
            response["database"] = "⚠️  Available but not initialized"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response


@app.get("/products")
async def public_catalog(day: Optional[int] = Param(None, ge=0, le=6), store: DocumentStore = Depends(get_store)):
    """Products customers can order on `day` (0=Sunday), today by default."""
    weekday = weekday_of(date.today()) if day is None else day
    products = await store.get_once("products", Query().order_by("created_at"))
    return [p for p in sort_catalog(products) if is_available_on(p, weekday)]


# ===================== Auth =====================
class AuthRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)


@app.post("/auth/signup", response_model=AdminSession)
async def signup(payload: AuthRequest, auth: AdminAuth = Depends(get_auth)):
    try:
        return await auth.sign_up(payload.email, payload.password)
    except AuthError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@app.post("/auth/login", response_model=AdminSession)
async def login(payload: AuthRequest, auth: AdminAuth = Depends(get_auth)):
    try:
        return await auth.sign_in(payload.email, payload.password)
    except AuthError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@app.post("/auth/logout")
async def logout(authorization: Optional[str] = Header(None), auth: AdminAuth = Depends(get_auth)):
    token = _token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing admin token")
    return {"signed_out": await auth.sign_out(token)}


# ===================== Dashboard & Reports =====================
@app.get("/dashboard", response_model=DashboardView)
async def dashboard(period: str = "weekly", store: DocumentStore = Depends(get_store),
                    admin: AdminSession = Depends(require_admin)):
    period = _period(period)
    orders = await store.get_once("orders")
    users = await store.get_once("users")
    return build_dashboard(orders, users, period)


@app.get("/dashboard/recent-orders")
async def dashboard_recent_orders(limit: int = Param(5, ge=1, le=50), store: DocumentStore = Depends(get_store),
                                  admin: AdminSession = Depends(require_admin)):
    return [_order_row(row) for row in await recent_orders(store, limit)]


@app.websocket("/ws/dashboard")
async def dashboard_feed(websocket: WebSocket, token: Optional[str] = None, period: str = "weekly"):
    auth: AdminAuth = websocket.app.state.auth
    if await auth.current_session(token) is None or period not in PERIODS:
        await websocket.close(code=1008)
        return
    await websocket.accept()

    async def push(view: DashboardView):
        await websocket.send_json(jsonable_encoder(view))

    async with DashboardFeed(websocket.app.state.store, period, on_update=push):
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("Dashboard feed client disconnected")


@app.get("/reports", response_model=Report)
async def reports(period: str = "weekly", store: DocumentStore = Depends(get_store),
                  admin: AdminSession = Depends(require_admin)):
    period = _period(period)
    orders = await store.get_once("orders")
    users = await store.get_once("users")
    return build_report(orders, users, period)


# ===================== Products =====================
@app.get("/admin/products")
async def list_products(q: Optional[str] = None, category: Optional[str] = None,
                        store: DocumentStore = Depends(get_store), admin: AdminSession = Depends(require_admin)):
    products = sort_catalog(await store.get_once("products", Query().order_by("created_at")))
    if q:
        products = [p for p in products if q.lower() in _text(p.get("name"))]
    if category:
        products = [p for p in products if p.get("category") == category]
    return products


@app.get("/admin/products/categories")
async def list_categories(store: DocumentStore = Depends(get_store), admin: AdminSession = Depends(require_admin)):
    return categories(await store.get_once("products", Query().order_by("created_at")))


@app.post("/admin/products")
async def create_product(payload: ProductInput, store: DocumentStore = Depends(get_store),
                         admin: AdminSession = Depends(require_admin)):
    product_id = await store.create("products", new_product_fields(payload))
    return {"_id": product_id}


@app.put("/admin/products/{product_id}")
async def update_product(product_id: str, payload: ProductInput, store: DocumentStore = Depends(get_store),
                         admin: AdminSession = Depends(require_admin)):
    existing = await store.get("products", product_id)
    if not existing:
        raise HTTPException(404, "Product not found")
    fields = edit_product_fields(existing, payload)
    try:
        ok = await store.write("products", product_id, fields)
    except PyMongoError:
        logger.exception("Product %s update failed", product_id)
        return {"updated": False}
    if not ok:
        raise HTTPException(404, "Product not found")
    return {
        "updated": True,
        "current_price": fields["current_price"],
        "previous_price": fields["previous_price"],
        "price_direction": fields["price_direction"],
        "price_change_percentage": fields["price_change_percentage"],
    }


@app.delete("/admin/products/{product_id}")
async def delete_product(product_id: str, store: DocumentStore = Depends(get_store),
                         admin: AdminSession = Depends(require_admin)):
    try:
        ok = await store.delete("products", product_id)
    except PyMongoError:
        logger.exception("Product %s delete failed", product_id)
        return {"deleted": False}
    if not ok:
        raise HTTPException(404, "Product not found")
    return {"deleted": True}


# ===================== Orders =====================
def _order_row(order: dict) -> dict:
    status = normalize_status(order.get("status"))
    return {**order, "status": status, "status_label": status_label(status)}


@app.get("/admin/orders")
async def list_orders(status: Optional[str] = None, q: Optional[str] = None,
                      store: DocumentStore = Depends(get_store), admin: AdminSession = Depends(require_admin)):
    orders = await store.get_once("orders", Query().order_by("created_at", descending=True))
    rows = [_order_row(o) for o in await with_customer_names(store, orders)]
    if status:
        wanted = normalize_status(status)
        rows = [r for r in rows if r["status"] == wanted]
    if q:
        needle = q.lower()
        rows = [
            r for r in rows
            if needle in _text(r.get("display_id"))
            or needle in _text(r["_id"])
            or needle in _text(r["customer"])
        ]
    return rows


@app.get("/admin/orders/{order_id}")
async def get_order(order_id: str, store: DocumentStore = Depends(get_store),
                    admin: AdminSession = Depends(require_admin)):
    order = await store.get("orders", order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    row = (await with_customer_names(store, [order]))[0]
    return {**_order_row(row), "timeline": timeline(order.get("status"))}


@app.post("/admin/orders/{order_id}/advance")
async def advance_order(order_id: str, store: DocumentStore = Depends(get_store),
                        admin: AdminSession = Depends(require_admin)):
    order = await store.get("orders", order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    written = await advance(store, order)
    return {"updated": written is not None, "status": written}


# ===================== Users & Wallet =====================
class WalletAdjustment(BaseModel):
    delta: int
    reason: Optional[str] = None


@app.get("/admin/users")
async def list_users(q: Optional[str] = None, store: DocumentStore = Depends(get_store),
                     admin: AdminSession = Depends(require_admin)):
    users = await store.get_once("users", Query().order_by("created_at", descending=True))
    counts = order_counts(await store.get_once("orders"))
    if q:
        needle = q.lower()
        users = [
            u for u in users
            if any(needle in _text(u.get(field)) for field in ("name", "phone", "email"))
        ]
    return [{**u, "wallet_points": u.get("wallet_points") or 0, "total_orders": counts.get(u["_id"], 0)} for u in users]


@app.post("/admin/users/{user_id}/wallet")
async def adjust_user_wallet(user_id: str, payload: WalletAdjustment, store: DocumentStore = Depends(get_store),
                             admin: AdminSession = Depends(require_admin)):
    user = await store.get("users", user_id)
    if not user:
        raise HTTPException(404, "User not found")
    balance = await apply_wallet_adjustment(store, user, payload.delta, admin.email, payload.reason or "")
    return {"updated": balance is not None, "wallet_points": balance}


@app.get("/admin/wallet")
async def wallet_overview(store: DocumentStore = Depends(get_store), admin: AdminSession = Depends(require_admin)):
    users = await store.get_once("users")
    orders = await store.get_once("orders")
    logs = await store.get_once("wallet_logs", Query().order_by("created_at", descending=True).limit(20))
    return {"totals": wallet_totals(users, orders), "logs": logs}


# ===================== Coupons =====================
class CouponCreate(BaseModel):
    code: str = Field(..., min_length=3)
    discount: int = Field(..., ge=1, le=100)
    expiry_date: date
    usage_limit: int = Field(100, ge=1)
    is_active: bool = True


class CouponToggle(BaseModel):
    is_active: bool


@app.get("/admin/coupons")
async def list_coupons(store: DocumentStore = Depends(get_store), admin: AdminSession = Depends(require_admin)):
    today = date.today()
    coupons = await store.get_once("coupons", Query().order_by("created_at", descending=True))
    return [
        {**Coupon.model_validate(c).model_dump(by_alias=True, mode="json"), "status": coupon_status(c, today)}
        for c in coupons
    ]


@app.post("/admin/coupons")
async def create_coupon(payload: CouponCreate, store: DocumentStore = Depends(get_store),
                        admin: AdminSession = Depends(require_admin)):
    code = normalize_code(payload.code)
    if await store.get_once("coupons", Query().where("code", "==", code).limit(1)):
        raise HTTPException(status_code=400, detail="Coupon code already exists")
    data = payload.model_dump(mode="json")
    data.update(code=code, used_count=0)
    coupon_id = await store.create("coupons", data)
    return {"_id": coupon_id, "code": code}


@app.put("/admin/coupons/{coupon_id}/active")
async def toggle_coupon(coupon_id: str, payload: CouponToggle, store: DocumentStore = Depends(get_store),
                        admin: AdminSession = Depends(require_admin)):
    ok = await store.write("coupons", coupon_id, {"is_active": payload.is_active})
    if not ok:
        raise HTTPException(404, "Coupon not found")
    return {"updated": True}


@app.delete("/admin/coupons/{coupon_id}")
async def delete_coupon(coupon_id: str, store: DocumentStore = Depends(get_store),
                        admin: AdminSession = Depends(require_admin)):
    ok = await store.delete("coupons", coupon_id)
    if not ok:
        raise HTTPException(404, "Coupon not found")
    return {"deleted": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
