import logging
import os
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auth import get_principal, require_admin, require_user
from catalog import normalize_product
from database import db
from errors import ShopError
from promotions import as_utc
from schemas import (
    ApplicableOffersRequest,
    CheckoutRequest,
    Coupon,
    CouponValidateRequest,
    Evaluation,
    Offer,
    OfferRanking,
    Order,
    Principal,
    Product,
    StatusUpdate,
    StockUpdateRequest,
)
from services import Services, get_services

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "reason": exc.reason})


@app.get("/")
def root():
    return {"name": "Storefront API", "status": "ok"}


@app.get("/test")
def test_database(services: Services = Depends(get_services)):
    response = {
        "backend": "✅ Running",
        "store": services.backend,
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "❌ Not Set",
        "collections": [],
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected"
            response["database_name"] = db.name
            response["collections"] = db.list_collection_names()
    except Exception as e:
        response["database"] = f"⚠️ {str(e)[:80]}"
    return response


# -----------------
# Products Endpoints
# -----------------
@app.get("/api/products", response_model=List[Product])
def list_products(
    category: Optional[str] = Query(default=None, description="Category id or slug"),
    limit: int = Query(default=100, ge=1, le=500),
    services: Services = Depends(get_services),
):
    return services.catalog.list_products(category=category, limit=limit)


@app.get("/api/products/{product_id}", response_model=Product)
def get_product(product_id: str, services: Services = Depends(get_services)):
    product = services.catalog.find_product(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.post("/api/products", response_model=Product, status_code=201)
def create_product(payload: Product, _=Depends(require_admin), services: Services = Depends(get_services)):
    product = normalize_product(payload.model_copy(update={"id": None, "sold": 0}))
    created = services.catalog.create_product(product)
    logger.info("Product %s created: %s", created.id, created.name)
    return created


@app.put("/api/products/{product_id}", response_model=Product)
def update_product(product_id: str, payload: Product, _=Depends(require_admin), services: Services = Depends(get_services)):
    existing = services.catalog.find_product(product_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="Product not found")
    # sold is owned by the inventory engine
    product = normalize_product(
        payload.model_copy(update={"id": product_id, "sold": existing.sold, "created_at": existing.created_at})
    )
    saved = services.catalog.save_product(product)
    if saved is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return saved


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, _=Depends(require_admin), services: Services = Depends(get_services)):
    if not services.catalog.delete_product(product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"deleted": True}


@app.patch("/api/stock/update")
def update_stock(payload: StockUpdateRequest, _=Depends(require_admin), services: Services = Depends(get_services)):
    if not payload.changes:
        raise HTTPException(status_code=400, detail="No stock changes provided")
    updated, skipped = services.inventory.restock(payload.changes)
    return {"success": True, "updated": updated, "skipped": skipped}


# -----------------
# Checkout
# -----------------
@app.post("/api/checkout")
def checkout(
    payload: CheckoutRequest,
    background_tasks: BackgroundTasks,
    principal: Optional[Principal] = Depends(get_principal),
    services: Services = Depends(get_services),
):
    order, created = services.checkout.checkout(payload, principal)
    if created:
        background_tasks.add_task(services.notifier.order_placed, order)
    return {"success": True, "created": created, "orderId": order.id, "order": order}


# --------------
# Orders Endpoints
# --------------
@app.get("/api/orders", response_model=List[Order])
def my_orders(
    limit: int = Query(default=100, ge=1, le=500),
    principal: Principal = Depends(require_user),
    services: Services = Depends(get_services),
):
    return services.orders.list_orders(user_id=principal.id, limit=limit)


@app.get("/api/orders/admin/all", response_model=List[Order])
def all_orders(
    limit: int = Query(default=100, ge=1, le=500),
    _=Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.orders.list_orders(limit=limit)


@app.get("/api/orders/{order_id}", response_model=Order)
def get_order(order_id: str, principal: Principal = Depends(require_user), services: Services = Depends(get_services)):
    order = services.orders.find_order(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.user_id != principal.id:
        raise HTTPException(status_code=403, detail="Not authorized to view this order")
    return order


@app.patch("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: StatusUpdate,
    background_tasks: BackgroundTasks,
    _=Depends(require_admin),
    services: Services = Depends(get_services),
):
    result = services.lifecycle.transition(order_id, payload.status)
    if result.changed:
        background_tasks.add_task(services.notifier.status_changed, result.order, result.previous)
        message = f"Order status updated to {result.order.status.value}"
    else:
        message = f"Order is already {result.order.status.value}"
    return {"success": True, "message": message, "order": result.order}


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str, _=Depends(require_admin), services: Services = Depends(get_services)):
    if not services.orders.delete_order(order_id):
        raise HTTPException(status_code=404, detail="Order not found")
    return {"deleted": True}


# -----------------
# Coupons Endpoints
# -----------------
@app.post("/api/coupons/validate", response_model=Evaluation)
def validate_coupon(
    payload: CouponValidateRequest,
    principal: Optional[Principal] = Depends(get_principal),
    services: Services = Depends(get_services),
):
    quote = services.checkout.quote(payload.cart)
    result = services.promotions.evaluate_code(payload.code, quote.cart, principal)
    logger.info(
        "Coupon %s checked by %s: %s",
        payload.code.strip().upper(),
        principal.id if principal else "guest",
        result.reason or "eligible",
    )
    return result


@app.post("/api/coupons", response_model=Coupon, status_code=201)
def create_coupon(payload: Coupon, _=Depends(require_admin), services: Services = Depends(get_services)):
    coupon = payload.model_copy(update={"id": None, "usage_count": 0, "used_by": [], "total_savings": 0})
    created = services.promotion_store.create_coupon(coupon)
    logger.info("Coupon %s created (%s)", created.code, created.type)
    return created


@app.get("/api/coupons", response_model=List[Coupon])
def list_coupons(
    limit: int = Query(default=100, ge=1, le=500),
    _=Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.promotion_store.list_coupons(limit=limit)


@app.patch("/api/coupons/{coupon_id}/toggle", response_model=Coupon)
def toggle_coupon(coupon_id: str, _=Depends(require_admin), services: Services = Depends(get_services)):
    coupon = services.promotion_store.find_coupon(coupon_id)
    if coupon is None:
        raise HTTPException(status_code=404, detail="Coupon not found")
    updated = services.promotion_store.set_coupon_active(coupon_id, not coupon.is_active)
    if updated is None:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return updated


# -----------------
# Offers Endpoints
# -----------------
@app.post("/api/offers/applicable", response_model=OfferRanking)
def applicable_offers(
    payload: ApplicableOffersRequest,
    principal: Optional[Principal] = Depends(get_principal),
    services: Services = Depends(get_services),
):
    quote = services.checkout.quote(payload.cart)
    return services.promotions.best_offer(quote.cart, principal)


@app.post("/api/offers", response_model=Offer, status_code=201)
def create_offer(payload: Offer, _=Depends(require_admin), services: Services = Depends(get_services)):
    if as_utc(payload.end_date) <= as_utc(payload.start_date):
        raise HTTPException(status_code=400, detail="End date must be after start date")
    offer = payload.model_copy(update={"id": None, "applied_count": 0, "total_savings": 0, "applied_orders": []})
    return services.promotion_store.create_offer(offer)


@app.patch("/api/offers/{offer_id}/toggle", response_model=Offer)
def toggle_offer(offer_id: str, _=Depends(require_admin), services: Services = Depends(get_services)):
    offer = services.promotion_store.find_offer(offer_id)
    if offer is None:
        raise HTTPException(status_code=404, detail="Offer not found")
    updated = services.promotion_store.set_offer_active(offer_id, not offer.is_active)
    if updated is None:
        raise HTTPException(status_code=404, detail="Offer not found")
    return updated


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
