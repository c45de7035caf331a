"""Deterministic stand-in for the auth, product, and payment services behind one gateway."""

import time
import uuid
from typing import Optional

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel

app = FastAPI(title="Mock Gateway")

PRODUCTS = [
    {"id": 1, "name": "Laptop", "price": 999.99, "description": "High-performance laptop", "stock": 50},
    {"id": 2, "name": "Mouse", "price": 29.99, "description": "Wireless mouse", "stock": 100},
    {"id": 3, "name": "Keyboard", "price": 79.99, "description": "Mechanical keyboard", "stock": 75},
    {"id": 4, "name": "Monitor", "price": 299.99, "description": "4K monitor", "stock": 25},
    {"id": 5, "name": "Headphones", "price": 199.99, "description": "Noise-cancelling headphones", "stock": 60},
]

# Payments above this amount are declined with 400.
PAYMENT_LIMIT = 500.0


class LoginRequest(BaseModel):
    username: str = ""
    password: str = ""


class PaymentRequest(BaseModel):
    amount: float
    currency: str = "USD"
    card_token: str = ""
    user_id: str = ""


@app.get("/health")
async def gateway_health():
    return {"status": "healthy", "service": "gateway"}


@app.get("/auth/health")
async def auth_health():
    return {"status": "healthy", "service": "auth"}


@app.post("/auth/login")
async def login(req: LoginRequest):
    if not req.username or not req.password or req.username.startswith("blocked"):
        raise HTTPException(status_code=401, detail="Authentication failed")
    return {
        "token": f"token_{req.username}_{int(time.time())}",
        "user_id": f"user_{req.username}",
        "success": True,
    }


@app.post("/auth/validate")
async def validate(authorization: Optional[str] = Header(default=None)):
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing token")
    if not authorization.startswith("Bearer token_"):
        raise HTTPException(status_code=401, detail="Invalid token")
    return {"valid": True, "user_id": "user_validated"}


@app.get("/products/health")
async def products_health():
    return {"status": "healthy", "service": "product"}


@app.get("/products/products")
async def list_products():
    return PRODUCTS


@app.get("/products/products/{product_id}")
async def get_product(product_id: int):
    for product in PRODUCTS:
        if product["id"] == product_id:
            return product
    raise HTTPException(status_code=404, detail="Product not found")


@app.get("/payment/health")
async def payment_health():
    return {"status": "healthy", "service": "payment"}


@app.post("/payment/process")
async def process_payment(req: PaymentRequest):
    if req.amount <= 0 or req.amount > PAYMENT_LIMIT:
        raise HTTPException(status_code=400, detail="Payment failed")
    return {
        "transaction_id": f"txn_{uuid.uuid4().hex[:16]}",
        "amount": req.amount,
        "status": "success",
    }


# Run with: uvicorn mock_service.app:app --port 8080 --reload
