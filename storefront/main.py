import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import LOG_LEVEL, RESERVATION_SWEEP_INTERVAL_SECONDS
from .database import engine
from .models import Base
from .routers import admin_router, order_router, product_router
from .sweeper import start_reservation_sweeper

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

app = FastAPI(
    title="Storefront Stock Service",
    description="Stock reservations, checkout orders and order lifecycle for the thrift storefront",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Create database tables
Base.metadata.create_all(bind=engine)

app.include_router(product_router.router)
app.include_router(order_router.router)
app.include_router(admin_router.router)


@app.on_event("startup")
def _startup() -> None:
    app.state.sweeper_stop = start_reservation_sweeper(RESERVATION_SWEEP_INTERVAL_SECONDS)


@app.on_event("shutdown")
def _shutdown() -> None:
    stop = getattr(app.state, "sweeper_stop", None)
    if stop is not None:
        stop.set()


@app.get("/")
def root():
    return {
        "service": "Storefront Stock Service",
        "status": "running",
        "version": "1.0.0"
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "service": "storefront-stock"
    }
