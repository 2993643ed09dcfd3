import logging

from fastapi import FastAPI

from order_engine.api.errors import register_error_handlers
from order_engine.api.routes import inventory, orders
from order_engine.core.config import get_settings

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title="Order Engine",
    description="Order and inventory transaction engine",
    version="1.0.0"
)

register_error_handlers(app)

# Include routers
app.include_router(orders.router, prefix="/api/v1/orders", tags=["orders"])
app.include_router(inventory.router, prefix="/api/v1/inventory", tags=["inventory"])


@app.get("/")
async def root():
    return {"message": "Order Engine API"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    from order_engine.core.database import init_db

    init_db()
    uvicorn.run(app, host="0.0.0.0", port=8000)
