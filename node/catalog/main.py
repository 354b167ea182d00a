import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
from fastapi import FastAPI, HTTPException, Request

from .config import Settings
from .failure import HealthMonitor, router as failure_router
from .models import EventKind, Product, ProductIn
from .replication import ReplicationBroadcaster, router as replication_router
from .state import ProductStore

logger = logging.getLogger(__name__)

PRODUCTS = "products"


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build one node of the cluster. The services live on ``app.state`` and
    are started and stopped with the application lifespan.
    """
    if settings is None:
        settings = Settings.from_env()
    local = settings.local_node()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: peer health probing
        logger.info("Node %s starting with %d peers", settings.node_id, len(settings.peers()))
        app.state.monitor.start(settings.health_check_interval)
        yield
        # Shutdown: stop probing, let queued events go out
        await app.state.monitor.stop()
        await app.state.broadcaster.wait_idle()

    app = FastAPI(title=f"Product Catalog Node ({local.name})", lifespan=lifespan)

    store = ProductStore()
    app.state.settings = settings
    app.state.store = store
    app.state.monitor = HealthMonitor(
        settings.node_id,
        [n.model_copy() for n in settings.nodes],
        probe_timeout=settings.probe_timeout,
        transport=transport,
    )
    app.state.broadcaster = ReplicationBroadcaster(
        settings.node_id,
        settings.peers(),
        {PRODUCTS: store},
        timeout=settings.broadcast_timeout,
        transport=transport,
    )

    app.include_router(failure_router)
    app.include_router(replication_router)

    @app.get("/products", response_model=List[Product])
    async def list_products(request: Request):
        return request.app.state.store.list()

    @app.get("/products/{product_id}", response_model=Product)
    async def get_product(product_id: str, request: Request):
        product = request.app.state.store.get(product_id)
        if product is None:
            raise HTTPException(status_code=404, detail="Product not found")
        return product

    @app.post("/products", response_model=Product, status_code=201)
    async def create_product(data: ProductIn, request: Request):
        product = request.app.state.store.create(data)
        request.app.state.broadcaster.add_event(EventKind.CREATE, PRODUCTS, _record(product))
        return product

    @app.put("/products/{product_id}", response_model=Product)
    async def update_product(product_id: str, data: ProductIn, request: Request):
        product = request.app.state.store.replace(product_id, data)
        if product is None:
            raise HTTPException(status_code=404, detail="Product not found")
        request.app.state.broadcaster.add_event(EventKind.UPDATE, PRODUCTS, _record(product))
        return product

    @app.delete("/products/{product_id}")
    async def delete_product(product_id: str, request: Request):
        product = request.app.state.store.remove(product_id)
        if product is None:
            raise HTTPException(status_code=404, detail="Product not found")
        request.app.state.broadcaster.add_event(EventKind.DELETE, PRODUCTS, _record(product))
        return {"message": "Product deleted", "id": product_id}

    return app


def _record(product: Product) -> dict:
    return product.model_dump(mode="json", by_alias=True)

