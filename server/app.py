from fastapi import FastAPI

from server.routes import create_router


def create_app(recorder, aggregator, queue, gateway, **router_options) -> FastAPI:
    app = FastAPI(title="RecVault", version="0.1.0")

    router = create_router(recorder, aggregator, queue, gateway, **router_options)
    app.include_router(router, prefix="/api")

    return app
