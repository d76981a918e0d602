import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from coderunner.core.config import get_settings
from coderunner.core.logging import setup_logging
from coderunner.api.routers import ws as r_ws
from coderunner.services.registry import ClientRegistry

setup_logging()
settings = get_settings()
logger = logging.getLogger("coderunner")

app = FastAPI(title=settings.APP_NAME)
app.add_middleware(
    CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"]
)

app.include_router(r_ws.router)


@app.get("/health")
async def health(request: Request):
    return {"ok": True, **request.app.state.registry.stats()}


@app.on_event("startup")
async def start_registry():
    registry = ClientRegistry(settings)
    app.state.registry = registry
    registry.start()
    logger.info(
        "execution server ready: %ss timeout, %d iterations, %d lines",
        settings.EXECUTION_TIMEOUT_S,
        settings.MAX_ITERATIONS,
        settings.MAX_OUTPUT_LINES,
    )


@app.on_event("shutdown")
async def stop_registry():
    await app.state.registry.shutdown()


def run():
    import uvicorn

    uvicorn.run(app, host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
