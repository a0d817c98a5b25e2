import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from api import (
    admin_router,
    admin_vouchers_router,
    orders_router,
    vouchers_router,
)
from config import settings

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("petshop-api")

app = FastAPI(title="Pet Shop API")

if settings.allowed_origins == ["*"]:
    allow_origins = ["*"]
else:
    allow_origins = settings.allowed_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(vouchers_router)
app.include_router(orders_router)
app.include_router(admin_router)
app.include_router(admin_vouchers_router)


@app.on_event("startup")
async def _on_startup() -> None:
    if allow_origins == ["*"]:
        logger.warning(
            "CORS is set to allow all origins with credentials; set ALLOWED_ORIGINS to explicit values for production."
        )
    if not settings.admin_emails:
        logger.warning("ADMIN_EMAILS is empty; admin routes will reject every user.")


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


def run() -> None:
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
