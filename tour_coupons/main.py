from fastapi import FastAPI

from .core.config import settings
from .core.logging import setup_logging
from .db import Base, engine
from .middleware.idempotency import install_idempotency
from .routers import coupons, health, reports_coupons

# IMPORTA MODELOS antes de create_all
from .models import coupon as _coupon_models  # noqa: F401

setup_logging()

# Crea tablas faltantes (desarrollo)
Base.metadata.create_all(bind=engine)

app = FastAPI(title=settings.app_name, version=settings.app_version)

install_idempotency(app)
app.include_router(health.router)
app.include_router(coupons.router)
app.include_router(reports_coupons.router)
