#!/usr/bin/env python3
"""
Mantenimiento periódico de cupones (cron, cada hora):
- registra avisos de expiración para cupones privados por vencer
- desactiva cupones vencidos
"""
import logging
import sys

from tour_coupons.core.logging import setup_logging
from tour_coupons.db import Base, SessionLocal, engine
from tour_coupons.models import coupon as _coupon_models  # noqa: F401
from tour_coupons.services.expiration import process_expired_coupons, send_expiration_notifications

logger = logging.getLogger("tour_coupons.maintenance")


def main() -> int:
    setup_logging()
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        notices = send_expiration_notifications(db)
        logger.info(
            "notifications_sent=%s coupons_processed=%s",
            notices["notifications_sent"],
            notices["coupons_processed"],
        )
        expired = process_expired_coupons(db)
        logger.info("expired_deactivated=%s", expired["processed_count"])
    except Exception:
        logger.exception("coupon maintenance failed")
        db.rollback()
        return 1
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
