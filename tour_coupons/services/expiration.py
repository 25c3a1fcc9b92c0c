"""
Mantenimiento de vigencia de cupones: avisos de expiración y desactivación
de cupones vencidos. Pensado para correr periódicamente (scripts/), la
programación queda fuera de este paquete.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models.coupon import Coupon, CouponNotification
from . import coupon_store
from .discount_engine import CouponType, utcnow

logger = logging.getLogger(__name__)

EXPIRATION_WARNING = "expiration_warning"


def _already_notified(db: Session, coupon_id: int) -> set:
    rows = db.execute(
        select(CouponNotification.user_id).where(
            CouponNotification.coupon_id == coupon_id,
            CouponNotification.kind == EXPIRATION_WARNING,
        )
    ).scalars()
    return set(rows)


def _recipients(coupon: Coupon) -> List[str]:
    # Solo los privados tienen destinatarios conocidos
    if coupon.type == CouponType.PRIVATE.value:
        return [str(u) for u in (coupon.allowed_users or [])]
    return []


def send_expiration_notifications(
    db: Session, now: Optional[datetime] = None, days: Optional[int] = None
) -> Dict[str, int]:
    """
    Registra un aviso por (cupón, usuario). La tabla coupon_notification
    es el conjunto de procesados: correr dos veces no duplica avisos. Cada
    aviso se confirma por separado; si otra corrida simultánea ya lo insertó
    (uq_coupon_notification) se cuenta como enviado por ella.
    """
    now = now or utcnow()
    days = settings.expiration_notice_days if days is None else days
    coupons = [
        c
        for c in coupon_store.expiring_between(db, now, now + timedelta(days=days))
        if c.notify_on_expiration
    ]

    sent = 0
    for c in coupons:
        done = _already_notified(db, c.id)
        for user_id in _recipients(c):
            if user_id in done:
                continue
            db.add(
                CouponNotification(
                    coupon_id=c.id,
                    user_id=user_id,
                    kind=EXPIRATION_WARNING,
                    title="Coupon expiring soon",
                    message=(
                        f'Coupon "{c.name}" ({c.code}) expires soon. '
                        f"Use it before {c.valid_until.date().isoformat()}."
                    ),
                    sent_at=now,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info("coupon %s: user %s already notified", c.id, user_id)
                continue
            sent += 1
        if c.notification_sent_at is None:
            c.notification_sent_at = now
            db.commit()
    logger.info("expiration notices: %s sent for %s coupons", sent, len(coupons))
    return {"notifications_sent": sent, "coupons_processed": len(coupons)}


def process_expired_coupons(db: Session, now: Optional[datetime] = None) -> Dict[str, object]:
    now = now or utcnow()
    expired = (
        db.execute(
            select(Coupon).where(
                Coupon.deleted_at.is_(None),
                Coupon.is_active.is_(True),
                Coupon.valid_until < now,
            )
        )
        .scalars()
        .all()
    )
    for c in expired:
        c.is_active = False
        coupon_store.audit(db, c.id, "expired", "system", "deactivated automatically")
    db.commit()
    if expired:
        logger.info("deactivated %s expired coupons", len(expired))
    return {"processed_count": len(expired), "processed_coupons": [c.id for c in expired]}


def notifications_for_user(db: Session, user_id: str) -> List[CouponNotification]:
    return (
        db.execute(
            select(CouponNotification)
            .where(CouponNotification.user_id == str(user_id))
            .order_by(CouponNotification.sent_at.desc())
        )
        .scalars()
        .all()
    )
