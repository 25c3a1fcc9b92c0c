from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from ..core.exceptions import CouponError
from ..db import get_db
from ..services import reports

router = APIRouter(prefix="/reports/coupon", tags=["reports", "coupon"])


def _parse_range(start: str, end: str):
    try:
        start_d = date.fromisoformat(start)
        end_d = date.fromisoformat(end)
    except ValueError:
        raise HTTPException(status_code=400, detail="INVALID_DATE")
    if end_d < start_d:
        raise HTTPException(status_code=400, detail="INVALID_RANGE")
    return start_d, end_d


@router.get("/stats/{coupon_id}")
def coupon_stats(coupon_id: int, db: Session = Depends(get_db)):
    try:
        return reports.coupon_stats(db, coupon_id)
    except CouponError as e:
        raise HTTPException(status_code=404, detail=e.code)


@router.get("/usage")
def usage_report(
    start: str = Query(..., description="YYYY-MM-DD"),
    end: str = Query(..., description="YYYY-MM-DD"),
    partner_id: Optional[str] = None,
    include_refunded: bool = False,
    db: Session = Depends(get_db),
):
    """
    Resumen de uso de cupones en el rango [start, end] (inclusive, fechas UTC).
    """
    start_d, end_d = _parse_range(start, end)
    return reports.usage_report(
        db, start_d, end_d, partner_id=partner_id, include_refunded=include_refunded
    )


@router.get("/usage/export.csv")
def usage_export_csv(
    start: str = Query(..., description="YYYY-MM-DD"),
    end: str = Query(..., description="YYYY-MM-DD"),
    partner_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    start_d, end_d = _parse_range(start, end)
    return Response(
        content=reports.export_usages_csv(db, start_d, end_d, partner_id=partner_id),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="coupon_usage.csv"'},
    )
