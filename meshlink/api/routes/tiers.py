"""Tier catalog routes."""
from fastapi import APIRouter, Request

from meshlink.api.models import TierOut


router = APIRouter(prefix="/api/tiers", tags=["tiers"])


@router.get("")
def list_tiers(request: Request):
    """List the tiers a client can pick from."""
    tiers = request.app.state.broker.tiers
    rows = [
        TierOut(
            name=t.name,
            duration_seconds=t.duration_seconds,
            download_kbit=t.download_kbit,
            upload_kbit=t.upload_kbit,
            data_quota_bytes=t.data_quota_bytes,
            price=t.price,
        ).model_dump()
        for t in tiers
    ]
    return {"data": rows, "count": len(rows)}
