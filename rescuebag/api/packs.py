"""
RescueBag — Packs API (surprise bags listed by businesses)
"""
from fastapi import APIRouter, Depends, status

from rescuebag.api.deps import get_services, get_session
from rescuebag.core.session import SessionContext
from rescuebag.schemas.order import Pack, PackCreateRequest
from rescuebag.services.container import Services

router = APIRouter(prefix="/packs", tags=["packs"])


@router.post("", response_model=Pack, status_code=status.HTTP_201_CREATED)
async def create_pack(
    payload: PackCreateRequest,
    ctx: SessionContext = Depends(get_session),
    services: Services = Depends(get_services),
):
    return await services.orders.list_pack(ctx, **payload.model_dump())


@router.get("/{pack_id}", response_model=Pack)
async def get_pack(pack_id: str, services: Services = Depends(get_services)):
    return await services.orders.get_pack(pack_id)
