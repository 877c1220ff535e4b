from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Response, status

from shortlink_app.dependencies import get_link_service
from shortlink_app.schemas import LinkCreate, LinkPage, LinkPreview, LinkRecord, LinkUpdate, UserStats
from shortlink_app.services.link_service import MAX_PAGE_SIZE, LinkService

router = APIRouter(prefix="/links", tags=["links"])


def get_owner_id(x_owner_id: str = Header(..., min_length=1, max_length=64)) -> str:
    """Owner identity, already authenticated upstream."""
    return x_owner_id


@router.post("", response_model=LinkRecord, status_code=status.HTTP_201_CREATED)
async def create_link(
    link_data: LinkCreate,
    owner_id: str = Depends(get_owner_id),
    link_service: LinkService = Depends(get_link_service)
):
    """Create a new short link (random or custom code)"""
    return await link_service.create_link(owner_id, link_data)


@router.get("", response_model=LinkPage)
async def list_links(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    campaign: Optional[str] = None,
    search: Optional[str] = None,
    include_inactive: bool = False,
    owner_id: str = Depends(get_owner_id),
    link_service: LinkService = Depends(get_link_service)
):
    """List the caller's links, newest first"""
    return await link_service.get_user_links(
        owner_id,
        page=page,
        page_size=page_size,
        campaign=campaign,
        search=search,
        include_inactive=include_inactive,
    )


@router.get("/stats", response_model=UserStats)
async def get_stats(
    owner_id: str = Depends(get_owner_id),
    link_service: LinkService = Depends(get_link_service)
):
    """Link and click totals for the caller"""
    return await link_service.get_user_stats(owner_id)


@router.get("/{short_code}", response_model=LinkPreview)
async def get_link(
    short_code: str,
    link_service: LinkService = Depends(get_link_service)
):
    """Preview a short code without recording a click"""
    return LinkPreview.from_cached(await link_service.get_link_by_short_code(short_code))


@router.patch("/{link_id}", response_model=LinkRecord)
async def update_link(
    link_id: str,
    patch: LinkUpdate,
    owner_id: str = Depends(get_owner_id),
    link_service: LinkService = Depends(get_link_service)
):
    """Update mutable fields of a link (invalidates its cache entry)"""
    return await link_service.update_link(link_id, owner_id, patch)


@router.delete("/{link_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_link(
    link_id: str,
    owner_id: str = Depends(get_owner_id),
    link_service: LinkService = Depends(get_link_service)
):
    """Soft delete a link"""
    await link_service.delete_link(link_id, owner_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
