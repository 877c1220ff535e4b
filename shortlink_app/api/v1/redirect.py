from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import RedirectResponse

from shortlink_app.dependencies import get_link_service
from shortlink_app.schemas import ClientContext, PasswordSubmission
from shortlink_app.services.link_service import LinkService

router = APIRouter(tags=["redirect"])

COUNTRY_HEADERS = ("cf-ipcountry", "x-country-code")


def client_context(request: Request) -> ClientContext:
    """Request metadata for the click event"""
    country = next(
        (request.headers[name] for name in COUNTRY_HEADERS if request.headers.get(name)),
        None,
    )
    return ClientContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        referrer=request.headers.get("referer"),
        country=country,
    )


@router.get("/{short_code}")
async def redirect_to_original_url(
    short_code: str,
    request: Request,
    x_link_password: Optional[str] = Header(None),
    link_service: LinkService = Depends(get_link_service)
):
    """
    Redirect to the original URL.

    Flow:
    1. Resolve through the cache (store only on a miss)
    2. Check the password of a protected link (X-Link-Password header)
    3. Hand the click to the recorder (buffered, not awaited)
    4. Redirect immediately

    Click persistence happens in the worker, so it never slows the redirect.
    """
    original_url = await link_service.process_click(
        short_code, client_context(request), password=x_link_password
    )
    return RedirectResponse(url=original_url, status_code=status.HTTP_302_FOUND)


@router.post("/{short_code}/password")
async def submit_link_password(
    short_code: str,
    submission: PasswordSubmission,
    request: Request,
    link_service: LinkService = Depends(get_link_service)
):
    """
    Unlock a password-protected link from a form.

    Counts as a click; the target comes back as JSON for the client to follow.
    """
    original_url = await link_service.process_click(
        short_code, client_context(request), password=submission.password
    )
    return {"redirect_url": original_url}
