"""Captive-portal authorization route."""
from fastapi import APIRouter, HTTPException, Request

from meshlink.api.models import AuthorizeRequest, SessionOut
from meshlink.lib.session.models import normalize_address, normalize_mac


router = APIRouter(prefix="/api/authorize", tags=["authorize"])


def _invalid_address(message: str) -> HTTPException:
    return HTTPException(status_code=422, detail={"error": "invalid_address", "message": message})


@router.post("", status_code=201)
async def authorize(body: AuthorizeRequest, request: Request):
    """
    Grant the calling client access under the chosen tier.

    The client is the network peer of this request. `client_address` in the body is
    only honoured when the peer is a trusted portal proxy.
    """
    if request.client is None:
        raise _invalid_address("client address unknown")

    try:
        caller = normalize_address(request.client.host)
        requested = normalize_address(body.client_address) if body.client_address else caller
        mac = normalize_mac(body.client_mac)
    except ValueError as e:
        raise _invalid_address(str(e))

    if requested != caller and caller not in request.app.state.trusted_proxies:
        raise HTTPException(
            status_code=403,
            detail={"error": "forbidden_address", "message": f"{caller} may not authorize {requested}"},
        )

    broker = request.app.state.broker
    session = await broker.authorization.authorize(
        requested,
        body.tier,
        client_mac=mac,
        allow_supersede=body.allow_supersede,
    )
    return {"data": SessionOut(**session.to_dict()).model_dump()}
