"""
Outbound HTTP helpers

All cross-service calls go through ``httpx.AsyncClient`` with a bounded
timeout. ``unwrap`` maps a downstream structured error body back onto the
local error taxonomy so a 400 from inventory stays a 400 here.
"""

import httpx

from . import errors

_BY_CODE = {
    cls.code: cls
    for cls in (
        errors.ValidationError,
        errors.EmptyCart,
        errors.NoStatusChange,
        errors.InsufficientStock,
        errors.InsufficientReservation,
        errors.PaymentNotRefundable,
        errors.NotFound,
        errors.ProductNotFound,
        errors.Conflict,
        errors.AlreadyExists,
        errors.ReservationRaceLost,
        errors.Unauthorized,
        errors.Forbidden,
        errors.UpstreamUnavailable,
    )
}


def make_client(timeout: float, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, transport=transport)


def unwrap(resp: httpx.Response) -> dict:
    """Return the JSON body of a successful response or raise the matching ServiceError."""
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if resp.is_success:
        return body
    message = body.get("error") or f"Upstream returned HTTP {resp.status_code}"
    cls = _BY_CODE.get(body.get("code"))
    if cls is None:
        cls = errors.UpstreamUnavailable if resp.status_code >= 500 else errors.ServiceError
    err = cls(message, data=body.get("data"))
    if cls is errors.ServiceError:
        err.status_code = resp.status_code
    raise err
