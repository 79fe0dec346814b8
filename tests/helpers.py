"""Test helpers shared across service test packages."""
import httpx

from services.common.security import INTERNAL_SERVICE_KEY


def internal_headers() -> dict:
    return {"X-Service-Key": INTERNAL_SERVICE_KEY}


def user_headers(user_id: str = "42", role: str = "customer") -> dict:
    return {"X-User-Id": user_id, "X-User-Role": role}


def asgi_client(app) -> httpx.AsyncClient:
    """Client that calls a FastAPI app in-process (lifespan not run)."""
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


def catalog_response(price, stock, name="Product", images=None) -> dict:
    return {
        "success": True,
        "data": {"price": price, "stock": stock, "name": name, "images": images or []},
    }


class ServiceRouter(httpx.AsyncBaseTransport):
    """Send each outbound request to the transport registered for its host."""

    def __init__(self, routes: dict[str, httpx.AsyncBaseTransport] | None = None) -> None:
        self.routes = routes or {}
        self.requests: list[httpx.Request] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        transport = self.routes.get(request.url.host)
        if transport is None:
            raise httpx.ConnectError(f"no route to {request.url.host}", request=request)
        return await transport.handle_async_request(request)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]
