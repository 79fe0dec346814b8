"""
Product catalog client

The catalog is an external collaborator; only ``GET /api/products/:id``
is used. Its answer is authoritative for price, stock and display name.
"""

import logging

import httpx

from .errors import ProductNotFound, UpstreamUnavailable

logger = logging.getLogger(__name__)


async def fetch_product(client: httpx.AsyncClient, product_url: str, product_id: str) -> dict:
    """Return the catalog's ``data`` object for a product (price, stock, name, images)."""
    try:
        resp = await client.get(f"{product_url.rstrip('/')}/api/products/{product_id}")
    except httpx.HTTPError as e:
        logger.warning("Catalog lookup for %s failed: %s", product_id, e)
        raise UpstreamUnavailable(
            "Product catalog unavailable", data={"product_id": product_id}
        ) from e

    if resp.status_code >= 500:
        raise UpstreamUnavailable(
            f"Product catalog returned HTTP {resp.status_code}", data={"product_id": product_id}
        )
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if resp.status_code == 404 or not body.get("success") or not body.get("data"):
        raise ProductNotFound("Product not found", data={"product_id": product_id})
    return body["data"]
