"""
Request/response model base

Bodies use snake_case; the camelCase spelling of the public HTTP
contracts (``productId``, ``totalAmount``...) is accepted too.
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )


def ok(data=None, message: str | None = None) -> dict:
    body: dict = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body
