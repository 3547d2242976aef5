"""Read-only catalog capability: product id -> GST rate and HSN code."""

from typing import Iterable, Protocol

from beanie import PydanticObjectId
from bson.errors import InvalidId

from app.models.product import Product


class Catalog(Protocol):
    async def get_products_by_ids(self, ids: Iterable[str]) -> list[Product]: ...


class BeanieCatalog:
    """Products collection lookup. Unknown or malformed ids are skipped."""

    async def get_products_by_ids(self, ids: Iterable[str]) -> list[Product]:
        object_ids = []
        for raw in dict.fromkeys(ids):
            try:
                object_ids.append(PydanticObjectId(raw))
            except (InvalidId, TypeError):
                continue
        if not object_ids:
            return []
        return await Product.find({"_id": {"$in": object_ids}}).to_list()
