from datetime import datetime

from beanie import Document
from pydantic import Field


class Product(Document):
    """Catalog entry; only the tax fields are read here. CRUD lives elsewhere."""
    name: str
    item_code: str | None = None
    sale_price: float | None = None
    gst: float | None = None  # fraction, e.g. 0.05
    hsn_code: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "products"
