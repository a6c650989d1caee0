from decimal import Decimal
from pydantic import BaseModel, ConfigDict

class ProductSnapshot(BaseModel):
    """Catalog view of a product at checkout time"""
    product_id: str
    name: str
    price: Decimal
    stock_quantity: int = 0
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True, frozen=True)
