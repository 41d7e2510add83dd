from datetime import datetime
from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, ConfigDict, PlainSerializer
from pydantic.alias_generators import to_camel


# NUMERIC(12,2) fits a double exactly enough to round-trip two fraction digits
JsonMoney = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class _CamelPayload(BaseModel):
    # stored as JSON; delivery consumers read camelCase keys
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class PriceDropPayload(_CamelPayload):
    old_price: JsonMoney
    new_price: JsonMoney
    changed_at: datetime


class ListingLifecyclePayload(_CamelPayload):
    """Carried by listing.sold / listing.expired outbox events and the notifications built from them."""
    listing_id: str
    vin: str
    status: str
    asking_price: JsonMoney
    currency: str
    occurred_at: datetime
