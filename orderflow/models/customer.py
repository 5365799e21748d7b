"""Customer and address snapshots stored on orders."""

import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Address(BaseModel):
    """Postal address snapshot."""

    model_config = ConfigDict(frozen=True)

    full_name: Optional[str] = None
    company: Optional[str] = None
    street_line1: str = ""
    street_line2: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None
    country_code: Optional[str] = None
    phone_number: Optional[str] = None


class CustomerInput(BaseModel):
    """Customer details supplied at checkout."""

    email_address: str = Field(min_length=3)
    first_name: str = ""
    last_name: str = ""
    phone_number: Optional[str] = None


class Customer(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email_address: str
    first_name: str = ""
    last_name: str = ""
    phone_number: Optional[str] = None
    group_ids: list[str] = Field(default_factory=list)
