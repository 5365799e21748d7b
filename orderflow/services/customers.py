"""Customer contract used for checkout details and sign-in."""

from typing import Iterable, Optional, Protocol

from orderflow.models.customer import Customer


class CustomerRepository(Protocol):
    async def get_by_id(self, customer_id: str) -> Optional[Customer]: ...

    async def get_by_email(self, email_address: str) -> Optional[Customer]: ...

    async def save(self, customer: Customer) -> Customer: ...


class InMemoryCustomerRepository:
    def __init__(self, customers: Iterable[Customer] = ()):
        self._customers = {c.id: c for c in customers}

    async def get_by_id(self, customer_id: str) -> Optional[Customer]:
        customer = self._customers.get(customer_id)
        return customer.model_copy(deep=True) if customer else None

    async def get_by_email(self, email_address: str) -> Optional[Customer]:
        wanted = email_address.strip().lower()
        for customer in self._customers.values():
            if customer.email_address.lower() == wanted:
                return customer.model_copy(deep=True)
        return None

    async def save(self, customer: Customer) -> Customer:
        self._customers[customer.id] = customer.model_copy(deep=True)
        return customer
