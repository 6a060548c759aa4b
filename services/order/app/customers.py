"""
Order Service: customer directory

The order workflow only reads customers. ``add`` exists so that
deployments and tests can seed the directory.
"""

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .db import bounded
from .errors import DuplicateId, StorageFailure
from .models import Customer


class CustomerDirectory:
    def __init__(self, session_factory: sessionmaker, *, timeout: float = 5.0) -> None:
        self._sessions = session_factory
        self.timeout = timeout

    async def get(self, customer_id: str) -> Customer | None:
        return await bounded(self._get(customer_id), self.timeout, "customer lookup")

    async def add(self, customer: Customer) -> Customer:
        await bounded(self._add(customer), self.timeout, "customer insert")
        return customer

    async def _get(self, customer_id: str) -> Customer | None:
        try:
            async with self._sessions() as session:
                result = await session.execute(
                    text(
                        "SELECT id, display_name, contact_info "
                        "FROM customers WHERE id = :id"
                    ),
                    {"id": customer_id},
                )
                row = result.first()
        except SQLAlchemyError as e:
            raise StorageFailure("customer lookup") from e
        if row is None:
            return None
        return Customer(
            id=row.id, display_name=row.display_name, contact_info=row.contact_info
        )

    async def _add(self, customer: Customer) -> None:
        try:
            async with self._sessions() as session:
                await session.execute(
                    text("""
                        INSERT INTO customers (id, display_name, contact_info)
                        VALUES (:id, :display_name, :contact_info)
                    """),
                    {
                        "id": customer.id,
                        "display_name": customer.display_name,
                        "contact_info": customer.contact_info,
                    },
                )
                await session.commit()
        except IntegrityError as e:
            raise DuplicateId("customer", customer.id) from e
        except SQLAlchemyError as e:
            raise StorageFailure("customer insert") from e
