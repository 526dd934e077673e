from abc import ABC, abstractmethod
from typing import Any


class TransactionService(ABC):
    """Authoritative store for transactions.

    Implementations raise ``UpstreamServiceError`` for every failure
    (transport, validation, auth) instead of returning sentinel values.
    """

    @abstractmethod
    async def create_transaction(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Persist a new transaction and return the stored record."""

    @abstractmethod
    async def update_transaction(self, transaction_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        """Apply a partial update and return the stored record."""

    @abstractmethod
    async def delete_transaction(self, transaction_id: str) -> None:
        """Delete a transaction."""

    @abstractmethod
    async def list_transactions(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Return stored transactions matching ``filters``."""

    async def aclose(self) -> None:
        return None
