from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional

from cranlike.domain.models import PackageRecord, RegistryConfig


class MetadataStore(ABC):
    """
    Abstract base class for the package record store.

    Every method touches one document at a time except the *_many and
    query methods; single-document operations are atomic.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the storage subsystem (e.g. load from disk)."""
        pass

    @abstractmethod
    def get_registry_config(self) -> RegistryConfig:
        """Retrieve registry configuration."""
        pass

    @abstractmethod
    def save_registry_config(self, config: RegistryConfig) -> None:
        """Save registry configuration."""
        pass

    @abstractmethod
    async def insert(self, record: PackageRecord) -> PackageRecord:
        """Insert a new record. The record id must be unused."""
        pass

    @abstractmethod
    async def get(self, record_id: str) -> Optional[PackageRecord]:
        """Get a record by id."""
        pass

    @abstractmethod
    async def find(
        self,
        query: Mapping[str, Any],
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[PackageRecord]:
        """
        Find records matching a query.

        Query keys are dotted field paths; values match by equality, by
        regex for compiled patterns, or by membership for list fields.
        """
        pass

    @abstractmethod
    async def find_one(self, query: Mapping[str, Any]) -> Optional[PackageRecord]:
        """Return the first matching record, or None."""
        pass

    @abstractmethod
    async def count(self, query: Mapping[str, Any]) -> int:
        """Count matching records."""
        pass

    @abstractmethod
    async def distinct(self, field: str, query: Mapping[str, Any]) -> List[Any]:
        """Distinct values of a field among matching records."""
        pass

    @abstractmethod
    async def delete(self, record_id: str) -> Optional[PackageRecord]:
        """Delete a record by id and return it, or None if it did not exist."""
        pass

    @abstractmethod
    async def delete_many(self, query: Mapping[str, Any]) -> List[PackageRecord]:
        """Delete all matching records and return them."""
        pass

    @abstractmethod
    async def find_one_and_replace(
        self,
        query: Mapping[str, Any],
        record: PackageRecord,
        upsert: bool = False,
    ) -> Optional[PackageRecord]:
        """
        Atomically replace the first matching record with `record`.

        Returns the replaced record. With upsert, inserts when nothing matched.
        """
        pass

    @abstractmethod
    async def update(
        self,
        record_id: str,
        set_fields: Optional[Dict[str, Any]] = None,
        unset_fields: Optional[Iterable[str]] = None,
    ) -> PackageRecord:
        """Set and unset dotted fields of one record in place and return it."""
        pass
