"""Repository layer: Grant Store and Resource Counter."""

from quota_ledger.repositories.grant_repository import GrantRepository
from quota_ledger.repositories.resource_repository import ResourceRepository

__all__ = ["GrantRepository", "ResourceRepository"]
