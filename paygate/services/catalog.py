"""
Resource Catalog - Read-only lookup of protected resources.

The content system owns the resources table; this service only reads price,
currency and object key.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.db.models import Resource
from paygate.exceptions import NotFoundError
from paygate.models.domain import ResourceInfo


class ResourceCatalog:
    """Read-only view of the resources table."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find(self, resource_id: str) -> ResourceInfo | None:
        """Get a resource by id, or None."""
        result = await self.session.execute(select(Resource).where(Resource.id == resource_id))
        resource = result.scalar_one_or_none()
        if resource is None:
            return None
        return ResourceInfo(
            resource_id=resource.id,
            storage_key=resource.storage_key,
            title=resource.title,
            price_minor=resource.price_minor,
            currency=resource.currency,
            is_active=resource.is_active,
        )

    async def get(self, resource_id: str) -> ResourceInfo:
        """
        Get a resource by id.

        Raises:
            NotFoundError: If the resource doesn't exist
        """
        resource = await self.find(resource_id)
        if resource is None:
            raise NotFoundError("Resource", resource_id)
        return resource
