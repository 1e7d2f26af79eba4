"""
Validated writes for registration-owned entities (patients, med techs, places, services...).

Registration itself happens elsewhere; this is the seam it writes through, so the
consistency gate sees every mutation, not only the ones the booking engine makes.
"""

import logging
from typing import Optional

from pydantic import BaseModel

from models import LocationStatus
from .availability import AvailabilityIndex
from .constraints import ConsistencyValidator
from .errors import ValidationError
from .store import EntityKind, EntityStore

logger = logging.getLogger(__name__)


class EntityRegistry:
    def __init__(
        self,
        store: EntityStore,
        validator: ConsistencyValidator,
        index: Optional[AvailabilityIndex] = None
    ):
        self.store = store
        self.validator = validator
        self.index = index

    def register(self, kind: EntityKind, entity: BaseModel) -> str:
        """Validate and store a new entity. Returns its id."""
        with self.store.transaction():
            self.validator.validate(kind, entity)
            entity_id = self.store.put(kind, entity)
        logger.info(f"Registered {kind.value} {entity_id}")
        return entity_id

    def update(self, kind: EntityKind, entity: BaseModel) -> None:
        """Replace an existing entity. A changed med tech schedule invalidates its availability."""
        with self.store.transaction():
            self.store.get(kind, entity.id)
            self.validator.validate(kind, entity)
            self.store.put(kind, entity)

        if kind == EntityKind.MED_TECH and self.index is not None:
            self.index.invalidate(entity.id)
        logger.info(f"Updated {kind.value} {entity.id}")

    def deactivate(self, kind: EntityKind, entity_id: str) -> BaseModel:
        """Retire an entity without deleting it, so historical bookings keep resolving."""
        with self.store.transaction():
            entity = self.store.get(kind, entity_id)
            if kind == EntityKind.LOCATION:
                entity.status = LocationStatus.INACTIVE
            elif "active" in type(entity).model_fields:
                entity.active = False
            else:
                raise TypeError(f"{kind.value} has no active flag")
            self.validator.validate(kind, entity)
            self.store.put(kind, entity)

        logger.info(f"Deactivated {kind.value} {entity_id}")
        return entity

    def delete(self, kind: EntityKind, entity_id: str) -> None:
        """Hard delete, refused while anything still references the entity."""
        with self.store.transaction():
            self.store.get(kind, entity_id)
            violation = self.validator.check_delete(kind, entity_id)
            if violation:
                logger.warning(f"Refused to delete {kind.value} {entity_id}: {violation.reason}")
                raise ValidationError(violation)
            self.store.delete(kind, entity_id)

        if kind == EntityKind.MED_TECH and self.index is not None:
            self.index.invalidate(entity_id)
        logger.info(f"Deleted {kind.value} {entity_id}")
