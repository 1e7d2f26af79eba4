"""
Entity Store interface and an in-memory arena implementation.

The engine never holds on to another entity's object: it resolves identifiers
through the store each time, and the store hands out copies. Updating one
entity therefore cannot corrupt another component's in-memory view.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from enum import Enum
from typing import Dict, Iterator, List, Optional, Type

from pydantic import BaseModel

from models import (
    Appointment, Delivery, Device, Encounter, HealthcareService, Laboratory,
    Location, MedTech, Observation, Organization, Patient, Practitioner, ServiceRequest
)
from .errors import NotFoundError

logger = logging.getLogger(__name__)


class EntityKind(str, Enum):
    PATIENT = "Patient"
    MED_TECH = "MedTech"
    PRACTITIONER = "Practitioner"
    LOCATION = "Location"
    ORGANIZATION = "Organization"
    HEALTHCARE_SERVICE = "HealthcareService"
    DEVICE = "Device"
    LABORATORY = "Laboratory"
    SERVICE_REQUEST = "ServiceRequest"
    APPOINTMENT = "Appointment"
    ENCOUNTER = "Encounter"
    OBSERVATION = "Observation"
    DELIVERY = "Delivery"


MODEL_FOR_KIND: Dict[EntityKind, Type[BaseModel]] = {
    EntityKind.PATIENT: Patient,
    EntityKind.MED_TECH: MedTech,
    EntityKind.PRACTITIONER: Practitioner,
    EntityKind.LOCATION: Location,
    EntityKind.ORGANIZATION: Organization,
    EntityKind.HEALTHCARE_SERVICE: HealthcareService,
    EntityKind.DEVICE: Device,
    EntityKind.LABORATORY: Laboratory,
    EntityKind.SERVICE_REQUEST: ServiceRequest,
    EntityKind.APPOINTMENT: Appointment,
    EntityKind.ENCOUNTER: Encounter,
    EntityKind.OBSERVATION: Observation,
    EntityKind.DELIVERY: Delivery,
}


class EntityStore:
    """
    Durable keyed storage for all entities.
    Implementations must make `transaction()` all-or-nothing: if the block raises,
    every put/delete made inside it is undone.
    """

    def get(self, kind: EntityKind, entity_id: str) -> BaseModel:
        raise NotImplementedError

    def find(self, kind: EntityKind, entity_id: Optional[str]) -> Optional[BaseModel]:
        """Like get(), but returns None instead of raising NotFoundError."""
        if entity_id is None:
            return None
        try:
            return self.get(kind, entity_id)
        except NotFoundError:
            return None

    def exists(self, kind: EntityKind, entity_id: Optional[str]) -> bool:
        return self.find(kind, entity_id) is not None

    def put(self, kind: EntityKind, entity: BaseModel) -> str:
        raise NotImplementedError

    def delete(self, kind: EntityKind, entity_id: str) -> None:
        raise NotImplementedError

    def list(self, kind: EntityKind) -> List[BaseModel]:
        raise NotImplementedError

    def transaction(self):
        """Context manager grouping several writes into one all-or-nothing unit."""
        raise NotImplementedError


class InMemoryEntityStore(EntityStore):
    """
    Arena of entities keyed by (kind, id).
    A single re-entrant lock serializes writers; transactions snapshot the arena and
    restore it if the block raises. Nested transactions join the outermost one.
    """

    def __init__(self):
        self._data: Dict[EntityKind, Dict[str, BaseModel]] = {kind: {} for kind in EntityKind}
        self._lock = threading.RLock()
        self._depth = 0

    def get(self, kind: EntityKind, entity_id: str) -> BaseModel:
        with self._lock:
            entity = self._data[kind].get(entity_id)
            if entity is None:
                raise NotFoundError(kind, entity_id)
            return entity.model_copy(deep=True)

    def put(self, kind: EntityKind, entity: BaseModel) -> str:
        expected = MODEL_FOR_KIND[kind]
        if not isinstance(entity, expected):
            raise TypeError(f"Expected {expected.__name__} for {kind.value}, got {type(entity).__name__}")

        with self._lock:
            if entity.id is None:
                entity.id = uuid.uuid4().hex
            self._data[kind][entity.id] = entity.model_copy(deep=True)
            return entity.id

    def delete(self, kind: EntityKind, entity_id: str) -> None:
        with self._lock:
            if entity_id not in self._data[kind]:
                raise NotFoundError(kind, entity_id)
            del self._data[kind][entity_id]

    def list(self, kind: EntityKind) -> List[BaseModel]:
        with self._lock:
            return [e.model_copy(deep=True) for e in self._data[kind].values()]

    @contextmanager
    def transaction(self) -> Iterator["InMemoryEntityStore"]:
        with self._lock:
            if self._depth > 0:
                # Joined: the outermost block owns the snapshot
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            # Stored models are never mutated in place, so a shallow copy per kind is a full snapshot
            snapshot = {kind: dict(entities) for kind, entities in self._data.items()}
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._data = snapshot
                logger.debug("Transaction rolled back")
                raise
            finally:
                self._depth = 0
