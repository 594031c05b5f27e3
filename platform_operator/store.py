"""Desired-state object store.

The deploy tooling writes declared resources through ``apply`` and
``request_deletion``; the engine only reads spec/generation/deletion flag and
writes finalizers and status. Engine writes are conditional on the
``resource_version`` the caller read, so a concurrent writer is detected as a
``StoreConflict`` rather than silently overwritten.
"""
from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.orm import sessionmaker

from platform_operator import db
from platform_operator.errors import ResourceNotFound, StoreConflict
from platform_operator.models import DesiredResourceRecord
from platform_operator.schemas import DesiredResource, ResourceKey, ResourceStatus
from platform_operator.state import DeploymentState, Kind

logger = logging.getLogger(__name__)


def _to_resource(record: DesiredResourceRecord) -> DesiredResource:
    return DesiredResource(
        kind=Kind(record.kind),
        namespace=record.namespace,
        name=record.name,
        spec=dict(record.spec or {}),
        generation=record.generation,
        deletion_requested=record.deletion_requested,
        finalizers=list(record.finalizers or []),
        resource_version=record.resource_version,
        status=ResourceStatus.model_validate(record.status or {}),
    )


def _identity(key: ResourceKey):
    return (
        DesiredResourceRecord.kind == key.kind.value,
        DesiredResourceRecord.namespace == key.namespace,
        DesiredResourceRecord.name == key.name,
    )


class ResourceStore:
    """SQLAlchemy-backed store of declared resources and their status."""

    def __init__(self, session_factory: sessionmaker | None = None):
        self._session_factory = session_factory or db.SessionLocal

    # --- reads ---

    def get(self, key: ResourceKey) -> DesiredResource | None:
        with db.get_session(self._session_factory) as session:
            record = session.scalars(select(DesiredResourceRecord).where(*_identity(key))).first()
            return _to_resource(record) if record else None

    def list(self, kind: Kind | None = None, namespace: str | None = None) -> list[DesiredResource]:
        with db.get_session(self._session_factory) as session:
            query = select(DesiredResourceRecord)
            if kind is not None:
                query = query.where(DesiredResourceRecord.kind == kind.value)
            if namespace is not None:
                query = query.where(DesiredResourceRecord.namespace == namespace)
            query = query.order_by(
                DesiredResourceRecord.kind,
                DesiredResourceRecord.namespace,
                DesiredResourceRecord.name,
            )
            return [_to_resource(r) for r in session.scalars(query)]

    def keys(self) -> list[ResourceKey]:
        return [r.key for r in self.list()]

    def deployment_state(self, key: ResourceKey) -> DeploymentState | None:
        resource = self.get(key)
        return resource.status.deployment_state if resource else None

    # --- producer side (deploy tooling / tests) ---

    def apply(self, kind: Kind, name: str, spec: dict, namespace: str = "default") -> DesiredResource:
        """Create or update a declared resource; bump generation on spec change."""
        key = ResourceKey(kind, namespace, name)
        with db.get_session(self._session_factory) as session:
            record = session.scalars(select(DesiredResourceRecord).where(*_identity(key))).first()
            if record is None:
                record = DesiredResourceRecord(
                    kind=kind.value,
                    namespace=namespace,
                    name=name,
                    spec=spec,
                    generation=1,
                    deletion_requested=False,
                    finalizers=[],
                    status={},
                    resource_version=1,
                )
                session.add(record)
                logger.info(f"Declared {key}")
            elif record.spec != spec:
                record.spec = spec
                record.generation += 1
                record.resource_version += 1
                logger.info(f"Updated spec of {key} to generation {record.generation}")
            session.commit()
            session.refresh(record)
            return _to_resource(record)

    def request_deletion(self, key: ResourceKey) -> None:
        """Mark a resource for deletion; removes it at once if nothing blocks."""
        with db.get_session(self._session_factory) as session:
            record = session.scalars(select(DesiredResourceRecord).where(*_identity(key))).first()
            if record is None:
                raise ResourceNotFound(str(key))
            if not record.finalizers:
                session.delete(record)
                logger.info(f"Removed {key} (no finalizers)")
            elif not record.deletion_requested:
                record.deletion_requested = True
                record.resource_version += 1
                logger.info(f"Deletion requested for {key}")
            session.commit()

    # --- engine side (conditional writes) ---

    def _conditional_update(self, key: ResourceKey, expected_version: int, **values) -> int:
        with db.get_session(self._session_factory) as session:
            result = session.execute(
                update(DesiredResourceRecord)
                .where(*_identity(key), DesiredResourceRecord.resource_version == expected_version)
                .values(resource_version=expected_version + 1, **values)
            )
            if result.rowcount == 0:
                exists = session.scalars(
                    select(DesiredResourceRecord.id).where(*_identity(key))
                ).first()
                if exists is None:
                    raise ResourceNotFound(str(key))
                raise StoreConflict(
                    f"{key} changed since resource_version {expected_version}"
                )
            session.commit()
            return expected_version + 1

    def replace_status(self, key: ResourceKey, status: ResourceStatus, expected_version: int) -> int:
        return self._conditional_update(
            key, expected_version, status=status.model_dump(mode="json")
        )

    def set_finalizers(self, key: ResourceKey, finalizers: Iterable[str], expected_version: int) -> int:
        return self._conditional_update(key, expected_version, finalizers=list(finalizers))

    def remove(self, key: ResourceKey, expected_version: int) -> None:
        """Delete the object once its finalizers are gone."""
        with db.get_session(self._session_factory) as session:
            result = session.execute(
                delete(DesiredResourceRecord).where(
                    *_identity(key), DesiredResourceRecord.resource_version == expected_version
                )
            )
            if result.rowcount == 0:
                raise StoreConflict(f"{key} changed before removal")
            session.commit()
            logger.info(f"Removed {key}")
