"""Read-only status surface over declared resources."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from platform_operator.schemas import ResourceKey, ResourceOut
from platform_operator.state import Kind
from platform_operator.store import ResourceStore

router = APIRouter(prefix="/resources", tags=["resources"])


def get_store(request: Request) -> ResourceStore:
    return request.app.state.controller.store


@router.get("", response_model=list[ResourceOut])
def list_resources(
    kind: Kind | None = Query(default=None),
    namespace: str | None = Query(default=None),
    store: ResourceStore = Depends(get_store),
) -> list[ResourceOut]:
    return [ResourceOut.model_validate(r) for r in store.list(kind, namespace)]


@router.get("/{kind}/{namespace}/{name}", response_model=ResourceOut)
def get_resource(
    kind: Kind,
    namespace: str,
    name: str,
    store: ResourceStore = Depends(get_store),
) -> ResourceOut:
    resource = store.get(ResourceKey(kind, namespace, name))
    if resource is None:
        raise HTTPException(status_code=404, detail=f"{kind.value}/{namespace}/{name} not found")
    return ResourceOut.model_validate(resource)
