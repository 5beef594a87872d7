"""Role administration endpoints (definitions and dry-run resolution)."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter
from pydantic import BaseModel

from jitaccess.errors import JitAccessError
from jitaccess.roles.definitions import parse_role, role_to_dict

from ..responses import error_response, private_response
from ..services import get_services
from .requests import SubjectPayload

roles_router = APIRouter(tags=["Roles"])


class ResolveRequest(BaseModel):
    subject: SubjectPayload


@roles_router.get("/roles")
def list_roles():
    snapshot = get_services().roles.snapshot()
    items = [role_to_dict(snapshot.roles[role_id]) for role_id in sorted(snapshot.roles)]
    return private_response({"version": snapshot.version, "items": items})


@roles_router.get("/roles/{role_id}")
def get_role(role_id: str):
    role = get_services().roles.get_role(role_id)
    if role is None:
        return private_response({"error": "not_found"}, status_code=404)
    return private_response(role_to_dict(role))


@roles_router.put("/roles/{role_id}")
def put_role(role_id: str, definition: Dict[str, Any]):
    """
    Create or replace one role definition.

    Behavior:
        - Publishes a new registry snapshot; in-flight resolutions keep the
          snapshot they started with.
        - Malformed definitions and limit violations are a 422.
    """
    registry = get_services().roles
    try:
        role = parse_role(role_id, definition)
        snapshot = registry.put_role(role)
    except JitAccessError as exc:
        return error_response(exc)
    body = role_to_dict(role)
    body["version"] = snapshot.version
    return private_response(body)


@roles_router.delete("/roles/{role_id}")
def delete_role(role_id: str):
    if not get_services().roles.remove_role(role_id):
        return private_response({"error": "not_found"}, status_code=404)
    return private_response({"deleted": role_id})


@roles_router.post("/roles/{role_id}/resolve")
def resolve_role(role_id: str, payload: ResolveRequest):
    try:
        policy = get_services().resolver.resolve(role_id, payload.subject.to_identity())
    except JitAccessError as exc:
        return error_response(exc)
    return private_response(policy.to_dict())


__all__ = ["roles_router"]
