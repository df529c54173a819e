"""
api/routes/v1/users.py -- Account administration (admin only).

Routes:
  GET   /users       -- list active accounts
  PATCH /users/{id}  -- deactivate an account ({"active": false})

Roles are the closed set {user, admin}; both routes run
CSRF (PATCH only) -> Session -> Role(admin).

An admin cannot deactivate their own account. Deactivation is a soft
delete: the row stays, every read path stops seeing it, and its sessions
fail validation immediately.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.guards import CsrfGuard, RoleGuard, SessionGuard, pipeline
from api.models import StatusResponse, UserPatch, UserResponse, UsersData, UsersEnvelope
from auth.dependencies import get_auth_service
from auth.errors import ValidationError
from auth.models import Role, User

router = APIRouter()


@router.get("/users", response_model=UsersEnvelope)
def list_users(
    request: Request,
    current_user: User = Depends(pipeline(SessionGuard(), RoleGuard(Role.admin))),
) -> UsersEnvelope:
    users = get_auth_service(request).list_users(current_user)
    return UsersEnvelope(data=UsersData(users=[UserResponse.from_user(u) for u in users]))


@router.patch("/users/{user_id}", response_model=StatusResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: User = Depends(pipeline(CsrfGuard(), SessionGuard(), RoleGuard(Role.admin))),
) -> StatusResponse:
    """Deactivate an account. Reactivation is not supported."""
    if body.active:
        raise ValidationError("Reactivating an account is not supported.")
    get_auth_service(request).deactivate_user(current_user, user_id)
    return StatusResponse()
