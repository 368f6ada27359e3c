"""
auth/authorizer.py -- Role hierarchy checks.

Four checks, all pure functions over claims and role numbers:

  require_minimum_role     -- actor's role must reach a floor.
  guard_self_modification  -- admin endpoints never act on the actor's own id.
  check_target_ceiling     -- the target's *stored* role must not exceed the
                              actor's, even when the role field is untouched.
  check_assignable_role    -- a requested role must be valid and not exceed
                              the actor's.

authorize_target_mutation() composes them in that order and short-circuits
on the first denial. It returns a MutationContext instead of stashing the
target's role on some request object: everything a downstream write needs
to know about the authorization decision travels in one typed value.

The stored-role ceiling runs before, and independently of, the requested
role. A request that omits the role field still cannot touch a target whose
stored role is above the actor's.

The caller is responsible for reading current_target_role inside the same
transaction as the write that follows (see auth/accounts.py).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from auth.models import MAX_ROLE, MIN_ROLE, Claims, role_name
from core.errors import ForbiddenError, InvalidInputError, NotFoundError, UnauthenticatedError


@dataclass(frozen=True)
class MutationContext:
    actor: Claims
    target_id: int
    target_role: int
    requested_role: Optional[int] = None


def require_minimum_role(claims: Optional[Claims], min_role: int) -> Claims:
    if claims is None:
        raise UnauthenticatedError()
    if claims.role < min_role:
        raise ForbiddenError(
            "Insufficient permissions.",
            details={"required": role_name(min_role), "current": role_name(claims.role)},
        )
    return claims


def validate_role(role: Any) -> int:
    """Return role as an int if it is an integer in [1, 5]; raise InvalidInputError otherwise."""
    if isinstance(role, bool) or not isinstance(role, int) or not MIN_ROLE <= role <= MAX_ROLE:
        raise InvalidInputError(f"Invalid role value. Role must be an integer between {MIN_ROLE} and {MAX_ROLE}.")
    return int(role)


def check_assignable_role(actor_role: int, target_role: Any) -> int:
    role = validate_role(target_role)
    if role > actor_role:
        raise ForbiddenError(
            "Cannot assign role higher than your own.",
            details={"your_role": role_name(actor_role), "attempted_role": role_name(role)},
        )
    return role


def guard_self_modification(actor_id: int, target_id: int) -> None:
    if actor_id == target_id:
        raise ForbiddenError(
            "Cannot modify your own account through admin operations. Use the self-service operations instead."
        )


def check_target_ceiling(actor_role: int, current_target_role: int) -> None:
    if current_target_role > actor_role:
        raise ForbiddenError(
            "Cannot modify user with higher role than yours.",
            details={"your_role": role_name(actor_role), "target_role": role_name(current_target_role)},
        )


def authorize_target_mutation(
    claims: Optional[Claims],
    target_id: int,
    current_target_role: Optional[int],
    min_role: int,
    requested_role: Any = None,
) -> MutationContext:
    """Run the full admin-mutation pipeline.

    Order: minimum-role -> self-modification -> target-ceiling -> assignable-role.
    current_target_role is None when the target does not exist; that surfaces
    as NotFoundError at the ceiling step, after the actor-only checks.
    """
    actor = require_minimum_role(claims, min_role)
    guard_self_modification(actor.account_id, target_id)
    if current_target_role is None:
        raise NotFoundError("User not found.")
    check_target_ceiling(actor.role, current_target_role)
    role = None
    if requested_role is not None:
        role = check_assignable_role(actor.role, requested_role)
    return MutationContext(
        actor=actor,
        target_id=target_id,
        target_role=current_target_role,
        requested_role=role,
    )
