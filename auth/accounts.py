"""
auth/accounts.py -- Account lifecycle, login, and admin mutations.

Every operation that writes more than one row (account + credential), or
that reads a precondition and then writes (target-ceiling check, role
change, delete, password reset), runs inside a single store transaction.
Any exception inside the block rolls back every write made so far.

Admin mutations go through _target_mutation(), which:
  1. reads the target's current row inside the transaction (FOR UPDATE),
  2. runs authorize_target_mutation() -- minimum role, self-modification,
     target ceiling, then the requested role -- on that fresh read,
  3. yields the connection, the MutationContext, and the target row.
The write repeats both preconditions in its WHERE clause: the account is not
deleted and its stored role does not exceed the actor's. A row that changed
under the check matches nothing, and _refuse_write() reports NotFoundError
or ForbiddenError accordingly.

Timing equalization: authenticate() always runs a bcrypt verification, even
for unknown emails, so response time does not reveal whether an account
exists.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, NoReturn, Optional

from sqlalchemy.engine import Connection

from auth.authorizer import (
    MutationContext,
    authorize_target_mutation,
    check_assignable_role,
    check_target_ceiling,
    require_minimum_role,
)
from auth.credentials import DUMMY_CREDENTIAL, hash_password, verify_password
from auth.models import Account, AccountStatus, Claims, Credential, Role, role_name
from auth.store import AccountStore
from auth.tokens import TokenIssuer
from core.errors import ForbiddenError, InvalidInputError, NotFoundError, UnauthenticatedError
from core.results import OperationResult

logger = logging.getLogger("keyward.accounts")

_UPDATABLE_FIELDS = {"firstname", "lastname", "username", "email", "phone", "status", "email_verified", "phone_verified"}
_BLOCKED_STATUSES = {AccountStatus.suspended.value, AccountStatus.locked.value}


def account_summary(account: Account) -> dict[str, Any]:
    """Public view of an account. No credential material."""
    return {
        "account_id": account.id,
        "firstname": account.firstname,
        "lastname": account.lastname,
        "username": account.username,
        "email": account.email,
        "email_verified": account.email_verified,
        "phone": account.phone,
        "phone_verified": account.phone_verified,
        "account_role": int(account.role),
        "role_name": role_name(account.role),
        "account_status": account.status,
        "created_at": account.created_at.isoformat() if account.created_at else "",
        "updated_at": account.updated_at.isoformat() if account.updated_at else "",
    }


class AccountService:
    """Atomic account writes and the operations that gate them.

    Usage:
        service = AccountService(store, TokenIssuer.from_settings(settings))
        service.register("Ada", "Lovelace", "ada", "ada@example.com", "correct horse")
        result = service.login("ada@example.com", "correct horse")
        claims = service.issuer.validate(result.data["access_token"])
    """

    def __init__(self, store: AccountStore, issuer: TokenIssuer) -> None:
        self.store = store
        self.issuer = issuer

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _create(self, account: Account, password: str) -> Account:
        salt, digest = hash_password(password)
        with self.store.transaction() as conn:
            account_id = self.store.insert_account(account, conn)
            self.store.insert_credential(Credential(account_id=account_id, salted_hash=digest, salt=salt), conn)
            created = self.store.get_account(account_id, conn)
        return created

    def register(
        self,
        firstname: str,
        lastname: str,
        username: str,
        email: str,
        password: str,
        phone: Optional[str] = None,
    ) -> OperationResult:
        """Self-registration. Always creates a basic User; the role is not caller-controlled."""
        created = self._create(
            Account(
                firstname=firstname,
                lastname=lastname,
                username=username,
                email=email,
                phone=phone or None,
                role=Role.USER,
                status=AccountStatus.active.value,
            ),
            password,
        )
        logger.info("Account %d registered", created.id)
        return OperationResult.ok("User registered successfully.", data=account_summary(created))

    def create_account(
        self,
        claims: Optional[Claims],
        firstname: str,
        lastname: str,
        username: str,
        email: str,
        password: str,
        role: Any,
        phone: Optional[str] = None,
    ) -> OperationResult:
        """Admin account creation. The new role may not exceed the actor's."""
        actor = require_minimum_role(claims, Role.MODERATOR)
        new_role = check_assignable_role(actor.role, role)
        created = self._create(
            Account(
                firstname=firstname,
                lastname=lastname,
                username=username,
                email=email,
                phone=phone or None,
                role=new_role,
                status=AccountStatus.active.value,
            ),
            password,
        )
        logger.info("Account %d created with role %s by account %d", created.id, role_name(new_role), actor.account_id)
        return OperationResult.ok("User created successfully.", data=account_summary(created))

    def bootstrap_owner(self, firstname: str, lastname: str, username: str, email: str, password: str) -> Account:
        """Create the first Owner. Refuses once any account exists."""
        if self.store.has_accounts():
            raise ForbiddenError("Accounts already exist; bootstrap is only allowed on an empty store.")
        created = self._create(
            Account(
                firstname=firstname,
                lastname=lastname,
                username=username,
                email=email,
                role=Role.OWNER,
                status=AccountStatus.active.value,
            ),
            password,
        )
        logger.info("Owner account %d bootstrapped", created.id)
        return created

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self, email: str, password: str) -> Account:
        """Check email + password. Same error for unknown email and wrong password."""
        account = self.store.get_account_by_email(email)
        credential = self.store.get_credential(account.id) if account is not None else None
        if account is None or credential is None:
            # Equalize timing -- do NOT return early before running bcrypt.
            verify_password(password, *DUMMY_CREDENTIAL)
            raise UnauthenticatedError("Invalid email or password.")
        if not verify_password(password, credential.salt, credential.salted_hash):
            raise UnauthenticatedError("Invalid email or password.")
        if account.is_deleted:
            raise UnauthenticatedError("Invalid email or password.")
        if account.status in _BLOCKED_STATUSES:
            raise ForbiddenError(f"Account is {account.status}.")
        return account

    def login(self, email: str, password: str) -> OperationResult:
        """Authenticate and mint a bearer token from the account's current role."""
        account = self.authenticate(email, password)
        token = self.issuer.issue(account.id, account.role)
        logger.info("Account %d logged in", account.id)
        return OperationResult.ok(
            "Login successful.",
            data={
                "access_token": token,
                "token_type": "bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
                "expires_in": self.issuer.lifetime_seconds,
                "account": account_summary(account),
            },
        )

    def current_account(self, claims: Optional[Claims]) -> OperationResult:
        """Profile of the token holder. A deleted account no longer authenticates."""
        if claims is None:
            raise UnauthenticatedError()
        account = self.store.get_account(claims.account_id)
        if account is None or account.is_deleted:
            raise UnauthenticatedError()
        return OperationResult.ok("Current user.", data=account_summary(account))

    def change_password(self, claims: Optional[Claims], old_password: str, new_password: str) -> OperationResult:
        """Self-service password change. The current password must verify."""
        if claims is None:
            raise UnauthenticatedError()
        if old_password == new_password:
            raise InvalidInputError("New password must be different from current password.")
        salt, digest = hash_password(new_password)
        with self.store.transaction() as conn:
            account = self.store.get_account(claims.account_id, conn, for_update=True)
            if account is None or account.is_deleted:
                raise UnauthenticatedError()
            credential = self.store.get_credential(account.id, conn)
            if credential is None or not verify_password(old_password, credential.salt, credential.salted_hash):
                raise UnauthenticatedError("Current password is incorrect.")
            self.store.replace_credential(Credential(account_id=account.id, salted_hash=digest, salt=salt), conn)
            self.store.update_account(account.id, conn)
        logger.info("Account %d changed its password", account.id)
        return OperationResult.ok("Password changed successfully.")

    # ------------------------------------------------------------------
    # Admin mutations
    # ------------------------------------------------------------------

    @contextmanager
    def _target_mutation(
        self,
        claims: Optional[Claims],
        target_id: int,
        min_role: int,
        requested_role: Any = None,
    ) -> Iterator[tuple[Connection, MutationContext, Account]]:
        with self.store.transaction() as conn:
            target = self.store.get_account(target_id, conn, for_update=True)
            current_role = target.role if target is not None and not target.is_deleted else None
            ctx = authorize_target_mutation(claims, target_id, current_role, min_role, requested_role)
            yield conn, ctx, target

    def _refuse_write(self, conn: Connection, ctx: MutationContext) -> NoReturn:
        """Raise for a guarded admin UPDATE that matched no row.

        The row changed after the ceiling check: either it is gone or deleted,
        or its stored role now exceeds the actor's.
        """
        current = self.store.get_account(ctx.target_id, conn)
        if current is None or current.is_deleted:
            raise NotFoundError("User not found.")
        check_target_ceiling(ctx.actor.role, current.role)
        raise NotFoundError("User not found.")

    def get_account(self, claims: Optional[Claims], target_id: int) -> OperationResult:
        require_minimum_role(claims, Role.MODERATOR)
        account = self.store.get_account(target_id)
        if account is None:
            raise NotFoundError("User not found.")
        return OperationResult.ok("User retrieved.", data=account_summary(account))

    def change_role(self, claims: Optional[Claims], target_id: int, role: Any) -> OperationResult:
        if role is None:
            raise InvalidInputError("Role is required.")
        with self._target_mutation(claims, target_id, Role.MODERATOR, requested_role=role) as (conn, ctx, _target):
            if not self.store.update_account(
                target_id, conn, max_role=ctx.actor.role, account_role=ctx.requested_role
            ):
                self._refuse_write(conn, ctx)
            updated = self.store.get_account(target_id, conn)
        logger.info(
            "Account %d role %s -> %s by account %d",
            target_id,
            role_name(ctx.target_role),
            role_name(ctx.requested_role),
            ctx.actor.account_id,
        )
        return OperationResult.ok(
            "Role updated successfully.",
            data={
                "account_id": updated.id,
                "username": updated.username,
                "email": updated.email,
                "new_role": int(updated.role),
                "role_name": role_name(updated.role),
            },
        )

    def update_account(self, claims: Optional[Claims], target_id: int, **fields: Any) -> OperationResult:
        """Admin edit of identity and status fields.

        Roles change only through change_role(); deletion only through
        delete_account(). A new email or phone clears its verified flag unless
        the flag is set explicitly in the same call.
        """
        if not fields:
            raise InvalidInputError("No fields to update.")
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise InvalidInputError(f"Fields cannot be updated here: {', '.join(sorted(unknown))}.")
        values = dict(fields)
        if "status" in values:
            status = values.pop("status")
            valid = {s.value for s in AccountStatus} - {AccountStatus.deleted.value}
            if status not in valid:
                raise InvalidInputError(f"Status must be one of: {', '.join(sorted(valid))}.")
            values["account_status"] = status

        with self._target_mutation(claims, target_id, Role.MODERATOR) as (conn, ctx, target):
            if "email" in values and values["email"] != target.email:
                values.setdefault("email_verified", False)
            if "phone" in values and values["phone"] != target.phone:
                values.setdefault("phone_verified", False)
            if not self.store.update_account(target_id, conn, max_role=ctx.actor.role, **values):
                self._refuse_write(conn, ctx)
            updated = self.store.get_account(target_id, conn)
        logger.info("Account %d updated by account %d (%s)", target_id, ctx.actor.account_id, ", ".join(sorted(fields)))
        return OperationResult.ok("User updated successfully.", data=account_summary(updated))

    def delete_account(self, claims: Optional[Claims], target_id: int) -> OperationResult:
        """Soft delete: the row stays, status becomes "deleted"."""
        with self._target_mutation(claims, target_id, Role.MODERATOR) as (conn, ctx, _target):
            if not self.store.mark_deleted(target_id, conn, max_role=ctx.actor.role):
                self._refuse_write(conn, ctx)
            deleted = self.store.get_account(target_id, conn)
        logger.info("Account %d deleted by account %d", target_id, ctx.actor.account_id)
        return OperationResult.ok(
            "User deleted successfully.",
            data={"account_id": deleted.id, "username": deleted.username, "email": deleted.email},
        )

    def admin_reset_password(self, claims: Optional[Claims], target_id: int, new_password: str) -> OperationResult:
        """Admin override of another account's password. Requires Admin or above."""
        salt, digest = hash_password(new_password)
        with self._target_mutation(claims, target_id, Role.ADMIN) as (conn, ctx, _target):
            if not self.store.update_account(target_id, conn, max_role=ctx.actor.role):
                self._refuse_write(conn, ctx)
            self.store.replace_credential(Credential(account_id=target_id, salted_hash=digest, salt=salt), conn)
        logger.info("Password for account %d reset by account %d", target_id, ctx.actor.account_id)
        return OperationResult.ok("Password reset successfully.")
