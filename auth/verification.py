"""
auth/verification.py -- Lifecycle of out-of-band verification artifacts.

Three single-use artifacts, each with its own small state machine:

  Email token     Issued -> Verified | Expired
  SMS code        Issued -> Verified | Locked (attempts exhausted) | Expired
  Password reset  Issued -> Used | Expired

Expired is never written as a state. It is computed at read time from
expires_at. Issuing a new artifact supersedes older pending ones by moving
their expiry to "now", which keeps the rows for audit while guaranteeing at
most one live artifact per account.

Consistency rules:
  - Lookup, checks, and consumption run in one store transaction; the
    consuming UPDATE is conditional (verified = 0 / used = 0) so two
    concurrent confirms cannot both succeed.
  - Consuming an email token or SMS code and flipping the account's
    *_verified flag happen in the same transaction.
  - A wrong SMS code increments attempts and the transaction COMMITS before
    IncorrectCodeError is raised. Raising inside the transaction would roll
    the increment back and hand an attacker free guesses.
  - Attempts are checked before the code is compared, and the increment
    itself is capped in SQL: a failure that finds the counter already at
    the ceiling raises AttemptsExhaustedError, never IncorrectCodeError.

Delivery happens after commit. A failed hand-off is reported as
delivered=False; the artifact stays valid.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from auth.credentials import hash_password
from auth.models import Credential, EmailVerification, PasswordReset, PhoneVerification
from auth.store import AccountStore
from core.config import Settings
from core.errors import (
    AlreadyVerifiedError,
    AttemptsExhaustedError,
    ExpiredError,
    IncorrectCodeError,
    InvalidInputError,
    NotFoundError,
)
from core.results import OperationResult
from notify.gateways import sms_destination
from notify.senders import NotificationSender

logger = logging.getLogger("keyward.verification")

CODE_DIGITS = 6


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_email_token() -> str:
    """Opaque URL-safe token, 256 bits of entropy."""
    return secrets.token_urlsafe(32)


def generate_phone_code() -> str:
    """Uniform 6-digit code. Leading zeros are kept: 000042 is a valid code."""
    return f"{secrets.randbelow(10**CODE_DIGITS):0{CODE_DIGITS}d}"


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class VerificationManager:
    """Issue, confirm, and expire email tokens, SMS codes, and password-reset tokens.

    Usage:
        manager = VerificationManager(store, build_sender(settings), settings)
        manager.send_email_verification(account_id)
        manager.confirm_email(token)
    """

    def __init__(
        self,
        store: AccountStore,
        sender: NotificationSender,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.sender = sender
        self.settings = settings
        self._clock = clock or _utcnow
        self.email_ttl = timedelta(hours=settings.email_token_ttl_hours)
        self.phone_ttl = timedelta(minutes=settings.phone_code_ttl_minutes)
        self.reset_ttl = timedelta(minutes=settings.password_reset_ttl_minutes)
        self.max_attempts = settings.phone_max_attempts

    def _deliver(self, destination: str, payload: dict[str, Any]) -> bool:
        delivered = self.sender.send(destination, payload)
        if not delivered:
            logger.warning("Delivery of %s notification failed; issued artifact remains valid", payload["channel"])
        return delivered

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------

    def send_email_verification(self, account_id: int, email: Optional[str] = None) -> OperationResult:
        """Issue a fresh email token for the account and hand it to the sender.

        email defaults to the account's current address; any other address is
        rejected so a token can only ever vouch for the email on record.
        """
        now = self._clock()
        with self.store.transaction() as conn:
            account = self.store.get_account(account_id, conn, for_update=True)
            if account is None or account.is_deleted:
                raise NotFoundError("User not found.")
            address = email or account.email
            if address != account.email:
                raise InvalidInputError("Email does not match the account.")
            if account.email_verified:
                raise AlreadyVerifiedError("Email is already verified.")
            superseded = self.store.expire_pending_email_verifications(account_id, now, conn)
            record = EmailVerification(
                account_id=account_id,
                email=address,
                token=generate_email_token(),
                expires_at=now + self.email_ttl,
                created_at=now,
            )
            record.id = self.store.insert_email_verification(record, conn)

        logger.info(
            "Email verification %d issued for account %d (%d superseded)", record.id, account_id, superseded
        )
        link = f"{self.settings.verify_url_base}?token={record.token}"
        delivered = self._deliver(
            address,
            {
                "channel": "email",
                "subject": "Verify your email address",
                "body": f"Confirm your email address by visiting {link} within {self.settings.email_token_ttl_hours} hours.",
                "token": record.token,
            },
        )
        return OperationResult.ok(
            "Verification email sent." if delivered else "Verification issued but the email could not be sent.",
            data={
                "verification_id": record.id,
                "expires_at": record.expires_at.isoformat(),
                "delivered": delivered,
            },
        )

    def confirm_email(self, token: str) -> OperationResult:
        """Consume an email token and mark the owning account's email verified."""
        now = self._clock()
        with self.store.transaction() as conn:
            record = self.store.get_email_verification_by_token(token, conn, for_update=True)
            if record is None:
                raise NotFoundError("Verification token not found.")
            if record.verified:
                raise AlreadyVerifiedError("Email has already been verified with this token.")
            if now >= record.expires_at:
                raise ExpiredError("Verification token has expired.")
            account = self.store.get_account(record.account_id, conn, for_update=True)
            if account is None or account.is_deleted:
                raise NotFoundError("User not found.")
            if account.email != record.email:
                raise ExpiredError("Verification token no longer matches the account email.")
            if not self.store.consume_email_verification(record.id, now, conn):
                raise AlreadyVerifiedError("Email has already been verified with this token.")
            self.store.update_account(account.id, conn, email_verified=True)

        logger.info("Email verified for account %d", account.id)
        return OperationResult.ok(
            "Email verified successfully.",
            data={"account_id": account.id, "email": record.email},
        )

    # ------------------------------------------------------------------
    # Phone
    # ------------------------------------------------------------------

    def send_phone_code(
        self,
        account_id: int,
        carrier: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> OperationResult:
        """Issue a 6-digit SMS code, superseding any pending one for the account."""
        now = self._clock()
        with self.store.transaction() as conn:
            account = self.store.get_account(account_id, conn, for_update=True)
            if account is None or account.is_deleted:
                raise NotFoundError("User not found.")
            number = phone or account.phone
            if not number:
                raise InvalidInputError("No phone number on the account.")
            if number != account.phone:
                raise InvalidInputError("Phone number does not match the account.")
            if account.phone_verified:
                raise AlreadyVerifiedError("Phone is already verified.")
            destination = sms_destination(number, carrier)
            self.store.expire_pending_phone_verifications(account_id, now, conn)
            record = PhoneVerification(
                account_id=account_id,
                phone=number,
                code=generate_phone_code(),
                expires_at=now + self.phone_ttl,
                created_at=now,
            )
            record.id = self.store.insert_phone_verification(record, conn)

        logger.info("Phone verification %d issued for account %d", record.id, account_id)
        delivered = self._deliver(
            destination,
            {
                "channel": "sms",
                "subject": "Verification code",
                "body": f"Your verification code is {record.code}. "
                f"It expires in {self.settings.phone_code_ttl_minutes} minutes.",
                "code": record.code,
            },
        )
        return OperationResult.ok(
            "Verification code sent." if delivered else "Verification code issued but could not be sent.",
            data={
                "verification_id": record.id,
                "expires_at": record.expires_at.isoformat(),
                "delivered": delivered,
            },
        )

    def verify_phone_code(self, account_id: int, code: str) -> OperationResult:
        """Check an SMS code against the account's pending record.

        Raises NotFoundError, ExpiredError, AttemptsExhaustedError (in that
        order of precedence), or IncorrectCodeError after a durable attempt
        increment.
        """
        now = self._clock()
        attempts_used: Optional[int] = None
        with self.store.transaction() as conn:
            record = self.store.get_latest_phone_verification(account_id, conn, for_update=True)
            if record is None or record.verified:
                raise NotFoundError("No pending verification code.")
            if now >= record.expires_at:
                raise ExpiredError("Verification code has expired.")
            if record.attempts >= self.max_attempts:
                raise AttemptsExhaustedError()
            if not hmac.compare_digest(record.code.encode("utf-8"), str(code).encode("utf-8")):
                if not self.store.increment_phone_attempts(record.id, self.max_attempts, conn):
                    raise AttemptsExhaustedError()
                attempts_used = record.attempts + 1
            else:
                account = self.store.get_account(account_id, conn, for_update=True)
                if account is None or account.is_deleted:
                    raise NotFoundError("User not found.")
                if account.phone != record.phone:
                    raise ExpiredError("Verification code no longer matches the account phone.")
                if not self.store.consume_phone_verification(record.id, self.max_attempts, now, conn):
                    raise AttemptsExhaustedError()
                self.store.update_account(account_id, conn, phone_verified=True)

        # The increment is committed at this point.
        if attempts_used is not None:
            logger.info("Incorrect code for account %d (attempt %d/%d)", account_id, attempts_used, self.max_attempts)
            raise IncorrectCodeError(details={"attempts_remaining": max(self.max_attempts - attempts_used, 0)})

        logger.info("Phone verified for account %d", account_id)
        return OperationResult.ok("Phone verified successfully.", data={"account_id": account_id})

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> OperationResult:
        """Issue a reset token for a verified email.

        The result is identical whether or not the address belongs to an
        eligible account, so the response cannot be used to enumerate users.
        """
        generic = OperationResult.ok("If the email is registered and verified, a reset link has been sent.")
        now = self._clock()
        token = generate_email_token()
        with self.store.transaction() as conn:
            account = self.store.get_account_by_email(email, conn)
            if account is None or account.is_deleted or not account.email_verified:
                logger.info("Password reset requested for an ineligible address")
                return generic
            self.store.expire_pending_password_resets(account.id, now, conn)
            record = PasswordReset(
                account_id=account.id,
                token_hash=hash_reset_token(token),
                expires_at=now + self.reset_ttl,
                created_at=now,
            )
            record.id = self.store.insert_password_reset(record, conn)

        logger.info("Password reset %d issued for account %d", record.id, account.id)
        self._deliver(
            account.email,
            {
                "channel": "email",
                "subject": "Reset your password",
                "body": f"Use this token to reset your password within "
                f"{self.settings.password_reset_ttl_minutes} minutes: {token}",
                "token": token,
            },
        )
        return generic

    def reset_password(self, token: str, new_password: str) -> OperationResult:
        """Consume a reset token and replace the account's credential in one transaction."""
        now = self._clock()
        # Hash outside the transaction; bcrypt is deliberately slow and row locks should not wait on it.
        salt, digest = hash_password(new_password)
        with self.store.transaction() as conn:
            record = self.store.get_password_reset_by_hash(hash_reset_token(token), conn, for_update=True)
            if record is None:
                raise NotFoundError("Reset token not found.")
            if record.used:
                raise AlreadyVerifiedError("Reset token has already been used.")
            if now >= record.expires_at:
                raise ExpiredError("Reset token has expired.")
            account = self.store.get_account(record.account_id, conn, for_update=True)
            if account is None or account.is_deleted:
                raise NotFoundError("User not found.")
            if not self.store.consume_password_reset(record.id, now, conn):
                raise AlreadyVerifiedError("Reset token has already been used.")
            self.store.replace_credential(Credential(account_id=account.id, salted_hash=digest, salt=salt), conn)

        logger.info("Password reset completed for account %d", account.id)
        return OperationResult.ok("Password reset successfully.")
