"""
auth/credentials.py -- Salted password hashing and constant-time verification.

Security design decisions:
  bcrypt, used directly (no passlib wrapper). The salt comes from
  bcrypt.gensalt() and is stored in its own column next to the digest, so a
  credential is always the (salt, digest) pair. hashpw() is deterministic for
  a given (password, salt), which is what verify_password() relies on.

  bcrypt only reads the first 72 bytes of input and current releases reject
  longer inputs outright. Passwords over that limit (or containing NUL) are
  pre-hashed with SHA-256 and base64-encoded (44 bytes) before bcrypt sees
  them, so long passphrases are neither truncated nor refused.

  verify_password() recomputes the digest and compares with
  hmac.compare_digest -- a plain == leaks how many leading bytes matched.

  DUMMY_CREDENTIAL enables timing equalization in AccountService.authenticate():
  the hash always runs, whether or not the account exists.

Layer rule: pure functions, no store access, no logging of inputs.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging

import bcrypt

from core.errors import FatalError

logger = logging.getLogger("keyward.auth")

BCRYPT_ROUNDS = 12
_BCRYPT_MAX_BYTES = 72


def _prepare(password: str) -> bytes:
    raw = password.encode("utf-8")
    if len(raw) > _BCRYPT_MAX_BYTES or b"\x00" in raw:
        return base64.b64encode(hashlib.sha256(raw).digest())
    return raw


def hash_password(password: str) -> tuple[str, str]:
    """Return (salt, digest) for a plaintext password. A fresh salt is drawn on every call.

    Raises FatalError if bcrypt itself fails -- there is no safe fallback.
    """
    try:
        salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
        digest = bcrypt.hashpw(_prepare(password), salt)
    except (ValueError, TypeError) as exc:
        raise FatalError("Password hashing failed.") from exc
    return salt.decode("ascii"), digest.decode("ascii")


def verify_password(password: str, salt: str, digest: str) -> bool:
    """Return True if password hashes to digest under salt.

    A malformed stored salt or digest is reported as a mismatch and logged;
    the caller only ever sees a boolean.
    """
    try:
        candidate = bcrypt.hashpw(_prepare(password), salt.encode("ascii"))
        expected = digest.encode("ascii")
    except (ValueError, TypeError, UnicodeEncodeError):
        logger.error("Stored credential is malformed; treating as mismatch")
        return False
    return hmac.compare_digest(candidate, expected)


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
DUMMY_CREDENTIAL: tuple[str, str] = hash_password("keyward_timing_dummy")
