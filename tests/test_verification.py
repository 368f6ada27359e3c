"""Tests for auth/verification.py -- email tokens, SMS codes, password resets.

Time is driven by the FakeClock fixture; nothing sleeps. Delivery goes to
RecordingSender, so tests read the issued token or code from the captured
payload exactly as the recipient would.

Covers:
- email: issue, confirm once, second confirm AlreadyVerified, 48h boundary,
  superseded tokens, address mismatch after an email change
- phone: correct code, wrong code burns an attempt durably, lockout after
  five failures even for the correct code, leading-zero codes, carrier gateways
- reset: enumeration-safe request, single use, expiry, new password works
- delivery failure leaves the artifact valid
- racing confirms: one email confirmation wins, parallel guesses stop at the ceiling
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from unittest.mock import patch

import pytest

from auth.models import Account
from auth.store import AccountStore
from auth.verification import VerificationManager, generate_phone_code, hash_reset_token
from core.errors import (
    AlreadyVerifiedError,
    AttemptsExhaustedError,
    ErrorKind,
    ExpiredError,
    IncorrectCodeError,
    InvalidInputError,
    KeywardError,
    NotFoundError,
)

PHONE = "+1 (555) 010-4477"


def _issue_email(manager, sender, account):
    manager.send_email_verification(account.id)
    return sender.last[1]["token"]


def _issue_code(manager, sender, account, carrier=None):
    manager.send_phone_code(account.id, carrier=carrier)
    return sender.last[1]["code"]


class TestGenerators:
    def test_phone_code_shape(self):
        for _ in range(50):
            code = generate_phone_code()
            assert len(code) == 6 and code.isdigit()

    def test_reset_hash_is_sha256_hex(self):
        digest = hash_reset_token("abc")
        assert len(digest) == 64
        assert digest == hash_reset_token("abc")


class TestEmailVerification:
    def test_send_hands_off_token(self, manager, sender, make_account):
        account = make_account("alice")
        result = manager.send_email_verification(account.id)
        destination, payload = sender.last
        assert result.success
        assert result.data["delivered"] is True
        assert destination == "alice@example.com"
        assert payload["channel"] == "email"
        assert payload["token"] in payload["body"]

    def test_confirm_marks_account_verified(self, manager, sender, store, make_account):
        account = make_account("bob")
        token = _issue_email(manager, sender, account)
        result = manager.confirm_email(token)
        assert result.success
        assert store.get_account(account.id).email_verified is True

    def test_second_confirm_is_already_verified(self, manager, sender, make_account):
        account = make_account("carol")
        token = _issue_email(manager, sender, account)
        manager.confirm_email(token)
        with pytest.raises(AlreadyVerifiedError):
            manager.confirm_email(token)

    def test_confirm_just_inside_window(self, manager, sender, clock, make_account):
        account = make_account("dave")
        token = _issue_email(manager, sender, account)
        clock.advance(hours=47, minutes=59)
        assert manager.confirm_email(token).success

    def test_confirm_after_window_is_expired(self, manager, sender, store, clock, make_account):
        account = make_account("erin")
        token = _issue_email(manager, sender, account)
        clock.advance(hours=48, minutes=1)
        with pytest.raises(ExpiredError):
            manager.confirm_email(token)
        assert store.get_account(account.id).email_verified is False

    def test_unknown_token(self, manager):
        with pytest.raises(NotFoundError):
            manager.confirm_email("no-such-token")

    def test_new_token_supersedes_old(self, manager, sender, clock, make_account):
        account = make_account("frank")
        old = _issue_email(manager, sender, account)
        clock.advance(minutes=5)
        new = _issue_email(manager, sender, account)
        with pytest.raises(ExpiredError):
            manager.confirm_email(old)
        assert manager.confirm_email(new).success

    def test_send_when_already_verified(self, manager, make_account):
        account = make_account("gina", email_verified=True)
        with pytest.raises(AlreadyVerifiedError):
            manager.send_email_verification(account.id)

    def test_send_for_other_address(self, manager, make_account):
        account = make_account("hank")
        with pytest.raises(InvalidInputError):
            manager.send_email_verification(account.id, email="someone-else@example.com")

    def test_send_for_missing_account(self, manager):
        with pytest.raises(NotFoundError):
            manager.send_email_verification(404)

    def test_token_for_old_address_after_change(self, manager, sender, store, make_account):
        account = make_account("ivy")
        token = _issue_email(manager, sender, account)
        store.update_account(account.id, email="ivy.new@example.com")
        with pytest.raises(ExpiredError):
            manager.confirm_email(token)

    def test_delivery_failure_keeps_token_valid(self, manager, sender, make_account):
        account = make_account("jack")
        sender.fail = True
        result = manager.send_email_verification(account.id)
        assert result.success
        assert result.data["delivered"] is False
        assert manager.confirm_email(sender.last[1]["token"]).success


class TestPhoneVerification:
    def test_correct_code_verifies(self, manager, sender, store, make_account):
        account = make_account("kate", phone=PHONE)
        code = _issue_code(manager, sender, account)
        assert sender.last[0] == PHONE
        assert manager.verify_phone_code(account.id, code).success
        assert store.get_account(account.id).phone_verified is True

    def test_wrong_code_burns_attempt_durably(self, manager, sender, store, make_account):
        account = make_account("liam", phone=PHONE)
        code = _issue_code(manager, sender, account)
        wrong = "000000" if code != "000000" else "111111"
        with pytest.raises(IncorrectCodeError) as exc_info:
            manager.verify_phone_code(account.id, wrong)
        assert exc_info.value.details == {"attempts_remaining": 4}
        # The increment survived the raise.
        assert store.get_latest_phone_verification(account.id).attempts == 1

    def test_lockout_after_max_attempts(self, manager, sender, store, make_account):
        account = make_account("mia", phone=PHONE)
        code = _issue_code(manager, sender, account)
        wrong = "000000" if code != "000000" else "111111"
        for remaining in (4, 3, 2, 1, 0):
            with pytest.raises(IncorrectCodeError) as exc_info:
                manager.verify_phone_code(account.id, wrong)
            assert exc_info.value.details["attempts_remaining"] == remaining
        with pytest.raises(AttemptsExhaustedError) as exc_info:
            manager.verify_phone_code(account.id, code)
        assert exc_info.value.kind is ErrorKind.attempts_exhausted
        assert store.get_account(account.id).phone_verified is False

    def test_new_code_after_lockout(self, manager, sender, make_account):
        account = make_account("noah", phone=PHONE)
        code = _issue_code(manager, sender, account)
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(5):
            with pytest.raises(IncorrectCodeError):
                manager.verify_phone_code(account.id, wrong)
        fresh = _issue_code(manager, sender, account)
        assert manager.verify_phone_code(account.id, fresh).success

    def test_failure_at_ceiling_on_stale_read_is_exhausted(self, manager, sender, store, make_account, monkeypatch):
        """A stale attempts count cannot buy an extra guess: the increment itself stops at the ceiling."""
        account = make_account("nina", phone=PHONE)
        code = _issue_code(manager, sender, account)
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(5):
            with pytest.raises(IncorrectCodeError):
                manager.verify_phone_code(account.id, wrong)

        real = store.get_latest_phone_verification

        def one_behind(*args, **kwargs):
            record = real(*args, **kwargs)
            return replace(record, attempts=record.attempts - 1)

        monkeypatch.setattr(store, "get_latest_phone_verification", one_behind)
        with pytest.raises(AttemptsExhaustedError):
            manager.verify_phone_code(account.id, wrong)
        assert real(account.id).attempts == 5

    def test_leading_zero_code(self, manager, sender, make_account):
        account = make_account("olga", phone=PHONE)
        with patch("auth.verification.secrets.randbelow", return_value=42):
            code = _issue_code(manager, sender, account)
        assert code == "000042"
        assert manager.verify_phone_code(account.id, "000042").success

    def test_expired_code(self, manager, sender, clock, make_account):
        account = make_account("paul", phone=PHONE)
        code = _issue_code(manager, sender, account)
        clock.advance(minutes=15)
        with pytest.raises(ExpiredError):
            manager.verify_phone_code(account.id, code)

    def test_superseded_code(self, manager, sender, make_account):
        account = make_account("quinn", phone=PHONE)
        with patch("auth.verification.secrets.randbelow", side_effect=[111111, 222222]):
            old = _issue_code(manager, sender, account)
            _issue_code(manager, sender, account)
        with pytest.raises(IncorrectCodeError):
            manager.verify_phone_code(account.id, old)

    def test_no_pending_code(self, manager, make_account):
        account = make_account("rosa", phone=PHONE)
        with pytest.raises(NotFoundError):
            manager.verify_phone_code(account.id, "123456")

    def test_code_is_single_use(self, manager, sender, make_account):
        account = make_account("sam", phone=PHONE)
        code = _issue_code(manager, sender, account)
        manager.verify_phone_code(account.id, code)
        with pytest.raises(NotFoundError):
            manager.verify_phone_code(account.id, code)

    def test_carrier_gateway_destination(self, manager, sender, make_account):
        account = make_account("tina", phone=PHONE)
        _issue_code(manager, sender, account, carrier="verizon")
        assert sender.last[0] == "5550104477@vtext.com"
        assert sender.last[1]["channel"] == "sms"

    def test_unknown_carrier(self, manager, sender, make_account):
        account = make_account("uma", phone=PHONE)
        with pytest.raises(InvalidInputError):
            manager.send_phone_code(account.id, carrier="pigeon")
        assert sender.sent == []

    def test_no_phone_on_account(self, manager, make_account):
        account = make_account("vic")
        with pytest.raises(InvalidInputError):
            manager.send_phone_code(account.id)

    def test_phone_mismatch(self, manager, make_account):
        account = make_account("walt", phone=PHONE)
        with pytest.raises(InvalidInputError):
            manager.send_phone_code(account.id, phone="+15559999999")


class TestPasswordReset:
    def test_full_flow(self, manager, sender, service, make_account):
        make_account("xena", email_verified=True, password="old-password")
        result = manager.request_password_reset("xena@example.com")
        assert result.success
        token = sender.last[1]["token"]
        assert manager.reset_password(token, "brand-new-password").success
        assert service.login("xena@example.com", "brand-new-password").success

    def test_token_single_use(self, manager, sender, make_account):
        make_account("yuri", email_verified=True)
        manager.request_password_reset("yuri@example.com")
        token = sender.last[1]["token"]
        manager.reset_password(token, "first-new-password")
        with pytest.raises(AlreadyVerifiedError):
            manager.reset_password(token, "second-new-password")

    def test_expired_token(self, manager, sender, clock, make_account):
        make_account("zoe", email_verified=True)
        manager.request_password_reset("zoe@example.com")
        clock.advance(minutes=61)
        with pytest.raises(ExpiredError):
            manager.reset_password(sender.last[1]["token"], "too-late-password")

    def test_same_response_for_unknown_and_unverified(self, manager, sender, make_account):
        make_account("amy")
        known = manager.request_password_reset("amy@example.com")
        unknown = manager.request_password_reset("ghost@example.com")
        assert known == unknown
        assert sender.sent == []

    def test_unknown_token(self, manager):
        with pytest.raises(NotFoundError):
            manager.reset_password("never-issued", "whatever-password")


class TestConcurrency:
    """Racing confirmations against a file-backed store, released together by a barrier."""

    @pytest.fixture
    def shared(self, tmp_path, settings, sender, clock):
        store = AccountStore(f"sqlite:///{tmp_path / 'verify.db'}", timeout_seconds=10.0)
        yield store, VerificationManager(store, sender, settings, clock=clock)
        store.close()

    @staticmethod
    def _account(store, username):
        account_id = store.insert_account(
            Account(firstname="Race", lastname="Tester", username=username, email=f"{username}@example.com", phone=PHONE)
        )
        return store.get_account(account_id)

    @staticmethod
    def _race(workers, call):
        barrier = threading.Barrier(workers)

        def run():
            barrier.wait()
            try:
                return call()
            except KeywardError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(run) for _ in range(workers)]
            return [future.result(timeout=30) for future in futures]

    def test_email_token_confirms_once(self, shared, sender):
        store, manager = shared
        account = self._account(store, "xena")
        token = _issue_email(manager, sender, account)

        outcomes = self._race(2, lambda: manager.confirm_email(token))

        assert sum(1 for o in outcomes if not isinstance(o, KeywardError) and o.success) == 1
        assert sum(1 for o in outcomes if isinstance(o, AlreadyVerifiedError)) == 1
        assert store.get_account(account.id).email_verified is True

    def test_parallel_wrong_guesses_stop_at_ceiling(self, shared, sender):
        store, manager = shared
        account = self._account(store, "yuri")
        with patch("auth.verification.secrets.randbelow", return_value=123456):
            _issue_code(manager, sender, account)

        outcomes = self._race(8, lambda: manager.verify_phone_code(account.id, "000000"))

        assert sum(1 for o in outcomes if isinstance(o, IncorrectCodeError)) == 5
        assert sum(1 for o in outcomes if isinstance(o, AttemptsExhaustedError)) == 3
        assert store.get_latest_phone_verification(account.id).attempts == 5
