from __future__ import annotations

import allure
import pytest

from lease_queue.leases import LeaseAuthority
from lease_queue.queue.errors import (
    ErrorStatus,
    LeaseExpiredError,
    LeaseNotFoundError,
    QueueValidationError,
)

pytestmark = [
    allure.epic("Queue"),
    allure.feature("Lease Authority"),
]


def test_create_issues_64_char_token_expiring_after_lifetime(database, clock) -> None:
    authority = LeaseAuthority(database)

    lease = authority.create(owner_id="tester", lifetime_seconds=90)

    assert len(lease.token) == 64
    assert int(lease.token, 16) >= 0
    assert lease.owner_id == "tester"
    assert (lease.expires_at - clock()).total_seconds() == 90
    assert authority.expires_at(lease.token) == lease.expires_at


def test_create_rejects_non_positive_lifetime(database) -> None:
    with pytest.raises(QueueValidationError, match="lifetime"):
        LeaseAuthority(database).create(owner_id="tester", lifetime_seconds=0)


def test_load_touches_by_default(database, clock) -> None:
    authority = LeaseAuthority(database)
    lease = authority.create(owner_id="tester", lifetime_seconds=60)
    clock.advance(seconds=30)

    untouched = authority.load(lease.token, touch=False)
    touched = authority.load(lease.token)

    assert untouched.expires_at == lease.expires_at
    assert (touched.expires_at - clock()).total_seconds() == 60
    assert authority.expires_at(lease.token) == touched.expires_at


def test_load_missing_and_expired_leases(database, clock) -> None:
    authority = LeaseAuthority(database)
    lease = authority.create(owner_id="tester", lifetime_seconds=10)

    with pytest.raises(LeaseNotFoundError) as missing:
        authority.load("0" * 64)
    assert missing.value.status is ErrorStatus.OBJECT_DOES_NOT_EXIST

    clock.advance(seconds=10)
    with pytest.raises(LeaseExpiredError) as expired:
        authority.load(lease.token)
    assert expired.value.status is ErrorStatus.STATE_ERROR


def test_delete_expired_removes_only_past_leases(database, clock) -> None:
    authority = LeaseAuthority(database)
    short = authority.create(owner_id="tester", lifetime_seconds=10)
    long = authority.create(owner_id="tester", lifetime_seconds=100)
    clock.advance(seconds=11)

    assert authority.delete_expired() == 1
    assert authority.expires_at(short.token) is None
    assert authority.expires_at(long.token) is not None

    with pytest.raises(LeaseNotFoundError):
        authority.touch(short)


def test_lease_is_dead_at_its_exact_expiry(database, clock) -> None:
    authority = LeaseAuthority(database)
    lease = authority.create(owner_id="tester", lifetime_seconds=10)

    clock.advance(seconds=9)
    assert authority.delete_expired() == 0
    assert authority.load(lease.token, touch=False).expires_at == lease.expires_at

    clock.advance(seconds=1)
    assert authority.delete_expired() == 1
    assert authority.expires_at(lease.token) is None
