from datetime import timedelta
import uuid

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from verify_service.errors import PersistenceError, Timeout
from verify_service.models import Profile, Purpose, VerificationToken
from verify_service.security import hash_token
from verify_service.services.profiles import ProfileStore
from verify_service.services.token_store import TokenStore, translate_store_errors


async def _profile(session, email="u1@x.com") -> Profile:
    profile = Profile(id=uuid.uuid4(), email=email)
    session.add(profile)
    await session.flush()
    return profile


def _token(subject_id, issued_at, ttl=3600, purpose=Purpose.EMAIL_VERIFICATION):
    return VerificationToken(
        subject_id=subject_id,
        token_hash=hash_token(str(uuid.uuid4())),
        purpose=purpose.value,
        issued_at=issued_at,
        expires_at=issued_at + timedelta(seconds=ttl),
        max_attempts=3,
    )


@pytest.mark.asyncio
async def test_insert_and_find_by_hash(db_session, clock):
    store = TokenStore(db_session)
    profile = await _profile(db_session)
    row = _token(profile.id, clock())

    token_id = await store.insert(row)
    await db_session.commit()

    found = await store.find_by_hash(row.token_hash)
    assert found is not None
    assert found.id == token_id
    assert found.used_at is None
    assert found.attempts == 0
    assert found.expires_at.tzinfo is not None
    assert await store.find_by_hash("0" * 64) is None


@pytest.mark.asyncio
async def test_invalidate_prior_unused_supersedes_only_live_tokens_of_purpose(
    db_session, clock
):
    store = TokenStore(db_session)
    profile = await _profile(db_session)
    now = clock()
    live = _token(profile.id, now - timedelta(minutes=5))
    expired = _token(profile.id, now - timedelta(hours=2))
    reset = _token(profile.id, now, purpose=Purpose.PASSWORD_RESET)
    for row in (live, expired, reset):
        await store.insert(row)

    count = await store.invalidate_prior_unused(
        profile.id, Purpose.EMAIL_VERIFICATION, now
    )
    await db_session.commit()

    assert count == 1
    assert (await store.find_by_hash(live.token_hash)).used_reason == "superseded"
    assert (await store.find_by_hash(expired.token_hash)).used_at is None
    assert (await store.find_by_hash(reset.token_hash)).used_at is None


@pytest.mark.asyncio
async def test_mark_used_atomically_succeeds_once(db_session, clock):
    store = TokenStore(db_session)
    profile = await _profile(db_session)
    row = _token(profile.id, clock())
    await store.insert(row)

    assert await store.mark_used_atomically(row.id, at=clock()) is True
    assert await store.mark_used_atomically(row.id, at=clock()) is False
    await db_session.commit()

    stored = await store.find_by_hash(row.token_hash)
    assert stored.used_at == clock()
    assert stored.used_reason == "redeemed"


@pytest.mark.asyncio
async def test_mark_used_atomically_honours_expected_used_at(db_session, clock):
    store = TokenStore(db_session)
    profile = await _profile(db_session)
    row = _token(profile.id, clock())
    await store.insert(row)
    first = clock()
    await store.mark_used_atomically(row.id, at=first)

    clock.advance(5)
    stale = first - timedelta(seconds=1)
    assert not await store.mark_used_atomically(row.id, at=clock(), expected_used_at=stale)
    assert await store.mark_used_atomically(row.id, at=clock(), expected_used_at=first)


@pytest.mark.asyncio
async def test_record_attempt_counts_until_token_used(db_session, clock):
    store = TokenStore(db_session)
    profile = await _profile(db_session)
    row = _token(profile.id, clock())
    await store.insert(row)

    assert await store.record_attempt(row.id) == 1
    assert await store.record_attempt(row.id) == 2
    await store.mark_used_atomically(row.id, at=clock())
    assert await store.record_attempt(row.id) is None
    assert await store.record_attempt(uuid.uuid4()) is None


@pytest.mark.asyncio
async def test_find_latest_pending_ignores_used_and_expired(db_session, clock):
    store = TokenStore(db_session)
    profile = await _profile(db_session)
    now = clock()
    older = _token(profile.id, now - timedelta(minutes=10))
    newer = _token(profile.id, now - timedelta(minutes=1))
    for row in (older, newer):
        await store.insert(row)

    assert (await store.find_latest_pending(profile.id, Purpose.EMAIL_VERIFICATION, now)).id == newer.id

    await store.mark_used_atomically(newer.id, at=now)
    assert (await store.find_latest_pending(profile.id, Purpose.EMAIL_VERIFICATION, now)).id == older.id

    later = now + timedelta(hours=1)
    assert await store.find_latest_pending(profile.id, Purpose.EMAIL_VERIFICATION, later) is None


@pytest.mark.asyncio
async def test_sweep_expired_deletes_only_unused_expired_rows(db_session, clock):
    store = TokenStore(db_session)
    profile = await _profile(db_session)
    now = clock()
    expired_unused = _token(profile.id, now - timedelta(hours=3))
    expired_used = _token(profile.id, now - timedelta(hours=3))
    live = _token(profile.id, now)
    for row in (expired_unused, expired_used, live):
        await store.insert(row)
    await store.mark_used_atomically(expired_used.id, at=now - timedelta(hours=2, minutes=30))

    assert await store.sweep_expired(older_than=now) == 1
    await db_session.commit()

    remaining = set((await db_session.execute(select(VerificationToken.id))).scalars())
    assert remaining == {expired_used.id, live.id}
    assert await store.count_pending(now) == 1


@pytest.mark.asyncio
async def test_duplicate_hash_surfaces_as_persistence_error(db_session, clock):
    store = TokenStore(db_session)
    profile = await _profile(db_session)
    first = _token(profile.id, clock())
    await store.insert(first)

    duplicate = _token(profile.id, clock())
    duplicate.token_hash = first.token_hash
    with pytest.raises(PersistenceError):
        await store.insert(duplicate)


@pytest.mark.asyncio
async def test_store_errors_translate_timeouts():
    with pytest.raises(Timeout):
        async with translate_store_errors("lookup"):
            raise TimeoutError()

    with pytest.raises(Timeout):
        async with translate_store_errors("lookup"):
            raise OperationalError("SELECT 1", {}, TimeoutError("statement timeout"))

    with pytest.raises(PersistenceError):
        async with translate_store_errors("lookup"):
            raise IntegrityError("INSERT", {}, Exception("unique violation"))


@pytest.mark.asyncio
async def test_mark_verified_sets_all_three_fields_once(db_session, clock):
    profiles = ProfileStore(db_session)
    profile = await profiles.get_or_create(uuid.uuid4(), "U1@X.com")
    await db_session.commit()
    assert profile.email == "u1@x.com"

    token_id = uuid.uuid4()
    assert await profiles.mark_verified(profile.id, clock(), "email_verification", token_id)
    assert not await profiles.mark_verified(profile.id, clock(), "email_verification", token_id)
    await db_session.commit()

    stored = await profiles.get(profile.id)
    assert stored.verified is True
    assert stored.verified_at == clock()
    assert stored.verification_method == "email_verification"
    assert stored.last_verification_token_id == token_id
    assert (await profiles.get_by_email("u1@X.COM")).id == profile.id


@pytest.mark.asyncio
async def test_profile_check_constraint_rejects_half_verified_rows(db_session):
    db_session.add(Profile(id=uuid.uuid4(), email="half@x.com", verified=True))
    with pytest.raises(IntegrityError):
        await db_session.flush()
