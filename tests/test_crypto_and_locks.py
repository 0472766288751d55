"""Tests for secret encryption and the per-router advisory lock."""

import time

import pytest
from cryptography.fernet import Fernet

from routerprov.crypto import SecretBox, derive_key
from routerprov.errors import RouterBusy
from routerprov.locks import router_lock


class TestSecretBox:
    """Encryption of stored secrets."""

    def test_round_trip(self):
        box = SecretBox(Fernet.generate_key().decode())
        token = box.encrypt("hunter2")
        assert token != "hunter2"
        assert box.decrypt(token) == "hunter2"

    def test_passphrase_is_stretched_deterministically(self):
        assert derive_key("correct horse") == derive_key("correct horse")
        token = SecretBox("correct horse").encrypt("x")
        assert SecretBox("correct horse").decrypt(token) == "x"

    def test_fernet_key_used_as_is(self):
        key = Fernet.generate_key().decode()
        assert derive_key(key) == key.encode()

    def test_wrong_key(self):
        token = SecretBox("one").encrypt("x")
        with pytest.raises(ValueError, match="could not be decrypted"):
            SecretBox("two").decrypt(token)

    def test_missing_key(self):
        with pytest.raises(ValueError, match="No secret key"):
            SecretBox("")


class TestRouterLock:
    """Advisory locking."""

    @pytest.mark.asyncio
    async def test_second_holder_is_refused(self, db):
        async with router_lock(db, "r1", "worker-a"):
            with pytest.raises(RouterBusy, match="worker-a"):
                async with router_lock(db, "r1", "worker-b"):
                    pass

    @pytest.mark.asyncio
    async def test_released_after_block(self, db):
        async with router_lock(db, "r1", "worker-a"):
            pass
        async with router_lock(db, "r1", "worker-b"):
            assert await db.get_lock_owner("r1") == "worker-b"
        assert await db.get_lock_owner("r1") is None

    @pytest.mark.asyncio
    async def test_released_on_error(self, db):
        with pytest.raises(RuntimeError):
            async with router_lock(db, "r1", "worker-a"):
                raise RuntimeError("boom")
        assert await db.get_lock_owner("r1") is None

    @pytest.mark.asyncio
    async def test_locks_are_per_router(self, db):
        async with router_lock(db, "r1", "worker-a"):
            async with router_lock(db, "r2", "worker-b"):
                assert await db.get_lock_owner("r1") == "worker-a"

    @pytest.mark.asyncio
    async def test_expired_lock_taken_over(self, db):
        assert await db.try_acquire_lock("r1", "stale-token", "crashed-worker", ttl=60,
                                         now=time.time() - 120)

        async with router_lock(db, "r1", "worker-b"):
            assert await db.get_lock_owner("r1") == "worker-b"

        assert not await db.release_lock("r1", "stale-token")
