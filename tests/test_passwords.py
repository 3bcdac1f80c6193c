from sessioncore.service.passwords import PasswordHasher


def _hasher(memory_cost=1024):
    return PasswordHasher(time_cost=1, memory_cost=memory_cost, parallelism=1)


def test_hash_is_argon2id_and_salted():
    hasher = _hasher()
    first = hasher.hash("s3cret-pass")
    second = hasher.hash("s3cret-pass")

    assert first.startswith("$argon2id$")
    assert first != second
    assert hasher.verify(first, "s3cret-pass")
    assert not hasher.verify(first, "wrong")


def test_garbage_hash_never_verifies():
    hasher = _hasher()
    assert not hasher.verify("not-a-hash", "anything")
    assert hasher.needs_rehash("not-a-hash")


def test_parameter_change_requires_rehash():
    old = _hasher(memory_cost=512).hash("pw")
    assert _hasher(memory_cost=1024).needs_rehash(old)
    assert not _hasher(memory_cost=512).needs_rehash(old)


def test_burn_accepts_any_password():
    _hasher().burn("whatever")
