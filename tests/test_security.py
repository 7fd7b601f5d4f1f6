import hashlib
import hmac
import uuid

import pytest

from playledger.utils.security import generate_id, hash_ip_address


def test_hash_ip_address_is_deterministic_hmac_sha256():
    digest = hash_ip_address("203.0.113.45", "salt")

    assert digest == hash_ip_address("203.0.113.45", "salt")
    assert digest == hmac.new(b"salt", b"203.0.113.45", hashlib.sha256).hexdigest()
    assert len(digest) == 64


def test_hash_ip_address_depends_on_salt_and_address():
    assert hash_ip_address("203.0.113.45", "a") != hash_ip_address("203.0.113.45", "b")
    assert hash_ip_address("203.0.113.45", "a") != hash_ip_address("203.0.113.46", "a")


def test_hash_ip_address_requires_salt():
    with pytest.raises(ValueError):
        hash_ip_address("203.0.113.45", "")


def test_generate_id_returns_distinct_uuid4_strings():
    ids = {generate_id() for _ in range(100)}

    assert len(ids) == 100
    assert all(uuid.UUID(value).version == 4 for value in ids)
