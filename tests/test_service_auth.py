import time

import jwt
import pytest

from fakes import identity, make_token
from service_auth import get_identity, has_role, is_owner_or_admin
from service_config import JWT_ALGORITHM, JWT_SECRET
from service_errors import Unauthenticated


@pytest.mark.parametrize("role,allowed,expected", [
    ("consumer", ["consumer"], True),
    ("vendor", ["consumer"], False),
    ("admin", ["consumer"], True),
    ("admin", [], True),
])
def test_has_role_treats_admin_as_superset(role, allowed, expected):
    assert has_role(identity("u-1", role), allowed) is expected


def test_ownership():
    assert is_owner_or_admin(identity("u-1", "consumer"), "u-1")
    assert not is_owner_or_admin(identity("u-1", "consumer"), "u-2")
    assert is_owner_or_admin(identity("a-1", "admin"), "u-2")


def test_identity_from_bearer_token():
    header = f"Bearer {make_token('u-1', 'vendor', 'shop@example.com')}"
    resolved = get_identity(header)

    assert (resolved.user_id, resolved.role, resolved.email) == ("u-1", "vendor", "shop@example.com")
    assert resolved.authorization == header


@pytest.mark.parametrize("header", [None, "", "Bearer ", "Bearer not-a-jwt"])
def test_missing_or_malformed_token(header):
    with pytest.raises(Unauthenticated):
        get_identity(header)


def test_expired_token():
    token = jwt.encode({"sub": "u-1", "role": "consumer", "exp": int(time.time()) - 60},
                       JWT_SECRET, algorithm=JWT_ALGORITHM)
    with pytest.raises(Unauthenticated):
        get_identity(f"Bearer {token}")


def test_token_without_role():
    token = jwt.encode({"sub": "u-1"}, JWT_SECRET, algorithm=JWT_ALGORITHM)
    with pytest.raises(Unauthenticated):
        get_identity(f"Bearer {token}")
