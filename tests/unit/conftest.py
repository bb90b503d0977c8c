from __future__ import annotations

import uuid

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from tests.unit.fakes import SigningKey


@pytest.fixture(scope="session")
def signing_key() -> SigningKey:
    return SigningKey(
        kid=f"ins_{uuid.uuid4().hex[:12]}",
        private_key=rsa.generate_private_key(public_exponent=65537, key_size=2048),
    )


@pytest.fixture(scope="session")
def other_signing_key() -> SigningKey:
    return SigningKey(
        kid="ins_rotated",
        private_key=rsa.generate_private_key(public_exponent=65537, key_size=2048),
    )
