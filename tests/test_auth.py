import time

import jwt
import pytest

from sayso.auth import (
    Authenticator,
    InvalidToken,
    TokenSigner,
    check_password,
    hash_password,
)
from sayso.oauth import GOOGLE_PASSWORD_PLACEHOLDER


def test_password_hash_round_trip():
    hashed = hash_password("password123")
    assert hashed != "password123"
    assert check_password("password123", hashed)
    assert not check_password("wrongpassword", hashed)


def test_check_password_rejects_google_placeholder():
    assert not check_password("google", GOOGLE_PASSWORD_PLACEHOLDER)


async def test_authenticate(db):
    await db.add_user("test@example.com", hash_password("password123"), username="tester")
    authenticator = Authenticator(db)

    user, reason = await authenticator.authenticate("  Test@Example.com ", "password123")
    assert reason is None
    assert user["email"] == "test@example.com"

    user, reason = await authenticator.authenticate("test@example.com", "wrongpassword")
    assert user is None
    assert reason == "Incorrect password"

    user, reason = await authenticator.authenticate("nonexistent@example.com", "password123")
    assert user is None
    assert reason == "User not found"



class TestTokenSigner:

    def test_issue_and_verify(self, tokens):
        before = int(time.time())
        claims = tokens.verify(tokens.issue("user-1"))
        assert claims["sub"] == "user-1"
        assert before + 3600 <= claims["exp"] <= int(time.time()) + 3600

    def test_tokens_are_standard_hs256_jwts(self, tokens, token_secret):
        token = tokens.issue("user-1")
        assert jwt.get_unverified_header(token)["alg"] == "HS256"
        claims = jwt.decode(token, token_secret, algorithms=["HS256"])
        assert claims["sub"] == "user-1"

    def test_expired(self, tokens):
        token = tokens.issue("user-1", now=time.time() - 7200)
        with pytest.raises(InvalidToken, match="expired"):
            tokens.verify(token)

    def test_other_secret_is_rejected(self, tokens):
        forged = TokenSigner("another-secret-that-is-also-long-enough", 3600).issue("user-1")
        with pytest.raises(InvalidToken, match="Invalid token"):
            tokens.verify(forged)

    def test_tampered_claims_are_rejected(self, tokens):
        header, body, signature = tokens.issue("user-1", now=1_900_000_000).split(".")
        _, other_body, _ = tokens.issue("admin", now=1_900_000_000).split(".")
        assert body != other_body
        with pytest.raises(InvalidToken):
            tokens.verify(f"{header}.{other_body}.{signature}")

    def test_unsigned_token_is_rejected(self, tokens):
        unsigned = jwt.encode({"sub": "user-1", "exp": int(time.time()) + 60}, None, algorithm="none")
        with pytest.raises(InvalidToken):
            tokens.verify(unsigned)

    def test_token_without_subject_is_rejected(self, tokens, token_secret):
        token = jwt.encode({"exp": int(time.time()) + 60}, token_secret, algorithm="HS256")
        with pytest.raises(InvalidToken):
            tokens.verify(token)

    @pytest.mark.parametrize("token", ["", "abc", "a.b.c", "!!!.???", "é.é"])
    def test_garbage_is_rejected(self, tokens, token):
        with pytest.raises(InvalidToken):
            tokens.verify(token)

    @pytest.mark.parametrize("token", [None, 5, 1.5, True, ["a.b.c"], {"sub": "user-1"}])
    def test_non_string_values_are_rejected(self, tokens, token):
        with pytest.raises(InvalidToken, match="Invalid token"):
            tokens.verify(token)
