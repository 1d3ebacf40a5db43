"""Unit tests for token issuing, verification, extraction and revocation."""

import pytest

from autovault.service.sessions import DENYLIST_PREFIX, SessionIssuer
from autovault.storage.expiring import MemoryExpiringStore
from autovault.storage.models import Account


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def denylist(clock):
    return MemoryExpiringStore(clock=clock)


@pytest.fixture
def issuer(clock, denylist):
    return SessionIssuer(
        secret="unit-secret",
        issuer="autovault",
        audience="autovault-web",
        denylist=denylist,
        clock=clock,
    )


@pytest.fixture
def account():
    return Account.new("dave", "Dave@Example.com", "hash")


class TestIssue:
    def test_claims(self, issuer, account):
        issued = issuer.issue(account)
        claims = issuer.verify(issued.token)
        assert claims["sub"] == account.id
        assert claims["email"] == "dave@example.com"
        assert claims["role"] == "normal"
        assert claims["jti"] == issued.jti
        assert claims["exp"] - claims["iat"] == 7 * 24 * 3600

    def test_each_token_has_unique_jti(self, issuer, account):
        assert issuer.issue(account).jti != issuer.issue(account).jti


class TestVerify:
    def test_tampered_signature(self, issuer, account):
        token = issuer.issue(account).token
        head, body, sig = token.split(".")
        assert issuer.verify(f"{head}.{body}.{sig[:-2]}xx") is None

    def test_other_secret(self, issuer, account, denylist, clock):
        other = SessionIssuer(
            secret="different",
            issuer="autovault",
            audience="autovault-web",
            denylist=denylist,
            clock=clock,
        )
        assert issuer.verify(other.issue(account).token) is None

    def test_expiry_with_leeway(self, issuer, account, clock):
        token = issuer.issue(account).token
        clock.now += 7 * 24 * 3600 + 10
        assert issuer.verify(token) is not None
        clock.now += 60
        assert issuer.verify(token) is None

    def test_wrong_audience(self, issuer, account, denylist, clock):
        foreign = SessionIssuer(
            secret="unit-secret",
            issuer="autovault",
            audience="someone-else",
            denylist=denylist,
            clock=clock,
        )
        assert issuer.verify(foreign.issue(account).token) is None

    def test_garbage(self, issuer):
        assert issuer.verify("not.a.token") is None
        assert issuer.verify("") is None
        assert issuer.verify(None) is None


class TestRevoke:
    async def test_revoked_token_stops_authenticating(self, issuer, account, denylist):
        """Revocation is keyed by jti and lasts for the token's remaining life."""
        issued = issuer.issue(account)
        assert await issuer.authenticate(issued.token) is not None
        assert await issuer.revoke(issued.token)
        assert await issuer.authenticate(issued.token) is None
        assert await denylist.ttl(f"{DENYLIST_PREFIX}{issued.jti}") > 7 * 24 * 3600 - 5

    async def test_other_tokens_unaffected(self, issuer, account):
        first = issuer.issue(account)
        second = issuer.issue(account)
        await issuer.revoke(first.token)
        assert await issuer.authenticate(second.token) is not None

    async def test_revoking_garbage_is_noop(self, issuer):
        assert not await issuer.revoke("junk")

    async def test_sweep_drops_expired_entries(self, issuer, account, clock):
        await issuer.revoke(issuer.issue(account).token)
        clock.now += 8 * 24 * 3600
        assert await issuer.sweep() == 1


class TestExtraction:
    def test_header_wins_over_cookie(self, issuer):
        assert issuer.extract_token("Bearer header-token", "cookie-token") == "header-token"

    def test_cookie_fallback(self, issuer):
        assert issuer.extract_token(None, "cookie-token") == "cookie-token"
        assert issuer.extract_token("Basic abc", "cookie-token") == "cookie-token"

    def test_placeholder_strings_are_absent(self, issuer):
        assert issuer.extract_token("Bearer undefined", "null") is None
        assert issuer.extract_token("Bearer null", "cookie-token") == "cookie-token"

    def test_cookie_attributes_match_on_issue_and_clear(self, issuer, account):
        issued = issuer.issue(account)
        set_params = issuer.cookie_params(issued)
        clear_params = issuer.clear_cookie_params()
        assert set_params["httponly"] and clear_params["httponly"]
        for key in ("key", "secure", "samesite", "path"):
            assert set_params[key] == clear_params[key]
        assert set_params["samesite"] == "lax"
        assert set_params["max_age"] == 7 * 24 * 3600
