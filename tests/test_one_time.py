import uuid

from passgate.service.one_time import SecretIssuer


def test_issue_returns_distinct_uuid4_strings():
    issuer = SecretIssuer()
    secrets = {issuer.issue() for _ in range(50)}

    assert len(secrets) == 50
    for secret in secrets:
        assert uuid.UUID(secret).version == 4


def test_matches_requires_active_equal_secret():
    issuer = SecretIssuer()
    secret = issuer.issue()

    assert issuer.matches(secret, True, secret)
    assert not issuer.matches(secret, False, secret)
    assert not issuer.matches(secret, True, issuer.issue())


def test_matches_rejects_empty_values():
    issuer = SecretIssuer()

    assert not issuer.matches(None, True, "x")
    assert not issuer.matches("", True, "")
    assert not issuer.matches("x", True, None)
