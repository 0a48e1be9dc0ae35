"""Tests for password hashing and the registration strength policy."""

from argon2 import PasswordHasher

from wordnest.service.passwords import CredentialHasher


def _fast_hasher() -> CredentialHasher:
    return CredentialHasher(PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))


class TestCredentialHasher:
    def test_hash_is_salted_argon2id(self):
        hasher = _fast_hasher()
        first = hasher.hash("Passw0rd!")
        second = hasher.hash("Passw0rd!")

        assert first.startswith("$argon2id$")
        assert first != second
        assert "Passw0rd!" not in first

    def test_verify_accepts_matching_password(self):
        hasher = _fast_hasher()
        stored = hasher.hash("Passw0rd!")

        assert hasher.verify("Passw0rd!", stored) is True
        assert hasher.verify("passw0rd!", stored) is False

    def test_missing_hash_never_matches(self):
        """Accounts created through OAuth carry no hash."""
        hasher = _fast_hasher()

        assert hasher.verify("anything", None) is False
        assert hasher.verify("", "") is False

    def test_garbage_hash_does_not_raise(self):
        hasher = _fast_hasher()

        assert hasher.verify("Passw0rd!", "not-a-hash") is False

    def test_needs_rehash_when_parameters_change(self):
        weak = _fast_hasher()
        strong = CredentialHasher(PasswordHasher(time_cost=2, memory_cost=16, parallelism=1))
        stored = weak.hash("Passw0rd!")

        assert weak.needs_rehash(stored) is False
        assert strong.needs_rehash(stored) is True
        assert strong.needs_rehash("not-a-hash") is True


class TestStrengthPolicy:
    def test_strong_password_passes(self):
        report = CredentialHasher.validate_strength("Passw0rd!")

        assert report.is_valid
        assert report.errors == []

    def test_every_violation_is_reported(self):
        report = CredentialHasher.validate_strength("abc")

        assert not report.is_valid
        assert len(report.errors) == 3
        assert any("at least 8" in e for e in report.errors)
        assert any("uppercase" in e for e in report.errors)
        assert any("digit" in e for e in report.errors)

    def test_length_bounds(self):
        assert CredentialHasher.validate_strength("Aa1" + "x" * 5).is_valid
        assert not CredentialHasher.validate_strength("Aa1" + "x" * 4).is_valid
        assert CredentialHasher.validate_strength("Aa1" + "x" * 125).is_valid
        too_long = CredentialHasher.validate_strength("Aa1" + "x" * 126)
        assert not too_long.is_valid
        assert any("at most 128" in e for e in too_long.errors)

    def test_missing_lowercase(self):
        report = CredentialHasher.validate_strength("PASSWORD1")

        assert report.errors == ["Password must contain at least one lowercase letter"]
