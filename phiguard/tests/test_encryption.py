"""
Tests for field-level encryption.

Envelope format: <hex iv>:<hex tag>:<hex ciphertext>, AES-256-GCM.
"""

import pytest

from phiguard.app.security.errors import (
    EncryptionError,
    EnvelopeFormatError,
    EnvelopeIntegrityError,
    IntegrityFailure,
    ValidationFailure,
)
from phiguard.app.services.encryption import IV_LENGTH, TAG_LENGTH, EncryptionService


@pytest.fixture(scope="module")
def service():
    return EncryptionService("test-master-key", "test-salt")


def _flip_hex_char(part: str, index: int = 0) -> str:
    replacement = "0" if part[index] != "0" else "1"
    return part[:index] + replacement + part[index + 1:]


def test_same_plaintext_yields_different_envelopes(service):
    first = service.encrypt("Jane")
    second = service.encrypt("Jane")

    assert first != second
    assert service.decrypt(first) == "Jane"
    assert service.decrypt(second) == "Jane"


def test_envelope_shape(service):
    envelope = service.encrypt("123-45-6789")
    iv, tag, ciphertext = envelope.split(":")

    assert len(bytes.fromhex(iv)) == IV_LENGTH
    assert len(bytes.fromhex(tag)) == TAG_LENGTH
    assert len(bytes.fromhex(ciphertext)) == len("123-45-6789")
    assert EncryptionService.is_envelope(envelope)


def test_unicode_round_trip(service):
    value = "Zoë Ångström 山田"
    assert service.decrypt(service.encrypt(value)) == value


@pytest.mark.parametrize("empty", [None, ""])
def test_empty_values_pass_through(service, empty):
    assert service.encrypt(empty) == empty
    assert service.decrypt(empty) == empty


def test_tampered_ciphertext_fails_integrity(service):
    iv, tag, ciphertext = service.encrypt("sensitive value").split(":")
    tampered = ":".join((iv, tag, _flip_hex_char(ciphertext)))

    with pytest.raises(EnvelopeIntegrityError):
        service.decrypt(tampered)


def test_tampered_tag_fails_integrity(service):
    iv, tag, ciphertext = service.encrypt("sensitive value").split(":")
    tampered = ":".join((iv, _flip_hex_char(tag, len(tag) - 1), ciphertext))

    with pytest.raises(IntegrityFailure):
        service.decrypt(tampered)


def test_wrong_key_fails_integrity(service):
    other = EncryptionService("a-different-master-key", "test-salt")
    envelope = service.encrypt("Jane")

    with pytest.raises(EnvelopeIntegrityError):
        other.decrypt(envelope)


@pytest.mark.parametrize(
    "envelope",
    [
        "not-an-envelope",
        "aa:bb",
        "aa:bb:cc:dd",
        "zz:" + "00" * TAG_LENGTH + ":00",
        ":" + "00" * TAG_LENGTH + ":00",
        "00" * IV_LENGTH + ":00:00",
    ],
)
def test_malformed_envelope_is_format_error(service, envelope):
    with pytest.raises(EnvelopeFormatError) as exc_info:
        service.decrypt(envelope)

    assert isinstance(exc_info.value, ValidationFailure)
    assert isinstance(exc_info.value, EncryptionError)


def test_hash_is_deterministic_sha256(service):
    digest = service.hash("JaneDoe1980-04-12")

    assert digest == service.hash("JaneDoe1980-04-12")
    assert digest != service.hash("JaneDoe1980-04-13")
    assert len(digest) == 64
    int(digest, 16)


def test_key_derivation_depends_on_salt():
    first = EncryptionService("same-master", "salt-one")
    second = EncryptionService("same-master", "salt-two")

    with pytest.raises(EnvelopeIntegrityError):
        second.decrypt(first.encrypt("value"))


def test_missing_master_secret_rejected():
    with pytest.raises(EncryptionError):
        EncryptionService("", "salt")


@pytest.mark.parametrize("value", [None, "", "plain text", "aa:bb", "gg:hh:ii"])
def test_is_envelope_rejects_non_envelopes(value):
    assert EncryptionService.is_envelope(value) is False
