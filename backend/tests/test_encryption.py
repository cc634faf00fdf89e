import pytest

from classmate.utils import encryption


def test_highest_security_is_randomised_and_reversible():
    first = encryption.encrypt_highest_security('12345678901')
    second = encryption.encrypt_highest_security('12345678901')
    assert first != second
    assert first.count('.') == 2
    assert encryption.decrypt_highest_security(first) == '12345678901'


def test_highest_security_detects_tampering():
    nonce, tag, ciphertext = encryption.encrypt_highest_security('secret').split('.')
    forged = '.'.join([nonce, tag, encryption._b64(b'\x00' * 6)])
    with pytest.raises(ValueError):
        encryption.decrypt_highest_security(forged)
    with pytest.raises(ValueError):
        encryption.decrypt_highest_security('only.two')


def test_searchable_encryption_is_deterministic_per_kind():
    a = encryption.encrypt_searchable('ada@example.edu', 'email')
    b = encryption.encrypt_searchable('ada@example.edu', 'email')
    assert a == b
    assert encryption.encrypt_searchable('ada@example.edu', 'phone') != a
    assert encryption.decrypt_searchable(a, 'email') == 'ada@example.edu'
    with pytest.raises(ValueError):
        encryption.encrypt_searchable('x', 'address')


def test_basic_encryption_round_trip_and_format():
    token = encryption.encrypt_basic('Plot 4, Umudike')
    assert token != encryption.encrypt_basic('Plot 4, Umudike')
    assert encryption.decrypt_basic(token) == 'Plot 4, Umudike'
    with pytest.raises(ValueError):
        encryption.decrypt_basic('no-separator')
    with pytest.raises(ValueError):
        encryption.decrypt_basic('!!!.???')


def test_search_hash_is_peppered_sha256():
    digest = encryption.search_hash('ada@example.edu')
    assert len(digest) == 64
    assert encryption.verify_search_hash('ada@example.edu', digest)
    assert not encryption.verify_search_hash('bob@example.edu', digest)


def test_normalisation():
    assert encryption.normalize_email('  Ada@Example.EDU ') == 'ada@example.edu'
    assert encryption.normalize_phone('+234 (803) 123-4567') == '+2348031234567'
