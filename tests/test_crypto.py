from haplink.crypto import hkdf_sha512


def test_output_is_32_bytes():
    key = hkdf_sha512(b"Control-Salt", bytes(32), b"Control-Read-Encryption-Key")
    assert isinstance(key, bytes)
    assert len(key) == 32


def test_deterministic():
    first = hkdf_sha512(b"salt", b"input key material", b"info")
    second = hkdf_sha512(b"salt", b"input key material", b"info")
    assert first == second


def test_info_changes_output():
    ikm = bytes(range(32))
    read = hkdf_sha512(b"Control-Salt", ikm, b"Control-Read-Encryption-Key")
    write = hkdf_sha512(b"Control-Salt", ikm, b"Control-Write-Encryption-Key")
    assert read != write


def test_salt_and_ikm_change_output():
    base = hkdf_sha512(b"a", b"key", b"info")
    assert hkdf_sha512(b"b", b"key", b"info") != base
    assert hkdf_sha512(b"a", b"other", b"info") != base


def test_accepts_bytearray():
    assert hkdf_sha512(bytearray(b"s"), bytearray(b"k"), bytearray(b"i")) == hkdf_sha512(b"s", b"k", b"i")