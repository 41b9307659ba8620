import pytest

from tupleclass.hashing import hash16, hash32_2, hash_code64, pext


def test_hash16_of_zero_is_zero():
    assert hash16(0) == 0


def test_hash16_is_injective_on_ports():
    values = {hash16(port) for port in range(4096)}
    assert len(values) == 4096


def test_hash16_ignores_bits_above_32():
    assert hash16((1 << 40) | 1234) == hash16(1234)


@pytest.mark.parametrize("a,b", [(1, 2), (0xDEADBEEF, 7), (0, 0xFFFFFFFF)])
def test_hash32_2_is_symmetric(a, b):
    assert hash32_2(a, b) == hash32_2(b, a)


@pytest.mark.parametrize("a,b", [(0, 0), (123456, 654321), (0xFFFFFFFF, 0xFFFFFFFF)])
def test_hash32_2_fits_in_32_bits(a, b):
    assert 0 <= hash32_2(a, b) <= 0xFFFFFFFF


def test_hash32_2_of_zeros_is_zero():
    assert hash32_2(0, 0) == 0


@pytest.mark.parametrize("value", [0, 1, 0x0A000001C0A80001, (1 << 64) - 1])
def test_hash_code64_splits_words(value):
    assert hash_code64(value) == hash32_2(value >> 32, value & 0xFFFFFFFF)


def test_pext_gathers_selected_bits():
    assert pext(0b1011, 0b0110) == 0b01


def test_pext_full_mask_is_identity():
    value = 0x12345678
    assert pext(value, 0xFFFFFFFF) == value


def test_pext_empty_mask_is_zero():
    assert pext(0xFFFF, 0) == 0


@pytest.mark.parametrize("bit", [0, 5, 31, 63])
def test_pext_single_bit(bit):
    value = 0xA5A5A5A5A5A5A5A5
    assert pext(value, 1 << bit) == (value >> bit) & 1


def test_pext_result_width_matches_popcount():
    mask = 0xF0F0
    assert pext(0xFFFF, mask) == (1 << bin(mask).count("1")) - 1