"""32-bit hash mixers and parallel bit extraction used by the classifiers."""

_MASK32 = 0xFFFFFFFF


def hash16(value: int) -> int:
    """Hash a port-sized key into 32 bits."""
    h = ((value & _MASK32) * 0x85EBCA6B) & _MASK32
    h ^= h >> 16
    h = (h * 0xC2B2AE35) & _MASK32
    h ^= h >> 16
    return h


def _mix32(value: int) -> int:
    h = value & _MASK32
    h ^= h >> 16
    h = (h * 0x85EBCA6B) & _MASK32
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & _MASK32
    return h


def hash32_2(hash1: int, hash2: int) -> int:
    """Combine two 32-bit words into one 32-bit hash."""
    h = _mix32(hash1) ^ _mix32(hash2)
    h ^= h >> 16
    return h


def hash_code64(value: int) -> int:
    """Hash a 64-bit key by mixing its high and low words."""
    return hash32_2((value >> 32) & _MASK32, value & _MASK32)


def pext(value: int, mask: int) -> int:
    """Gather the bits of ``value`` selected by ``mask`` into the low bits."""
    result = 0
    position = 0
    while mask:
        lowest = mask & -mask
        if value & lowest:
            result |= 1 << position
        position += 1
        mask ^= lowest
    return result