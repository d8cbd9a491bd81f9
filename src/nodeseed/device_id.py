"""Device identifiers derived from certificate bytes.

A device ID is the SHA-256 digest of the DER encoded certificate. Its text
form is the base32 digest split into four 13 character groups, each followed
by a Luhn mod 32 check character, and chunked into groups of seven::

    MFZWI3D-BONSGYC-YLTMRWG-C43ENR5-QXGZDMM-FZWI3DP-BONSGYY-LTMRWAD
"""

from __future__ import annotations

import base64
import hashlib

LUHN_BASE32 = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
DEVICE_ID_LENGTH = 32

_GROUP_LENGTH = 13
_CHUNK_LENGTH = 7
# Characters commonly mistyped when reading an ID off a screen
_TYPO_FIXES = str.maketrans({"0": "O", "1": "I", "8": "B"})


def luhn32(s: str) -> str:
    """Return the Luhn mod 32 check character for ``s``."""
    n = len(LUHN_BASE32)
    factor = 1
    total = 0
    for ch in s:
        codepoint = LUHN_BASE32.find(ch)
        if codepoint < 0:
            raise ValueError(f"digit {ch!r} is not valid in base32 alphabet")
        addend = factor * codepoint
        factor = 1 if factor == 2 else 2
        total += addend // n + addend % n
    return LUHN_BASE32[(n - total % n) % n]


def _luhnify(s: str) -> str:
    groups = []
    for i in range(4):
        part = s[i * _GROUP_LENGTH : (i + 1) * _GROUP_LENGTH]
        groups.append(part + luhn32(part))
    return "".join(groups)


def _unluhnify(s: str) -> str:
    step = _GROUP_LENGTH + 1
    parts = []
    for i in range(4):
        group = s[i * step : (i + 1) * step]
        body, check = group[:-1], group[-1]
        if luhn32(body) != check:
            raise ValueError(f"check digit incorrect in group {i + 1}")
        parts.append(body)
    return "".join(parts)


def _chunkify(s: str) -> str:
    return "-".join(s[i : i + _CHUNK_LENGTH] for i in range(0, len(s), _CHUNK_LENGTH))


class DeviceID:
    """A 32 byte certificate digest with a canonical text form."""

    __slots__ = ("_raw",)

    def __init__(self, raw: bytes) -> None:
        if len(raw) != DEVICE_ID_LENGTH:
            raise ValueError(f"device ID must be {DEVICE_ID_LENGTH} bytes, got {len(raw)}")
        self._raw = bytes(raw)

    @classmethod
    def from_certificate_bytes(cls, der: bytes) -> DeviceID:
        return cls(hashlib.sha256(der).digest())

    @classmethod
    def from_string(cls, text: str) -> DeviceID:
        """Parse a device ID, tolerating case, separators and common typos."""
        s = text.strip().upper().rstrip("=")
        s = s.replace("-", "").replace(" ", "").translate(_TYPO_FIXES)
        if len(s) == 56:
            s = _unluhnify(s)
        elif len(s) != 52:
            raise ValueError(f"device ID has incorrect length {len(s)}: {text!r}")
        try:
            raw = base64.b32decode(s + "====")
        except ValueError as e:
            raise ValueError(f"device ID is not valid base32: {text!r}") from e
        return cls(raw)

    @property
    def raw(self) -> bytes:
        return self._raw

    def short(self) -> str:
        """First chunk of the text form, for log lines."""
        return str(self)[:_CHUNK_LENGTH]

    def __str__(self) -> str:
        encoded = base64.b32encode(self._raw).decode("ascii").rstrip("=")
        return _chunkify(_luhnify(encoded))

    def __repr__(self) -> str:
        return f"DeviceID({str(self)!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DeviceID):
            return NotImplemented
        return self._raw == other._raw

    def __hash__(self) -> int:
        return hash(self._raw)
