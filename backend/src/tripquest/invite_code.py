from __future__ import annotations

import secrets

# 0/O/1/I は読み間違えやすいので除外
ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
DEFAULT_LENGTH = 6


def generate_invite_code(length: int = DEFAULT_LENGTH) -> str:
    if length < 1:
        raise ValueError("length must be positive")
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def normalize_invite_code(code: str) -> str:
    return code.strip().upper()
