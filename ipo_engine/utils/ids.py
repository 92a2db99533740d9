from __future__ import annotations

import hashlib


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def deterministic_id(prefix: str, material: str) -> str:
    return sha256_hex(f"{prefix}|{material}".encode("utf-8"))


def new_alert_id(offering_id: int, alert_type: str, material: str) -> str:
    # Deterministic alert id so a replayed poll does not produce a new alert identity
    return deterministic_id("ALERT", f"{int(offering_id)}|{alert_type}|{material}")[:32]

