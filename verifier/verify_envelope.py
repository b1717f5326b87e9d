#!/usr/bin/env python3
"""
HealthVault Offline Envelope Verifier

Checks an emergency envelope's structure, HMAC signature and 24 hour age
limit using only the signing secret. Revocation needs the data store and is
not checked here.

Usage:
    python verifier/verify_envelope.py <envelope_file> <secrets.json>

Output:
    VALID: <subject> <did> <document ids>
    INVALID: <reason>
"""

import sys
import json

from healthvault.envelope import verify_envelope_offline
from healthvault.errors import EnvelopeError
from healthvault.util import decode_secret, now_millis


def load_secret(path: str) -> bytes:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    return decode_secret(raw.get("envelope_secret") or raw["signing_secret"])


def main():
    if len(sys.argv) != 3:
        print("Usage: python verifier/verify_envelope.py <envelope_file> <secrets.json>")
        raise SystemExit(2)

    with open(sys.argv[1], "r", encoding="utf-8") as f:
        serialized = f.read().strip()
    secret = load_secret(sys.argv[2])

    try:
        envelope = verify_envelope_offline(serialized, secret, now_millis())
    except EnvelopeError as e:
        print(f"INVALID: {e.reason.value}")
        raise SystemExit(1)

    print(f"VALID: {envelope.subject_id} {envelope.did} {','.join(envelope.document_ids)}")


if __name__ == "__main__":
    main()
