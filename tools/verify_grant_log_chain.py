"""Verify the hash-chain integrity of the grant log exported from /grant_log."""
import json, sys, hashlib

def sha256_hex(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()

def canonicalize(obj) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

def chain(prev, payload_hash):
    data = (prev or "").encode("utf-8") + payload_hash.encode("utf-8")
    return sha256_hex(data)

def payload_of(entry):
    return {
        "record_id": entry["record_id"],
        "subject_id": entry["subject_id"],
        "credential_id": entry["credential_id"],
        "on_chain_grant_id": entry["on_chain_grant_id"],
        "responder": {
            "name": entry["responder_name"],
            "credential": entry["responder_credential"],
            "location": entry["responder_location"],
            "address": entry["responder_address"],
        },
        "data_accessed": entry["data_accessed"],
        "categories_accessed": entry["categories_accessed"],
        "grant_expires_at": entry["grant_expires_at"],
        "created_at": entry["created_at"],
    }

def verify(log):
    """Return the seq of the first bad entry, or None if the chain is intact."""
    prev = None
    for entry in log:
        if sha256_hex(canonicalize(payload_of(entry))) != entry["payload_hash"]:
            return entry["seq"]
        if entry.get("prev_entry_hash") != prev:
            return entry["seq"]
        if entry["entry_hash"] != chain(prev, entry["payload_hash"]):
            return entry["seq"]
        prev = entry["entry_hash"]
    return None

def main(path):
    log = json.load(open(path, "r", encoding="utf-8"))
    bad = verify(log)
    if bad is not None:
        print("FAIL: chain mismatch at seq", bad)
        sys.exit(1)
    print("PASS: grant log chain valid")

if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python tools/verify_grant_log_chain.py <grant_log_export.json>")
        raise SystemExit(2)
    main(sys.argv[1])
