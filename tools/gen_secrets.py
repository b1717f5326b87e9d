"""Generate a local secrets file for development."""
import os, sys, json, secrets

os.makedirs("secrets", exist_ok=True)

values = {
    "master_secret": secrets.token_hex(32),
    "signing_secret": secrets.token_hex(32),
    "admin_token": secrets.token_urlsafe(32),
}
if "--split-envelope-secret" in sys.argv:
    values["envelope_secret"] = secrets.token_hex(32)

path = os.getenv("SECRETS_PATH", "secrets/healthvault_secrets.json")
with open(path, "w", encoding="utf-8") as f:
    json.dump(values, f, indent=2)
os.chmod(path, 0o600)

print(f"Generated local secrets in {path}.")
