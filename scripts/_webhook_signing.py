"""
Helpers for signing Chapa-style webhook bodies in smoke tests.

    python scripts/_webhook_signing.py --secret $CHAPA_TRANSFER_WEBHOOK_SECRET \
        '{"reference": "PO-123-1-ABC123", "status": "success"}'
"""
import argparse
import hashlib
import hmac
import json
import sys

SIGNATURE_HEADER = "x-chapa-signature"


def canonical_json_bytes(payload) -> bytes:
    # compact, key-sorted: the exact bytes that get signed and sent
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")


def hmac_sha256_hex(secret: str, body_bytes: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body_bytes, hashlib.sha256).hexdigest()


def chapa_signature_header(secret: str, body_bytes: bytes, *, prefixed: bool = False) -> dict[str, str]:
    digest = hmac_sha256_hex(secret, body_bytes)
    return {SIGNATURE_HEADER: f"sha256={digest}" if prefixed else digest}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Sign a webhook payload and print body + header.")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--prefixed", action="store_true", help="emit sha256=<hex>")
    parser.add_argument("payload", help="JSON payload")
    args = parser.parse_args(argv)

    body = canonical_json_bytes(json.loads(args.payload))
    header = chapa_signature_header(args.secret, body, prefixed=args.prefixed)
    sys.stdout.write(body.decode("utf-8") + "\n")
    sys.stdout.write(f"{SIGNATURE_HEADER}: {header[SIGNATURE_HEADER]}\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
