"""Signing helper for simulating Resend webhooks locally.

Reads a JSON body from stdin and prints the three Svix headers Resend sends,
signed with RESEND_WEBHOOK_SECRET from the environment (or .env file).

Usage:
    echo '{"type":"email.delivered","data":{"email_id":"re_1"}}' | python -m scripts.sign_webhook

    # Full curl example:
    BODY='{"type":"email.bounced","created_at":"2026-01-01T00:00:00Z","data":{"email_id":"re_1","to":["a@example.com"]}}'
    HEADERS=$(echo -n "$BODY" | python -m scripts.sign_webhook)
    curl -X POST http://localhost:8000/api/v1/email/webhook \\
      -H "Content-Type: application/json" \\
      $(echo "$HEADERS" | sed 's/^/-H /') \\
      -d "$BODY"
"""

import sys
import time
import uuid

from app.core.config import settings
from app.integrations.resend.webhooks import sign_webhook


def main() -> None:
    secret = settings.resend_webhook_secret
    if not secret:
        print("ERROR: RESEND_WEBHOOK_SECRET is not set in .env", file=sys.stderr)
        sys.exit(1)

    body = sys.stdin.buffer.read()
    if not body:
        print("ERROR: No input received on stdin", file=sys.stderr)
        sys.exit(1)

    msg_id = f"msg_{uuid.uuid4().hex}"
    timestamp = str(int(time.time()))
    print(f"svix-id:{msg_id}")
    print(f"svix-timestamp:{timestamp}")
    print(f"svix-signature:{sign_webhook(body, msg_id, timestamp, secret)}")


if __name__ == "__main__":
    main()
