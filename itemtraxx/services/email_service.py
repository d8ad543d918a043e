from __future__ import annotations

import json
import urllib.error
import urllib.request

RESEND_EMAILS_URL = "https://api.resend.com/emails"


class EmailDeliveryError(RuntimeError):
    pass


def send_reminder_email(
    api_key: str,
    sender: str,
    to: str,
    subject: str,
    html: str,
    timeout: float = 20.0,
) -> None:
    body = json.dumps({"from": sender, "to": to, "subject": subject, "html": html}).encode("utf-8")
    request = urllib.request.Request(
        url=RESEND_EMAILS_URL,
        data=body,
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            if response.status >= 300:
                raise EmailDeliveryError(f"Email API returned status {response.status}")
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace").strip()
        raise EmailDeliveryError(detail or f"Email API HTTP error: {exc.code}") from exc
    except urllib.error.URLError as exc:
        raise EmailDeliveryError(f"Email API connection error: {exc.reason}") from exc
    except OSError as exc:
        raise EmailDeliveryError(f"Email API transport error: {exc}") from exc
