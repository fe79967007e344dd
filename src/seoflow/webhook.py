from __future__ import annotations

import hashlib
import hmac
import json
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .models import Article, Integration

EVENT_NAME_DEFAULT = "article.publish"


class WebhookError(RuntimeError):
    def __init__(self, message: str, permanent: bool = False) -> None:
        super().__init__(message)
        self.permanent = permanent


def build_webhook_body(article: Article, integration: Integration) -> dict[str, object]:
    return {
        "event": EVENT_NAME_DEFAULT,
        "article_id": article.id,
        "project_id": article.project_id,
        "integration_id": integration.id,
        "article": {
            "title": article.title,
            "body_html": article.body_html or "",
        },
    }


def sign_body(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def deliver_webhook(
    article: Article,
    integration: Integration,
    timeout_s: int = 20,
) -> str | None:
    target_url = str(integration.config.get("url") or "")
    if not target_url:
        raise WebhookError("webhook integration has no url", permanent=True)
    secret = str(integration.config.get("secret") or "")
    body = json.dumps(build_webhook_body(article, integration), sort_keys=True).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "User-Agent": "seoflow/0.1",
        "X-Seoflow-Event": EVENT_NAME_DEFAULT,
        "X-Seoflow-Idempotency": f"article:{article.id}",
        "X-Seoflow-Project-Id": article.project_id,
        "X-Seoflow-Integration-Id": integration.id,
    }
    if secret:
        headers["X-Seoflow-Signature"] = sign_body(body, secret)
    request = Request(target_url, data=body, headers=headers, method="POST")
    try:
        with urlopen(request, timeout=timeout_s) as response:
            raw = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        # 4xx other than 429 will not succeed on retry.
        permanent = 400 <= exc.code < 500 and exc.code != 429
        raise WebhookError(f"webhook HTTP error {exc.code}", permanent=permanent) from exc
    except URLError as exc:
        raise WebhookError(f"webhook connection error: {exc}") from exc
    try:
        data = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        return None
    if isinstance(data, dict) and data.get("url"):
        return str(data["url"])
    return None
