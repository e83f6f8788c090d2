from __future__ import annotations
import os, asyncio, json, html, logging, yaml
from typing import Optional, Dict, List
from pathlib import Path

import aiohttp

# ---- Env ----
# Full URL of the backend API, defaulting to the docker-compose service name.
BACKEND_URL = os.getenv('BACKEND_URL', 'http://api:7070')
# Token used for the operator endpoints of the backend.
ADMIN_TOKEN = os.getenv('ADMIN_TOKEN', 'change-me')
EMAIL_API_URL = os.getenv('EMAIL_API_URL', 'https://api.resend.com/emails')
EMAIL_API_KEY = os.getenv('EMAIL_API_KEY')
EMAIL_FROM = os.getenv('EMAIL_FROM', 'Song Queue <notifications@example.com>')
PUBLIC_SITE_URL = os.getenv('PUBLIC_SITE_URL', 'http://localhost:5173')
TEMPLATES_PATH = Path(os.getenv('NOTIFIER_TEMPLATES_PATH', '/notifier/templates.yml'))
POLL_INTERVAL = float(os.getenv('NOTIFIER_POLL_INTERVAL', '15'))
BATCH_SIZE = int(os.getenv('NOTIFIER_BATCH_SIZE', '50'))
HTTP_TIMEOUT_SECONDS = float(os.getenv('NOTIFIER_HTTP_TIMEOUT', '10'))

DEFAULT_TEMPLATES = {
    'currency_symbol': '€',
    'outbid_subject': "You've been outbid on \"{song_title}\"",
    'outbid_html': (
        '<p>Another submission just moved ahead of <strong>{song_title}</strong> by {artist_name}.</p>'
        '<p>Bid {currency_symbol}{offer} or more to reclaim your place in the queue.</p>'
        '<p><a href="{dashboard_url}">Open your dashboard</a></p>'
    ),
}

logger = logging.getLogger(__name__)


# ---- Backend client ----
class BackendError(RuntimeError):
    def __init__(self, status: int, detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message


class Backend:
    def __init__(self, base_url: str, admin_token: str, timeout: float = HTTP_TIMEOUT_SECONDS):
        self.base = base_url.rstrip('/')
        self.headers = {'X-Admin-Token': admin_token, 'Content-Type': 'application/json'}
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _req(self, method: str, path: str, payload: Optional[dict] = None):
        if not self.session:
            await self.start()
        url = f"{self.base}{path}"
        async with self.session.request(method, url, headers=self.headers, data=json.dumps(payload) if payload else None) as r:
            content_type = r.headers.get('content-type', '')
            is_json = content_type.startswith('application/json')
            if r.status >= 400:
                detail: object = ''
                if is_json:
                    try:
                        data = await r.json()
                    except (aiohttp.ContentTypeError, ValueError):
                        data = None
                    # the backend renders failures as {"error": message}
                    if isinstance(data, dict) and 'error' in data:
                        detail = data['error']
                    else:
                        detail = data or ''
                if not detail:
                    detail = await r.text()
                raise BackendError(r.status, detail or f"{method} {path} failed")
            if is_json:
                return await r.json()
            return await r.text()

    async def pending_notifications(self, limit: int = BATCH_SIZE) -> List[dict]:
        return await self._req('GET', f"/notifications/pending?limit={limit}")

    async def mark_sent(self, notification_id: int):
        return await self._req('POST', f"/notifications/{notification_id}/sent")


# ---- Email ----
class EmailError(RuntimeError):
    pass


class EmailClient:
    """Posts messages to a Resend-compatible JSON email API."""

    def __init__(self, api_url: str, api_key: Optional[str], sender: str, timeout: float = HTTP_TIMEOUT_SECONDS):
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def send(self, to: str, subject: str, body_html: str) -> None:
        if not self.api_key:
            raise EmailError('EMAIL_API_KEY is not configured')
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        payload = {'from': self.sender, 'to': [to], 'subject': subject, 'html': body_html}
        headers = {'Authorization': f'Bearer {self.api_key}', 'Content-Type': 'application/json'}
        async with self.session.post(self.api_url, headers=headers, data=json.dumps(payload)) as r:
            if r.status >= 400:
                raise EmailError(f"email API returned {r.status}: {await r.text()}")


def load_templates(path: Path) -> Dict[str, str]:
    cfg: Dict[str, str] = DEFAULT_TEMPLATES.copy()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update(data)
    except FileNotFoundError:
        pass
    return cfg


def render_outbid_email(notification: dict, templates: Dict[str, str], site_url: str = PUBLIC_SITE_URL) -> tuple[str, str]:
    offer_cents = notification.get('offerAmountCents') or 0
    values = {
        'song_title': notification.get('songTitle') or 'your song',
        'artist_name': notification.get('artistName') or 'Unknown Artist',
        'offer': f"{offer_cents / 100:.2f}",
        'currency_symbol': templates.get('currency_symbol', ''),
        'dashboard_url': f"{site_url.rstrip('/')}/my-dashboard",
    }
    subject = templates['outbid_subject'].format(**values)
    escaped = {k: html.escape(str(v)) for k, v in values.items()}
    return subject, templates['outbid_html'].format(**escaped)


# ---- service ----
class NotifierService:
    def __init__(
        self,
        backend: Backend,
        email: EmailClient,
        *,
        templates: Optional[Dict[str, str]] = None,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.backend = backend
        self.email = email
        self.templates = templates if templates is not None else load_templates(TEMPLATES_PATH)
        self.poll_interval = poll_interval

    async def deliver_pending(self) -> int:
        """Send every unsent notification once and mark it delivered.

        A failed send is logged and left unsent so the next cycle retries it.
        """
        pending = await self.backend.pending_notifications()
        delivered = 0
        for notification in pending:
            notification_id = notification.get('id')
            if notification.get('notificationType', 'outbid') != 'outbid':
                continue
            try:
                subject, body = render_outbid_email(notification, self.templates)
                await self.email.send(notification['email'], subject, body)
            except (EmailError, aiohttp.ClientError, asyncio.TimeoutError, KeyError, ValueError) as exc:
                logger.warning('Failed to send notification %s: %s', notification_id, exc)
                continue
            try:
                await self.backend.mark_sent(notification_id)
            except (BackendError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.warning('Sent notification %s but could not mark it: %s', notification_id, exc)
                continue
            delivered += 1
        if delivered:
            logger.info('Delivered %s outbid notification(s)', delivered)
        return delivered

    async def run(self):
        while True:
            try:
                await self.deliver_pending()
            except (BackendError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.error('Failed to fetch pending notifications: %s', exc)
            await asyncio.sleep(self.poll_interval)


# ---- entry ----
async def main():
    logging.basicConfig(level=os.getenv('LOG_LEVEL', 'INFO'))
    backend = Backend(BACKEND_URL, ADMIN_TOKEN)
    email = EmailClient(EMAIL_API_URL, EMAIL_API_KEY, EMAIL_FROM)
    await backend.start()
    try:
        await NotifierService(backend, email).run()
    finally:
        await email.close()
        await backend.close()

if __name__ == '__main__':
    asyncio.run(main())
