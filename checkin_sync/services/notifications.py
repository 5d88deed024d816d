import asyncio
import html
import logging
from uuid import UUID

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from checkin_sync.core.config import settings
from checkin_sync.services.gateway import CheckInSummary, PersistenceGateway

log = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
SUBJECT = "Check-In Complete"

MOOD_LABELS = {
    1: "Struggling",
    2: "Not Great",
    3: "Okay",
    4: "Good",
    5: "Great",
}

CATEGORY_LABELS = {
    "emotional": "Emotional Connection",
    "communication": "Communication",
    "intimacy": "Physical & Emotional Intimacy",
    "goals": "Shared Goals & Future",
}


def mood_label(mood: int | None) -> str:
    return MOOD_LABELS.get(mood, "Unknown") if mood is not None else "Unknown"


def render_summary(summary: CheckInSummary, notes_url: str) -> str:
    """Plain HTML body for the post check-in email."""
    check_in = summary.check_in
    categories = "".join(
        f"<li>{html.escape(CATEGORY_LABELS.get(c, c))}</li>" for c in check_in.categories
    )
    items = summary.action_item_count
    return (
        "<h1>Your check-in is complete</h1>"
        f"<p>Mood before: <strong>{mood_label(check_in.mood_before)}</strong><br>"
        f"Mood after: <strong>{mood_label(check_in.mood_after)}</strong></p>"
        f"<p>You talked about:</p><ul>{categories}</ul>"
        f"<p>{items} action item{'' if items == 1 else 's'} created.</p>"
        f'<p><a href="{html.escape(notes_url)}">Review your notes</a></p>'
    )


@retry(
    stop=stop_after_attempt(3),
    wait=wait_fixed(1),
    retry=retry_if_exception_type((httpx.TransportError, httpx.HTTPStatusError)),
    reraise=True,
)
async def _post_email(client: httpx.AsyncClient, to: str, body: str) -> None:
    r = await client.post(
        RESEND_URL,
        json={"from": settings.EMAIL_FROM, "to": [to], "subject": SUBJECT, "html": body},
        headers={"Authorization": f"Bearer {settings.RESEND_API_KEY}"},
    )
    r.raise_for_status()


async def send_checkin_summary(gateway: PersistenceGateway, check_in_id: UUID) -> int:
    """
    Email both partners a summary of a completed check-in.
    Returns the number of emails sent.
    """
    if not settings.RESEND_API_KEY:
        log.info("RESEND_API_KEY not set, skipping summary email for check-in %s", check_in_id)
        return 0

    result = await gateway.fetch_summary(check_in_id)
    if not result.ok or result.data is None:
        log.warning("No summary available for check-in %s", check_in_id)
        return 0
    summary = result.data
    if summary.partner_count != 2:
        log.info("Check-in %s belongs to an incomplete couple, not emailing", check_in_id)
        return 0

    body = render_summary(summary, f"{settings.SITE_URL.rstrip('/')}/notes")
    sent = 0
    timeout_config = httpx.Timeout(connect=10.0, read=30.0, write=10.0, pool=30.0)
    async with httpx.AsyncClient(timeout=timeout_config) as client:
        for recipient in summary.recipients:
            await _post_email(client, recipient, body)
            sent += 1
    log.info("Sent %d summary emails for check-in %s", sent, check_in_id)
    return sent


class SummaryNotifier:
    """Fire-and-forget summary emails; a failed send never reaches the caller."""

    def __init__(self, gateway: PersistenceGateway):
        self._gateway = gateway
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, check_in_id: UUID) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._send(check_in_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _send(self, check_in_id: UUID) -> None:
        try:
            await send_checkin_summary(self._gateway, check_in_id)
        except Exception as e:
            log.error("Summary email for check-in %s failed: %s", check_in_id, e)

    async def drain(self) -> None:
        """Wait for in-flight sends, used on shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
