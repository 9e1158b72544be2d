"""
Retrieval of the latest emails: how many to ask for, how to fetch them
under a time budget, and how to turn them into the response envelope
"""
import asyncio
import re
import time
from typing import List, Optional, Sequence

from loguru import logger

from config import Settings
from email_parser import parse_email
from errors import FetchError, FetchTimeoutError, PartialFailureError
from imap_client import MailboxSession
from models import EmailsResponse, ParsedEmail, RetrievalReport

MIN_EMAIL_COUNT = 1
MAX_EMAIL_COUNT = 50
DEFAULT_MAX_BODY_CHARS = 50_000
TRUNCATION_MARKER = "\n\n[... truncated ...]"
EMPTY_MAILBOX_MESSAGE = "No emails found in inbox"

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def determine_requested_count(settings: Settings) -> int:
    """EMAIL_COUNT as an integer clamped to [1, 50]; unparseable means 1"""
    match = _LEADING_INT.match(settings.email_count or "")
    count = int(match.group(1)) if match else MIN_EMAIL_COUNT
    return min(max(MIN_EMAIL_COUNT, count), MAX_EMAIL_COUNT)


def select_target_identifiers(all_identifiers: Sequence[int], requested_count: int) -> List[int]:
    """The newest ``requested_count`` identifiers, still oldest first"""
    count = min(requested_count, len(all_identifiers))
    if count <= 0:
        return []
    return list(all_identifiers[-count:])


async def retrieve_bodies(
    session: MailboxSession,
    identifiers: Sequence[int],
    time_budget: float,
    fetch_timeout: float,
    strategy: str = "concurrent",
    report: Optional[RetrievalReport] = None,
) -> List[bytes]:
    """Fetch raw messages, returned in the order of ``identifiers``.

    Failed or abandoned fetches are dropped; one bad message never stops
    the others.
    """
    report = report if report is not None else RetrievalReport()
    if not identifiers:
        return []

    if strategy == "sequential":
        results = await _retrieve_sequentially(session, identifiers, time_budget, fetch_timeout, report)
    else:
        results = await _retrieve_concurrently(session, identifiers, time_budget, fetch_timeout, report)

    report.fetched = len(results)
    logger.info(f"Fetched {len(results)} of {len(identifiers)} email buffers")
    return [results[uid] for uid in identifiers if uid in results]


def _record_failure(error: FetchError, report: RetrievalReport):
    if isinstance(error, FetchTimeoutError):
        report.timed_out += 1
    else:
        report.failed += 1
    logger.warning(f"Skipping message: {error}")


async def _retrieve_concurrently(session, identifiers, time_budget, fetch_timeout, report) -> dict:
    # The session serves fetches in the order they queue, so the newest goes first
    tasks = {
        asyncio.create_task(session.fetch_body(uid, timeout=fetch_timeout)): uid
        for uid in reversed(identifiers)
    }
    done, pending = await asyncio.wait(tasks, timeout=time_budget)

    if pending:
        logger.warning(f"Retrieval budget of {time_budget:g}s exhausted, abandoning {len(pending)} fetches")
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        report.timed_out += len(pending)

    results = {}
    for task in done:
        try:
            results[tasks[task]] = task.result()
        except FetchError as e:
            _record_failure(e, report)
    return results


async def _retrieve_sequentially(session, identifiers, time_budget, fetch_timeout, report) -> dict:
    started = time.monotonic()
    newest_first = list(reversed(identifiers))
    results = {}

    for index, uid in enumerate(newest_first):
        fetch_deadline = None
        if index > 0:
            # The newest message is always attempted; the rest only while budget remains
            remaining = time_budget - (time.monotonic() - started)
            if remaining <= 0:
                skipped = len(newest_first) - index
                logger.warning(f"Retrieval budget of {time_budget:g}s exhausted, skipping {skipped} older emails")
                report.timed_out += skipped
                break
            # Also bounds the wait for a transport still busy with an abandoned fetch
            fetch_deadline = remaining
        try:
            results[uid] = await asyncio.wait_for(
                session.fetch_body(uid, timeout=fetch_timeout), timeout=fetch_deadline
            )
        except FetchError as e:
            _record_failure(e, report)
        except TimeoutError:
            skipped = len(newest_first) - index
            logger.warning(f"Retrieval budget of {time_budget:g}s exhausted, abandoning {skipped} older emails")
            report.timed_out += skipped
            break

    return results


def _truncate(body: Optional[str], limit: int) -> Optional[str]:
    if body is None or len(body) <= limit:
        return body
    return body[:limit] + TRUNCATION_MARKER


def parse(raw: bytes, max_body_chars: int = DEFAULT_MAX_BODY_CHARS) -> Optional[ParsedEmail]:
    """Parse one raw message, or None if it cannot be parsed"""
    try:
        parsed = parse_email(raw)
    except Exception as e:
        logger.warning(f"Dropping email that failed to parse: {e}")
        return None
    return parsed.model_copy(update={
        "text": _truncate(parsed.text, max_body_chars),
        "html": _truncate(parsed.html, max_body_chars),
    })


def build_response(parsed_emails: Sequence[Optional[ParsedEmail]], mailbox_size: int) -> EmailsResponse:
    """Envelope with the newest email first.

    ``parsed_emails`` is in fetch order (oldest first).
    """
    emails = [parsed for parsed in parsed_emails if parsed is not None]
    if not emails:
        if mailbox_size == 0:
            return EmailsResponse(emails=[], message=EMPTY_MAILBOX_MESSAGE)
        raise PartialFailureError(
            f"Could not retrieve any of the latest emails ({mailbox_size} in inbox)"
        )
    emails.reverse()
    return EmailsResponse(emails=emails, count=len(emails))


async def get_latest_emails(settings: Settings) -> EmailsResponse:
    """Open a session, fetch the newest emails and build the envelope"""
    requested = determine_requested_count(settings)
    logger.info(f"EMAIL_COUNT from env: {settings.email_count!r}, maxEmails: {requested}")

    report = RetrievalReport()
    async with await MailboxSession.open(settings.imap_config()) as session:
        await session.select_mailbox()
        all_identifiers = await session.list_all_message_identifiers()
        logger.info(f"Found {len(all_identifiers)} emails")

        if not all_identifiers:
            return build_response([], 0)

        targets = select_target_identifiers(all_identifiers, requested)
        report.requested = len(targets)
        logger.info(
            f"Requested {requested} emails, found {len(all_identifiers)} in inbox, "
            f"fetching {len(targets)} ({settings.fetch_strategy})"
        )
        bodies = await retrieve_bodies(
            session,
            targets,
            time_budget=settings.retrieval_budget,
            fetch_timeout=settings.fetch_timeout,
            strategy=settings.fetch_strategy,
            report=report,
        )

    parsed = [parse(raw, settings.max_body_chars) for raw in bodies]
    report.parsed = sum(1 for p in parsed if p is not None)
    report.parse_failed = len(parsed) - report.parsed
    logger.info(f"Retrieval report: {report.model_dump()} (dropped {report.dropped})")

    response = build_response(parsed, len(all_identifiers))
    logger.info(f"Successfully processed {response.count} emails (newest first)")
    return response
