"""
Gmail API client wrapper for inbox-tally.

This module wraps the two Gmail endpoints the sync needs:
- users.messages.list, one cursor-paginated page at a time
- users.messages.get with format=metadata, for the sender of one message

It also provides:
- Retry logic with exponential backoff for rate limiting and 5xx responses
- Translation of HTTP errors into the inbox-tally error taxonomy
- Sender extraction from message headers

Gmail API Quotas:
- 250 quota units per user per second
- list(): 5 units, get(): 5 units
"""

import asyncio
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from inbox_tally.config import settings
from inbox_tally.credentials import CredentialManager
from inbox_tally.errors import (
    AuthFailure,
    FatalApiError,
    MessageNotFoundError,
    TransientApiError,
)

logger = logging.getLogger(__name__)

# "Display Name <user@example.com>" and bare "user@example.com"
ANGLE_ADDRESS_RE = re.compile(r"<\s*([\w.+\-]+@(?:[\w-]+\.)+[\w-]{2,})\s*>")
BARE_ADDRESS_RE = re.compile(r"([\w.+\-]+@(?:[\w-]+\.)+[\w-]{2,})")

# 403 responses carrying one of these reasons are rate limits, not auth problems
RATE_LIMIT_REASONS = ("rateLimitExceeded", "userRateLimitExceeded")


# ============================================================================
# Data Classes
# ============================================================================


@dataclass
class ListingEntry:
    """One message reference from a listing page."""
    id: str
    thread_id: Optional[str] = None


@dataclass
class ListingPage:
    """One page of the message listing."""
    entries: List[ListingEntry] = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass
class MessageMetadata:
    """Header fields of one message."""
    id: str
    sender: str  # normalised address, "" when the message has no sender header
    raw_sender: Optional[str] = None
    thread_id: Optional[str] = None
    subject: Optional[str] = None
    date: Optional[str] = None
    label_ids: List[str] = field(default_factory=list)


# ============================================================================
# Gmail Client
# ============================================================================


def _build_service(creds):
    return build("gmail", "v1", credentials=creds, cache_discovery=False)


class GmailClient:
    """
    Gmail API client with retry logic and error translation.

    Blocking google-api-python-client calls run in worker threads. Each
    thread builds its own service object because the underlying httplib2
    connection is not thread-safe.

    Attributes:
        credential_manager: Source of valid credentials
        user_id: Gmail user id ("me" for the authorized account)
        page_size: maxResults for each listing page
    """

    METADATA_HEADERS = ["From", "Return-Path", "Subject", "Date"]

    def __init__(
        self,
        credential_manager: CredentialManager,
        user_id: str = "me",
        page_size: Optional[int] = None,
        include_spam_trash: Optional[bool] = None,
        query: Optional[str] = None,
        max_attempts: Optional[int] = None,
        backoff_min: Optional[float] = None,
        backoff_max: Optional[float] = None,
        service_factory: Optional[Callable[[Any], Any]] = None,
    ):
        """
        Initialize Gmail client.

        Args:
            credential_manager: Injected credential manager
            user_id: Gmail user id (default: "me")
            page_size: Messages per listing page (default: SYNC_PAGE_SIZE)
            include_spam_trash: List spam and trash too
            query: Optional Gmail search query restricting the listing
            max_attempts: Attempts per call before a transient error
                propagates (default: SYNC_MAX_RETRIES)
            backoff_min: Minimum wait between attempts in seconds
            backoff_max: Maximum wait between attempts in seconds
            service_factory: Builds a Gmail service from credentials
        """
        self.credential_manager = credential_manager
        self.user_id = user_id
        self.page_size = page_size or settings.SYNC_PAGE_SIZE
        self.include_spam_trash = (
            settings.SYNC_INCLUDE_SPAM_TRASH if include_spam_trash is None else include_spam_trash
        )
        self.query = query if query is not None else settings.SYNC_QUERY
        self.max_attempts = max_attempts or settings.SYNC_MAX_RETRIES
        self.backoff_min = settings.SYNC_BACKOFF_MIN if backoff_min is None else backoff_min
        self.backoff_max = settings.SYNC_BACKOFF_MAX if backoff_max is None else backoff_max
        self.service_factory = service_factory or _build_service

        self._local = threading.local()
        self._resets = 0

    # ------------------------------------------------------------------------
    # Service management
    # ------------------------------------------------------------------------

    def get_service(self):
        """
        Get or create the authenticated service for the calling thread.

        Acquires credentials on every call so an expiring token is refreshed
        before the request goes out.

        Raises:
            AuthFailure: If credentials cannot be acquired
        """
        creds = self.credential_manager.acquire()
        key = (self.credential_manager.generation, self._resets)

        if getattr(self._local, "key", None) != key:
            self._local.service = self.service_factory(creds)
            self._local.key = key

        return self._local.service

    def reset_service(self) -> None:
        """Drop cached services so the next call rebuilds them."""
        self._resets += 1

    def _execute(self, make_request: Callable[[Any], Any], action: str, message_id: Optional[str] = None):
        """Build and execute one request in the current thread."""
        service = self.get_service()
        try:
            return make_request(service).execute()
        except HttpError as e:
            raise self._translate_http_error(e, action, message_id) from e
        except RefreshError as e:
            raise AuthFailure(f"Credentials rejected while trying to {action}: {str(e)}") from e
        except TransportError as e:
            raise TransientApiError(f"Network error while trying to {action}: {str(e)}") from e
        except OSError as e:
            # Socket timeouts, resets and TLS errors
            raise TransientApiError(f"Network error while trying to {action}: {str(e)}") from e
        except httplib2.HttpLib2Error as e:
            # DNS failures and dropped connections inside the service transport
            raise TransientApiError(f"Network error while trying to {action}: {str(e)}") from e

    async def _call(self, make_request: Callable[[Any], Any], action: str, message_id: Optional[str] = None):
        """
        Execute a request in a worker thread, retrying transient failures.

        Raises:
            TransientApiError: If every attempt failed transiently
            AuthFailure: If the credential was rejected
            FatalApiError: For permanent failures
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientApiError),
            wait=wait_exponential(multiplier=1, min=self.backoff_min, max=self.backoff_max),
            stop=stop_after_attempt(self.max_attempts),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await asyncio.to_thread(self._execute, make_request, action, message_id)

    @staticmethod
    def _translate_http_error(e: HttpError, action: str, message_id: Optional[str] = None) -> Exception:
        """Map an HttpError onto the inbox-tally error taxonomy."""
        status = int(e.resp.status)
        try:
            details = e.content.decode("utf-8", errors="replace")
        except AttributeError:
            details = str(e.content)

        if status == 429 or status >= 500:
            return TransientApiError(f"Gmail API unavailable ({status}) while trying to {action}")
        if status == 403 and any(reason in details for reason in RATE_LIMIT_REASONS):
            return TransientApiError("Gmail API rate limit exceeded")
        if status in (401, 403):
            return AuthFailure(f"Permission denied while trying to {action}: {str(e)}")
        if status == 404 and message_id:
            return MessageNotFoundError(message_id)
        return FatalApiError(f"Failed to {action}: {str(e)}")

    # ------------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------------

    async def list_page(self, cursor: Optional[str] = None) -> ListingPage:
        """
        Fetch one page of the message listing.

        Args:
            cursor: nextPageToken from the previous page, None for the first

        Returns:
            ListingPage with entries in Gmail's order and the next cursor

        Raises:
            TransientApiError: If the retry budget is exhausted
            AuthFailure: If the credential is rejected
            FatalApiError: For malformed responses and permanent rejections

        Example:
            >>> page = await client.list_page()
            >>> while page.next_cursor:
            ...     page = await client.list_page(page.next_cursor)
        """
        params: Dict[str, Any] = {
            "userId": self.user_id,
            "maxResults": self.page_size,
            "includeSpamTrash": self.include_spam_trash,
        }
        if self.query:
            params["q"] = self.query
        if cursor:
            params["pageToken"] = cursor

        response = await self._call(
            lambda service: service.users().messages().list(**params),
            "list messages",
        )
        page = self.parse_listing(response)
        logger.debug(f"Listed {len(page.entries)} messages, next cursor: {page.next_cursor}")
        return page

    @staticmethod
    def parse_listing(response: Any) -> ListingPage:
        """
        Convert a messages.list response into a ListingPage.

        Raises:
            FatalApiError: If the response does not have the expected shape
        """
        if not isinstance(response, dict):
            raise FatalApiError(f"Malformed listing response: {response!r}")

        # Gmail omits "messages" entirely on an empty page
        messages = response.get("messages") or []
        if not isinstance(messages, list):
            raise FatalApiError("Malformed listing response: 'messages' is not a list")

        entries = []
        for message in messages:
            if not isinstance(message, dict) or not message.get("id"):
                raise FatalApiError(f"Listing entry without id: {message!r}")
            entries.append(ListingEntry(id=message["id"], thread_id=message.get("threadId")))

        return ListingPage(entries=entries, next_cursor=response.get("nextPageToken") or None)

    # ------------------------------------------------------------------------
    # Message metadata
    # ------------------------------------------------------------------------

    async def get_metadata(self, message_id: str) -> MessageMetadata:
        """
        Fetch the headers of one message.

        Args:
            message_id: Gmail message ID

        Returns:
            MessageMetadata with the normalised sender

        Raises:
            MessageNotFoundError: If the message was deleted after listing
            TransientApiError: If the retry budget is exhausted
            AuthFailure: If the credential is rejected
            FatalApiError: For malformed responses and permanent rejections
        """
        response = await self._call(
            lambda service: service.users().messages().get(
                userId=self.user_id,
                id=message_id,
                format="metadata",
                metadataHeaders=self.METADATA_HEADERS,
            ),
            "get message",
            message_id=message_id,
        )
        if not isinstance(response, dict):
            raise FatalApiError(f"Malformed message response for {message_id}: {response!r}")

        headers = (response.get("payload") or {}).get("headers") or []
        raw_sender = self.get_sender_from_headers(headers)
        if raw_sender is None:
            logger.warning(f"Message {message_id} has no From or Return-Path header")

        return MessageMetadata(
            id=response.get("id") or message_id,
            thread_id=response.get("threadId"),
            sender=self.clean_sender(raw_sender) if raw_sender else "",
            raw_sender=raw_sender,
            subject=self.get_header(headers, "Subject"),
            date=self.get_header(headers, "Date"),
            label_ids=list(response.get("labelIds") or []),
        )

    # ------------------------------------------------------------------------
    # Header helpers
    # ------------------------------------------------------------------------

    @staticmethod
    def get_header(headers: List[Dict[str, str]], name: str) -> Optional[str]:
        """Return the first header value matching name, case-insensitively."""
        for header in headers:
            if header.get("name", "").lower() == name.lower():
                return header.get("value")
        return None

    @staticmethod
    def get_sender_from_headers(headers: List[Dict[str, str]]) -> Optional[str]:
        """
        Find the header identifying the sender.

        From is preferred; Return-Path is used when a message has no From.

        Example:
            >>> GmailClient.get_sender_from_headers([{"name": "Return-Path", "value": "<b@x.org>"}])
            '<b@x.org>'
        """
        for name in ("From", "Return-Path"):
            value = GmailClient.get_header(headers, name)
            if value:
                return value
        return None

    @staticmethod
    def clean_sender(value: str) -> str:
        """
        Extract the bare address from a sender header.

        Values that contain no recognisable address are returned unchanged.

        Example:
            >>> GmailClient.clean_sender('"John Doe" <John@Example.com>')
            'john@example.com'
        """
        value = value.strip()
        if "<" in value:
            match = ANGLE_ADDRESS_RE.search(value)
        else:
            match = BARE_ADDRESS_RE.fullmatch(value)

        if not match:
            return value
        return match.group(1).lower()
