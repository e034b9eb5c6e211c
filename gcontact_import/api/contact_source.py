"""
Read-only Google People API adapter.

Provides the ContactSource port and its People API implementation:
- Paginated contact listing with sync token support
- Contact group listing with member ids
- Every request routed through the RateLimiter
- Bounded retry with exponential backoff for 5xx and network failures

The adapter has no create, update or delete operations, and the
credentials it is built with carry only the ``contacts.readonly`` scope.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from gcontact_import.errors import (
    AuthExpired,
    NetworkTransient,
    ProviderThrottled,
    RecordValidationError,
    SourceError,
    SyncRecordError,
)
from gcontact_import.ratelimit.limiter import RateLimiter
from gcontact_import.sync.contact import ContactRecord
from gcontact_import.sync.group import RemoteGroup

# Person fields requested from the API
PERSON_FIELDS = ",".join(
    [
        "names",
        "emailAddresses",
        "phoneNumbers",
        "organizations",
        "addresses",
        "biographies",
        "urls",
        "memberships",
        "metadata",
    ]
)

GROUP_FIELDS = "name,groupType,memberCount,metadata"

# People API limits
MAX_PAGE_SIZE = 1000
MAX_GROUP_BATCH = 200
MAX_GROUP_MEMBERS = 1000

DEFAULT_FULL_PAGE_SIZE = 1000
DEFAULT_INCREMENTAL_PAGE_SIZE = 100
DEFAULT_NETWORK_RETRIES = 3
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 30.0  # seconds

THROTTLE_REASONS = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}
)
THROTTLE_MESSAGES = ("rate limit", "quota exceeded", "too many requests")
EXPIRED_TOKEN_MARKERS = ("EXPIRED_SYNC_TOKEN", "sync token", "page token")

logger = logging.getLogger(__name__)


class _ResumeInvalidated(Exception):
    """Internal signal: the provider no longer accepts the resume token."""


@dataclass
class PageResult:
    """
    One page of provider records.

    Exactly one continuation is meaningful: ``next_page_token`` while more
    pages remain, ``new_sync_token`` on the last page, or
    ``resume_invalidated`` when the provider rejected the token the page
    was requested with.

    Attributes:
        records: Normalized records, including provider deletions
        next_page_token: Token for the next page, if any
        new_sync_token: Sync token issued with the last page
        resume_invalidated: True if the sync or page token was rejected
        errors: Records that could not be parsed
    """

    records: list[ContactRecord] = field(default_factory=list)
    next_page_token: str | None = None
    new_sync_token: str | None = None
    resume_invalidated: bool = False
    errors: list[SyncRecordError] = field(default_factory=list)

    @classmethod
    def invalidated(cls) -> PageResult:
        return cls(resume_invalidated=True)

    @property
    def is_last(self) -> bool:
        return not self.resume_invalidated and not self.next_page_token


class ContactSource(Protocol):
    """Read-only, paginated view of a user's provider contacts."""

    async def list_page(
        self, page_token: str | None = None, sync_token: str | None = None
    ) -> PageResult: ...

    async def list_groups(self) -> list[RemoteGroup]: ...


def _error_details(error: HttpError) -> tuple[set[str], str]:
    """Extract error reasons and a lowercase message from an HttpError."""
    reasons: set[str] = set()
    message = str(error)
    try:
        payload = json.loads(error.content.decode("utf-8"))
    except (ValueError, AttributeError, UnicodeDecodeError):
        return reasons, message.lower()

    body = payload.get("error", {}) if isinstance(payload, dict) else {}
    message = f"{message} {body.get('message', '')} {body.get('status', '')}"
    for item in body.get("errors", []):
        if item.get("reason"):
            reasons.add(item["reason"])
    for detail in body.get("details", []):
        if detail.get("reason"):
            reasons.add(detail["reason"])
    return reasons, message.lower()


def is_throttling_error(error: HttpError) -> bool:
    """True when an HttpError is the provider's rate limit signal."""
    status = error.resp.status
    reasons, message = _error_details(error)
    if status == 429 or reasons & THROTTLE_REASONS:
        return True
    return status == 403 and any(m in message for m in THROTTLE_MESSAGES)


def is_expired_token_error(error: HttpError) -> bool:
    """True when an HttpError rejects a sync or page token."""
    status = error.resp.status
    if status == 410:
        return True
    if status != 400:
        return False
    reasons, message = _error_details(error)
    return any(
        marker in reasons or marker.lower() in message
        for marker in EXPIRED_TOKEN_MARKERS
    )


class PeopleContactSource:
    """
    ContactSource over the Google People API.

    Attributes:
        limiter: RateLimiter every request goes through
        full_page_size: Page size when listing without a sync token
        incremental_page_size: Page size when listing with a sync token

    Usage:
        source = PeopleContactSource.from_access_token(token, limiter)

        page = await source.list_page()
        while page.next_page_token:
            page = await source.list_page(page_token=page.next_page_token)

        groups = await source.list_groups()
    """

    def __init__(
        self,
        credentials: Credentials,
        limiter: RateLimiter,
        full_page_size: int = DEFAULT_FULL_PAGE_SIZE,
        incremental_page_size: int = DEFAULT_INCREMENTAL_PAGE_SIZE,
        network_retries: int = DEFAULT_NETWORK_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the adapter.

        Args:
            credentials: OAuth2 credentials with the contacts.readonly scope
            limiter: RateLimiter for the credentials' user
            full_page_size: Records per page during full sync (max 1000)
            incremental_page_size: Records per page during incremental sync
            network_retries: Attempts for 5xx and network failures
            initial_retry_delay: First retry delay in seconds
            max_retry_delay: Upper bound on a retry delay in seconds
            sleep: Coroutine used to wait between retries
        """
        self.credentials = credentials
        self.limiter = limiter
        self.full_page_size = min(full_page_size, MAX_PAGE_SIZE)
        self.incremental_page_size = min(incremental_page_size, MAX_PAGE_SIZE)
        self.network_retries = network_retries
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self.sleep = sleep
        self._service: Any = None

    @classmethod
    def from_access_token(
        cls, access_token: str, limiter: RateLimiter, **kwargs: Any
    ) -> PeopleContactSource:
        return cls(Credentials(token=access_token), limiter, **kwargs)

    @property
    def service(self) -> Any:
        """
        Get or create the Google API service object.

        Raises:
            SourceError: If the service cannot be created
        """
        if self._service is None:
            try:
                self._service = build(
                    "people", "v1", credentials=self.credentials, cache_discovery=False
                )
                logger.debug("Created People API service")
            except Exception as e:
                logger.error(f"Failed to create People API service: {e}")
                raise SourceError(f"Failed to create API service: {e}") from e
        return self._service

    # =========================================================================
    # Request execution
    # =========================================================================

    async def _execute(self, request: Any, operation_name: str) -> Any:
        """
        Execute one API request with bounded retry for transient failures.

        The caller holds a slot for the first attempt; each retry claims
        another one from the limiter.

        Throttling surfaces as ProviderThrottled for the RateLimiter to
        handle; a rejected token surfaces as _ResumeInvalidated.

        Raises:
            AuthExpired: On HTTP 401
            NetworkTransient: If 5xx or network failures outlive the retries
            SourceError: For any other HTTP error
        """
        delay = self.initial_retry_delay

        for attempt in range(1, self.network_retries + 1):
            try:
                return await asyncio.to_thread(request.execute)

            except HttpError as e:
                status_code = e.resp.status

                if is_throttling_error(e):
                    raise ProviderThrottled(f"{operation_name} throttled: {e}") from e

                if is_expired_token_error(e):
                    raise _ResumeInvalidated(str(e)) from e

                if status_code == 401:
                    raise AuthExpired(f"{operation_name} unauthorized") from e

                if status_code < 500:
                    logger.error(
                        f"{operation_name} failed with status {status_code}: {e}"
                    )
                    raise SourceError(f"{operation_name} failed: {e}") from e

                failure: Exception = e

            except (OSError, TimeoutError) as e:
                failure = e

            if attempt == self.network_retries:
                raise NetworkTransient(
                    f"{operation_name} failed after {attempt} attempts: {failure}"
                ) from failure

            logger.warning(
                f"{operation_name} transient failure ({failure}), retrying in "
                f"{delay:.1f}s (attempt {attempt}/{self.network_retries})"
            )
            await self.sleep(delay)
            delay = min(delay * 2, self.max_retry_delay)
            # A retry is another provider request and needs its own slot
            await self.limiter.wait_for_slot()

        raise NetworkTransient(f"{operation_name} failed after all retries")

    async def _call(
        self, build_request: Callable[[], Any], operation_name: str
    ) -> Any:
        """Run a request through the rate limiter."""
        return await self.limiter.execute_request(
            lambda: self._execute(build_request(), operation_name)
        )

    # =========================================================================
    # Contacts
    # =========================================================================

    async def list_page(
        self, page_token: str | None = None, sync_token: str | None = None
    ) -> PageResult:
        """
        Fetch one page of connections.

        Without a sync token this lists every contact and requests a sync
        token on the last page. With a sync token it lists only changes,
        including deletions (``metadata.deleted``).

        Args:
            page_token: Page to fetch; None for the first page
            sync_token: Token from a previous completed sync

        Returns:
            PageResult; ``resume_invalidated`` is set when the provider
            rejected the sync token (HTTP 410) or page token
        """
        params: dict[str, Any] = {
            "resourceName": "people/me",
            "personFields": PERSON_FIELDS,
            "pageSize": (
                self.incremental_page_size if sync_token else self.full_page_size
            ),
            "requestSyncToken": True,
        }
        if page_token:
            params["pageToken"] = page_token
        if sync_token:
            params["syncToken"] = sync_token

        try:
            response = await self._call(
                lambda: self.service.people().connections().list(**params),
                "list_contacts",
            )
        except _ResumeInvalidated as e:
            logger.warning(f"Provider rejected resume token: {e}")
            return PageResult.invalidated()

        result = PageResult(
            next_page_token=response.get("nextPageToken"),
            new_sync_token=response.get("nextSyncToken"),
        )
        for person in response.get("connections", []):
            try:
                result.records.append(ContactRecord.from_api_response(person))
            except (KeyError, TypeError, AttributeError, ValueError) as e:
                external_id = (
                    person.get("resourceName") if isinstance(person, dict) else None
                )
                logger.warning(f"Failed to parse contact {external_id}: {e}")
                result.errors.append(
                    SyncRecordError.from_exception(
                        RecordValidationError(f"Unparseable record: {e}", external_id)
                    )
                )

        logger.debug(
            f"Listed page with {len(result.records)} records "
            f"(next_page={bool(result.next_page_token)}, "
            f"sync_token={bool(result.new_sync_token)})"
        )
        return result

    # =========================================================================
    # Groups
    # =========================================================================

    async def list_groups(self) -> list[RemoteGroup]:
        """
        List the user's own contact groups with their member ids.

        System groups are filtered out. Member ids are fetched with
        batchGet, up to 1000 members per group.

        Returns:
            List of RemoteGroup
        """
        groups: list[RemoteGroup] = []
        page_token: str | None = None

        while True:
            params: dict[str, Any] = {
                "pageSize": MAX_PAGE_SIZE,
                "groupFields": GROUP_FIELDS,
            }
            if page_token:
                params["pageToken"] = page_token

            try:
                response = await self._call(
                    lambda p=params: self.service.contactGroups().list(**p),
                    "list_contact_groups",
                )
            except _ResumeInvalidated as e:
                raise SourceError(f"Group listing rejected page token: {e}") from e

            for data in response.get("contactGroups", []):
                group = RemoteGroup.from_api_response(data)
                if group.is_user_group() and not group.deleted:
                    groups.append(group)

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        await self._fill_members(groups)
        logger.info(f"Listed {len(groups)} contact groups")
        return groups

    async def _fill_members(self, groups: list[RemoteGroup]) -> None:
        with_members = [g for g in groups if g.member_count > 0]
        by_id = {g.external_id: g for g in with_members}

        for start in range(0, len(with_members), MAX_GROUP_BATCH):
            batch = with_members[start : start + MAX_GROUP_BATCH]
            chunk = [g.external_id for g in batch]
            try:
                response = await self._call(
                    lambda c=chunk: self.service.contactGroups().batchGet(
                        resourceNames=c,
                        maxMembers=MAX_GROUP_MEMBERS,
                        groupFields=GROUP_FIELDS,
                    ),
                    "batch_get_contact_groups",
                )
            except _ResumeInvalidated as e:
                raise SourceError(f"Group member lookup failed: {e}") from e

            for item in response.get("responses", []):
                data = item.get("contactGroup") or {}
                group = by_id.get(data.get("resourceName", ""))
                if group is not None:
                    group.member_external_ids = list(
                        data.get("memberResourceNames", [])
                    )
