"""External Terminology Synchronizer.

Refreshes the mapping repository from the WHO ICD-11 API. A cycle walks the
authority page by page and merges every page into the repository, so
locally curated entries absent from the remote source survive a sync.
Only one cycle runs at a time; further triggers are skipped while it runs.
"""

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple
from urllib.parse import urlsplit

import httpx

from ayush_terminology.config import Settings
from ayush_terminology.terminology.models import (
    CodeEntry,
    CodeSystemId,
    Mapping,
    SyncState,
    SyncStatus,
)
from ayush_terminology.terminology.repository import MappingRepository
from ayush_terminology.utils.exceptions import (
    AuthFailure,
    NetworkFailure,
    RateLimited,
    SyncError,
)
from ayush_terminology.utils.logging import get_logger
from ayush_terminology.utils.retry import call_with_backoff

logger = get_logger(__name__)

# (system, entity reference, parent code)
PendingEntity = Tuple[CodeSystemId, str, Optional[str]]


@dataclass(frozen=True)
class SyncCursor:
    """Position of a breadth-first walk over the authority's hierarchy."""

    pending: Tuple[PendingEntity, ...]
    visited: frozenset = frozenset()
    fetched: int = 0


@dataclass
class AuthorityPage:
    """One page of entities fetched from the authority."""

    entries: List[CodeEntry] = field(default_factory=list)
    mappings: List[Mapping] = field(default_factory=list)
    next_cursor: Optional[SyncCursor] = None


class TerminologyAuthority(Protocol):
    """Remote source of code entries consumed by the synchronizer."""

    @property
    def source_version(self) -> str:
        ...

    def initial_cursor(self) -> Optional[SyncCursor]:
        ...

    async def fetch_page(self, cursor: SyncCursor) -> AuthorityPage:
        ...

    async def aclose(self) -> None:
        ...


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _label(value: Any) -> Optional[str]:
    """Extract the text of a JSON-LD language value."""
    if isinstance(value, dict):
        text = value.get("@value")
        return text.strip() if isinstance(text, str) and text.strip() else None
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class WhoIcdClient:
    """Async client for the WHO ICD-11 API.

    Entities are walked breadth first from configured root entities. Each
    call to :meth:`fetch_page` fetches up to ``page_size`` entities and
    returns the cursor for the next page; the input cursor is never
    modified, so a failed page can be retried from the same position.
    """

    def __init__(
        self,
        base_url: str = "https://id.who.int",
        token_url: Optional[str] = None,
        client_id: str = "",
        client_secret: str = "",
        release: str = "2024-01",
        linearization: str = "mms",
        language: str = "en",
        root_entities: Optional[Dict[CodeSystemId, List[str]]] = None,
        page_size: int = 50,
        max_entities: int = 5000,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize WHO ICD-11 client.

        Args:
            base_url: Base URL of the ICD API
            token_url: OAuth2 token endpoint
            client_id: OAuth2 client id; no token is requested when empty
            client_secret: OAuth2 client secret
            release: ICD-11 release id
            linearization: Linearization name
            language: Value of the Accept-Language header
            root_entities: Entity ids walked per target code system
            page_size: Entities fetched per page
            max_entities: Upper bound of entities fetched per cycle
            timeout: Per-request timeout in seconds
            transport: Optional transport, used by tests
        """
        self.base_url = base_url.rstrip("/")
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.release = release
        self.linearization = linearization
        self.language = language
        self.root_entities = root_entities or {CodeSystemId.ICD11_TM2: ["718687701"]}
        self.page_size = page_size
        self.max_entities = max_entities
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "WhoIcdClient":
        roots = {
            CodeSystemId.parse(system): list(ids)
            for system, ids in settings.who_icd_root_entities.items()
        }
        return cls(
            base_url=settings.who_icd_base_url,
            token_url=settings.who_icd_token_url,
            client_id=settings.who_icd_client_id,
            client_secret=settings.who_icd_client_secret,
            release=settings.who_icd_release,
            linearization=settings.who_icd_linearization,
            language=settings.who_icd_language,
            root_entities=roots,
            page_size=settings.sync_page_size,
            max_entities=settings.sync_max_entities,
            timeout=settings.sync_request_timeout_seconds,
            transport=transport,
        )

    @property
    def source_version(self) -> str:
        return f"icd11-{self.release}-{self.linearization}"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={
                    "Accept": "application/json",
                    "Accept-Language": self.language,
                    "API-Version": "v2",
                },
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def initial_cursor(self) -> Optional[SyncCursor]:
        pending = tuple(
            (system, entity_id, None)
            for system, ids in self.root_entities.items()
            for entity_id in ids
        )
        if not pending:
            return None
        return SyncCursor(pending=pending)

    async def fetch_page(self, cursor: SyncCursor) -> AuthorityPage:
        """Fetch the next page of entities.

        Raises:
            AuthFailure: If the API rejects the credentials
            RateLimited: If the API throttles the request
            NetworkFailure: On transport errors, timeouts or server errors
        """
        pending = list(cursor.pending)
        visited = set(cursor.visited)
        fetched = cursor.fetched
        entries: List[CodeEntry] = []

        batch = 0
        while pending and batch < self.page_size and fetched < self.max_entities:
            system, ref, parent_code = pending.pop(0)
            url = self._entity_url(ref)
            if url in visited:
                continue
            visited.add(url)
            batch += 1
            fetched += 1

            payload = await self._get_entity(url)
            if payload is None:
                continue
            entry = self._to_entry(system, payload, parent_code)
            if entry is not None:
                entries.append(entry)
            child_parent = entry.code if entry is not None else parent_code
            for child in payload.get("child", []) or []:
                pending.append((system, child, child_parent))

        next_cursor = None
        if pending and fetched < self.max_entities:
            next_cursor = SyncCursor(
                pending=tuple(pending), visited=frozenset(visited), fetched=fetched
            )
        elif pending:
            logger.warning(
                "sync_entity_limit_reached",
                max_entities=self.max_entities,
                remaining=len(pending),
            )
        return AuthorityPage(entries=entries, next_cursor=next_cursor)

    def _entity_url(self, ref: str) -> str:
        if ref.startswith("http://") or ref.startswith("https://"):
            return f"{self.base_url}{urlsplit(ref).path}"
        return (
            f"{self.base_url}/icd/release/11/{self.release}/"
            f"{self.linearization}/{ref}"
        )

    async def _get_entity(self, url: str) -> Optional[Dict[str, Any]]:
        client = await self._get_client()
        headers = await self._auth_headers()
        try:
            response = await client.get(url, headers=headers)
        except httpx.TimeoutException as e:
            raise NetworkFailure(f"Timed out fetching {url}") from e
        except httpx.TransportError as e:
            raise NetworkFailure(f"Failed to reach ICD API: {e}") from e

        if response.status_code == 404:
            logger.warning("sync_entity_not_found", url=url)
            return None
        self._raise_for_status(response)
        payload: Dict[str, Any] = response.json()
        return payload

    async def _auth_headers(self) -> Dict[str, str]:
        if not (self.client_id and self.client_secret and self.token_url):
            return {}
        now = datetime.now(timezone.utc)
        if self._token is None or (
            self._token_expires_at is not None and now >= self._token_expires_at
        ):
            await self._refresh_token()
        return {"Authorization": f"Bearer {self._token}"}

    async def _refresh_token(self) -> None:
        client = await self._get_client()
        try:
            response = await client.post(
                self.token_url or "",
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": "icdapi_access",
                    "grant_type": "client_credentials",
                },
            )
        except httpx.TimeoutException as e:
            raise NetworkFailure("Timed out requesting ICD API token") from e
        except httpx.TransportError as e:
            raise NetworkFailure(f"Failed to reach token endpoint: {e}") from e

        if response.status_code in (400, 401, 403):
            raise AuthFailure(f"Token request rejected: {response.status_code}")
        self._raise_for_status(response)

        body = response.json()
        self._token = body["access_token"]
        expires_in = float(body.get("expires_in", 3600))
        # refresh a minute early
        self._token_expires_at = datetime.now(timezone.utc) + timedelta(
            seconds=max(expires_in - 60, 0)
        )

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status in (401, 403):
            self._token = None
            raise AuthFailure(f"ICD API rejected credentials: {status}")
        if status == 429:
            raise RateLimited("ICD API rate limit exceeded", _retry_after(response))
        if status >= 500:
            raise NetworkFailure(f"ICD API server error: {status}")
        if status >= 400:
            raise SyncError(f"Unexpected ICD API response: {status}")

    @staticmethod
    def _to_entry(
        system: CodeSystemId, payload: Dict[str, Any], parent_code: Optional[str]
    ) -> Optional[CodeEntry]:
        code = payload.get("code") or payload.get("theCode")
        display = _label(payload.get("title"))
        if not code or not display:
            # blocks and grouping entities carry no code
            return None
        synonyms: List[str] = []
        for item in payload.get("synonym", []) or []:
            text = _label(item.get("label")) if isinstance(item, dict) else None
            if text and text not in synonyms:
                synonyms.append(text)
        return CodeEntry(
            system=system,
            code=code,
            display=display,
            definition=_label(payload.get("definition")),
            synonyms=tuple(synonyms),
            parent_code=parent_code,
        )


class SyncTriggerOutcome(str, Enum):
    """Outcome of a sync trigger."""

    STARTED = "started"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SyncTriggerResult:
    """Result of :meth:`TerminologySynchronizer.trigger_sync`."""

    outcome: SyncTriggerOutcome
    reason: Optional[str] = None

    @property
    def started(self) -> bool:
        return self.outcome is SyncTriggerOutcome.STARTED


ALREADY_RUNNING = "AlreadyRunning"


class TerminologySynchronizer:
    """Single-flight synchronizer merging authority pages into the repository."""

    def __init__(
        self,
        repository: MappingRepository,
        authority: TerminologyAuthority,
        max_attempts: int = 4,
        backoff_initial_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        backoff_jitter: bool = True,
        cycle_timeout_seconds: float = 900.0,
    ):
        """Initialize synchronizer.

        Args:
            repository: Repository receiving merged pages
            authority: Remote terminology authority
            max_attempts: Attempts per page before the cycle is abandoned
            backoff_initial_seconds: First retry delay
            backoff_max_seconds: Upper bound of any retry delay
            backoff_jitter: Whether retry delays are jittered
            cycle_timeout_seconds: Upper bound of a whole cycle
        """
        self.repository = repository
        self.authority = authority
        self.max_attempts = max_attempts
        self.backoff_initial_seconds = backoff_initial_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.backoff_jitter = backoff_jitter
        self.cycle_timeout_seconds = cycle_timeout_seconds
        self._state = SyncState()
        self._task: Optional["asyncio.Task[None]"] = None

    @classmethod
    def from_settings(
        cls,
        repository: MappingRepository,
        authority: TerminologyAuthority,
        settings: Settings,
    ) -> "TerminologySynchronizer":
        return cls(
            repository,
            authority,
            max_attempts=settings.sync_max_attempts,
            backoff_initial_seconds=settings.sync_backoff_initial_seconds,
            backoff_max_seconds=settings.sync_backoff_max_seconds,
            backoff_jitter=settings.sync_backoff_jitter,
            cycle_timeout_seconds=settings.sync_cycle_timeout_seconds,
        )

    @property
    def state(self) -> SyncState:
        """Copy of the current sync state."""
        return self._state.model_copy()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger_sync(self) -> SyncTriggerResult:
        """Start a sync cycle unless one is already running.

        Must be called from the event loop. The check and the transition to
        ``running`` happen without an intervening await.
        """
        if self.running:
            logger.info("sync_skipped", reason=ALREADY_RUNNING)
            return SyncTriggerResult(SyncTriggerOutcome.SKIPPED, ALREADY_RUNNING)

        self._state = self._state.model_copy(
            update={
                "status": SyncStatus.RUNNING,
                "last_started_at": datetime.now(timezone.utc),
                "attempts": 0,
            }
        )
        self._task = asyncio.create_task(self._run_cycle(), name="terminology-sync")
        return SyncTriggerResult(SyncTriggerOutcome.STARTED)

    async def run_sync(self) -> SyncTriggerResult:
        """Trigger a cycle and wait for it to finish."""
        result = self.trigger_sync()
        if result.started and self._task is not None:
            await asyncio.shield(self._task)
        return result

    async def stop(self) -> None:
        """Cancel the in-flight cycle and release the authority client."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self.authority.aclose()

    async def _run_cycle(self) -> None:
        started = time.monotonic()
        source_version = self.authority.source_version
        logger.info("sync_started", source_version=source_version)
        try:
            synced = await asyncio.wait_for(
                self._sync_pages(source_version), timeout=self.cycle_timeout_seconds
            )
        except asyncio.CancelledError:
            self._record_failure("Sync cancelled", started)
            raise
        except asyncio.TimeoutError:
            self._record_failure(
                f"Sync exceeded {self.cycle_timeout_seconds:.0f}s cycle timeout", started
            )
        except SyncError as e:
            self._record_failure(f"{e.code}: {e.message}", started)
        except Exception as e:
            logger.exception("sync_unexpected_error")
            self._record_failure(f"{type(e).__name__}: {e}", started)
        else:
            duration_ms = (time.monotonic() - started) * 1000
            self._state = self._state.model_copy(
                update={
                    "status": SyncStatus.IDLE,
                    "last_synced_at": datetime.now(timezone.utc),
                    "source_version": source_version,
                    "last_error": None,
                    "last_duration_ms": duration_ms,
                    "entries_synced": synced,
                }
            )
            logger.info(
                "sync_completed",
                source_version=source_version,
                entries_synced=synced,
                duration_ms=round(duration_ms, 1),
                snapshot_version=self.repository.version,
            )

    async def _sync_pages(self, source_version: str) -> int:
        synced = 0
        cursor = self.authority.initial_cursor()
        while cursor is not None:
            page = await call_with_backoff(
                self.authority.fetch_page,
                cursor,
                max_attempts=self.max_attempts,
                initial_delay=self.backoff_initial_seconds,
                max_delay=self.backoff_max_seconds,
                jitter=self.backoff_jitter,
                exceptions=(NetworkFailure, RateLimited),
                on_attempt=self._count_attempt,
            )
            if page.entries or page.mappings:
                await asyncio.to_thread(
                    self.repository.merge,
                    page.entries,
                    page.mappings,
                    keep_synonyms=True,
                    source=f"sync:{source_version}",
                )
                synced += len(page.entries)
                self._state = self._state.model_copy(update={"entries_synced": synced})
            cursor = page.next_cursor
        return synced

    def _count_attempt(self, attempt: int) -> None:
        self._state = self._state.model_copy(update={"attempts": self._state.attempts + 1})

    def _record_failure(self, error: str, started: float) -> None:
        duration_ms = (time.monotonic() - started) * 1000
        self._state = self._state.model_copy(
            update={
                "status": SyncStatus.FAILED,
                "last_error": error,
                "last_duration_ms": duration_ms,
            }
        )
        logger.error(
            "sync_failed",
            error=error,
            attempts=self._state.attempts,
            duration_ms=round(duration_ms, 1),
        )


class SyncScheduler:
    """Interval timer with a one-shot startup delay driving ``trigger_sync``."""

    def __init__(
        self,
        synchronizer: TerminologySynchronizer,
        interval_seconds: float = 24 * 60 * 60,
        startup_delay_seconds: Optional[float] = 5.0,
    ):
        """Initialize scheduler.

        Args:
            synchronizer: Synchronizer to trigger
            interval_seconds: Time between scheduled triggers; 0 disables them
            startup_delay_seconds: Delay of the first trigger; None waits a full interval
        """
        self.synchronizer = synchronizer
        self.interval_seconds = interval_seconds
        self.startup_delay_seconds = startup_delay_seconds
        self.triggers = 0
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="terminology-sync-scheduler")
        logger.info(
            "sync_scheduler_started",
            interval_seconds=self.interval_seconds,
            startup_delay_seconds=self.startup_delay_seconds,
        )

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

    async def _run(self) -> None:
        delay = self.startup_delay_seconds
        if delay is None:
            delay = self.interval_seconds
        while True:
            await asyncio.sleep(delay)
            self._fire()
            if self.interval_seconds <= 0:
                return
            delay = self.interval_seconds

    def _fire(self) -> None:
        self.triggers += 1
        try:
            result = self.synchronizer.trigger_sync()
        except Exception:
            logger.exception("sync_trigger_failed")
            return
        logger.debug("sync_triggered", outcome=result.outcome.value)
