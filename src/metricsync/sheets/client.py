"""
Async Google Sheets fetcher.

google-api-python-client is synchronous, so each call runs in the default
thread pool and is bounded with asyncio.wait_for. A timed-out call is
abandoned rather than cancelled: the worker thread finishes on its own and
its result is discarded.

Every failure leaves this module as a FetchError whose kind the executor
records per sheet:

    401 / 403, expired token   unauthorized
    404                        not_found
    429                        rate_limited
    other HTTP / transport     network
    slower than the timeout    timeout
"""
import asyncio
import logging
from typing import Any, Callable, List, Optional

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from metricsync.config import get_settings
from metricsync.sync.errors import FetchError, FetchErrorKind

logger = logging.getLogger(__name__)


def quote_sheet_title(title: str) -> str:
    """Quote a worksheet title for A1 notation ("Q1 Ads" → "'Q1 Ads'")."""
    safe = (title or "").strip()
    if not safe:
        raise ValueError("Worksheet title must not be empty")
    return "'" + safe.replace("'", "''") + "'"


def a1_range(title: str, last_column: str = "Z", max_rows: int = 1000) -> str:
    """Full-width range from the header row down: 'Sheet1'!A1:Z1000."""
    return f"{quote_sheet_title(title)}!A1:{last_column}{max_rows}"


def _build_service(credentials):
    return build("sheets", "v4", credentials=credentials, cache_discovery=False)


def _status_of(exc: HttpError) -> int:
    status = getattr(exc, "status_code", None)
    if status is None and getattr(exc, "resp", None) is not None:
        status = exc.resp.status
    try:
        return int(status)
    except (TypeError, ValueError):
        return 0


def fetch_error_from_http(exc: HttpError) -> FetchError:
    status = _status_of(exc)
    if status in (401, 403):
        kind = FetchErrorKind.UNAUTHORIZED
    elif status == 404:
        kind = FetchErrorKind.NOT_FOUND
    elif status == 429:
        kind = FetchErrorKind.RATE_LIMITED
    else:
        kind = FetchErrorKind.NETWORK
    return FetchError(kind, f"Google Sheets returned HTTP {status or '?'}: {exc}")


class GoogleSheetsFetcher:
    """
    Fetches a worksheet's values as a list of rows (row 1 is the header).

    Stateless apart from settings; one instance is shared by every project.
    """

    def __init__(
        self,
        *,
        timeout_seconds: Optional[float] = None,
        last_column: Optional[str] = None,
        max_rows: Optional[int] = None,
        service_factory: Optional[Callable[[Any], Any]] = None,
    ):
        """
        Args:
            timeout_seconds: Per-fetch bound; defaults to settings.fetch_timeout_seconds.
            last_column: Right edge of the fetched range; defaults to settings.sheet_last_column.
            max_rows: Bottom edge of the fetched range; defaults to settings.sheet_max_rows.
            service_factory: credentials → Sheets service. Tests pass a MagicMock factory.
        """
        settings = get_settings()
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.fetch_timeout_seconds
        self._last_column = last_column or settings.sheet_last_column
        self._max_rows = max_rows or settings.sheet_max_rows
        self._service_factory = service_factory or _build_service

    async def _run(self, fn, *args, **kwargs):
        """Run a sync googleapiclient call in the thread pool."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))

    async def fetch_rows(self, spreadsheet_id: str, sheet_name: str, credentials) -> List[List[Any]]:
        """
        Return every row of `sheet_name`, header included.

        Raises:
            FetchError: for any failure, classified by kind.
        """
        if credentials is None:
            raise FetchError(FetchErrorKind.UNAUTHORIZED, "Project has no Google connection")
        if not getattr(credentials, "token", None) or getattr(credentials, "expired", False):
            raise FetchError(FetchErrorKind.UNAUTHORIZED, "Google access token expired; reconnect the project")

        try:
            rng = a1_range(sheet_name, self._last_column, self._max_rows)
        except ValueError as exc:
            raise FetchError(FetchErrorKind.NOT_FOUND, str(exc)) from exc

        try:
            return await asyncio.wait_for(
                self._run(self._get_values, spreadsheet_id, rng, credentials),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Fetch of %s/%s timed out after %ss", spreadsheet_id, sheet_name, self._timeout)
            raise FetchError(
                FetchErrorKind.TIMEOUT, f"Fetching {sheet_name!r} took longer than {self._timeout}s"
            ) from None

    def _get_values(self, spreadsheet_id: str, rng: str, credentials) -> List[List[Any]]:
        try:
            service = self._service_factory(credentials)
            response = (
                service.spreadsheets()
                .values()
                .get(spreadsheetId=spreadsheet_id, range=rng, majorDimension="ROWS")
                .execute()
            )
        except HttpError as exc:
            raise fetch_error_from_http(exc) from exc
        except RefreshError as exc:
            raise FetchError(FetchErrorKind.UNAUTHORIZED, str(exc)) from exc
        except (TransportError, httplib2.HttpLib2Error, OSError) as exc:
            raise FetchError(FetchErrorKind.NETWORK, str(exc)) from exc
        return [list(row) for row in response.get("values", [])]
