"""
AWS Cost Explorer client for daily per-service spend.

Wraps ``GetCostAndUsage`` (DAILY, ``UnblendedCost``, grouped by ``SERVICE``)
and translates every failure into a :class:`ProviderError` through explicit
lookup tables. Botocore's own retries are disabled; transient network
failures get exactly one retry here and throttling is never retried.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from datetime import date, timedelta
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

from domain.exceptions import ProviderError
from domain.models.billing import DEFAULT_CURRENCY, TOTAL_DIMENSION, ProviderCostRow
from domain.models.connection import ProviderCredentials
from domain.models.sync import SyncErrorCode

logger = logging.getLogger(__name__)

METRIC = "UnblendedCost"
THROTTLE_RETRY_AFTER_SECONDS = 60

# Provider error code -> internal taxonomy. Anything absent is PROVIDER_ERROR.
ERROR_CODE_MAP: dict[str, SyncErrorCode] = {
    "UnrecognizedClientException": SyncErrorCode.INVALID_CREDENTIALS,
    "InvalidClientTokenId": SyncErrorCode.INVALID_CREDENTIALS,
    "SignatureDoesNotMatch": SyncErrorCode.INVALID_CREDENTIALS,
    "InvalidSignatureException": SyncErrorCode.INVALID_CREDENTIALS,
    "IncompleteSignature": SyncErrorCode.INVALID_CREDENTIALS,
    "MissingAuthenticationToken": SyncErrorCode.INVALID_CREDENTIALS,
    "ExpiredToken": SyncErrorCode.INVALID_CREDENTIALS,
    "ExpiredTokenException": SyncErrorCode.INVALID_CREDENTIALS,
    "AccessDenied": SyncErrorCode.ACCESS_DENIED,
    "AccessDeniedException": SyncErrorCode.ACCESS_DENIED,
    "UnauthorizedOperation": SyncErrorCode.ACCESS_DENIED,
    "OptInRequired": SyncErrorCode.ACCESS_DENIED,
    "Throttling": SyncErrorCode.THROTTLED,
    "ThrottlingException": SyncErrorCode.THROTTLED,
    "TooManyRequestsException": SyncErrorCode.THROTTLED,
    "RequestLimitExceeded": SyncErrorCode.THROTTLED,
    "LimitExceededException": SyncErrorCode.THROTTLED,
}

# Fallback on HTTP status when the error code is not in the table.
HTTP_STATUS_MAP: dict[int, SyncErrorCode] = {
    401: SyncErrorCode.INVALID_CREDENTIALS,
    403: SyncErrorCode.ACCESS_DENIED,
    429: SyncErrorCode.THROTTLED,
}

TRANSIENT_NETWORK_ERRORS: tuple[type[BotoCoreError], ...] = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)

ClientFactory = Callable[[ProviderCredentials], Any]


def map_client_error(exc: ClientError) -> ProviderError:
    error = exc.response.get("Error", {}) if isinstance(exc.response, dict) else {}
    code = str(error.get("Code") or "")
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")

    mapped = ERROR_CODE_MAP.get(code)
    if mapped is None and isinstance(status, int):
        mapped = HTTP_STATUS_MAP.get(status)
    mapped = mapped or SyncErrorCode.PROVIDER_ERROR

    return ProviderError(
        mapped,
        retry_after=THROTTLE_RETRY_AFTER_SECONDS if mapped == SyncErrorCode.THROTTLED else None,
        provider_code=code or None,
    )


def _parse_amount(metric: dict[str, Any] | None) -> tuple[float, str | None]:
    if not metric:
        return 0.0, None
    try:
        amount = float(metric.get("Amount", "0"))
    except (TypeError, ValueError):
        amount = 0.0
    if not math.isfinite(amount):
        amount = 0.0
    return amount, metric.get("Unit")


class CostExplorerClient:
    """
    Billing provider client backed by boto3.

    Parameters
    ----------
    region:
        Cost Explorer is global but boto3 needs a region; ``us-east-1``.
    connect_timeout, read_timeout:
        Socket timeouts in seconds for every call.
    client_factory:
        Builds the low-level ``ce`` client from credentials. Tests inject a
        stubbed client here.
    """

    def __init__(
        self,
        region: str = "us-east-1",
        connect_timeout: float = 5.0,
        read_timeout: float = 15.0,
        client_factory: ClientFactory | None = None,
        retry_delay: float = 0.5,
    ) -> None:
        self._region = region
        self._config = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"total_max_attempts": 1, "mode": "standard"},
        )
        self._client_factory = client_factory or self._default_client
        self._retry_delay = retry_delay

    def _default_client(self, credentials: ProviderCredentials) -> Any:
        return boto3.client(
            "ce",
            region_name=self._region,
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
            config=self._config,
        )

    # -- public API -------------------------------------------------------

    def fetch_daily_costs(
        self,
        credentials: ProviderCredentials,
        start: date,
        end_exclusive: date,
    ) -> list[ProviderCostRow]:
        """Return TOTAL and per-service rows for ``[start, end_exclusive)``.

        Per-service rows with zero or negative spend are dropped. When the
        grouped response carries no ``Total`` for a day, the TOTAL row is the
        sum of that day's groups.
        """
        client = self._client_factory(credentials)
        params: dict[str, Any] = {
            "TimePeriod": {"Start": start.isoformat(), "End": end_exclusive.isoformat()},
            "Granularity": "DAILY",
            "Metrics": [METRIC],
            "GroupBy": [{"Type": "DIMENSION", "Key": "SERVICE"}],
        }

        reported_totals: dict[date, tuple[float, str]] = {}
        group_sums: dict[date, float] = {}
        group_units: dict[date, str] = {}
        rows: list[ProviderCostRow] = []
        pages = 0

        next_token: str | None = None
        while True:
            if next_token:
                params["NextPageToken"] = next_token
            response = self._call(client, params)
            pages += 1

            for result in response.get("ResultsByTime", []):
                start_text = (result.get("TimePeriod") or {}).get("Start")
                if not start_text:
                    continue
                day = date.fromisoformat(start_text)
                group_sums.setdefault(day, 0.0)

                total_amount, total_unit = _parse_amount((result.get("Total") or {}).get(METRIC))
                if total_unit is not None:
                    reported_totals[day] = (total_amount, total_unit)

                for group in result.get("Groups", []):
                    keys = group.get("Keys") or []
                    if not keys or not keys[0]:
                        continue
                    amount, unit = _parse_amount((group.get("Metrics") or {}).get(METRIC))
                    unit = unit or total_unit or DEFAULT_CURRENCY
                    group_units.setdefault(day, unit)
                    # Credits and refunds arrive as negative groups.
                    if amount <= 0:
                        continue
                    group_sums[day] += amount
                    rows.append(ProviderCostRow(day, keys[0], amount, unit))

            next_token = response.get("NextPageToken")
            if not next_token:
                break

        for day in sorted(group_sums):
            if day in reported_totals:
                amount, unit = reported_totals[day]
            else:
                amount, unit = group_sums[day], group_units.get(day, DEFAULT_CURRENCY)
            rows.append(ProviderCostRow(day, TOTAL_DIMENSION, max(0.0, amount), unit))

        logger.info(
            "Fetched %d cost rows over %d page(s) for %s..%s",
            len(rows),
            pages,
            start.isoformat(),
            end_exclusive.isoformat(),
        )
        return rows

    def ping(self, credentials: ProviderCredentials, today: date) -> None:
        """Validate credentials and permissions with a single-day fetch."""
        client = self._client_factory(credentials)
        self._call(
            client,
            {
                "TimePeriod": {
                    "Start": (today - timedelta(days=1)).isoformat(),
                    "End": today.isoformat(),
                },
                "Granularity": "DAILY",
                "Metrics": [METRIC],
            },
        )

    # -- internals --------------------------------------------------------

    def _call(self, client: Any, params: dict[str, Any]) -> dict[str, Any]:
        attempts = 0
        while True:
            attempts += 1
            try:
                return client.get_cost_and_usage(**params)  # type: ignore[no-any-return]
            except ClientError as exc:
                error = map_client_error(exc)
                logger.warning(
                    "Cost Explorer call failed: %s (%s)", error.code.value, error.provider_code
                )
                raise error from exc
            except (NoCredentialsError, PartialCredentialsError) as exc:
                raise ProviderError(SyncErrorCode.INVALID_CREDENTIALS) from exc
            except TRANSIENT_NETWORK_ERRORS as exc:
                if attempts >= 2:
                    logger.warning("Cost Explorer unreachable after retry: %s", exc)
                    raise ProviderError(SyncErrorCode.PROVIDER_ERROR) from exc
                logger.info("Transient Cost Explorer network error, retrying once: %s", exc)
                time.sleep(self._retry_delay)
            except BotoCoreError as exc:
                logger.warning("Cost Explorer client error: %s", exc)
                raise ProviderError(SyncErrorCode.PROVIDER_ERROR) from exc
