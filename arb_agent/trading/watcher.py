from __future__ import annotations

import asyncio
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

import aiohttp

from arb_agent.common import log_event, sanitize_text

from .types import PairConfig, VenueQuote, VenueScan

DEFAULT_VENUE = "default"
RETRYABLE_STATUSES = {500, 502, 503, 504}


class QuoteRateLimitError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: float | None = None,
        provider: str = "quote",
    ) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds
        self.provider = provider


def _parse_retry_after_seconds(raw: str | None) -> float | None:
    if raw is None:
        return None

    value = raw.strip()
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        return None

    return seconds if seconds > 0 else None


def _preview(text: str, *, limit: int = 240) -> str:
    compact = " ".join(text.split())
    return sanitize_text(compact[:limit])


def _out_amount(payload: dict[str, Any]) -> int:
    raw = payload.get("amountOut", payload.get("outAmount"))
    if raw is None:
        raise RuntimeError(f"Unexpected quote response: {payload}")
    try:
        value = Decimal(str(raw))
        amount = int(value)
    except (InvalidOperation, ValueError, OverflowError) as error:
        raise RuntimeError(f"Quote amountOut is not an integer: {raw!r}") from error
    if value != amount:
        raise RuntimeError(f"Quote amountOut is not an integer: {raw!r}")
    if amount <= 0:
        raise RuntimeError(f"Quote returned a non-positive amountOut: {amount}")
    return amount


class QuoteWatcher:
    """Reads the venue price of one whole base unit from an HTTP quote API."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        api_base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 8.0,
        max_retries: int = 2,
        retry_backoff_seconds: float = 0.25,
    ) -> None:
        self._logger = logger
        self._api_base_url = api_base_url.rstrip("/")
        self._api_key = (api_key or "").strip()
        self._timeout_seconds = timeout_seconds
        self._max_retries = max(0, max_retries)
        self._retry_backoff_seconds = max(0.0, retry_backoff_seconds)
        self._session: aiohttp.ClientSession | None = None

    def _build_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def healthcheck(self) -> None:
        await self.connect()

    async def _request_quote(self, params: dict[str, str]) -> dict[str, Any]:
        await self.connect()
        if self._session is None:
            raise RuntimeError("Quote HTTP session is not initialized.")

        max_attempts = self._max_retries + 1
        for attempt in range(1, max_attempts + 1):
            try:
                async with self._session.get(
                    self._api_base_url,
                    params=params,
                    headers=self._build_headers(),
                ) as response:
                    status = response.status
                    retry_after_seconds = _parse_retry_after_seconds(response.headers.get("Retry-After"))
                    body = await response.text()
            except aiohttp.ClientError as error:
                if attempt < max_attempts:
                    log_event(
                        self._logger,
                        level="warning",
                        event="quote_network_retry",
                        message="Quote request failed; retrying",
                        attempt=attempt,
                        max_attempts=max_attempts,
                        error=str(error),
                    )
                    await asyncio.sleep(self._retry_backoff_seconds * attempt)
                    continue
                raise RuntimeError(f"Quote request failed: {error}") from error

            if status == 429:
                raise QuoteRateLimitError(
                    f"Quote API rate limited: body={_preview(body)!r}",
                    retry_after_seconds=retry_after_seconds,
                )

            if status in RETRYABLE_STATUSES and attempt < max_attempts:
                sleep_seconds = (
                    retry_after_seconds
                    if retry_after_seconds is not None
                    else self._retry_backoff_seconds * attempt
                )
                log_event(
                    self._logger,
                    level="warning",
                    event="quote_retry",
                    message="Quote endpoint returned retryable status",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    status=status,
                    retry_after_seconds=sleep_seconds,
                )
                await asyncio.sleep(sleep_seconds)
                continue

            if status in {401, 403}:
                raise RuntimeError("Quote API authentication failed. Set QUOTE_API_KEY for the quote provider.")
            if status >= 400:
                raise RuntimeError(f"Quote failed: status={status} body={_preview(body)!r}")

            try:
                data = json.loads(body)
            except json.JSONDecodeError as error:
                raise RuntimeError(
                    f"Quote endpoint returned non-JSON response: body={_preview(body)!r}"
                ) from error
            if not isinstance(data, dict):
                raise RuntimeError(f"Quote endpoint returned {type(data).__name__}, expected an object")
            if data.get("error"):
                raise RuntimeError(f"Quote API error: {data['error']}")
            return data

        raise RuntimeError("Quote request exhausted retries")

    async def fetch_venue_price(self, pair: PairConfig, venue: str | None = None) -> VenueQuote:
        amount_in = 10**pair.base_decimals
        params = {
            "tokenIn": pair.base_token,
            "tokenOut": pair.quote_token,
            "amountIn": str(amount_in),
        }
        if venue and venue != DEFAULT_VENUE:
            params["venue"] = venue

        payload = await self._request_quote(params)
        amount_out = _out_amount(payload)
        price = Decimal(amount_out).scaleb(-pair.quote_decimals)

        log_event(
            self._logger,
            level="debug",
            event="venue_quote",
            message="Venue quote received",
            pair=pair.symbol,
            venue=venue or DEFAULT_VENUE,
            price=str(price),
        )
        return VenueQuote(
            venue=venue or DEFAULT_VENUE,
            price=price,
            amount_in=amount_in,
            amount_out=amount_out,
            raw=payload,
        )

    async def fetch_all_venue_prices(self, pair: PairConfig, venues: Iterable[str]) -> VenueScan:
        names = list(dict.fromkeys(venues))
        results = await asyncio.gather(
            *(self.fetch_venue_price(pair, venue) for venue in names),
            return_exceptions=True,
        )

        quotes: list[VenueQuote] = []
        failures: dict[str, str] = {}
        rate_limits: list[QuoteRateLimitError] = []
        for venue, result in zip(names, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                failures[venue] = str(result)
                if isinstance(result, QuoteRateLimitError):
                    rate_limits.append(result)
                log_event(
                    self._logger,
                    level="warning",
                    event="venue_quote_failed",
                    message="Venue quote failed during scan",
                    pair=pair.symbol,
                    venue=venue,
                    error=str(result),
                )
                continue
            quotes.append(result)

        if not quotes and rate_limits:
            retry_after = [error.retry_after_seconds for error in rate_limits if error.retry_after_seconds]
            raise QuoteRateLimitError(
                f"Every quoted venue failed and {len(rate_limits)} were rate limited: {failures}",
                retry_after_seconds=max(retry_after) if retry_after else None,
                provider=rate_limits[0].provider,
            )

        scan = VenueScan(quotes=tuple(quotes), failures=failures)
        best_buy, best_sell = scan.best_buy, scan.best_sell
        log_event(
            self._logger,
            level="info",
            event="venue_scan",
            message="Venue price scan completed",
            pair=pair.symbol,
            venues=len(names),
            failed=len(failures),
            best_buy_venue=best_buy.venue if best_buy else None,
            best_sell_venue=best_sell.venue if best_sell else None,
            cross_venue_spread_bps=str(scan.cross_venue_spread_bps),
        )
        return scan
