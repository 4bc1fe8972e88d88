from __future__ import annotations

import asyncio
import logging
from typing import List, Mapping, Optional, Tuple

import aiohttp

from ..models import Candle

log = logging.getLogger("oanda")


def _rest_base(environment: str) -> str:
    return "https://api-fxtrade.oanda.com" if environment == "live" else "https://api-fxpractice.oanda.com"


def _candles_path(instrument: str) -> str:
    return f"/v3/instruments/{instrument}/candles"


def parse_candle(row: dict) -> Candle:
    # Accept-Datetime-Format: UNIX gives "1704067200.000000000"
    mid = row.get("mid") or {}
    return Candle(
        open_time_ms=int(round(float(row["time"]) * 1000)),
        open=float(mid["o"]),
        high=float(mid["h"]),
        low=float(mid["l"]),
        close=float(mid["c"]),
        volume=float(row.get("volume", 0)),
        complete=bool(row.get("complete", True)),
    )


class OandaProvider:
    def __init__(
        self,
        api_token: str,
        environment: str = "practice",
        *,
        rest_timeout_s: int = 20,
        rest_max_retries: int = 3,
        rest_backoff_s: float = 0.8,
        rest_conn_limit: int = 40,
        rest_conn_limit_per_host: int = 10,
        base_url: Optional[str] = None,
    ):
        self.api_token = (api_token or "").strip()
        self.environment = environment
        self.base_url = (base_url or _rest_base(environment)).rstrip("/")
        self.rest_timeout_s = rest_timeout_s

        # REST robustness
        self.rest_max_retries = max(1, int(rest_max_retries))
        self.rest_backoff_s = rest_backoff_s
        self.rest_conn_limit = rest_conn_limit
        self.rest_conn_limit_per_host = rest_conn_limit_per_host

        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self) -> None:
        """Close the shared aiohttp session (best-effort)."""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.rest_timeout_s,
            connect=min(10, self.rest_timeout_s),
            sock_connect=min(10, self.rest_timeout_s),
            sock_read=max(10, int(self.rest_timeout_s * 0.75)),
        )

    def _connector(self) -> aiohttp.TCPConnector:
        return aiohttp.TCPConnector(
            limit=self.rest_conn_limit,
            limit_per_host=self.rest_conn_limit_per_host,
            ttl_dns_cache=300,
            enable_cleanup_closed=True,
        )

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Accept-Datetime-Format": "UNIX",
            "Content-Type": "application/json",
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout(), connector=self._connector())
        return self._session

    async def fetch_candles(self, instrument: str, granularity: str, count: int) -> List[Candle]:
        if not self.api_token:
            raise RuntimeError("OANDA api token not configured (provider.api_token / OANDA_API_TOKEN)")

        url = self.base_url + _candles_path(instrument)
        params = {"count": int(count), "granularity": granularity, "price": "M"}

        sess = await self._get_session()

        backoff = float(self.rest_backoff_s)
        last_err: Optional[BaseException] = None
        data: dict = {}
        for attempt in range(1, self.rest_max_retries + 1):
            try:
                async with sess.get(url, params=params, headers=self._headers()) as resp:
                    if resp.status == 429:
                        txt = await resp.text()
                        retry_after = resp.headers.get("Retry-After")
                        sleep_s = float(retry_after) if (retry_after and retry_after.isdigit()) else backoff
                        log.warning(
                            "rest_rate_limited status=%s instrument=%s tf=%s sleep=%.1fs body=%s",
                            resp.status,
                            instrument,
                            granularity,
                            sleep_s,
                            txt[:200],
                        )
                        last_err = RuntimeError(f"OANDA candles rate limited: {resp.status}")
                        await asyncio.sleep(sleep_s)
                        backoff = min(backoff * 2.0, 20.0)
                        continue

                    data = await resp.json(content_type=None)
                    if resp.status != 200:
                        msg = data.get("errorMessage") if isinstance(data, dict) else None
                        raise RuntimeError(f"OANDA candles failed: {resp.status} {msg or ''}".strip())

                last_err = None
                break

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_err = e
                if attempt >= self.rest_max_retries:
                    break
                log.warning(
                    "rest_timeout_or_client_err attempt=%d/%d instrument=%s tf=%s backoff=%.1fs err=%s",
                    attempt,
                    self.rest_max_retries,
                    instrument,
                    granularity,
                    backoff,
                    e,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2.0, 20.0)

        if last_err is not None:
            raise last_err

        rows = data.get("candles") if isinstance(data, dict) else None
        if rows is None:
            msg = data.get("errorMessage") if isinstance(data, dict) else None
            raise RuntimeError(msg or "No candles returned")
        return [parse_candle(r) for r in rows]

    async def forward(
        self,
        method: str,
        path: str,
        query: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> Tuple[int, bytes, str]:
        """Relay a raw v20 request with the configured token. Returns (status, body, content type)."""
        if not self.api_token:
            raise RuntimeError("OANDA api token not configured (provider.api_token / OANDA_API_TOKEN)")
        url = self.base_url + "/" + path.lstrip("/")
        headers = dict(self._headers())
        headers["Accept-Datetime-Format"] = "RFC3339"
        sess = await self._get_session()
        async with sess.request(method, url, params=query or None, data=body or None, headers=headers) as resp:
            payload = await resp.read()
            log.info("proxy method=%s path=%s status=%s", method, path, resp.status)
            return resp.status, payload, resp.content_type
