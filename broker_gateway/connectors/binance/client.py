"""
Binance Futures REST Client.

============================================================
PURPOSE
============================================================
Thin signed REST client for the Binance USD-M Futures API.
Plays the role of the exchange SDK behind BinanceBroker.

SAFETY FEATURES:
- HMAC-SHA256 request signing
- Used-weight tracking from response headers
- Credentials masked in debug logs

Errors are raised raw (BinanceAPIError, aiohttp.ClientError,
asyncio.TimeoutError). Classification happens in the broker.

============================================================
"""

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from ...logging_utils import mask_headers, mask_params
from ...utils import RequestPacer


logger = logging.getLogger(__name__)


MAINNET_URL = "https://fapi.binance.com"
TESTNET_URL = "https://testnet.binancefuture.com"


class BinanceAPIError(Exception):
    """Error payload returned by the Binance API."""

    def __init__(self, code: int, message: str, http_status: Optional[int] = None):
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(f"<APIError> code={code}, msg={message}")


class BinanceFuturesClient:
    """
    Binance USD-M Futures REST client.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        testnet: bool = False,
        base_url: Optional[str] = None,
        recv_window: int = 5000,
        connect_timeout: float = 10.0,
        min_request_interval: float = 0.0,
    ):
        """
        Initialize client.

        Args:
            api_key: API key
            api_secret: API secret
            testnet: Use the futures testnet
            base_url: Override the REST endpoint
            recv_window: Signed request validity window in ms
            connect_timeout: TCP connect timeout in seconds
            min_request_interval: Minimum seconds between requests
        """
        self._api_key = api_key
        self._api_secret = api_secret
        self._base_url = base_url or (TESTNET_URL if testnet else MAINNET_URL)
        self._recv_window = recv_window
        self._connect_timeout = connect_timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._pacer = RequestPacer(min_request_interval)

        self.used_weight_1m = 0
        self.order_count_1m = 0

    @property
    def base_url(self) -> str:
        return self._base_url

    # --------------------------------------------------------
    # SESSION
    # --------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(sock_connect=self._connect_timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    # --------------------------------------------------------
    # REQUEST
    # --------------------------------------------------------

    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        params = dict(params)
        params["timestamp"] = str(int(time.time() * 1000))
        params["recvWindow"] = str(self._recv_window)
        query_string = urlencode(params)
        params["signature"] = hmac.new(
            self._api_secret.encode(),
            query_string.encode(),
            hashlib.sha256,
        ).hexdigest()
        return params

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        """
        Make API request.

        Raises:
            BinanceAPIError: On a non-2xx response
            aiohttp.ClientError: On transport failure
        """
        await self._pacer.wait()

        params = {k: v for k, v in (params or {}).items() if v is not None}
        if signed:
            params = self._sign(params)

        url = f"{self._base_url}{path}"
        headers = {"X-MBX-APIKEY": self._api_key}
        logger.debug(f"{method} {path} params={mask_params(params)} headers={mask_headers(headers)}")

        session = self._get_session()
        async with session.request(
            method,
            url,
            params=params if method == "GET" else None,
            data=params if method != "GET" else None,
            headers=headers,
        ) as response:
            self._update_rate_limits(response.headers)

            try:
                data = await response.json(content_type=None)
            except ValueError:
                data = None

            if response.status >= 400:
                if isinstance(data, dict):
                    code = int(data.get("code", -1))
                    msg = data.get("msg", "Unknown error")
                else:
                    code, msg = -1, response.reason or "Unknown error"
                raise BinanceAPIError(code, msg, http_status=response.status)

            return data

    def _update_rate_limits(self, headers) -> None:
        if "X-MBX-USED-WEIGHT-1M" in headers:
            self.used_weight_1m = int(headers["X-MBX-USED-WEIGHT-1M"])
        if "X-MBX-ORDER-COUNT-1M" in headers:
            self.order_count_1m = int(headers["X-MBX-ORDER-COUNT-1M"])

    # --------------------------------------------------------
    # MARKET
    # --------------------------------------------------------

    async def server_time(self) -> Dict[str, Any]:
        return await self.request("GET", "/fapi/v1/time")

    async def exchange_info(self) -> Dict[str, Any]:
        return await self.request("GET", "/fapi/v1/exchangeInfo")

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def account(self) -> Dict[str, Any]:
        return await self.request("GET", "/fapi/v2/account", signed=True)

    async def position_risk(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.request(
            "GET", "/fapi/v2/positionRisk", params={"symbol": symbol}, signed=True,
        )

    async def change_leverage(self, symbol: str, leverage: int) -> Dict[str, Any]:
        return await self.request(
            "POST",
            "/fapi/v1/leverage",
            params={"symbol": symbol, "leverage": leverage},
            signed=True,
        )

    async def change_margin_type(self, symbol: str, margin_type: str) -> Dict[str, Any]:
        return await self.request(
            "POST",
            "/fapi/v1/marginType",
            params={"symbol": symbol, "marginType": margin_type},
            signed=True,
        )

    async def change_position_mode(self, dual_side_position: bool) -> Dict[str, Any]:
        return await self.request(
            "POST",
            "/fapi/v1/positionSide/dual",
            params={"dualSidePosition": "true" if dual_side_position else "false"},
            signed=True,
        )

    async def get_position_mode(self) -> Dict[str, Any]:
        return await self.request("GET", "/fapi/v1/positionSide/dual", signed=True)

    async def income_history(
        self,
        symbol: Optional[str] = None,
        income_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        return await self.request(
            "GET",
            "/fapi/v1/income",
            params={"symbol": symbol, "incomeType": income_type, "limit": limit},
            signed=True,
        )

    async def api_trading_status(self) -> Dict[str, Any]:
        return await self.request("GET", "/fapi/v1/apiTradingStatus", signed=True)

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def new_order(self, **params: Any) -> Dict[str, Any]:
        return await self.request("POST", "/fapi/v1/order", params=params, signed=True)

    async def get_order(self, symbol: str, order_id: int) -> Dict[str, Any]:
        return await self.request(
            "GET", "/fapi/v1/order", params={"symbol": symbol, "orderId": order_id}, signed=True,
        )

    async def cancel_order(self, symbol: str, order_id: int) -> Dict[str, Any]:
        return await self.request(
            "DELETE", "/fapi/v1/order", params={"symbol": symbol, "orderId": order_id}, signed=True,
        )

    async def open_orders(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.request(
            "GET", "/fapi/v1/openOrders", params={"symbol": symbol}, signed=True,
        )

    async def all_orders(self, symbol: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self.request(
            "GET", "/fapi/v1/allOrders", params={"symbol": symbol, "limit": limit}, signed=True,
        )
