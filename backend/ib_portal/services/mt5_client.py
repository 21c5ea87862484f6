"""
MT5 交易平台 API 客户端

接口：
1. ClientAuth/login - 账号密码换取 access token
2. tradehistory/trades-closed - 已平仓交易（分页）
3. tradehistory/trades - 旧版交易历史接口（字段命名不同）
4. Users/{accountId}/getClientProfile - 账号当前所在交易组

只负责请求和解析，不做重试：同步任务下一轮即是重试。
"""
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from ib_portal.config import settings

logger = logging.getLogger(__name__)

LOGIN_ENDPOINT = "api/client/ClientAuth/login"
TRADES_ENDPOINT = "api/client/tradehistory/trades"
TRADES_CLOSED_ENDPOINT = "api/client/tradehistory/trades-closed"
CLIENT_PROFILE_ENDPOINT = "api/Users/{account_id}/getClientProfile"

_TOKEN_FIELDS = ("accessToken", "AccessToken", "token", "Token", "access_token")


class MT5ApiError(Exception):
    """MT5 API 请求失败（网络、超时、非 2xx、响应无法解析）"""


class MT5AuthError(MT5ApiError):
    """账号无法登录（缺少密码、登录失败、响应里没有 token）"""


def _format_date(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def extract_access_token(payload: Any) -> Optional[str]:
    """从登录响应中取 token，兼容顶层 / data / result 三种结构"""
    if not isinstance(payload, dict):
        return None
    containers = [payload, payload.get("data"), payload.get("Data"), payload.get("result")]
    for container in containers:
        if not isinstance(container, dict):
            continue
        for field in _TOKEN_FIELDS:
            token = container.get(field)
            if token:
                return str(token)
    return None


class MT5ApiClient:
    """
    MT5 API 客户端

    一个实例可以被多个线程共享，token 不在实例上缓存，由调用方按账号持有。
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.MT5_API_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.MT5_API_TIMEOUT
        self.page_size = page_size or settings.MT5_PAGE_SIZE
        self.max_pages = max_pages or settings.MT5_MAX_PAGES
        self.session = session or requests.Session()

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _request(self, method: str, endpoint: str, token: Optional[str] = None, **kwargs) -> Any:
        headers = {"accept": "*/*"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        url = self._url(endpoint)
        started = time.monotonic()
        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.exceptions.Timeout as e:
            raise MT5ApiError(f"{method} {endpoint} 请求超时（{self.timeout}s）") from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            body = e.response.text[:200] if e.response is not None else ""
            raise MT5ApiError(f"{method} {endpoint} 返回 {status}: {body}") from e
        except requests.exceptions.RequestException as e:
            raise MT5ApiError(f"{method} {endpoint} 请求失败: {e}") from e

        logger.debug(f"[MT5] {method} {endpoint} {response.status_code} ({time.monotonic() - started:.2f}s)")
        try:
            return response.json()
        except ValueError as e:
            raise MT5ApiError(f"{method} {endpoint} 响应不是 JSON: {response.text[:100]}") from e

    def login(self, account_id: str, password: Optional[str]) -> str:
        """
        账号登录，返回 access token

        Raises:
            MT5AuthError: 未配置密码，或响应里没有 token
            MT5ApiError: 请求失败
        """
        if not password:
            raise MT5AuthError(f"账号 {account_id} 未配置密码")
        try:
            account_number = int(str(account_id))
        except ValueError as e:
            raise MT5AuthError(f"账号 {account_id} 不是有效的 MT5 登录号") from e

        payload = {
            "AccountId": account_number,
            "Password": password,
            "DeviceId": f"server_{account_id}_{int(time.time() * 1000)}",
            "DeviceType": "server",
        }
        data = self._request("POST", LOGIN_ENDPOINT, json=payload)
        token = extract_access_token(data)
        if not token:
            keys = list(data.keys()) if isinstance(data, dict) else type(data).__name__
            raise MT5AuthError(f"账号 {account_id} 登录响应中没有 token，字段: {keys}")
        return token

    def _walk_pages(self, endpoint: str, account_id: str, date_from: datetime, date_to: datetime,
                    token: Optional[str]) -> List[Dict]:
        items: List[Dict] = []
        for page in range(1, self.max_pages + 1):
            params = {
                "accountId": account_id,
                "fromDate": _format_date(date_from),
                "toDate": _format_date(date_to),
                "page": page,
                "pageSize": self.page_size,
            }
            data = self._request("GET", endpoint, token=token, params=params)
            if isinstance(data, list):
                page_items = data
            elif isinstance(data, dict):
                page_items = data.get("Items") or data.get("items") or []
            else:
                page_items = []
            items.extend(i for i in page_items if isinstance(i, dict))
            if len(page_items) < self.page_size:
                break
        else:
            logger.warning(f"[MT5] 账号 {account_id} 达到翻页上限 {self.max_pages}，窗口内可能还有数据")
        return items

    def get_closed_trades(self, account_id: str, date_from: datetime, date_to: datetime,
                          token: Optional[str] = None) -> List[Dict]:
        """trades-closed 接口：返回窗口内所有已平仓交易（DealId / VolumeLots 字段）"""
        return self._walk_pages(TRADES_CLOSED_ENDPOINT, account_id, date_from, date_to, token)

    def get_legacy_trades(self, account_id: str, date_from: datetime, date_to: datetime,
                          token: Optional[str] = None) -> List[Dict]:
        """旧版 trades 接口（OrderId / Volume 字段）"""
        return self._walk_pages(TRADES_ENDPOINT, account_id, date_from, date_to, token)

    def get_client_profile_group(self, account_id: str, token: Optional[str] = None) -> Optional[str]:
        """账号当前所在交易组路径，没有时返回 None"""
        data = self._request("GET", CLIENT_PROFILE_ENDPOINT.format(account_id=account_id), token=token)
        if not isinstance(data, dict):
            return None
        profile = data.get("Data") or data.get("data") or data
        if not isinstance(profile, dict):
            return None
        group = profile.get("Group") or profile.get("group")
        return str(group) if group else None
