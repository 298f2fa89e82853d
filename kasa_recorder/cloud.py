from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from . import protocol
from .errors import (
    AuthenticationError,
    CloudError,
    DeviceError,
    DeviceOffline,
    DeviceUnreachable,
    MalformedResponse,
    TransientCloudError,
)
from .metrics import DeviceIdentity
from .retry import retry_call

DEFAULT_CLOUD_URL = "https://wap.tplinkcloud.com"
DEFAULT_APP_TYPE = "Kasa_Android"

DEVICE_OFFLINE_CODES = (-20571,)
AUTH_ERROR_CODES = (-20580, -20600, -20601, -20651, -20675)
TRANSIENT_CODES = (-20002, -20003, -20004, -20005, -20006, -20007)

RETRYABLE = (requests.ConnectionError, requests.Timeout, TransientCloudError)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CloudSession:
    token: str
    url: str


def _classify(code: int, msg: str) -> Exception:
    if code in DEVICE_OFFLINE_CODES:
        return DeviceOffline(msg)
    if code in AUTH_ERROR_CODES:
        return AuthenticationError(msg, code)
    if code in TRANSIENT_CODES:
        return TransientCloudError(msg, code)
    return CloudError(msg, code)


class CloudClient:
    def __init__(
        self,
        url: str = DEFAULT_CLOUD_URL,
        timeout_seconds: float = 10.0,
        retries: int = 3,
        retry_delay_seconds: float = 0.0,
        app_type: str = DEFAULT_APP_TYPE,
        terminal_uuid: Optional[str] = None,
        http: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self.retries = int(retries)
        self.retry_delay_seconds = float(retry_delay_seconds)
        self.app_type = app_type
        self.terminal_uuid = terminal_uuid or str(uuid.uuid4())
        self.http = http or requests.Session()
        self.log = logger or log

    def _post(self, url: str, payload: Dict[str, Any], token: Optional[str] = None) -> Dict[str, Any]:
        params = {"token": token} if token else None
        try:
            resp = self.http.post(url, params=params, json=payload, timeout=self.timeout_seconds)
        except (requests.ConnectionError, requests.Timeout):
            raise
        except requests.RequestException as e:
            raise CloudError(f"{payload.get('method')}: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientCloudError(f"{payload.get('method')}: http {resp.status_code}")
        if resp.status_code >= 400:
            raise CloudError(f"{payload.get('method')}: http {resp.status_code} {resp.text[:200]}")

        try:
            body = resp.json()
        except ValueError as e:
            raise CloudError(f"{payload.get('method')}: response is not json") from e
        if not isinstance(body, dict):
            raise CloudError(f"{payload.get('method')}: unexpected response {body!r}")

        code = body.get("error_code", 0)
        if code != 0:
            raise _classify(int(code), f"{payload.get('method')}: {body.get('msg', 'error')} ({code})")

        result = body.get("result")
        return result if isinstance(result, dict) else {}

    def _call(self, url: str, payload: Dict[str, Any], token: Optional[str] = None) -> Dict[str, Any]:
        return retry_call(
            lambda: self._post(url, payload, token),
            RETRYABLE,
            retries=self.retries,
            delay_seconds=self.retry_delay_seconds,
            logger=self.log,
            what=str(payload.get("method")),
        )

    def authenticate(self, username: str, password: str) -> CloudSession:
        if not username or not password:
            raise AuthenticationError("cloud credentials missing")
        payload = {
            "method": "login",
            "params": {
                "appType": self.app_type,
                "cloudUserName": username,
                "cloudPassword": password,
                "terminalUUID": self.terminal_uuid,
            },
        }
        result = self._call(self.url, payload)
        token = result.get("token")
        if not token:
            raise AuthenticationError("login returned no token")
        self.log.info("authenticated to %s as %s", self.url, username)
        return CloudSession(token=str(token), url=self.url)

    def list_devices(self, session: CloudSession) -> List[DeviceIdentity]:
        result = self._call(session.url, {"method": "getDeviceList"}, session.token)
        out: List[DeviceIdentity] = []
        for item in result.get("deviceList") or []:
            if not isinstance(item, dict) or not item.get("deviceId"):
                continue
            out.append(
                DeviceIdentity(
                    alias=str(item.get("alias") or item["deviceId"]),
                    device_id=str(item["deviceId"]),
                    address=str(item.get("appServerUrl") or session.url),
                )
            )
        self.log.info("cloud lists %d devices", len(out))
        return out

    def query(self, session: CloudSession, device: DeviceIdentity, command: Dict[str, Any]) -> Dict[str, Any]:
        """Pass ``command`` through the relay to ``device`` and return the decoded device response."""
        request = protocol.scoped(command, device.id)
        payload = {
            "method": "passthrough",
            "params": {"deviceId": device.device_id, "requestData": json.dumps(request)},
        }
        url = (device.address or session.url).rstrip("/")
        try:
            result = self._call(url, payload, session.token)
        except RETRYABLE as e:
            raise DeviceUnreachable(f"device '{device.alias}' unreachable: {e}") from e
        except AuthenticationError:
            raise
        except CloudError as e:
            raise DeviceError(f"device '{device.alias}': {e}") from e

        data = result.get("responseData")
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError as e:
                raise MalformedResponse(f"device '{device.alias}' sent undecodable responseData") from e
        if not isinstance(data, dict):
            raise MalformedResponse(f"device '{device.alias}' sent no responseData")
        return data
