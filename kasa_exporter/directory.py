from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

import requests

from .errors import DirectoryError
from .models import DeviceCandidate

log = logging.getLogger(__name__)

CLOUD_ENDPOINT = "https://wap.tplinkcloud.com/"

# Cloud error codes meaning the session token is no longer valid.
TOKEN_EXPIRED_CODES = (-20651, -20675)


class StaticDirectory:
    name = "static"

    def __init__(self, candidates: List[DeviceCandidate]) -> None:
        self.candidates = list(candidates)

    def fetch(self) -> List[DeviceCandidate]:
        return list(self.candidates)


class CloudDirectory:
    """Device list of a TP-Link cloud account.

    The cloud knows identity, alias and model but not the LAN address, so its
    candidates only enrich devices that discovery or static config located.
    """

    name = "cloud"

    def __init__(
        self,
        username: str,
        password: str,
        app_type: str = "kasa_exporter",
        endpoint: str = CLOUD_ENDPOINT,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.username = username
        self.password = password
        self.app_type = app_type
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = session or requests.Session()
        self.terminal_uuid = str(uuid.uuid4())
        self.token: Optional[str] = None

    def _call(self, method: str, params: Dict[str, Any], token: Optional[str] = None) -> Dict[str, Any]:
        query = {"token": token} if token else None
        try:
            resp = self.session.post(
                self.endpoint,
                params=query,
                json={"method": method, "params": params},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except requests.exceptions.RequestException as e:
            raise DirectoryError(f"cloud {method} failed: {e}") from e
        except ValueError as e:
            raise DirectoryError(f"cloud {method} returned invalid json: {e}") from e

        if not isinstance(body, dict):
            raise DirectoryError(f"cloud {method} returned a non-object body")
        return body

    def login(self) -> str:
        body = self._call(
            "login",
            {
                "appType": self.app_type,
                "cloudUserName": self.username,
                "cloudPassword": self.password,
                "terminalUUID": self.terminal_uuid,
            },
        )
        result = body.get("result")
        if body.get("error_code", 0) != 0 or not isinstance(result, dict) or not result.get("token"):
            raise DirectoryError(f"cloud login failed: code={body.get('error_code')} message={body.get('msg', '')}")
        self.token = str(result["token"])
        log.info("cloud login ok user=%s", self.username)
        return self.token

    def _device_list(self) -> Dict[str, Any]:
        if self.token is None:
            self.login()
        body = self._call("getDeviceList", {}, token=self.token)
        if body.get("error_code") in TOKEN_EXPIRED_CODES:
            log.info("cloud token expired, logging in again")
            self.login()
            body = self._call("getDeviceList", {}, token=self.token)
        return body

    def fetch(self) -> List[DeviceCandidate]:
        body = self._device_list()
        if body.get("error_code", 0) != 0:
            raise DirectoryError(f"cloud getDeviceList failed: code={body.get('error_code')} message={body.get('msg', '')}")
        result = body.get("result")
        entries = result.get("deviceList") if isinstance(result, dict) else None
        if not isinstance(entries, list):
            raise DirectoryError("cloud getDeviceList returned no deviceList")

        out: List[DeviceCandidate] = []
        for e in entries:
            if not isinstance(e, dict) or not e.get("deviceId"):
                continue
            out.append(
                DeviceCandidate(
                    device_id=str(e["deviceId"]),
                    alias=str(e.get("alias", "")),
                    address=None,
                    model=str(e.get("deviceModel", "")),
                    hw_ver=str(e.get("deviceHwVer", "")),
                    source=self.name,
                )
            )
        return out
