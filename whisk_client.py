from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

import httpx

log = logging.getLogger(__name__)

DEFAULT_WSKPROPS_PATH = Path.home() / ".wskprops"
ACTION_TIMEOUT_MS = 300000
ERROR_BODY_CHARS = 2000


def now_unix_us() -> int:
    return int(time.time() * 1_000_000)


class WhiskError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ActivationNotFound(WhiskError):
    """The activation record is not available yet."""


class InvocationService(Protocol):
    """Invocation capability the load engine drives.

    Implementations must be safe to call concurrently from many tasks
    sharing one instance.
    """

    async def create_action(self, name: str, kind: str, image: str, concurrency: int) -> None:
        ...

    async def invoke_action(self, name: str, payload: Mapping[str, Any]) -> tuple[str, str]:
        ...

    async def fetch_result(self, activation_id: str) -> str:
        ...

    async def delete_action(self, name: str) -> None:
        ...


def _read_wskprops(path: Path) -> dict[str, str]:
    props: dict[str, str] = {}
    if not path.exists():
        return props
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            value = line.strip()
            if not value or value.startswith("#") or "=" not in value:
                continue
            key, _, raw = value.partition("=")
            props[key.strip().upper()] = raw.strip()
    return props


@dataclass(frozen=True)
class WhiskConfig:
    api_host: str
    auth: str
    namespace: str = "_"
    insecure: bool = False
    timeout_s: float = 300.0

    @classmethod
    def load(
        cls,
        props_path: Optional[Path] = None,
        insecure: bool = False,
        timeout_s: float = 300.0,
    ) -> "WhiskConfig":
        props = _read_wskprops(props_path or DEFAULT_WSKPROPS_PATH)
        api_host = os.environ.get("WHISK_APIHOST") or props.get("APIHOST")
        auth = os.environ.get("WHISK_AUTH") or props.get("AUTH")
        namespace = os.environ.get("WHISK_NAMESPACE") or props.get("NAMESPACE") or "_"
        if not api_host:
            raise WhiskError("OpenWhisk API host is not configured (APIHOST / WHISK_APIHOST)")
        if not auth:
            raise WhiskError("OpenWhisk auth key is not configured (AUTH / WHISK_AUTH)")
        if ":" not in auth:
            raise WhiskError("OpenWhisk auth key must have the form <uuid>:<key>")
        return cls(
            api_host=api_host,
            auth=auth,
            namespace=namespace,
            insecure=insecure,
            timeout_s=timeout_s,
        )

    @property
    def base_url(self) -> str:
        host = self.api_host.rstrip("/")
        if not host.startswith(("http://", "https://")):
            host = f"https://{host}"
        return f"{host}/api/v1/namespaces/{self.namespace}"


def _raise_for_status(
    response: httpx.Response,
    what: str,
    not_found_error: type[WhiskError] = WhiskError,
) -> None:
    if response.status_code < 400:
        return
    body = response.text[:ERROR_BODY_CHARS]
    message = f"{what} failed with HTTP {response.status_code}: {body}"
    if response.status_code == 404:
        raise not_found_error(message, status_code=404)
    raise WhiskError(message, status_code=response.status_code)


class WhiskClient:
    def __init__(
        self,
        config: WhiskConfig,
        max_connections: int = 256,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        user, _, key = config.auth.partition(":")
        limits = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max(max_connections // 2, 32),
        )
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            auth=httpx.BasicAuth(user, key),
            timeout=config.timeout_s,
            verify=not config.insecure,
            limits=limits,
            transport=transport,
        )

    async def __aenter__(self) -> "WhiskClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        what: str,
        method: str,
        url: str,
        not_found_error: type[WhiskError] = WhiskError,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise WhiskError(f"{what} failed: {exc}") from exc
        _raise_for_status(response, what, not_found_error)
        return response

    async def create_action(self, name: str, kind: str, image: str, concurrency: int) -> None:
        body = {
            "namespace": "_",
            "name": name,
            "exec": {"kind": kind, "image": image},
            "limits": {"concurrency": concurrency, "timeout": ACTION_TIMEOUT_MS},
        }
        response = await self._request(
            f"create {name}",
            "PUT",
            f"/actions/{name}",
            params={"overwrite": "false"},
            json=body,
        )
        log.info("create response (at %d): %s", now_unix_us(), response.text[:ERROR_BODY_CHARS])

    async def invoke_action(self, name: str, payload: Mapping[str, Any]) -> tuple[str, str]:
        log.debug("invoke %s (at %d)", name, now_unix_us())
        response = await self._request(
            f"invoke {name}",
            "POST",
            f"/actions/{name}",
            params={"blocking": "false", "result": "false"},
            json=dict(payload),
        )
        text = response.text
        log.debug("invoke response (at %d): %s", now_unix_us(), text)
        try:
            activation_id = response.json().get("activationId")
        except ValueError as exc:
            raise WhiskError(f"invoke {name} returned a non-JSON body: {text[:200]}") from exc
        if not isinstance(activation_id, str) or not activation_id:
            raise WhiskError(
                f"invoke {name} returned no activation id: {text[:200]}",
                status_code=response.status_code,
            )
        return activation_id, text

    async def fetch_result(self, activation_id: str) -> str:
        response = await self._request(
            f"fetch {activation_id}",
            "GET",
            f"/activations/{activation_id}",
            not_found_error=ActivationNotFound,
        )
        log.debug("fetch response %s (at %d)", activation_id, now_unix_us())
        return response.text

    async def delete_action(self, name: str) -> None:
        response = await self._request(f"delete {name}", "DELETE", f"/actions/{name}")
        log.info("delete response (at %d): %s", now_unix_us(), response.text[:ERROR_BODY_CHARS])
