# Copyright 2025 Gossip Rotator Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Cluster API client - Consul HTTP API backend."""

from __future__ import annotations

import logging
import ssl
from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import BaseModel, Field, field_validator

from ... import __version__
from ...error_mapping import ConfigurationError, RPCRejectedError, TransientRPCError

logger = logging.getLogger(__name__)

USER_AGENT = f"gossip-rotator/{__version__}"


class KeyringPoolResponse(BaseModel):
    """One gossip pool's view of the keyring, as returned by ``/v1/operator/keyring``."""

    model_config = {"populate_by_name": True}

    wan: bool = Field(default=False, alias="WAN")
    datacenter: str = Field(default="", alias="Datacenter")
    segment: str = Field(default="", alias="Segment")
    keys: dict[str, int] = Field(default_factory=dict, alias="Keys")
    primary_keys: dict[str, int] = Field(default_factory=dict, alias="PrimaryKeys")
    num_nodes: int = Field(default=0, ge=0, alias="NumNodes")
    messages: dict[str, str] = Field(default_factory=dict, alias="Messages")

    @field_validator("keys", "primary_keys", "messages", mode="before")
    @classmethod
    def none_is_empty(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def pool_name(self) -> str:
        scope = "wan" if self.wan else "lan"
        return f"{scope}:{self.datacenter}:{self.segment}" if self.segment else f"{scope}:{self.datacenter}"


class ClusterAPI(ABC):
    """Capabilities the rotator consumes from the cluster.

    Every call is a blocking RPC with a caller-supplied timeout. Failures are
    raised as TransientRPCError or RPCRejectedError; implementations never
    retry.
    """

    @abstractmethod
    def get_leader(self, timeout: float) -> str:
        """Current leader as ``ip:port``; empty string when there is none."""

    @abstractmethod
    def keyring_list(self, timeout: float) -> list[KeyringPoolResponse]:
        """Per-pool keyring state."""

    @abstractmethod
    def keyring_install(self, key: str, timeout: float) -> None:
        """Install ``key`` on every member."""

    @abstractmethod
    def keyring_use(self, key: str, timeout: float) -> None:
        """Make ``key`` the primary key on every member."""

    @abstractmethod
    def keyring_remove(self, key: str, timeout: float) -> None:
        """Remove ``key`` from every member."""

    def close(self) -> None:
        """Release any held connections."""


class ConsulClusterAPI(ClusterAPI):
    """Consul agent HTTP API."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        ca_file: str | None = None,
        client_cert: str | None = None,
        client_key: str | None = None,
        verify: bool = True,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Initialize the Consul client.

        Args:
            base_url: Agent address, e.g. http://127.0.0.1:8500
            token: ACL token sent as X-Consul-Token
            ca_file: CA bundle used to verify the agent certificate
            client_cert: Client certificate for mTLS
            client_key: Client key for mTLS
            verify: Set False to skip TLS verification
            transport: Custom transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        headers = {"User-Agent": USER_AGENT}
        if token:
            headers["X-Consul-Token"] = token

        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            verify=_ssl_context(ca_file, client_cert, client_key, verify),
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: Any) -> ConsulClusterAPI:
        """Create a client from a RotatorConfig.

        Raises ConfigurationError if the token or TLS files cannot be loaded.
        """
        try:
            return cls(
                base_url=config.consul_http_addr,
                token=config.resolve_token(),
                ca_file=config.consul_cacert,
                client_cert=config.consul_client_cert,
                client_key=config.consul_client_key,
                verify=not config.consul_tls_skip_verify,
            )
        except OSError as e:
            raise ConfigurationError(f"cannot load TLS material for {config.consul_http_addr}: {e}") from e

    def get_leader(self, timeout: float) -> str:
        response = self._request("leader", "GET", "/v1/status/leader", timeout=timeout)
        leader = _json(response, "leader")
        return leader if isinstance(leader, str) else ""

    def keyring_list(self, timeout: float) -> list[KeyringPoolResponse]:
        response = self._request("list", "GET", "/v1/operator/keyring", timeout=timeout)
        payload = _json(response, "list") or []
        try:
            return [KeyringPoolResponse.model_validate(pool) for pool in payload]
        except ValueError as e:
            raise RPCRejectedError(f"unexpected keyring response: {e}", operation="list") from e

    def keyring_install(self, key: str, timeout: float) -> None:
        self._request("install", "POST", "/v1/operator/keyring", json={"Key": key}, timeout=timeout)

    def keyring_use(self, key: str, timeout: float) -> None:
        self._request("use", "PUT", "/v1/operator/keyring", json={"Key": key}, timeout=timeout)

    def keyring_remove(self, key: str, timeout: float) -> None:
        self._request("remove", "DELETE", "/v1/operator/keyring", json={"Key": key}, timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        operation: str,
        method: str,
        path: str,
        timeout: float,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = self._client.request(method, path, json=json, timeout=timeout)
        except httpx.TimeoutException as e:
            raise TransientRPCError(f"{method} {path} timed out: {e}", operation=operation) from e
        except httpx.RequestError as e:
            # Transport failures, undecodable bodies and redirect loops.
            raise TransientRPCError(f"{method} {path} failed: {e}", operation=operation) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientRPCError(
                f"{method} {path} returned {response.status_code}: {_body(response)}",
                operation=operation,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise RPCRejectedError(
                f"{method} {path} returned {response.status_code}: {_body(response)}",
                operation=operation,
                status_code=response.status_code,
            )
        return response


def _json(response: httpx.Response, operation: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise RPCRejectedError(f"invalid JSON from cluster API: {e}", operation=operation) from e


def _body(response: httpx.Response) -> str:
    return response.text.strip()[:512]


def _ssl_context(
    ca_file: str | None,
    client_cert: str | None,
    client_key: str | None,
    verify: bool,
) -> ssl.SSLContext | bool:
    if not verify:
        return False
    context = ssl.create_default_context(cafile=ca_file)
    if client_cert:
        context.load_cert_chain(certfile=client_cert, keyfile=client_key)
    return context
