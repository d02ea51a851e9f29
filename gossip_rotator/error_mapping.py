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

"""Error taxonomy for keyring rotation.

Provides:
- Exception hierarchy with stable ErrorCode mapping.
- Marshal function to produce a structured ErrorPayload for logs.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import ErrorCode, ErrorPayload, error_response


@dataclass(eq=False)
class RotatorError(Exception):
    code: ErrorCode
    detail: str = ""

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.code.value}: {self.detail}" if self.detail else self.code.value

    def to_payload(self) -> ErrorPayload:
        return error_response(self.code, self.detail)


class ClusterAPIError(RotatorError):
    """Base class for failed calls against the cluster API."""

    def __init__(
        self,
        code: ErrorCode,
        detail: str = "",
        operation: str = "",
        status_code: int | None = None,
    ) -> None:
        super().__init__(code, detail)
        self.operation = operation
        self.status_code = status_code


class TransientRPCError(ClusterAPIError):
    """Timeout, refused connection, 5xx or rate limiting. Safe to retry."""

    def __init__(self, detail: str = "", operation: str = "", status_code: int | None = None) -> None:
        super().__init__(ErrorCode.TRANSIENT_RPC, detail, operation, status_code)


class RPCRejectedError(ClusterAPIError):
    """The cluster answered but refused the request (4xx)."""

    def __init__(self, detail: str = "", operation: str = "", status_code: int | None = None) -> None:
        super().__init__(ErrorCode.RPC_REJECTED, detail, operation, status_code)


class MalformedKeyError(RotatorError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(ErrorCode.MALFORMED_KEY, detail)


class PropagationTimeoutError(RotatorError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(ErrorCode.PROPAGATION_TIMEOUT, detail)


class RetryExhaustedError(RotatorError):
    def __init__(self, detail: str = "", last_error: BaseException | None = None) -> None:
        super().__init__(ErrorCode.RETRY_EXHAUSTED, detail)
        self.last_error = last_error


class RotationCancelledError(RotatorError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(ErrorCode.CANCELLED, detail)


class ConfigurationError(RotatorError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(ErrorCode.CONFIGURATION_ERROR, detail)


def marshal_exception(exc: BaseException) -> ErrorPayload:
    """Return a structured payload for any exception raised in the rotation path."""
    if isinstance(exc, RotatorError):
        return exc.to_payload()
    return error_response(ErrorCode.INTERNAL, str(exc))
