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

"""Structured error codes for the gossip key rotator."""

from enum import Enum
from typing import TypedDict


class ErrorCode(str, Enum):
    TRANSIENT_RPC = "transient_rpc"
    RPC_REJECTED = "rpc_rejected"
    NOT_AUTHORIZED = "not_authorized"
    MALFORMED_KEY = "malformed_key"
    PROPAGATION_TIMEOUT = "propagation_timeout"
    PARTIAL_REMOVAL = "partial_removal"
    RETRY_EXHAUSTED = "retry_exhausted"
    CANCELLED = "cancelled"
    CONFIGURATION_ERROR = "configuration_error"
    INTERNAL = "internal_error"


class ErrorPayload(TypedDict):
    error: str
    detail: str


def error_response(code: ErrorCode, detail: str = "") -> ErrorPayload:
    return {"error": code.value, "detail": detail}
