"""
Internal gRPC client for TxStore SDK.

This module provides the low-level gRPC communication layer.
It is internal to the SDK and should not be used directly by users.

Messages travel as google.protobuf.Struct, so the wire dictionaries
built by the SDK are sent without generated stubs. Integers that must
survive exactly (ids, versions) are encoded as strings by callers.

Users should use TxStoreClient instead.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import grpc
from google.protobuf import json_format
from google.protobuf.struct_pb2 import Struct
from grpc import aio as grpc_aio

from .errors import ConflictError, NotFoundError, TransportError, ValidationError
from .transport import CONFLICTING_KEYS_METADATA, METHODS, SERVICE_NAME

logger = logging.getLogger(__name__)


def encode_message(message: dict[str, Any]) -> bytes:
    """Serialize a wire dictionary as a Struct."""
    return json_format.ParseDict(message, Struct()).SerializeToString()


def decode_message(data: bytes) -> dict[str, Any]:
    """Deserialize Struct bytes into a wire dictionary."""
    return json_format.MessageToDict(Struct.FromString(data))


def _conflicting_keys(error: grpc.RpcError) -> list[str]:
    metadata = error.trailing_metadata() if hasattr(error, "trailing_metadata") else None
    for key, value in metadata or ():
        if key == CONFLICTING_KEYS_METADATA:
            return list(json.loads(value))
    return []


def translate_rpc_error(method: str, error: grpc.RpcError) -> Exception:
    """Map a gRPC error to the SDK error hierarchy."""
    code = error.code() if hasattr(error, "code") else None
    details = (error.details() if hasattr(error, "details") else None) or str(error)
    status = code.name if code is not None else None

    if code == grpc.StatusCode.ABORTED:
        return ConflictError(details, conflicting_keys=_conflicting_keys(error))
    if code == grpc.StatusCode.INVALID_ARGUMENT:
        return ValidationError(details)
    if code in (grpc.StatusCode.NOT_FOUND, grpc.StatusCode.FAILED_PRECONDITION):
        return NotFoundError(details, resource_type="transaction", resource_id="")
    return TransportError(f"{method} failed: {details}", method=method, status=status)


class GrpcClient:
    """Internal gRPC transport for TxStore.

    This class handles all gRPC communication with the server.
    It manages the channel lifecycle and exposes a single async
    `call()` for every RPC of the Datastore service.

    This is an internal class - users should use TxStoreClient instead.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 50051,
        *,
        secure: bool = False,
        credentials: grpc.ChannelCredentials | None = None,
        timeout: float | None = 30.0,
    ) -> None:
        """Initialize the gRPC client.

        Args:
            host: Server hostname
            port: Server port
            secure: Whether to use TLS
            credentials: Optional TLS credentials
            timeout: Per-call deadline in seconds
        """
        self._host = host
        self._port = port
        self._secure = secure
        self._credentials = credentials
        self._timeout = timeout
        self._channel: grpc_aio.Channel | None = None
        self._methods: dict[str, Any] = {}

    @property
    def address(self) -> str:
        return f"{self._host}:{self._port}"

    async def connect(self) -> None:
        """Establish connection to the server."""
        if self._channel is not None:
            return

        options = [
            ("grpc.max_send_message_length", 50 * 1024 * 1024),
            ("grpc.max_receive_message_length", 50 * 1024 * 1024),
        ]
        if self._secure:
            self._channel = grpc_aio.secure_channel(
                self.address,
                self._credentials or grpc.ssl_channel_credentials(),
                options=options,
            )
        else:
            self._channel = grpc_aio.insecure_channel(self.address, options=options)

        self._methods = {
            name: self._channel.unary_unary(
                f"/{SERVICE_NAME}/{name}",
                request_serializer=encode_message,
                response_deserializer=decode_message,
            )
            for name in METHODS
        }
        logger.debug(f"Connected to TxStore server at {self.address}")

    async def close(self) -> None:
        """Close the connection."""
        if self._channel:
            await self._channel.close()
            self._channel = None
            self._methods = {}
            logger.debug("Disconnected from TxStore server")

    async def __aenter__(self) -> GrpcClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def call(self, method: str, request: dict[str, Any]) -> dict[str, Any]:
        """Invoke one RPC and translate failures."""
        if self._channel is None:
            raise RuntimeError("Not connected. Call connect() first.")
        try:
            multicallable = self._methods[method]
        except KeyError:
            raise ValueError(f"Unknown method: {method}") from None

        try:
            return await multicallable(request, timeout=self._timeout)
        except grpc.RpcError as e:
            error = translate_rpc_error(method, e)
            logger.debug(
                "RPC failed",
                extra={"method": method, "error_code": getattr(error, "code", None)},
            )
            raise error from e
