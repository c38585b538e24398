"""
API module for TxStore server.

This module provides:
- gRPC Datastore service (primary API)
- Admin HTTP API (FastAPI, read-only)
"""

from .grpc_server import DatastoreServicer, GrpcServer
from .http_server import create_http_app

__all__ = ["DatastoreServicer", "GrpcServer", "create_http_app"]
