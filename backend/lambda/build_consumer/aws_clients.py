"""aws_clients.py — Region-keyed boto3 client cache (EKS, STS, S3, CodeBuild).

Builds may run in a different region than the Lambda itself, so clients are
cached per (service, region) instead of as single module-level singletons.
"""
from __future__ import annotations

import threading
from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.config import Config

from config import AWS_CLIENT_MAX_ATTEMPTS, AWS_REGION

__all__ = [
    "_clients",
    "_get_client",
    "_get_session",
    "_reset_clients",
]

# ---------------------------------------------------------------------------
# Client cache
# ---------------------------------------------------------------------------

_clients: Dict[Tuple[str, str], Any] = {}
_clients_lock = threading.Lock()
_session = None


def _get_session():
    """Get (or create) the boto3 session shared by all clients."""
    global _session
    with _clients_lock:
        if _session is None:
            _session = boto3.session.Session()
        return _session


def _get_client(service: str, region: Optional[str] = None):
    """Get (or create) the client for a service in a region."""
    key = (service, region or AWS_REGION)
    client = _clients.get(key)
    if client is not None:
        return client
    session = _get_session()
    with _clients_lock:
        client = _clients.get(key)
        if client is None:
            client = session.client(
                service,
                region_name=key[1],
                config=Config(retries={"max_attempts": AWS_CLIENT_MAX_ATTEMPTS, "mode": "standard"}),
            )
            _clients[key] = client
    return client


def _reset_clients() -> None:
    global _session
    with _clients_lock:
        _clients.clear()
        _session = None
